"""Cluster upgrade command."""
import logging
import threading
from typing import Optional

import typer

from ..modules.provisioning.errors import (
    CancellationError,
    K8zError,
    UpgradeFailedError,
    ValidationError,
)
from ..modules.provisioning.models import Outcome, UpgradeOptions
from ..modules.provisioning.upgrade import UpgradeOrchestrator
from .common import build_context, cancellation

logger = logging.getLogger("k8zctl.commands.upgrade")

_COLORS = {
    Outcome.SUCCESS: typer.colors.GREEN,
    Outcome.PARTIAL: typer.colors.YELLOW,
    Outcome.FATAL: typer.colors.RED,
    Outcome.CANCELLED: typer.colors.YELLOW,
}


def upgrade(
    config: str = typer.Option(..., "--config", "-c", help="Path to the cluster config file"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the upgrade plan without changing anything"),
    skip_health_check: bool = typer.Option(False, "--skip-health-check", help="Skip node and cluster health checks"),
    k8s_version: str = typer.Option("", "--k8s-version", help="Override the Kubernetes target version"),
    continue_on_worker_failure: bool = typer.Option(
        False, "--continue-on-worker-failure",
        help="Upgrade Kubernetes even if some workers failed",
    ),
    max_parallel: int = typer.Option(0, "--max-parallel", min=0, help="Limit concurrent worker upgrades (0 = all)"),
    timeout: Optional[float] = typer.Option(None, "--timeout", min=0, help="Cancel the run after this many seconds"),
):
    """Upgrade Talos and Kubernetes on an existing cluster."""
    options = UpgradeOptions(
        config_path=config,
        dry_run=dry_run,
        skip_health_check=skip_health_check,
        k8s_version_override=k8s_version,
        continue_on_worker_failure=continue_on_worker_failure,
        max_parallel=max_parallel,
    )
    cancel = threading.Event()

    try:
        ctx = build_context(config, options, cancel)
    except (K8zError, ValueError) as e:
        typer.secho(f"❌ {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    try:
        with cancellation(cancel, timeout):
            UpgradeOrchestrator().provision(ctx)
    except ValidationError as e:
        typer.secho(f"❌ Invalid upgrade: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    except (UpgradeFailedError, CancellationError) as e:
        _print_summary(ctx)
        typer.secho(f"❌ {e}", fg=typer.colors.RED, err=True)
        logger.debug("Upgrade failed", exc_info=True)
        raise typer.Exit(code=1)
    except K8zError as e:
        typer.secho(f"❌ Upgrade failed: {e}", fg=typer.colors.RED, err=True)
        logger.debug("Upgrade failed", exc_info=True)
        raise typer.Exit(code=1)

    _print_summary(ctx)


def _print_summary(ctx) -> None:
    result = ctx.result
    if result is None:
        return
    color = _COLORS.get(result.outcome)
    for line in result.summary_lines():
        typer.secho(line, fg=color)
