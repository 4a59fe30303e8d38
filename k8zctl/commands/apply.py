"""Initial cluster provisioning command."""
import logging
import threading
from pathlib import Path
from typing import Optional

import typer

from ..modules.provisioning.errors import K8zError
from ..modules.provisioning.initial import InitialProvisioner
from ..modules.provisioning.models import UpgradeOptions
from .common import build_context, cancellation

logger = logging.getLogger("k8zctl.commands.apply")


def apply(
    config: str = typer.Option(..., "--config", "-c", help="Path to the cluster config file"),
    output_dir: str = typer.Option(".", "--output-dir", "-o", help="Where to write talosconfig and kubeconfig"),
    timeout: Optional[float] = typer.Option(None, "--timeout", min=0, help="Cancel the run after this many seconds"),
):
    """Create infrastructure and bootstrap a new cluster."""
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    cancel = threading.Event()

    try:
        ctx = build_context(config, UpgradeOptions(config_path=config), cancel, output_dir=str(out))
    except (K8zError, ValueError) as e:
        typer.secho(f"❌ {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    try:
        with cancellation(cancel, timeout):
            InitialProvisioner().provision(ctx)
    except K8zError as e:
        typer.secho(f"❌ Provisioning failed: {e}", fg=typer.colors.RED, err=True)
        typer.secho("Re-run the same command to resume; existing resources are reused.",
                    fg=typer.colors.YELLOW, err=True)
        logger.debug("Provisioning failed", exc_info=True)
        raise typer.Exit(code=1)
    finally:
        _write_credentials(ctx, out)

    typer.secho(f"✅ Cluster {ctx.config.cluster_name} provisioned", fg=typer.colors.GREEN)
    endpoint = ctx.state.metadata.get("endpoint")
    if endpoint:
        typer.echo(f"Kubernetes API: {endpoint}")


def _write_credentials(ctx, out: Path) -> None:
    if ctx.state.kubeconfig:
        path = out / "kubeconfig"
        path.write_bytes(ctx.state.kubeconfig)
        path.chmod(0o600)
        typer.echo(f"Kubeconfig written to {path}")
    if ctx.state.talosconfig:
        path = out / "talosconfig"
        if not path.exists():
            path.write_bytes(ctx.state.talosconfig)
            path.chmod(0o600)
        typer.echo(f"Talosconfig available at {path}")
