"""Helpers shared by the provisioning commands."""
import logging
import os
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import typer

from ..config import Timeouts
from ..modules.clusterconfig import ClusterConfig
from ..modules.hcloud import HCloudClient
from ..modules.provisioning.context import ProvisioningContext
from ..modules.provisioning.models import UpgradeOptions
from ..modules.talos import TalosctlClient

logger = logging.getLogger("k8zctl.commands")

DEFAULT_TALOSCONFIG = "talosconfig"
DEFAULT_SECRETS = "secrets.yaml"


def build_context(config_path: str, options: UpgradeOptions, cancel: threading.Event,
                  output_dir: Optional[str] = None) -> ProvisioningContext:
    """Load the cluster config and wire up the real collaborators."""
    config = ClusterConfig.load(config_path)
    timeouts = Timeouts.load()
    base = Path(output_dir) if output_dir else Path(".")
    talosconfig = (config.talos.talosconfig_path or os.getenv("TALOSCONFIG")
                   or str(base / DEFAULT_TALOSCONFIG))
    secrets = config.talos.secrets_path or str(base / DEFAULT_SECRETS)

    talos = TalosctlClient(
        cluster_name=config.cluster_name,
        talosconfig_path=talosconfig,
        secrets_path=secrets,
        schematic_id=config.talos.schematic_id,
        talos_version=config.talos.version,
        kubernetes_version=config.kubernetes.version,
        timeouts=timeouts,
    )
    infra = HCloudClient(timeouts=timeouts, cancel=cancel)
    return ProvisioningContext(
        config=config,
        infra=infra,
        talos=talos,
        options=options,
        timeouts=timeouts,
        cancel=cancel,
    )


@contextmanager
def cancellation(cancel: threading.Event, timeout: Optional[float] = None) -> Iterator[threading.Event]:
    """Set ``cancel`` on SIGINT or once ``timeout`` seconds have passed."""
    def on_interrupt(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        typer.secho("⚠️  Interrupt received, finishing in-flight work (press Ctrl+C again to abort)",
                    fg=typer.colors.YELLOW, err=True)
        cancel.set()

    previous = signal.signal(signal.SIGINT, on_interrupt)
    timer = None
    if timeout:
        timer = threading.Timer(timeout, cancel.set)
        timer.daemon = True
        timer.start()
    try:
        yield cancel
    finally:
        if timer is not None:
            timer.cancel()
        signal.signal(signal.SIGINT, previous)
