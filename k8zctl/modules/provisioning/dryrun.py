"""Dry-run wrapper around a TalosConfigProducer."""
import logging
import threading
from typing import List, Optional

from .interfaces import TalosConfigProducer
from .models import NodeUpgradeOptions

logger = logging.getLogger("k8zctl.provisioning.dryrun")


class DryRunTalosProducer(TalosConfigProducer):
    """Forwards read-only calls and turns mutating upgrade calls into no-ops.

    Counters are kept for the skipped calls so a dry-run report can say
    what would have happened.
    """

    def __init__(self, delegate: TalosConfigProducer):
        self.delegate = delegate
        self.skipped_node_upgrades: List[str] = []
        self.skipped_kubernetes_upgrades: List[str] = []
        self._lock = threading.Lock()

    def upgrade_node(self, endpoint: str, target_version: str,
                     options: NodeUpgradeOptions) -> None:
        with self._lock:
            self.skipped_node_upgrades.append(endpoint)
        logger.info(f"[DRY RUN] Would upgrade Talos on {endpoint} to {target_version}"
                    f" (stage={options.stage}, force={options.force})")

    def upgrade_kubernetes(self, endpoint: str, target_version: str) -> None:
        with self._lock:
            self.skipped_kubernetes_upgrades.append(endpoint)
        logger.info(f"[DRY RUN] Would upgrade Kubernetes to {target_version} via {endpoint}")

    # Everything below is forwarded unchanged.

    def generate_control_plane_config(self, endpoints: List[str], extra: str = '') -> bytes:
        return self.delegate.generate_control_plane_config(endpoints, extra)

    def generate_worker_config(self, join_token: str = '') -> bytes:
        return self.delegate.generate_worker_config(join_token)

    def apply_config(self, endpoint: str, machine_config: bytes, insecure: bool = False) -> None:
        self.delegate.apply_config(endpoint, machine_config, insecure)

    def bootstrap(self, endpoint: str) -> None:
        self.delegate.bootstrap(endpoint)

    def get_kubeconfig(self, endpoint: str) -> bytes:
        return self.delegate.get_kubeconfig(endpoint)

    def get_node_version(self, endpoint: str) -> str:
        return self.delegate.get_node_version(endpoint)

    def wait_for_node_ready(self, endpoint: str, timeout: float,
                            cancel: Optional[threading.Event] = None) -> None:
        self.delegate.wait_for_node_ready(endpoint, timeout, cancel=cancel)

    def health_check(self, endpoint: str) -> None:
        self.delegate.health_check(endpoint)

    def set_endpoint(self, endpoint: str) -> None:
        self.delegate.set_endpoint(endpoint)

    def get_client_config(self) -> bytes:
        return self.delegate.get_client_config()
