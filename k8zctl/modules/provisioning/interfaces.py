"""Collaborator interfaces used by the provisioning core.

The provisioners only talk to these abstract capability sets; concrete
implementations live in ``k8zctl.modules.hcloud`` and ``k8zctl.modules.talos``
and tests substitute mocks built with ``Mock(spec=...)``.
"""
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, TYPE_CHECKING

from .models import (
    Firewall,
    FirewallRule,
    LoadBalancer,
    Network,
    NodeUpgradeOptions,
    PlacementGroup,
    Server,
    ServerSpec,
)

if TYPE_CHECKING:
    from .context import ProvisioningContext


class InfrastructureManager(ABC):
    """Idempotent CRUD over cloud resources, keyed by cluster-scoped name.

    Every ``ensure_*`` looks the resource up by name first and only creates
    it when it is missing. Implementations must be safe for concurrent use.
    """

    @abstractmethod
    def ensure_network(self, name: str, ip_range: str, zone: str,
                       labels: Dict[str, str]) -> Network:
        ...

    @abstractmethod
    def ensure_firewall(self, name: str, rules: List[FirewallRule],
                        labels: Dict[str, str]) -> Firewall:
        ...

    @abstractmethod
    def ensure_placement_group(self, name: str, labels: Dict[str, str]) -> PlacementGroup:
        ...

    @abstractmethod
    def ensure_load_balancer(self, name: str, lb_type: str, location: str,
                             network_id: int, labels: Dict[str, str]) -> LoadBalancer:
        ...

    @abstractmethod
    def ensure_server(self, spec: ServerSpec) -> Server:
        ...

    @abstractmethod
    def get_server(self, name: str) -> Optional[Server]:
        """Return the server called ``name`` or None."""
        ...


class TalosConfigProducer(ABC):
    """Machine configuration and lifecycle operations against Talos nodes.

    Implementations must be safe for concurrent use; worker upgrades call
    them from several threads at once.
    """

    @abstractmethod
    def generate_control_plane_config(self, endpoints: List[str], extra: str = '') -> bytes:
        """Machine config for a control plane; ``endpoints`` become cert SANs."""
        ...

    @abstractmethod
    def generate_worker_config(self, join_token: str = '') -> bytes:
        ...

    @abstractmethod
    def apply_config(self, endpoint: str, machine_config: bytes, insecure: bool = False) -> None:
        ...

    @abstractmethod
    def bootstrap(self, endpoint: str) -> None:
        """Initialize etcd on the first control plane."""
        ...

    @abstractmethod
    def get_kubeconfig(self, endpoint: str) -> bytes:
        ...

    @abstractmethod
    def get_node_version(self, endpoint: str) -> str:
        ...

    @abstractmethod
    def upgrade_node(self, endpoint: str, target_version: str,
                     options: NodeUpgradeOptions) -> None:
        ...

    @abstractmethod
    def upgrade_kubernetes(self, endpoint: str, target_version: str) -> None:
        ...

    @abstractmethod
    def wait_for_node_ready(self, endpoint: str, timeout: float,
                            cancel: Optional[threading.Event] = None) -> None:
        """Block until the node answers again.

        Raises:
            ReadinessTimeoutError: If ``timeout`` elapses first
            CancellationError: If ``cancel`` is set while waiting
        """
        ...

    @abstractmethod
    def health_check(self, endpoint: str) -> None:
        """Check cluster health as seen from ``endpoint``.

        Raises:
            HealthCheckFailure: If the cluster reports itself unhealthy
        """
        ...

    @abstractmethod
    def set_endpoint(self, endpoint: str) -> None:
        ...

    @abstractmethod
    def get_client_config(self) -> bytes:
        ...


class SubnetAllocator(ABC):
    """Deterministic subnet assignment for node roles."""

    @abstractmethod
    def get_subnet_for_role(self, role: str, index: int = 0) -> str:
        ...


class Provisioner(ABC):
    """A provisioning pipeline operating on a ProvisioningContext."""

    name: str = "provisioner"

    @abstractmethod
    def provision(self, ctx: "ProvisioningContext") -> None:
        ...
