"""Data models for cluster provisioning and upgrades."""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .naming import server_name


class NodeRole(str, Enum):
    """Node roles in the cluster."""
    CONTROL_PLANE = 'control-plane'
    WORKER = 'worker'


class NodeState(str, Enum):
    """States of the per-node upgrade state machine."""
    PENDING = 'pending'
    UPGRADING = 'upgrading'
    WAITING_READY = 'waiting_ready'
    HEALTH_CHECKING = 'health_checking'
    DONE = 'done'
    FAILED = 'failed'

    @property
    def terminal(self) -> bool:
        return self in (NodeState.DONE, NodeState.FAILED)


ALLOWED_TRANSITIONS: Dict[NodeState, Tuple[NodeState, ...]] = {
    NodeState.PENDING: (NodeState.UPGRADING, NodeState.DONE, NodeState.FAILED),
    NodeState.UPGRADING: (NodeState.WAITING_READY, NodeState.FAILED),
    NodeState.WAITING_READY: (NodeState.HEALTH_CHECKING, NodeState.DONE, NodeState.FAILED),
    NodeState.HEALTH_CHECKING: (NodeState.DONE, NodeState.FAILED),
    NodeState.DONE: (),
    NodeState.FAILED: (),
}


class Phase(str, Enum):
    """Phases of an upgrade run, in execution order."""
    VALIDATE = 'validate'
    UPGRADE_CONTROL_PLANES = 'upgrade_control_planes'
    UPGRADE_WORKERS = 'upgrade_workers'
    UPGRADE_KUBERNETES = 'upgrade_kubernetes'
    FINAL_HEALTH_CHECK = 'final_health_check'


class Outcome(str, Enum):
    """Overall result of an upgrade run."""
    SUCCESS = 'success'
    PARTIAL = 'partial'
    FATAL = 'fatal'
    CANCELLED = 'cancelled'


@dataclass
class Node:
    """Represents a node in the cluster."""
    name: str
    role: NodeRole
    endpoint: str = ''
    current_version: str = ''
    target_version: str = ''
    pool: str = ''
    index: int = 0
    state: NodeState = NodeState.PENDING
    error: Optional[BaseException] = None
    history: List[Tuple[NodeState, float]] = field(default_factory=list)

    def transition(self, new_state: NodeState) -> NodeState:
        """Move to ``new_state``; returns the previous state.

        Raises:
            RuntimeError: If the transition is not part of the state machine
        """
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(
                f"illegal transition for node {self.name}: {self.state.value} -> {new_state.value}"
            )
        previous = self.state
        self.state = new_state
        self.history.append((new_state, time.monotonic()))
        return previous


@dataclass
class NodePool:
    """A named, homogeneous group of nodes."""
    name: str
    role: NodeRole
    count: int
    server_type: str
    location: str
    image: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    placement_group: bool = False
    index: int = 0

    def nodes(self, cluster_name: str) -> List[Node]:
        """Materialize the pool's nodes 1..count with stable names."""
        return [
            Node(
                name=server_name(cluster_name, self.name, i),
                role=self.role,
                pool=self.name,
                index=i,
            )
            for i in range(1, self.count + 1)
        ]


@dataclass(frozen=True)
class NodeUpgradeOptions:
    """Options passed to a single node OS upgrade."""
    stage: bool = False  # apply on next reboot instead of immediately
    force: bool = False  # skip etcd health and member checks


@dataclass(frozen=True)
class UpgradeOptions:
    """Options of one upgrade invocation."""
    config_path: Optional[str] = None
    dry_run: bool = False
    skip_health_check: bool = False
    k8s_version_override: str = ''
    continue_on_worker_failure: bool = False
    max_parallel: int = 0  # 0 means one task per worker


@dataclass(frozen=True)
class UpgradePlan:
    """Immutable set of upgrade actions for one orchestrator run."""
    control_planes: Tuple[Node, ...]
    workers: Tuple[Node, ...]
    target_talos_version: str
    target_kubernetes_version: Optional[str] = None
    dry_run: bool = False
    skip_health_check: bool = False
    node_options: NodeUpgradeOptions = field(default_factory=NodeUpgradeOptions)

    @property
    def nodes(self) -> Tuple[Node, ...]:
        return self.control_planes + self.workers

    @property
    def cluster_endpoint(self) -> str:
        """Endpoint used for cluster-wide calls (first control plane)."""
        return self.control_planes[0].endpoint

    def node(self, name: str) -> Node:
        for node in self.nodes:
            if node.name == name:
                return node
        raise KeyError(name)


@dataclass
class UpgradeResult:
    """Results from an upgrade run."""
    plan: UpgradePlan
    outcome: Outcome = Outcome.SUCCESS
    error: Optional[BaseException] = None
    failed_phase: Optional[Phase] = None
    failed_node: Optional[str] = None
    kubernetes_upgraded: bool = False
    skipped_phases: List[Phase] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def failed_workers(self) -> List[Node]:
        return [n for n in self.plan.workers if n.state == NodeState.FAILED]

    def summary_lines(self) -> List[str]:
        """Human readable summary of the run."""
        lines = []
        for node in self.plan.nodes:
            line = f"{node.role.value:<13} {node.name:<30} {node.state.value}"
            if node.error is not None:
                line += f" ({node.error})"
            lines.append(line)

        if self.outcome == Outcome.SUCCESS:
            lines.append("Upgrade completed successfully")
        elif self.outcome == Outcome.PARTIAL:
            names = ', '.join(n.name for n in self.failed_workers)
            lines.append(f"Upgrade completed with {len(self.failed_workers)} worker failure(s): {names}")
        elif self.outcome == Outcome.CANCELLED:
            lines.append(f"Upgrade cancelled during {self.failed_phase.value}: {self.error}")
        else:
            where = f" on {self.failed_node}" if self.failed_node else ""
            lines.append(f"Upgrade failed in {self.failed_phase.value}{where}: {self.error}")
        for phase in self.skipped_phases:
            lines.append(f"Skipped phase: {phase.value}")
        return lines


# Cloud resources

@dataclass
class Network:
    id: int
    name: str
    ip_range: str
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class FirewallRule:
    direction: str
    protocol: str
    port: Optional[str] = None
    source_ips: List[str] = field(default_factory=list)
    description: str = ''


@dataclass
class Firewall:
    id: int
    name: str
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class PlacementGroup:
    id: int
    name: str
    type: str = 'spread'


@dataclass
class LoadBalancer:
    id: int
    name: str
    ipv4: Optional[str] = None
    private_ip: Optional[str] = None


@dataclass
class Server:
    id: int
    name: str
    status: str = ''
    ipv4: Optional[str] = None
    private_ip: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class ServerSpec:
    """Desired shape of one server."""
    name: str
    server_type: str
    location: str
    image: str
    role: NodeRole
    pool: str
    labels: Dict[str, str] = field(default_factory=dict)
    network_id: Optional[int] = None
    private_ip: Optional[str] = None
    placement_group_id: Optional[int] = None
    firewall_id: Optional[int] = None
    user_data: Optional[str] = None


@dataclass
class ProvisioningState:
    """Resources created or found during a provisioning run."""
    network: Optional[Network] = None
    firewall: Optional[Firewall] = None
    placement_groups: Dict[str, PlacementGroup] = field(default_factory=dict)
    load_balancer: Optional[LoadBalancer] = None
    control_plane_servers: Dict[str, Server] = field(default_factory=dict)
    worker_servers: Dict[str, Server] = field(default_factory=dict)
    configured_nodes: List[str] = field(default_factory=list)
    sans: List[str] = field(default_factory=list)
    bootstrapped: bool = False
    talosconfig: Optional[bytes] = None
    kubeconfig: Optional[bytes] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
