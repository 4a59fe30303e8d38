"""Upgrade plan construction and version handling."""
import logging
import re
from typing import List, NamedTuple, Optional, TYPE_CHECKING

from .errors import UpgradeCallError, ValidationError
from .interfaces import InfrastructureManager, TalosConfigProducer
from .models import Node, NodeRole, NodeState, NodeUpgradeOptions, UpgradeOptions, UpgradePlan

if TYPE_CHECKING:
    from ..clusterconfig import ClusterConfig

logger = logging.getLogger("k8zctl.provisioning.plan")

_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)(?:-([0-9A-Za-z.-]+))?$")


class Version(NamedTuple):
    """A parsed ``vMAJOR.MINOR.PATCH[-PRERELEASE]`` version."""
    major: int
    minor: int
    patch: int
    prerelease: str = ''

    @classmethod
    def parse(cls, value: str) -> "Version":
        """Parse ``value``; raises ValueError when it is not a version."""
        match = _VERSION_RE.match((value or '').strip())
        if not match:
            raise ValueError(f"not a semantic version: {value!r}")
        major, minor, patch, pre = match.groups()
        return cls(int(major), int(minor), int(patch), pre or '')

    def sort_key(self):
        # A release sorts after its prereleases.
        return (self.major, self.minor, self.patch, self.prerelease == '', self.prerelease)

    def __str__(self) -> str:
        base = f"v{self.major}.{self.minor}.{self.patch}"
        return f"{base}-{self.prerelease}" if self.prerelease else base


def is_valid_version(value: str) -> bool:
    return bool(_VERSION_RE.match((value or '').strip()))


def normalize_version(value: str) -> str:
    """Canonical ``vX.Y.Z`` form of ``value``."""
    return str(Version.parse(value))


def same_version(a: str, b: str) -> bool:
    """Semantic equality, ignoring a leading ``v``."""
    try:
        return Version.parse(a) == Version.parse(b)
    except ValueError:
        return a == b


def check_upgrade_path(node: str, current: str, target: str) -> None:
    """Refuse downgrades and warn about skipped minor releases.

    Raises:
        ValidationError: If ``target`` is older than ``current``
    """
    cur = Version.parse(current)
    tgt = Version.parse(target)
    if tgt.sort_key() < cur.sort_key():
        raise ValidationError(
            f"nodes.{node}",
            f"runs {cur}, which is newer than target {tgt}; downgrades are not supported",
        )
    if tgt.major == cur.major and tgt.minor - cur.minor > 1:
        logger.warning(
            f"⚠️  {node}: upgrading {cur} -> {tgt} skips {tgt.minor - cur.minor - 1} minor release(s)"
        )


def resolve_kubernetes_target(config: "ClusterConfig", options: UpgradeOptions) -> Optional[str]:
    """Kubernetes target from the override or the config; None means no change.

    Raises:
        ValidationError: If the override or configured version is malformed
    """
    if options.k8s_version_override:
        if not is_valid_version(options.k8s_version_override):
            raise ValidationError(
                "k8s_version_override",
                f"invalid Kubernetes version {options.k8s_version_override!r}",
            )
        return normalize_version(options.k8s_version_override)
    if config.kubernetes.version:
        if not is_valid_version(config.kubernetes.version):
            raise ValidationError(
                "kubernetes.version",
                f"invalid Kubernetes version {config.kubernetes.version!r}",
            )
        return normalize_version(config.kubernetes.version)
    return None


def _resolve_node(node: Node, target: str, infra: InfrastructureManager,
                  talos: TalosConfigProducer) -> None:
    server = infra.get_server(node.name)
    if server is None:
        raise ValidationError(f"nodes.{node.name}", "no server found with this name")
    if not server.ipv4:
        raise ValidationError(f"nodes.{node.name}", "server has no public IPv4 address")
    node.endpoint = server.ipv4
    node.target_version = target

    try:
        current = talos.get_node_version(node.endpoint)
    except Exception as e:
        if node.role == NodeRole.WORKER:
            # Worker failures stay isolated; the node is reported as failed
            logger.warning(f"⚠️  {node.name}: cannot read Talos version from {node.endpoint}: {e}")
            error = UpgradeCallError(node.endpoint, "version", str(e))
            error.__cause__ = e
            node.error = error
            node.transition(NodeState.FAILED)
            return
        raise ValidationError(
            f"nodes.{node.name}", f"cannot read Talos version from {node.endpoint}: {e}"
        ) from e
    if not is_valid_version(current):
        raise ValidationError(
            f"nodes.{node.name}", f"unrecognized Talos version {current!r} on {node.endpoint}"
        )

    node.current_version = normalize_version(current)
    check_upgrade_path(node.name, node.current_version, target)


def build_upgrade_plan(config: "ClusterConfig", options: UpgradeOptions,
                       infra: InfrastructureManager, talos: TalosConfigProducer) -> UpgradePlan:
    """Build an UpgradePlan from the config and live node versions.

    Only read-only collaborator calls are made. Control planes keep pool
    order, then index order. A worker whose version cannot be read is
    put in the plan already FAILED.

    Raises:
        ValidationError: If the plan cannot be built
    """
    if not is_valid_version(config.talos.version):
        raise ValidationError("talos.version", f"invalid Talos version {config.talos.version!r}")
    target = normalize_version(config.talos.version)
    k8s_target = resolve_kubernetes_target(config, options)

    control_planes: List[Node] = []
    workers: List[Node] = []
    for pool in config.node_pools():
        nodes = pool.nodes(config.cluster_name)
        if pool.role == NodeRole.CONTROL_PLANE:
            control_planes.extend(nodes)
        else:
            workers.extend(nodes)

    if not control_planes:
        raise ValidationError("control_planes", "at least one control-plane node is required")

    for node in control_planes + workers:
        _resolve_node(node, target, infra, talos)

    return UpgradePlan(
        control_planes=tuple(control_planes),
        workers=tuple(workers),
        target_talos_version=target,
        target_kubernetes_version=k8s_target,
        dry_run=options.dry_run,
        skip_health_check=options.skip_health_check,
        node_options=NodeUpgradeOptions(
            stage=config.talos.upgrade.stage,
            force=config.talos.upgrade.force,
        ),
    )


def plan_report(plan: UpgradePlan) -> List[str]:
    """Lines describing every phase and node action of ``plan``."""
    lines = [
        "=== UPGRADE PLAN ===",
        f"Target Talos version: {plan.target_talos_version}",
        f"Target Kubernetes version: {plan.target_kubernetes_version or '(unchanged)'}",
        f"Health checks: {'skipped' if plan.skip_health_check else 'enabled'}",
        "Phase 1: upgrade control planes (sequential)",
    ]
    for i, node in enumerate(plan.control_planes, 1):
        lines.append(f"  {i}. {_describe(node)}")
    lines.append("Phase 2: upgrade workers (parallel)")
    if not plan.workers:
        lines.append("  (no workers)")
    for node in plan.workers:
        lines.append(f"  - {_describe(node)}")
    if plan.target_kubernetes_version:
        lines.append(f"Phase 3: upgrade Kubernetes to {plan.target_kubernetes_version} "
                     f"via {plan.cluster_endpoint}")
    else:
        lines.append("Phase 3: Kubernetes upgrade skipped (no target version)")
    if plan.skip_health_check:
        lines.append("Phase 4: final health check skipped")
    else:
        lines.append(f"Phase 4: final health check via {plan.cluster_endpoint}")
    lines.append("=== END PLAN ===")
    return lines


def _describe(node: Node) -> str:
    if node.state == NodeState.FAILED:
        return f"{node.name} ({node.endpoint}): unreachable, will be reported as failed ({node.error})"
    if same_version(node.current_version, node.target_version):
        action = f"already at {node.target_version}, skip"
    else:
        action = f"{node.current_version} -> {node.target_version}"
    return f"{node.name} ({node.endpoint}): {action}"
