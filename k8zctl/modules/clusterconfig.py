"""Desired cluster state loaded from YAML.

The file describes the cluster shape (pools, network, versions); process
settings such as the API token stay in :mod:`k8zctl.config`.
"""
import ipaddress
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError
from pydantic import field_validator, model_validator

from .provisioning.errors import ValidationError
from .provisioning.interfaces import SubnetAllocator
from .provisioning.models import FirewallRule, NodePool, NodeRole

logger = logging.getLogger("k8zctl.clusterconfig")

DEFAULT_IMAGE = "talos"
KUBE_API_PORT = 6443
TALOS_API_PORT = 50000


def cidr_subnet(prefix: str, newbits: int, netnum: int) -> str:
    """Return subnet ``netnum`` of ``prefix`` extended by ``newbits`` bits."""
    network = ipaddress.IPv4Network(prefix, strict=False)
    new_prefix = network.prefixlen + newbits
    if new_prefix > 32:
        raise ValueError(f"prefix extension of {newbits} bits is too large for {prefix}")
    if netnum < 0 or netnum >= (1 << newbits):
        raise ValueError(f"subnet number {netnum} exceeds max subnets {1 << newbits}")
    size = 1 << (32 - new_prefix)
    base = int(network.network_address) + netnum * size
    return f"{ipaddress.IPv4Address(base)}/{new_prefix}"


def cidr_host(prefix: str, hostnum: int) -> str:
    """Return host ``hostnum`` of ``prefix``; negative numbers count from the end."""
    network = ipaddress.IPv4Network(prefix, strict=False)
    if abs(hostnum) >= network.num_addresses + (1 if hostnum < 0 else 0):
        raise ValueError(f"host number {hostnum} exceeds max hosts {network.num_addresses}")
    offset = hostnum if hostnum >= 0 else network.num_addresses + hostnum
    return str(ipaddress.IPv4Address(int(network.network_address) + offset))


class NetworkSettings(BaseModel):
    """Private network layout."""
    ip_range: str = Field(default="10.0.0.0/16", description="Whole private network")
    node_cidr: Optional[str] = Field(default=None, description="Range carved into node subnets")
    node_subnet_mask: int = Field(default=25, ge=8, le=30)
    zone: str = Field(default="eu-central")

    @field_validator('ip_range')
    @classmethod
    def check_ip_range(cls, v: str) -> str:
        ipaddress.IPv4Network(v, strict=False)
        return v

    @model_validator(mode='after')
    def default_node_cidr(self) -> "NetworkSettings":
        if not self.node_cidr:
            self.node_cidr = cidr_subnet(self.ip_range, 3, 2)
        return self


class PoolSettings(BaseModel):
    """One node pool entry."""
    name: str
    type: str = Field(default="cx22", description="Server type")
    location: Optional[str] = None
    count: int = Field(default=1, ge=0)
    labels: Dict[str, str] = Field(default_factory=dict)
    image: Optional[str] = None
    placement_group: bool = False


class UpgradeSettings(BaseModel):
    stage: bool = False
    force: bool = False


class TalosSettings(BaseModel):
    version: str = "v1.9.0"
    schematic_id: str = ""
    upgrade: UpgradeSettings = Field(default_factory=UpgradeSettings)
    talosconfig_path: Optional[str] = None
    secrets_path: Optional[str] = None
    join_token: str = ""


class KubernetesSettings(BaseModel):
    version: str = ""
    api_port: int = KUBE_API_PORT


class FirewallRuleSettings(BaseModel):
    direction: str = "in"
    protocol: str = "tcp"
    port: Optional[str] = None
    source_ips: List[str] = Field(default_factory=list)
    description: str = ""


class FirewallSettings(BaseModel):
    api_source: List[str] = Field(default_factory=lambda: ["0.0.0.0/0", "::/0"])
    kube_api_source: List[str] = Field(default_factory=list)
    talos_api_source: List[str] = Field(default_factory=list)
    extra_rules: List[FirewallRuleSettings] = Field(default_factory=list)


class ClusterConfig(BaseModel):
    """Desired state of one cluster."""
    cluster_name: str
    location: str = "nbg1"
    image: str = DEFAULT_IMAGE
    load_balancer_type: str = "lb11"
    network: NetworkSettings = Field(default_factory=NetworkSettings)
    firewall: FirewallSettings = Field(default_factory=FirewallSettings)
    control_planes: List[PoolSettings] = Field(default_factory=list)
    workers: List[PoolSettings] = Field(default_factory=list)
    talos: TalosSettings = Field(default_factory=TalosSettings)
    kubernetes: KubernetesSettings = Field(default_factory=KubernetesSettings)

    model_config = {"extra": "ignore"}

    @field_validator('cluster_name')
    @classmethod
    def check_cluster_name(cls, v: str) -> str:
        if not v or not v.replace('-', '').isalnum() or v != v.lower():
            raise ValueError("must be lowercase alphanumeric with dashes")
        return v

    @model_validator(mode='after')
    def check_pool_names(self) -> "ClusterConfig":
        names = [p.name for p in self.control_planes + self.workers]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate pool names: {', '.join(duplicates)}")
        return self

    @classmethod
    def load(cls, path: Union[str, Path]) -> "ClusterConfig":
        """Load and validate a cluster config file.

        Raises:
            ValidationError: If the file is missing, unreadable or invalid
        """
        path = Path(path).expanduser()
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except OSError as e:
            raise ValidationError("config", f"cannot read {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ValidationError("config", f"invalid YAML in {path}: {e}") from e
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClusterConfig":
        try:
            return cls(**data)
        except PydanticValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(p) for p in first.get("loc", ())) or "config"
            raise ValidationError(field, first.get("msg", str(e))) from e

    def get_subnet_for_role(self, role: str, index: int = 0) -> str:
        """Deterministic node subnet for ``role``.

        Control planes use subnet 0, the load balancer subnet 1 and worker
        pool ``index`` subnet ``2 + index``.
        """
        node_net = ipaddress.IPv4Network(self.network.node_cidr, strict=False)
        newbits = self.network.node_subnet_mask - node_net.prefixlen
        if role == NodeRole.CONTROL_PLANE.value:
            subnet_index = 0
        elif role == "load-balancer":
            subnet_index = 1
        elif role == NodeRole.WORKER.value:
            subnet_index = 2 + index
        else:
            raise ValueError(f"unknown role: {role}")
        return cidr_subnet(self.network.node_cidr, newbits, subnet_index)

    def private_ip_for(self, pool: NodePool, node_index: int) -> str:
        """Private address of node ``node_index`` (1-based) in ``pool``.

        Hetzner reserves ``.1`` for the gateway, so hosts start at ``.2``.
        Control-plane pools share one subnet, ten addresses per pool.
        """
        if pool.role == NodeRole.CONTROL_PLANE:
            subnet = self.get_subnet_for_role(NodeRole.CONTROL_PLANE.value)
            host = pool.index * 10 + node_index + 1
        else:
            subnet = self.get_subnet_for_role(NodeRole.WORKER.value, pool.index)
            host = node_index + 1
        return cidr_host(subnet, host)

    def load_balancer_private_ip(self) -> str:
        return cidr_host(self.get_subnet_for_role("load-balancer"), -2)

    def node_pools(self) -> List[NodePool]:
        """Control-plane pools first, then worker pools, in file order."""
        pools = []
        for role, entries in ((NodeRole.CONTROL_PLANE, self.control_planes),
                              (NodeRole.WORKER, self.workers)):
            for i, entry in enumerate(entries):
                pools.append(NodePool(
                    name=entry.name,
                    role=role,
                    count=entry.count,
                    server_type=entry.type,
                    location=entry.location or self.location,
                    image=entry.image or self.image,
                    labels=dict(entry.labels),
                    placement_group=entry.placement_group,
                    index=i,
                ))
        return pools

    def firewall_rules(self) -> List[FirewallRule]:
        """Kube API and Talos API ingress rules plus configured extras."""
        fw = self.firewall
        rules = []
        kube_sources = fw.kube_api_source or fw.api_source
        talos_sources = fw.talos_api_source or fw.api_source
        if kube_sources:
            rules.append(FirewallRule('in', 'tcp', str(self.kubernetes.api_port), list(kube_sources),
                                      "Allow Incoming Requests to Kube API"))
        if talos_sources:
            rules.append(FirewallRule('in', 'tcp', str(TALOS_API_PORT), list(talos_sources),
                                      "Allow Incoming Requests to Talos API"))
        for extra in fw.extra_rules:
            rules.append(FirewallRule(extra.direction, extra.protocol, extra.port,
                                      list(extra.source_ips), extra.description))
        return rules


SubnetAllocator.register(ClusterConfig)
