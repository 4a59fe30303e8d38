"""Stable, cluster-scoped names and labels for cloud resources.

Every resource the provisioner creates is looked up by one of these names
before it is created, which is what makes a re-run idempotent.
"""
from typing import Dict, Optional

LABEL_CLUSTER = "cluster"
LABEL_ROLE = "role"
LABEL_POOL = "pool"
LABEL_MANAGED_BY = "managed-by"
MANAGED_BY = "k8zctl"


def network(cluster: str) -> str:
    return cluster


def firewall(cluster: str) -> str:
    return cluster


def kube_api_load_balancer(cluster: str) -> str:
    return f"{cluster}-kube-api"


def placement_group(cluster: str, pool: str) -> str:
    return f"{cluster}-{pool}-pg"


def worker_placement_group_shard(cluster: str, pool: str, shard: int) -> str:
    """Placement groups hold at most 10 servers, so worker pools are sharded."""
    return f"{cluster}-{pool}-pg-{shard}"


def server_name(cluster: str, pool: str, index: int) -> str:
    return f"{cluster}-{pool}-{index}"


def labels(cluster: str, role: Optional[str] = None, pool: Optional[str] = None,
           extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Build the label set attached to every managed resource."""
    result = dict(extra or {})
    result[LABEL_CLUSTER] = cluster
    result[LABEL_MANAGED_BY] = MANAGED_BY
    if role:
        result[LABEL_ROLE] = role
    if pool:
        result[LABEL_POOL] = pool
    return result


def label_selector(selector: Dict[str, str]) -> str:
    """Render a label dict as an API label selector (``k=v,k2=v2``)."""
    return ",".join(f"{k}={v}" for k, v in sorted(selector.items()))
