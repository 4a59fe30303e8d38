import threading
from typing import Dict, Optional
from unittest.mock import Mock

import pytest

from k8zctl.config import Timeouts
from k8zctl.modules.clusterconfig import ClusterConfig
from k8zctl.modules.provisioning.context import ProvisioningContext
from k8zctl.modules.provisioning.interfaces import InfrastructureManager, TalosConfigProducer
from k8zctl.modules.provisioning.models import Server, UpgradeOptions

CP_IPS = {
    "demo-cp-1": "192.0.2.1",
    "demo-cp-2": "192.0.2.2",
    "demo-cp-3": "192.0.2.3",
}
WORKER_IPS = {
    "demo-w-1": "192.0.2.11",
    "demo-w-2": "192.0.2.12",
}
ALL_IPS = {**CP_IPS, **WORKER_IPS}


def cluster_dict(**overrides) -> dict:
    data = {
        "cluster_name": "demo",
        "location": "nbg1",
        "control_planes": [{"name": "cp", "type": "cx22", "count": 3}],
        "workers": [{"name": "w", "type": "cx32", "count": 2}],
        "talos": {"version": "v1.9.0"},
    }
    data.update(overrides)
    return data


@pytest.fixture
def cluster_config() -> ClusterConfig:
    return ClusterConfig.from_dict(cluster_dict())


def make_infra(ips: Optional[Dict[str, str]] = None) -> Mock:
    ips = ALL_IPS if ips is None else ips
    infra = Mock(spec=InfrastructureManager)

    def get_server(name):
        if name not in ips:
            return None
        return Server(id=len(name), name=name, status="running", ipv4=ips[name])

    infra.get_server.side_effect = get_server
    return infra


def make_talos(versions: Optional[Dict[str, str]] = None, default: str = "v1.8.3") -> Mock:
    versions = versions or {}
    talos = Mock(spec=TalosConfigProducer)
    talos.get_node_version.side_effect = lambda endpoint: versions.get(endpoint, default)
    talos.upgrade_node.return_value = None
    talos.upgrade_kubernetes.return_value = None
    talos.wait_for_node_ready.return_value = None
    talos.health_check.return_value = None
    return talos


def make_ctx(config: ClusterConfig, infra=None, talos=None, **options) -> ProvisioningContext:
    return ProvisioningContext(
        config=config,
        infra=infra if infra is not None else make_infra(),
        talos=talos if talos is not None else make_talos(),
        options=UpgradeOptions(**options),
        timeouts=Timeouts.for_tests(),
        cancel=threading.Event(),
    )


@pytest.fixture
def infra() -> Mock:
    return make_infra()


@pytest.fixture
def talos() -> Mock:
    return make_talos()
