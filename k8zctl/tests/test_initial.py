from unittest.mock import Mock, call

import pytest

from k8zctl.modules.clusterconfig import ClusterConfig
from k8zctl.modules.provisioning.errors import (
    CancellationError,
    InfrastructureError,
    UpgradeCallError,
)
from k8zctl.modules.provisioning.initial import InitialProvisioner
from k8zctl.modules.provisioning.interfaces import InfrastructureManager
from k8zctl.modules.provisioning.models import (
    Firewall,
    LoadBalancer,
    Network,
    PlacementGroup,
    Server,
)
from k8zctl.modules.provisioning.observability import EventType

from .conftest import cluster_dict, make_ctx, make_talos


def make_cloud():
    """InfrastructureManager mock that hands out sequential public IPs."""
    infra = Mock(spec=InfrastructureManager)
    infra.ensure_network.side_effect = lambda name, *a: Network(1, name, "10.0.0.0/16")
    infra.ensure_firewall.side_effect = lambda name, *a: Firewall(2, name)
    groups = {}

    def placement_group(name, labels):
        groups.setdefault(name, PlacementGroup(100 + len(groups), name))
        return groups[name]

    infra.ensure_placement_group.side_effect = placement_group
    infra.ensure_load_balancer.side_effect = lambda name, *a: LoadBalancer(3, name, "203.0.113.10", "10.0.64.254")
    servers = {}

    def server(spec):
        servers.setdefault(spec.name, Server(
            id=10 + len(servers), name=spec.name, status="running",
            ipv4=f"198.51.100.{len(servers) + 1}", private_ip=spec.private_ip,
        ))
        return servers[spec.name]

    infra.ensure_server.side_effect = server
    return infra


def make_provisioner():
    return InitialProvisioner(port_waiter=Mock(), api_waiter=Mock(return_value="v1.31.0"))


def provision_talos():
    talos = make_talos()
    talos.get_client_config.return_value = b"talosconfig"
    talos.generate_control_plane_config.return_value = b"controlplane"
    talos.generate_worker_config.return_value = b"worker"
    talos.get_kubeconfig.return_value = b"kubeconfig"
    return talos


def test_steps_run_in_dependency_order(cluster_config):
    ctx = make_ctx(cluster_config, infra=make_cloud(), talos=provision_talos())
    make_provisioner().provision(ctx)

    started = [e.phase for e in ctx.observer.events if e.type == EventType.PHASE_STARTED]
    assert started == [
        "network", "firewall", "placement-groups", "load-balancer",
        "control-plane-servers", "bootstrap", "join-control-planes", "workers", "addons",
    ]
    assert ctx.state.metadata["addons"] == "handed-off"


def test_endpoint_comes_from_load_balancer(cluster_config):
    talos = provision_talos()
    ctx = make_ctx(cluster_config, infra=make_cloud(), talos=talos)
    make_provisioner().provision(ctx)

    talos.set_endpoint.assert_called_once_with("https://203.0.113.10:6443")
    assert ctx.state.metadata["endpoint"] == "https://203.0.113.10:6443"
    assert ctx.state.sans[:2] == ["203.0.113.10", "10.0.64.254"]


def test_servers_get_deterministic_private_ips(cluster_config):
    infra = make_cloud()
    ctx = make_ctx(cluster_config, infra=infra, talos=provision_talos())
    make_provisioner().provision(ctx)

    specs = {c.args[0].name: c.args[0] for c in infra.ensure_server.call_args_list}
    assert specs["demo-cp-1"].private_ip == "10.0.64.2"
    assert specs["demo-cp-3"].private_ip == "10.0.64.4"
    assert specs["demo-w-1"].private_ip == "10.0.65.2"
    assert specs["demo-cp-1"].placement_group_id == 100
    assert specs["demo-cp-1"].labels["role"] == "control-plane"
    assert specs["demo-w-2"].firewall_id == 2
    assert specs["demo-w-2"].network_id == 1


def test_bootstrap_happens_once_on_first_control_plane(cluster_config):
    talos = provision_talos()
    provisioner = make_provisioner()
    ctx = make_ctx(cluster_config, infra=make_cloud(), talos=talos)
    provisioner.provision(ctx)

    first_ip = ctx.state.control_plane_servers["demo-cp-1"].ipv4
    talos.bootstrap.assert_called_once_with(first_ip)
    talos.get_kubeconfig.assert_called_once_with(first_ip)
    assert ctx.state.kubeconfig == b"kubeconfig"
    provisioner.api_waiter.assert_called_once()
    assert provisioner.api_waiter.call_args.args[0] == b"kubeconfig"


def test_every_node_is_configured_in_maintenance_mode(cluster_config):
    talos = provision_talos()
    provisioner = make_provisioner()
    ctx = make_ctx(cluster_config, infra=make_cloud(), talos=talos)
    provisioner.provision(ctx)

    assert talos.apply_config.call_count == 5
    for c in talos.apply_config.call_args_list:
        assert c.kwargs == {"insecure": True}
    assert provisioner.port_waiter.call_count == 5
    assert provisioner.port_waiter.call_args.args[1] == 50000
    assert ctx.state.configured_nodes == [
        "demo-cp-1", "demo-cp-2", "demo-cp-3", "demo-w-1", "demo-w-2",
    ]
    talos.generate_worker_config.assert_called_once_with("")
    assert talos.generate_control_plane_config.call_args_list[0] == call(ctx.state.sans, "demo-cp-1")


def test_resume_after_failure_skips_finished_work(cluster_config):
    infra = make_cloud()
    talos = provision_talos()
    talos.bootstrap.side_effect = [RuntimeError("connection reset"), None]
    provisioner = make_provisioner()
    ctx = make_ctx(cluster_config, infra=infra, talos=talos)

    with pytest.raises(RuntimeError):
        provisioner.provision(ctx)
    failed = [e.phase for e in ctx.observer.events if e.type == EventType.PHASE_FAILED]
    assert failed == ["bootstrap"]
    assert ctx.state.configured_nodes == ["demo-cp-1"]

    provisioner.provision(ctx)

    assert infra.ensure_network.call_count == 1
    assert infra.ensure_load_balancer.call_count == 1
    assert infra.ensure_server.call_count == 5
    assert talos.bootstrap.call_count == 2
    assert talos.apply_config.call_count == 5


def test_resume_after_kubeconfig_failure_fetches_kubeconfig(cluster_config):
    talos = provision_talos()
    talos.get_kubeconfig.side_effect = [
        UpgradeCallError("198.51.100.1", "kubeconfig", "connection refused"),
        b"kubeconfig",
    ]
    provisioner = make_provisioner()
    ctx = make_ctx(cluster_config, infra=make_cloud(), talos=talos)

    with pytest.raises(UpgradeCallError):
        provisioner.provision(ctx)
    assert ctx.state.bootstrapped
    assert ctx.state.kubeconfig is None

    provisioner.provision(ctx)

    talos.bootstrap.assert_called_once()
    assert talos.get_kubeconfig.call_count == 2
    assert ctx.state.kubeconfig == b"kubeconfig"
    provisioner.api_waiter.assert_called_once()
    assert provisioner.api_waiter.call_args[0][0] == b"kubeconfig"


def test_resume_after_api_wait_failure_waits_again(cluster_config):
    talos = provision_talos()
    provisioner = make_provisioner()
    provisioner.api_waiter.side_effect = [RuntimeError("API not reachable"), "v1.31.0"]
    ctx = make_ctx(cluster_config, infra=make_cloud(), talos=talos)

    with pytest.raises(RuntimeError):
        provisioner.provision(ctx)
    assert ctx.state.kubeconfig is None

    provisioner.provision(ctx)

    talos.bootstrap.assert_called_once()
    assert provisioner.api_waiter.call_count == 2
    assert ctx.state.kubeconfig == b"kubeconfig"


def test_rerun_after_success_does_not_bootstrap_again(cluster_config):
    talos = provision_talos()
    provisioner = make_provisioner()
    ctx = make_ctx(cluster_config, infra=make_cloud(), talos=talos)
    provisioner.provision(ctx)
    provisioner.provision(ctx)

    talos.bootstrap.assert_called_once()
    assert talos.apply_config.call_count == 5
    exists = [e for e in ctx.observer.events if e.type == EventType.RESOURCE_EXISTS]
    assert {e.fields["name"] for e in exists} >= {"demo", "demo-kube-api", "demo-cp-1"}


def test_worker_placement_groups_are_sharded():
    config = ClusterConfig.from_dict(cluster_dict(
        control_planes=[{"name": "cp", "count": 1}],
        workers=[{"name": "w", "count": 12, "placement_group": True}],
    ))
    infra = make_cloud()
    ctx = make_ctx(config, infra=infra, talos=provision_talos())
    make_provisioner().provision(ctx)

    names = [c.args[0] for c in infra.ensure_placement_group.call_args_list]
    assert names == ["demo-cp-pg", "demo-w-pg-1", "demo-w-pg-2"]
    specs = {c.args[0].name: c.args[0] for c in infra.ensure_server.call_args_list}
    assert specs["demo-w-10"].placement_group_id == specs["demo-w-1"].placement_group_id
    assert specs["demo-w-11"].placement_group_id != specs["demo-w-10"].placement_group_id


def test_single_control_plane_has_nothing_to_join():
    config = ClusterConfig.from_dict(cluster_dict(control_planes=[{"name": "cp", "count": 1}], workers=[]))
    talos = provision_talos()
    ctx = make_ctx(config, infra=make_cloud(), talos=talos)
    make_provisioner().provision(ctx)

    talos.generate_control_plane_config.assert_called_once()
    talos.generate_worker_config.assert_not_called()


def test_load_balancer_without_ip_fails(cluster_config):
    infra = make_cloud()
    infra.ensure_load_balancer.side_effect = lambda name, *a: LoadBalancer(3, name)
    ctx = make_ctx(cluster_config, infra=infra, talos=provision_talos())

    with pytest.raises(InfrastructureError):
        make_provisioner().provision(ctx)
    infra.ensure_server.assert_not_called()


def test_cancel_stops_between_steps(cluster_config):
    infra = make_cloud()
    ctx = make_ctx(cluster_config, infra=infra, talos=provision_talos())

    def network(name, *args):
        ctx.cancel.set()
        return Network(1, name, "10.0.0.0/16")

    infra.ensure_network.side_effect = network

    with pytest.raises(CancellationError):
        make_provisioner().provision(ctx)
    infra.ensure_firewall.assert_not_called()
