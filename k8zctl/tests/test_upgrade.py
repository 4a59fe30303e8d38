import threading
import time
from collections import Counter

import pytest

from k8zctl.modules.provisioning.errors import (
    CancellationError,
    FatalUpgradeError,
    GateTimeoutError,
    HealthCheckFailure,
    PartialUpgradeError,
    ReadinessTimeoutError,
    UpgradeCallError,
    ValidationError,
)
from k8zctl.modules.provisioning.models import NodeState, Outcome, Phase
from k8zctl.modules.provisioning.observability import EventType
from k8zctl.modules.provisioning.upgrade import UpgradeOrchestrator

from .conftest import CP_IPS, WORKER_IPS, make_ctx, make_infra, make_talos

CP_ENDPOINTS = list(CP_IPS.values())
WORKER_ENDPOINTS = list(WORKER_IPS.values())


def record_calls(talos):
    """Record every node-level call in a shared timeline."""
    timeline = []

    def recorder(op):
        def side_effect(endpoint, *args, **kwargs):
            timeline.append((op, endpoint))
        return side_effect

    talos.upgrade_node.side_effect = recorder("upgrade")
    talos.wait_for_node_ready.side_effect = recorder("wait")
    talos.health_check.side_effect = recorder("health")
    return timeline


def fail_for(endpoint, error, op_log=None):
    def side_effect(ep, *args, **kwargs):
        if op_log is not None:
            op_log.append(ep)
        if ep == endpoint:
            raise error
    return side_effect


def test_full_upgrade_call_counts(cluster_config):
    talos = make_talos()
    ctx = make_ctx(cluster_config, talos=talos, k8s_version_override="v1.31.0")

    UpgradeOrchestrator().provision(ctx)

    assert ctx.result.outcome == Outcome.SUCCESS
    assert talos.upgrade_node.call_count == 5
    assert talos.wait_for_node_ready.call_count == 5
    assert talos.upgrade_kubernetes.call_count == 1
    # One probe per node plus the two cluster gates
    assert talos.health_check.call_count == 7
    talos.upgrade_kubernetes.assert_called_once_with("192.0.2.1", "v1.31.0")
    assert ctx.result.kubernetes_upgraded
    assert all(n.state == NodeState.DONE for n in ctx.result.plan.nodes)
    assert "Upgrade completed successfully" in ctx.result.summary_lines()


def test_control_planes_upgrade_one_at_a_time(cluster_config):
    talos = make_talos()
    timeline = record_calls(talos)
    ctx = make_ctx(cluster_config, talos=talos)

    UpgradeOrchestrator().provision(ctx)

    cp_part = timeline[:9]
    expected = []
    for ep in CP_ENDPOINTS:
        expected += [("upgrade", ep), ("wait", ep), ("health", ep)]
    assert cp_part == expected
    # Cluster gate runs before any worker is touched
    assert timeline[9] == ("health", "192.0.2.1")
    worker_upgrades = [ep for op, ep in timeline[10:] if op == "upgrade"]
    assert sorted(worker_upgrades) == WORKER_ENDPOINTS


def test_node_transitions(cluster_config):
    ctx = make_ctx(cluster_config)
    UpgradeOrchestrator().provision(ctx)

    assert ctx.observer.transitions_for("demo-cp-1") == [
        "upgrading", "waiting_ready", "health_checking", "done",
    ]


def test_phase_events_in_order(cluster_config):
    ctx = make_ctx(cluster_config, k8s_version_override="v1.31.0")
    UpgradeOrchestrator().provision(ctx)

    started = [e.phase for e in ctx.observer.events if e.type == EventType.PHASE_STARTED]
    assert started == [p.value for p in Phase]


def test_control_plane_failure_aborts(cluster_config):
    talos = make_talos()
    talos.upgrade_node.side_effect = fail_for("192.0.2.2", RuntimeError("installer pull failed"))
    ctx = make_ctx(cluster_config, talos=talos, k8s_version_override="v1.31.0")

    with pytest.raises(FatalUpgradeError) as exc_info:
        UpgradeOrchestrator().provision(ctx)

    result = exc_info.value.result
    assert result.outcome == Outcome.FATAL
    assert result.failed_phase == Phase.UPGRADE_CONTROL_PLANES
    assert result.failed_node == "demo-cp-2"
    assert isinstance(result.error, UpgradeCallError)
    assert isinstance(result.error.__cause__, RuntimeError)
    assert talos.upgrade_node.call_count == 2
    talos.upgrade_kubernetes.assert_not_called()
    plan = result.plan
    assert plan.node("demo-cp-1").state == NodeState.DONE
    assert plan.node("demo-cp-2").state == NodeState.FAILED
    assert plan.node("demo-cp-3").state == NodeState.PENDING
    assert all(n.state == NodeState.PENDING for n in plan.workers)


def test_control_plane_health_failure_aborts(cluster_config):
    talos = make_talos()
    talos.health_check.side_effect = fail_for(
        "192.0.2.2", HealthCheckFailure("192.0.2.2", "etcd member unhealthy"),
    )
    ctx = make_ctx(cluster_config, talos=talos)

    with pytest.raises(FatalUpgradeError) as exc_info:
        UpgradeOrchestrator().provision(ctx)

    assert talos.upgrade_node.call_count == 2
    assert isinstance(exc_info.value.cause, HealthCheckFailure)
    # talosctl health waits on its own, so a failed node check is not repeated
    assert [c.args[0] for c in talos.health_check.call_args_list] == ["192.0.2.1", "192.0.2.2"]
    assert exc_info.value.result.failed_node == "demo-cp-2"
    assert ctx.observer.transitions_for("demo-cp-2")[-1] == "failed"


def test_readiness_timeout_is_distinct_from_health_failure(cluster_config):
    talos = make_talos()
    talos.wait_for_node_ready.side_effect = fail_for("192.0.2.1", ReadinessTimeoutError("192.0.2.1", 0.1))
    ctx = make_ctx(cluster_config, talos=talos)

    with pytest.raises(FatalUpgradeError) as exc_info:
        UpgradeOrchestrator().provision(ctx)

    error = exc_info.value.cause
    assert isinstance(error, ReadinessTimeoutError)
    assert not isinstance(error, HealthCheckFailure)
    talos.health_check.assert_not_called()


def test_generic_gate_timeout_while_waiting_becomes_readiness_timeout(cluster_config):
    talos = make_talos()
    gate_error = GateTimeoutError("node 192.0.2.1", 0.1)
    talos.wait_for_node_ready.side_effect = fail_for("192.0.2.1", gate_error)
    ctx = make_ctx(cluster_config, talos=talos)

    with pytest.raises(FatalUpgradeError) as exc_info:
        UpgradeOrchestrator().provision(ctx)

    error = exc_info.value.cause
    assert isinstance(error, ReadinessTimeoutError)
    assert error.endpoint == "192.0.2.1"
    assert error.__cause__ is gate_error


def test_worker_failure_is_isolated(cluster_config):
    talos = make_talos()
    talos.upgrade_node.side_effect = fail_for("192.0.2.11", RuntimeError("disk full"))
    ctx = make_ctx(cluster_config, talos=talos, k8s_version_override="v1.31.0")

    with pytest.raises(PartialUpgradeError) as exc_info:
        UpgradeOrchestrator().provision(ctx)

    result = exc_info.value.result
    assert exc_info.value.failed_workers == ["demo-w-1"]
    assert result.outcome == Outcome.PARTIAL
    assert result.plan.node("demo-w-2").state == NodeState.DONE
    assert all(n.state == NodeState.DONE for n in result.plan.control_planes)
    # Kubernetes upgrade is held back, the final health check still runs
    talos.upgrade_kubernetes.assert_not_called()
    assert Phase.UPGRADE_KUBERNETES in result.skipped_phases
    assert talos.health_check.call_count == 3 + 1 + 1 + 1


def test_unreachable_worker_does_not_block_other_nodes(cluster_config):
    talos = make_talos()

    def get_node_version(endpoint):
        if endpoint == "192.0.2.12":
            raise RuntimeError("no route to host")
        return "v1.8.3"

    talos.get_node_version.side_effect = get_node_version
    ctx = make_ctx(cluster_config, talos=talos)

    with pytest.raises(PartialUpgradeError) as exc_info:
        UpgradeOrchestrator().provision(ctx)

    result = exc_info.value.result
    assert result.outcome == Outcome.PARTIAL
    assert exc_info.value.failed_workers == ["demo-w-2"]
    assert talos.upgrade_node.call_count == 4
    upgraded = {c.args[0] for c in talos.upgrade_node.call_args_list}
    assert "192.0.2.12" not in upgraded
    assert all(n.state == NodeState.DONE for n in result.plan.control_planes)
    assert result.plan.node("demo-w-1").state == NodeState.DONE
    assert talos.health_check.call_count == 3 + 1 + 1 + 1


def test_continue_on_worker_failure_upgrades_kubernetes(cluster_config):
    talos = make_talos()
    talos.upgrade_node.side_effect = fail_for("192.0.2.12", RuntimeError("disk full"))
    ctx = make_ctx(cluster_config, talos=talos, k8s_version_override="v1.31.0",
                   continue_on_worker_failure=True)

    with pytest.raises(PartialUpgradeError):
        UpgradeOrchestrator().provision(ctx)

    talos.upgrade_kubernetes.assert_called_once()
    assert ctx.result.kubernetes_upgraded
    assert Phase.UPGRADE_KUBERNETES not in ctx.result.skipped_phases


def test_workers_run_concurrently(cluster_config):
    barrier = threading.Barrier(2, timeout=5)
    talos = make_talos()

    def upgrade(endpoint, *args):
        if endpoint in WORKER_ENDPOINTS:
            barrier.wait()

    talos.upgrade_node.side_effect = upgrade
    ctx = make_ctx(cluster_config, talos=talos)

    UpgradeOrchestrator().provision(ctx)

    assert all(n.state == NodeState.DONE for n in ctx.result.plan.workers)


def test_max_parallel_bounds_worker_concurrency(cluster_config):
    lock = threading.Lock()
    active = Counter()
    talos = make_talos()

    def upgrade(endpoint, *args):
        if endpoint not in WORKER_ENDPOINTS:
            return
        with lock:
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
        time.sleep(0.02)
        with lock:
            active["now"] -= 1

    talos.upgrade_node.side_effect = upgrade
    ctx = make_ctx(cluster_config, talos=talos, max_parallel=1)

    UpgradeOrchestrator().provision(ctx)

    assert active["peak"] == 1
    assert talos.upgrade_node.call_count == 5


def test_nodes_at_target_are_skipped(cluster_config):
    talos = make_talos({"192.0.2.2": "v1.9.0", "192.0.2.12": "1.9.0"})
    ctx = make_ctx(cluster_config, talos=talos)

    UpgradeOrchestrator().provision(ctx)

    upgraded = [c.args[0] for c in talos.upgrade_node.call_args_list]
    assert "192.0.2.2" not in upgraded
    assert "192.0.2.12" not in upgraded
    assert talos.upgrade_node.call_count == 3
    assert ctx.observer.transitions_for("demo-cp-2") == ["done"]
    assert ctx.result.outcome == Outcome.SUCCESS


def test_rerun_after_success_changes_nothing(cluster_config):
    talos = make_talos(default="v1.9.0")
    ctx = make_ctx(cluster_config, talos=talos)

    UpgradeOrchestrator().provision(ctx)

    talos.upgrade_node.assert_not_called()
    talos.wait_for_node_ready.assert_not_called()


def test_dry_run_makes_no_mutating_calls(cluster_config):
    talos = make_talos()
    ctx = make_ctx(cluster_config, talos=talos, dry_run=True, k8s_version_override="v1.31.0")

    UpgradeOrchestrator().provision(ctx)

    talos.upgrade_node.assert_not_called()
    talos.upgrade_kubernetes.assert_not_called()
    assert talos.get_node_version.call_count == 5
    assert ctx.result.outcome == Outcome.SUCCESS
    assert ctx.result.plan.dry_run


def test_skip_health_check(cluster_config):
    talos = make_talos()
    ctx = make_ctx(cluster_config, talos=talos, skip_health_check=True)

    UpgradeOrchestrator().provision(ctx)

    talos.health_check.assert_not_called()
    assert talos.wait_for_node_ready.call_count == 5
    assert ctx.observer.transitions_for("demo-w-1") == ["upgrading", "waiting_ready", "done"]
    assert Phase.FINAL_HEALTH_CHECK in ctx.result.skipped_phases


def test_cluster_gate_timeout_is_fatal(cluster_config):
    talos = make_talos()
    seen = Counter()

    def health(endpoint):
        seen[endpoint] += 1
        # cp-1's own node check passes, every later cluster probe fails
        if endpoint == "192.0.2.1" and seen[endpoint] > 1:
            raise HealthCheckFailure(endpoint, "kube-apiserver not ready")

    talos.health_check.side_effect = health
    ctx = make_ctx(cluster_config, talos=talos)

    with pytest.raises(FatalUpgradeError) as exc_info:
        UpgradeOrchestrator().provision(ctx)

    result = exc_info.value.result
    assert result.failed_phase == Phase.UPGRADE_CONTROL_PLANES
    assert result.failed_node is None
    assert isinstance(result.error, HealthCheckFailure)
    assert "kube-apiserver not ready" in str(result.error)
    assert isinstance(result.error.__cause__, GateTimeoutError)
    assert talos.upgrade_node.call_count == 3


def test_kubernetes_upgrade_failure_is_fatal(cluster_config):
    talos = make_talos()
    talos.upgrade_kubernetes.side_effect = UpgradeCallError("192.0.2.1", "upgrade-k8s", "etcd busy")
    ctx = make_ctx(cluster_config, talos=talos, k8s_version_override="v1.31.0")

    with pytest.raises(FatalUpgradeError) as exc_info:
        UpgradeOrchestrator().provision(ctx)

    assert exc_info.value.result.failed_phase == Phase.UPGRADE_KUBERNETES
    assert isinstance(exc_info.value.cause, UpgradeCallError)


def test_cancel_before_start(cluster_config):
    talos = make_talos()
    ctx = make_ctx(cluster_config, talos=talos)
    ctx.cancel.set()

    with pytest.raises(CancellationError):
        UpgradeOrchestrator().provision(ctx)

    talos.upgrade_node.assert_not_called()
    assert ctx.result.outcome == Outcome.CANCELLED
    assert all(n.state == NodeState.PENDING for n in ctx.result.plan.nodes)


def test_cancel_during_control_plane(cluster_config):
    talos = make_talos()
    ctx = make_ctx(cluster_config, talos=talos)
    talos.upgrade_node.side_effect = lambda *args: ctx.cancel.set()

    with pytest.raises(CancellationError):
        UpgradeOrchestrator().provision(ctx)

    assert talos.upgrade_node.call_count == 1
    assert ctx.result.outcome == Outcome.CANCELLED
    assert ctx.result.failed_phase == Phase.UPGRADE_CONTROL_PLANES
    assert ctx.result.plan.node("demo-cp-2").state == NodeState.PENDING


def test_validation_error_stops_before_any_change(cluster_config):
    talos = make_talos()
    ctx = make_ctx(cluster_config, infra=make_infra({}), talos=talos)

    with pytest.raises(ValidationError):
        UpgradeOrchestrator().provision(ctx)

    talos.upgrade_node.assert_not_called()
    assert ctx.result is None


def test_no_workers(cluster_config):
    config = cluster_config.model_copy(update={"workers": []})
    talos = make_talos()
    ctx = make_ctx(config, talos=talos)

    UpgradeOrchestrator().provision(ctx)

    assert talos.upgrade_node.call_count == 3
    assert ctx.result.outcome == Outcome.SUCCESS
