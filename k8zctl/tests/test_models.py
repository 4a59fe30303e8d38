import pytest

from k8zctl.modules.provisioning import naming
from k8zctl.modules.provisioning.errors import FatalUpgradeError, PartialUpgradeError
from k8zctl.modules.provisioning.models import (
    Node,
    NodePool,
    NodeRole,
    NodeState,
    Outcome,
    Phase,
    UpgradePlan,
    UpgradeResult,
)


def test_node_follows_state_machine():
    node = Node(name="demo-cp-1", role=NodeRole.CONTROL_PLANE)
    assert node.transition(NodeState.UPGRADING) == NodeState.PENDING
    node.transition(NodeState.WAITING_READY)
    node.transition(NodeState.HEALTH_CHECKING)
    node.transition(NodeState.DONE)
    assert [state for state, _ in node.history] == [
        NodeState.UPGRADING, NodeState.WAITING_READY, NodeState.HEALTH_CHECKING, NodeState.DONE,
    ]


@pytest.mark.parametrize("start,target", [
    (NodeState.PENDING, NodeState.WAITING_READY),
    (NodeState.UPGRADING, NodeState.DONE),
    (NodeState.DONE, NodeState.FAILED),
    (NodeState.FAILED, NodeState.UPGRADING),
])
def test_illegal_transitions_raise(start, target):
    node = Node(name="demo-w-1", role=NodeRole.WORKER, state=start)
    with pytest.raises(RuntimeError):
        node.transition(target)
    assert node.state == start


def test_pool_nodes_have_stable_names():
    pool = NodePool(name="w", role=NodeRole.WORKER, count=3, server_type="cx32", location="nbg1")
    assert [n.name for n in pool.nodes("demo")] == ["demo-w-1", "demo-w-2", "demo-w-3"]
    assert [n.index for n in pool.nodes("demo")] == [1, 2, 3]


def test_labels_and_selector():
    labels = naming.labels("demo", role="worker", pool="w", extra={"team": "infra"})
    assert labels == {
        "team": "infra", "cluster": "demo", "managed-by": "k8zctl", "role": "worker", "pool": "w",
    }
    assert naming.label_selector({"role": "worker", "cluster": "demo"}) == "cluster=demo,role=worker"


def make_result(worker_states):
    cp = Node(name="demo-cp-1", role=NodeRole.CONTROL_PLANE, endpoint="192.0.2.1", state=NodeState.DONE)
    workers = tuple(
        Node(name=f"demo-w-{i}", role=NodeRole.WORKER, state=state)
        for i, state in enumerate(worker_states, 1)
    )
    return UpgradeResult(plan=UpgradePlan(control_planes=(cp,), workers=workers, target_talos_version="v1.9.0"))


def test_partial_error_lists_failed_workers():
    result = make_result([NodeState.DONE, NodeState.FAILED])
    result.outcome = Outcome.PARTIAL

    error = PartialUpgradeError(result)

    assert error.failed_workers == ["demo-w-2"]
    assert "1 worker failure(s): demo-w-2" in str(error)
    assert result.summary_lines()[-1] == "Upgrade completed with 1 worker failure(s): demo-w-2"


def test_fatal_error_names_node_and_phase():
    result = make_result([])
    result.outcome = Outcome.FATAL
    result.failed_phase = Phase.UPGRADE_CONTROL_PLANES
    result.failed_node = "demo-cp-1"
    result.error = RuntimeError("installer pull failed")

    error = FatalUpgradeError(result)

    assert "upgrade_control_planes" in str(error)
    assert "demo-cp-1" in str(error)
    assert error.cause is result.error
