"""Talos OS and Kubernetes upgrade orchestration.

The upgrade happens in phases:

1. Validate the config and build the plan from live node versions
2. Upgrade control plane nodes one at a time (keeps etcd quorum)
3. Check cluster health
4. Upgrade worker nodes in parallel
5. Upgrade Kubernetes (if a target version is set)
6. Final cluster health check

A failed control plane aborts the run. Failed workers are collected and the
run finishes as a partial success.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Optional

from .context import ProvisioningContext
from .dryrun import DryRunTalosProducer
from .errors import (
    CancellationError,
    FatalUpgradeError,
    GateTimeoutError,
    HealthCheckFailure,
    PartialUpgradeError,
    ReadinessTimeoutError,
    UpgradeCallError,
)
from .health import HealthGate
from .interfaces import Provisioner, TalosConfigProducer
from .models import Node, NodeState, Outcome, Phase, UpgradePlan, UpgradeResult
from .plan import build_upgrade_plan, plan_report, same_version

logger = logging.getLogger("k8zctl.provisioning.upgrade")

PHASE = "Upgrade"


class UpgradeOrchestrator(Provisioner):
    """Moves an existing cluster to new Talos and Kubernetes versions.

    Nothing is retried here; re-running ``provision`` rebuilds the plan from
    live versions and skips nodes that already reached the target.
    """

    name = "upgrade"

    def __init__(self, plan_builder: Callable[..., UpgradePlan] = build_upgrade_plan):
        self.plan_builder = plan_builder

    def provision(self, ctx: ProvisioningContext) -> None:
        """Run the upgrade and store the result on ``ctx.result``.

        Raises:
            ValidationError: If the plan cannot be built (nothing was changed)
            FatalUpgradeError: If a control plane, the Kubernetes upgrade or
                a cluster health check failed
            PartialUpgradeError: If only workers failed
            CancellationError: If the run was cancelled
        """
        result = self.run(ctx)
        ctx.result = result
        for line in result.summary_lines():
            ctx.observer.info(PHASE, line)

        if result.outcome == Outcome.CANCELLED:
            raise CancellationError(
                f"upgrade cancelled during {result.failed_phase.value}"
            ) from result.error
        if result.outcome == Outcome.FATAL:
            raise FatalUpgradeError(result) from result.error
        if result.outcome == Outcome.PARTIAL:
            raise PartialUpgradeError(result)

    def run(self, ctx: ProvisioningContext) -> UpgradeResult:
        """Execute all phases and return the result without raising for failures."""
        talos = ctx.talos
        if ctx.options.dry_run:
            talos = DryRunTalosProducer(ctx.talos)

        ctx.observer.info(PHASE, f"Starting cluster upgrade for: {ctx.config.cluster_name}")
        ctx.observer.phase_started(Phase.VALIDATE.value)
        try:
            plan = self.plan_builder(ctx.config, ctx.options, ctx.infra, talos)
        except Exception as e:
            ctx.observer.phase_failed(Phase.VALIDATE.value, e)
            raise
        ctx.observer.phase_completed(Phase.VALIDATE.value)

        if plan.dry_run:
            for line in plan_report(plan):
                ctx.observer.info(PHASE, line)
            ctx.observer.info(PHASE, "This is a dry run. No changes will be made.")

        result = UpgradeResult(plan=plan)
        try:
            self._run_phases(ctx, talos, plan, result)
        finally:
            result.finished_at = time.time()
        return result

    def _run_phases(self, ctx: ProvisioningContext, talos: TalosConfigProducer,
                    plan: UpgradePlan, result: UpgradeResult) -> None:
        # Control planes, strictly one after the other
        phase = Phase.UPGRADE_CONTROL_PLANES
        ctx.observer.phase_started(phase.value)
        for i, node in enumerate(plan.control_planes, 1):
            if ctx.cancelled:
                self._cancelled(ctx, result, phase, CancellationError("cancelled before control plane upgrade"))
                return
            ctx.observer.info(PHASE, f"Upgrading control plane node {i}/{len(plan.control_planes)} ({node.name})")
            self._drive_node(ctx, talos, plan, node, phase)
            if node.state == NodeState.FAILED:
                self._node_failed(ctx, result, phase, node)
                return

        if not plan.skip_health_check:
            if not self._cluster_gate(ctx, talos, plan, result, phase, "cluster health after control planes"):
                return
        ctx.observer.phase_completed(phase.value)

        # Workers, all at once
        phase = Phase.UPGRADE_WORKERS
        if ctx.cancelled:
            self._cancelled(ctx, result, phase, CancellationError("cancelled before worker upgrade"))
            return
        ctx.observer.phase_started(phase.value)
        self._upgrade_workers(ctx, talos, plan)
        if ctx.cancelled:
            self._cancelled(ctx, result, phase, CancellationError("cancelled during worker upgrade"))
            return
        failed_workers = result.failed_workers
        if failed_workers:
            ctx.observer.warning(
                phase.value,
                f"{len(failed_workers)} worker(s) failed: {', '.join(n.name for n in failed_workers)}",
            )
        ctx.observer.phase_completed(phase.value)

        # Kubernetes, once against the cluster endpoint
        phase = Phase.UPGRADE_KUBERNETES
        if not plan.target_kubernetes_version:
            ctx.observer.info(phase.value, "No Kubernetes version specified, skipping Kubernetes upgrade")
        elif failed_workers and not ctx.options.continue_on_worker_failure:
            ctx.observer.warning(
                phase.value,
                "Skipping Kubernetes upgrade because workers failed "
                "(use --continue-on-worker-failure to override)",
            )
            result.skipped_phases.append(phase)
        else:
            if ctx.cancelled:
                self._cancelled(ctx, result, phase, CancellationError("cancelled before Kubernetes upgrade"))
                return
            if not self._upgrade_kubernetes(ctx, talos, plan, result):
                return

        # Final health check
        phase = Phase.FINAL_HEALTH_CHECK
        if plan.skip_health_check:
            result.skipped_phases.append(phase)
        else:
            ctx.observer.phase_started(phase.value)
            if not self._cluster_gate(ctx, talos, plan, result, phase, "final cluster health"):
                return
            ctx.observer.phase_completed(phase.value)

        result.outcome = Outcome.PARTIAL if failed_workers else Outcome.SUCCESS

    def _upgrade_workers(self, ctx: ProvisioningContext, talos: TalosConfigProducer,
                         plan: UpgradePlan) -> None:
        if not plan.workers:
            ctx.observer.info(Phase.UPGRADE_WORKERS.value, "No worker nodes found, skipping")
            return

        max_workers = len(plan.workers)
        if ctx.options.max_parallel > 0:
            max_workers = min(max_workers, ctx.options.max_parallel)

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="upgrade-worker") as executor:
            future_to_node = {
                executor.submit(self._drive_node, ctx, talos, plan, node, Phase.UPGRADE_WORKERS): node
                for node in plan.workers
            }
            for future in as_completed(future_to_node):
                node = future_to_node[future]
                try:
                    future.result()
                except Exception as e:
                    logger.error(f"Unexpected error upgrading worker {node.name}: {e}", exc_info=True)
                    if not node.state.terminal:
                        self._fail(ctx, Phase.UPGRADE_WORKERS, node, e)

    def _drive_node(self, ctx: ProvisioningContext, talos: TalosConfigProducer,
                    plan: UpgradePlan, node: Node, phase: Phase) -> Node:
        """Take one node through the upgrade state machine.

        Errors never escape; they are stored on the node and it ends FAILED.
        A cancelled run leaves a not yet started node PENDING. Nodes already
        FAILED at plan time are left as they are.
        """
        if ctx.cancelled or node.state.terminal:
            return node

        if same_version(node.current_version, node.target_version):
            ctx.observer.info(phase.value, f"Node {node.name} already at version {node.target_version}, skipping")
            self._transition(ctx, phase, node, NodeState.DONE)
            return node

        ctx.observer.info(phase.value, f"Node {node.name}: {node.current_version} → {node.target_version}")
        self._transition(ctx, phase, node, NodeState.UPGRADING)
        try:
            talos.upgrade_node(node.endpoint, node.target_version, plan.node_options)
        except CancellationError as e:
            self._fail(ctx, phase, node, e)
            return node
        except Exception as e:
            self._fail(ctx, phase, node, _chain(UpgradeCallError(node.endpoint, "upgrade", str(e)), e))
            return node

        self._transition(ctx, phase, node, NodeState.WAITING_READY)
        try:
            talos.wait_for_node_ready(node.endpoint, ctx.timeouts.node_ready, cancel=ctx.cancel)
        except (ReadinessTimeoutError, CancellationError) as e:
            self._fail(ctx, phase, node, e)
            return node
        except GateTimeoutError as e:
            self._fail(ctx, phase, node, _chain(ReadinessTimeoutError(node.endpoint, e.timeout), e))
            return node
        except Exception as e:
            self._fail(ctx, phase, node, _chain(UpgradeCallError(node.endpoint, "wait-ready", str(e)), e))
            return node

        if plan.skip_health_check:
            self._transition(ctx, phase, node, NodeState.DONE)
            return node

        self._transition(ctx, phase, node, NodeState.HEALTH_CHECKING)
        try:
            talos.health_check(node.endpoint)
        except (HealthCheckFailure, CancellationError) as e:
            self._fail(ctx, phase, node, e)
            return node
        except Exception as e:
            self._fail(ctx, phase, node, _chain(HealthCheckFailure(node.endpoint, str(e)), e))
            return node

        self._transition(ctx, phase, node, NodeState.DONE)
        ctx.observer.info(phase.value, f"Node {node.name} upgraded successfully")
        return node

    def _cluster_gate(self, ctx: ProvisioningContext, talos: TalosConfigProducer,
                      plan: UpgradePlan, result: UpgradeResult, phase: Phase,
                      description: str) -> bool:
        """Wait for the cluster to report healthy; records a failure on ``result``."""
        endpoint = plan.cluster_endpoint
        last_failure: Optional[HealthCheckFailure] = None

        def probe() -> bool:
            nonlocal last_failure
            try:
                talos.health_check(endpoint)
                return True
            except HealthCheckFailure as e:
                last_failure = e
                logger.debug(f"Cluster not healthy yet: {e.reason}")
                return False

        ctx.observer.info(phase.value, f"Checking {description} via {endpoint}...")
        try:
            HealthGate(ctx.cancel).wait(
                probe,
                timeout=ctx.timeouts.health_check,
                interval=ctx.timeouts.health_check_poll,
                description=description,
            )
        except CancellationError as e:
            self._cancelled(ctx, result, phase, e)
            return False
        except GateTimeoutError as e:
            reason = last_failure.reason if last_failure else str(e)
            error = _chain(HealthCheckFailure(endpoint, f"{description}: {reason}"), e)
            self._run_failed(ctx, result, phase, error)
            return False
        except Exception as e:
            self._run_failed(ctx, result, phase, _chain(HealthCheckFailure(endpoint, str(e)), e))
            return False

        ctx.observer.info(phase.value, "Cluster health check passed")
        return True

    def _upgrade_kubernetes(self, ctx: ProvisioningContext, talos: TalosConfigProducer,
                            plan: UpgradePlan, result: UpgradeResult) -> bool:
        phase = Phase.UPGRADE_KUBERNETES
        target = plan.target_kubernetes_version
        ctx.observer.phase_started(phase.value)
        ctx.observer.info(phase.value, f"Upgrading Kubernetes to version {target}...")
        try:
            talos.upgrade_kubernetes(plan.cluster_endpoint, target)
        except CancellationError as e:
            self._cancelled(ctx, result, phase, e)
            return False
        except UpgradeCallError as e:
            self._run_failed(ctx, result, phase, e)
            return False
        except Exception as e:
            error = _chain(UpgradeCallError(plan.cluster_endpoint, "upgrade-k8s", str(e)), e)
            self._run_failed(ctx, result, phase, error)
            return False
        result.kubernetes_upgraded = True
        ctx.observer.phase_completed(phase.value)
        return True

    def _transition(self, ctx: ProvisioningContext, phase: Phase, node: Node, new_state: NodeState) -> None:
        old = node.transition(new_state)
        ctx.observer.node_transition(phase.value, node.name, old.value, new_state.value)

    def _fail(self, ctx: ProvisioningContext, phase: Phase, node: Node, error: BaseException) -> None:
        node.error = error
        old = node.transition(NodeState.FAILED)
        ctx.observer.node_transition(phase.value, node.name, old.value, NodeState.FAILED.value, error)

    def _node_failed(self, ctx: ProvisioningContext, result: UpgradeResult, phase: Phase, node: Node) -> None:
        if isinstance(node.error, CancellationError):
            self._cancelled(ctx, result, phase, node.error)
            return
        result.failed_node = node.name
        self._run_failed(ctx, result, phase, node.error)

    def _run_failed(self, ctx: ProvisioningContext, result: UpgradeResult, phase: Phase,
                    error: BaseException) -> None:
        result.outcome = Outcome.FATAL
        result.failed_phase = phase
        result.error = error
        ctx.observer.phase_failed(phase.value, error)

    def _cancelled(self, ctx: ProvisioningContext, result: UpgradeResult, phase: Phase,
                   error: BaseException) -> None:
        result.outcome = Outcome.CANCELLED
        result.failed_phase = phase
        result.error = error
        ctx.observer.warning(phase.value, f"Upgrade cancelled: {error}")


def _chain(error: BaseException, cause: BaseException) -> BaseException:
    error.__cause__ = cause
    return error
