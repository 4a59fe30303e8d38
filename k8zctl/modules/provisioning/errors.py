"""Error taxonomy for provisioning and upgrades."""
from typing import List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .models import UpgradeResult


class K8zError(Exception):
    """Base exception for provisioning errors."""
    pass


class ValidationError(K8zError):
    """Raised when an upgrade plan or config cannot be built.

    Always raised before any mutation, so it is safe to retry after fixing
    the input.
    """

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class InfrastructureError(K8zError):
    """Raised when a cloud resource operation fails."""

    def __init__(self, resource: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{resource}: {message}")
        self.resource = resource
        self.status_code = status_code


class UpgradeCallError(K8zError):
    """Raised when an OS or Kubernetes upgrade call fails."""

    def __init__(self, endpoint: str, operation: str, message: str):
        super().__init__(f"{operation} on {endpoint} failed: {message}")
        self.endpoint = endpoint
        self.operation = operation


class GateTimeoutError(K8zError):
    """Raised when a HealthGate wait runs out of time."""

    def __init__(self, description: str, timeout: float):
        super().__init__(f"timed out after {timeout:g}s waiting for {description}")
        self.description = description
        self.timeout = timeout


class ReadinessTimeoutError(GateTimeoutError):
    """Raised when a node does not become ready within its timeout."""

    def __init__(self, endpoint: str, timeout: float):
        super().__init__(f"node {endpoint} to become ready", timeout)
        self.endpoint = endpoint


class HealthCheckFailure(K8zError):
    """Raised when a health probe reports the node or cluster unhealthy."""

    def __init__(self, endpoint: str, reason: str):
        super().__init__(f"health check on {endpoint} failed: {reason}")
        self.endpoint = endpoint
        self.reason = reason


class CancellationError(K8zError):
    """Raised when the run was cancelled before it could finish."""
    pass


class UpgradeFailedError(K8zError):
    """Raised by ``UpgradeOrchestrator.provision`` when a run is not a full success."""

    def __init__(self, message: str, result: "UpgradeResult"):
        super().__init__(message)
        self.result = result


class FatalUpgradeError(UpgradeFailedError):
    """A control-plane, Kubernetes or cluster health failure aborted the run."""

    def __init__(self, result: "UpgradeResult"):
        where = result.failed_node or "cluster"
        super().__init__(
            f"upgrade aborted in phase {result.failed_phase.value} ({where}): {result.error}",
            result,
        )
        self.cause = result.error


class PartialUpgradeError(UpgradeFailedError):
    """The run completed but some workers failed."""

    def __init__(self, result: "UpgradeResult"):
        self.failed_workers: List[str] = [n.name for n in result.failed_workers]
        super().__init__(
            f"upgrade completed with {len(self.failed_workers)} worker failure(s): "
            f"{', '.join(self.failed_workers)}",
            result,
        )
