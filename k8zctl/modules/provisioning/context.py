"""Run-scoped aggregate passed to every provisioner."""
import threading
from dataclasses import dataclass, field
from typing import Optional, TYPE_CHECKING

from ...config import Timeouts
from .interfaces import InfrastructureManager, TalosConfigProducer
from .models import ProvisioningState, UpgradeOptions, UpgradeResult
from .observability import Observer

if TYPE_CHECKING:
    from ..clusterconfig import ClusterConfig


@dataclass
class ProvisioningContext:
    """Binds a cluster config to its collaborators for one run.

    ``state`` records the resources created so far; a failed
    ``provision`` call leaves it in place so the next call on the same
    context resumes instead of recreating resources.
    """
    config: "ClusterConfig"
    infra: InfrastructureManager
    talos: TalosConfigProducer
    options: UpgradeOptions = field(default_factory=UpgradeOptions)
    timeouts: Timeouts = field(default_factory=Timeouts)
    observer: Observer = field(default_factory=Observer)
    cancel: threading.Event = field(default_factory=threading.Event)
    state: ProvisioningState = field(default_factory=ProvisioningState)
    result: Optional[UpgradeResult] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()
