"""Phase and node transition reporting for provisioning runs."""
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger("k8zctl.provisioning")


class EventType(str, Enum):
    """Kinds of events recorded during a run."""
    PHASE_STARTED = 'phase_started'
    PHASE_COMPLETED = 'phase_completed'
    PHASE_FAILED = 'phase_failed'
    NODE_TRANSITION = 'node_transition'
    RESOURCE_CREATED = 'resource_created'
    RESOURCE_EXISTS = 'resource_exists'


@dataclass
class Event:
    """A single recorded event."""
    type: EventType
    phase: str
    message: str = ''
    fields: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class Observer:
    """Logs progress lines and keeps a structured event record.

    Worker tasks report transitions from several threads, so the event list
    is guarded by a lock.
    """

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger
        self._lock = threading.Lock()
        self._events: List[Event] = []
        self._phase_started: Dict[str, float] = {}

    @property
    def events(self) -> List[Event]:
        with self._lock:
            return list(self._events)

    def _record(self, event: Event) -> None:
        with self._lock:
            self._events.append(event)

    def info(self, phase: str, message: str, *args) -> None:
        self.log.info(f"[{phase}] {message}", *args)

    def warning(self, phase: str, message: str, *args) -> None:
        self.log.warning(f"[{phase}] {message}", *args)

    def phase_started(self, phase: str) -> None:
        with self._lock:
            self._phase_started[phase] = time.monotonic()
        self._record(Event(EventType.PHASE_STARTED, phase))
        self.log.info(f"🚀 [{phase}] started")

    def phase_completed(self, phase: str) -> None:
        with self._lock:
            started = self._phase_started.get(phase)
        duration = time.monotonic() - started if started is not None else 0.0
        self._record(Event(EventType.PHASE_COMPLETED, phase, fields={'duration': duration}))
        self.log.info(f"✅ [{phase}] completed in {duration:.1f}s")

    def phase_failed(self, phase: str, error: BaseException) -> None:
        self._record(Event(EventType.PHASE_FAILED, phase, str(error)))
        self.log.error(f"❌ [{phase}] failed: {error}")

    def node_transition(self, phase: str, node: str, old: str, new: str,
                        error: Optional[BaseException] = None) -> None:
        fields = {'node': node, 'from': old, 'to': new}
        self._record(Event(EventType.NODE_TRANSITION, phase, str(error or ''), fields))
        if error is not None:
            self.log.error(f"[{phase}] {node}: {old} -> {new} ({error})")
        else:
            self.log.info(f"[{phase}] {node}: {old} -> {new}")

    def resource(self, phase: str, kind: str, name: str, cached: bool = False) -> None:
        """Report a resource; ``cached`` means it was already in the run state."""
        event_type = EventType.RESOURCE_EXISTS if cached else EventType.RESOURCE_CREATED
        self._record(Event(event_type, phase, fields={"kind": kind, "name": name}))
        verb = "already provisioned" if cached else "ensured"
        self.log.info(f"[{phase}] {kind} {name} {verb}")

    def transitions_for(self, node: str) -> List[str]:
        """States entered by ``node``, in order."""
        return [
            e.fields['to'] for e in self.events
            if e.type == EventType.NODE_TRANSITION and e.fields.get('node') == node
        ]
