"""
Procurement Workflow Hub - Workflow Events

Canonical events published after a workflow transition has committed.
Listeners (notification routing, dashboards, integrations) subscribe to an
event type or to "*" for every event.

A listener failure is logged and reported back to the publisher; it never
undoes or fails the transition that produced the event.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
import inspect
import logging

from services.workflow_models import generate_audit_id, utc_now

logger = logging.getLogger(__name__)

ALL_EVENTS = "*"


class WorkflowEventType(str, Enum):
    ENTITY_SUBMITTED = "ENTITY_SUBMITTED"
    ENTITY_RESUBMITTED = "ENTITY_RESUBMITTED"
    ENTITY_APPROVED = "ENTITY_APPROVED"
    ENTITY_APPROVED_AT_STAGE = "ENTITY_APPROVED_AT_STAGE"
    ENTITY_REJECTED = "ENTITY_REJECTED"
    ENTITY_REJECTED_AT_STAGE = "ENTITY_REJECTED_AT_STAGE"
    ENTITY_SENT_BACK = "ENTITY_SENT_BACK"


@dataclass
class WorkflowEvent:
    """Payload shared by every workflow event."""
    event_type: WorkflowEventType
    tenant_id: str
    record_type: str
    record_id: str
    current_stage: Optional[str]
    current_status: str
    actor_id: str
    actor_role: Optional[str] = None
    previous_stage: Optional[str] = None
    previous_status: Optional[str] = None
    reason_code: Optional[str] = None
    remarks: Optional[str] = None
    notify_roles: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: generate_audit_id("WFE"))
    occurred_at: Any = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "occurred_at": self.occurred_at,
            "tenant_id": self.tenant_id,
            "record_type": self.record_type,
            "record_id": self.record_id,
            "current_stage": self.current_stage,
            "previous_stage": self.previous_stage,
            "current_status": self.current_status,
            "previous_status": self.previous_status,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "reason_code": self.reason_code,
            "remarks": self.remarks,
            "notify_roles": self.notify_roles,
            "metadata": self.metadata,
        }


WorkflowEventListener = Callable[[WorkflowEvent], Union[None, Awaitable[None]]]


@dataclass
class ListenerFailure:
    event_id: str
    listener: str
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"event_id": self.event_id, "listener": self.listener, "error": self.error}


class WorkflowEventBus:
    """In-process publisher. Listeners may be plain or async callables."""

    def __init__(self):
        self._listeners: Dict[str, List[WorkflowEventListener]] = {}

    def subscribe(
        self,
        event_type: Union[WorkflowEventType, str],
        listener: WorkflowEventListener
    ) -> Callable[[], None]:
        """Register a listener. Returns a callable that unsubscribes it."""
        key = event_type.value if isinstance(event_type, WorkflowEventType) else event_type
        self._listeners.setdefault(key, []).append(listener)

        def unsubscribe():
            current = self._listeners.get(key, [])
            if listener in current:
                current.remove(listener)

        return unsubscribe

    def clear(self) -> None:
        self._listeners.clear()

    async def publish(self, event: WorkflowEvent) -> List[ListenerFailure]:
        listeners = (
            self._listeners.get(event.event_type.value, [])
            + self._listeners.get(ALL_EVENTS, [])
        )
        failures: List[ListenerFailure] = []

        for listener in list(listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                name = getattr(listener, "__qualname__", repr(listener))
                logger.error(
                    "Workflow event listener failed: event=%s (%s), listener=%s: %s",
                    event.event_id, event.event_type.value, name, str(e)
                )
                failures.append(ListenerFailure(event.event_id, name, str(e)))

        return failures
