"""Synchronous, at-most-once pub/sub for workflow events.

Listeners are invoked in registration order. A failing listener is logged and
skipped; it never blocks the remaining listeners or the engine. Events are not
stored, so a listener registered later never sees earlier events.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from .models import Participant, new_id

logger = logging.getLogger(__name__)

WORKFLOW_STARTED = "workflow_started"
STATE_CHANGED = "state_changed"
TASK_CREATED = "task_created"
TASK_COMPLETED = "task_completed"
TASK_OVERDUE = "task_overdue"
APPROVAL_REQUESTED = "approval_requested"
APPROVAL_RECORDED = "approval_recorded"
TIMEOUT_REACHED = "timeout_reached"
ACTION_FAILED = "action_failed"
WORKFLOW_UPDATED = "workflow_updated"
WORKFLOW_ASSIGNED = "workflow_assigned"
WORKFLOW_PAUSED = "workflow_paused"
WORKFLOW_RESUMED = "workflow_resumed"
WORKFLOW_CANCELLED = "workflow_cancelled"
WORKFLOW_FAILED = "workflow_failed"


@dataclass(frozen=True, slots=True)
class WorkflowEvent:
    type: str
    instance_id: str
    definition_id: str
    timestamp: datetime
    actor: Participant | None = None
    data: dict[str, object] = field(default_factory=dict)
    id: str = field(default_factory=new_id)


EventHandler = Callable[[WorkflowEvent], object]


class EventBus:
    def __init__(self, *, audit_log: bool = True) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}
        self._lock = threading.Lock()
        self._audit_log = audit_log

    def on(self, event_type: str, handler: EventHandler) -> None:
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def off(self, event_type: str, handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type)
            if handlers and handler in handlers:
                handlers.remove(handler)

    def emit(self, event: WorkflowEvent) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event.type, ()))

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Event handler failed",
                    extra={"event_type": event.type, "instance_id": event.instance_id},
                )

        if self._audit_log:
            logger.info(
                "Workflow event",
                extra={
                    "event_type": event.type,
                    "event_id": event.id,
                    "instance_id": event.instance_id,
                    "definition_id": event.definition_id,
                    "actor_id": event.actor.id if event.actor else None,
                },
            )
