"""Built-in action handlers.

None of these are registered by the engine itself; hosts opt in with
:func:`register_builtin_handlers` or register their own per action type.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import requests

from .actions import ActionContext, ActionResult
from .events import APPROVAL_REQUESTED, WorkflowEvent
from .models import (
    ApprovalRequestAction,
    EmailAction,
    NotificationAction,
    Participant,
    SmsAction,
    TaskSpec,
    WebhookAction,
)

if TYPE_CHECKING:
    from .engine import WorkflowEngine

logger = logging.getLogger(__name__)

OUTBOX_LOGGER = "workflow_engine.outbox"


class LogNotificationHandler:
    """Records notifications, emails and SMS messages as structured log lines.

    A stand-in outbox for hosts without a delivery service: every message is
    logged on ``workflow_engine.outbox`` and kept in ``sent`` for inspection.
    """

    def __init__(self, logger_name: str = OUTBOX_LOGGER) -> None:
        self._logger = logging.getLogger(logger_name)
        self.sent: list[dict[str, Any]] = []

    def execute(
        self, action: NotificationAction | EmailAction | SmsAction, context: ActionContext
    ) -> ActionResult:
        if isinstance(action, EmailAction):
            recipients, body = action.to, action.subject
        elif isinstance(action, SmsAction):
            recipients, body = action.to, action.message
        else:
            recipients, body = action.recipients, action.message

        record = {
            "channel": action.type,
            "action_id": action.id,
            "instance_id": context.instance.id,
            "recipients": list(recipients),
            "body": body,
            "template": action.template,
        }
        self.sent.append(record)
        self._logger.info("Message queued", extra=record)
        return ActionResult(ok=True, message=f"{action.type} to {len(recipients)} recipient(s)")


class WebhookHandler:
    """Delivers the instance snapshot as JSON to the action's URL."""

    def __init__(
        self, *, timeout_seconds: float = 10.0, session: requests.Session | None = None
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._session = session or requests.Session()

    def execute(self, action: WebhookAction, context: ActionContext) -> ActionResult:
        payload = {
            "actionId": action.id,
            "trigger": context.trigger,
            "timestamp": context.timestamp.isoformat(),
            "instance": context.instance.model_dump(mode="json", by_alias=True),
        }
        resp = self._session.request(
            action.method,
            action.url,
            json=payload,
            headers=action.headers or None,
            timeout=self._timeout_seconds,
        )
        if resp.status_code >= 400:
            return ActionResult(
                ok=False,
                message=f"Webhook returned HTTP {resp.status_code}",
                details={"status_code": resp.status_code, "body": resp.text[:500]},
            )
        return ActionResult(ok=True, details={"status_code": resp.status_code})

    def close(self) -> None:
        self._session.close()


class ApprovalRequestHandler:
    """Opens an ``approval`` task for the requested approver."""

    def __init__(self, engine: WorkflowEngine) -> None:
        self._engine = engine

    def execute(self, action: ApprovalRequestAction, context: ActionContext) -> ActionResult:
        approver = Participant(
            id=action.approver, type="role", name=action.approver, role=action.approver
        )
        due_date = (
            context.timestamp + timedelta(hours=action.due_in_hours)
            if action.due_in_hours is not None
            else None
        )
        task_id = self._engine.create_task(
            context.instance.id,
            TaskSpec(
                name=action.name or f"Approval: {context.instance.title}",
                description=action.message,
                type="approval",
                priority=context.instance.priority,
                assignee=approver,
                due_date=due_date,
            ),
        )
        self._engine.events.emit(
            WorkflowEvent(
                type=APPROVAL_REQUESTED,
                instance_id=context.instance.id,
                definition_id=context.definition.id,
                timestamp=context.timestamp,
                actor=context.actor,
                data={"taskId": task_id, "approver": action.approver, "message": action.message},
            )
        )
        return ActionResult(ok=True, details={"task_id": task_id})


def register_builtin_handlers(
    engine: WorkflowEngine, *, webhook_timeout_seconds: float = 10.0
) -> LogNotificationHandler:
    """Register the built-in handlers on ``engine`` and return the outbox handler."""

    outbox = LogNotificationHandler()
    for action_type in ("notification", "email", "sms"):
        engine.register_action_handler(action_type, outbox)
    engine.register_action_handler(
        "webhook", WebhookHandler(timeout_seconds=webhook_timeout_seconds)
    )
    engine.register_action_handler("approval_request", ApprovalRequestHandler(engine))
    return outbox
