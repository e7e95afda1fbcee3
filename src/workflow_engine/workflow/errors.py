"""Typed failures raised by the workflow engine.

Request-shaped errors (not found, permission, conditions, completion) are
raised synchronously to the caller. ``ActionExecutionError`` never escapes the
engine: it is logged and published as an ``action_failed`` event.
"""

from __future__ import annotations

from collections.abc import Sequence


class WorkflowError(Exception):
    code: str = "WORKFLOW_ERROR"


class DefinitionValidationError(WorkflowError):
    code = "DEFINITION_INVALID"

    def __init__(self, definition_id: str, violations: Sequence[str]) -> None:
        self.definition_id = definition_id
        self.violations = list(violations)
        super().__init__(
            f"Invalid workflow definition {definition_id!r}: " + "; ".join(self.violations)
        )


class NotFoundError(WorkflowError):
    code = "NOT_FOUND"

    def __init__(self, kind: str, key: str) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class PermissionDeniedError(WorkflowError):
    code = "PERMISSION_DENIED"

    def __init__(self, actor_id: str, transition_id: str, reason: str) -> None:
        self.actor_id = actor_id
        self.transition_id = transition_id
        self.reason = reason
        super().__init__(f"Actor {actor_id} may not execute transition {transition_id}: {reason}")


class ConditionsNotMetError(WorkflowError):
    code = "CONDITIONS_NOT_MET"

    def __init__(self, transition_id: str, failed: Sequence[str]) -> None:
        self.transition_id = transition_id
        self.failed = list(failed)
        super().__init__(
            f"Conditions not met for transition {transition_id}: {', '.join(self.failed)}"
        )


class AlreadyCompletedError(WorkflowError):
    code = "ALREADY_COMPLETED"

    def __init__(self, kind: str, key: str, message: str | None = None) -> None:
        self.kind = kind
        self.key = key
        super().__init__(message or f"{kind} already completed: {key}")


class WorkflowCompletedError(AlreadyCompletedError):
    """The instance is in a terminal status and accepts no further changes."""

    code = "WORKFLOW_COMPLETED"

    def __init__(self, instance_id: str, status: str) -> None:
        self.status = status
        super().__init__(
            "workflow instance",
            instance_id,
            f"Workflow instance {instance_id} is {status}; no further transitions are accepted",
        )


class WorkflowPausedError(WorkflowError):
    code = "WORKFLOW_PAUSED"

    def __init__(self, instance_id: str) -> None:
        self.instance_id = instance_id
        super().__init__(f"Workflow instance {instance_id} is paused")


class ConcurrencyLimitError(WorkflowError):
    code = "CONCURRENCY_LIMIT"

    def __init__(self, scope: str, limit: int) -> None:
        self.scope = scope
        self.limit = limit
        super().__init__(f"Too many running workflow instances for {scope} (limit {limit})")


class ActionExecutionError(WorkflowError):
    code = "ACTION_FAILED"

    def __init__(self, action_id: str, action_type: str, attempts: int, reason: str) -> None:
        self.action_id = action_id
        self.action_type = action_type
        self.attempts = attempts
        self.reason = reason
        super().__init__(
            f"Action {action_id} ({action_type}) failed after {attempts} attempt(s): {reason}"
        )
