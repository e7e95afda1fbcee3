"""Side-effect dispatch for state-entry and transition actions.

The engine never performs I/O itself: each action ``type`` is served by a
registered ``ActionHandler``. Dispatch is best-effort fan-out. A failing action
is retried per its ``RetryPolicy``, then logged and published as an
``action_failed`` event; it never aborts the remaining actions and never
rolls back the state change that triggered it.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_for_futures
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Protocol

from .clock import Clock
from .errors import ActionExecutionError
from .events import ACTION_FAILED, EventBus, WorkflowEvent
from .models import Participant, RetryPolicy, WorkflowAction, WorkflowDefinition, WorkflowInstance
from .retry import RetriesExhausted, call_with_retry

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ActionResult:
    ok: bool
    message: str = ""
    details: dict[str, object] | None = None


@dataclass(frozen=True, slots=True)
class ActionContext:
    """Inputs handed to a handler. ``instance`` is a snapshot, not the live record."""

    instance: WorkflowInstance
    definition: WorkflowDefinition
    actor: Participant | None
    trigger: Literal["state_entry", "transition"]
    timestamp: datetime


class ActionHandler(Protocol):
    def execute(self, action: Any, context: ActionContext) -> ActionResult: ...


@dataclass(frozen=True, slots=True)
class ActionOutcome:
    action_id: str
    ok: bool
    attempts: int
    skipped: bool = False
    error: ActionExecutionError | None = None


class _HandlerReportedFailure(Exception):
    pass


class ActionDispatcher:
    def __init__(
        self,
        *,
        events: EventBus,
        clock: Clock,
        default_retry_policy: RetryPolicy | None = None,
        max_workers: int = 4,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._events = events
        self._clock = clock
        self._default_retry_policy = default_retry_policy
        self._sleep = sleep
        self._handlers: dict[str, ActionHandler] = {}
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="workflow-action"
        )
        self._pending: set[Future[ActionOutcome]] = set()
        self._lock = threading.Lock()

    def register(self, action_type: str, handler: ActionHandler) -> None:
        with self._lock:
            self._handlers[action_type] = handler

    def has_handler(self, action_type: str) -> bool:
        with self._lock:
            return action_type in self._handlers

    def dispatch(
        self, actions: Sequence[WorkflowAction], context: ActionContext
    ) -> list[ActionOutcome]:
        """Run ``actions`` in ascending ``order`` (stable for ties).

        Returns outcomes for synchronous actions; ``isAsync`` actions are
        submitted to the worker pool and report only through logs and events.
        """

        outcomes: list[ActionOutcome] = []
        for action in sorted(actions, key=lambda a: a.order):
            if action.is_async:
                self._submit(action, context)
            else:
                outcomes.append(self._run(action, context))
        return outcomes

    def _submit(self, action: WorkflowAction, context: ActionContext) -> None:
        future = self._executor.submit(self._run, action, context)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future[ActionOutcome]) -> None:
        with self._lock:
            self._pending.discard(future)

    def _run(self, action: WorkflowAction, context: ActionContext) -> ActionOutcome:
        with self._lock:
            handler = self._handlers.get(action.type)
        log_extra = {
            "action_id": action.id,
            "action_type": action.type,
            "instance_id": context.instance.id,
            "trigger": context.trigger,
        }
        if handler is None:
            logger.warning("No handler registered for action type", extra=log_extra)
            return ActionOutcome(action_id=action.id, ok=False, attempts=0, skipped=True)

        def attempt() -> ActionResult:
            result = handler.execute(action, context)
            if result is not None and not result.ok:
                raise _HandlerReportedFailure(result.message or "handler reported failure")
            return result

        def on_retry(attempt_no: int, error: BaseException, delay: float) -> None:
            logger.warning(
                "Action failed, retrying",
                extra={
                    **log_extra,
                    "attempt": attempt_no,
                    "delay_seconds": delay,
                    "error": str(error),
                },
            )

        policy = action.retry_policy or self._default_retry_policy
        try:
            _, attempts = call_with_retry(attempt, policy, sleep=self._sleep, on_retry=on_retry)
        except RetriesExhausted as exc:
            error = ActionExecutionError(action.id, action.type, exc.attempts, str(exc.last_error))
            logger.error(str(error), extra=log_extra, exc_info=exc.last_error)
            self._events.emit(
                WorkflowEvent(
                    type=ACTION_FAILED,
                    instance_id=context.instance.id,
                    definition_id=context.definition.id,
                    timestamp=self._clock.now(),
                    actor=context.actor,
                    data={
                        "actionId": action.id,
                        "actionType": action.type,
                        "attempts": exc.attempts,
                        "error": str(exc.last_error),
                        "code": error.code,
                    },
                )
            )
            return ActionOutcome(action_id=action.id, ok=False, attempts=exc.attempts, error=error)

        logger.info("Action executed", extra={**log_extra, "attempts": attempts})
        return ActionOutcome(action_id=action.id, ok=True, attempts=attempts)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until submitted async actions finish. Returns False on timeout."""

        with self._lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait_for_futures(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
