"""Human work items attached to an instance.

Task lifecycle is independent of the instance's state: creating or completing
a task never moves the state machine. A definition that wants a task to gate a
transition does so through its own conditions.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from functools import partial
from typing import Any

from .clock import Clock
from .errors import AlreadyCompletedError, NotFoundError
from .events import TASK_COMPLETED, TASK_CREATED, TASK_OVERDUE, EventBus, WorkflowEvent
from .models import (
    SYSTEM_ACTOR,
    HistoryEntry,
    Participant,
    TaskResult,
    TaskSpec,
    TaskStatus,
    WorkflowInstance,
    WorkflowTask,
    new_id,
)
from .store import InstanceStore, history_timestamp

logger = logging.getLogger(__name__)

_OPEN_STATUSES = {TaskStatus.PENDING, TaskStatus.IN_PROGRESS}


class TaskManager:
    def __init__(self, *, store: InstanceStore, events: EventBus, clock: Clock) -> None:
        self._store = store
        self._events = events
        self._clock = clock

    def _require_task(self, instance: WorkflowInstance, task_id: str) -> WorkflowTask:
        task = instance.get_task(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    def create_task(
        self, instance_id: str, spec: TaskSpec, *, actor: Participant | None = None
    ) -> str:
        actor = actor or SYSTEM_ACTOR
        with self._store.locked(instance_id) as instance:
            now = history_timestamp(self._clock, instance)
            task = WorkflowTask(
                id=new_id(),
                instance_id=instance_id,
                **spec.model_dump(),
                status=TaskStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            instance.tasks.append(task)
            instance.updated_at = now
            instance.history.append(
                HistoryEntry(
                    timestamp=now,
                    action="created",
                    actor=actor,
                    description=f"Task created: {task.name}",
                    metadata={"taskId": task.id},
                )
            )
            self._store.after_release(
                partial(
                    self._events.emit,
                    WorkflowEvent(
                        type=TASK_CREATED,
                        instance_id=instance_id,
                        definition_id=instance.definition_id,
                        timestamp=now,
                        actor=actor,
                        data={"taskId": task.id, "taskName": task.name, "taskType": task.type},
                    ),
                )
            )
        logger.info("Task created", extra={"instance_id": instance_id, "task_id": task.id})
        return task.id

    def start_task(self, instance_id: str, task_id: str, actor: Participant) -> None:
        with self._store.locked(instance_id) as instance:
            task = self._require_task(instance, task_id)
            if task.status not in _OPEN_STATUSES | {TaskStatus.OVERDUE}:
                raise AlreadyCompletedError("task", task_id)
            now = history_timestamp(self._clock, instance)
            task.status = TaskStatus.IN_PROGRESS
            task.updated_at = now
            if task.assignee is None:
                task.assignee = actor
            instance.updated_at = now

    def complete_task(
        self,
        instance_id: str,
        task_id: str,
        actor: Participant,
        result: Any = None,
        *,
        comment: str | None = None,
    ) -> WorkflowTask:
        with self._store.locked(instance_id) as instance:
            task = self._require_task(instance, task_id)
            if task.status == TaskStatus.COMPLETED:
                raise AlreadyCompletedError("task", task_id)
            if task.status == TaskStatus.CANCELLED:
                raise AlreadyCompletedError("task", task_id, f"Task {task_id} was cancelled")

            now = history_timestamp(self._clock, instance)
            task.status = TaskStatus.COMPLETED
            task.completed_at = now
            task.updated_at = now
            task.actual_duration = int((now - task.created_at).total_seconds() // 60)
            if result is not None:
                task.results.append(
                    TaskResult(value=result, comment=comment, actor=actor, timestamp=now)
                )

            instance.updated_at = now
            instance.history.append(
                HistoryEntry(
                    timestamp=now,
                    action="completed",
                    actor=actor,
                    description=f"Task completed: {task.name}",
                    metadata={"taskId": task.id},
                )
            )
            self._store.after_release(
                partial(
                    self._events.emit,
                    WorkflowEvent(
                        type=TASK_COMPLETED,
                        instance_id=instance_id,
                        definition_id=instance.definition_id,
                        timestamp=now,
                        actor=actor,
                        data={"taskId": task.id, "taskName": task.name, "result": result},
                    ),
                )
            )
            completed = task.model_copy(deep=True)
        logger.info("Task completed", extra={"instance_id": instance_id, "task_id": task_id})
        return completed

    def cancel_task(self, instance_id: str, task_id: str, actor: Participant) -> None:
        with self._store.locked(instance_id) as instance:
            task = self._require_task(instance, task_id)
            if task.status in {TaskStatus.COMPLETED, TaskStatus.CANCELLED}:
                raise AlreadyCompletedError("task", task_id)
            now = history_timestamp(self._clock, instance)
            task.status = TaskStatus.CANCELLED
            task.updated_at = now
            instance.updated_at = now
            instance.history.append(
                HistoryEntry(
                    timestamp=now,
                    action="updated",
                    actor=actor,
                    description=f"Task cancelled: {task.name}",
                    metadata={"taskId": task.id},
                )
            )

    def mark_overdue(self, instance: WorkflowInstance, now: datetime) -> int:
        """Flag open tasks past their due date. Caller must hold the instance lock."""

        flagged = 0
        for task in instance.tasks:
            if task.status not in _OPEN_STATUSES or task.due_date is None:
                continue
            due = task.due_date if task.due_date.tzinfo else task.due_date.replace(tzinfo=UTC)
            if due >= now:
                continue
            stamp = history_timestamp(self._clock, instance)
            task.status = TaskStatus.OVERDUE
            task.updated_at = stamp
            instance.updated_at = stamp
            instance.history.append(
                HistoryEntry(
                    timestamp=stamp,
                    action="updated",
                    actor=SYSTEM_ACTOR,
                    description=f"Task overdue: {task.name}",
                    metadata={"taskId": task.id},
                )
            )
            flagged += 1
            self._store.after_release(
                partial(
                    self._events.emit,
                    WorkflowEvent(
                        type=TASK_OVERDUE,
                        instance_id=instance.id,
                        definition_id=instance.definition_id,
                        timestamp=stamp,
                        data={"taskId": task.id, "taskName": task.name},
                    ),
                )
            )
        return flagged
