"""Unit tests for human tasks attached to an instance."""

from __future__ import annotations

from datetime import timedelta

import pytest

from workflow_engine.workflow.errors import AlreadyCompletedError, NotFoundError
from workflow_engine.workflow.events import TASK_COMPLETED, TASK_CREATED
from workflow_engine.workflow.models import TaskSpec, TaskStatus
from workflow_engine.workflow.scheduler import EscalationScheduler


@pytest.fixture
def instance_id(engine, definition, clerk) -> str:
    engine.register_workflow(definition)
    return engine.start_workflow("doc-approval", {}, clerk)


def test_create_task_is_pending_and_recorded(engine, instance_id, clerk) -> None:
    created: list = []
    engine.on(TASK_CREATED, created.append)

    spec = TaskSpec(name="Upload logo", type="file_upload")
    task_id = engine.create_task(instance_id, spec, clerk)

    instance = engine.get_workflow_instance(instance_id)
    task = instance.get_task(task_id)
    assert task.status == TaskStatus.PENDING
    assert task.instance_id == instance_id
    assert instance.history[-1].metadata == {"taskId": task_id}
    assert [e.data["taskId"] for e in created] == [task_id]
    # Tasks never move the state machine.
    assert instance.current_state == "draft"


def test_task_ids_are_unique(engine, instance_id) -> None:
    ids = {engine.create_task(instance_id, TaskSpec(name=f"t{n}")) for n in range(5)}
    assert len(ids) == 5


def test_complete_task_twice(engine, instance_id, clerk, clock) -> None:
    completed: list = []
    engine.on(TASK_COMPLETED, completed.append)
    task_id = engine.create_task(instance_id, TaskSpec(name="Review proof"))

    clock.advance(minutes=90)
    first = engine.complete_task(instance_id, task_id, clerk, {"approved": True}, comment="ok")

    assert first.status == TaskStatus.COMPLETED
    assert first.actual_duration == 90
    assert first.results[0].value == {"approved": True}
    assert first.results[0].comment == "ok"

    clock.advance(minutes=30)
    with pytest.raises(AlreadyCompletedError):
        engine.complete_task(instance_id, task_id, clerk, {"approved": False})

    task = engine.get_workflow_instance(instance_id).get_task(task_id)
    assert task.completed_at == first.completed_at
    assert task.actual_duration == 90
    assert len(task.results) == 1
    assert len(completed) == 1


def test_complete_unknown_task_or_instance(engine, instance_id, clerk) -> None:
    with pytest.raises(NotFoundError):
        engine.complete_task(instance_id, "missing", clerk)
    with pytest.raises(NotFoundError):
        engine.create_task("missing", TaskSpec(name="x"))


def test_cancelled_task_cannot_be_completed(engine, instance_id, clerk) -> None:
    task_id = engine.create_task(instance_id, TaskSpec(name="Print run"))
    engine.start_task(instance_id, task_id, clerk)
    engine.cancel_task(instance_id, task_id, clerk)

    with pytest.raises(AlreadyCompletedError):
        engine.complete_task(instance_id, task_id, clerk)
    assert engine.get_workflow_instance(instance_id).get_task(task_id).status == (
        TaskStatus.CANCELLED
    )


def test_start_task_assigns_actor(engine, instance_id, clerk) -> None:
    task_id = engine.create_task(instance_id, TaskSpec(name="Measure storefront"))
    engine.start_task(instance_id, task_id, clerk)

    task = engine.get_workflow_instance(instance_id).get_task(task_id)
    assert task.status == TaskStatus.IN_PROGRESS
    assert task.assignee.id == clerk.id


def test_overdue_tasks_are_flagged_by_the_sweep(engine, instance_id, clock) -> None:
    due = clock.now() + timedelta(hours=1)
    late = engine.create_task(instance_id, TaskSpec(name="Sign contract", due_date=due))
    open_ended = engine.create_task(instance_id, TaskSpec(name="Whenever"))

    clock.advance(hours=2)
    EscalationScheduler(engine).sweep()

    instance = engine.get_workflow_instance(instance_id)
    assert instance.get_task(late).status == TaskStatus.OVERDUE
    assert instance.get_task(open_ended).status == TaskStatus.PENDING
    overdue = instance.history[-1]
    assert (overdue.action, overdue.actor.id) == ("updated", "system")
    assert overdue.description == "Task overdue: Sign contract"
    assert overdue.metadata == {"taskId": late}
    assert instance.updated_at == clock.now()
