"""Unit tests for the instance lifecycle and transition executor."""

from __future__ import annotations

import threading

import pytest

from workflow_engine.workflow.errors import (
    AlreadyCompletedError,
    ConcurrencyLimitError,
    ConditionsNotMetError,
    NotFoundError,
    PermissionDeniedError,
    WorkflowCompletedError,
    WorkflowPausedError,
)
from workflow_engine.workflow.events import STATE_CHANGED, WORKFLOW_STARTED
from workflow_engine.workflow.models import InstanceStatus, Participant, StartOptions


@pytest.fixture
def started(engine, definition, clerk) -> str:
    engine.register_workflow(definition)
    return engine.start_workflow("doc-approval", {"title": "Menu card"}, clerk)


def test_start_seeds_instance(engine, started, clerk, clock) -> None:
    instance = engine.get_workflow_instance(started)

    assert instance.current_state == "draft"
    assert instance.status == InstanceStatus.RUNNING
    assert instance.data.form_data == {"title": "Menu card"}
    assert instance.initiator.id == clerk.id
    assert instance.created_at == clock.now()
    assert [h.action for h in instance.history] == ["created"]
    assert instance.history[0].to_state == "draft"


def test_start_unknown_or_inactive_definition_is_not_found(
    engine, definition_factory, clerk
) -> None:
    with pytest.raises(NotFoundError):
        engine.start_workflow("nope", {}, clerk)

    engine.register_workflow(definition_factory(isActive=False))
    with pytest.raises(NotFoundError):
        engine.start_workflow("doc-approval", {}, clerk)


def test_start_links_domain_records_and_options(engine, definition, clerk) -> None:
    engine.register_workflow(definition)
    instance_id = engine.start_workflow(
        "doc-approval",
        {"restaurantId": "r-1", "contractId": "c-9", "amount": 10},
        clerk,
        StartOptions(title="Onboard Bistro", priority="high", tags=["vip"]),
    )

    instance = engine.get_workflow_instance(instance_id)
    assert instance.title == "Onboard Bistro"
    assert instance.priority == "high"
    assert instance.tags == ["vip"]
    assert instance.data.restaurant_id == "r-1"
    assert instance.data.contract_id == "c-9"
    assert instance.data.order_id is None


def test_approval_chain_scenario(engine, started, clerk, manager) -> None:
    assert engine.transition_workflow(started, "submit", clerk) is True
    assert engine.get_workflow_instance(started).current_state == "review"

    with pytest.raises(PermissionDeniedError):
        engine.transition_workflow(started, "approve", clerk)

    assert engine.transition_workflow(started, "approve", manager) is True
    instance = engine.get_workflow_instance(started)
    assert instance.current_state == "approved"
    assert instance.status == InstanceStatus.COMPLETED
    assert instance.completed_at is not None


def test_guarded_transition_requires_conditions_and_role(engine, definition_factory) -> None:
    engine.register_workflow(
        definition_factory(
            id="payment",
            transitions=[
                {
                    "id": "approve",
                    "from": "draft",
                    "to": "approved",
                    "requiredRole": "finance_manager",
                    "conditions": [
                        {
                            "type": "field_value",
                            "id": "large-amount",
                            "field": "amount",
                            "operator": "greater_than",
                            "value": 10000,
                        }
                    ],
                }
            ],
        )
    )
    finance = Participant(id="u-fin", role="finance_manager")

    small = engine.start_workflow("payment", {}, finance)
    with pytest.raises(ConditionsNotMetError) as exc:
        engine.transition_workflow(small, "approve", finance, {"amount": 5000})
    assert exc.value.failed == ["large-amount"]

    large = engine.start_workflow("payment", {}, finance)
    assert engine.transition_workflow(large, "approve", finance, {"amount": 20000})
    assert engine.get_workflow_instance(large).status == InstanceStatus.COMPLETED


def test_transition_from_a_different_state_is_not_found(engine, started, manager) -> None:
    with pytest.raises(NotFoundError):
        engine.transition_workflow(started, "approve", manager)


def test_unknown_instance_is_not_found(engine, clerk) -> None:
    with pytest.raises(NotFoundError):
        engine.transition_workflow("missing", "submit", clerk)
    assert engine.get_workflow_instance("missing") is None


def test_required_permissions_and_inactive_actor(engine, definition_factory) -> None:
    engine.register_workflow(
        definition_factory(
            transitions=[
                {
                    "id": "submit",
                    "from": "draft",
                    "to": "review",
                    "requiredPermissions": ["documents:submit", "documents:edit"],
                }
            ]
        )
    )
    partial = Participant(id="u1", permissions=["documents:submit"])
    full = Participant(id="u2", permissions=["documents:edit", "documents:submit", "x"])
    inactive = full.model_copy(update={"id": "u3", "is_active": False})

    instance_id = engine.start_workflow("doc-approval", {}, full)
    with pytest.raises(PermissionDeniedError):
        engine.transition_workflow(instance_id, "submit", partial)
    with pytest.raises(PermissionDeniedError):
        engine.transition_workflow(instance_id, "submit", inactive)
    assert engine.transition_workflow(instance_id, "submit", full)


def test_failed_condition_leaves_instance_untouched(engine, definition_factory, clerk) -> None:
    engine.register_workflow(
        definition_factory(
            transitions=[
                {
                    "id": "submit",
                    "from": "draft",
                    "to": "review",
                    "conditions": [{"type": "field_value", "field": "title", "operator": "exists"}],
                }
            ]
        )
    )
    instance_id = engine.start_workflow("doc-approval", {}, clerk)
    before = engine.get_workflow_instance(instance_id)

    with pytest.raises(ConditionsNotMetError):
        engine.transition_workflow(instance_id, "submit", clerk)

    after = engine.get_workflow_instance(instance_id)
    assert after.current_state == before.current_state
    assert after.updated_at == before.updated_at
    assert after.history == before.history


def test_completed_instance_rejects_transitions(engine, started, clerk, manager) -> None:
    engine.transition_workflow(started, "submit", clerk)
    engine.transition_workflow(started, "approve", manager)
    before = engine.get_workflow_instance(started)

    with pytest.raises(WorkflowCompletedError) as exc:
        engine.transition_workflow(started, "reject", manager)

    assert isinstance(exc.value, AlreadyCompletedError)
    assert engine.get_workflow_instance(started) == before


def test_history_is_monotonic_and_append_only(engine, started, clerk, manager, clock) -> None:
    lengths = [len(engine.get_workflow_instance(started).history)]

    clock.advance(minutes=5)
    engine.transition_workflow(started, "submit", clerk)
    lengths.append(len(engine.get_workflow_instance(started).history))
    clock.advance(hours=1)
    engine.add_comment(started, manager, "Looks fine")
    lengths.append(len(engine.get_workflow_instance(started).history))
    engine.transition_workflow(started, "approve", manager)

    history = engine.get_workflow_instance(started).history
    lengths.append(len(history))
    assert lengths == sorted(lengths) and len(set(lengths)) == len(lengths)
    stamps = [h.timestamp for h in history]
    assert stamps == sorted(stamps)
    assert [h.action for h in history] == ["created", "state_changed", "commented", "state_changed"]


def test_history_timestamps_never_go_backwards(engine, started, clerk, clock) -> None:
    clock.advance(hours=2)
    engine.add_comment(started, clerk, "later")
    clock.advance(hours=-1)
    engine.transition_workflow(started, "submit", clerk)

    history = engine.get_workflow_instance(started).history
    assert history[-1].timestamp == history[-2].timestamp


def test_state_changed_event_reaches_only_current_listeners(
    engine, started, clerk, manager
) -> None:
    early: list = []
    late: list = []
    engine.on(STATE_CHANGED, early.append)

    engine.transition_workflow(started, "submit", clerk)
    engine.on(STATE_CHANGED, late.append)

    assert len(early) == 1
    assert early[0].data == {"fromState": "draft", "toState": "review", "transitionId": "submit"}
    assert early[0].actor.id == clerk.id
    assert late == []

    engine.off(STATE_CHANGED, early.append)
    engine.transition_workflow(started, "approve", manager)
    assert len(early) == 1
    assert [e.data["toState"] for e in late] == ["approved"]


def test_workflow_started_event(engine, definition, clerk) -> None:
    seen: list = []
    engine.on(WORKFLOW_STARTED, seen.append)
    engine.register_workflow(definition)

    instance_id = engine.start_workflow("doc-approval", {}, clerk)

    assert [e.instance_id for e in seen] == [instance_id]
    assert seen[0].data == {"initialState": "draft"}


def test_read_accessors_return_copies(engine, started) -> None:
    snapshot = engine.get_workflow_instance(started)
    snapshot.current_state = "approved"
    snapshot.history.clear()

    fresh = engine.get_workflow_instance(started)
    assert fresh.current_state == "draft"
    assert len(fresh.history) == 1


def test_filters_by_status_and_participant(engine, definition, clerk, manager) -> None:
    engine.register_workflow(definition)
    first = engine.start_workflow("doc-approval", {}, clerk)
    second = engine.start_workflow(
        "doc-approval", {}, clerk, StartOptions(assignee=manager)
    )
    engine.cancel(first, clerk, "duplicate")

    assert [i.id for i in engine.get_workflows_by_status("cancelled")] == [first]
    assert [i.id for i in engine.get_workflows_by_status(InstanceStatus.RUNNING)] == [second]
    assert [i.id for i in engine.get_workflows_by_participant(manager.id)] == [second]
    assert {i.id for i in engine.get_workflows_by_participant(clerk.id)} == {first, second}
    assert len(engine.get_all_workflow_instances()) == 2


def test_available_transitions_filters_by_permission(engine, started, clerk, manager) -> None:
    assert [t.id for t in engine.available_transitions(started, clerk)] == ["submit"]

    engine.transition_workflow(started, "submit", clerk)
    assert engine.available_transitions(started, clerk) == []
    assert [t.id for t in engine.available_transitions(started, manager)] == ["approve", "reject"]


def test_pause_resume_cancel(engine, started, clerk) -> None:
    engine.pause(started, clerk, "waiting for supplier")
    with pytest.raises(WorkflowPausedError):
        engine.transition_workflow(started, "submit", clerk)

    engine.resume(started, clerk)
    engine.transition_workflow(started, "submit", clerk)

    engine.cancel(started, clerk, "customer withdrew")
    instance = engine.get_workflow_instance(started)
    assert instance.status == InstanceStatus.CANCELLED
    assert [h.action for h in instance.history][-4:] == [
        "paused",
        "resumed",
        "state_changed",
        "cancelled",
    ]
    with pytest.raises(WorkflowCompletedError):
        engine.transition_workflow(started, "approve", clerk)
    with pytest.raises(WorkflowCompletedError):
        engine.resume(started, clerk)


def test_record_approval_update_data_and_assign(engine, started, clerk, manager) -> None:
    engine.record_approval(started, manager, "approved", "ok")
    changes = engine.update_data(started, clerk, {"title": "Menu card v2", "pages": 4})
    unchanged = engine.update_data(started, clerk, {"pages": 4})
    engine.assign(started, manager, clerk)

    instance = engine.get_workflow_instance(started)
    assert instance.data.approvals[-1].decision == "approved"
    assert changes == {
        "title": {"from": "Menu card", "to": "Menu card v2"},
        "pages": {"from": None, "to": 4},
    }
    assert unchanged == {}
    assert instance.data.form_data["pages"] == 4
    assert instance.assignee.id == manager.id
    assert instance.has_participant(manager.id)
    assert [h.action for h in instance.history][1:] == ["approved", "updated", "assigned"]


def test_per_definition_concurrency_limit(engine, definition_factory, clerk) -> None:
    engine.register_workflow(definition_factory(settings={"maxConcurrentInstances": 1}))
    first = engine.start_workflow("doc-approval", {}, clerk)

    with pytest.raises(ConcurrencyLimitError):
        engine.start_workflow("doc-approval", {}, clerk)

    engine.cancel(first, clerk)
    engine.start_workflow("doc-approval", {}, clerk)


def test_restore_validates_current_state(engine, started, definition_factory) -> None:
    snapshot = engine.get_workflow_instance(started)
    other = snapshot.model_copy(update={"id": "restored-1"})
    engine.restore(other)
    assert engine.get_workflow_instance("restored-1").current_state == "draft"

    broken = snapshot.model_copy(update={"id": "restored-2", "current_state": "gone"})
    with pytest.raises(NotFoundError):
        engine.restore(broken)


def test_numeric_linked_record_ids_are_stored_as_strings(engine, definition, clerk) -> None:
    engine.register_workflow(definition)

    instance_id = engine.start_workflow("doc-approval", {"orderId": 123, "amount": 5}, clerk)

    instance = engine.get_workflow_instance(instance_id)
    assert instance.data.order_id == "123"
    assert instance.data.form_data == {"orderId": 123, "amount": 5}
    assert instance.data.restaurant_id is None


def test_concurrent_transitions_fire_exactly_once(engine, started, clerk) -> None:
    changes: list = []
    engine.on(STATE_CHANGED, changes.append)
    barrier = threading.Barrier(8)
    outcomes: list = []

    def submit() -> None:
        barrier.wait(timeout=5)
        try:
            outcomes.append(engine.transition_workflow(started, "submit", clerk))
        except NotFoundError as exc:
            outcomes.append(exc)

    workers = [threading.Thread(target=submit) for _ in range(8)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=5)

    assert outcomes.count(True) == 1
    assert sum(isinstance(o, NotFoundError) for o in outcomes) == 7
    instance = engine.get_workflow_instance(started)
    assert instance.current_state == "review"
    assert [h.action for h in instance.history] == ["created", "state_changed"]
    assert len(changes) == 1
