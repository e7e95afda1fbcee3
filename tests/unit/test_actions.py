"""Unit tests for action dispatch, retries and failure isolation."""

from __future__ import annotations

import threading

import pytest

from workflow_engine.workflow.actions import ActionContext, ActionResult
from workflow_engine.workflow.events import ACTION_FAILED
from workflow_engine.workflow.models import InstanceStatus, RetryPolicy
from workflow_engine.workflow.retry import RetriesExhausted, call_with_retry


class Recorder:
    """Handler that records calls and fails a scripted number of times."""

    def __init__(self, calls: list[str], failures: int = 0, result_ok: bool = True) -> None:
        self.calls = calls
        self.failures = failures
        self.result_ok = result_ok

    def execute(self, action, context: ActionContext) -> ActionResult:
        self.calls.append(f"{context.trigger}:{action.id}")
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("gateway unavailable")
        return ActionResult(ok=self.result_ok, message="" if self.result_ok else "rejected")


def _definition_with_actions(definition_factory, **overrides):
    return definition_factory(
        states=[
            {"id": "draft", "isInitial": True},
            {
                "id": "review",
                "actions": [
                    {"id": "sms-late", "type": "sms", "order": 5, "to": ["+100"]},
                    {"id": "email-first", "type": "email", "order": 1, "to": ["a@x"]},
                    {"id": "note-tie", "type": "notification", "order": 5},
                ],
            },
            {"id": "approved", "isFinal": True},
        ],
        transitions=[
            {
                "id": "submit",
                "from": "draft",
                "to": "review",
                "actions": [{"id": "hook", "type": "webhook", "url": "https://example.test/h"}],
            },
            {"id": "approve", "from": "review", "to": "approved"},
        ],
        **overrides,
    )


def test_actions_run_in_order_transition_before_entry(engine, definition_factory, clerk) -> None:
    calls: list[str] = []
    for action_type in ("sms", "email", "notification", "webhook"):
        engine.register_action_handler(action_type, Recorder(calls))
    engine.register_workflow(_definition_with_actions(definition_factory))

    instance_id = engine.start_workflow("doc-approval", {}, clerk)
    engine.transition_workflow(instance_id, "submit", clerk)

    assert calls == [
        "transition:hook",
        "state_entry:email-first",
        "state_entry:sms-late",
        "state_entry:note-tie",
    ]


def test_failing_action_does_not_abort_others_or_roll_back(
    engine, definition_factory, clerk
) -> None:
    calls: list[str] = []
    failures: list = []
    engine.on(ACTION_FAILED, failures.append)
    engine.register_action_handler("webhook", Recorder(calls, failures=10))
    engine.register_action_handler("email", Recorder(calls))
    engine.register_action_handler("sms", Recorder(calls, result_ok=False))
    engine.register_action_handler("notification", Recorder(calls))
    engine.register_workflow(_definition_with_actions(definition_factory))

    instance_id = engine.start_workflow("doc-approval", {}, clerk)
    assert engine.transition_workflow(instance_id, "submit", clerk) is True

    assert engine.get_workflow_instance(instance_id).current_state == "review"
    assert calls[-1] == "state_entry:note-tie"
    assert [(e.data["actionId"], e.data["code"]) for e in failures] == [
        ("hook", "ACTION_FAILED"),
        ("sms-late", "ACTION_FAILED"),
    ]


def test_missing_handler_is_skipped(engine, definition_factory, clerk) -> None:
    engine.register_workflow(_definition_with_actions(definition_factory))
    instance_id = engine.start_workflow("doc-approval", {}, clerk)

    assert engine.transition_workflow(instance_id, "submit", clerk) is True
    assert engine.get_workflow_instance(instance_id).status == InstanceStatus.RUNNING


def test_retry_policy_retries_with_backoff(engine, definition_factory, clerk, sleeps) -> None:
    calls: list[str] = []
    engine.register_action_handler("webhook", Recorder(calls, failures=2))
    engine.register_workflow(
        definition_factory(
            transitions=[
                {
                    "id": "submit",
                    "from": "draft",
                    "to": "review",
                    "actions": [
                        {
                            "id": "hook",
                            "type": "webhook",
                            "url": "https://example.test/h",
                            "retryPolicy": {
                                "maxRetries": 3,
                                "backoffStrategy": "exponential",
                                "backoffDelay": 500,
                            },
                        }
                    ],
                }
            ]
        )
    )

    instance_id = engine.start_workflow("doc-approval", {}, clerk)
    engine.transition_workflow(instance_id, "submit", clerk)

    assert calls == ["transition:hook"] * 3
    assert sleeps == [0.5, 1.0]


def test_async_action_does_not_block_transition(engine, definition_factory, clerk) -> None:
    release = threading.Event()
    done = threading.Event()

    class Slow:
        def execute(self, action, context):
            release.wait(timeout=5)
            done.set()
            return ActionResult(ok=True)

    engine.register_action_handler("webhook", Slow())
    engine.register_workflow(
        definition_factory(
            transitions=[
                {
                    "id": "submit",
                    "from": "draft",
                    "to": "review",
                    "actions": [
                        {"id": "hook", "type": "webhook", "url": "https://x.test", "isAsync": True}
                    ],
                }
            ]
        )
    )
    instance_id = engine.start_workflow("doc-approval", {}, clerk)

    assert engine.transition_workflow(instance_id, "submit", clerk) is True
    assert not done.is_set()

    release.set()
    assert engine.actions.wait_idle(timeout=5)
    assert done.is_set()


def test_slow_sync_action_does_not_block_readers_or_writers(
    engine, definition_factory, clerk
) -> None:
    started = threading.Event()
    release = threading.Event()
    finished = threading.Event()

    class Slow:
        def execute(self, action, context):
            started.set()
            release.wait(timeout=5)
            finished.set()
            return ActionResult(ok=True)

    engine.register_action_handler("webhook", Slow())
    engine.register_workflow(
        definition_factory(
            transitions=[
                {
                    "id": "submit",
                    "from": "draft",
                    "to": "review",
                    "actions": [{"id": "hook", "type": "webhook", "url": "https://x.test"}],
                }
            ]
        )
    )
    instance_id = engine.start_workflow("doc-approval", {}, clerk)
    worker = threading.Thread(
        target=engine.transition_workflow, args=(instance_id, "submit", clerk)
    )
    worker.start()
    try:
        assert started.wait(timeout=5)

        (instance,) = engine.get_all_workflow_instances()
        assert instance.current_state == "review"
        engine.update_data(instance_id, clerk, {"note": "while the hook runs"})
        assert not finished.is_set()
    finally:
        release.set()
        worker.join(timeout=5)

    assert finished.is_set()
    assert not worker.is_alive()


def test_handler_sees_snapshot_not_live_instance(engine, definition_factory, clerk) -> None:
    seen = {}

    class Mutating:
        def execute(self, action, context):
            seen["state"] = context.instance.current_state
            context.instance.current_state = "approved"
            return ActionResult(ok=True)

    engine.register_action_handler("webhook", Mutating())
    engine.register_workflow(_definition_with_actions(definition_factory))
    instance_id = engine.start_workflow("doc-approval", {}, clerk)
    engine.transition_workflow(instance_id, "submit", clerk)

    assert seen["state"] == "review"
    assert engine.get_workflow_instance(instance_id).current_state == "review"


@pytest.mark.parametrize(
    ("strategy", "expected"),
    [
        ("fixed", [1.0, 1.0, 1.0, 1.0]),
        ("linear", [1.0, 2.0, 3.0, 4.0]),
        ("exponential", [1.0, 2.0, 4.0, 5.0]),
    ],
)
def test_backoff_strategies_respect_max_delay(strategy, expected) -> None:
    sleeps: list[float] = []
    retried: list[tuple[int, float]] = []
    policy = RetryPolicy(
        max_retries=4, backoff_strategy=strategy, backoff_delay=1000, max_delay=5000
    )

    def always_fails():
        raise ConnectionError("down")

    with pytest.raises(RetriesExhausted):
        call_with_retry(
            always_fails,
            policy,
            sleep=sleeps.append,
            on_retry=lambda n, error, delay: retried.append((n, delay)),
        )

    assert sleeps == expected
    assert retried == list(zip(range(1, 5), expected))


def test_call_with_retry_gives_up() -> None:
    sleeps: list[float] = []

    def always_fails():
        raise TimeoutError("slow")

    with pytest.raises(RetriesExhausted) as exc:
        call_with_retry(
            always_fails, RetryPolicy(max_retries=2, backoff_delay=10), sleep=sleeps.append
        )

    assert exc.value.attempts == 3
    assert isinstance(exc.value.last_error, TimeoutError)
    assert sleeps == [0.01, 0.01]


def test_call_with_retry_without_policy_tries_once() -> None:
    result, attempts = call_with_retry(lambda: "ok", None)
    assert (result, attempts) == ("ok", 1)
