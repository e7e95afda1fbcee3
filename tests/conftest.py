"""Test configuration and fixtures."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import pytest

from workflow_engine.config import EngineSettings
from workflow_engine.workflow.clock import FrozenClock
from workflow_engine.workflow.engine import WorkflowEngine
from workflow_engine.workflow.models import Participant, WorkflowDefinition


def make_definition(**overrides: Any) -> WorkflowDefinition:
    """Draft (initial) -> Review -> Approved (final); "approve" needs a manager."""

    payload: dict[str, Any] = {
        "id": "doc-approval",
        "name": "Document approval",
        "states": [
            {"id": "draft", "name": "Draft", "type": "start", "isInitial": True},
            {"id": "review", "name": "Review"},
            {"id": "approved", "name": "Approved", "type": "end", "isFinal": True},
            {"id": "rejected", "name": "Rejected", "type": "end", "isFinal": True},
        ],
        "transitions": [
            {"id": "submit", "from": "draft", "to": "review"},
            {"id": "approve", "from": "review", "to": "approved", "requiredRole": "manager"},
            {"id": "reject", "from": "review", "to": "rejected", "requiredRole": "manager"},
        ],
    }
    payload.update(overrides)
    return WorkflowDefinition.model_validate(payload)


@pytest.fixture
def clock() -> FrozenClock:
    """Provide a frozen clock starting Monday 2024-01-01 09:00 UTC."""
    return FrozenClock(datetime(2024, 1, 1, 9, 0, tzinfo=UTC))


@pytest.fixture
def settings() -> EngineSettings:
    """Provide engine settings that ignore the environment and any .env file."""
    return EngineSettings(_env_file=None, enable_audit_log=False)


@pytest.fixture
def sleeps() -> list[float]:
    """Collect retry delays instead of sleeping."""
    return []


@pytest.fixture
def engine(settings: EngineSettings, clock: FrozenClock, sleeps: list[float]):
    """Provide an engine on the frozen clock; async action workers are shut down afterwards."""
    eng = WorkflowEngine(settings, clock=clock, sleep=sleeps.append)
    yield eng
    eng.shutdown()


@pytest.fixture
def definition() -> WorkflowDefinition:
    return make_definition()


@pytest.fixture
def clerk() -> Participant:
    return Participant(id="u-clerk", name="Casey Clerk", role="clerk")


@pytest.fixture
def manager() -> Participant:
    return Participant(id="u-manager", name="Morgan Manager", role="manager")


@pytest.fixture
def definition_factory():
    """Build the approval definition with top-level fields overridden."""
    return make_definition
