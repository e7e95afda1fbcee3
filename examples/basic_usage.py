#!/usr/bin/env python3
"""Programmatic workflow example.

This drives the engine directly, without the REST server:

* load settings from `.env`
* register a definition from a JSON file
* start an instance and walk it to a final state, printing every event

The definition file is passed as an argument (not read from `.env`).
"""

from __future__ import annotations

import argparse
import json
from typing import Sequence

from workflow_engine import EngineSettings, WorkflowEngine
from workflow_engine.logging import configure_logging
from workflow_engine.workflow.errors import WorkflowError
from workflow_engine.workflow.events import WorkflowEvent
from workflow_engine.workflow.handlers import register_builtin_handlers
from workflow_engine.workflow.loader import load_definitions
from workflow_engine.workflow.models import Participant


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a workflow (programmatic example).")
    parser.add_argument("definition", help="Path to a workflow definition .json file")
    parser.add_argument(
        "--transitions",
        default="",
        help='Comma-separated transition ids to fire in order, e.g. "submit,approve"',
    )
    parser.add_argument("--role", default="manager", help="Role of the acting user")
    parser.add_argument("--data", default="{}", help="Initial form data as a JSON object")
    return parser.parse_args(argv)


def _print_event(event: WorkflowEvent) -> None:
    print(f"[{event.type}] {event.instance_id} {json.dumps(event.data, default=str)}")


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    transition_ids = [t.strip() for t in args.transitions.split(",") if t.strip()]

    settings = EngineSettings()
    configure_logging(settings.log_level)

    engine = WorkflowEngine(settings)
    register_builtin_handlers(engine)
    for event_type in ("workflow_started", "state_changed", "action_failed"):
        engine.on(event_type, _print_event)

    actor = Participant(id="example-user", name="Example User", role=args.role)
    try:
        (definition, *_) = load_definitions(args.definition)
        engine.register_workflow(definition)
        instance_id = engine.start_workflow(definition.id, json.loads(args.data), actor)
        for transition_id in transition_ids:
            engine.transition_workflow(instance_id, transition_id, actor)
    except WorkflowError as exc:
        print(f"{exc.code}: {exc}")
        return 1
    finally:
        engine.shutdown()

    instance = engine.get_workflow_instance(instance_id)
    print(f"Instance {instance.id} is {instance.status.value} in state {instance.current_state!r}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
