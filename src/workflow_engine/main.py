"""CLI entrypoint: validate and inspect workflow definition files."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from workflow_engine import __version__
from workflow_engine.config import EngineSettings
from workflow_engine.logging import configure_logging
from workflow_engine.workflow.errors import DefinitionValidationError
from workflow_engine.workflow.loader import load_definitions
from workflow_engine.workflow.models import WorkflowDefinition
from workflow_engine.workflow.registry import validate_definition

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="workflow-engine",
        description="Validate and inspect workflow definitions",
    )
    parser.add_argument("--version", action="version", version=f"workflow-engine {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser(
        "validate", help="Check definition files against the structural rules"
    )
    validate.add_argument("path", type=Path, help="A definition .json file or a directory of them")

    describe = subparsers.add_parser(
        "describe", help="Print the states and transitions of definitions"
    )
    describe.add_argument("path", type=Path, help="A definition .json file or a directory of them")
    describe.add_argument(
        "--json", action="store_true", help="Print a machine-readable summary instead of text"
    )

    return parser


def _describe(definition: WorkflowDefinition) -> list[str]:
    lines = [f"{definition.id} ({definition.name}) v{definition.version}"]
    lines.append("  states:")
    for state in definition.states:
        flags = [f for f, on in (("initial", state.is_initial), ("final", state.is_final)) if on]
        suffix = f" [{', '.join(flags)}]" if flags else ""
        lines.append(f"    - {state.id}{suffix}")
    lines.append("  transitions:")
    for t in definition.transitions:
        role = f" (role: {t.required_role})" if t.required_role else ""
        guards = f" [{len(t.conditions)} condition(s)]" if t.conditions else ""
        lines.append(f"    - {t.id}: {t.from_state} -> {t.to_state}{role}{guards}")
    return lines


def _summary(definition: WorkflowDefinition) -> dict[str, object]:
    return {
        "id": definition.id,
        "name": definition.name,
        "version": definition.version,
        "states": [s.id for s in definition.states],
        "transitions": [
            {"id": t.id, "from": t.from_state, "to": t.to_state} for t in definition.transitions
        ],
    }


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = EngineSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    try:
        definitions = load_definitions(args.path)
    except FileNotFoundError:
        print(f"No such file or directory: {args.path}", file=sys.stderr)
        return 2
    except (json.JSONDecodeError, ValidationError) as e:
        print(f"Could not parse definitions in {args.path}:", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    try:
        if args.command == "validate":
            failed = 0
            seen: set[str] = set()
            for definition in definitions:
                problems = validate_definition(definition)
                if definition.id and definition.id in seen:
                    problems.append(f"duplicate definition id {definition.id!r}")
                seen.add(definition.id)
                if problems:
                    failed += 1
                    print(str(DefinitionValidationError(definition.id or "<unnamed>", problems)))
                else:
                    print(f"OK {definition.id}")
            return 1 if failed else 0

        if args.command == "describe":
            if args.json:
                print(json.dumps([_summary(d) for d in definitions], indent=2))
            else:
                for definition in definitions:
                    print("\n".join(_describe(definition)))
            return 0

        logger.error("Unknown command", extra={"command": args.command})
        return 2

    except Exception:
        logger.exception("Command failed")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
