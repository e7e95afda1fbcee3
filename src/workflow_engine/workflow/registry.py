"""Definition registry: validates and stores immutable workflow templates."""

from __future__ import annotations

import logging
import threading
from collections import Counter

from .errors import DefinitionValidationError, NotFoundError
from .models import WorkflowDefinition

logger = logging.getLogger(__name__)

_AUTO_DECISIONS = {"auto_approve", "auto_reject"}


def validate_definition(definition: WorkflowDefinition) -> list[str]:
    """Return the structural rules ``definition`` violates (empty when valid)."""

    violations: list[str] = []
    if not definition.id.strip():
        violations.append("definition must have a non-empty id")
    if not definition.name.strip():
        violations.append("definition must have a non-empty name")
    if not definition.states:
        violations.append("definition must have at least one state")
        return violations

    initial = [s.id for s in definition.states if s.is_initial]
    if len(initial) != 1:
        violations.append(f"definition must have exactly one initial state (found {len(initial)})")
    if not any(s.is_final for s in definition.states):
        violations.append("definition must have at least one final state")

    state_counts = Counter(s.id for s in definition.states)
    duplicates = sorted(state_id for state_id, n in state_counts.items() if n > 1)
    if duplicates:
        violations.append(f"duplicate state ids: {', '.join(duplicates)}")

    # A transition id may be reused from different source states, never twice
    # from the same one.
    edge_counts = Counter((t.id, t.from_state) for t in definition.transitions)
    for (transition_id, from_state), n in sorted(edge_counts.items()):
        if n > 1:
            violations.append(
                f"transition {transition_id!r} is declared {n} times from state {from_state!r}"
            )

    for t in definition.transitions:
        for end in (t.from_state, t.to_state):
            if end not in state_counts:
                violations.append(f"transition {t.id!r} references unknown state {end!r}")

    for state in definition.states:
        for timeout in state.timeouts:
            if timeout.action not in _AUTO_DECISIONS or timeout.target is None:
                continue
            if definition.find_transition(timeout.target, state.id) is None:
                violations.append(
                    f"timeout on state {state.id!r} targets transition {timeout.target!r}, "
                    "which does not leave that state"
                )
    return violations


class DefinitionRegistry:
    """Keyed store of registered definitions.

    Lookups return ``None`` for unknown ids; only ``require`` raises.
    """

    def __init__(self) -> None:
        self._definitions: dict[str, WorkflowDefinition] = {}
        self._lock = threading.Lock()

    def register(self, definition: WorkflowDefinition) -> None:
        violations = validate_definition(definition)
        if violations:
            raise DefinitionValidationError(definition.id, violations)

        stored = definition.model_copy(deep=True)
        with self._lock:
            replaced = definition.id in self._definitions
            self._definitions[definition.id] = stored

        if replaced:
            logger.warning(
                "Workflow definition replaced",
                extra={"definition_id": definition.id, "version": definition.version},
            )
        else:
            logger.info(
                "Workflow definition registered",
                extra={"definition_id": definition.id, "version": definition.version},
            )

    def get(self, definition_id: str) -> WorkflowDefinition | None:
        with self._lock:
            return self._definitions.get(definition_id)

    def require(self, definition_id: str) -> WorkflowDefinition:
        definition = self.get(definition_id)
        if definition is None:
            raise NotFoundError("workflow definition", definition_id)
        return definition

    def list(self) -> list[WorkflowDefinition]:
        with self._lock:
            return list(self._definitions.values())

    def __contains__(self, definition_id: object) -> bool:
        with self._lock:
            return definition_id in self._definitions

    def __len__(self) -> int:
        with self._lock:
            return len(self._definitions)
