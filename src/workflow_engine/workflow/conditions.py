"""Guard predicates for transitions.

Each condition kind is served by a registered evaluator. The built-in set
covers all five kinds; callers can replace any of them, and supply named
predicates for ``custom_function`` conditions.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from .business_hours import duration_to_timedelta, elapsed_between
from .models import (
    ApprovalStatusCondition,
    CustomFunctionCondition,
    FieldValueCondition,
    Participant,
    TimeElapsedCondition,
    TransitionCondition,
    UserRoleCondition,
    WorkflowDefinition,
    WorkflowInstance,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ConditionContext:
    """Everything a predicate may look at. Predicates must not mutate it."""

    instance: WorkflowInstance
    definition: WorkflowDefinition
    actor: Participant
    data: Mapping[str, Any]
    now: datetime


class ConditionHandler(Protocol):
    def __call__(self, condition: Any, context: ConditionContext) -> bool: ...


CustomFunction = Callable[[ConditionContext, Mapping[str, Any]], bool]


def _to_number(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _lookup_field(name: str, context: ConditionContext) -> Any:
    value = context.instance.data.form_data.get(name)
    if value is None:
        value = context.data.get(name)
    return value


def evaluate_field_value(condition: FieldValueCondition, context: ConditionContext) -> bool:
    value = _lookup_field(condition.field, context)
    op = condition.operator

    if op == "exists":
        return value is not None
    if op == "equals":
        return bool(value == condition.value)
    if op == "not_equals":
        return bool(value != condition.value)
    if op in {"greater_than", "less_than"}:
        left = _to_number(value)
        right = _to_number(condition.value)
        if left is None or right is None:
            return False
        return left > right if op == "greater_than" else left < right
    if op == "contains":
        if value is None:
            return False
        if isinstance(value, (list, tuple, set, frozenset)):
            return condition.value in value
        return str(condition.value) in str(value)
    return False


def evaluate_approval_status(
    condition: ApprovalStatusCondition, context: ConditionContext
) -> bool:
    approvals = context.instance.data.approvals
    if not approvals:
        return condition.value == "none"
    return approvals[-1].decision == condition.value


def evaluate_user_role(condition: UserRoleCondition, context: ConditionContext) -> bool:
    return context.actor.role in condition.roles


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def evaluate_time_elapsed(condition: TimeElapsedCondition, context: ConditionContext) -> bool:
    instance = context.instance
    if condition.field == "timeInState":
        since: datetime | None = instance.state_entered_at()
    elif condition.field == "timeSinceStart":
        since = instance.created_at
    else:
        since = _parse_timestamp(_lookup_field(condition.field, context))
    if since is None or since.tzinfo is None:
        return False

    elapsed = elapsed_between(context.definition, since, context.now)
    threshold = duration_to_timedelta(
        condition.value, condition.unit, context.definition.settings.business_hours
    )
    if condition.operator == "greater_than":
        return elapsed > threshold
    return elapsed < threshold


class ConditionEvaluator:
    def __init__(self) -> None:
        self._handlers: dict[str, ConditionHandler] = {
            "field_value": evaluate_field_value,
            "approval_status": evaluate_approval_status,
            "user_role": evaluate_user_role,
            "time_elapsed": evaluate_time_elapsed,
            "custom_function": self._evaluate_custom,
        }
        self._functions: dict[str, CustomFunction] = {}

    def register(self, kind: str, handler: ConditionHandler) -> None:
        self._handlers[kind] = handler

    def register_function(self, name: str, function: CustomFunction) -> None:
        self._functions[name] = function

    def _evaluate_custom(
        self, condition: CustomFunctionCondition, context: ConditionContext
    ) -> bool:
        function = self._functions.get(condition.custom_function)
        if function is None:
            logger.warning(
                "Custom condition function not registered",
                extra={"function": condition.custom_function, "instance_id": context.instance.id},
            )
            return False
        return bool(function(context, condition.arguments))

    def evaluate(self, condition: TransitionCondition, context: ConditionContext) -> bool:
        handler = self._handlers.get(condition.type)
        if handler is None:
            logger.warning("No evaluator for condition type", extra={"type": condition.type})
            return False
        try:
            return bool(handler(condition, context))
        except Exception:
            logger.exception(
                "Condition evaluation failed",
                extra={"condition_id": condition.id, "instance_id": context.instance.id},
            )
            return False

    def failed(
        self, conditions: Sequence[TransitionCondition], context: ConditionContext
    ) -> list[str]:
        """Evaluate every condition and return labels of those not satisfied."""

        failures: list[str] = []
        for index, condition in enumerate(conditions):
            if not self.evaluate(condition, context):
                failures.append(condition.id or f"{condition.type}[{index}]")
        return failures
