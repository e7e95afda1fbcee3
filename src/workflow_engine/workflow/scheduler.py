"""Background sweeps: escalations on timeout and cleanup of old instances.

``EscalationScheduler.sweep`` and ``CleanupSweeper.sweep`` do one pass each and
read time from the engine's clock, so tests can drive them directly.
``PeriodicRunner`` repeats a sweep on a daemon thread.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from .business_hours import duration_to_timedelta, elapsed_between
from .conditions import ConditionContext
from .errors import NotFoundError, WorkflowError
from .models import (
    SYSTEM_ACTOR,
    EscalationRule,
    InstanceStatus,
    Participant,
    StateTimeout,
    WorkflowDefinition,
    WorkflowInstance,
)

if TYPE_CHECKING:
    from .engine import WorkflowEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class _Due:
    key: str
    action: str
    target: str | None
    message: str | None


class EscalationScheduler:
    """Fires state timeouts and workflow escalation rules exactly once per state entry."""

    def __init__(self, engine: WorkflowEngine) -> None:
        self._engine = engine

    def sweep(self) -> int:
        fired = 0
        for instance_id in self._engine.instances.ids():
            try:
                fired += self._sweep_instance(instance_id)
            except NotFoundError:
                # Removed by the cleanup sweeper between listing and locking.
                continue
        if fired:
            logger.info("Escalation sweep finished", extra={"fired": fired})
        return fired

    def _sweep_instance(self, instance_id: str) -> int:
        engine = self._engine
        with engine.instances.locked(instance_id) as instance:
            if instance.status != InstanceStatus.RUNNING:
                return 0
            definition = engine.definitions.get(instance.definition_id)
            if definition is None:
                return 0

            now = engine.clock.now()
            engine.tasks.mark_overdue(instance, now)

            due = self._due(instance, definition, now)
            if not due:
                return 0

            # Marked before applying, so a failing action is not retried forever.
            instance.fired_escalations.extend(d.key for d in due)
            state_id = instance.current_state
            applied = 0
            for item in due:
                if instance.current_state != state_id or instance.status != InstanceStatus.RUNNING:
                    break
                self._apply(instance, definition, item)
                applied += 1
            return applied

    def _due(
        self, instance: WorkflowInstance, definition: WorkflowDefinition, now: datetime
    ) -> list[_Due]:
        entry = instance.state_entry()
        scope = entry.id if entry is not None else f"{instance.id}:start"
        elapsed = elapsed_between(definition, instance.state_entered_at(), now)
        hours = definition.settings.business_hours
        fired = set(instance.fired_escalations)

        due: list[_Due] = []
        state = definition.get_state(instance.current_state)
        timeouts: list[StateTimeout] = state.timeouts if state is not None else []
        for index, timeout in enumerate(timeouts):
            key = f"{scope}:timeout:{index}"
            if key in fired:
                continue
            if elapsed >= duration_to_timedelta(timeout.duration, timeout.unit, hours):
                due.append(_Due(key, timeout.action, timeout.target, timeout.message))

        rules: list[EscalationRule] = definition.settings.escalation_rules
        if rules:
            context = ConditionContext(
                instance=instance, definition=definition, actor=SYSTEM_ACTOR, data={}, now=now
            )
            for rule in rules:
                key = f"{scope}:rule:{rule.id}"
                if key in fired or elapsed < timedelta(minutes=rule.delay):
                    continue
                if self._engine.conditions.evaluate(rule.condition, context):
                    due.append(_Due(key, rule.action, rule.target, rule.message))
        return due

    def _apply(
        self, instance: WorkflowInstance, definition: WorkflowDefinition, item: _Due
    ) -> None:
        engine = self._engine
        engine.record_escalation(
            instance.id,
            source=item.key,
            action=item.action,
            target=item.target,
            message=item.message,
        )

        if item.action == "reassign" and item.target:
            role = Participant(id=item.target, type="role", name=item.target, role=item.target)
            engine.assign(instance.id, role, SYSTEM_ACTOR)
        elif item.action in {"auto_approve", "auto_reject"}:
            decision = "approved" if item.action == "auto_approve" else "rejected"
            engine.record_approval(
                instance.id,
                SYSTEM_ACTOR,
                decision,
                item.message or f"Automatic decision after timeout: {decision}",
            )
            if item.target and definition.find_transition(item.target, instance.current_state):
                try:
                    engine.system_transition(instance.id, item.target, reason=item.action)
                except WorkflowError as exc:
                    logger.warning(
                        "Escalation transition rejected",
                        extra={
                            "instance_id": instance.id,
                            "transition_id": item.target,
                            "code": exc.code,
                            "error": str(exc),
                        },
                    )


class CleanupSweeper:
    """Deletes completed instances whose ``completed_at`` is past the retention window."""

    def __init__(self, engine: WorkflowEngine, retention_days: int | None = None) -> None:
        self._engine = engine
        self._retention_days = (
            retention_days if retention_days is not None else engine.settings.retention_days
        )

    def _retention_for(self, definition: WorkflowDefinition | None) -> int | None:
        if definition is None:
            return self._retention_days
        if not definition.settings.auto_cleanup:
            return None
        if definition.settings.cleanup_after_days is not None:
            return definition.settings.cleanup_after_days
        return self._retention_days

    def sweep(self) -> list[str]:
        engine = self._engine
        now = engine.clock.now()
        removed: list[str] = []

        for instance_id in engine.instances.ids():
            snapshot = engine.instances.snapshot(instance_id)
            if snapshot is None:
                continue
            days = self._retention_for(engine.definitions.get(snapshot.definition_id))
            if days is None:
                continue
            cutoff = now - timedelta(days=days)

            def expired(instance: WorkflowInstance, cutoff: datetime = cutoff) -> bool:
                return (
                    instance.status == InstanceStatus.COMPLETED
                    and instance.completed_at is not None
                    and instance.completed_at < cutoff
                )

            if engine.instances.remove_if(instance_id, expired):
                removed.append(instance_id)

        if removed:
            logger.info("Cleanup sweep removed instances", extra={"removed": len(removed)})
        return removed


class PeriodicRunner:
    """Runs ``task`` every ``interval_seconds`` on a daemon thread until stopped."""

    def __init__(self, name: str, interval_seconds: float, task: Callable[[], object]) -> None:
        self.name = name
        self.interval_seconds = interval_seconds
        self._task = task
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> None:
        try:
            self._task()
        except Exception:
            logger.exception("Background task failed", extra={"task": self.name})

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.run_once()

    def start(self) -> None:
        if self.running or self.interval_seconds <= 0:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info(
            "Background task started",
            extra={"task": self.name, "interval_seconds": self.interval_seconds},
        )

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None


class BackgroundProcesses:
    """The escalation and cleanup loops of one engine, configured from its settings."""

    def __init__(self, engine: WorkflowEngine) -> None:
        settings = engine.settings
        self.escalations = EscalationScheduler(engine)
        self.cleanup = CleanupSweeper(engine)
        self.runners = [
            PeriodicRunner(
                "workflow-escalations",
                settings.escalation_interval_seconds,
                self.escalations.sweep,
            ),
            PeriodicRunner(
                "workflow-cleanup",
                settings.cleanup_interval_minutes * 60,
                self.cleanup.sweep,
            ),
        ]

    def start(self) -> None:
        for runner in self.runners:
            runner.start()

    def stop(self) -> None:
        for runner in self.runners:
            runner.stop()
