"""The workflow engine: instance lifecycle and the transition executor.

One ``WorkflowEngine`` owns a definition registry and an instance store; any
number of engines can coexist. Every mutation of an instance runs under that
instance's lock, and every request-shaped failure is raised before anything is
written, so a rejected request leaves the instance untouched. Action handlers
and event listeners are queued while the lock is held and run after it is
released, so a slow handler never blocks readers of the instance.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from functools import partial
from typing import Any, Literal

from workflow_engine.config import EngineSettings

from .actions import ActionContext, ActionDispatcher, ActionHandler
from .clock import Clock, SystemClock
from .conditions import ConditionContext, ConditionEvaluator, ConditionHandler, CustomFunction
from .errors import (
    ConcurrencyLimitError,
    ConditionsNotMetError,
    DefinitionValidationError,
    NotFoundError,
    PermissionDeniedError,
    WorkflowCompletedError,
    WorkflowPausedError,
)
from .events import (
    APPROVAL_RECORDED,
    STATE_CHANGED,
    TIMEOUT_REACHED,
    WORKFLOW_ASSIGNED,
    WORKFLOW_CANCELLED,
    WORKFLOW_FAILED,
    WORKFLOW_PAUSED,
    WORKFLOW_RESUMED,
    WORKFLOW_STARTED,
    WORKFLOW_UPDATED,
    EventBus,
    EventHandler,
    WorkflowEvent,
)
from .models import (
    SYSTEM_ACTOR,
    ApprovalRecord,
    HistoryAction,
    HistoryEntry,
    InstanceStatus,
    Participant,
    StartOptions,
    State,
    TaskSpec,
    Transition,
    WorkflowAction,
    WorkflowComment,
    WorkflowData,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowTask,
    new_id,
)
from .registry import DefinitionRegistry
from .store import InstanceStore, history_timestamp
from .tasks import TaskManager

logger = logging.getLogger(__name__)

_LINKED_RECORD_KEYS = {
    "restaurant_id": "restaurantId",
    "order_id": "orderId",
    "design_id": "designId",
    "contract_id": "contractId",
}


def _record_id(value: object) -> str | None:
    # Linked record ids may arrive as numbers; the form data keeps the raw value.
    return None if value is None else str(value)


class WorkflowEngine:
    """Runs named business processes as instances of registered state machines."""

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        clock: Clock | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.clock: Clock = clock or SystemClock()

        self.definitions = DefinitionRegistry()
        self.instances = InstanceStore()
        self.events = EventBus(audit_log=self.settings.enable_audit_log)
        self.conditions = ConditionEvaluator()
        self.actions = ActionDispatcher(
            events=self.events,
            clock=self.clock,
            default_retry_policy=self.settings.default_retry_policy,
            max_workers=self.settings.action_workers,
            sleep=sleep,
        )
        self.tasks = TaskManager(store=self.instances, events=self.events, clock=self.clock)

        self._start_lock = threading.Lock()
        self._background: Any = None

    # ------------------------------------------------------------------
    # Definitions and extension points
    # ------------------------------------------------------------------

    def register_workflow(self, definition: WorkflowDefinition) -> None:
        """Validate and store ``definition``, replacing any earlier version.

        A replacement that drops a state still occupied by a live instance is
        rejected, so ``current_state`` always names a state of its definition.
        """

        if definition.id in self.definitions:
            state_ids = {s.id for s in definition.states}
            stranded = sorted(
                {
                    i.current_state
                    for i in self.instances.snapshots()
                    if i.definition_id == definition.id
                    and not i.is_terminal
                    and i.current_state not in state_ids
                }
            )
            if stranded:
                raise DefinitionValidationError(
                    definition.id,
                    [f"states still occupied by live instances are missing: {', '.join(stranded)}"],
                )
        self.definitions.register(definition)

    def get_workflow_definition(self, definition_id: str) -> WorkflowDefinition | None:
        return self.definitions.get(definition_id)

    def get_all_workflow_definitions(self) -> list[WorkflowDefinition]:
        return self.definitions.list()

    def register_action_handler(self, action_type: str, handler: ActionHandler) -> None:
        self.actions.register(action_type, handler)

    def register_condition(self, kind: str, handler: ConditionHandler) -> None:
        self.conditions.register(kind, handler)

    def register_condition_function(self, name: str, function: CustomFunction) -> None:
        self.conditions.register_function(name, function)

    def on(self, event_type: str, handler: EventHandler) -> None:
        self.events.on(event_type, handler)

    def off(self, event_type: str, handler: EventHandler) -> None:
        self.events.off(event_type, handler)

    # ------------------------------------------------------------------
    # Instance lifecycle
    # ------------------------------------------------------------------

    def start_workflow(
        self,
        definition_id: str,
        initial_data: Mapping[str, Any] | None = None,
        initiator: Participant | None = None,
        options: StartOptions | None = None,
    ) -> str:
        definition = self.definitions.get(definition_id)
        if definition is None or not definition.is_active:
            raise NotFoundError("workflow definition", definition_id)
        initial = definition.initial_state()
        if initial is None:
            raise NotFoundError("initial state", definition_id)

        initiator = initiator or SYSTEM_ACTOR
        options = options or StartOptions()
        data = dict(initial_data or {})

        with self._start_lock:
            self._check_capacity(definition)
            now = self.clock.now()
            instance = WorkflowInstance(
                id=new_id(),
                definition_id=definition.id,
                title=options.title or definition.name,
                description=options.description,
                current_state=initial.id,
                status=InstanceStatus.RUNNING,
                priority=options.priority,
                initiator=initiator,
                assignee=options.assignee,
                participants=[initiator] + ([options.assignee] if options.assignee else []),
                data=WorkflowData(
                    form_data=data,
                    **{
                        attr: _record_id(data.get(key))
                        for attr, key in _LINKED_RECORD_KEYS.items()
                    },
                ),
                history=[
                    HistoryEntry(
                        timestamp=now,
                        action="created",
                        to_state=initial.id,
                        actor=initiator,
                        description=f"Workflow started: {options.title or definition.name}",
                    )
                ],
                tags=list(options.tags),
                due_date=options.due_date,
                metadata=dict(options.metadata),
                created_at=now,
                updated_at=now,
            )
            self.instances.add(instance)

        with self.instances.locked(instance.id) as live:
            self._run_actions(initial.actions, live, definition, initiator, "state_entry")
            self._publish(
                WorkflowEvent(
                    type=WORKFLOW_STARTED,
                    instance_id=live.id,
                    definition_id=definition.id,
                    timestamp=now,
                    actor=initiator,
                    data={"initialState": initial.id},
                )
            )

        logger.info(
            "Workflow started",
            extra={"instance_id": instance.id, "definition_id": definition.id, "state": initial.id},
        )
        return instance.id

    def _check_capacity(self, definition: WorkflowDefinition) -> None:
        def running(instance: WorkflowInstance) -> bool:
            return instance.status == InstanceStatus.RUNNING

        limit = definition.settings.max_concurrent_instances
        if limit is not None:
            active = self.instances.count(
                lambda i: running(i) and i.definition_id == definition.id
            )
            if active >= limit:
                raise ConcurrencyLimitError(f"definition {definition.id}", limit)

        engine_limit = self.settings.max_concurrent_workflows
        if engine_limit and self.instances.count(running) >= engine_limit:
            raise ConcurrencyLimitError("engine", engine_limit)

    def restore(self, instance: WorkflowInstance) -> None:
        """Put a previously saved instance back under this engine's management."""

        definition = self.definitions.require(instance.definition_id)
        if definition.get_state(instance.current_state) is None:
            raise NotFoundError("state", f"{instance.definition_id}/{instance.current_state}")
        self.instances.add(instance.model_copy(deep=True))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_workflow_instance(self, instance_id: str) -> WorkflowInstance | None:
        return self.instances.snapshot(instance_id)

    def get_all_workflow_instances(self) -> list[WorkflowInstance]:
        return self.instances.snapshots()

    def get_workflows_by_status(self, status: InstanceStatus | str) -> list[WorkflowInstance]:
        wanted = InstanceStatus(status)
        return [i for i in self.instances.snapshots() if i.status == wanted]

    def get_workflows_by_participant(self, participant_id: str) -> list[WorkflowInstance]:
        return [i for i in self.instances.snapshots() if i.has_participant(participant_id)]

    def available_transitions(self, instance_id: str, actor: Participant) -> list[Transition]:
        """Transitions out of the current state that ``actor`` is allowed to fire.

        Guard conditions are not evaluated here.
        """

        with self.instances.locked(instance_id) as instance:
            if instance.status != InstanceStatus.RUNNING:
                return []
            definition = self._definition_for(instance)
            allowed: list[Transition] = []
            for transition in definition.transitions_from(instance.current_state):
                try:
                    self._check_permission(actor, transition)
                except PermissionDeniedError:
                    continue
                allowed.append(transition)
            return allowed

    # ------------------------------------------------------------------
    # Transition executor
    # ------------------------------------------------------------------

    def transition_workflow(
        self,
        instance_id: str,
        transition_id: str,
        actor: Participant,
        data: Mapping[str, Any] | None = None,
    ) -> bool:
        with self.instances.locked(instance_id) as instance:
            self._fire(instance, transition_id, actor, data, check_permissions=True)
        return True

    def system_transition(
        self, instance_id: str, transition_id: str, *, reason: str | None = None
    ) -> bool:
        """Fire a transition on behalf of the system (escalations, automation).

        Role and permission requirements are waived; guard conditions are not.
        """

        data = {"reason": reason} if reason else None
        with self.instances.locked(instance_id) as instance:
            self._fire(instance, transition_id, SYSTEM_ACTOR, data, check_permissions=False)
        return True

    def _fire(
        self,
        instance: WorkflowInstance,
        transition_id: str,
        actor: Participant,
        data: Mapping[str, Any] | None,
        *,
        check_permissions: bool,
    ) -> None:
        definition = self._definition_for(instance)
        self._ensure_accepting(instance)

        transition = definition.find_transition(transition_id, instance.current_state)
        if transition is None:
            raise NotFoundError("transition", f"{transition_id} from {instance.current_state}")

        if check_permissions:
            self._check_permission(actor, transition)

        context = ConditionContext(
            instance=instance,
            definition=definition,
            actor=actor,
            data=dict(data or {}),
            now=self.clock.now(),
        )
        failed = self.conditions.failed(transition.conditions, context)
        if failed:
            raise ConditionsNotMetError(transition.id, failed)

        target = definition.get_state(transition.to_state)
        if target is None:
            raise NotFoundError("state", transition.to_state)

        self._commit(instance, definition, transition, target, actor, data)

    def _commit(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        transition: Transition,
        target: State,
        actor: Participant,
        data: Mapping[str, Any] | None,
    ) -> None:
        now = history_timestamp(self.clock, instance)
        from_state = instance.current_state
        label = transition.display_name or transition.id

        instance.current_state = target.id
        instance.updated_at = now
        instance.history.append(
            HistoryEntry(
                timestamp=now,
                action="state_changed",
                from_state=from_state,
                to_state=target.id,
                actor=actor,
                description=f"{label}: {from_state} -> {target.id}",
                changes={"state": {"from": from_state, "to": target.id}},
                metadata=dict(data) if data else None,
            )
        )
        if target.is_final:
            instance.status = InstanceStatus.COMPLETED
            instance.completed_at = now

        self._run_actions(transition.actions, instance, definition, actor, "transition")
        self._run_actions(target.actions, instance, definition, actor, "state_entry")
        self._publish(
            WorkflowEvent(
                type=STATE_CHANGED,
                instance_id=instance.id,
                definition_id=definition.id,
                timestamp=now,
                actor=actor,
                data={"fromState": from_state, "toState": target.id, "transitionId": transition.id},
            )
        )
        logger.info(
            "Workflow transitioned",
            extra={
                "instance_id": instance.id,
                "transition_id": transition.id,
                "from_state": from_state,
                "to_state": target.id,
                "status": instance.status.value,
            },
        )

    def _definition_for(self, instance: WorkflowInstance) -> WorkflowDefinition:
        return self.definitions.require(instance.definition_id)

    @staticmethod
    def _ensure_accepting(instance: WorkflowInstance) -> None:
        if instance.is_terminal:
            raise WorkflowCompletedError(instance.id, instance.status.value)
        if instance.status == InstanceStatus.PAUSED:
            raise WorkflowPausedError(instance.id)

    @staticmethod
    def _check_permission(actor: Participant, transition: Transition) -> None:
        if not actor.is_active:
            raise PermissionDeniedError(actor.id, transition.id, "actor is inactive")
        if transition.required_role and actor.role != transition.required_role:
            raise PermissionDeniedError(
                actor.id, transition.id, f"requires role {transition.required_role!r}"
            )
        missing = [p for p in transition.required_permissions if p not in actor.permissions]
        if missing:
            raise PermissionDeniedError(
                actor.id, transition.id, f"missing permissions: {', '.join(missing)}"
            )

    def _run_actions(
        self,
        actions: list[WorkflowAction],
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        actor: Participant | None,
        trigger: Literal["state_entry", "transition"],
    ) -> None:
        """Queue ``actions`` against a snapshot of ``instance`` to run once the lock is released."""

        if not actions:
            return
        context = ActionContext(
            instance=instance.model_copy(deep=True),
            definition=definition,
            actor=actor,
            trigger=trigger,
            timestamp=self.clock.now(),
        )
        self.instances.after_release(partial(self.actions.dispatch, actions, context))

    def _publish(self, event: WorkflowEvent) -> None:
        self.instances.after_release(partial(self.events.emit, event))

    # ------------------------------------------------------------------
    # Data, approvals, comments, assignment
    # ------------------------------------------------------------------

    def _emit(
        self,
        event_type: str,
        instance: WorkflowInstance,
        actor: Participant | None,
        data: dict[str, object],
    ) -> None:
        self._publish(
            WorkflowEvent(
                type=event_type,
                instance_id=instance.id,
                definition_id=instance.definition_id,
                timestamp=instance.updated_at,
                actor=actor,
                data=data,
            )
        )

    def _append_history(
        self,
        instance: WorkflowInstance,
        action: HistoryAction,
        actor: Participant,
        description: str,
        **fields: Any,
    ) -> HistoryEntry:
        now = history_timestamp(self.clock, instance)
        entry = HistoryEntry(
            timestamp=now, action=action, actor=actor, description=description, **fields
        )
        instance.history.append(entry)
        instance.updated_at = now
        return entry

    def record_approval(
        self,
        instance_id: str,
        actor: Participant,
        decision: Literal["approved", "rejected", "pending"],
        comment: str | None = None,
    ) -> str:
        with self.instances.locked(instance_id) as instance:
            if instance.is_terminal:
                raise WorkflowCompletedError(instance.id, instance.status.value)
            entry = self._append_history(
                instance,
                {"approved": "approved", "rejected": "rejected"}.get(decision, "updated"),
                actor,
                f"Approval recorded: {decision}",
                metadata={"decision": decision, "comment": comment},
            )
            record = ApprovalRecord(
                approver=actor, decision=decision, comment=comment, timestamp=entry.timestamp
            )
            instance.data.approvals.append(record)
            self._emit(
                APPROVAL_RECORDED,
                instance,
                actor,
                {"approvalId": record.id, "decision": decision, "state": instance.current_state},
            )
        return record.id

    def update_data(
        self, instance_id: str, actor: Participant, form_data: Mapping[str, Any]
    ) -> dict[str, dict[str, Any]]:
        """Merge ``form_data`` into the instance and return the per-field changes."""

        with self.instances.locked(instance_id) as instance:
            if instance.is_terminal:
                raise WorkflowCompletedError(instance.id, instance.status.value)
            current = instance.data.form_data
            changes = {
                key: {"from": current.get(key), "to": value}
                for key, value in form_data.items()
                if current.get(key) != value or key not in current
            }
            if not changes:
                return {}
            current.update(form_data)
            self._append_history(
                instance,
                "updated",
                actor,
                f"Updated fields: {', '.join(sorted(changes))}",
                changes=changes,
            )
            self._emit(WORKFLOW_UPDATED, instance, actor, {"fields": sorted(changes)})
            return changes

    def add_comment(
        self,
        instance_id: str,
        author: Participant,
        content: str,
        *,
        comment_type: Literal["comment", "question", "issue", "resolution"] = "comment",
        is_private: bool = False,
    ) -> str:
        with self.instances.locked(instance_id) as instance:
            entry = self._append_history(instance, "commented", author, content[:200])
            comment = WorkflowComment(
                author=author,
                content=content,
                type=comment_type,
                is_private=is_private,
                timestamp=entry.timestamp,
            )
            instance.data.comments.append(comment)
        return comment.id

    def assign(self, instance_id: str, assignee: Participant, actor: Participant) -> None:
        with self.instances.locked(instance_id) as instance:
            previous = instance.assignee.id if instance.assignee else None
            instance.assignee = assignee
            if not any(p.id == assignee.id for p in instance.participants):
                instance.participants.append(assignee)
            self._append_history(
                instance,
                "assigned",
                actor,
                f"Assigned to {assignee.name or assignee.id}",
                changes={"assignee": {"from": previous, "to": assignee.id}},
            )
            self._emit(WORKFLOW_ASSIGNED, instance, actor, {"assigneeId": assignee.id})

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    def pause(self, instance_id: str, actor: Participant, reason: str | None = None) -> None:
        self._set_status(
            instance_id, actor, InstanceStatus.PAUSED, "paused", WORKFLOW_PAUSED, reason
        )

    def resume(self, instance_id: str, actor: Participant) -> None:
        self._set_status(
            instance_id, actor, InstanceStatus.RUNNING, "resumed", WORKFLOW_RESUMED, None
        )

    def cancel(self, instance_id: str, actor: Participant, reason: str | None = None) -> None:
        self._set_status(
            instance_id, actor, InstanceStatus.CANCELLED, "cancelled", WORKFLOW_CANCELLED, reason
        )

    def fail(self, instance_id: str, actor: Participant, reason: str | None = None) -> None:
        self._set_status(
            instance_id, actor, InstanceStatus.FAILED, "failed", WORKFLOW_FAILED, reason
        )

    def _set_status(
        self,
        instance_id: str,
        actor: Participant,
        status: InstanceStatus,
        action: HistoryAction,
        event_type: str,
        reason: str | None,
    ) -> None:
        with self.instances.locked(instance_id) as instance:
            if instance.is_terminal:
                raise WorkflowCompletedError(instance.id, instance.status.value)
            if instance.status == status:
                return
            previous = instance.status
            instance.status = status
            self._append_history(
                instance,
                action,
                actor,
                reason or f"Workflow {action}",
                changes={"status": {"from": previous.value, "to": status.value}},
            )
            self._emit(
                event_type, instance, actor, {"reason": reason, "state": instance.current_state}
            )
        logger.info(
            "Workflow status changed",
            extra={"instance_id": instance_id, "status": status.value},
        )

    # ------------------------------------------------------------------
    # Escalations (used by the background scheduler)
    # ------------------------------------------------------------------

    def record_escalation(
        self,
        instance_id: str,
        *,
        source: str,
        action: str,
        target: str | None,
        message: str | None,
    ) -> None:
        with self.instances.locked(instance_id) as instance:
            self._append_history(
                instance,
                "escalated",
                SYSTEM_ACTOR,
                message or f"Timeout reached in state {instance.current_state}",
                metadata={"source": source, "action": action, "target": target},
            )
            self._emit(
                TIMEOUT_REACHED,
                instance,
                SYSTEM_ACTOR,
                {
                    "state": instance.current_state,
                    "source": source,
                    "action": action,
                    "target": target,
                    "message": message,
                },
            )
        logger.warning(
            "Workflow escalated",
            extra={
                "instance_id": instance_id,
                "source": source,
                "action": action,
                "target": target,
            },
        )

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_task(
        self, instance_id: str, spec: TaskSpec, actor: Participant | None = None
    ) -> str:
        return self.tasks.create_task(instance_id, spec, actor=actor)

    def complete_task(
        self,
        instance_id: str,
        task_id: str,
        actor: Participant,
        result: Any = None,
        *,
        comment: str | None = None,
    ) -> WorkflowTask:
        return self.tasks.complete_task(instance_id, task_id, actor, result, comment=comment)

    def start_task(self, instance_id: str, task_id: str, actor: Participant) -> None:
        self.tasks.start_task(instance_id, task_id, actor)

    def cancel_task(self, instance_id: str, task_id: str, actor: Participant) -> None:
        self.tasks.cancel_task(instance_id, task_id, actor)

    # ------------------------------------------------------------------
    # Background processes
    # ------------------------------------------------------------------

    def start_background(self) -> None:
        from .scheduler import BackgroundProcesses

        if self._background is None:
            self._background = BackgroundProcesses(self)
        self._background.start()

    def stop_background(self) -> None:
        if self._background is not None:
            self._background.stop()

    def shutdown(self) -> None:
        self.stop_background()
        self.actions.shutdown(wait=True)
