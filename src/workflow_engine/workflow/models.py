"""Workflow definitions and runtime records.

Definitions are immutable templates (states, transitions, roles, settings).
Instances are the mutable runtime records the engine owns: current state,
status, data bag, append-only history and tasks.

JSON documents use camelCase keys (``isInitial``, ``requiredRole``,
``from``/``to``); Python code uses the snake_case attribute names.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def new_id() -> str:
    return uuid.uuid4().hex


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _DefinitionModel(_Model):
    model_config = ConfigDict(frozen=True)


TimeUnit = Literal["minutes", "hours", "days"]
Priority = Literal["low", "medium", "high", "urgent"]


class InstanceStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[InstanceStatus] = frozenset(
    {InstanceStatus.COMPLETED, InstanceStatus.FAILED, InstanceStatus.CANCELLED}
)


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    OVERDUE = "overdue"


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------

ComparisonOperator = Literal[
    "equals", "not_equals", "greater_than", "less_than", "contains", "exists"
]


class FieldValueCondition(_DefinitionModel):
    type: Literal["field_value"] = "field_value"
    id: str = ""
    field: str
    operator: ComparisonOperator = "equals"
    value: Any = None


class ApprovalStatusCondition(_DefinitionModel):
    """Matches the decision of the most recent approval.

    ``value == "none"`` is satisfied only while no approval has been recorded.
    """

    type: Literal["approval_status"] = "approval_status"
    id: str = ""
    value: Literal["approved", "rejected", "pending", "none"]


class UserRoleCondition(_DefinitionModel):
    type: Literal["user_role"] = "user_role"
    id: str = ""
    roles: list[str] = Field(min_length=1)


class TimeElapsedCondition(_DefinitionModel):
    """Compares elapsed time against a threshold.

    ``field`` is ``timeInState``, ``timeSinceStart`` or the name of a form field
    holding an ISO timestamp.
    """

    type: Literal["time_elapsed"] = "time_elapsed"
    id: str = ""
    field: str = "timeInState"
    operator: Literal["greater_than", "less_than"] = "greater_than"
    value: float
    unit: TimeUnit = "hours"


class CustomFunctionCondition(_DefinitionModel):
    type: Literal["custom_function"] = "custom_function"
    id: str = ""
    custom_function: str
    arguments: dict[str, Any] = Field(default_factory=dict)


TransitionCondition = Annotated[
    FieldValueCondition
    | ApprovalStatusCondition
    | UserRoleCondition
    | TimeElapsedCondition
    | CustomFunctionCondition,
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


class RetryPolicy(_DefinitionModel):
    max_retries: int = Field(default=0, ge=0)
    backoff_strategy: Literal["fixed", "exponential", "linear"] = "fixed"
    backoff_delay: float = Field(default=1000.0, ge=0, description="Base delay in milliseconds")
    max_delay: float | None = Field(default=None, ge=0, description="Cap in milliseconds")


class _ActionBase(_DefinitionModel):
    id: str
    name: str = ""
    description: str | None = None
    order: int = 0
    is_async: bool = False
    retry_policy: RetryPolicy | None = None


class NotificationAction(_ActionBase):
    type: Literal["notification"] = "notification"
    recipients: list[str] = Field(default_factory=list)
    message: str = ""
    template: str | None = None


class EmailAction(_ActionBase):
    type: Literal["email"] = "email"
    to: list[str] = Field(default_factory=list)
    subject: str = ""
    template: str | None = None
    include_attachment: bool = False
    urgency: Literal["low", "normal", "high"] = "normal"


class SmsAction(_ActionBase):
    type: Literal["sms"] = "sms"
    to: list[str] = Field(default_factory=list)
    message: str = ""
    template: str | None = None


class WebhookAction(_ActionBase):
    type: Literal["webhook"] = "webhook"
    url: str
    method: Literal["POST", "PUT"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)


class DatabaseUpdateAction(_ActionBase):
    type: Literal["database_update"] = "database_update"
    table: str
    updates: dict[str, Any] = Field(default_factory=dict)


class ApprovalRequestAction(_ActionBase):
    type: Literal["approval_request"] = "approval_request"
    approver: str
    message: str | None = None
    due_in_hours: float | None = Field(default=None, gt=0)


class FileGenerationAction(_ActionBase):
    type: Literal["file_generation"] = "file_generation"
    template: str | None = None
    formats: list[str] = Field(default_factory=lambda: ["pdf"])


WorkflowAction = Annotated[
    NotificationAction
    | EmailAction
    | SmsAction
    | WebhookAction
    | DatabaseUpdateAction
    | ApprovalRequestAction
    | FileGenerationAction,
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Definition
# ---------------------------------------------------------------------------


class StateTimeout(_DefinitionModel):
    duration: float = Field(gt=0)
    unit: TimeUnit = "minutes"
    action: Literal["escalate", "auto_approve", "auto_reject", "notify"]
    target: str | None = None
    message: str | None = None


class StatePermission(_DefinitionModel):
    role: str
    actions: list[Literal["view", "edit", "approve", "reject", "comment", "reassign"]] = Field(
        default_factory=list
    )


class State(_DefinitionModel):
    id: str
    name: str = ""
    display_name: str = ""
    description: str | None = None
    type: Literal["start", "intermediate", "end"] = "intermediate"
    is_initial: bool = False
    is_final: bool = False
    required_fields: list[str] = Field(default_factory=list)
    actions: list[WorkflowAction] = Field(default_factory=list)
    timeouts: list[StateTimeout] = Field(default_factory=list)
    permissions: list[StatePermission] = Field(default_factory=list)


class Transition(_DefinitionModel):
    id: str
    from_state: str = Field(alias="from")
    to_state: str = Field(alias="to")
    name: str = ""
    display_name: str = ""
    description: str | None = None
    conditions: list[TransitionCondition] = Field(default_factory=list)
    actions: list[WorkflowAction] = Field(default_factory=list)
    required_role: str | None = None
    required_permissions: list[str] = Field(default_factory=list)
    priority: int = 0


class Role(_DefinitionModel):
    id: str
    name: str = ""
    display_name: str = ""
    description: str | None = None
    permissions: list[str] = Field(default_factory=list)
    hierarchy: int | None = None


class BusinessHours(_DefinitionModel):
    timezone: str = "UTC"
    work_days: list[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])  # 0 = Sunday
    start_time: str = "09:00"
    end_time: str = "17:00"
    holidays: list[date] = Field(default_factory=list)

    @field_validator("work_days")
    @classmethod
    def _check_days(cls, value: list[int]) -> list[int]:
        if any(day < 0 or day > 6 for day in value):
            raise ValueError("work days must be between 0 (Sunday) and 6 (Saturday)")
        return value

    @field_validator("start_time", "end_time")
    @classmethod
    def _check_time(cls, value: str) -> str:
        hours, _, minutes = value.partition(":")
        if not (hours.isdigit() and minutes.isdigit()):
            raise ValueError(f"expected HH:MM, got {value!r}")
        if not (0 <= int(hours) <= 23 and 0 <= int(minutes) <= 59):
            raise ValueError(f"expected HH:MM, got {value!r}")
        return value


class EscalationRule(_DefinitionModel):
    id: str
    condition: TransitionCondition
    delay: float = Field(ge=0, description="Minutes in the current state before the rule applies")
    action: Literal["notify", "reassign", "auto_approve"]
    target: str
    message: str | None = None


class WorkflowSettings(_DefinitionModel):
    max_concurrent_instances: int | None = Field(default=None, gt=0)
    default_timeout: float | None = None
    auto_cleanup: bool = True
    cleanup_after_days: int | None = Field(default=None, ge=0)
    enable_audit_log: bool = True
    enable_notifications: bool = True
    escalation_rules: list[EscalationRule] = Field(default_factory=list)
    business_hours: BusinessHours | None = None


class WorkflowDefinition(_DefinitionModel):
    # Structural rules (ids, initial/final states) are enforced by the registry
    # so that failures are reported as a DefinitionValidationError.
    id: str = ""
    name: str = ""
    description: str = ""
    version: str = "1.0.0"
    category: str | None = None
    states: list[State] = Field(default_factory=list)
    transitions: list[Transition] = Field(default_factory=list)
    roles: list[Role] = Field(default_factory=list)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    is_active: bool = True

    def initial_state(self) -> State | None:
        return next((s for s in self.states if s.is_initial), None)

    def get_state(self, state_id: str) -> State | None:
        return next((s for s in self.states if s.id == state_id), None)

    def transitions_from(self, state_id: str) -> list[Transition]:
        return [t for t in self.transitions if t.from_state == state_id]

    def find_transition(self, transition_id: str, from_state: str) -> Transition | None:
        return next(
            (
                t
                for t in self.transitions
                if t.id == transition_id and t.from_state == from_state
            ),
            None,
        )


# ---------------------------------------------------------------------------
# Runtime records
# ---------------------------------------------------------------------------


class Participant(_Model):
    id: str
    type: Literal["user", "role", "system"] = "user"
    name: str = ""
    email: str | None = None
    phone: str | None = None
    role: str = ""
    permissions: list[str] = Field(default_factory=list)
    is_active: bool = True


SYSTEM_ACTOR = Participant(id="system", type="system", name="System", role="system")


class ApprovalRecord(_Model):
    id: str = Field(default_factory=new_id)
    approver: Participant
    decision: Literal["approved", "rejected", "pending"]
    comment: str | None = None
    timestamp: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class WorkflowComment(_Model):
    id: str = Field(default_factory=new_id)
    author: Participant
    content: str
    type: Literal["comment", "question", "issue", "resolution"] = "comment"
    is_private: bool = False
    timestamp: datetime


class WorkflowData(_Model):
    restaurant_id: str | None = None
    order_id: str | None = None
    design_id: str | None = None
    contract_id: str | None = None
    form_data: dict[str, Any] = Field(default_factory=dict)
    files: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    approvals: list[ApprovalRecord] = Field(default_factory=list)
    comments: list[WorkflowComment] = Field(default_factory=list)


HistoryAction = Literal[
    "created",
    "state_changed",
    "assigned",
    "approved",
    "rejected",
    "commented",
    "updated",
    "completed",
    "escalated",
    "paused",
    "resumed",
    "cancelled",
    "failed",
]


class HistoryEntry(_Model):
    id: str = Field(default_factory=new_id)
    timestamp: datetime
    action: HistoryAction
    from_state: str | None = None
    to_state: str | None = None
    actor: Participant
    description: str = ""
    changes: dict[str, dict[str, Any]] | None = None
    metadata: dict[str, Any] | None = None


class TaskResult(_Model):
    id: str = Field(default_factory=new_id)
    type: Literal["approved", "rejected", "completed", "data", "file"] = "completed"
    value: Any = None
    comment: str | None = None
    actor: Participant
    timestamp: datetime


TaskType = Literal["approval", "review", "data_entry", "file_upload", "custom"]


class TaskSpec(_Model):
    """Caller-supplied fields of a new task."""

    name: str
    description: str | None = None
    type: TaskType = "custom"
    priority: Priority = "medium"
    assignee: Participant | None = None
    due_date: datetime | None = None
    estimated_duration: int | None = Field(default=None, ge=0, description="Minutes")
    dependencies: list[str] = Field(default_factory=list)


class WorkflowTask(_Model):
    id: str
    instance_id: str
    name: str
    description: str | None = None
    type: TaskType = "custom"
    status: TaskStatus = TaskStatus.PENDING
    priority: Priority = "medium"
    assignee: Participant | None = None
    due_date: datetime | None = None
    estimated_duration: int | None = None
    actual_duration: int | None = None
    dependencies: list[str] = Field(default_factory=list)
    results: list[TaskResult] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class StartOptions(_Model):
    title: str | None = None
    description: str | None = None
    priority: Priority = "medium"
    due_date: datetime | None = None
    assignee: Participant | None = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class WorkflowInstance(_Model):
    id: str
    definition_id: str
    title: str
    description: str | None = None
    current_state: str
    status: InstanceStatus = InstanceStatus.RUNNING
    priority: Priority = "medium"
    initiator: Participant
    assignee: Participant | None = None
    participants: list[Participant] = Field(default_factory=list)
    data: WorkflowData = Field(default_factory=WorkflowData)
    history: list[HistoryEntry] = Field(default_factory=list)
    tasks: list[WorkflowTask] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    due_date: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None

    # Keys of timeouts and escalation rules already fired, scoped to the
    # history entry that entered the state they belong to.
    fired_escalations: list[str] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def state_entry(self) -> HistoryEntry | None:
        """The history entry that moved the instance into its current state."""

        for entry in reversed(self.history):
            if entry.to_state == self.current_state and entry.action in {
                "created",
                "state_changed",
            }:
                return entry
        return None

    def state_entered_at(self) -> datetime:
        entry = self.state_entry()
        return entry.timestamp if entry is not None else self.created_at

    def get_task(self, task_id: str) -> WorkflowTask | None:
        return next((t for t in self.tasks if t.id == task_id), None)

    def has_participant(self, participant_id: str) -> bool:
        if self.assignee is not None and self.assignee.id == participant_id:
            return True
        return any(p.id == participant_id for p in self.participants)
