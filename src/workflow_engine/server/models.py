"""Pydantic models for the REST server."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from workflow_engine.workflow.models import Participant, StartOptions, TaskSpec


class _ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartWorkflowRequest(_ApiModel):
    definition_id: str
    initial_data: dict[str, Any] = Field(default_factory=dict)
    initiator: Participant | None = None
    options: StartOptions | None = None


class StartWorkflowResponse(_ApiModel):
    instance_id: str


class RegisterDefinitionResponse(_ApiModel):
    definition_id: str
    version: str


class ActorRequest(_ApiModel):
    actor: Participant


class TransitionRequest(_ApiModel):
    transition_id: str
    actor: Participant
    data: dict[str, Any] | None = None


class TransitionResponse(_ApiModel):
    success: bool
    current_state: str
    status: str


class ApprovalRequest(_ApiModel):
    actor: Participant
    decision: Literal["approved", "rejected", "pending"]
    comment: str | None = None


class ApprovalResponse(_ApiModel):
    approval_id: str


class DataUpdateRequest(_ApiModel):
    actor: Participant
    form_data: dict[str, Any]


class DataUpdateResponse(_ApiModel):
    changes: dict[str, dict[str, Any]]


class CommentRequest(_ApiModel):
    author: Participant
    content: str = Field(min_length=1)
    type: Literal["comment", "question", "issue", "resolution"] = "comment"
    is_private: bool = False


class CommentResponse(_ApiModel):
    comment_id: str


class StatusChangeRequest(_ApiModel):
    actor: Participant
    reason: str | None = None


class CreateTaskRequest(TaskSpec):
    actor: Participant | None = None


class CreateTaskResponse(_ApiModel):
    task_id: str


class CompleteTaskRequest(_ApiModel):
    actor: Participant
    result: Any = None
    comment: str | None = None


class ErrorResponse(_ApiModel):
    error: str
    detail: str
