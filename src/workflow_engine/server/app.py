"""FastAPI app factory.

Endpoints are thin wrappers over a :class:`WorkflowEngine`; all business rules
live in ``workflow_engine.workflow``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from workflow_engine import __version__
from workflow_engine.server.config import ServerSettings
from workflow_engine.server.models import (
    ActorRequest,
    ApprovalRequest,
    ApprovalResponse,
    CommentRequest,
    CommentResponse,
    CompleteTaskRequest,
    CreateTaskRequest,
    CreateTaskResponse,
    DataUpdateRequest,
    DataUpdateResponse,
    ErrorResponse,
    RegisterDefinitionResponse,
    StartWorkflowRequest,
    StartWorkflowResponse,
    StatusChangeRequest,
    TransitionRequest,
    TransitionResponse,
)
from workflow_engine.workflow.engine import WorkflowEngine
from workflow_engine.workflow.errors import (
    AlreadyCompletedError,
    ConcurrencyLimitError,
    ConditionsNotMetError,
    DefinitionValidationError,
    NotFoundError,
    PermissionDeniedError,
    WorkflowError,
    WorkflowPausedError,
)
from workflow_engine.workflow.handlers import register_builtin_handlers
from workflow_engine.workflow.loader import load_definitions
from workflow_engine.workflow.models import (
    InstanceStatus,
    TaskSpec,
    Transition,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowTask,
)
from workflow_engine.workflow.snapshot import InstanceSnapshotStore

logger = logging.getLogger(__name__)

_ERROR_STATUS: list[tuple[type[WorkflowError], int]] = [
    (NotFoundError, 404),
    (PermissionDeniedError, 403),
    (AlreadyCompletedError, 409),
    (WorkflowPausedError, 409),
    (ConcurrencyLimitError, 409),
    (ConditionsNotMetError, 422),
    (DefinitionValidationError, 422),
]

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    status: {"model": ErrorResponse} for status in sorted({s for _, s in _ERROR_STATUS} | {400})
}


def status_for(exc: WorkflowError) -> int:
    for kind, status in _ERROR_STATUS:
        if isinstance(exc, kind):
            return status
    return 400


def create_app(
    engine: WorkflowEngine | None = None, settings: ServerSettings | None = None
) -> FastAPI:
    settings = settings or ServerSettings()
    owns_engine = engine is None
    engine = engine or WorkflowEngine()

    if settings.register_builtin_handlers:
        register_builtin_handlers(engine, webhook_timeout_seconds=settings.webhook_timeout_seconds)

    definitions_path = engine.settings.definitions_path
    if definitions_path is not None:
        for definition in load_definitions(definitions_path):
            engine.register_workflow(definition)

    snapshots = InstanceSnapshotStore(settings.snapshot_path) if settings.snapshot_path else None

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if snapshots is not None:
            restored = snapshots.restore_into(engine)
            logger.info("Restored workflow instances", extra={"count": restored})
        if settings.run_background:
            engine.start_background()
        try:
            yield
        finally:
            engine.stop_background()
            if snapshots is not None:
                saved = snapshots.save_engine(engine)
                logger.info("Saved workflow instances", extra={"count": saved})
            if owns_engine:
                engine.shutdown()

    app = FastAPI(
        title="Workflow Engine",
        version=__version__,
        description="REST API over the workflow engine.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
        responses=_ERROR_RESPONSES,
    )

    # Expose the engine and settings for request handlers that want to read them.
    app.state.engine = engine
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(WorkflowError)
    async def workflow_error_handler(_request: Request, exc: WorkflowError) -> JSONResponse:
        status = status_for(exc)
        logger.info(
            "Request rejected by workflow engine",
            extra={"code": exc.code, "status_code": status},
        )
        body = ErrorResponse(error=exc.code, detail=str(exc))
        return JSONResponse(status_code=status, content=body.model_dump())

    def _instance_or_404(instance_id: str) -> WorkflowInstance:
        instance = engine.get_workflow_instance(instance_id)
        if instance is None:
            raise HTTPException(status_code=404, detail="Workflow instance not found")
        return instance

    @app.get("/api/health")
    def health() -> dict[str, object]:
        return {
            "status": "ok",
            "version": __version__,
            "definitions": len(engine.definitions),
            "instances": len(engine.instances),
        }

    # -- definitions -------------------------------------------------------

    @app.get("/api/definitions", response_model=list[WorkflowDefinition])
    def list_definitions() -> list[WorkflowDefinition]:
        return engine.get_all_workflow_definitions()

    @app.post("/api/definitions", response_model=RegisterDefinitionResponse, status_code=201)
    def register_definition(definition: WorkflowDefinition) -> RegisterDefinitionResponse:
        engine.register_workflow(definition)
        return RegisterDefinitionResponse(definition_id=definition.id, version=definition.version)

    @app.get("/api/definitions/{definition_id}", response_model=WorkflowDefinition)
    def get_definition(definition_id: str) -> WorkflowDefinition:
        definition = engine.get_workflow_definition(definition_id)
        if definition is None:
            raise HTTPException(status_code=404, detail="Workflow definition not found")
        return definition

    # -- instances ---------------------------------------------------------

    @app.get("/api/instances", response_model=list[WorkflowInstance])
    def list_instances(
        status: InstanceStatus | None = None, participant: str | None = None
    ) -> list[WorkflowInstance]:
        if status is not None:
            instances = engine.get_workflows_by_status(status)
        else:
            instances = engine.get_all_workflow_instances()
        if participant is not None:
            instances = [i for i in instances if i.has_participant(participant)]
        return instances

    @app.post("/api/instances", response_model=StartWorkflowResponse, status_code=201)
    def start_instance(req: StartWorkflowRequest) -> StartWorkflowResponse:
        instance_id = engine.start_workflow(
            req.definition_id, req.initial_data, req.initiator, req.options
        )
        return StartWorkflowResponse(instance_id=instance_id)

    @app.get("/api/instances/{instance_id}", response_model=WorkflowInstance)
    def get_instance(instance_id: str) -> WorkflowInstance:
        return _instance_or_404(instance_id)

    @app.post("/api/instances/{instance_id}/transitions", response_model=TransitionResponse)
    def transition_instance(instance_id: str, req: TransitionRequest) -> TransitionResponse:
        success = engine.transition_workflow(instance_id, req.transition_id, req.actor, req.data)
        instance = _instance_or_404(instance_id)
        return TransitionResponse(
            success=success, current_state=instance.current_state, status=instance.status.value
        )

    @app.post(
        "/api/instances/{instance_id}/available-transitions", response_model=list[Transition]
    )
    def available_transitions(instance_id: str, req: ActorRequest) -> list[Transition]:
        return engine.available_transitions(instance_id, req.actor)

    @app.post("/api/instances/{instance_id}/approvals", response_model=ApprovalResponse)
    def record_approval(instance_id: str, req: ApprovalRequest) -> ApprovalResponse:
        approval_id = engine.record_approval(instance_id, req.actor, req.decision, req.comment)
        return ApprovalResponse(approval_id=approval_id)

    @app.patch("/api/instances/{instance_id}/data", response_model=DataUpdateResponse)
    def update_data(instance_id: str, req: DataUpdateRequest) -> DataUpdateResponse:
        return DataUpdateResponse(changes=engine.update_data(instance_id, req.actor, req.form_data))

    @app.post("/api/instances/{instance_id}/comments", response_model=CommentResponse)
    def add_comment(instance_id: str, req: CommentRequest) -> CommentResponse:
        comment_id = engine.add_comment(
            instance_id, req.author, req.content, comment_type=req.type, is_private=req.is_private
        )
        return CommentResponse(comment_id=comment_id)

    @app.post("/api/instances/{instance_id}/pause", response_model=WorkflowInstance)
    def pause_instance(instance_id: str, req: StatusChangeRequest) -> WorkflowInstance:
        engine.pause(instance_id, req.actor, req.reason)
        return _instance_or_404(instance_id)

    @app.post("/api/instances/{instance_id}/resume", response_model=WorkflowInstance)
    def resume_instance(instance_id: str, req: StatusChangeRequest) -> WorkflowInstance:
        engine.resume(instance_id, req.actor)
        return _instance_or_404(instance_id)

    @app.post("/api/instances/{instance_id}/cancel", response_model=WorkflowInstance)
    def cancel_instance(instance_id: str, req: StatusChangeRequest) -> WorkflowInstance:
        engine.cancel(instance_id, req.actor, req.reason)
        return _instance_or_404(instance_id)

    # -- tasks -------------------------------------------------------------

    @app.post(
        "/api/instances/{instance_id}/tasks", response_model=CreateTaskResponse, status_code=201
    )
    def create_task(instance_id: str, req: CreateTaskRequest) -> CreateTaskResponse:
        spec = TaskSpec.model_validate(req.model_dump(exclude={"actor"}))
        task_id = engine.create_task(instance_id, spec, req.actor)
        return CreateTaskResponse(task_id=task_id)

    @app.post(
        "/api/instances/{instance_id}/tasks/{task_id}/complete", response_model=WorkflowTask
    )
    def complete_task(instance_id: str, task_id: str, req: CompleteTaskRequest) -> WorkflowTask:
        return engine.complete_task(
            instance_id, task_id, req.actor, req.result, comment=req.comment
        )

    return app
