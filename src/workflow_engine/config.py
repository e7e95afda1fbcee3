"""Engine configuration.

Configuration is loaded from:
- environment variables (prefix ``WORKFLOW_``; ``LOG_LEVEL`` is unprefixed)
- and a local `.env` file (if present)
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from workflow_engine.workflow.models import RetryPolicy


class EngineSettings(BaseSettings):
    """Settings for a :class:`~workflow_engine.workflow.engine.WorkflowEngine`.

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `EngineSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    enable_audit_log: bool = Field(
        default=True,
        validation_alias="WORKFLOW_ENABLE_AUDIT_LOG",
        description="Log every emitted workflow event",
    )

    cleanup_interval_minutes: float = Field(
        default=60.0,
        ge=0,
        validation_alias="WORKFLOW_CLEANUP_INTERVAL_MINUTES",
        description="How often the cleanup sweeper runs (0 disables the loop)",
    )
    retention_days: int = Field(
        default=30,
        ge=0,
        validation_alias="WORKFLOW_RETENTION_DAYS",
        description=(
            "Completed instances older than this are deleted by the cleanup sweeper, "
            "unless the definition sets its own cleanupAfterDays."
        ),
    )

    escalation_interval_seconds: float = Field(
        default=60.0,
        ge=0,
        validation_alias="WORKFLOW_ESCALATION_INTERVAL_SECONDS",
        description="How often state timeouts and escalation rules are checked (0 disables)",
    )

    action_workers: int = Field(
        default=4,
        ge=1,
        validation_alias="WORKFLOW_ACTION_WORKERS",
        description="Worker threads for actions declared isAsync",
    )

    default_retry_policy: RetryPolicy = Field(
        default_factory=RetryPolicy,
        validation_alias="WORKFLOW_DEFAULT_RETRY_POLICY",
        description="Retry policy for actions that declare none (JSON when set via env)",
    )

    max_concurrent_workflows: int = Field(
        default=0,
        ge=0,
        validation_alias="WORKFLOW_MAX_CONCURRENT",
        description="Engine-wide cap on running instances (0 means unlimited)",
    )

    definitions_path: Path | None = Field(
        default=None,
        validation_alias="WORKFLOW_DEFINITIONS_PATH",
        description="Directory (or file) of JSON workflow definitions loaded at startup",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )
