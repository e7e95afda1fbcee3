"""Configuration for the REST server.

Engine behaviour (retention, escalation interval, retries) lives in
:class:`workflow_engine.config.EngineSettings`; this class only covers what the
HTTP adapter adds around it.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    # Dev-friendly CORS. Override via WORKFLOW_CORS_ORIGINS=...
    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        validation_alias="WORKFLOW_CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins.",
    )

    webhook_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        validation_alias="WORKFLOW_WEBHOOK_TIMEOUT_SECONDS",
        description="Timeout for outgoing webhook actions.",
    )

    register_builtin_handlers: bool = Field(
        default=True,
        validation_alias="WORKFLOW_BUILTIN_HANDLERS",
        description="Register the log outbox, webhook and approval-request handlers.",
    )

    run_background: bool = Field(
        default=True,
        validation_alias="WORKFLOW_RUN_BACKGROUND",
        description="Run the escalation and cleanup loops while the app is up.",
    )

    snapshot_path: Path | None = Field(
        default=None,
        validation_alias="WORKFLOW_SNAPSHOT_PATH",
        description="If set, instances are restored from and saved to this JSON file.",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
