"""FastAPI server adapter for workflow-engine.

Design intent:
- Keep business logic in `workflow_engine.workflow.*`
- Keep server-specific concerns (routing, CORS, error mapping, lifespan) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from workflow_engine.server.app import create_app
