"""Workflow Engine.

A generic executor for declaratively defined business processes:
- a registry of state-machine definitions
- instances with role-gated, condition-guarded transitions
- side-effecting actions, human tasks and an append-only audit history
- background escalation on timeout and cleanup of finished instances
"""

__version__ = "0.1.0"

from workflow_engine.config import EngineSettings
from workflow_engine.workflow.engine import WorkflowEngine

__all__ = ["__version__", "EngineSettings", "WorkflowEngine"]
