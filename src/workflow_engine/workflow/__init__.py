"""Workflow domain: definitions, instances and the machinery that runs them.

Modules:
- ``models``: definitions and runtime records
- ``engine``: instance lifecycle and the transition executor
- ``conditions`` / ``actions`` / ``handlers``: guards and side effects
- ``tasks``: human work items attached to an instance
- ``scheduler``: escalation and cleanup sweeps
"""

__all__: list[str] = []
