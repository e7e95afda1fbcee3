"""JSON snapshots of workflow instances.

Instances are written as a single JSON array (camelCase keys). Loading is
best-effort: a missing or corrupt file yields no instances.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import ValidationError

from .models import WorkflowInstance

if TYPE_CHECKING:
    from .engine import WorkflowEngine

logger = logging.getLogger(__name__)


@dataclass
class InstanceSnapshotStore:
    path: Path

    def __post_init__(self) -> None:
        self.path = Path(self.path)
        self._lock = threading.Lock()

    def _load_unlocked(self) -> list[WorkflowInstance]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Snapshot file is not valid JSON", extra={"path": str(self.path)})
            return []
        if not isinstance(raw, list):
            return []
        instances: list[WorkflowInstance] = []
        for item in raw:
            try:
                instances.append(WorkflowInstance.model_validate(item))
            except ValidationError:
                logger.warning(
                    "Skipping unreadable instance snapshot", extra={"path": str(self.path)}
                )
        return instances

    def load(self) -> list[WorkflowInstance]:
        with self._lock:
            return self._load_unlocked()

    def save(self, instances: list[WorkflowInstance]) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            payload = [i.model_dump(mode="json", by_alias=True) for i in instances]
            self.path.write_text(
                json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
            )

    def save_engine(self, engine: WorkflowEngine) -> int:
        instances = engine.get_all_workflow_instances()
        self.save(instances)
        return len(instances)

    def restore_into(self, engine: WorkflowEngine) -> int:
        """Restore every saved instance whose definition is registered on ``engine``."""

        restored = 0
        for instance in self.load():
            if engine.get_workflow_definition(instance.definition_id) is None:
                logger.warning(
                    "Snapshot references an unknown definition",
                    extra={"instance_id": instance.id, "definition_id": instance.definition_id},
                )
                continue
            engine.restore(instance)
            restored += 1
        return restored
