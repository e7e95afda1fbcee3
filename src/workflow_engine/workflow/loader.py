"""Load workflow definitions from JSON files."""

from __future__ import annotations

import json
from pathlib import Path

from .models import WorkflowDefinition


def _definition_files(path: Path) -> list[Path]:
    if path.is_dir():
        return sorted(p for p in path.glob("*.json") if p.is_file())
    return [path]


def load_definitions(path: Path | str) -> list[WorkflowDefinition]:
    """Parse every definition under ``path``.

    ``path`` is a single ``.json`` file or a directory of them; each file holds
    one definition object or a list of them. Parsing errors propagate as
    ``json.JSONDecodeError`` or ``pydantic.ValidationError``.
    """

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)

    definitions: list[WorkflowDefinition] = []
    for file in _definition_files(path):
        raw = json.loads(file.read_text(encoding="utf-8"))
        items = raw if isinstance(raw, list) else [raw]
        definitions.extend(WorkflowDefinition.model_validate(item) for item in items)
    return definitions
