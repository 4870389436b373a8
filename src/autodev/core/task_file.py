"""JSON task-file loader.

Expected shape::

    {
      "project_root": "..",            # optional, relative to the file
      "tasks": [
        {"id": "API-01", "title": "Add endpoint", "wave": 1,
         "dependencies": [], "status": "success"}
      ]
    }

``status`` is optional; only ``success``, ``failed`` and ``canceled`` are
carried over, everything else starts fresh.
"""
from __future__ import annotations

import json
import logging
import os
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from autodev.core.errors import TaskFileError
from autodev.core.models import TASK_STATUSES, Task

logger = logging.getLogger("autodev.task_file")


class TaskSpec(BaseModel):
    id: str = Field(min_length=1)
    title: str = ""
    wave: int = Field(default=0, ge=0)
    dependencies: List[str] = Field(default_factory=list)
    status: Optional[str] = None


class TaskFile(BaseModel):
    project_root: Optional[str] = None
    tasks: List[TaskSpec]

    @model_validator(mode="after")
    def _check_graph(self) -> TaskFile:
        ids = [t.id for t in self.tasks]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"duplicate task ids: {', '.join(duplicates)}")
        known = set(ids)
        for spec in self.tasks:
            missing = [d for d in spec.dependencies if d not in known]
            if missing:
                raise ValueError(f"task {spec.id} depends on unknown task(s): {', '.join(missing)}")
            if spec.status is not None and spec.status not in TASK_STATUSES:
                raise ValueError(f"task {spec.id} has unknown status {spec.status!r}")
        return self


def load_task_file(path: str) -> tuple[Dict[str, Task], str]:
    """Parse *path* and return ``(tasks_by_id, project_root)``."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw = json.load(handle)
    except FileNotFoundError as exc:
        raise TaskFileError(f"Task file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise TaskFileError(f"Task file is not valid JSON: {exc}") from exc

    try:
        parsed = TaskFile.model_validate(raw)
    except ValidationError as exc:
        raise TaskFileError(f"Invalid task file {path}: {exc}") from exc

    base_dir = os.path.dirname(os.path.abspath(path))
    project_root = os.path.normpath(os.path.join(base_dir, parsed.project_root)) if parsed.project_root else base_dir

    tasks: Dict[str, Task] = {}
    for spec in parsed.tasks:
        tasks[spec.id] = Task(
            task_id=spec.id,
            title=spec.title,
            wave=spec.wave,
            dependencies=list(spec.dependencies),
            status=spec.status or "pending",
        )
    logger.info("Loaded %d tasks from %s (project root %s)", len(tasks), path, project_root)
    return tasks, project_root
