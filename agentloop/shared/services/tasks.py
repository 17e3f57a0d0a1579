"""Task artifacts on disk.

A task is a directory under <cwd>/<task_dir>/ containing the task file
(prd.json by default). The directory name is the task id.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from agentloop.engine.config import LoopConfig

logger = logging.getLogger(__name__)


def task_artifact_path(task_id: str, config: LoopConfig | None = None) -> str:
    """Path of a task file relative to the workspace root."""
    config = config or LoopConfig()
    return str(Path(config.task_dir) / task_id / config.task_file)


def list_tasks(cwd: str | Path, config: LoopConfig | None = None) -> list[str]:
    """Sorted ids of task directories that contain a task file."""
    config = config or LoopConfig()
    root = Path(cwd) / config.task_dir
    if not root.is_dir():
        return []
    return sorted(
        entry.name
        for entry in root.iterdir()
        if entry.is_dir() and (entry / config.task_file).is_file()
    )


def read_task(
    cwd: str | Path, task_id: str, config: LoopConfig | None = None
) -> dict[str, Any]:
    """Load a task file.

    Raises FileNotFoundError when the task does not exist and ValueError
    when its file is not a JSON object.
    """
    path = Path(cwd) / task_artifact_path(task_id, config)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Task file {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"Task file {path} must contain a JSON object")
    logger.debug("Read task %s from %s", task_id, path)
    return data
