"""
Task File Loader
================

Loads a finalized task list from YAML.

Accepted inputs:
- A YAML document with a top-level ``tasks:`` list
- A YAML document that is itself a list of tasks
- A markdown document containing a fenced ```yaml block under an
  ``## Agent Tasks`` heading

Entries are validated with pydantic before being turned into Task objects.
"""

from pathlib import Path
from typing import Any, Dict, List, Literal
import logging
import re

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from taskweave.errors import DuplicateTaskIdError, TaskFileError
from taskweave.tasks.models import Task

logger = logging.getLogger(__name__)

AGENT_TASKS_HEADING = re.compile(r'^##\s+Agent Tasks\s*$', re.MULTILINE | re.IGNORECASE)
YAML_FENCE = re.compile(r'```ya?ml\s*\n(.*?)```', re.DOTALL)


class TaskEntry(BaseModel):
    """Schema for one task entry in a task file."""
    id: str = Field(..., min_length=1)
    title: str = ""
    description: str = ""
    depends_on: List[str] = Field(default_factory=list)
    files_affected: List[str] = Field(default_factory=list)
    complexity: int = Field(1, ge=1, le=10)
    priority: Literal["must", "should", "could"] = "should"

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        # YAML reads bare numbers as ints
        if isinstance(value, (int, float)):
            return str(value)
        return value

    @field_validator("depends_on", "files_affected", mode="before")
    @classmethod
    def _coerce_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return [str(v) for v in value]


def _extract_yaml(text: str, source: str) -> str:
    """Return the YAML payload, unwrapping the markdown Agent Tasks block."""
    heading = AGENT_TASKS_HEADING.search(text)
    if heading is None:
        return text

    fence = YAML_FENCE.search(text, heading.end())
    if fence is None:
        raise TaskFileError(source, "'## Agent Tasks' heading has no ```yaml block after it")
    return fence.group(1)


def parse_tasks(text: str, source: str = "<string>") -> List[Task]:
    """
    Parse tasks from YAML (or markdown with an Agent Tasks block).

    Args:
        text: Document contents
        source: Name used in error messages

    Returns:
        List of Task objects in document order

    Raises:
        TaskFileError: If the YAML is invalid or entries fail validation
        DuplicateTaskIdError: If two entries share an id
    """
    payload = _extract_yaml(text, source)

    try:
        data = yaml.safe_load(payload)
    except yaml.YAMLError as e:
        raise TaskFileError(source, f"Invalid YAML: {e}") from e

    if isinstance(data, dict):
        data = data.get("tasks")
    if data is None:
        data = []
    if not isinstance(data, list):
        raise TaskFileError(source, "Expected a list of tasks or a mapping with a 'tasks' list")

    tasks: List[Task] = []
    seen: set = set()
    for index, raw in enumerate(data):
        if not isinstance(raw, dict):
            raise TaskFileError(source, f"Task #{index} is not a mapping")
        try:
            entry = TaskEntry.model_validate(raw)
        except ValidationError as e:
            issues = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or '(root)'}: {err['msg']}"
                for err in e.errors()
            )
            raise TaskFileError(source, f"Task #{index} is invalid: {issues}") from e

        if entry.id in seen:
            raise DuplicateTaskIdError(entry.id)
        seen.add(entry.id)
        tasks.append(Task.from_dict(entry.model_dump()))

    logger.info(f"Loaded {len(tasks)} tasks from {source}")
    return tasks


def load_tasks(path: str | Path) -> List[Task]:
    """
    Load tasks from a file on disk.

    Raises:
        TaskFileError: If the file is missing or unreadable
    """
    file_path = Path(path)
    try:
        text = file_path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise TaskFileError(str(file_path), "File not found") from e
    except OSError as e:
        raise TaskFileError(str(file_path), str(e)) from e

    return parse_tasks(text, source=str(file_path))


def tasks_to_yaml(tasks: List[Task]) -> str:
    """Serialize tasks back into the task file format."""
    payload: Dict[str, Any] = {"tasks": [t.to_dict() for t in tasks]}
    return yaml.safe_dump(payload, sort_keys=False)
