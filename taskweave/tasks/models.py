"""
Task Model
==========

Immutable unit of work consumed by the scheduler, the overlap analyzer and the
execution plan builder. Identity is the task id.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Iterable, Tuple

PRIORITY_ORDER = {"must": 0, "should": 1, "could": 2}
DEFAULT_PRIORITY = "should"


def _as_tuple(values: Iterable[Any] | None) -> Tuple[str, ...]:
    if not values:
        return ()
    if isinstance(values, str):
        return (values,)
    return tuple(str(v) for v in values)


@dataclass(frozen=True, eq=False)
class Task:
    """
    A unit of work with declared dependencies and affected files.

    Attributes:
        id: Task identifier, unique within a task set
        depends_on: Ids of tasks that must complete first
        files_affected: Declared paths this task will modify
        complexity: Relative size estimate (1-10)
        priority: "must", "should" or "could"
        title: Short human readable name
        description: Longer description of the work
    """
    id: str
    depends_on: Tuple[str, ...] = ()
    files_affected: Tuple[str, ...] = ()
    complexity: int = 1
    priority: str = DEFAULT_PRIORITY
    title: str = ""
    description: str = field(default="", repr=False)

    def __post_init__(self):
        # Accept lists/sets from callers while keeping the dataclass hashable
        object.__setattr__(self, "depends_on", _as_tuple(self.depends_on))
        object.__setattr__(self, "files_affected", _as_tuple(self.files_affected))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Task):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    @property
    def priority_rank(self) -> int:
        """Sort key for priority (lower runs first)."""
        return PRIORITY_ORDER.get(self.priority, len(PRIORITY_ORDER))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["depends_on"] = list(self.depends_on)
        data["files_affected"] = list(self.files_affected)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Create a Task from a mapping using the task file field names."""
        return cls(
            id=str(data["id"]),
            depends_on=_as_tuple(data.get("depends_on")),
            files_affected=_as_tuple(data.get("files_affected")),
            complexity=int(data.get("complexity", 1) or 1),
            priority=data.get("priority") or DEFAULT_PRIORITY,
            title=data.get("title", "") or "",
            description=data.get("description", "") or "",
        )
