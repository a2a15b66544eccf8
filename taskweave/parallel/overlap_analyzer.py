"""
Overlap Analyzer
================

Decides which tasks may run at the same time by comparing their declared
files_affected sets.

Two tasks collide when they declare the same normalized path. Collisions are
transitive: if A shares a file with B and B shares a file with C, then A, B
and C form one sequential group even when A and C share nothing. Groups are
the connected components of the "shares a file" relation (union-find).

The result is advisory. Nothing here serializes execution; callers use the
groups to decide what to run one at a time.
"""

from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import Dict, Iterable, List, Sequence
import logging
import posixpath

from taskweave.tasks.models import Task

logger = logging.getLogger(__name__)

GLOB_CHARS = ('*', '?', '[')


@dataclass
class FileCollision:
    """
    A file declared by more than one task.

    Attributes:
        file: Normalized path (or glob pattern in pattern mode)
        task_ids: Tasks declaring it, in input order
    """
    file: str
    task_ids: List[str]

    def to_dict(self) -> Dict[str, object]:
        return {"file": self.file, "task_ids": list(self.task_ids)}


@dataclass
class OverlapResult:
    """
    Partition of a task list by file overlap.

    Attributes:
        safe: Tasks sharing no file with any other task
        sequential_groups: Groups of tasks that must run one at a time
        collisions: Every (file, task ids) pair that caused a grouping
    """
    safe: List[Task] = field(default_factory=list)
    sequential_groups: List[List[Task]] = field(default_factory=list)
    collisions: List[FileCollision] = field(default_factory=list)

    @property
    def has_overlaps(self) -> bool:
        return bool(self.sequential_groups)

    def collisions_for(self, group: Sequence[Task]) -> List[FileCollision]:
        """Collisions whose tasks belong to the given group."""
        member_ids = {task.id for task in group}
        return [c for c in self.collisions if member_ids.issuperset(c.task_ids)]

    def to_dict(self) -> Dict[str, object]:
        return {
            "safe": [t.id for t in self.safe],
            "sequential_groups": [[t.id for t in group] for group in self.sequential_groups],
            "collisions": [c.to_dict() for c in self.collisions],
        }


class UnionFind:
    """Disjoint set over task ids with path compression and union by rank."""

    def __init__(self, elements: Iterable[str] = ()):
        self._parent: Dict[str, str] = {}
        self._rank: Dict[str, int] = {}
        for element in elements:
            self.add(element)

    def add(self, x: str) -> None:
        if x not in self._parent:
            self._parent[x] = x
            self._rank[x] = 0

    def find(self, x: str) -> str:
        self.add(x)
        root = x
        while self._parent[root] != root:
            root = self._parent[root]
        # Compress the walked path
        while self._parent[x] != root:
            self._parent[x], x = root, self._parent[x]
        return root

    def union(self, x: str, y: str) -> None:
        root_x, root_y = self.find(x), self.find(y)
        if root_x == root_y:
            return
        if self._rank[root_x] < self._rank[root_y]:
            root_x, root_y = root_y, root_x
        self._parent[root_y] = root_x
        if self._rank[root_x] == self._rank[root_y]:
            self._rank[root_x] += 1

    def groups(self) -> List[List[str]]:
        """Components in first-seen order, members in insertion order."""
        components: Dict[str, List[str]] = {}
        for element in self._parent:
            components.setdefault(self.find(element), []).append(element)
        return list(components.values())


def normalize_path(path: str) -> str:
    """
    Normalize a declared path for comparison.

    Converts backslashes, strips a leading './' and collapses redundant
    separators and '.'/'..' segments. Case is preserved.
    """
    normalized = path.strip().replace('\\', '/')
    while normalized.startswith('./'):
        normalized = normalized[2:]
    if not normalized:
        return normalized
    return posixpath.normpath(normalized)


def _is_pattern(path: str) -> bool:
    return any(ch in path for ch in GLOB_CHARS)


def detect_file_overlaps(tasks: Iterable[Task], patterns: bool = False) -> OverlapResult:
    """
    Partition tasks into safe tasks and sequential groups.

    Args:
        tasks: Tasks to analyze
        patterns: Treat entries containing glob characters as patterns that
            also match other tasks' concrete paths

    Returns:
        OverlapResult; group membership does not depend on input order
    """
    task_list = list(tasks)
    task_by_id = {task.id: task for task in task_list}

    # file -> task ids (input order, no repeats)
    file_to_tasks: Dict[str, List[str]] = {}
    for task in task_list:
        for raw in task.files_affected:
            path = normalize_path(raw)
            if not path:
                continue
            owners = file_to_tasks.setdefault(path, [])
            if task.id not in owners:
                owners.append(task.id)

    if patterns:
        _merge_pattern_matches(file_to_tasks)

    uf = UnionFind(task.id for task in task_list)
    collisions: List[FileCollision] = []

    for path, task_ids in file_to_tasks.items():
        if len(task_ids) < 2:
            continue
        collisions.append(FileCollision(file=path, task_ids=list(task_ids)))
        first = task_ids[0]
        for other in task_ids[1:]:
            uf.union(first, other)

    result = OverlapResult(collisions=collisions)
    for member_ids in uf.groups():
        members = [task_by_id[tid] for tid in member_ids]
        if len(members) == 1:
            result.safe.append(members[0])
        else:
            result.sequential_groups.append(members)

    if result.sequential_groups:
        logger.info(
            f"File overlap analysis: {len(result.safe)} safe, "
            f"{len(result.sequential_groups)} sequential groups, "
            f"{len(collisions)} shared files"
        )
    else:
        logger.debug(f"File overlap analysis: all {len(result.safe)} tasks safe")

    return result


def _merge_pattern_matches(file_to_tasks: Dict[str, List[str]]) -> None:
    """Add owners of concrete paths to every glob pattern matching them."""
    concrete = [p for p in file_to_tasks if not _is_pattern(p)]
    for pattern in [p for p in file_to_tasks if _is_pattern(p)]:
        owners = file_to_tasks[pattern]
        for path in concrete:
            if fnmatchcase(path, pattern):
                for task_id in file_to_tasks[path]:
                    if task_id not in owners:
                        owners.append(task_id)


def partition_ready(tasks: Iterable[Task], patterns: bool = False) -> List[Task]:
    """
    Pick tasks that may start together right now.

    Every safe task plus the first task (input order) of each sequential
    group; the rest of each group waits for its predecessor.
    """
    task_list = list(tasks)
    result = detect_file_overlaps(task_list, patterns=patterns)
    selected = {t.id for t in result.safe}
    selected.update(group[0].id for group in result.sequential_groups)
    return [t for t in task_list if t.id in selected]
