"""
Execution Plan Builder
======================

Builds execution plans that determine parallel batches, flag file conflicts
inside each batch, and pre-assign a branch and worktree to every task.

The plan is pure data: building it runs no git commands. Callers create the
branches and worktrees it names when the batch is started.
"""

import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Dict, Any, Iterable, Optional

from taskweave.parallel.branch_controller import task_branch_name
from taskweave.parallel.dependency_resolver import DependencyResolver
from taskweave.parallel.overlap_analyzer import FileCollision, detect_file_overlaps
from taskweave.parallel.worktree_manager import DEFAULT_WORKTREE_DIR, task_worktree_path
from taskweave.tasks.models import Task

logger = logging.getLogger(__name__)


@dataclass
class ExecutionBatch:
    """
    A batch of tasks whose dependencies are all satisfied by earlier batches.

    Attributes:
        batch_id: Position of the batch in the plan
        task_ids: Task ids in this batch (priority, then input order)
        can_parallel: Whether every task in the batch may run at once
        depends_on: Batch ids that must complete before this batch
        sequential_groups: Tasks in this batch sharing files, run one at a time
    """
    batch_id: int
    task_ids: List[str]
    can_parallel: bool = True
    depends_on: List[int] = field(default_factory=list)
    sequential_groups: List[List[str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TaskAssignment:
    """Branch and worktree a task will run in."""
    task_id: str
    branch: str
    worktree_path: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExecutionPlan:
    """
    Complete execution plan for a phase.

    Attributes:
        phase_id: Phase identifier used in branch names
        created_at: When the plan was created
        batches: List of execution batches
        assignments: Mapping of task_id to its branch/worktree assignment
        predicted_conflicts: Files shared by tasks of the same batch
        critical_path: Longest dependency chain
        metadata: Additional plan metadata
    """
    phase_id: str
    created_at: datetime
    batches: List[ExecutionBatch]
    assignments: Dict[str, TaskAssignment]
    predicted_conflicts: List[FileCollision]
    critical_path: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        return {
            "phase_id": self.phase_id,
            "created_at": self.created_at.isoformat(),
            "batches": [b.to_dict() for b in self.batches],
            "assignments": {k: v.to_dict() for k, v in self.assignments.items()},
            "predicted_conflicts": [c.to_dict() for c in self.predicted_conflicts],
            "critical_path": list(self.critical_path),
            "metadata": self.metadata
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionPlan":
        """Create ExecutionPlan from dictionary."""
        return cls(
            phase_id=data["phase_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            batches=[ExecutionBatch(**b) for b in data["batches"]],
            assignments={k: TaskAssignment(**v) for k, v in data["assignments"].items()},
            predicted_conflicts=[FileCollision(**c) for c in data["predicted_conflicts"]],
            critical_path=list(data.get("critical_path", [])),
            metadata=data.get("metadata", {})
        )

    @property
    def total_tasks(self) -> int:
        """Total number of tasks in the plan."""
        return sum(len(b.task_ids) for b in self.batches)

    @property
    def parallel_batches(self) -> int:
        """Number of batches that can run in parallel."""
        return sum(1 for b in self.batches if b.can_parallel)


class ExecutionPlanBuilder:
    """
    Builds execution plans from a task list.

    Uses DependencyResolver to compute batches, runs overlap analysis inside
    each batch, and assigns each task its branch and worktree path.
    """

    def __init__(self, phase_id: str = "phase-1", worktree_dir: str = DEFAULT_WORKTREE_DIR, patterns: bool = False):
        """
        Initialize ExecutionPlanBuilder.

        Args:
            phase_id: Phase identifier used in task branch names
            worktree_dir: Directory under base_path holding task worktrees
            patterns: Enable glob matching in overlap analysis
        """
        self.phase_id = phase_id
        self.worktree_dir = worktree_dir
        self.patterns = patterns
        self.resolver = DependencyResolver()
        logger.info(f"ExecutionPlanBuilder initialized (phase={phase_id})")

    def build_plan(self, tasks: Iterable[Task], base_path: str | Path) -> ExecutionPlan:
        """
        Build a complete execution plan.

        Args:
            tasks: Tasks of the phase
            base_path: Directory the worktrees directory lives under

        Returns:
            ExecutionPlan with batches, assignments, and conflict analysis

        Raises:
            TaskGraphError: If the task graph is malformed or cyclic
        """
        task_list = list(tasks)
        logger.info(f"Building execution plan for {len(task_list)} tasks (phase {self.phase_id})")

        # Step 1: Resolve dependencies to get batches
        resolution = self.resolver.resolve(task_list)
        task_map = {t.id: t for t in task_list}

        if not task_list:
            logger.info("No tasks found, returning empty plan")
            return ExecutionPlan(
                phase_id=self.phase_id,
                created_at=datetime.now(timezone.utc),
                batches=[],
                assignments={},
                predicted_conflicts=[],
                metadata={"reason": "no_tasks"}
            )

        # Step 2: Overlap analysis inside each batch
        execution_batches: List[ExecutionBatch] = []
        conflicts: List[FileCollision] = []

        for batch_idx, task_ids in enumerate(resolution.batches):
            overlaps = detect_file_overlaps([task_map[tid] for tid in task_ids], patterns=self.patterns)
            conflicts.extend(overlaps.collisions)

            if overlaps.has_overlaps:
                logger.warning(f"Batch {batch_idx} has internal file conflicts, marking sequential")

            execution_batches.append(ExecutionBatch(
                batch_id=batch_idx,
                task_ids=list(task_ids),
                can_parallel=len(task_ids) > 1 and not overlaps.has_overlaps,
                depends_on=[batch_idx - 1] if batch_idx > 0 else [],
                sequential_groups=[[t.id for t in group] for group in overlaps.sequential_groups]
            ))

        # Step 3: Assign branches and worktrees
        assignments = self.assign_worktrees(resolution.task_order, base_path)

        plan = ExecutionPlan(
            phase_id=self.phase_id,
            created_at=datetime.now(timezone.utc),
            batches=execution_batches,
            assignments=assignments,
            predicted_conflicts=conflicts,
            critical_path=self.resolver.get_critical_path(),
            metadata={
                "total_tasks": len(task_list),
                "total_batches": len(execution_batches),
                "parallel_possible": sum(1 for b in execution_batches if b.can_parallel),
                "conflicts_detected": len(conflicts)
            }
        )

        logger.info(f"Execution plan built: {plan.total_tasks} tasks in "
                    f"{len(plan.batches)} batches, {plan.parallel_batches} parallel")

        return plan

    def assign_worktrees(self, task_ids: Iterable[str], base_path: str | Path) -> Dict[str, TaskAssignment]:
        """
        Assign each task its own branch and worktree.

        Returns:
            Dictionary mapping task_id to TaskAssignment
        """
        assignments = {
            task_id: TaskAssignment(
                task_id=task_id,
                branch=task_branch_name(self.phase_id, task_id),
                worktree_path=task_worktree_path(base_path, task_id, self.worktree_dir)
            )
            for task_id in task_ids
        }
        logger.debug(f"Assigned {len(assignments)} tasks to worktrees")
        return assignments

    def validate_plan(self, plan: ExecutionPlan) -> Dict[str, Any]:
        """
        Validate an execution plan for issues.

        Args:
            plan: ExecutionPlan to validate

        Returns:
            Validation result with any issues found
        """
        issues = []

        # Check for empty batches
        for batch in plan.batches:
            if not batch.task_ids:
                issues.append({
                    "type": "empty_batch",
                    "batch_id": batch.batch_id,
                    "message": "Batch has no tasks"
                })

        # Check worktree assignments
        unassigned = [
            tid for batch in plan.batches
            for tid in batch.task_ids
            if tid not in plan.assignments
        ]
        if unassigned:
            issues.append({
                "type": "unassigned_tasks",
                "task_ids": unassigned,
                "message": f"{len(unassigned)} tasks not assigned to worktrees"
            })

        # Check for high conflict rate
        if plan.total_tasks > 0:
            conflict_rate = len(plan.predicted_conflicts) / plan.total_tasks
            if conflict_rate > 0.5:
                issues.append({
                    "type": "high_conflict_rate",
                    "rate": conflict_rate,
                    "message": f"High conflict rate ({conflict_rate:.1%}), parallel efficiency may be low"
                })

        return {
            "valid": len(issues) == 0,
            "issues": issues,
            "warnings": len([i for i in issues if i["type"] == "high_conflict_rate"])
        }


def describe_plan(plan: ExecutionPlan, tasks: Optional[Iterable[Task]] = None) -> str:
    """Human readable summary of a plan."""
    titles = {t.id: t.title for t in tasks} if tasks is not None else {}
    lines = [f"Execution plan for {plan.phase_id}: {plan.total_tasks} tasks, {len(plan.batches)} batches"]
    for batch in plan.batches:
        mode = "parallel" if batch.can_parallel else "sequential"
        lines.append(f"\nBatch {batch.batch_id} ({mode}):")
        for task_id in batch.task_ids:
            assignment = plan.assignments.get(task_id)
            title = titles.get(task_id) or ""
            branch = assignment.branch if assignment else "?"
            lines.append(f"  - {task_id} {title}".rstrip() + f"  [{branch}]")
        for group in batch.sequential_groups:
            lines.append(f"  ! shared files: {' -> '.join(group)} run one at a time")
    if plan.critical_path:
        lines.append(f"\nCritical path: {' -> '.join(plan.critical_path)}")
    return '\n'.join(lines)
