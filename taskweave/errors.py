"""
Errors
======

Exception hierarchy for task graph construction, task file loading and git
workspace operations.

Messages are multi-line so the caller can show them directly: what failed,
the context needed to act on it, and a remediation hint.

Rebase conflicts are NOT exceptions; see RebaseOutcome in
taskweave.parallel.branch_controller.
"""

from typing import List, Optional


class TaskweaveError(Exception):
    """Base class for every error raised by taskweave."""
    pass


# =============================================================================
# Task graph errors (structural)
# =============================================================================

class TaskGraphError(TaskweaveError):
    """Raised when a task list cannot form a valid dependency graph."""
    pass


class UnknownDependencyError(TaskGraphError):
    """Raised when a task depends on an id that is not in the task list."""

    def __init__(self, task_id: str, missing_id: str):
        self.task_id = task_id
        self.missing_id = missing_id
        super().__init__(
            f"Invalid task dependency.\n"
            f"  Task: {task_id}\n"
            f"  Missing dependency: {missing_id}\n\n"
            f"Ensure all task IDs in depends_on reference valid tasks."
        )


class DuplicateTaskIdError(TaskGraphError):
    """Raised when two tasks share the same id."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(
            f"Duplicate task ID found.\n"
            f"  ID: {task_id}\n\n"
            f"Ensure all task IDs are unique within the task list."
        )


class InvalidTaskIdError(TaskGraphError):
    """Raised when a task id cannot be used as a worktree directory name."""

    def __init__(self, task_id: str, reason: str):
        self.task_id = task_id
        self.reason = reason
        super().__init__(
            f"Invalid task ID.\n"
            f"  ID: {task_id!r}\n"
            f"  Reason: {reason}\n\n"
            f"Use task IDs without path separators or '..'."
        )


class CyclicDependencyError(TaskGraphError):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, cycle_path: List[str]):
        self.cycle_path = list(cycle_path)
        cycle_str = " -> ".join(self.cycle_path)
        super().__init__(
            f"Cyclic dependency detected in task graph.\n"
            f"  Cycle: {cycle_str}\n\n"
            f"Remove or restructure dependencies to eliminate the cycle."
        )


class TaskFileError(TaskweaveError):
    """Raised when a task file cannot be read, parsed or validated."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(
            f"Failed to load tasks.\n"
            f"  File: {source}\n"
            f"  Reason: {reason}\n\n"
            f"Fix the task definitions and try again."
        )


# =============================================================================
# Git errors (external-process and resource-state)
# =============================================================================

class GitError(TaskweaveError):
    """Base class for git related errors."""
    pass


class GitCommandError(GitError):
    """Raised when a git command exits non-zero or cannot be run."""

    def __init__(
        self,
        args: List[str],
        exit_code: int,
        stderr: str,
        cwd: Optional[str] = None
    ):
        self.args_list = list(args)
        self.exit_code = exit_code
        self.stderr = stderr
        self.cwd = cwd
        cmd = "git " + " ".join(self.args_list)
        cwd_info = f"\n  Working directory: {cwd}" if cwd else ""
        super().__init__(
            f"Git command failed.\n"
            f"  Command: {cmd}{cwd_info}\n"
            f"  Exit code: {exit_code}\n"
            f"  Error: {stderr.strip()}\n\n"
            f"Check that git is installed and the repository state is valid."
        )

    @property
    def command(self) -> str:
        return "git " + " ".join(self.args_list)


class GitTimeoutError(GitCommandError):
    """Raised when a git command exceeds its timeout and is killed."""

    def __init__(self, args: List[str], timeout: float, cwd: Optional[str] = None):
        self.timeout = timeout
        super().__init__(args, -1, f"Command timed out after {timeout}s", cwd)


class WorktreeCreateError(GitError):
    """
    Raised when a worktree cannot be created.

    conflicting_branch is set when the path is already a worktree on another
    branch; conflicting_path is set when the branch is checked out elsewhere.
    """

    def __init__(
        self,
        path: str,
        branch: str,
        reason: str,
        conflicting_branch: Optional[str] = None,
        conflicting_path: Optional[str] = None
    ):
        self.path = path
        self.branch = branch
        self.reason = reason
        self.conflicting_branch = conflicting_branch
        self.conflicting_path = conflicting_path

        details = ""
        if conflicting_branch:
            details += f"\n  Path is bound to branch: {conflicting_branch}"
        if conflicting_path:
            details += f"\n  Branch is checked out at: {conflicting_path}"

        super().__init__(
            f"Failed to create worktree.\n"
            f"  Path: {path}\n"
            f"  Branch: {branch}\n"
            f"  Reason: {reason}{details}\n\n"
            f"Reuse the existing worktree, remove it, or pick another branch."
        )


class WorktreeRemoveError(GitError):
    """Raised when a worktree cannot be removed without losing work."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(
            f"Failed to remove worktree.\n"
            f"  Path: {path}\n"
            f"  Reason: {reason}\n\n"
            f"Commit or discard the changes, or remove with force=True."
        )


class WorktreeNotFoundError(GitError):
    """Raised when no worktree is registered at the given path."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(
            f"Worktree not found.\n"
            f"  Path: {path}\n\n"
            f"Ensure the worktree exists or create it first."
        )


class BranchCreateError(GitError):
    """Raised when a task branch cannot be created."""

    def __init__(self, branch: str, reason: str):
        self.branch = branch
        self.reason = reason
        super().__init__(
            f"Failed to create branch.\n"
            f"  Branch: {branch}\n"
            f"  Reason: {reason}\n\n"
            f"Ensure the branch name is valid and the base branch exists."
        )
