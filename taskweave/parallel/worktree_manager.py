"""
Worktree Manager
================

Manages git worktrees for isolated parallel task execution.
Each task gets its own worktree at ``{base_path}/worktrees/{task_id}``,
bound to one task branch.

Key Features:
- Idempotent creation (resuming a task reuses its worktree)
- Creates the task branch together with the worktree when it is missing
- Surfaces "branch checked out elsewhere" and "path bound to another branch"
  with the conflicting branch/path instead of retrying
- Refuses to remove a worktree with uncommitted changes unless forced
- Prunes registrations whose directories were deleted out of band

Git is the source of truth: nothing is cached between calls.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging
import os

from taskweave.errors import (
    GitCommandError,
    InvalidTaskIdError,
    WorktreeCreateError,
    WorktreeNotFoundError,
    WorktreeRemoveError,
)
from taskweave.parallel.git_gateway import GitGateway

logger = logging.getLogger(__name__)

DEFAULT_WORKTREE_DIR = "worktrees"

# Fragments of `git worktree remove` stderr meaning "would lose work"
DIRTY_MARKERS = (
    'contains modified or untracked files',
    'uncommitted changes',
    'is dirty',
)


@dataclass
class WorktreeInfo:
    """
    Information about a registered worktree.

    Attributes:
        path: Filesystem path to the worktree
        branch: Checked out branch ('' when detached)
        head_commit: HEAD commit SHA
        is_detached: Whether HEAD is detached
        is_main: Whether this is the repository's main worktree
        is_locked: Whether the worktree is locked against pruning/removal
        is_prunable: Whether git considers the registration stale
    """
    path: str
    branch: str = ""
    head_commit: str = ""
    is_detached: bool = False
    is_main: bool = False
    is_locked: bool = False
    is_prunable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'path': self.path,
            'branch': self.branch,
            'head_commit': self.head_commit,
            'is_detached': self.is_detached,
            'is_main': self.is_main,
            'is_locked': self.is_locked,
            'is_prunable': self.is_prunable,
        }


def parse_worktree_list(output: str) -> List[WorktreeInfo]:
    """
    Parse ``git worktree list --porcelain`` output.

    The first entry git prints is the main worktree. Bare entries are skipped.
    """
    worktrees: List[WorktreeInfo] = []
    current: Optional[WorktreeInfo] = None
    bare = False

    def flush():
        if current is not None and not bare:
            worktrees.append(current)

    for line in output.splitlines():
        if line.startswith('worktree '):
            flush()
            current = WorktreeInfo(path=line[len('worktree '):])
            bare = False
        elif current is None:
            continue
        elif line.startswith('HEAD '):
            current.head_commit = line[len('HEAD '):]
        elif line.startswith('branch '):
            branch = line[len('branch '):]
            # Extract branch name from refs/heads/...
            if branch.startswith('refs/heads/'):
                branch = branch[len('refs/heads/'):]
            current.branch = branch
        elif line == 'detached':
            current.is_detached = True
        elif line == 'bare':
            bare = True
        elif line == 'locked' or line.startswith('locked '):
            current.is_locked = True
        elif line == 'prunable' or line.startswith('prunable '):
            current.is_prunable = True

    flush()

    if worktrees:
        worktrees[0].is_main = True

    return worktrees


def validate_task_id(task_id: str) -> str:
    """
    Check that a task id is a single, safe directory name.

    Raises:
        InvalidTaskIdError: If the id is empty, contains a path separator or '..'
    """
    if not task_id or not task_id.strip():
        raise InvalidTaskIdError(task_id, "ID is empty")
    if '/' in task_id or '\\' in task_id or os.sep in task_id:
        raise InvalidTaskIdError(task_id, "ID contains a path separator")
    if '..' in task_id or task_id == '.':
        raise InvalidTaskIdError(task_id, "ID contains '..' or is '.'")
    if '\x00' in task_id:
        raise InvalidTaskIdError(task_id, "ID contains a NUL byte")
    return task_id


def task_worktree_path(base_path: str | Path, task_id: str, worktree_dir: str = DEFAULT_WORKTREE_DIR) -> str:
    """
    Standard worktree path for a task: {base_path}/worktrees/{task_id}.

    Raises:
        InvalidTaskIdError: If task_id would escape the worktree directory
    """
    validate_task_id(task_id)
    return os.path.abspath(os.path.join(str(base_path), worktree_dir, task_id))


def _same_path(a: str | Path, b: str | Path) -> bool:
    return os.path.realpath(str(a)) == os.path.realpath(str(b))


class WorktreeManager:
    """
    Manages git worktrees for parallel execution isolation.

    All registry mutations (add, remove, prune) run under the gateway's
    mutation lock; listing and status queries do not.
    """

    def __init__(self, gateway: GitGateway, worktree_dir: str = DEFAULT_WORKTREE_DIR):
        """
        Initialize worktree manager.

        Args:
            gateway: Git gateway for the repository
            worktree_dir: Directory under base_path holding task worktrees
        """
        self.gateway = gateway
        self.worktree_dir = worktree_dir
        logger.info(f"WorktreeManager initialized for {gateway.repo_path}")

    def worktree_path(self, base_path: str | Path, task_id: str) -> str:
        return task_worktree_path(base_path, task_id, self.worktree_dir)

    async def list_worktrees(self) -> List[WorktreeInfo]:
        """
        List all worktrees registered in the repository.

        Raises:
            GitCommandError: If git cannot list worktrees
        """
        result = await self.gateway.run(['worktree', 'list', '--porcelain'], timeout=10)
        return parse_worktree_list(result.stdout)

    async def find_worktree(self, path: str | Path) -> Optional[WorktreeInfo]:
        """Registered worktree at path, or None."""
        for worktree in await self.list_worktrees():
            if _same_path(worktree.path, path):
                return worktree
        return None

    async def worktree_exists(self, path: str | Path) -> bool:
        """Check whether a worktree is registered at path."""
        return await self.find_worktree(path) is not None

    async def get_worktree_info(self, path: str | Path) -> WorktreeInfo:
        """
        Get information about the worktree at path.

        Raises:
            WorktreeNotFoundError: If no worktree is registered there
        """
        worktree = await self.find_worktree(path)
        if worktree is None:
            raise WorktreeNotFoundError(str(path))
        return worktree

    async def create_worktree(
        self,
        base_path: str | Path,
        task_id: str,
        branch: str,
        base_ref: Optional[str] = None
    ) -> str:
        """
        Create (or reuse) the worktree for a task.

        Args:
            base_path: Directory the worktrees directory lives under
            task_id: Task identifier (last path component)
            branch: Branch to check out; created when it does not exist
            base_ref: Start point for a new branch (defaults to current HEAD)

        Returns:
            Absolute path of the worktree

        Raises:
            InvalidTaskIdError: If task_id is not a safe directory name
            WorktreeCreateError: If the path is bound to another branch, the
                branch is checked out elsewhere, or git refuses the add
        """
        path = self.worktree_path(base_path, task_id)
        logger.info(f"Creating worktree for task {task_id} on {branch}")

        async with self.gateway.mutation_lock():
            existing = await self.find_worktree(path)
            if existing is not None:
                if existing.is_prunable or not Path(existing.path).is_dir():
                    logger.warning(f"Stale worktree registration at {path}, pruning before create")
                    await self._prune()
                elif existing.branch == branch and not existing.is_detached:
                    logger.info(f"Reusing existing worktree: {path}")
                    return path
                else:
                    raise WorktreeCreateError(
                        path,
                        branch,
                        "Path is already a worktree for a different branch",
                        conflicting_branch=existing.branch or "(detached HEAD)"
                    )

            exists = await self.gateway.run(
                ['show-ref', '--verify', '--quiet', f'refs/heads/{branch}'],
                check=False,
                timeout=10
            )

            if exists.success:
                args = ['worktree', 'add', path, branch]
            else:
                args = ['worktree', 'add', '-b', branch, path]
                if base_ref:
                    args.append(base_ref)

            Path(path).parent.mkdir(parents=True, exist_ok=True)
            result = await self.gateway.run(args, check=False, timeout=60)

            if not result.success:
                reason = result.stderr.strip() or result.stdout.strip()
                holder = await self._checkout_holder(branch, exclude=path)
                logger.error(f"Failed to create worktree at {path}: {reason}")
                raise WorktreeCreateError(
                    path,
                    branch,
                    reason,
                    conflicting_path=holder.path if holder else None
                )

        logger.info(f"Created worktree at {path} ({'existing' if exists.success else 'new'} branch {branch})")
        return path

    async def remove_worktree(self, path: str | Path, force: bool = False) -> None:
        """
        Remove a worktree registration and its directory.

        Args:
            path: Worktree path
            force: Discard uncommitted changes

        Raises:
            WorktreeRemoveError: If the worktree has uncommitted changes and
                force is False, or it is locked
            WorktreeNotFoundError: If no worktree is registered at path
            GitCommandError: On any other git failure
        """
        args = ['worktree', 'remove']
        if force:
            args.append('--force')
        args.append(str(path))

        async with self.gateway.mutation_lock():
            result = await self.gateway.run(args, check=False, timeout=30)

        if result.success:
            logger.info(f"Removed worktree: {path}{' (forced)' if force else ''}")
            return

        stderr = result.stderr.strip()
        lowered = stderr.lower()
        if not force and any(marker in lowered for marker in DIRTY_MARKERS):
            logger.warning(f"Worktree {path} has uncommitted changes, not removing")
            raise WorktreeRemoveError(str(path), stderr)
        if 'locked' in lowered:
            raise WorktreeRemoveError(str(path), stderr)
        if 'is not a working tree' in lowered:
            raise WorktreeNotFoundError(str(path))
        raise GitCommandError(args, result.returncode, stderr, result.cwd)

    async def prune_worktrees(self) -> None:
        """
        Clear registrations for worktrees whose directory no longer exists.

        Idempotent and never raises; failures are logged.
        """
        async with self.gateway.mutation_lock():
            await self._prune()

    async def has_uncommitted_changes(self, path: str | Path) -> bool:
        """Check whether the worktree at path has uncommitted changes."""
        output = await self.gateway.output(['status', '--porcelain'], cwd=path, timeout=10)
        has_changes = len(output) > 0
        logger.debug(f"Uncommitted changes in {path}: {has_changes}")
        return has_changes

    async def cleanup_worktree(
        self,
        base_path: str | Path,
        task_id: str,
        force: bool = False,
        delete_branch: bool = False
    ) -> None:
        """
        Remove a task's worktree and optionally its branch.

        The branch is only deleted when fully merged (``git branch -d``);
        an unmerged branch is kept and logged so no work is lost.

        Raises:
            WorktreeRemoveError: If the worktree is dirty and force is False
        """
        path = self.worktree_path(base_path, task_id)
        worktree = await self.find_worktree(path)
        if worktree is None:
            logger.warning(f"No worktree found for task {task_id}, nothing to clean up")
            return

        if worktree.is_prunable or not Path(worktree.path).is_dir():
            logger.warning(f"Worktree directory already removed: {path}")
            await self.prune_worktrees()
        else:
            await self.remove_worktree(path, force=force)

        if delete_branch and worktree.branch:
            async with self.gateway.mutation_lock():
                result = await self.gateway.run(['branch', '-d', worktree.branch], check=False, timeout=30)
            if result.success:
                logger.info(f"Branch {worktree.branch} deleted (was fully merged)")
            elif 'not fully merged' in result.stderr:
                logger.warning(f"Branch {worktree.branch} has unmerged changes, keeping it")
            else:
                logger.warning(f"Could not delete branch {worktree.branch}: {result.stderr.strip()}")

        logger.info(f"Worktree cleanup complete for task {task_id}")

    async def get_worktree_status(self) -> Dict[str, Any]:
        """
        Get current worktree status.

        Returns:
            Dict with:
            - total_worktrees: Registered worktrees including the main one
            - task_worktrees: Worktrees other than the main one
            - detached_worktrees: Worktrees with a detached HEAD
            - stale_worktrees: Registrations git considers prunable
            - worktrees: List of worktree info dicts
        """
        worktrees = await self.list_worktrees()
        return {
            'total_worktrees': len(worktrees),
            'task_worktrees': sum(1 for wt in worktrees if not wt.is_main),
            'detached_worktrees': sum(1 for wt in worktrees if wt.is_detached),
            'stale_worktrees': sum(1 for wt in worktrees if wt.is_prunable),
            'worktrees': [wt.to_dict() for wt in worktrees],
        }

    async def _prune(self) -> None:
        try:
            await self.gateway.run(['worktree', 'prune'], timeout=30)
            logger.debug("Pruned stale worktree registrations")
        except GitCommandError as e:
            logger.warning(f"Worktree prune failed: {e.stderr.strip()}")

    async def _checkout_holder(self, branch: str, exclude: str) -> Optional[WorktreeInfo]:
        """Worktree (other than exclude) that has branch checked out."""
        try:
            worktrees = await self.list_worktrees()
        except GitCommandError:
            return None
        for worktree in worktrees:
            if worktree.branch == branch and not _same_path(worktree.path, exclude):
                return worktree
        return None
