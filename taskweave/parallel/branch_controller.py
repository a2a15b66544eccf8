"""
Branch Controller
=================

Creates task branches and reintegrates them onto a target branch.

Key Features:
- Deterministic task branch names: feature/{phase_id}/{task_id}
- Idempotent branch creation (safe to call again after a crash)
- Rebase onto target with conflict detection and guaranteed abort
- Needs-rebase check and single-commit squash before integration
- Detailed diffs of what a task actually changed (see diff_analyzer)

A rebase conflict is an expected outcome, not an exception: it is returned
as a RebaseOutcome listing the conflicting files, and the repository is
always back to its pre-rebase state before the call returns. This module
never picks a resolution.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

from taskweave.errors import BranchCreateError, GitCommandError, GitTimeoutError
from taskweave.parallel.diff_analyzer import (
    ChangedFile,
    ChangedFilesResult,
    build_changed_files,
    parse_numstat,
    parse_status_code,
)
from taskweave.parallel.git_gateway import GitGateway

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "feature"

# Secondary signal only; unmerged paths are the primary conflict check
CONFLICT_MARKERS = (
    'CONFLICT',
    'could not apply',
    'Resolve all conflicts',
)


@dataclass
class RebaseOutcome:
    """
    Result of a rebase or squash attempt.

    Attributes:
        success: Whether the branch now sits linearly on the target
        conflict_files: Paths that conflicted (empty unless a conflict occurred)
        error: Failure reason for non-conflict failures
    """
    success: bool
    conflict_files: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflict_files)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'conflict_files': list(self.conflict_files),
            'error': self.error,
        }


def task_branch_name(phase_id: str, task_id: str) -> str:
    """Branch name for a task: feature/{phase_id}/{task_id}."""
    return f"{BRANCH_PREFIX}/{phase_id}/{task_id}"


class BranchController:
    """
    Branch management and conflict-aware integration for task branches.

    Methods taking ``cwd`` operate on the checkout at that path (usually a
    task worktree); it defaults to the gateway's repository.
    """

    def __init__(self, gateway: GitGateway, rebase_timeout: float = 120):
        """
        Initialize branch controller.

        Args:
            gateway: Git gateway for the repository
            rebase_timeout: Timeout in seconds for rebase commands
        """
        self.gateway = gateway
        self.rebase_timeout = rebase_timeout

    # =========================================================================
    # Branches
    # =========================================================================

    async def branch_exists(
        self,
        branch: str,
        cwd: Optional[str | Path] = None,
        check_remote: bool = True
    ) -> bool:
        """Check whether a branch exists locally (or on origin)."""
        local = await self.gateway.run(
            ['show-ref', '--verify', '--quiet', f'refs/heads/{branch}'],
            cwd=cwd, check=False, timeout=10
        )
        if local.success:
            return True
        if not check_remote:
            return False
        remote = await self.gateway.run(
            ['show-ref', '--verify', '--quiet', f'refs/remotes/origin/{branch}'],
            cwd=cwd, check=False, timeout=10
        )
        return remote.success

    async def create_task_branch(
        self,
        phase_id: str,
        task_id: str,
        base_branch: Optional[str] = None,
        cwd: Optional[str | Path] = None
    ) -> str:
        """
        Create the branch for a task, or return it if it already exists.

        The caller's checkout is not switched.

        Args:
            phase_id: Phase/grouping identifier
            task_id: Task identifier
            base_branch: Start point (defaults to the repository default branch)

        Returns:
            Branch name

        Raises:
            BranchCreateError: If git refuses to create the branch
        """
        branch = task_branch_name(phase_id, task_id)

        async with self.gateway.mutation_lock():
            if await self.branch_exists(branch, cwd=cwd, check_remote=False):
                logger.info(f"Branch {branch} already exists")
                return branch

            if await self.branch_exists(branch, cwd=cwd, check_remote=True):
                # Only on origin: create the local tracking branch
                args = ['branch', '--track', branch, f'origin/{branch}']
            else:
                base = base_branch or await self.gateway.get_default_branch(cwd=cwd)
                args = ['branch', branch, base]

            result = await self.gateway.run(args, cwd=cwd, check=False, timeout=30)

        if not result.success:
            reason = result.stderr.strip() or result.stdout.strip()
            logger.error(f"Failed to create branch {branch}: {reason}")
            raise BranchCreateError(branch, reason)

        logger.info(f"Created branch {branch} from {args[-1]}")
        return branch

    async def get_current_branch(self, cwd: Optional[str | Path] = None) -> str:
        """Current branch name, or '' when HEAD is detached."""
        return await self.gateway.output(['branch', '--show-current'], cwd=cwd, timeout=10)

    async def list_branches(self, pattern: Optional[str] = None, cwd: Optional[str | Path] = None) -> List[str]:
        """Local branch names, optionally filtered by a ``git branch --list`` pattern."""
        args = ['branch', '--list', '--format=%(refname:short)']
        if pattern:
            args.append(pattern)
        result = await self.gateway.run(args, cwd=cwd, timeout=10)
        return result.lines()

    async def delete_branch(self, branch: str, force: bool = False, cwd: Optional[str | Path] = None) -> None:
        """
        Delete a local branch.

        Without force git refuses to delete a branch that is not fully merged.

        Raises:
            GitCommandError: If git refuses the deletion
        """
        async with self.gateway.mutation_lock():
            await self.gateway.run(['branch', '-D' if force else '-d', branch], cwd=cwd, timeout=30)
        logger.info(f"Deleted branch {branch}")

    async def get_merge_base(self, ref1: str, ref2: str, cwd: Optional[str | Path] = None) -> str:
        """Commit SHA of the merge base of two refs."""
        return await self.gateway.output(['merge-base', ref1, ref2], cwd=cwd, timeout=10)

    async def get_changed_files(
        self,
        base_ref: str,
        head_ref: str = 'HEAD',
        cwd: Optional[str | Path] = None
    ) -> List[str]:
        """Files changed on head_ref since it diverged from base_ref."""
        result = await self.gateway.run(
            ['diff', '--name-only', f'{base_ref}...{head_ref}'],
            cwd=cwd, timeout=30
        )
        return result.lines()

    async def get_changed_files_detailed(
        self,
        base_ref: str,
        head_ref: str = 'HEAD',
        cwd: Optional[str | Path] = None
    ) -> ChangedFilesResult:
        """
        Changed files on head_ref since it diverged from base_ref, with
        status, line counts and rename sources.
        """
        diff_range = f'{base_ref}...{head_ref}'
        name_status = await self.gateway.run(['diff', '-M', '--name-status', diff_range], cwd=cwd, timeout=30)
        numstat = await self.gateway.run(['diff', '-M', '--numstat', diff_range], cwd=cwd, timeout=30)
        return build_changed_files(name_status.stdout, numstat.stdout)

    async def get_uncommitted_changes(self, cwd: Optional[str | Path] = None) -> ChangedFilesResult:
        """
        Staged, unstaged and untracked changes in the checkout.

        A path both staged and modified again is reported once, with its
        staged line counts. Untracked files have zero line counts.
        """
        staged = await self.gateway.run(['diff', '--cached', '--numstat'], cwd=cwd, timeout=30)
        unstaged = await self.gateway.run(['diff', '--numstat'], cwd=cwd, timeout=30)
        status = await self.gateway.run(['status', '--porcelain', '--untracked-files=all'], cwd=cwd, timeout=30)

        statuses: Dict[str, str] = {}
        untracked: List[str] = []
        for line in status.stdout.splitlines():
            if len(line) < 4:
                continue
            code, path = line[:2], line[3:]
            if ' -> ' in path:
                path = path.split(' -> ', 1)[1]
            if code == '??':
                untracked.append(path)
                continue
            statuses[path] = parse_status_code(code[1] if code[0] == ' ' else code[0])

        files: List[ChangedFile] = []
        seen = set()
        for output in (staged.stdout, unstaged.stdout):
            for path, additions, deletions in parse_numstat(output):
                if path in seen:
                    continue
                seen.add(path)
                files.append(ChangedFile(
                    path=path,
                    status=statuses.get(path, 'M'),
                    additions=additions,
                    deletions=deletions
                ))
        for path in untracked:
            if path not in seen:
                files.append(ChangedFile(path=path, status='A'))

        return ChangedFilesResult(files=files)

    # =========================================================================
    # Integration
    # =========================================================================

    async def needs_rebase(self, target_branch: str, cwd: Optional[str | Path] = None) -> bool:
        """Check whether target_branch has commits that HEAD lacks."""
        result = await self.gateway.run(
            ['rev-list', '--count', f'HEAD..{target_branch}'],
            cwd=cwd, check=False, timeout=10
        )
        if not result.success:
            logger.warning(f"Could not compare HEAD with {target_branch}: {result.stderr.strip()}")
            return False
        try:
            return int(result.stdout.strip()) > 0
        except ValueError:
            return False

    async def rebase_onto_target(self, target_branch: str, cwd: Optional[str | Path] = None) -> RebaseOutcome:
        """
        Rebase the current branch onto target_branch.

        On conflict the rebase is aborted and the conflicting files are
        returned. On any failure the repository is left without a rebase in
        progress. If a rebase was already in progress when called, nothing is
        touched and an error outcome is returned.

        Args:
            target_branch: Branch to rebase onto
            cwd: Checkout whose current branch is rebased

        Returns:
            RebaseOutcome

        Raises:
            GitTimeoutError: If the rebase timed out (after aborting it)
        """
        logger.info(f"Rebasing {cwd or self.gateway.repo_path} onto {target_branch}")

        async with self.gateway.mutation_lock():
            if await self.is_rebase_in_progress(cwd):
                # Only rebases started by this call are ever aborted
                logger.warning(f"Rebase already in progress in {cwd or self.gateway.repo_path}, not starting another")
                return RebaseOutcome(success=False, error="Rebase already in progress")

            try:
                result = await self.gateway.run(
                    ['rebase', target_branch],
                    cwd=cwd,
                    check=False,
                    timeout=self.rebase_timeout,
                    env={'GIT_EDITOR': 'true'}
                )
            except GitTimeoutError:
                await self._abort_if_in_progress(cwd)
                raise

            if result.success:
                logger.info(f"Rebase onto {target_branch} succeeded")
                return RebaseOutcome(success=True)

            conflict_files = await self.get_conflict_files(cwd)
            output = result.stderr + result.stdout
            text_conflict = any(marker in output for marker in CONFLICT_MARKERS)

            await self._abort_if_in_progress(cwd)

        if conflict_files or text_conflict:
            logger.warning(f"Rebase onto {target_branch} conflicted in {conflict_files}, aborted")
            return RebaseOutcome(success=False, conflict_files=conflict_files)

        error = result.stderr.strip() or result.stdout.strip()
        logger.error(f"Rebase onto {target_branch} failed: {error}")
        return RebaseOutcome(success=False, error=error)

    async def squash_commits(
        self,
        base_branch: str,
        message: str,
        cwd: Optional[str | Path] = None
    ) -> RebaseOutcome:
        """
        Squash every commit since the merge base with base_branch into one.

        If the new commit cannot be created, HEAD is reset back to the
        original commit so the branch is never left partially squashed.
        Refuses to run while the index holds staged changes, which would
        otherwise be folded into the squashed commit.

        Args:
            base_branch: Branch to find the merge base with
            message: Message for the squashed commit
            cwd: Checkout whose current branch is squashed

        Returns:
            RebaseOutcome (conflict_files is always empty)
        """
        async with self.gateway.mutation_lock():
            staged = await self.gateway.run(['diff', '--cached', '--quiet'], cwd=cwd, check=False, timeout=10)
            if staged.returncode == 1:
                logger.warning("Refusing to squash with staged changes in the index")
                return RebaseOutcome(
                    success=False,
                    error="Staged changes present; commit or unstage them before squashing"
                )

            merge_base = await self.gateway.run(['merge-base', 'HEAD', base_branch], cwd=cwd, check=False, timeout=10)
            if not merge_base.success:
                return RebaseOutcome(
                    success=False,
                    error=f"Unable to find merge base: {merge_base.stderr.strip()}"
                )
            base_sha = merge_base.stdout.strip()
            original_head = await self.gateway.get_head_sha(cwd=cwd)

            if original_head == base_sha:
                logger.info(f"No commits since {base_branch}, nothing to squash")
                return RebaseOutcome(success=True)

            reset = await self.gateway.run(['reset', '--soft', base_sha], cwd=cwd, check=False, timeout=30)
            if not reset.success:
                return RebaseOutcome(success=False, error=f"Reset failed: {reset.stderr.strip()}")

            commit = await self.gateway.run(['commit', '-m', message], cwd=cwd, check=False, timeout=30)
            if not commit.success:
                reason = commit.stderr.strip() or commit.stdout.strip()
                # Put the branch back exactly where it was
                await self.gateway.run(['reset', '--soft', original_head], cwd=cwd, timeout=30)
                logger.error(f"Squash commit failed, restored HEAD to {original_head[:8]}: {reason}")
                return RebaseOutcome(success=False, error=f"Commit failed: {reason}")

        logger.info(f"Squashed commits since {base_branch} into one")
        return RebaseOutcome(success=True)

    # =========================================================================
    # Rebase state
    # =========================================================================

    async def is_rebase_in_progress(self, cwd: Optional[str | Path] = None) -> bool:
        """Check for rebase-merge / rebase-apply state in the git dir."""
        base = Path(cwd) if cwd is not None else self.gateway.repo_path
        for state_dir in ('rebase-merge', 'rebase-apply'):
            result = await self.gateway.run(['rev-parse', '--git-path', state_dir], cwd=cwd, check=False, timeout=10)
            if not result.success:
                continue
            state_path = Path(result.stdout.strip())
            if not state_path.is_absolute():
                state_path = base / state_path
            if state_path.exists():
                return True
        return False

    async def get_conflict_files(self, cwd: Optional[str | Path] = None) -> List[str]:
        """Paths with unmerged status."""
        result = await self.gateway.run(
            ['diff', '--name-only', '--diff-filter=U'],
            cwd=cwd, check=False, timeout=10
        )
        if not result.success:
            return []
        return result.lines()

    async def abort_rebase(self, cwd: Optional[str | Path] = None) -> bool:
        """
        Abort an in-progress rebase.

        Returns:
            True if a rebase was aborted, False if none was in progress

        Raises:
            GitCommandError: If the abort itself fails
        """
        async with self.gateway.mutation_lock():
            return await self._abort_if_in_progress(cwd)

    async def continue_rebase(self, cwd: Optional[str | Path] = None) -> RebaseOutcome:
        """
        Continue a rebase after the caller resolved and staged the conflicts.

        If the rebase stops again (new conflicts or unresolved files) it is
        aborted, so the repository is never left mid-rebase.
        """
        async with self.gateway.mutation_lock():
            if not await self.is_rebase_in_progress(cwd):
                return RebaseOutcome(success=False, error="No rebase in progress")

            result = await self.gateway.run(
                ['rebase', '--continue'],
                cwd=cwd,
                check=False,
                timeout=self.rebase_timeout,
                env={'GIT_EDITOR': 'true'}
            )
            if result.success:
                logger.info("Rebase continued to completion")
                return RebaseOutcome(success=True)

            conflict_files = await self.get_conflict_files(cwd)
            await self._abort_if_in_progress(cwd)

        if conflict_files:
            return RebaseOutcome(success=False, conflict_files=conflict_files)
        return RebaseOutcome(success=False, error=result.stderr.strip() or result.stdout.strip())

    async def ensure_clean_state(self, cwd: Optional[str | Path] = None) -> List[str]:
        """
        Abort an interrupted rebase or merge left behind by a crash.

        Returns:
            Names of the operations that were aborted
        """
        aborted: List[str] = []
        async with self.gateway.mutation_lock():
            if await self._abort_if_in_progress(cwd):
                aborted.append('rebase')

            merge_head = await self.gateway.run(
                ['rev-parse', '-q', '--verify', 'MERGE_HEAD'],
                cwd=cwd, check=False, timeout=10
            )
            if merge_head.success:
                logger.warning("Detected interrupted git merge. Aborting...")
                await self.gateway.run(['merge', '--abort'], cwd=cwd, timeout=30)
                aborted.append('merge')

        return aborted

    async def _abort_if_in_progress(self, cwd: Optional[str | Path]) -> bool:
        if not await self.is_rebase_in_progress(cwd):
            return False
        try:
            await self.gateway.run(['rebase', '--abort'], cwd=cwd, timeout=30)
        except GitCommandError as e:
            logger.error(f"Failed to abort rebase: {e.stderr.strip()}")
            raise
        logger.info("Rebase aborted")
        return True
