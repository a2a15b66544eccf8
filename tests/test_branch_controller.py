"""
Test BranchController: task branches, rebase with conflict abort, squash.

Conflict scenarios are built with real git: the task branch and the target
branch both change the same line of a shared file.
"""

import os
import subprocess
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import commit_file, git
from taskweave.errors import BranchCreateError, GitTimeoutError
from taskweave.parallel.branch_controller import BranchController, RebaseOutcome, task_branch_name
from taskweave.parallel.worktree_manager import WorktreeManager


@pytest.fixture
def controller(gateway):
    return BranchController(gateway)


@pytest.fixture
async def task_worktree(gateway, controller, git_repo):
    """Worktree for task T1 on feature/phase-1/T1, branched after shared.txt exists."""
    commit_file(git_repo, 'shared.txt', 'base\n', 'Add shared file')
    branch = await controller.create_task_branch('phase-1', 'T1')
    path = await WorktreeManager(gateway).create_worktree(git_repo.parent, 'T1', branch)
    return Path(path)


def start_conflicting_rebase(worktree):
    """Leave a conflicted rebase in progress, bypassing the controller."""
    subprocess.run(
        ['git', 'rebase', 'main'],
        cwd=worktree,
        capture_output=True,
        env={**os.environ, 'GIT_EDITOR': 'true'}
    )


class TestBranchNames:
    """Tests for branch naming and creation."""

    def test_task_branch_name(self):
        assert task_branch_name('phase-1', 'T1') == 'feature/phase-1/T1'
        assert task_branch_name('p2', 'auth-login') == 'feature/p2/auth-login'

    @pytest.mark.asyncio
    async def test_create_task_branch(self, controller, git_repo):
        branch = await controller.create_task_branch('phase-1', 'T1')

        assert branch == 'feature/phase-1/T1'
        assert await controller.branch_exists(branch)
        # The caller's checkout is not switched
        assert await controller.get_current_branch() == 'main'
        assert git(git_repo, 'rev-parse', branch) == git(git_repo, 'rev-parse', 'main')

    @pytest.mark.asyncio
    async def test_create_task_branch_idempotent(self, controller, git_repo):
        first = await controller.create_task_branch('phase-1', 'T1')
        commit_file(git_repo, 'later.txt', 'x\n', 'Move main ahead')
        second = await controller.create_task_branch('phase-1', 'T1')

        assert first == second
        # Existing branch is left where it was
        assert git(git_repo, 'rev-parse', first) == git(git_repo, 'rev-parse', 'main~1')

    @pytest.mark.asyncio
    async def test_create_from_base_branch(self, controller, git_repo):
        git(git_repo, 'branch', 'develop')
        commit_file(git_repo, 'main-only.txt', 'x\n', 'Main only')

        branch = await controller.create_task_branch('phase-1', 'T1', base_branch='develop')

        assert git(git_repo, 'rev-parse', branch) == git(git_repo, 'rev-parse', 'develop')

    @pytest.mark.asyncio
    async def test_create_invalid_name(self, controller):
        with pytest.raises(BranchCreateError) as exc_info:
            await controller.create_task_branch('bad..phase', 'T1')

        assert exc_info.value.branch == 'feature/bad..phase/T1'

    @pytest.mark.asyncio
    async def test_list_and_delete(self, controller):
        await controller.create_task_branch('phase-1', 'T1')
        await controller.create_task_branch('phase-1', 'T2')

        assert await controller.list_branches('feature/*') == ['feature/phase-1/T1', 'feature/phase-1/T2']

        await controller.delete_branch('feature/phase-1/T1')
        assert not await controller.branch_exists('feature/phase-1/T1', check_remote=False)

    @pytest.mark.asyncio
    async def test_merge_base_and_changed_files(self, controller, task_worktree, git_repo):
        base = git(git_repo, 'rev-parse', 'main')
        commit_file(task_worktree, 'src/feature.py', 'print(1)\n', 'Feature')

        assert await controller.get_merge_base('main', 'feature/phase-1/T1') == base
        assert await controller.get_changed_files('main', 'feature/phase-1/T1') == ['src/feature.py']


class TestChanges:
    """Tests for detailed diffs of a task branch."""

    @pytest.mark.asyncio
    async def test_changed_files_detailed(self, controller, task_worktree):
        commit_file(task_worktree, 'src/feature.py', 'a\nb\n', 'Feature')
        (task_worktree / 'docs').mkdir()
        git(task_worktree, 'mv', 'shared.txt', 'docs/shared.txt')
        git(task_worktree, 'commit', '-m', 'Move shared')

        result = await controller.get_changed_files_detailed('main', cwd=task_worktree)
        by_path = {f.path: f for f in result.files}
        print(f"Changes: {result.to_dict()}")

        assert set(by_path) == {'src/feature.py', 'docs/shared.txt'}
        assert by_path['src/feature.py'].status == 'A'
        assert by_path['src/feature.py'].additions == 2
        assert by_path['docs/shared.txt'].status == 'R'
        assert by_path['docs/shared.txt'].previous_path == 'shared.txt'
        assert result.total_additions == 2

    @pytest.mark.asyncio
    async def test_uncommitted_changes(self, controller, task_worktree):
        (task_worktree / 'staged.py').write_text('x = 1\n')
        git(task_worktree, 'add', 'staged.py')
        (task_worktree / 'shared.txt').write_text('edited\n')
        (task_worktree / 'untracked.txt').write_text('new\n')

        result = await controller.get_uncommitted_changes(cwd=task_worktree)

        assert [(f.path, f.status, f.additions, f.deletions) for f in result.files] == [
            ('staged.py', 'A', 1, 0),
            ('shared.txt', 'M', 1, 1),
            ('untracked.txt', 'A', 0, 0),
        ]

    @pytest.mark.asyncio
    async def test_no_uncommitted_changes(self, controller, task_worktree):
        result = await controller.get_uncommitted_changes(cwd=task_worktree)
        assert result.files == []


class TestRebase:
    """Tests for rebase onto the target branch."""

    @pytest.mark.asyncio
    async def test_needs_rebase(self, controller, task_worktree, git_repo):
        assert not await controller.needs_rebase('main', cwd=task_worktree)

        commit_file(git_repo, 'other.txt', 'x\n', 'Main moves on')

        assert await controller.needs_rebase('main', cwd=task_worktree)

    @pytest.mark.asyncio
    async def test_needs_rebase_unknown_target(self, controller, task_worktree):
        assert not await controller.needs_rebase('no-such-branch', cwd=task_worktree)

    @pytest.mark.asyncio
    async def test_clean_rebase(self, controller, task_worktree, git_repo):
        commit_file(task_worktree, 'task.txt', 'task\n', 'Task work')
        commit_file(git_repo, 'other.txt', 'x\n', 'Main moves on')

        outcome = await controller.rebase_onto_target('main', cwd=task_worktree)

        assert outcome == RebaseOutcome(success=True)
        assert not await controller.needs_rebase('main', cwd=task_worktree)
        assert (task_worktree / 'other.txt').exists()

    @pytest.mark.asyncio
    async def test_conflict_round_trip(self, controller, task_worktree, git_repo):
        """A conflict returns the file and leaves no rebase in progress."""
        task_head = commit_file(task_worktree, 'shared.txt', 'task change\n', 'Task edits shared')
        commit_file(git_repo, 'shared.txt', 'main change\n', 'Main edits shared')

        outcome = await controller.rebase_onto_target('main', cwd=task_worktree)
        print(f"Outcome: {outcome.to_dict()}")

        assert not outcome.success
        assert outcome.conflict_files == ['shared.txt']
        assert outcome.has_conflicts
        assert not await controller.is_rebase_in_progress(cwd=task_worktree)
        assert git(task_worktree, 'rev-parse', 'HEAD') == task_head
        assert git(task_worktree, 'status', '--porcelain') == ''
        assert (task_worktree / 'shared.txt').read_text() == 'task change\n'

    @pytest.mark.asyncio
    async def test_dirty_worktree_is_error_not_conflict(self, controller, task_worktree, git_repo):
        commit_file(git_repo, 'other.txt', 'x\n', 'Main moves on')
        (task_worktree / 'shared.txt').write_text('uncommitted\n')

        outcome = await controller.rebase_onto_target('main', cwd=task_worktree)

        assert not outcome.success
        assert outcome.conflict_files == []
        assert outcome.error
        assert not await controller.is_rebase_in_progress(cwd=task_worktree)

    @pytest.mark.asyncio
    async def test_timeout_propagates(self, controller, task_worktree, gateway):
        real_run = gateway.run

        async def run(args, **kwargs):
            if args[:1] == ['rebase'] and '--abort' not in args:
                raise GitTimeoutError(args, 0.1, str(task_worktree))
            return await real_run(args, **kwargs)

        with patch.object(gateway, 'run', side_effect=run):
            with pytest.raises(GitTimeoutError):
                await controller.rebase_onto_target('main', cwd=task_worktree)

    @pytest.mark.asyncio
    async def test_abort_and_clean_state(self, controller, task_worktree, git_repo):
        commit_file(task_worktree, 'shared.txt', 'task change\n', 'Task edits shared')
        commit_file(git_repo, 'shared.txt', 'main change\n', 'Main edits shared')
        start_conflicting_rebase(task_worktree)

        assert await controller.is_rebase_in_progress(cwd=task_worktree)
        assert await controller.get_conflict_files(cwd=task_worktree) == ['shared.txt']

        assert await controller.ensure_clean_state(cwd=task_worktree) == ['rebase']
        assert not await controller.is_rebase_in_progress(cwd=task_worktree)
        assert not await controller.abort_rebase(cwd=task_worktree)

    @pytest.mark.asyncio
    async def test_existing_rebase_left_untouched(self, controller, task_worktree, git_repo):
        """A rebase already in progress keeps its staged resolution."""
        commit_file(task_worktree, 'shared.txt', 'task change\n', 'Task edits shared')
        commit_file(git_repo, 'shared.txt', 'main change\n', 'Main edits shared')
        start_conflicting_rebase(task_worktree)
        (task_worktree / 'shared.txt').write_text('resolved\n')
        git(task_worktree, 'add', 'shared.txt')

        outcome = await controller.rebase_onto_target('main', cwd=task_worktree)

        assert not outcome.success
        assert outcome.error == 'Rebase already in progress'
        assert outcome.conflict_files == []
        assert await controller.is_rebase_in_progress(cwd=task_worktree)
        assert (task_worktree / 'shared.txt').read_text() == 'resolved\n'

        finished = await controller.continue_rebase(cwd=task_worktree)
        assert finished.success
        assert git(task_worktree, 'show', 'HEAD:shared.txt') == 'resolved'

    @pytest.mark.asyncio
    async def test_continue_after_resolution(self, controller, task_worktree, git_repo):
        commit_file(task_worktree, 'shared.txt', 'task change\n', 'Task edits shared')
        commit_file(git_repo, 'shared.txt', 'main change\n', 'Main edits shared')
        start_conflicting_rebase(task_worktree)

        (task_worktree / 'shared.txt').write_text('resolved\n')
        git(task_worktree, 'add', 'shared.txt')

        outcome = await controller.continue_rebase(cwd=task_worktree)

        assert outcome.success
        assert not await controller.is_rebase_in_progress(cwd=task_worktree)
        assert not await controller.needs_rebase('main', cwd=task_worktree)

    @pytest.mark.asyncio
    async def test_continue_without_rebase(self, controller, task_worktree):
        outcome = await controller.continue_rebase(cwd=task_worktree)
        assert not outcome.success
        assert outcome.error == 'No rebase in progress'


class TestSquash:
    """Tests for squashing a task branch."""

    @pytest.mark.asyncio
    async def test_squash(self, controller, task_worktree):
        commit_file(task_worktree, 'a.txt', 'a\n', 'First')
        commit_file(task_worktree, 'b.txt', 'b\n', 'Second')

        outcome = await controller.squash_commits('main', 'T1: add a and b', cwd=task_worktree)

        assert outcome.success
        assert git(task_worktree, 'rev-list', '--count', 'main..HEAD') == '1'
        assert git(task_worktree, 'log', '-1', '--format=%s') == 'T1: add a and b'
        assert (task_worktree / 'a.txt').exists() and (task_worktree / 'b.txt').exists()

    @pytest.mark.asyncio
    async def test_nothing_to_squash(self, controller, task_worktree):
        head = git(task_worktree, 'rev-parse', 'HEAD')
        outcome = await controller.squash_commits('main', 'noop', cwd=task_worktree)

        assert outcome.success
        assert git(task_worktree, 'rev-parse', 'HEAD') == head

    @pytest.mark.asyncio
    async def test_staged_changes_refused(self, controller, task_worktree):
        commit_file(task_worktree, 'a.txt', 'a\n', 'First')
        head = commit_file(task_worktree, 'b.txt', 'b\n', 'Second')
        (task_worktree / 'stray.txt').write_text('not part of the task\n')
        git(task_worktree, 'add', 'stray.txt')

        outcome = await controller.squash_commits('main', 'squashed', cwd=task_worktree)

        assert not outcome.success
        assert 'Staged changes' in outcome.error
        assert git(task_worktree, 'rev-parse', 'HEAD') == head
        assert git(task_worktree, 'diff', '--cached', '--name-only') == 'stray.txt'

    @pytest.mark.asyncio
    async def test_commit_failure_restores_head(self, controller, task_worktree, git_repo):
        """A rejected commit puts HEAD back on the original commit."""
        commit_file(task_worktree, 'a.txt', 'a\n', 'First')
        head = commit_file(task_worktree, 'b.txt', 'b\n', 'Second')

        hooks = Path(git(git_repo, 'rev-parse', '--git-common-dir'))
        if not hooks.is_absolute():
            hooks = git_repo / hooks
        hook = hooks / 'hooks' / 'pre-commit'
        hook.parent.mkdir(parents=True, exist_ok=True)
        hook.write_text('#!/bin/sh\necho "rejected by hook" >&2\nexit 1\n')
        hook.chmod(0o755)

        outcome = await controller.squash_commits('main', 'squashed', cwd=task_worktree)

        assert not outcome.success
        assert 'Commit failed' in outcome.error
        assert git(task_worktree, 'rev-parse', 'HEAD') == head
        assert git(task_worktree, 'status', '--porcelain') == ''
