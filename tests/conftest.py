"""
Shared fixtures: real temporary git repositories.
"""

import shutil
import subprocess
import sys
import tempfile
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from taskweave.parallel.git_gateway import GitGateway


def git(cwd, *args):
    """Run git synchronously for test setup and return stdout."""
    result = subprocess.run(
        ['git', *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True
    )
    return result.stdout.strip()


def commit_file(cwd, name, content, message):
    """Write a file and commit it."""
    path = Path(cwd) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    git(cwd, 'add', name)
    git(cwd, 'commit', '-m', message)
    return git(cwd, 'rev-parse', 'HEAD')


@pytest.fixture
def git_repo():
    """Create a temporary repository on branch 'main' with one commit."""
    temp_dir = tempfile.mkdtemp(prefix='taskweave_test_')
    repo_path = Path(temp_dir) / 'repo'
    repo_path.mkdir()

    git(repo_path, 'init')
    git(repo_path, 'symbolic-ref', 'HEAD', 'refs/heads/main')
    git(repo_path, 'config', 'user.name', 'Test User')
    git(repo_path, 'config', 'user.email', 'test@example.com')
    git(repo_path, 'config', 'commit.gpgsign', 'false')

    commit_file(repo_path, 'README.md', '# Test Project\n', 'Initial commit')

    yield repo_path

    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def gateway(git_repo):
    """Gateway bound to the temporary repository."""
    return GitGateway(git_repo, timeout=30)
