"""
Git Gateway
===========

Runs git commands against a repository with a timeout and a uniform result
contract. Every other component in taskweave.parallel receives a GitGateway
instance explicitly; there is no module level runner.

Key Features:
- Async subprocess execution with per-call timeout (process killed on expiry)
- Stable output: no pager, C locale, no terminal prompts
- GitResult for callers that inspect failures, GitCommandError for the rest
- A per-repository lock serializing ref and worktree registry mutations
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional
import asyncio
import logging
import os

from taskweave.errors import GitCommandError, GitTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


@dataclass
class GitResult:
    """
    Result of a git invocation.

    Attributes:
        args: Arguments passed after ``git``
        returncode: Process exit status
        stdout: Decoded standard output (not stripped)
        stderr: Decoded standard error (not stripped)
        cwd: Directory the command ran in
    """
    args: List[str]
    returncode: int
    stdout: str
    stderr: str
    cwd: str

    @property
    def success(self) -> bool:
        return self.returncode == 0

    def lines(self) -> List[str]:
        """Non-empty stdout lines."""
        return [line.strip() for line in self.stdout.splitlines() if line.strip()]


class GitGateway:
    """
    Executes git commands for one repository.

    Read-only queries may run concurrently. Commands that update refs or the
    worktree registry must run inside ``mutation_lock()``.
    """

    def __init__(self, repo_path: str | Path, timeout: float = DEFAULT_TIMEOUT):
        """
        Initialize the gateway.

        Args:
            repo_path: Repository (or worktree) the commands default to
            timeout: Default timeout in seconds for each command
        """
        self.repo_path = Path(repo_path)
        self.timeout = timeout
        self._mutation_lock: Optional[asyncio.Lock] = None
        logger.debug(f"GitGateway initialized for {self.repo_path} (timeout={timeout}s)")

    @asynccontextmanager
    async def mutation_lock(self) -> AsyncIterator[None]:
        """Hold the repository-wide lock for ref/worktree registry updates."""
        # Created lazily so the lock binds to the running event loop
        if self._mutation_lock is None:
            self._mutation_lock = asyncio.Lock()
        async with self._mutation_lock:
            yield

    async def run(
        self,
        args: List[str],
        cwd: Optional[str | Path] = None,
        timeout: Optional[float] = None,
        check: bool = True,
        env: Optional[Dict[str, str]] = None
    ) -> GitResult:
        """
        Run a git command asynchronously.

        Args:
            args: Git command arguments (e.g., ['status', '--porcelain'])
            cwd: Working directory (defaults to repo_path)
            timeout: Timeout in seconds (defaults to the gateway timeout)
            check: Raise GitCommandError on non-zero exit
            env: Extra environment variables

        Returns:
            GitResult with exit status and decoded output

        Raises:
            GitTimeoutError: If the command exceeds its timeout
            GitCommandError: If git cannot be run, or exits non-zero with check=True
        """
        workdir = str(cwd if cwd is not None else self.repo_path)
        limit = self.timeout if timeout is None else timeout

        git_env = dict(os.environ)
        if env:
            git_env.update(env)
        git_env.update({
            "GIT_PAGER": "",
            "LC_ALL": "C",
            "GIT_TERMINAL_PROMPT": "0",
        })

        cmd = ["git"] + list(args)
        logger.debug(f"Running git command: {' '.join(cmd)} in {workdir}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=workdir,
                env=git_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError as e:
            # Raised for a missing git binary and for a missing cwd
            reason = "Git command not found. Is git installed?"
            if not Path(workdir).is_dir():
                reason = f"Working directory does not exist: {workdir}"
            raise GitCommandError(list(args), -1, reason, workdir) from e
        except OSError as e:
            raise GitCommandError(list(args), -1, f"Failed to run git command: {e}", workdir) from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=limit)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning(f"Git command timed out after {limit}s: {' '.join(cmd)}")
            raise GitTimeoutError(list(args), limit, workdir)

        result = GitResult(
            args=list(args),
            returncode=process.returncode,
            stdout=stdout.decode('utf-8', errors='replace'),
            stderr=stderr.decode('utf-8', errors='replace'),
            cwd=workdir
        )

        if not result.success:
            logger.debug(f"Git command exited {result.returncode}: {result.stderr.strip()}")
            if check:
                raise GitCommandError(result.args, result.returncode, result.stderr, workdir)

        return result

    async def output(self, args: List[str], cwd: Optional[str | Path] = None, **kwargs) -> str:
        """Run a command and return its stripped stdout."""
        result = await self.run(args, cwd=cwd, **kwargs)
        return result.stdout.strip()

    async def get_repo_root(self, cwd: Optional[str | Path] = None) -> str:
        """Absolute path of the repository (or worktree) top level."""
        return await self.output(['rev-parse', '--show-toplevel'], cwd=cwd)

    async def is_git_repo(self, cwd: Optional[str | Path] = None) -> bool:
        """Check whether cwd is inside a git work tree."""
        try:
            result = await self.run(['rev-parse', '--is-inside-work-tree'], cwd=cwd, check=False)
        except GitCommandError:
            return False
        return result.success and result.stdout.strip() == 'true'

    async def get_head_sha(self, cwd: Optional[str | Path] = None, short: bool = False) -> str:
        """Current HEAD commit SHA."""
        args = ['rev-parse', '--short', 'HEAD'] if short else ['rev-parse', 'HEAD']
        return await self.output(args, cwd=cwd)

    async def get_default_branch(self, cwd: Optional[str | Path] = None) -> str:
        """
        Detect the default branch name.

        Uses the remote HEAD when one is configured, otherwise falls back to
        a local 'main', then 'master'.
        """
        result = await self.run(
            ['symbolic-ref', '--short', 'refs/remotes/origin/HEAD'],
            cwd=cwd,
            check=False,
            timeout=10
        )
        if result.success and result.stdout.strip():
            # Output format: origin/main
            branch = result.stdout.strip().split('/', 1)[-1]
            logger.debug(f"Detected default branch from remote: {branch}")
            return branch

        for candidate in ('main', 'master'):
            check = await self.run(
                ['show-ref', '--verify', '--quiet', f'refs/heads/{candidate}'],
                cwd=cwd,
                check=False,
                timeout=10
            )
            if check.success:
                logger.debug(f"Using '{candidate}' as default branch")
                return candidate

        return 'main'
