"""
Runtime settings read from the environment.

A ``.env`` file in the working directory is loaded first (python-dotenv), so
local overrides do not need to be exported in the shell.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
import logging
import os

from dotenv import find_dotenv, load_dotenv

from taskweave.parallel.git_gateway import DEFAULT_TIMEOUT, GitGateway

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class Settings:
    """
    Engine settings.

    Attributes:
        repo_path: Repository worktrees and branches are created in
        target_branch: Integration branch (None means the detected default branch)
        git_timeout: Default timeout in seconds for each git command
        phase_id: Phase identifier used in task branch names
        log_level: Logging level name
    """
    repo_path: Path = Path(".")
    target_branch: Optional[str] = None
    git_timeout: float = DEFAULT_TIMEOUT
    phase_id: str = "phase-1"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, dotenv: bool = True) -> "Settings":
        """
        Build settings from TASKWEAVE_* environment variables.

        Raises:
            ValueError: If TASKWEAVE_GIT_TIMEOUT is not a positive number
        """
        if dotenv and environ is None:
            load_dotenv(find_dotenv(usecwd=True))
        env = os.environ if environ is None else environ

        raw_timeout = env.get("TASKWEAVE_GIT_TIMEOUT", "").strip()
        timeout = DEFAULT_TIMEOUT
        if raw_timeout:
            try:
                timeout = float(raw_timeout)
            except ValueError:
                raise ValueError(f"TASKWEAVE_GIT_TIMEOUT must be a number of seconds, got {raw_timeout!r}")
            if timeout <= 0:
                raise ValueError(f"TASKWEAVE_GIT_TIMEOUT must be positive, got {raw_timeout!r}")

        return cls(
            repo_path=Path(env.get("TASKWEAVE_REPO_PATH") or "."),
            target_branch=env.get("TASKWEAVE_TARGET_BRANCH") or None,
            git_timeout=timeout,
            phase_id=env.get("TASKWEAVE_PHASE_ID") or "phase-1",
            log_level=(env.get("TASKWEAVE_LOG_LEVEL") or "INFO").upper(),
        )

    def make_gateway(self) -> GitGateway:
        return GitGateway(self.repo_path, timeout=self.git_timeout)

    async def resolve_target_branch(self, gateway: GitGateway) -> str:
        """Configured target branch, or the repository's default branch."""
        if self.target_branch:
            return self.target_branch
        return await gateway.get_default_branch()


def configure_logging(level: str = "INFO") -> None:
    """Install a root handler for command line use."""
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level}")
    logging.basicConfig(level=numeric, format=LOG_FORMAT)
