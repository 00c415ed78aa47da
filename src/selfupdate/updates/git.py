"""
Git implementation of the SourceControl interface.

Runs the git CLI inside the service checkout:

- current revision: ``git rev-parse HEAD``
- sync: ``git fetch <remote>`` then ``git rebase <remote>/<branch>``
- conflict recovery: ``git rebase --abort``
- rollback: ``git reset --hard <revision>``
"""

from __future__ import annotations

from pathlib import Path

from selfupdate.errors import CommandError, RollbackError, UnavailableError
from selfupdate.logging import get_logger
from selfupdate.process_utils import CommandResult, run_command
from selfupdate.updates.backends import SourceControl
from selfupdate.updates.operations import file_digest

logger = get_logger(__name__)

GIT_TIMEOUT_SECONDS = 120.0


class GitSourceControl(SourceControl):
    """
    SourceControl backed by a git working tree.

    Attributes:
        repo_path: Repository root.
        remote: Remote to fetch from.
        branch: Remote branch to rebase onto.
        lock_file: Dependency lock file relative to the repository root.
    """

    def __init__(
        self,
        repo_path: Path | str,
        remote: str = "origin",
        branch: str = "main",
        lock_file: str = "mix.lock",
        timeout: float = GIT_TIMEOUT_SECONDS,
    ) -> None:
        self.repo_path = Path(repo_path)
        self.remote = remote
        self.branch = branch
        self.lock_file = lock_file
        self._timeout = timeout

    @property
    def upstream(self) -> str:
        """Remote reference the checkout is rebased onto."""
        return f"{self.remote}/{self.branch}"

    async def _git(self, *args: str) -> CommandResult:
        return await run_command(
            "git", *args, cwd=self.repo_path, timeout=self._timeout
        )

    async def current_revision(self) -> str:
        result = (await self._git("rev-parse", "HEAD")).check()
        return result.stdout.strip()

    async def lock_digest(self) -> str:
        return file_digest(self.repo_path / self.lock_file)

    async def fetch(self) -> None:
        (await self._git("fetch", self.remote)).check()

    async def rebase(self) -> bool:
        result = await self._git("rebase", self.upstream)
        if not result.ok:
            logger.warning(
                f"Rebase onto {self.upstream} failed",
                extra={"upstream": self.upstream, "output": result.output},
            )
        return result.ok

    async def abort_rebase(self) -> None:
        (await self._git("rebase", "--abort")).check()

    async def reset_hard(self, revision: str) -> None:
        try:
            (await self._git("reset", "--hard", revision)).check()
        except (CommandError, UnavailableError) as e:
            raise RollbackError(
                f"Failed to reset source tree to {revision}: {e.message}",
                details={"revision": revision, **e.details},
            ) from e
