"""
Command-driven implementation of the BuildSystem interface.

Each stage runs one configured command in the repository root. A non-zero
exit status is translated into the stage's error type so the updater can
tell a build failure (rolled back) from a migration failure (not rolled back).
"""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import TYPE_CHECKING

from selfupdate.errors import (
    BuildFailureError,
    CommandError,
    DependencyFetchError,
    FailedPreconditionError,
    MigrationError,
    UpdateError,
)
from selfupdate.logging import get_logger
from selfupdate.process_utils import run_command
from selfupdate.updates.backends import BuildSystem

if TYPE_CHECKING:
    from selfupdate.config import BuildConfig
    from selfupdate.state import DeploymentStateStore

logger = get_logger(__name__)

REVISION_PLACEHOLDER = "{revision}"


class CommandBuildSystem(BuildSystem):
    """
    BuildSystem that runs configured commands.

    Attributes:
        repo_path: Repository root, used as the working directory.
        deps_command: Argument vector fetching dependencies.
        compile_command: Argument vector compiling the source.
        migrate_command: Argument vector applying migrations.
        mark_command: Optional argument vector recording the new revision.
    """

    def __init__(
        self,
        repo_path: Path | str,
        deps_command: str = "mix deps.get",
        compile_command: str = "mix compile",
        migrate_command: str = "mix ecto.migrate",
        mark_command: str | None = None,
        state_store: DeploymentStateStore | None = None,
        timeout: float = 900.0,
    ) -> None:
        """
        Initialize the CommandBuildSystem.

        Args:
            repo_path: Repository root.
            deps_command: Command fetching dependencies.
            compile_command: Command compiling the source.
            migrate_command: Command applying migrations.
            mark_command: Command recording the new revision; every
                ``{revision}`` in its arguments is replaced. When None the
                mark is written to state_store.
            state_store: Deployment state store used without a mark command.
            timeout: Timeout for each command in seconds.
        """
        self.repo_path = Path(repo_path)
        self.deps_command = shlex.split(deps_command)
        self.compile_command = shlex.split(compile_command)
        self.migrate_command = shlex.split(migrate_command)
        self.mark_command = shlex.split(mark_command) if mark_command else None
        self._state_store = state_store
        self._timeout = timeout

    @classmethod
    def from_config(
        cls,
        repo_path: Path | str,
        config: BuildConfig,
        state_store: DeploymentStateStore | None = None,
    ) -> CommandBuildSystem:
        """Create a CommandBuildSystem from the build configuration section."""
        return cls(
            repo_path,
            deps_command=config.deps_command,
            compile_command=config.compile_command,
            migrate_command=config.migrate_command,
            mark_command=config.mark_command,
            state_store=state_store,
            timeout=config.command_timeout_seconds,
        )

    async def _run_stage(
        self,
        argv: list[str],
        stage: str,
        error_cls: type[UpdateError],
    ) -> None:
        """
        Run a stage command, raising error_cls on failure.

        Timeouts and missing executables are reported as the stage error too.
        """
        try:
            result = await run_command(*argv, cwd=self.repo_path, timeout=self._timeout)
            result.check()
        except UpdateError as e:
            logger.error(
                f"{stage} failed: {e.message}",
                extra={"stage": stage, "command": " ".join(argv)},
            )
            raise error_cls(
                f"{stage.capitalize()} failed: {e.message}",
                details={"stage": stage, **e.details},
            ) from e

        if result.stdout.strip():
            logger.debug(result.stdout.strip(), extra={"stage": stage})

    async def fetch_dependencies(self) -> None:
        await self._run_stage(self.deps_command, "dependency fetch", DependencyFetchError)

    async def compile(self) -> None:
        await self._run_stage(self.compile_command, "build", BuildFailureError)

    async def migrate(self) -> None:
        await self._run_stage(self.migrate_command, "migration", MigrationError)

    async def mark_updating(self, revision: str) -> None:
        """
        Record the new revision as updating.

        Raises:
            CommandError: If the mark command fails.
            FailedPreconditionError: If neither a mark command nor a state
                store is configured.
        """
        if self.mark_command:
            argv = [arg.replace(REVISION_PLACEHOLDER, revision) for arg in self.mark_command]
            await self._run_stage(argv, "mark", CommandError)
            return

        if self._state_store is None:
            raise FailedPreconditionError(
                "No way to record the updating mark",
                details={"hint": "Configure build.mark_command or state.db_path"},
            )

        await self._state_store.mark_updating(revision)
