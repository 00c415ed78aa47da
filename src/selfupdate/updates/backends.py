"""
Collaborator interfaces for the updater.

The updater never shells out itself. It drives three collaborators:

- SourceControl: the service checkout (revision queries, fetch, rebase,
  abort, hard reset, lock file fingerprint)
- BuildSystem: dependency fetch, compile, migrations and the one-off
  "updating" mark
- ServiceManager: the running service (stop, start, port inspection) and the
  deferred restart

Concrete implementations live in git.py, build.py and systemd_restart.py;
tests substitute fakes.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

from selfupdate.errors import ServiceRestartError
from selfupdate.logging import get_logger

logger = get_logger(__name__)


class SourceControl(ABC):
    """
    Abstract base class for the source checkout.

    Revisions are opaque identifiers (commit SHAs for git).
    """

    @property
    @abstractmethod
    def upstream(self) -> str:
        """Human-readable name of the remote reference being tracked."""

    @abstractmethod
    async def current_revision(self) -> str:
        """Return the identifier of the checked-out revision."""

    @abstractmethod
    async def lock_digest(self) -> str:
        """
        Fingerprint the dependency lock file.

        Returns:
            Hex digest of the lock file, or NO_LOCK_DIGEST when it is absent.
        """

    @abstractmethod
    async def fetch(self) -> None:
        """
        Fetch the remote reference.

        Raises:
            CommandError: If the fetch fails.
        """

    @abstractmethod
    async def rebase(self) -> bool:
        """
        Replay local state onto the fetched remote reference.

        Returns:
            True on success, False if the rebase stopped on a conflict. A
            conflicted rebase is left in progress for abort_rebase().
        """

    @abstractmethod
    async def abort_rebase(self) -> None:
        """Abort an in-progress rebase, restoring the previous revision."""

    @abstractmethod
    async def reset_hard(self, revision: str) -> None:
        """
        Forcibly reset the working tree to a revision.

        Raises:
            RollbackError: If the reset fails.
        """


class BuildSystem(ABC):
    """Abstract base class for the service build tool."""

    @abstractmethod
    async def fetch_dependencies(self) -> None:
        """
        Fetch dependencies after the lock file changed.

        Raises:
            DependencyFetchError: If the fetch fails.
        """

    @abstractmethod
    async def compile(self) -> None:
        """
        Compile the source tree.

        Raises:
            BuildFailureError: If compilation fails.
        """

    @abstractmethod
    async def migrate(self) -> None:
        """
        Apply pending database migrations.

        Raises:
            MigrationError: If a migration fails.
        """

    @abstractmethod
    async def mark_updating(self, revision: str) -> None:
        """
        Record the new revision as "updating" in persistent service state.

        The service reads the mark back after restart to restore its context.
        """


class ServiceManager(ABC):
    """
    Abstract base class for the managed service.

    Subclasses provide stop/start, port inspection and the way the restart is
    launched. The deferred restart sequence itself is shared:

    1. wait restart_delay seconds so the caller can receive our output
    2. stop the service
    3. poll until the port is released (port_poll_retries x port_poll_interval)
    4. start the service
    """

    def __init__(
        self,
        port: int,
        restart_delay: float = 2.0,
        port_poll_retries: int = 30,
        port_poll_interval: float = 1.0,
    ) -> None:
        """
        Initialize the ServiceManager.

        Args:
            port: Port the service listens on.
            restart_delay: Seconds to wait before stopping the service.
            port_poll_retries: Number of port checks before giving up.
            port_poll_interval: Seconds between port checks.
        """
        self.port = port
        self.restart_delay = restart_delay
        self.port_poll_retries = port_poll_retries
        self.port_poll_interval = port_poll_interval

    @abstractmethod
    async def stop(self) -> None:
        """
        Stop the service.

        Raises:
            ServiceRestartError: If the service cannot be stopped.
        """

    @abstractmethod
    async def start(self) -> None:
        """
        Start the service.

        Raises:
            ServiceRestartError: If the service cannot be started.
        """

    @abstractmethod
    def is_port_in_use(self) -> bool:
        """Whether something is still listening on the service port."""

    @abstractmethod
    async def schedule_restart(self) -> None:
        """
        Launch restart_sequence() without waiting for it.

        Returns as soon as the restart is launched. The launched restart is
        intentionally unsupervised: the caller is usually a child of the
        service being restarted and will not be around to observe the outcome.

        Raises:
            ServiceRestartError: If the restart could not be launched.
        """

    async def wait_for_port_release(self) -> bool:
        """
        Poll until the service port is free.

        Returns:
            True once the port is released, False if it is still bound after
            port_poll_retries checks.
        """
        for attempt in range(1, self.port_poll_retries + 1):
            if not self.is_port_in_use():
                logger.debug(
                    f"Port {self.port} released",
                    extra={"port": self.port, "attempt": attempt},
                )
                return True
            logger.debug(
                f"Port {self.port} still in use ({attempt}/{self.port_poll_retries})",
                extra={"port": self.port, "attempt": attempt},
            )
            await asyncio.sleep(self.port_poll_interval)

        return not self.is_port_in_use()

    async def restart_sequence(self) -> bool:
        """
        Run the deferred stop/poll/start sequence.

        Returns:
            True if the service was started again, False otherwise.
        """
        if self.restart_delay > 0:
            logger.debug(f"Waiting {self.restart_delay}s before restart")
            await asyncio.sleep(self.restart_delay)

        try:
            await self.stop()
        except ServiceRestartError as e:
            logger.error(f"Restart aborted, could not stop service: {e}")
            return False

        if not await self.wait_for_port_release():
            # Starting anyway; the new instance reports the bind error itself.
            logger.warning(
                f"Port {self.port} still in use after "
                f"{self.port_poll_retries} checks, starting anyway",
                extra={"port": self.port},
            )

        try:
            await self.start()
        except ServiceRestartError as e:
            logger.error(f"Restart failed, could not start service: {e}")
            return False

        logger.info("Service restarted")
        return True
