"""
Systemd implementation of the ServiceManager interface.

The restart after an update is deferred and detached. The updater is usually
run by the service it restarts, so the restart has to outlive both the
updater and the service's control group:

- ``process`` mode starts ``python -m selfupdate restart`` as a transient
  systemd unit with ``systemd-run``; stopping the service does not kill it,
  and its output goes to the journal
- ``task`` mode schedules restart_sequence() on the running event loop
  without awaiting it, for embedders whose loop keeps running after the
  update returns; the CLI never uses it

Either way the outcome is never reported back to the updater.
"""

from __future__ import annotations

import asyncio
import socket
import sys
from collections.abc import Sequence

import psutil

from selfupdate.errors import ServiceRestartError, UnavailableError
from selfupdate.logging import get_logger
from selfupdate.process_utils import run_command
from selfupdate.updates.backends import ServiceManager

logger = get_logger(__name__)

DETACH_PROCESS = "process"
DETACH_TASK = "task"

RESTART_UNIT_SUFFIX = "-selfupdate-restart"

# Keeps un-awaited restart tasks referenced until they finish
_background_tasks: set[asyncio.Task[bool]] = set()


def _sudo_prefix(use_sudo: bool) -> tuple[str, ...]:
    return ("sudo", "-n") if use_sudo else ()


async def _run_systemctl(
    *args: str,
    use_sudo: bool = True,
    timeout: float = 30.0,
) -> tuple[int, str, str]:
    """
    Run a systemctl command.

    Args:
        *args: Arguments to pass to systemctl.
        use_sudo: Prefix the command with ``sudo -n``.
        timeout: Command timeout in seconds.

    Returns:
        Tuple of (return_code, stdout, stderr).

    Raises:
        UnavailableError: If systemctl is not available or times out.
    """
    result = await run_command(*_sudo_prefix(use_sudo), "systemctl", *args, timeout=timeout)
    return result.returncode, result.stdout, result.stderr


def is_port_listening(port: int) -> bool:
    """
    Check whether any local socket is listening on a TCP port.

    Uses psutil's connection table; falls back to a loopback connect check
    where the table is not readable without privileges.
    """
    try:
        for conn in psutil.net_connections(kind="tcp"):
            if conn.status == psutil.CONN_LISTEN and conn.laddr and conn.laddr.port == port:
                return True
        return False
    except psutil.AccessDenied:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(1.0)
            return sock.connect_ex(("127.0.0.1", port)) == 0


class SystemdServiceManager(ServiceManager):
    """
    Manages the service through systemctl.

    Attributes:
        service_name: systemd unit name.
        use_sudo: Whether systemctl and systemd-run are run through sudo.
        detach: Restart launch mode, 'process' or 'task'.
        restart_options: Extra ``selfupdate`` options forwarded to the
            detached restart (config file, log settings).
    """

    def __init__(
        self,
        service_name: str,
        port: int,
        use_sudo: bool = True,
        restart_delay: float = 2.0,
        port_poll_retries: int = 30,
        port_poll_interval: float = 1.0,
        detach: str = DETACH_PROCESS,
        restart_options: Sequence[str] = (),
    ) -> None:
        super().__init__(
            port,
            restart_delay=restart_delay,
            port_poll_retries=port_poll_retries,
            port_poll_interval=port_poll_interval,
        )
        self.service_name = service_name
        self.use_sudo = use_sudo
        self.detach = detach
        self.restart_options = list(restart_options)

    @property
    def restart_unit(self) -> str:
        """Name of the transient unit running the detached restart."""
        return f"{self.service_name}{RESTART_UNIT_SUFFIX}"

    async def _systemctl(self, action: str) -> None:
        logger.info(f"Running systemctl {action} {self.service_name}")
        try:
            returncode, stdout, stderr = await _run_systemctl(
                action, self.service_name, use_sudo=self.use_sudo
            )
        except UnavailableError as e:
            raise ServiceRestartError(
                f"Cannot {action} {self.service_name}: {e.message}",
                details={"service": self.service_name, **e.details},
            ) from e

        if returncode != 0:
            raise ServiceRestartError(
                f"Failed to {action} {self.service_name}: {(stderr or stdout).strip()}",
                details={"service": self.service_name, "returncode": returncode},
            )

    async def stop(self) -> None:
        await self._systemctl("stop")

    async def start(self) -> None:
        await self._systemctl("start")

    def is_port_in_use(self) -> bool:
        return is_port_listening(self.port)

    def restart_command(self) -> list[str]:
        """Argument vector that runs restart_sequence() in a fresh interpreter."""
        argv = [
            sys.executable,
            "-m",
            "selfupdate",
            *self.restart_options,
            "restart",
            "--service",
            self.service_name,
            "--port",
            str(self.port),
            "--delay",
            str(self.restart_delay),
            "--retries",
            str(self.port_poll_retries),
            "--interval",
            str(self.port_poll_interval),
        ]
        if not self.use_sudo:
            argv.append("--no-sudo")
        return argv

    def launch_command(self) -> list[str]:
        """Argument vector starting restart_command() as a transient unit."""
        return [
            *_sudo_prefix(self.use_sudo),
            "systemd-run",
            "--unit",
            self.restart_unit,
            "--collect",
            "--quiet",
            *self.restart_command(),
        ]

    async def schedule_restart(self) -> None:
        """
        Launch the deferred restart and return immediately.

        Raises:
            ServiceRestartError: If the restart could not be launched at all.
        """
        if self.detach == DETACH_TASK:
            task = asyncio.get_running_loop().create_task(self.restart_sequence())
            _background_tasks.add(task)
            task.add_done_callback(_background_tasks.discard)
            logger.info(
                f"Scheduled in-process restart of {self.service_name}",
                extra={"service": self.service_name, "port": self.port},
            )
            return

        argv = self.launch_command()
        try:
            result = await run_command(*argv, timeout=30.0)
        except UnavailableError as e:
            raise ServiceRestartError(
                f"Failed to launch restart of {self.service_name}: {e.message}",
                details={"service": self.service_name, "unit": self.restart_unit, **e.details},
            ) from e

        if not result.ok:
            raise ServiceRestartError(
                f"Failed to launch restart of {self.service_name}: {result.output}",
                details={
                    "service": self.service_name,
                    "unit": self.restart_unit,
                    "returncode": result.returncode,
                },
            )

        logger.info(
            f"Scheduled detached restart of {self.service_name} as {self.restart_unit}",
            extra={"service": self.service_name, "port": self.port, "unit": self.restart_unit},
        )
