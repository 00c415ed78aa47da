"""
Subprocess helpers shared by the git, build and service collaborators.

All external tools are executed directly with argument vectors, never through
a shell, and their output is captured so failures can be reported.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

from selfupdate.errors import CommandError, UnavailableError
from selfupdate.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 300.0


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a finished command.

    Attributes:
        args: The argument vector that was executed.
        returncode: Process exit status.
        stdout: Decoded standard output.
        stderr: Decoded standard error.
    """

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        """Whether the command exited with status 0."""
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined output, stderr first since tools report errors there."""
        return "\n".join(part for part in (self.stderr.strip(), self.stdout.strip()) if part)

    def check(self) -> CommandResult:
        """
        Raise if the command failed.

        Returns:
            The result itself, for chaining.

        Raises:
            CommandError: If the return code is non-zero.
        """
        if not self.ok:
            raise CommandError(
                f"Command failed with status {self.returncode}: {' '.join(self.args)}",
                details={
                    "command": " ".join(self.args),
                    "returncode": self.returncode,
                    "output": self.output,
                },
            )
        return self


async def run_command(
    *args: str,
    cwd: Path | str | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> CommandResult:
    """
    Run a command asynchronously and capture its output.

    A non-zero exit status is not an error here; callers decide what a
    failure means for their stage.

    Args:
        *args: Command and arguments.
        cwd: Working directory for the command.
        timeout: Command timeout in seconds.

    Returns:
        CommandResult with return code and decoded output.

    Raises:
        UnavailableError: If the command times out or cannot be executed.
    """
    command = " ".join(args)
    logger.debug("Running command", extra={"command": command, "cwd": str(cwd or ".")})

    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise UnavailableError(
            f"Failed to execute command: {e}",
            details={"command": command, "error": str(e)},
        ) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError as e:
        process.kill()
        await process.wait()
        raise UnavailableError(
            f"Command timed out after {timeout}s",
            details={"command": command},
        ) from e

    result = CommandResult(
        args=tuple(args),
        returncode=process.returncode or 0,
        stdout=stdout.decode("utf-8", errors="replace") if stdout else "",
        stderr=stderr.decode("utf-8", errors="replace") if stderr else "",
    )

    logger.debug(
        "Command finished",
        extra={"command": command, "returncode": result.returncode},
    )
    return result
