"""
Error types for selfupdate.

This module defines the UpdateError base class and subclasses for the failures
an update run can hit. Collaborators raise these instead of returning ad-hoc
status codes; the CLI maps any UpdateError to a non-zero exit status.

Taxonomy:
- SyncConflictError: rebase conflict, handled by aborting the rebase.
- BuildFailureError: compile failure, handled by resetting the source tree.
- DependencyFetchError / MigrationError: fail-fast, manual intervention.
- RollbackError: the hard reset after a failed build did not succeed.
"""

from __future__ import annotations

from typing import Any


class UpdateError(Exception):
    """
    Base exception class for update errors.

    Attributes:
        error_code: Internal error code string (e.g., "sync_conflict",
            "build_failed", "unavailable", "internal").
        message: Human-readable error message.
        details: Optional structured details (e.g., command, stage, output).

    Example:
        >>> raise UpdateError(
        ...     error_code="build_failed",
        ...     message="mix compile exited with status 1",
        ...     details={"stage": "build"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize an UpdateError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(UpdateError):
    """Error raised for invalid input, such as a bad state transition."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class FailedPreconditionError(UpdateError):
    """
    Error raised when a precondition for the operation is not met.

    Used when the repository path is missing or the updater is asked to run
    while already in progress.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class UnavailableError(UpdateError):
    """
    Error raised when an external tool cannot be executed.

    Covers missing executables and commands that exceed their timeout.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnavailableError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class InternalError(UpdateError):
    """Error raised for unexpected internal errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code="internal", message=message, details=details)


class CommandError(UpdateError):
    """
    Error raised when an external command exits with a non-zero status.

    The command, return code and captured output are kept in details.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a CommandError."""
        super().__init__(error_code="command_failed", message=message, details=details)


class SyncConflictError(UpdateError):
    """Error raised when replaying local commits onto the remote conflicts."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a SyncConflictError."""
        super().__init__(error_code="sync_conflict", message=message, details=details)


class BuildFailureError(UpdateError):
    """Error raised when compiling the updated source fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a BuildFailureError."""
        super().__init__(error_code="build_failed", message=message, details=details)


class DependencyFetchError(UpdateError):
    """Error raised when fetching changed dependencies fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a DependencyFetchError."""
        super().__init__(
            error_code="dependency_fetch_failed", message=message, details=details
        )


class MigrationError(UpdateError):
    """
    Error raised when applying database migrations fails.

    There is no rollback for this stage: the source tree stays on the new
    revision and the old service keeps running until an operator intervenes.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a MigrationError."""
        super().__init__(
            error_code="migration_failed", message=message, details=details
        )


class RollbackError(UpdateError):
    """Error raised when resetting the source tree to the prior revision fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a RollbackError."""
        super().__init__(error_code="rollback_failed", message=message, details=details)


class ServiceRestartError(UpdateError):
    """Error raised when the restart sequence cannot stop or start the service."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ServiceRestartError."""
        super().__init__(error_code="restart_failed", message=message, details=details)
