"""
Update state machine for selfupdate.

This module implements the Updater class that takes the service checkout from
its current revision to the tip of the remote branch and hands the service
over to a deferred restart.

State machine states:
- idle: Nothing started yet
- syncing: Fetching and rebasing onto the remote reference
- checking_deps: Comparing lock file fingerprints, fetching deps if changed
- building: Compiling the new revision
- rolling_back: Resetting the source tree after a failed build
- migrating: Applying database migrations
- marking: Recording the new revision as "updating"
- restarting: Launching the detached restart
- done: Update applied, restart scheduled
- up_to_date: Remote had nothing new
- failed: Update stopped; see the result for what was left behind

Only two failures have compensating actions: a rebase conflict aborts the
rebase, and a build failure resets the tree to the prior revision. Dependency
fetch and migration failures propagate as-is and leave the tree on the new
revision for an operator to resolve.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

from selfupdate.errors import (
    BuildFailureError,
    FailedPreconditionError,
    InvalidArgumentError,
    SyncConflictError,
    UpdateError,
)
from selfupdate.logging import get_logger
from selfupdate.updates.backends import BuildSystem, ServiceManager, SourceControl

logger = get_logger(__name__)


class UpdateState(str, Enum):
    """
    States for the update state machine.

    State transitions:
    - idle → syncing (run started) | failed (revision query failed)
    - syncing → checking_deps (new revision) | up_to_date | failed (conflict)
    - checking_deps → building | failed
    - building → migrating | rolling_back (build failed) | failed
    - rolling_back → failed
    - migrating → marking | failed
    - marking → restarting | failed
    - restarting → done | failed
    """

    IDLE = "idle"
    SYNCING = "syncing"
    CHECKING_DEPS = "checking_deps"
    BUILDING = "building"
    ROLLING_BACK = "rolling_back"
    MIGRATING = "migrating"
    MARKING = "marking"
    RESTARTING = "restarting"
    DONE = "done"
    UP_TO_DATE = "up_to_date"
    FAILED = "failed"


_VALID_TRANSITIONS: dict[UpdateState, set[UpdateState]] = {
    UpdateState.IDLE: {UpdateState.SYNCING, UpdateState.FAILED},
    UpdateState.SYNCING: {
        UpdateState.CHECKING_DEPS,
        UpdateState.UP_TO_DATE,
        UpdateState.FAILED,
    },
    UpdateState.CHECKING_DEPS: {UpdateState.BUILDING, UpdateState.FAILED},
    UpdateState.BUILDING: {
        UpdateState.MIGRATING,
        UpdateState.ROLLING_BACK,
        UpdateState.FAILED,
    },
    UpdateState.ROLLING_BACK: {UpdateState.FAILED},
    UpdateState.MIGRATING: {UpdateState.MARKING, UpdateState.FAILED},
    UpdateState.MARKING: {UpdateState.RESTARTING, UpdateState.FAILED},
    UpdateState.RESTARTING: {UpdateState.DONE, UpdateState.FAILED},
    UpdateState.DONE: set(),
    UpdateState.UP_TO_DATE: set(),
    UpdateState.FAILED: set(),
}


class UpdateStatus(str, Enum):
    """Outcome of an update run."""

    UPDATED = "updated"
    UP_TO_DATE = "up_to_date"
    SYNC_CONFLICT = "sync_conflict"
    BUILD_FAILED = "build_failed"
    FAILED = "failed"


class UpdateResult(BaseModel):
    """
    Outcome of Updater.run().

    The handled outcomes (updated, up_to_date, sync_conflict, build_failed)
    are returned; fail-fast errors are raised instead and only reach this
    model through Updater.result.
    """

    status: UpdateStatus = Field(
        default=UpdateStatus.FAILED,
        description="Outcome of the run",
    )
    old_revision: str | None = Field(
        default=None,
        description="Revision before the update (rollback target)",
    )
    new_revision: str | None = Field(
        default=None,
        description="Revision after a successful sync",
    )
    deps_fetched: bool = Field(
        default=False,
        description="Whether dependencies were fetched",
    )
    rolled_back: bool = Field(
        default=False,
        description="Whether the source tree was reset to old_revision",
    )
    restart_scheduled: bool = Field(
        default=False,
        description="Whether the deferred restart was launched",
    )
    failed_stage: str | None = Field(
        default=None,
        description="State the run was in when it failed",
    )
    message: str | None = Field(
        default=None,
        description="Human-readable outcome",
    )
    started_at: str | None = Field(
        default=None,
        description="ISO 8601 timestamp when the run started",
    )
    finished_at: str | None = Field(
        default=None,
        description="ISO 8601 timestamp when the run finished",
    )

    @property
    def exit_code(self) -> int:
        """Process exit status for this outcome."""
        if self.status in (UpdateStatus.UPDATED, UpdateStatus.UP_TO_DATE):
            return 0
        return 1

    @property
    def summary(self) -> str:
        """``old -> new`` revision summary."""
        return f"{self.old_revision} -> {self.new_revision}"


class Updater:
    """
    Runs one update of the service checkout.

    Each Updater instance runs at most once; create a new one per update.

    Attributes:
        state: Current state machine state.
        result: Result being built by the current run.
    """

    def __init__(
        self,
        source: SourceControl,
        build: BuildSystem,
        service: ServiceManager,
    ) -> None:
        """
        Initialize the Updater.

        Args:
            source: The service checkout.
            build: The service build tool.
            service: The running service.
        """
        self._source = source
        self._build = build
        self._service = service
        self._state = UpdateState.IDLE
        self._result = UpdateResult()
        self._progress_callbacks: list[Callable[[UpdateState, UpdateResult], None]] = []

    @property
    def state(self) -> UpdateState:
        """Get the current state."""
        return self._state

    @property
    def result(self) -> UpdateResult:
        """Get the result of the current or last run."""
        return self._result

    def add_progress_callback(
        self, callback: Callable[[UpdateState, UpdateResult], None]
    ) -> None:
        """Add a callback to be notified of state changes."""
        self._progress_callbacks.append(callback)

    def _notify_progress(self) -> None:
        for callback in self._progress_callbacks:
            try:
                callback(self._state, self._result)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    def _transition_to(self, new_state: UpdateState) -> None:
        """
        Transition to a new state.

        Raises:
            InvalidArgumentError: If the transition is not valid.
        """
        current = self._state

        if new_state not in _VALID_TRANSITIONS[current]:
            raise InvalidArgumentError(
                f"Invalid state transition from {current.value} to {new_state.value}",
                details={
                    "current_state": current.value,
                    "target_state": new_state.value,
                    "valid_transitions": sorted(
                        s.value for s in _VALID_TRANSITIONS[current]
                    ),
                },
            )

        logger.debug(
            f"State transition: {current.value} -> {new_state.value}",
            extra={"old_state": current.value, "new_state": new_state.value},
        )
        self._state = new_state
        self._notify_progress()

    def _finish(self, status: UpdateStatus, message: str) -> UpdateResult:
        self._result.status = status
        self._result.message = message
        self._result.finished_at = datetime.now(UTC).isoformat()
        return self._result

    def _fail(self, error: UpdateError) -> None:
        """Record a fail-fast error and move to the failed state."""
        self._result.failed_stage = self._state.value
        self._finish(UpdateStatus.FAILED, error.message)
        logger.error(
            f"Update failed during {self._result.failed_stage}: {error.message}",
            extra={"stage": self._result.failed_stage, "error_code": error.error_code},
        )
        if self._state != UpdateState.FAILED:
            self._transition_to(UpdateState.FAILED)

    async def run(self) -> UpdateResult:
        """
        Run the update from sync to restart.

        Returns:
            UpdateResult for the handled outcomes: updated, up_to_date,
            sync_conflict and build_failed.

        Raises:
            FailedPreconditionError: If this Updater has already run.
            RollbackError: If the tree could not be reset after a failed build.
            UpdateError: Any other stage failure (dependency fetch, migration,
                mark, restart launch, git errors), without rollback.
        """
        if self._state != UpdateState.IDLE:
            raise FailedPreconditionError(
                f"Cannot run update while in {self._state.value} state",
                details={"current_state": self._state.value},
            )

        self._result = UpdateResult(started_at=datetime.now(UTC).isoformat())

        try:
            prior = await self._source.current_revision()
            lock_before = await self._source.lock_digest()
        except UpdateError as e:
            self._fail(e)
            raise

        self._result.old_revision = prior
        logger.info(f"Current commit: {prior}", extra={"revision": prior})
        logger.info(f"Current lock hash: {lock_before}", extra={"lock_digest": lock_before})

        self._transition_to(UpdateState.SYNCING)
        try:
            target = await self._sync(prior)
            if target is None:
                return self._finish(
                    UpdateStatus.UP_TO_DATE, "Already up to date. Nothing to do."
                )

            self._transition_to(UpdateState.CHECKING_DEPS)
            await self._check_dependencies(lock_before)

            self._transition_to(UpdateState.BUILDING)
            logger.info("Compiling...")
            await self._build.compile()

            self._transition_to(UpdateState.MIGRATING)
            logger.info("Running migrations...")
            await self._build.migrate()

            self._transition_to(UpdateState.MARKING)
            logger.info("Marking update in database...")
            await self._build.mark_updating(target)

            self._transition_to(UpdateState.RESTARTING)
            logger.info("Restarting service...")
            await self._service.schedule_restart()
            self._result.restart_scheduled = True

            self._transition_to(UpdateState.DONE)
            logger.info(f"Update complete: {self._result.summary}")
            return self._finish(UpdateStatus.UPDATED, f"Updated {self._result.summary}")

        except SyncConflictError as e:
            self._result.failed_stage = UpdateState.SYNCING.value
            self._transition_to(UpdateState.FAILED)
            return self._finish(UpdateStatus.SYNC_CONFLICT, e.message)

        except BuildFailureError as e:
            self._result.failed_stage = UpdateState.BUILDING.value
            logger.error("Compilation failed!")
            await self._rollback(prior)
            self._transition_to(UpdateState.FAILED)
            return self._finish(
                UpdateStatus.BUILD_FAILED,
                f"{e.message}. Rolled back to {prior}; fix the code and try again.",
            )

        except UpdateError as e:
            self._fail(e)
            raise

    async def _sync(self, prior: str) -> str | None:
        """
        Fetch and rebase onto the upstream reference.

        Returns:
            The new revision, or None if nothing changed.

        Raises:
            SyncConflictError: If the rebase conflicted (and was aborted).
        """
        upstream = self._source.upstream
        logger.info(f"Fetching {upstream}...")
        await self._source.fetch()

        logger.info(f"Rebasing onto {upstream}...")
        if not await self._source.rebase():
            logger.error(
                "Rebase conflict detected! Aborting rebase and staying on current commit."
            )
            await self._source.abort_rebase()
            raise SyncConflictError(
                f"Rebase onto {upstream} conflicted; staying on {prior}",
                details={"stage": "sync", "upstream": upstream, "revision": prior},
            )

        target = await self._source.current_revision()
        if target == prior:
            logger.info("Already up to date. Nothing to do.")
            self._result.new_revision = prior
            self._transition_to(UpdateState.UP_TO_DATE)
            return None

        self._result.new_revision = target
        logger.info(
            f"Updated: {prior} -> {target}",
            extra={"old_revision": prior, "new_revision": target},
        )
        return target

    async def _check_dependencies(self, lock_before: str) -> None:
        """Fetch dependencies if the lock file fingerprint changed."""
        lock_after = await self._source.lock_digest()
        if lock_after == lock_before:
            logger.debug("Lock file unchanged, skipping dependency fetch")
            return

        logger.info(
            "Dependencies changed, fetching...",
            extra={"lock_before": lock_before, "lock_after": lock_after},
        )
        await self._build.fetch_dependencies()
        self._result.deps_fetched = True

    async def _rollback(self, prior: str) -> None:
        """
        Reset the source tree to the prior revision after a failed build.

        Raises:
            RollbackError: If the reset fails; the run is marked failed.
        """
        self._transition_to(UpdateState.ROLLING_BACK)
        logger.info(f"Rolling back to {prior}...")
        try:
            await self._source.reset_hard(prior)
        except UpdateError as e:
            self._fail(e)
            raise

        self._result.rolled_back = True
        logger.info("Rollback complete. Please fix the code and try again.")
