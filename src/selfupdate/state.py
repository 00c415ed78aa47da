"""
SQLite storage for deployment state.

The updater records the revision it just deployed under the ``updating`` key
before restarting the service. After the restart the service calls
check_updating() to learn that it was updated, restores whatever context it
needs, then calls clear_updating().

SQLite Schema:
    CREATE TABLE deployment_state (
        key TEXT PRIMARY KEY,
        value TEXT,
        updated_at TEXT          -- ISO 8601, UTC, second precision
    );
"""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from selfupdate.errors import FailedPreconditionError
from selfupdate.logging import get_logger

logger = get_logger(__name__)

UPDATING_KEY = "updating"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS deployment_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at TEXT
);
"""


class DeploymentStateStore:
    """
    SQLite-backed key/value store for deployment state.

    Each operation opens its own connection, so the store can be shared by
    the updater process and the restarted service.

    Example:
        >>> store = DeploymentStateStore("/var/lib/selfupdate/deployment_state.db")
        >>> await store.mark_updating("4f2c9e1")
        >>> await store.check_updating()
        '4f2c9e1'
    """

    def __init__(self, db_path: str | Path, timeout: float = 5.0) -> None:
        """
        Initialize the DeploymentStateStore.

        Args:
            db_path: Path to the SQLite database file.
            timeout: Seconds to wait for a database lock.
        """
        self.db_path = Path(db_path)
        self._timeout = timeout
        self._initialized = False
        self._lock = asyncio.Lock()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        conn = sqlite3.connect(str(self.db_path), timeout=self._timeout)
        try:
            yield conn
        finally:
            conn.close()

    async def initialize(self) -> None:
        """
        Create the deployment_state table if needed.

        Raises:
            FailedPreconditionError: If the database cannot be initialized.
        """
        if self._initialized:
            return

        async with self._lock:
            if self._initialized:
                return

            def _init_db() -> None:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                with self._get_connection() as conn:
                    conn.executescript(SCHEMA_SQL)
                    conn.commit()

            try:
                await asyncio.get_running_loop().run_in_executor(None, _init_db)
            except (OSError, sqlite3.Error) as e:
                raise FailedPreconditionError(
                    f"Failed to initialize deployment state database: {e}",
                    details={"db_path": str(self.db_path)},
                ) from e

            self._initialized = True
            logger.debug(
                "Deployment state database initialized",
                extra={"db_path": str(self.db_path)},
            )

    async def mark_updating(self, revision: str) -> None:
        """
        Record that the service is being updated to a revision.

        Args:
            revision: The revision being deployed.

        Raises:
            FailedPreconditionError: If the write fails.
        """
        await self.initialize()
        now = datetime.now(UTC).replace(microsecond=0).isoformat()

        def _upsert() -> None:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO deployment_state (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT (key) DO UPDATE
                    SET value = excluded.value, updated_at = excluded.updated_at
                    """,
                    (UPDATING_KEY, revision, now),
                )
                conn.commit()

        try:
            await asyncio.get_running_loop().run_in_executor(None, _upsert)
        except sqlite3.Error as e:
            raise FailedPreconditionError(
                f"Failed to mark update: {e}",
                details={"db_path": str(self.db_path), "revision": revision},
            ) from e

        logger.info(
            f"Marked {revision} as updating",
            extra={"revision": revision, "db_path": str(self.db_path)},
        )

    async def check_updating(self) -> str | None:
        """
        Check whether the service just restarted after an update.

        Returns:
            The revision marked as updating, or None.
        """
        await self.initialize()

        def _select() -> str | None:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT value FROM deployment_state WHERE key = ?",
                    (UPDATING_KEY,),
                ).fetchone()
                return row[0] if row else None

        return await asyncio.get_running_loop().run_in_executor(None, _select)

    async def clear_updating(self) -> None:
        """Clear the updating mark once the service has acknowledged it."""
        await self.initialize()

        def _delete() -> None:
            with self._get_connection() as conn:
                conn.execute(
                    "DELETE FROM deployment_state WHERE key = ?", (UPDATING_KEY,)
                )
                conn.commit()

        await asyncio.get_running_loop().run_in_executor(None, _delete)
        logger.info("Cleared updating mark")

    async def db_healthy(self) -> bool:
        """
        Check that the database accepts queries.

        Returns:
            True if ``SELECT 1`` succeeds, False otherwise.
        """

        def _ping() -> None:
            with self._get_connection() as conn:
                conn.execute("SELECT 1").fetchone()

        try:
            await self.initialize()
            await asyncio.get_running_loop().run_in_executor(None, _ping)
        except (FailedPreconditionError, sqlite3.Error) as e:
            logger.warning(
                f"Deployment state database unhealthy: {e}",
                extra={"db_path": str(self.db_path)},
            )
            return False
        return True
