"""
Pytest configuration and shared fakes for the selfupdate tests.

The fakes implement the collaborator interfaces in memory and append every
call to a shared list so tests can assert on ordering.
"""

from __future__ import annotations

import logging

import pytest

from selfupdate.errors import RollbackError, UpdateError
from selfupdate.updates.backends import BuildSystem, ServiceManager, SourceControl

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


@pytest.fixture(autouse=True)
def _cleanup_loggers() -> None:
    """Drop handlers installed by setup_logging() during a test."""
    yield
    logging.getLogger("selfupdate").handlers.clear()


# =============================================================================
# Fakes
# =============================================================================


class FakeSourceControl(SourceControl):
    """In-memory checkout that moves to remote_revision on a clean rebase."""

    def __init__(
        self,
        calls: list[str],
        revision: str = "A",
        remote_revision: str = "B",
        lock: str = "lock-1",
        remote_lock: str | None = None,
        conflict: bool = False,
        reset_fails: bool = False,
    ) -> None:
        self.calls = calls
        self.revision = revision
        self.remote_revision = remote_revision
        self.lock = lock
        self.remote_lock = remote_lock if remote_lock is not None else lock
        self.conflict = conflict
        self.reset_fails = reset_fails

    @property
    def upstream(self) -> str:
        return "origin/main"

    async def current_revision(self) -> str:
        return self.revision

    async def lock_digest(self) -> str:
        return self.lock

    async def fetch(self) -> None:
        self.calls.append("fetch")

    async def rebase(self) -> bool:
        self.calls.append("rebase")
        if self.conflict:
            return False
        self.revision = self.remote_revision
        self.lock = self.remote_lock
        return True

    async def abort_rebase(self) -> None:
        self.calls.append("abort_rebase")

    async def reset_hard(self, revision: str) -> None:
        self.calls.append(f"reset_hard:{revision}")
        if self.reset_fails:
            raise RollbackError("reset failed", details={"revision": revision})
        self.revision = revision


class FakeBuildSystem(BuildSystem):
    """Build tool whose stages raise the errors given in fail_on."""

    def __init__(
        self,
        calls: list[str],
        fail_on: dict[str, UpdateError] | None = None,
    ) -> None:
        self.calls = calls
        self.fail_on = fail_on or {}
        self.marked: list[str] = []

    def _stage(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_on:
            raise self.fail_on[name]

    async def fetch_dependencies(self) -> None:
        self._stage("fetch_dependencies")

    async def compile(self) -> None:
        self._stage("compile")

    async def migrate(self) -> None:
        self._stage("migrate")

    async def mark_updating(self, revision: str) -> None:
        self._stage("mark_updating")
        self.marked.append(revision)


class FakeServiceManager(ServiceManager):
    """Service whose port reports the queued states, then free."""

    def __init__(
        self,
        calls: list[str],
        port_states: list[bool] | None = None,
        fail_on: dict[str, UpdateError] | None = None,
    ) -> None:
        super().__init__(4000, restart_delay=0, port_poll_retries=3, port_poll_interval=0)
        self.calls = calls
        self.port_states = list(port_states or [])
        self.fail_on = fail_on or {}
        self.restart_scheduled = False

    def _stage(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_on:
            raise self.fail_on[name]

    async def stop(self) -> None:
        self._stage("stop")

    async def start(self) -> None:
        self._stage("start")

    def is_port_in_use(self) -> bool:
        self.calls.append("port_check")
        return self.port_states.pop(0) if self.port_states else False

    async def schedule_restart(self) -> None:
        self._stage("schedule_restart")
        self.restart_scheduled = True


@pytest.fixture
def calls() -> list[str]:
    """Shared call log for the fakes."""
    return []


@pytest.fixture
def fake_source(calls: list[str]) -> FakeSourceControl:
    return FakeSourceControl(calls)


@pytest.fixture
def fake_build(calls: list[str]) -> FakeBuildSystem:
    return FakeBuildSystem(calls)


@pytest.fixture
def fake_service(calls: list[str]) -> FakeServiceManager:
    return FakeServiceManager(calls)
