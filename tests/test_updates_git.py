"""
Tests for the git SourceControl implementation.

Tests cover:
- Command construction for each operation
- Rebase conflicts reported as False
- Rollback failures mapped to RollbackError
- A real repository round trip (integration)
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from selfupdate.errors import CommandError, RollbackError, UnavailableError
from selfupdate.process_utils import CommandResult
from selfupdate.updates.git import GitSourceControl
from selfupdate.updates.operations import NO_LOCK_DIGEST


def _result(*args: str, returncode: int = 0, stdout: str = "", stderr: str = "") -> CommandResult:
    return CommandResult(("git", *args), returncode, stdout, stderr)


@pytest.fixture
def git(tmp_path: Path) -> GitSourceControl:
    return GitSourceControl(tmp_path, remote="origin", branch="main")


# =============================================================================
# Mocked git Tests
# =============================================================================


class TestGitSourceControl:
    """Tests for GitSourceControl with run_command mocked."""

    def test_upstream(self, git: GitSourceControl) -> None:
        """Test upstream combines remote and branch."""
        assert git.upstream == "origin/main"
        assert GitSourceControl(".", remote="gh", branch="prod").upstream == "gh/prod"

    @pytest.mark.asyncio
    async def test_current_revision(self, git: GitSourceControl, tmp_path: Path) -> None:
        """Test current_revision runs rev-parse HEAD and strips output."""
        mock_run = AsyncMock(return_value=_result("rev-parse", "HEAD", stdout="4f2c9e1\n"))

        with patch("selfupdate.updates.git.run_command", mock_run):
            assert await git.current_revision() == "4f2c9e1"

        mock_run.assert_awaited_once()
        assert mock_run.call_args.args == ("git", "rev-parse", "HEAD")
        assert mock_run.call_args.kwargs["cwd"] == tmp_path

    @pytest.mark.asyncio
    async def test_current_revision_failure(self, git: GitSourceControl) -> None:
        """Test a failing rev-parse raises CommandError."""
        mock_run = AsyncMock(return_value=_result("rev-parse", "HEAD", returncode=128))

        with patch("selfupdate.updates.git.run_command", mock_run):
            with pytest.raises(CommandError):
                await git.current_revision()

    @pytest.mark.asyncio
    async def test_fetch(self, git: GitSourceControl) -> None:
        """Test fetch runs git fetch against the remote."""
        mock_run = AsyncMock(return_value=_result("fetch", "origin"))

        with patch("selfupdate.updates.git.run_command", mock_run):
            await git.fetch()

        assert mock_run.call_args.args == ("git", "fetch", "origin")

    @pytest.mark.asyncio
    async def test_fetch_failure(self, git: GitSourceControl) -> None:
        """Test a failing fetch raises CommandError."""
        mock_run = AsyncMock(
            return_value=_result("fetch", "origin", returncode=128, stderr="Could not resolve host")
        )

        with patch("selfupdate.updates.git.run_command", mock_run):
            with pytest.raises(CommandError) as exc_info:
                await git.fetch()

        assert "Could not resolve host" in exc_info.value.details["output"]

    @pytest.mark.asyncio
    async def test_rebase_clean(self, git: GitSourceControl) -> None:
        """Test a clean rebase returns True."""
        mock_run = AsyncMock(return_value=_result("rebase", "origin/main"))

        with patch("selfupdate.updates.git.run_command", mock_run):
            assert await git.rebase() is True

        assert mock_run.call_args.args == ("git", "rebase", "origin/main")

    @pytest.mark.asyncio
    async def test_rebase_conflict(self, git: GitSourceControl) -> None:
        """Test a conflicting rebase returns False instead of raising."""
        mock_run = AsyncMock(
            return_value=_result("rebase", "origin/main", returncode=1, stdout="CONFLICT")
        )

        with patch("selfupdate.updates.git.run_command", mock_run):
            assert await git.rebase() is False

    @pytest.mark.asyncio
    async def test_abort_rebase(self, git: GitSourceControl) -> None:
        """Test abort_rebase runs git rebase --abort."""
        mock_run = AsyncMock(return_value=_result("rebase", "--abort"))

        with patch("selfupdate.updates.git.run_command", mock_run):
            await git.abort_rebase()

        assert mock_run.call_args.args == ("git", "rebase", "--abort")

    @pytest.mark.asyncio
    async def test_reset_hard(self, git: GitSourceControl) -> None:
        """Test reset_hard runs git reset --hard to the revision."""
        mock_run = AsyncMock(return_value=_result("reset", "--hard", "abc123"))

        with patch("selfupdate.updates.git.run_command", mock_run):
            await git.reset_hard("abc123")

        assert mock_run.call_args.args == ("git", "reset", "--hard", "abc123")

    @pytest.mark.asyncio
    async def test_reset_hard_failure(self, git: GitSourceControl) -> None:
        """Test a failing reset raises RollbackError."""
        mock_run = AsyncMock(return_value=_result("reset", "--hard", "abc123", returncode=128))

        with patch("selfupdate.updates.git.run_command", mock_run):
            with pytest.raises(RollbackError) as exc_info:
                await git.reset_hard("abc123")

        assert exc_info.value.details["revision"] == "abc123"
        assert exc_info.value.details["returncode"] == 128

    @pytest.mark.asyncio
    async def test_reset_hard_unavailable(self, git: GitSourceControl) -> None:
        """Test a git launch failure during reset raises RollbackError."""
        mock_run = AsyncMock(side_effect=UnavailableError("Failed to execute command"))

        with patch("selfupdate.updates.git.run_command", mock_run):
            with pytest.raises(RollbackError):
                await git.reset_hard("abc123")

    @pytest.mark.asyncio
    async def test_lock_digest_missing(self, git: GitSourceControl) -> None:
        """Test a missing lock file gives the sentinel digest."""
        assert await git.lock_digest() == NO_LOCK_DIGEST

    @pytest.mark.asyncio
    async def test_lock_digest_present(self, git: GitSourceControl, tmp_path: Path) -> None:
        """Test the lock digest follows the lock file contents."""
        (tmp_path / "mix.lock").write_text("one")
        first = await git.lock_digest()
        (tmp_path / "mix.lock").write_text("two")

        assert first != NO_LOCK_DIGEST
        assert await git.lock_digest() != first


# =============================================================================
# Real git Tests
# =============================================================================


def _git(cwd: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    ).stdout.strip()


def _commit(repo: Path, name: str, content: str, message: str) -> str:
    (repo / name).write_text(content)
    _git(repo, "add", name)
    _git(repo, "commit", "-q", "-m", message)
    return _git(repo, "rev-parse", "HEAD")


def _clone(origin: Path, dest: Path) -> Path:
    subprocess.run(
        ["git", "clone", "-q", str(origin), str(dest)], check=True, capture_output=True
    )
    _git(dest, "config", "user.email", "deploy@example.com")
    _git(dest, "config", "user.name", "Deploy")
    return dest


@pytest.fixture
def origin(tmp_path: Path) -> Path:
    repo = tmp_path / "origin"
    repo.mkdir()
    _git(repo, "init", "-q", "-b", "main")
    _git(repo, "config", "user.email", "dev@example.com")
    _git(repo, "config", "user.name", "Dev")
    _commit(repo, "mix.lock", "deps v1\n", "initial")
    return repo


@pytest.mark.integration
@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
class TestGitIntegration:
    """Tests against real repositories."""

    @pytest.mark.asyncio
    async def test_fetch_and_rebase(self, origin: Path, tmp_path: Path) -> None:
        """Test a clean fetch and rebase moves to the remote revision."""
        checkout = _clone(origin, tmp_path / "checkout")
        git = GitSourceControl(checkout)
        before = await git.current_revision()
        lock_before = await git.lock_digest()

        new_head = _commit(origin, "mix.lock", "deps v2\n", "bump deps")

        await git.fetch()
        assert await git.rebase() is True
        assert await git.current_revision() == new_head
        assert await git.current_revision() != before
        assert await git.lock_digest() != lock_before

    @pytest.mark.asyncio
    async def test_conflict_and_abort(self, origin: Path, tmp_path: Path) -> None:
        """Test a conflicting rebase can be aborted back to the prior revision."""
        checkout = _clone(origin, tmp_path / "checkout")
        local_head = _commit(checkout, "mix.lock", "local edit\n", "local change")
        _commit(origin, "mix.lock", "remote edit\n", "remote change")

        git = GitSourceControl(checkout)
        await git.fetch()
        assert await git.rebase() is False

        await git.abort_rebase()
        assert await git.current_revision() == local_head
        assert (checkout / "mix.lock").read_text() == "local edit\n"

    @pytest.mark.asyncio
    async def test_reset_hard(self, origin: Path, tmp_path: Path) -> None:
        """Test reset_hard restores the prior revision."""
        checkout = _clone(origin, tmp_path / "checkout")
        git = GitSourceControl(checkout)
        prior = await git.current_revision()
        _commit(origin, "mix.lock", "deps v2\n", "bump")

        await git.fetch()
        await git.rebase()
        await git.reset_hard(prior)

        assert await git.current_revision() == prior
        assert (checkout / "mix.lock").read_text() == "deps v1\n"
