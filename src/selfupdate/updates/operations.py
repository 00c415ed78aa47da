"""
Filesystem helpers for the updater.

- Lock file fingerprinting for the dependency check
- Repository root validation
"""

from __future__ import annotations

import hashlib
from pathlib import Path

from selfupdate.errors import FailedPreconditionError
from selfupdate.logging import get_logger

logger = get_logger(__name__)

# Digest reported when the lock file does not exist
NO_LOCK_DIGEST = "none"

_CHUNK_SIZE = 64 * 1024


def file_digest(path: Path | str) -> str:
    """
    Compute the MD5 hex digest of a file.

    MD5 is only used to detect content changes, not for integrity.

    Args:
        path: File to fingerprint.

    Returns:
        Hex digest, or NO_LOCK_DIGEST if the file does not exist.

    Raises:
        FailedPreconditionError: If the file exists but cannot be read.
    """
    path = Path(path)
    if not path.is_file():
        return NO_LOCK_DIGEST

    digest = hashlib.md5(usedforsecurity=False)
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
                digest.update(chunk)
    except OSError as e:
        raise FailedPreconditionError(
            f"Failed to read {path}: {e}",
            details={"path": str(path), "error": str(e)},
        ) from e
    return digest.hexdigest()


def resolve_repo_root(path: Path | str) -> Path:
    """
    Resolve and validate the repository root.

    Args:
        path: Candidate repository root.

    Returns:
        Absolute path of the repository root.

    Raises:
        FailedPreconditionError: If the path is not a git checkout.
    """
    root = Path(path).expanduser().resolve()

    if not root.is_dir():
        raise FailedPreconditionError(
            f"Repository path does not exist: {root}",
            details={"path": str(root)},
        )

    # .git is a file in worktrees and submodules
    if not (root / ".git").exists():
        raise FailedPreconditionError(
            f"Not a git checkout: {root}",
            details={"path": str(root), "hint": "Point --repo at the service checkout"},
        )

    return root
