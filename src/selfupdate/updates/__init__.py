"""
Self-update machinery for a git-deployed service.

- Collaborator interfaces (SourceControl, BuildSystem, ServiceManager)
- Git, command-driven build and systemd implementations
- Lock file fingerprinting
- The Updater state machine with rollback on build failure
"""

from selfupdate.updates.backends import BuildSystem, ServiceManager, SourceControl
from selfupdate.updates.build import CommandBuildSystem
from selfupdate.updates.git import GitSourceControl
from selfupdate.updates.operations import NO_LOCK_DIGEST, file_digest, resolve_repo_root
from selfupdate.updates.state_machine import (
    Updater,
    UpdateResult,
    UpdateState,
    UpdateStatus,
)
from selfupdate.updates.systemd_restart import SystemdServiceManager, is_port_listening

__all__ = [
    # Interfaces
    "SourceControl",
    "BuildSystem",
    "ServiceManager",
    # Implementations
    "GitSourceControl",
    "CommandBuildSystem",
    "SystemdServiceManager",
    # Operations
    "NO_LOCK_DIGEST",
    "file_digest",
    "is_port_listening",
    "resolve_repo_root",
    # State machine
    "Updater",
    "UpdateResult",
    "UpdateState",
    "UpdateStatus",
]
