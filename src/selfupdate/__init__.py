"""
selfupdate - in-place self-update for a git-deployed service.

This package pulls new code into the service checkout, rebuilds it, applies
database migrations, marks the deployment as updating and schedules a restart
of the running service, rolling the source tree back when the build fails.
"""

__version__ = "0.1.0"
