"""
Command-line entry point for selfupdate.

Subcommands:
- run (default): update the checkout and schedule a service restart
- restart: the deferred stop/poll/start sequence, launched detached by run
- status: print the revision currently marked as updating
- clear: clear the updating mark
- health: check that the deployment state database answers queries

Exit codes: 0 on success or when already up to date, 1 on any failure.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import Any, TextIO

import yaml
from pydantic import ValidationError

from selfupdate import __version__
from selfupdate.config import AppConfig, load_config
from selfupdate.errors import UpdateError
from selfupdate.logging import get_logger, setup_logging
from selfupdate.state import DeploymentStateStore
from selfupdate.updates.build import CommandBuildSystem
from selfupdate.updates.git import GitSourceControl
from selfupdate.updates.operations import resolve_repo_root
from selfupdate.updates.state_machine import Updater, UpdateStatus
from selfupdate.updates.systemd_restart import (
    DETACH_PROCESS,
    DETACH_TASK,
    SystemdServiceManager,
)

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    # Suppressed defaults keep a subcommand from clobbering options given before it
    common = argparse.ArgumentParser(add_help=False, argument_default=argparse.SUPPRESS)
    common.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )
    common.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error", "critical"],
        help="Override log level",
    )
    common.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit JSON log lines",
    )
    common.add_argument(
        "--repo",
        type=str,
        help="Repository root of the service checkout",
    )

    parser = argparse.ArgumentParser(
        prog="selfupdate",
        description="Update a git-deployed service in place and restart it",
        parents=[common],
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("run", parents=[common], help="Update and restart (default)")

    restart = subparsers.add_parser(
        "restart",
        parents=[common],
        help="Stop the service, wait for its port, start it",
    )
    restart.add_argument("--service", type=str, help="systemd unit name")
    restart.add_argument("--port", type=int, help="Port to wait on")
    restart.add_argument("--delay", type=float, help="Seconds to wait before stopping")
    restart.add_argument("--retries", type=int, help="Port checks before starting anyway")
    restart.add_argument("--interval", type=float, help="Seconds between port checks")
    restart.add_argument(
        "--no-sudo",
        action="store_true",
        help="Run systemctl without sudo",
    )

    subparsers.add_parser("status", parents=[common], help="Show the updating mark")
    subparsers.add_parser("clear", parents=[common], help="Clear the updating mark")
    subparsers.add_parser("health", parents=[common], help="Check the state database")

    return parser


def _cli_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Translate parsed arguments into nested configuration overrides."""
    result: dict[str, Any] = {}

    if getattr(args, "log_level", None):
        result.setdefault("logging", {})["level"] = args.log_level
    if getattr(args, "json_logs", False):
        result.setdefault("logging", {})["json_format"] = True
    if getattr(args, "repo", None):
        result.setdefault("repository", {})["path"] = args.repo

    if args.command == "restart":
        service: dict[str, Any] = {}
        if args.service:
            service["name"] = args.service
        if args.port is not None:
            service["port"] = args.port
        if args.delay is not None:
            service["restart_delay_seconds"] = args.delay
        if args.retries is not None:
            service["port_poll_retries"] = args.retries
        if args.interval is not None:
            service["port_poll_interval_seconds"] = args.interval
        if args.no_sudo:
            service["use_sudo"] = False
        if service:
            result["service"] = service

    return result


def _restart_options(config: AppConfig, config_path: str | None) -> list[str]:
    """Options the detached restart needs to log and load config like this run."""
    options = ["--log-level", config.logging.level]
    if config.logging.json_format:
        options.append("--json-logs")
    if config_path:
        options.extend(["--config", str(Path(config_path).resolve())])
    return options


def create_service_manager(
    config: AppConfig,
    restart_options: Sequence[str] = (),
    detach: str | None = None,
) -> SystemdServiceManager:
    """Create the service manager from the service configuration section."""
    service = config.service
    return SystemdServiceManager(
        service.name,
        service.port,
        use_sudo=service.use_sudo,
        restart_delay=service.restart_delay_seconds,
        port_poll_retries=service.port_poll_retries,
        port_poll_interval=service.port_poll_interval_seconds,
        detach=detach or service.detach,
        restart_options=restart_options,
    )


def create_updater(config: AppConfig, config_path: str | None = None) -> Updater:
    """
    Wire an Updater to git, the configured build commands and systemd.

    The restart is always launched as a transient unit here: asyncio.run()
    cancels an un-awaited restart task as soon as the update returns.

    Raises:
        FailedPreconditionError: If the repository path is not a git checkout.
    """
    repo_root = resolve_repo_root(config.repository.path)
    repository = config.repository

    if config.service.detach == DETACH_TASK:
        logger.warning(
            "Detach mode 'task' needs an event loop that outlives the update, "
            "launching the restart as a transient unit instead"
        )

    source = GitSourceControl(
        repo_root,
        remote=repository.remote,
        branch=repository.branch,
        lock_file=repository.lock_file,
    )
    build = CommandBuildSystem.from_config(
        repo_root,
        config.build,
        state_store=DeploymentStateStore(config.state.db_path),
    )
    service = create_service_manager(
        config,
        restart_options=_restart_options(config, config_path),
        detach=DETACH_PROCESS,
    )
    return Updater(source, build, service)


async def _cmd_run(config: AppConfig, config_path: str | None, out: TextIO) -> int:
    service_name = config.service.name
    print(f"=== {service_name} self-update ===", file=out)
    print(f"Started at: {datetime.now().astimezone():%c}", file=out)
    out.flush()

    updater = create_updater(config, config_path)
    result = await updater.run()

    if result.status == UpdateStatus.UP_TO_DATE:
        print("Already up to date. Nothing to do.", file=out)
        return result.exit_code

    if result.status != UpdateStatus.UPDATED:
        print(f"ERROR: {result.message}", file=out)
        return result.exit_code

    print(f"Updated: {result.summary}", file=out)
    print("=== Update complete ===", file=out)
    print(f"Finished at: {datetime.now().astimezone():%c}", file=out)
    print(f"New commit: {result.new_revision}", file=out)
    print(f"Check status: sudo systemctl status {service_name}", file=out)
    print(f"View logs: journalctl -u {service_name} -f", file=out)
    return result.exit_code


async def _cmd_restart(config: AppConfig) -> int:
    manager = create_service_manager(config)
    return EXIT_OK if await manager.restart_sequence() else EXIT_FAILURE


async def _cmd_status(config: AppConfig, out: TextIO) -> int:
    revision = await DeploymentStateStore(config.state.db_path).check_updating()
    print(revision or "none", file=out)
    return EXIT_OK


async def _cmd_clear(config: AppConfig) -> int:
    await DeploymentStateStore(config.state.db_path).clear_updating()
    return EXIT_OK


async def _cmd_health(config: AppConfig, out: TextIO) -> int:
    healthy = await DeploymentStateStore(config.state.db_path).db_healthy()
    print("healthy" if healthy else "unhealthy", file=out)
    return EXIT_OK if healthy else EXIT_FAILURE


async def _dispatch(
    command: str, config: AppConfig, config_path: str | None, out: TextIO
) -> int:
    if command == "restart":
        return await _cmd_restart(config)
    if command == "status":
        return await _cmd_status(config, out)
    if command == "clear":
        return await _cmd_clear(config)
    if command == "health":
        return await _cmd_health(config, out)
    return await _cmd_run(config, config_path, out)


def main(argv: list[str] | None = None, out: TextIO | None = None) -> int:
    """
    Run the selfupdate command line.

    Args:
        argv: Arguments without the program name; sys.argv[1:] if None.
        out: Stream for user-facing output; sys.stdout if None.

    Returns:
        Process exit status.
    """
    out = out or sys.stdout
    args = build_parser().parse_args(argv)
    command = args.command or "run"

    config_path = getattr(args, "config", None)

    try:
        config = load_config(config_path, cli_overrides=_cli_overrides(args))
    except (FileNotFoundError, ValidationError, yaml.YAMLError) as e:
        print(f"ERROR: invalid configuration: {e}", file=sys.stderr)
        return EXIT_FAILURE

    setup_logging(config.logging)

    try:
        return asyncio.run(_dispatch(command, config, config_path, out))
    except UpdateError as e:
        logger.error(e.message, extra={"error_code": e.error_code, "details": e.details})
        print(f"ERROR: {e.message}", file=out)
        return EXIT_FAILURE
