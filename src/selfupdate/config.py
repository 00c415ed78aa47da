"""
Configuration management for selfupdate.

This module implements the AppConfig Pydantic model and configuration loading.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/selfupdate/config.yml or --config path)
3. The PORT environment variable (service port only)
4. Environment variables (SELFUPDATE_* prefix, __ for nesting)
5. Command-line arguments (highest precedence)
"""

from __future__ import annotations

import os
import shlex
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/selfupdate/config.yml")
DEFAULT_ENV_PREFIX = "SELFUPDATE_"
DEFAULT_PORT = 4000
DEFAULT_MARK_COMMAND = 'mix run -e "Manfrod.Deployment.mark_updating(\\"{revision}\\")"'

# =============================================================================
# Repository Configuration
# =============================================================================


class RepositoryConfig(BaseModel):
    """Source checkout settings.

    Attributes:
        path: Repository root of the service checkout.
        remote: Remote to fetch from.
        branch: Remote branch to rebase onto.
        lock_file: Dependency lock file, relative to the repository root.
    """

    path: str = Field(
        default=".",
        description="Repository root of the service checkout",
    )
    remote: str = Field(
        default="origin",
        description="Git remote to fetch from",
    )
    branch: str = Field(
        default="main",
        description="Remote branch to rebase onto",
    )
    lock_file: str = Field(
        default="mix.lock",
        description="Dependency lock file, relative to the repository root",
    )


# =============================================================================
# Build Configuration
# =============================================================================


class BuildConfig(BaseModel):
    """Build tool commands.

    Commands are shell-like strings split with shlex; they are executed
    directly, never through a shell.

    Attributes:
        deps_command: Fetches dependencies when the lock file changed.
        compile_command: Compiles the updated source.
        migrate_command: Applies pending database migrations.
        mark_command: One-off command recording the new revision in the
            service's own database; ``{revision}`` is substituted. Defaults to
            the service's Deployment.mark_updating. When empty the revision
            is written to the deployment_state table at state.db_path instead.
        command_timeout_seconds: Timeout for each build command.
    """

    deps_command: str = Field(
        default="mix deps.get",
        description="Command fetching dependencies",
    )
    compile_command: str = Field(
        default="mix compile",
        description="Command compiling the source",
    )
    migrate_command: str = Field(
        default="mix ecto.migrate",
        description="Command applying database migrations",
    )
    mark_command: str | None = Field(
        default=DEFAULT_MARK_COMMAND,
        description="Command recording the new revision ('{revision}' is substituted)",
    )
    command_timeout_seconds: float = Field(
        default=900.0,
        gt=0,
        description="Timeout for each build command in seconds",
    )

    @field_validator("deps_command", "compile_command", "migrate_command")
    @classmethod
    def validate_command(cls, v: str) -> str:
        """Reject empty or unparseable commands."""
        try:
            argv = shlex.split(v)
        except ValueError as e:
            raise ValueError(f"Invalid command {v!r}: {e}") from e
        if not argv:
            raise ValueError("Command must not be empty")
        return v

    @field_validator("mark_command")
    @classmethod
    def validate_mark_command(cls, v: str | None) -> str | None:
        """Normalize a blank mark command to None."""
        if v is None or not v.strip():
            return None
        return v


# =============================================================================
# Service Configuration
# =============================================================================


class ServiceConfig(BaseModel):
    """Managed service settings.

    Attributes:
        name: systemd unit name of the service.
        port: Port the service listens on.
        use_sudo: Prefix systemctl with sudo.
        restart_delay_seconds: Delay before stopping the service.
        port_poll_retries: Number of checks for the port to be released.
        port_poll_interval_seconds: Time between port checks.
        detach: How the restart is launched ('process' or 'task').
    """

    name: str = Field(
        default="manfrod",
        description="systemd unit name of the service",
    )
    port: int = Field(
        default=DEFAULT_PORT,
        ge=1,
        le=65535,
        description="Port the service listens on",
    )
    use_sudo: bool = Field(
        default=True,
        description="Run systemctl through sudo",
    )
    restart_delay_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Delay before stopping the service",
    )
    port_poll_retries: int = Field(
        default=30,
        ge=1,
        description="Number of checks for the port to be released",
    )
    port_poll_interval_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Seconds between port checks",
    )
    detach: str = Field(
        default="process",
        description="Restart launch mode: 'process' or 'task'",
    )

    @field_validator("detach")
    @classmethod
    def validate_detach(cls, v: str) -> str:
        """Validate restart launch mode."""
        valid_modes = {"process", "task"}
        v_lower = v.lower()
        if v_lower not in valid_modes:
            raise ValueError(
                f"Invalid detach mode: {v}. Must be one of: {', '.join(sorted(valid_modes))}"
            )
        return v_lower


# =============================================================================
# State Configuration
# =============================================================================


class StateConfig(BaseModel):
    """Deployment state storage.

    Attributes:
        db_path: SQLite database holding the deployment_state table.
    """

    db_path: str = Field(
        default="/var/lib/selfupdate/deployment_state.db",
        description="SQLite database holding the deployment_state table",
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        json_format: Emit JSON lines instead of plain text.
        log_to_stdout: Whether to log to stdout (stderr otherwise).
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error",
    )
    json_format: bool = Field(
        default=False,
        description="Emit JSON lines instead of plain text",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        repository: Source checkout settings.
        build: Build tool commands.
        service: Managed service settings.
        state: Deployment state storage.
        logging: Logging configuration.
    """

    repository: RepositoryConfig = Field(
        default_factory=RepositoryConfig,
        description="Source checkout settings",
    )
    build: BuildConfig = Field(
        default_factory=BuildConfig,
        description="Build tool commands",
    )
    service: ServiceConfig = Field(
        default_factory=ServiceConfig,
        description="Managed service settings",
    )
    state: StateConfig = Field(
        default_factory=StateConfig,
        description="Deployment state storage",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to an appropriate Python type.

    Commands contain spaces but never commas, so only comma-separated values
    become lists.
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(
    prefix: str = DEFAULT_ENV_PREFIX,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Rules:
    - Prefix: SELFUPDATE_ (configurable)
    - Nested keys: Double underscore (__) separator
    - Example: SELFUPDATE_SERVICE__NAME=myapp

    Args:
        prefix: Environment variable prefix.
        environ: Environment mapping, defaults to os.environ.

    Returns:
        Dictionary with configuration values.
    """
    environ = os.environ if environ is None else environ
    result: dict[str, Any] = {}

    for key, value in environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def _load_port_env(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """
    Read the service port from the plain PORT variable.

    PORT is shared with the service itself, so it is honoured without the
    SELFUPDATE_ prefix.
    """
    environ = os.environ if environ is None else environ
    port = environ.get("PORT", "").strip()
    if not port:
        return {}
    return {"service": {"port": port}}


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_overrides: dict[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, the default
            path is used when it exists.
        env_prefix: Prefix for environment variables.
        cli_overrides: Nested dictionary of command-line overrides.
        environ: Environment mapping, defaults to os.environ.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(environ={"PORT": "4100"})
        >>> config.service.port
        4100
    """
    config_dict: dict[str, Any] = {}

    if config_path is None:
        if DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    elif isinstance(config_path, str):
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_port_env(environ))
    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix, environ))

    if cli_overrides:
        config_dict = _deep_merge(config_dict, cli_overrides)

    return AppConfig(**config_dict)
