"""
Configuration management for the appliance updater.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/appliance-updater/config.yml or --config path)
3. Environment variables (APPLIANCE_UPDATER_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_CONFIG_PATH = Path("/etc/appliance-updater/config.yml")
DEFAULT_ENV_PREFIX = "APPLIANCE_UPDATER_"

# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        log_path: Durable, append-only log file.
        level: Log level.
        log_to_stdout: Echo log records to stdout. None means only when
            stdout is a terminal.
    """

    log_path: str = Field(
        default="/var/log/appliance_updater.log",
        description="Append-only log file path",
    )
    level: str = Field(
        default="info",
        description="Log level: debug, info, warning, error",
    )
    log_to_stdout: bool | None = Field(
        default=None,
        description="Echo logs to stdout (None = only when interactive)",
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
# Lock Configuration
# =============================================================================


class LockConfig(BaseModel):
    """Run lock configuration.

    Attributes:
        path: Well-known lock file location.
        stale_after_seconds: Age after which a lock is considered orphaned.
        check_owner_alive: Break locks whose owning process no longer exists.
    """

    path: str = Field(
        default="/tmp/appliance_updater.lock",
        description="Lock file path",
    )
    stale_after_seconds: int | None = Field(
        default=21600,
        ge=60,
        description="Break locks older than this many seconds (None = never)",
    )
    check_owner_alive: bool = Field(
        default=True,
        description="Break locks whose recorded process is gone",
    )


# =============================================================================
# Version Store Configuration
# =============================================================================


class StoreConfig(BaseModel):
    """Persisted version store configuration.

    Attributes:
        db_path: SQLite database holding the version records. Defaults to
            the database inside the primary settings subtree.
        table: Table with key/value/version columns.
        legacy_fallback_keys: Keys allowed to fall back to the legacy
            single-row schema.
    """

    db_path: str | None = Field(
        default=None,
        description="SQLite settings database path",
    )
    db_name: str = Field(
        default="seer.db",
        description="Database file name inside the settings subtree",
    )
    table: str = Field(
        default="settings",
        description="Settings table name",
    )
    legacy_fallback_keys: list[str] = Field(
        default_factory=lambda: ["system_version"],
        description="Keys that may use the legacy single-row read",
    )

    @field_validator("table")
    @classmethod
    def validate_table(cls, v: str) -> str:
        """Only allow plain identifiers since the name is interpolated into SQL."""
        if not v.replace("_", "").isalnum():
            raise ValueError(f"Invalid table name: {v}")
        return v


# =============================================================================
# Subsystem Configuration
# =============================================================================


class PrimaryConfig(BaseModel):
    """Primary subsystem configuration.

    Attributes:
        key: Version record key.
        display_name: Name shown in the update plan.
        display_prefix: Prefix written to the record's display value.
        service_name: Service manager unit.
        target_dir: Directory holding the working directory.
        working_dir_name: Working directory name, also its path in the payload.
        settings_subdir: Durable settings subtree inside the working directory.
        repo_url: Payload repository.
        branch: Payload branch.
        version_url: Plain-text remote version resource.
        runtime_user: Owner applied to the new tree (None = skip).
        runtime_group: Group applied to the new tree.
        backup_policy: "best_effort" continues after a failed backup,
            "strict" aborts.
        stop_settle_seconds: Pause after stopping the service.
    """

    key: str = Field(default="system_version")
    display_name: str = Field(default="UI")
    display_prefix: str = Field(default="SEER Version")
    service_name: str = Field(default="nodered")
    target_dir: str = Field(default="/home/admin")
    working_dir_name: str = Field(default=".node-red")
    settings_subdir: str = Field(default="seer_database")
    repo_url: str = Field(default="https://github.com/lyncsolutionsph/seer_v1.0")
    branch: str = Field(default="main")
    version_url: str = Field(
        default="https://raw.githubusercontent.com/lyncsolutionsph/seer_v1.0/main/version.txt"
    )
    runtime_user: str | None = Field(default="admin")
    runtime_group: str | None = Field(default="admin")
    backup_policy: str = Field(default="best_effort")
    stop_settle_seconds: float = Field(default=2.0, ge=0)

    @field_validator("backup_policy")
    @classmethod
    def validate_backup_policy(cls, v: str) -> str:
        """Validate backup policy."""
        valid = {"best_effort", "strict"}
        v_lower = v.lower().replace("-", "_")
        if v_lower not in valid:
            raise ValueError(
                f"Invalid backup policy: {v}. Must be one of: {', '.join(sorted(valid))}"
            )
        return v_lower

    @property
    def working_dir(self) -> Path:
        """Absolute path of the working directory."""
        return Path(self.target_dir) / self.working_dir_name


class AuxiliaryConfig(BaseModel):
    """Configuration for one auxiliary subsystem.

    Attributes:
        key: Version record key.
        display_name: Name shown in the update plan.
        display_prefix: Prefix written to the record's display value.
        repo_url: Repository containing the installer.
        branch: Repository branch.
        version_url: Plain-text remote version resource.
        installer: Installer argv, run from the repository root.
    """

    key: str
    display_name: str
    display_prefix: str
    repo_url: str
    branch: str = Field(default="main")
    version_url: str
    installer: list[str] = Field(
        default_factory=lambda: ["sudo", "bash", "install.sh"],
    )

    @field_validator("installer")
    @classmethod
    def validate_installer(cls, v: list[str]) -> list[str]:
        """Require a non-empty argv."""
        if not v:
            raise ValueError("Installer command must not be empty")
        return v


def _default_auxiliaries() -> list[AuxiliaryConfig]:
    """Router, firewall and startup, in update order."""
    raw = "https://raw.githubusercontent.com/lyncsolutionsph"
    repo = "https://github.com/lyncsolutionsph"
    return [
        AuxiliaryConfig(
            key="router_version",
            display_name="Router",
            display_prefix="Router Version",
            repo_url=f"{repo}/router0",
            version_url=f"{raw}/router0/main/version.txt",
        ),
        AuxiliaryConfig(
            key="firewall_version",
            display_name="Firewall",
            display_prefix="Firewall Version",
            repo_url=f"{repo}/firewall",
            version_url=f"{raw}/firewall/main/version.txt",
        ),
        AuxiliaryConfig(
            key="startup_version",
            display_name="Startup",
            display_prefix="Startup Version",
            repo_url=f"{repo}/startup",
            version_url=f"{raw}/startup/main/version.txt",
        ),
    ]


# =============================================================================
# Transport and Service Configuration
# =============================================================================


class TransportConfig(BaseModel):
    """Network and subprocess timeouts.

    Attributes:
        http_timeout_seconds: Timeout for version fetches.
        clone_timeout_seconds: Timeout for repository clones.
        installer_timeout_seconds: Timeout for auxiliary installers.
        scratch_root: Parent of the per-pass scratch directory (None = system
            temp dir).
    """

    http_timeout_seconds: float = Field(default=30.0, gt=0)
    clone_timeout_seconds: float = Field(default=600.0, gt=0)
    installer_timeout_seconds: float = Field(default=1800.0, gt=0)
    scratch_root: str | None = Field(default=None)


class ServiceConfig(BaseModel):
    """Service manager configuration.

    Attributes:
        use_sudo: Prefix systemctl with sudo for stop/start.
        systemctl_timeout_seconds: Timeout for each systemctl call.
    """

    use_sudo: bool = Field(default=True)
    systemctl_timeout_seconds: float = Field(default=90.0, gt=0)


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        logging: Logging configuration.
        lock: Run lock configuration.
        store: Version store configuration.
        primary: Primary subsystem configuration.
        auxiliaries: Auxiliary subsystems, in update order.
        transport: Transport timeouts.
        service: Service manager settings.
        state_file: JSON file recording primary pipeline progress.
        assume_yes: Skip the interactive confirmation.
        check_only: Report the plan without mutating anything.
    """

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    primary: PrimaryConfig = Field(default_factory=PrimaryConfig)
    auxiliaries: list[AuxiliaryConfig] = Field(default_factory=_default_auxiliaries)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    state_file: str = Field(default="/var/lib/appliance-updater/primary_state.json")
    assume_yes: bool = Field(default=False)
    check_only: bool = Field(default=False)

    @model_validator(mode="after")
    def validate_unique_keys(self) -> AppConfig:
        """Each subsystem must own a distinct version record."""
        keys = [self.primary.key, *(aux.key for aux in self.auxiliaries)]
        duplicates = sorted({k for k in keys if keys.count(k) > 1})
        if duplicates:
            raise ValueError(f"Duplicate subsystem keys: {', '.join(duplicates)}")
        return self

    @model_validator(mode="after")
    def derive_store_path(self) -> AppConfig:
        """Place the database inside the primary settings subtree unless set."""
        if self.store.db_path is None:
            self.store.db_path = str(
                self.primary.working_dir / self.primary.settings_subdir / self.store.db_name
            )
        return self


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
    Parse an environment variable value to appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, list, or string).
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


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    - Prefix: APPLIANCE_UPDATER_ (configurable)
    - Nested keys: Double underscore (__) separator
    - Example: APPLIANCE_UPDATER_PRIMARY__BACKUP_POLICY=strict

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def build_arg_parser() -> argparse.ArgumentParser:
    """Build the command-line parser."""
    parser = argparse.ArgumentParser(
        prog="appliance-updater",
        description="Check for and apply appliance subsystem updates",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--yes",
        "-y",
        action="store_true",
        help="Apply updates without asking for confirmation",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Report available updates without applying them",
    )

    return parser


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse command-line arguments.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Dictionary with parsed arguments.
    """
    parsed = build_arg_parser().parse_args(args)

    result: dict[str, Any] = {}

    if parsed.config:
        result["_config_path"] = parsed.config

    if parsed.log_level:
        result["logging"] = {"level": parsed.log_level}

    if parsed.debug:
        result.setdefault("logging", {})["level"] = "debug"

    if parsed.yes:
        result["assume_yes"] = True

    if parsed.check:
        result["check_only"] = True

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Later sources override earlier ones: defaults, YAML file, environment
    variables, command-line arguments.

    Args:
        config_path: Path to YAML configuration file. If None, uses the
            --config argument or the default path when it exists.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
        ValidationError: If configuration is invalid.
    """
    config_dict: dict[str, Any] = {}

    cli_config = _parse_cli_args(cli_args)

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    else:
        cli_config.pop("_config_path", None)
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    return AppConfig(**config_dict)
