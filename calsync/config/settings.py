"""Settings management using Pydantic for type validation and configuration."""

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, PrivateAttr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "CALSYNC_"


class LoggingSettings(BaseModel):
    """Logging configuration settings."""

    # Console Logging
    console_enabled: bool = Field(default=True, description="Enable console logging")
    console_level: str = Field(
        default="INFO", description="Console log level: DEBUG, INFO, WARNING, ERROR, CRITICAL"
    )
    console_colors: bool = Field(
        default=True, description="Enable colored console output (auto-detected)"
    )

    # File Logging
    file_enabled: bool = Field(default=False, description="Enable rotating file logging")
    file_level: str = Field(default="DEBUG", description="File log level")
    file_directory: Optional[str] = Field(
        default=None, description="Custom log directory (defaults to data_dir/logs)"
    )
    file_prefix: str = Field(default="calsync", description="Log file prefix")
    max_log_files: int = Field(default=5, description="Maximum number of log files to keep")
    max_file_bytes: int = Field(default=10 * 1024 * 1024, description="Rotate log files at this size")
    include_function_names: bool = Field(
        default=True, description="Include function names and line numbers in file logs"
    )

    # Third-party Libraries
    third_party_level: str = Field(
        default="WARNING", description="Log level for httpx, httpcore and aiosqlite"
    )


class CalSyncSettings(BaseSettings):
    """Application settings with environment variable and YAML support.

    Precedence: constructor arguments, then ``CALSYNC_*`` environment
    variables (and ``.env``), then the YAML config file, then defaults.
    """

    # Private attributes
    _explicit_args: set = PrivateAttr(default_factory=set)
    _env_vars_set: set = PrivateAttr(default_factory=set)

    # File Paths
    config_dir: Path = Field(default_factory=lambda: Path.home() / ".config" / "calsync")
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".local" / "share" / "calsync")
    config_file: Optional[Path] = Field(default=None, description="Explicit YAML config file")
    database_path: Optional[str] = Field(
        default=None, description="SQLite database path or ':memory:' (defaults to data_dir)"
    )

    # Feed Fetching
    request_timeout_seconds: float = Field(default=15.0, gt=0, description="HTTP request timeout")
    max_feed_bytes: int = Field(default=5 * 1024 * 1024, gt=0, description="Maximum feed body size")
    user_agent: str = Field(default="calsync/1.0", description="User-Agent sent to feed servers")

    # Sync Frequency Bounds
    min_sync_frequency_minutes: int = Field(default=15, ge=1)
    max_sync_frequency_minutes: int = Field(default=1440, ge=1)
    default_sync_frequency_minutes: int = Field(default=60, ge=1)

    # Scheduling and Concurrency
    scheduler_tick_seconds: float = Field(default=60.0, gt=0, description="Scheduler tick interval")
    max_concurrent_syncs: int = Field(default=5, ge=1, description="Global concurrent sync cap")
    max_concurrent_syncs_per_tenant: int = Field(
        default=2, ge=1, description="Concurrent sync cap per tenant"
    )
    sync_processing_budget_seconds: float = Field(
        default=30.0, gt=0, description="Time allowed after the fetch timeout before a sync is abandoned"
    )
    shutdown_timeout_seconds: float = Field(
        default=30.0, ge=0, description="How long stop() waits for running syncs"
    )

    # Reconciliation Safety
    max_delete_ratio: Optional[float] = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="Fail syncs that would delete a larger share of stored events (off when unset)",
    )
    deletion_guard_min_events: int = Field(
        default=10, ge=1, description="Stored events required before the deletion guard applies"
    )
    max_events_per_feed: int = Field(default=10000, ge=1, description="Reject feeds with more events")

    # Event Listing
    events_default_limit: int = Field(default=50, ge=1)
    events_max_limit: int = Field(default=200, ge=1)

    # Logging Configuration
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    def __init__(self, **kwargs: Any) -> None:
        # Track which environment variables are set before calling parent
        env_vars_set = {
            key[len(ENV_PREFIX):].lower() for key in os.environ if key.startswith(ENV_PREFIX)
        }

        super().__init__(**kwargs)

        self._explicit_args = set(kwargs.keys())
        self._env_vars_set = env_vars_set

        self._load_yaml_config()
        self._check_frequency_bounds()

    @model_validator(mode="after")
    def _validate_frequency_bounds(self) -> "CalSyncSettings":
        self._check_frequency_bounds()
        return self

    def _check_frequency_bounds(self) -> None:
        if not (
            self.min_sync_frequency_minutes
            <= self.default_sync_frequency_minutes
            <= self.max_sync_frequency_minutes
        ):
            raise ValueError(
                "Sync frequency bounds must satisfy min <= default <= max, got "
                f"{self.min_sync_frequency_minutes} <= {self.default_sync_frequency_minutes} "
                f"<= {self.max_sync_frequency_minutes}"
            )
        if self.events_default_limit > self.events_max_limit:
            raise ValueError("events_default_limit cannot exceed events_max_limit")

    def _find_config_file(self) -> Optional[Path]:
        """Find config file: explicit path, then project directory, then user config dir."""
        if self.config_file is not None:
            return self.config_file if self.config_file.exists() else None

        project_root = Path(__file__).parent.parent.parent
        project_config = project_root / "config" / "config.yaml"
        if project_config.exists():
            return project_config

        user_config = self.config_dir / "config.yaml"
        if user_config.exists():
            return user_config

        return None

    def _load_basic_settings(self, config_data: dict) -> None:
        """Load top-level settings that were not given explicitly or via environment."""
        for setting, value in config_data.items():
            if setting == "logging" or setting not in type(self).model_fields:
                continue
            if setting in self._explicit_args or setting in self._env_vars_set:
                continue
            setattr(self, setting, value)

    def _load_logging_config(self, config_data: dict) -> None:
        """Load logging configuration from YAML data."""
        logging_config = config_data.get("logging")
        if not isinstance(logging_config, dict) or "logging" in self._explicit_args:
            return

        for setting, value in logging_config.items():
            if setting in LoggingSettings.model_fields:
                setattr(self.logging, setting, value)

    def _load_yaml_config(self) -> None:
        """Load configuration from YAML file if it exists."""
        config_file = self._find_config_file()
        if not config_file:
            return

        try:
            with config_file.open() as f:
                config_data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            # Don't fail if YAML loading fails, just continue with defaults/env vars
            logging.warning(f"Could not load YAML config from {config_file}: {e}")
            return

        if not isinstance(config_data, dict):
            return

        self._load_basic_settings(config_data)
        self._load_logging_config(config_data)

    def clamp_frequency(self, minutes: Optional[int]) -> int:
        """Clamp a requested sync frequency to the configured bounds.

        ``None`` selects the default frequency.
        """
        if minutes is None:
            return self.default_sync_frequency_minutes
        return max(self.min_sync_frequency_minutes, min(int(minutes), self.max_sync_frequency_minutes))

    @property
    def database_file(self) -> str:
        """Path to SQLite database file."""
        if self.database_path:
            return self.database_path
        return str(self.data_dir / "calsync.db")

    @property
    def log_directory(self) -> Path:
        if self.logging.file_directory:
            return Path(self.logging.file_directory).expanduser()
        return self.data_dir / "logs"


# Global settings management
_settings_instance: Optional[CalSyncSettings] = None


def get_settings() -> CalSyncSettings:
    """Get the global settings instance, creating it lazily if needed."""
    if globals()["_settings_instance"] is None:
        globals()["_settings_instance"] = CalSyncSettings()
    return globals()["_settings_instance"]


def reset_settings() -> None:
    """Reset the global settings instance (primarily for testing)."""
    globals()["_settings_instance"] = None
