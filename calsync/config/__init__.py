"""Configuration package for calsync."""

from .settings import CalSyncSettings, LoggingSettings, get_settings, reset_settings

__all__ = ["CalSyncSettings", "LoggingSettings", "get_settings", "reset_settings"]
