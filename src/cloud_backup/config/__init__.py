"""Configuration management for the backup engine."""

from .settings import EngineSettings, LoggingSettings, RetrySettings, SyncSettings, TimeoutSettings

__all__ = ["EngineSettings", "LoggingSettings", "RetrySettings", "SyncSettings", "TimeoutSettings"]
