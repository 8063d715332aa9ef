"""Configuration settings and models for the backup engine."""

import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator

from ..utils.retry import RetryPolicy

ENV_PREFIX = "CLOUD_BACKUP_"
DEFAULT_CONFIG_DIR = Path.home() / ".cloud_backup"


class RetrySettings(BaseModel):
    """Backoff applied to every task execution."""
    initial_delay: float = 5.0  # seconds
    max_delay: float = 60.0  # seconds
    max_attempts: int = 5
    backoff_factor: float = 2.0
    jitter: float = 0.1

    @field_validator('max_attempts')
    @classmethod
    def validate_max_attempts(cls, v):
        if v < 1:
            raise ValueError('max_attempts must be at least 1')
        return v

    @field_validator('jitter')
    @classmethod
    def validate_jitter(cls, v):
        if not 0 <= v < 1:
            raise ValueError('jitter must be between 0 and 1')
        return v

    def to_policy(self) -> RetryPolicy:
        """Build the retry policy described by these settings."""
        return RetryPolicy(
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            max_attempts=self.max_attempts,
            backoff_factor=self.backoff_factor,
            jitter=self.jitter,
        )


class TimeoutSettings(BaseModel):
    """Wall-clock ceilings, in seconds."""
    one_shot: float = 30 * 60
    upload: float = 2 * 60 * 60


class SyncSettings(BaseModel):
    """Continuous sync options."""
    poll_interval: float = 0.5  # seconds between stop-signal checks


class LoggingSettings(BaseModel):
    """Logging options."""
    level: str = "INFO"
    file: Optional[Path] = Path("logs/backup_service.log")
    console: bool = True
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        if v.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f'unknown log level: {v}')
        return v.upper()


class EngineSettings(BaseModel):
    """Main configuration class."""
    task_file: Path = Path("backup_tasks.json")
    config_dir: Path = DEFAULT_CONFIG_DIR
    vault_file: Optional[Path] = None  # defaults to <config_dir>/credentials.enc
    state_dir: Optional[Path] = None  # defaults to <config_dir>/sync
    kdf_iterations: int = 100000
    max_workers: int = 4
    retry: RetrySettings = Field(default_factory=RetrySettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator('max_workers', 'kdf_iterations')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError('must be a positive integer')
        return v

    @property
    def resolved_vault_file(self) -> Path:
        return (self.vault_file or self.config_dir / "credentials.enc").expanduser()

    @property
    def resolved_state_dir(self) -> Path:
        return (self.state_dir or self.config_dir / "sync").expanduser()

    @classmethod
    def from_yaml(cls, config_path: Union[str, Path]) -> "EngineSettings":
        """Load configuration from YAML file."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f) or {}

        return cls(**config_data)

    def to_yaml(self, config_path: Union[str, Path]) -> None:
        """Save configuration to YAML file."""
        config_path = Path(config_path)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(self.model_dump(mode="json", exclude_none=True), f,
                           default_flow_style=False, indent=2)

    @classmethod
    def from_env(cls, base: Optional["EngineSettings"] = None,
                 environ: Optional[Dict[str, str]] = None) -> "EngineSettings":
        """Apply ``CLOUD_BACKUP_*`` environment overrides.

        Top-level fields map directly (``CLOUD_BACKUP_TASK_FILE``); nested
        fields use a double underscore (``CLOUD_BACKUP_RETRY__MAX_ATTEMPTS``).

        Args:
            base: Settings to override (defaults when omitted)
            environ: Environment mapping (``os.environ`` when omitted)

        Returns:
            New settings instance
        """
        environ = os.environ if environ is None else environ
        data: Dict[str, Any] = (base or cls()).model_dump()

        for name, value in environ.items():
            if not name.startswith(ENV_PREFIX) or name == f"{ENV_PREFIX}MASTER_PASSWORD":
                continue
            parts = name[len(ENV_PREFIX):].lower().split("__")
            target = data
            for part in parts[:-1]:
                target = target.setdefault(part, {})
                if not isinstance(target, dict):
                    break
            else:
                target[parts[-1]] = value

        return cls(**data)

    @classmethod
    def load(cls, config_path: Optional[Union[str, Path]] = None) -> "EngineSettings":
        """Load YAML settings (if given) and apply environment overrides."""
        base = cls.from_yaml(config_path) if config_path else cls()
        return cls.from_env(base)
