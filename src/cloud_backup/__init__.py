"""
Cloud Backup Engine

Backs up local files and folders to cloud storage providers, once, on a
cron schedule or as a continuous folder sync, with optional compression
and encryption.
"""

__version__ = "1.0.0"
__author__ = "Cloud Backup Tool"
__description__ = "Backup orchestration engine for local files and folders"

from .config.settings import EngineSettings
from .context import EngineContext
from .tasks.manager import TaskManager
from .tasks.models import BackupTask, TaskStatus

__all__ = ["BackupTask", "EngineContext", "EngineSettings", "TaskManager", "TaskStatus"]
