"""Backup task model, persistence, execution and scheduling."""

from .manager import TaskManager
from .models import BackupTask, TaskStatus
from .scheduler import TaskScheduler, cron_interval, next_run
from .storage import TaskStore

__all__ = ["BackupTask", "TaskManager", "TaskScheduler", "TaskStatus", "TaskStore", "cron_interval", "next_run"]
