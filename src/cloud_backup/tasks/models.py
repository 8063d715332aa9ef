"""Backup task model and its status lifecycle."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..exceptions import TaskStateError, ValidationError


class TaskStatus(str, Enum):
    """Lifecycle states of a backup task."""
    PENDING = "pending"
    RUNNING = "running"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.SYNCING, TaskStatus.FAILED}),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.SYNCING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.FAILED: frozenset({TaskStatus.RUNNING, TaskStatus.SYNCING}),
    TaskStatus.COMPLETED: frozenset(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BackupTask(BaseModel):
    """One configured backup or sync operation."""
    model_config = ConfigDict(use_enum_values=False, validate_assignment=True)

    id: str = ""
    source_path: str = ""
    provider: str = ""
    destination_path: str = ""
    schedule: Optional[str] = None  # Cron expression
    recurring: bool = False
    compress: bool = False
    encrypt: bool = False
    encryption_key: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    status: TaskStatus = TaskStatus.PENDING
    is_single: bool = False
    is_sync: bool = False
    error_message: Optional[str] = None

    def validate_for_creation(self):
        """Check the fields every task needs.

        Raises:
            ValidationError: If the source path or provider is empty
        """
        if not self.source_path or not self.provider:
            raise ValidationError("cannot create a backup task without a source path or provider")

    def assign_identity(self):
        """Give the task a fresh identifier, creation time and pending status."""
        self.id = str(uuid.uuid4())
        self.created_at = _utcnow()
        self.status = TaskStatus.PENDING
        self.error_message = None

    def can_transition(self, new_status: TaskStatus) -> bool:
        """Whether moving from the current status to ``new_status`` is allowed.

        Status only moves forward, except that a failed task may be restarted
        and a completed recurring task may start its next run.
        """
        if new_status in _TRANSITIONS[self.status]:
            return True
        return (
            self.status == TaskStatus.COMPLETED
            and new_status == TaskStatus.RUNNING
            and self.recurring
        )

    def transition(self, new_status: TaskStatus, error_message: Optional[str] = None):
        """Move to ``new_status``, recording ``error_message``.

        Raises:
            TaskStateError: If the transition is not allowed
        """
        new_status = TaskStatus(new_status)
        if not self.can_transition(new_status):
            raise TaskStateError(
                f"task {self.id} cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        self.error_message = error_message or None

    def to_record(self, include_key: bool = True) -> dict:
        """JSON-ready representation used by the task store."""
        exclude = None if include_key else {"encryption_key"}
        return self.model_dump(mode="json", exclude=exclude)

    def spawn_file_task(self, file_path: str, destination_path: str) -> "BackupTask":
        """Build the transient single-file task used to sync one changed file."""
        return BackupTask(
            id=str(uuid.uuid4()),
            source_path=file_path,
            provider=self.provider,
            destination_path=destination_path,
            compress=self.compress,
            encrypt=self.encrypt,
            encryption_key=self.encryption_key,
            is_single=True,
        )
