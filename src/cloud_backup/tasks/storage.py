"""JSON persistence of the backup task list."""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Callable, List, Optional

from pydantic import ValidationError as ModelValidationError

from ..exceptions import TaskNotFoundError, TaskStoreError
from .models import BackupTask, TaskStatus

logger = logging.getLogger(__name__)

DEFAULT_TASK_FILE = "backup_tasks.json"


class TaskStore:
    """Task list kept as a pretty-printed JSON array.

    The file is rewritten wholesale on every change. A missing or empty file
    is an empty list.
    """

    def __init__(self, task_file: Optional[Path] = None):
        """Initialize task store.

        Args:
            task_file: Path of the JSON file, relative paths resolve against
                the working directory at construction time
        """
        self.task_file = Path(task_file or DEFAULT_TASK_FILE).absolute()
        self._lock = threading.RLock()

    def load(self) -> List[BackupTask]:
        """Read every stored task.

        Raises:
            TaskStoreError: If the file exists but cannot be read or parsed
        """
        with self._lock:
            try:
                raw = self.task_file.read_text(encoding="utf-8")
            except FileNotFoundError:
                return []
            except OSError as e:
                raise TaskStoreError(f"failed to load tasks: {e}") from e

            if not raw.strip():
                return []

            try:
                return [BackupTask(**record) for record in json.loads(raw)]
            except (json.JSONDecodeError, TypeError, ModelValidationError) as e:
                raise TaskStoreError(f"failed to parse task file {self.task_file}: {e}") from e

    def save(self, tasks: List[BackupTask]):
        """Replace the stored list.

        Raises:
            TaskStoreError: If the file cannot be written
        """
        data = json.dumps([task.to_record() for task in tasks], indent="\t")
        with self._lock:
            try:
                self.task_file.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_path = tempfile.mkstemp(
                    dir=str(self.task_file.parent), prefix=".tasks-", suffix=".tmp"
                )
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as f:
                        f.write(data)
                    os.replace(tmp_path, self.task_file)
                finally:
                    if os.path.exists(tmp_path):
                        os.unlink(tmp_path)
            except OSError as e:
                raise TaskStoreError(f"failed to save tasks: {e}") from e

    def append(self, task: BackupTask):
        with self._lock:
            tasks = self.load()
            tasks.append(task)
            self.save(tasks)

    def get(self, task_id: str) -> BackupTask:
        """Return the stored task with ``task_id``.

        Raises:
            TaskNotFoundError: If no such task exists
        """
        for task in self.load():
            if task.id == task_id:
                return task
        raise TaskNotFoundError(task_id)

    def update(self, task: BackupTask):
        """Replace the stored record of ``task``."""
        self._modify(task.id, lambda tasks, i: tasks.__setitem__(i, task.model_copy()))

    def update_status(self, task_id: str, status: TaskStatus, error_message: Optional[str] = None):
        """Persist a status change and its error text."""
        def apply(tasks: List[BackupTask], i: int):
            # Stored record is written as-is; transition rules are enforced on the live task
            tasks[i] = tasks[i].model_copy(update={
                "status": TaskStatus(status),
                "error_message": error_message or None,
            })

        self._modify(task_id, apply)
        if error_message:
            logger.info(f"Task {task_id} status updated to {TaskStatus(status).value} with error: {error_message}")
        else:
            logger.info(f"Task {task_id} status updated to {TaskStatus(status).value}")

    def delete(self, task_id: str):
        """Remove a task.

        Raises:
            TaskNotFoundError: If no such task exists
        """
        self._modify(task_id, lambda tasks, i: tasks.pop(i))

    def _modify(self, task_id: str, change: Callable[[List[BackupTask], int], object]):
        with self._lock:
            tasks = self.load()
            for i, stored in enumerate(tasks):
                if stored.id == task_id:
                    change(tasks, i)
                    break
            else:
                raise TaskNotFoundError(task_id)
            self.save(tasks)
