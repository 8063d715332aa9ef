"""One-shot and recurring cron scheduling of backup tasks."""

import logging
import threading
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime
from typing import Dict, Optional

from croniter import croniter

from ..config.settings import EngineSettings
from ..exceptions import (
    BackupError,
    OperationCancelledError,
    ScheduleError,
    TaskTimeoutError,
    ValidationError,
)
from .manager import TaskManager
from .models import BackupTask

logger = logging.getLogger(__name__)


def validate_cron(expression: str):
    """Raise ValidationError unless ``expression`` is a standard cron expression."""
    if not expression or not croniter.is_valid(expression):
        raise ValidationError(f"invalid cron schedule: {expression!r}")


def next_run(expression: str, now: Optional[datetime] = None) -> datetime:
    """Next time ``expression`` fires after ``now``."""
    validate_cron(expression)
    now = now or datetime.now().astimezone()
    return croniter(expression, now).get_next(datetime)


def cron_interval(expression: str, now: Optional[datetime] = None) -> float:
    """Seconds from ``now`` until ``expression`` next fires.

    Args:
        expression: Five-field cron expression, e.g. ``*/15 * * * *``
        now: Reference time (current local time by default)

    Raises:
        ValidationError: If the expression cannot be parsed
    """
    now = now or datetime.now().astimezone()
    return max((next_run(expression, now) - now).total_seconds(), 0.0)


class TaskScheduler:
    """Runs tasks once or on a recurring cron schedule.

    :meth:`schedule_task` blocks until the schedule finishes; run it in a
    thread to schedule several tasks at once.
    """

    def __init__(self, manager: TaskManager, settings: Optional[EngineSettings] = None):
        self.manager = manager
        self.settings = settings or manager.settings
        self._cancel_events: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def schedule_task(self, task: BackupTask):
        """Run ``task`` according to its schedule.

        A one-shot task runs once (at the next cron time if it has a
        schedule) under the one-shot time limit. A recurring task runs every
        period until cancelled or until a run fails.

        Raises:
            ValidationError: If the cron expression is invalid
            TaskTimeoutError: If a one-shot run exceeds its time limit
            ScheduleError: If a recurring run fails
            OperationCancelledError: If a one-shot schedule is cancelled before it fires
        """
        if task.schedule:
            validate_cron(task.schedule)
        if task.recurring and not task.is_sync:
            if not task.schedule:
                raise ValidationError(f"recurring task {task.id} needs a cron schedule")
            self._run_recurring(task)
        else:
            self._run_once(task)

    def _run_once(self, task: BackupTask):
        cancel_event = self._register(task.id)
        try:
            if task.schedule:
                delay = cron_interval(task.schedule)
                logger.info(f"Backup task {task.id} scheduled to run in {delay:.0f}s")
                if cancel_event.wait(delay):
                    raise OperationCancelledError(f"schedule of backup task {task.id} cancelled")

            future = self.manager.submit(task)
            # Sync tasks run until stopped
            timeout = None if task.is_sync else self.settings.timeouts.one_shot
            try:
                future.result(timeout=timeout)
            except FutureTimeoutError:
                if not self.manager.expire_task(task.id):
                    # Finished between the wait and the expiry
                    future.result()
                    return
                future.cancel()
                raise TaskTimeoutError(f"backup task {task.id} timed out") from None
        finally:
            self._unregister(task.id, cancel_event)

    def _run_recurring(self, task: BackupTask):
        cancel_event = self._register(task.id)
        try:
            while True:
                interval = cron_interval(task.schedule)
                logger.info(f"Next run of recurring task {task.id} in {interval:.0f}s")
                if cancel_event.wait(interval):
                    logger.info(f"Recurring task {task.id} unscheduled")
                    return
                try:
                    self.manager.execute_task(task)
                except BackupError as e:
                    logger.error(f"Error in recurring task {task.id}: {e}")
                    raise ScheduleError(f"recurring backup task {task.id} failed: {e}") from e
        finally:
            self._unregister(task.id, cancel_event)

    def cancel(self, task_id: str) -> bool:
        """Stop the schedule of ``task_id``; a run in progress finishes first."""
        with self._lock:
            cancel_event = self._cancel_events.get(task_id)
        if cancel_event is None:
            return False
        cancel_event.set()
        return True

    def shutdown(self):
        with self._lock:
            events = list(self._cancel_events.values())
        for cancel_event in events:
            cancel_event.set()

    def _register(self, task_id: str) -> threading.Event:
        with self._lock:
            if task_id in self._cancel_events:
                raise ScheduleError(f"backup task {task_id} is already scheduled")
            cancel_event = threading.Event()
            self._cancel_events[task_id] = cancel_event
        return cancel_event

    def _unregister(self, task_id: str, cancel_event: threading.Event):
        with self._lock:
            if self._cancel_events.get(task_id) is cancel_event:
                del self._cancel_events[task_id]
