"""Backup task lifecycle: creation, execution pipeline and continuous sync."""

import logging
import os
import tempfile
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import ExitStack
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from ..auth.vault import Credential, CredentialVault
from ..config.settings import EngineSettings
from ..destinations.registry import ProviderRegistry
from ..exceptions import (
    BackupError,
    CredentialNotFoundError,
    OperationCancelledError,
    SyncError,
    TaskPanicError,
    TaskStateError,
    TaskStoreError,
    TaskTimeoutError,
    TransformError,
    ValidationError,
)
from ..sync.folder_sync import FolderSyncEngine
from ..sync.state_store import SyncStateStore
from ..utils.encryption import EncryptionManager
from ..utils.file_utils import FileHelper
from ..utils.logging import TaskLogger, TimedOperation
from ..utils.retry import RetryController
from .models import BackupTask, TaskStatus
from .storage import TaskStore

logger = logging.getLogger(__name__)

TASK_KEY_PREFIX = "task-key:"


class _Execution:
    """Cancellation handle of one queued or running (non-sync) task execution."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        self.cancel_event = threading.Event()
        self.timed_out = False


class _SyncSession:
    """Running continuous-sync task and its stop signal."""

    def __init__(self, task: BackupTask, engine: FolderSyncEngine):
        self.task = task
        self.engine = engine
        self.stop_event = threading.Event()


class TaskManager:
    """Owns backup tasks and runs them against storage providers.

    Independent tasks run concurrently on a thread pool (:meth:`submit`);
    :meth:`execute_task` itself is synchronous.
    """

    def __init__(
        self,
        store: TaskStore,
        vault: CredentialVault,
        providers: ProviderRegistry,
        settings: Optional[EngineSettings] = None,
        observer_factory: Optional[Callable] = None,
    ):
        """Initialize task manager.

        Args:
            store: Persisted task list
            vault: Credential vault holding provider credentials and escrowed keys
            providers: Registry used to build storage providers by name
            settings: Engine settings (defaults when omitted)
            observer_factory: Filesystem observer factory for sync tasks
        """
        self.store = store
        self.vault = vault
        self.providers = providers
        self.settings = settings or EngineSettings()
        self._observer_factory = observer_factory
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.max_workers, thread_name_prefix="backup-task"
        )
        self._executions: Dict[str, _Execution] = {}
        self._syncs: Dict[str, _SyncSession] = {}
        self._lock = threading.Lock()

    # Task list

    def create_task(self, task: BackupTask) -> BackupTask:
        """Validate, identify and persist a new task.

        Args:
            task: Task description; id, creation time and status are assigned here

        Returns:
            The persisted task

        Raises:
            ValidationError: If the source path or provider is empty
        """
        task.validate_for_creation()
        task.assign_identity()
        self.store.append(task)
        logger.info(f"Created backup task {task.id} ({task.source_path} -> {task.provider}:{task.destination_path})")
        return task

    def list_tasks(self) -> List[BackupTask]:
        return self.store.load()

    def get_task(self, task_id: str) -> BackupTask:
        return self.store.get(task_id)

    def delete_task(self, task_id: str):
        """Remove a task together with its escrowed key and sync state.

        Raises:
            TaskNotFoundError: If no such task exists
        """
        self.stop_sync(task_id)
        self.store.delete(task_id)
        if self.vault.delete_credential(f"{TASK_KEY_PREFIX}{task_id}"):
            logger.info(f"Dropped escrowed encryption key of task {task_id}")
        state_file = self._state_file(task_id)
        if state_file.exists():
            state_file.unlink()
        logger.info(f"Deleted backup task {task_id}")

    # Execution

    def submit(self, task: BackupTask) -> "Future[None]":
        """Run :meth:`execute_task` on the worker pool.

        The execution is registered before the task is queued, so
        :meth:`expire_task` reaches a task that is still waiting for a worker.
        """
        if task.is_sync:
            return self._executor.submit(self.execute_task, task)

        execution = self._register_execution(task.id)
        try:
            future = self._executor.submit(self._execute, task, True, execution)
        except RuntimeError:
            self._unregister_execution(task.id, execution)
            raise

        def release(done: "Future[None]"):
            if done.cancelled():
                self._unregister_execution(task.id, execution)

        future.add_done_callback(release)
        return future

    def execute_task(self, task: BackupTask, persist: bool = True):
        """Run a task to completion or terminal failure.

        Every status change is persisted (unless ``persist`` is False, as for
        the transient per-file tasks of a sync). Sync tasks block until
        :meth:`stop_sync` is called.

        Args:
            task: Task to run
            persist: Whether status changes are written to the task store

        Raises:
            BackupError: The terminal error. Retryable failures surface as
                :class:`~cloud_backup.exceptions.RetryExhaustedError` once
                every attempt is used up.
        """
        if task.is_sync:
            self._run_sync(task)
            return
        self._execute(task, persist, self._register_execution(task.id))

    def _execute(self, task: BackupTask, persist: bool, execution: _Execution):
        log = TaskLogger(logger, task.id, provider=task.provider)
        if execution.cancel_event.is_set():
            log.warning("Backup task expired before it started")
        else:
            log.info(f"Starting backup task for {task.source_path}")

        timer = threading.Timer(
            self.settings.timeouts.upload, self._expire, args=(execution, persist)
        )
        timer.daemon = True
        timer.start()

        controller = RetryController(
            self.settings.retry.to_policy(),
            cancel_event=execution.cancel_event,
            on_retry=lambda attempt, delay, err: log.info(
                f"Attempt {attempt + 1} failed, next attempt in {delay:.2f}s"
            ),
        )
        try:
            controller.run(lambda: self._attempt(task, execution, persist, log))
        except OperationCancelledError:
            if execution.timed_out:
                self._record_timeout(task, persist)
                raise TaskTimeoutError(self._timeout_message(task)) from None
            raise
        finally:
            timer.cancel()
            self._unregister_execution(task.id, execution)

        log.info(f"Backup task completed after {controller.attempts} attempt(s)")

    def expire_task(self, task_id: str) -> bool:
        """Fail a queued or running execution with a timeout and cancel its retries.

        Returns:
            True if an execution of ``task_id`` was queued or running
        """
        with self._lock:
            execution = self._executions.get(task_id)
        if execution is None:
            return False
        self._expire(execution, True)
        return True

    def _attempt(self, task: BackupTask, execution: _Execution, persist: bool, log: TaskLogger):
        """One pass through the pipeline: transform, resolve credentials, upload."""
        self._set_status(task, TaskStatus.RUNNING, persist=persist)
        try:
            if not os.path.exists(task.source_path):
                raise ValidationError(f"source path does not exist: {task.source_path}")

            with ExitStack() as stack:
                payload = self._prepare_payload(task, stack, log)

                log.info(f"Getting credentials for provider {task.provider}")
                credential = self.vault.get_credential(task.provider)
                provider = self.providers.create(task.provider, credential)

                with TimedOperation(log, f"upload to {task.provider}:{task.destination_path}"):
                    provider.upload(payload, task.destination_path)
        except (BackupError, OSError) as e:
            self._record_failure(task, str(e), persist)
            raise
        except Exception as e:
            message = f"task panic: {e}"
            log.exception(message)
            self._record_failure(task, message, persist)
            raise TaskPanicError(message) from e

        if execution.timed_out:
            # The ceiling fired while the upload was in flight
            self._record_timeout(task, persist)
            raise TaskTimeoutError(self._timeout_message(task))

        self._set_status(task, TaskStatus.COMPLETED, persist=persist)

    def _prepare_payload(self, task: BackupTask, stack: ExitStack, log: TaskLogger) -> Path:
        """Encrypt then compress the source as requested.

        Artifacts live in a scratch directory removed when ``stack`` closes.
        """
        payload = Path(task.source_path)
        if not (task.encrypt or task.compress):
            return payload

        scratch = Path(stack.enter_context(tempfile.TemporaryDirectory(prefix="cloud-backup-")))

        if task.encrypt:
            key = self._resolve_key(task)
            try:
                with TimedOperation(log, f"encryption of {payload.name}", "DEBUG"):
                    if payload.is_dir():
                        payload = FileHelper.package_directory(payload, scratch)
                    manager = EncryptionManager(key, iterations=self.settings.kdf_iterations)
                    payload = manager.encrypt_file(payload, scratch)
            except (OSError, ValueError) as e:
                raise TransformError(f"could not encrypt backup task: {e}") from e
            log.info("File encrypted successfully")

        if task.compress:
            try:
                with TimedOperation(log, f"compression of {payload.name}", "DEBUG"):
                    payload = FileHelper.compress(payload, scratch)
            except (OSError, ValueError) as e:
                raise TransformError(f"could not compress backup task: {e}") from e
            log.info(f"File compressed successfully ({FileHelper.format_file_size(payload.stat().st_size)})")

        return payload

    def _resolve_key(self, task: BackupTask) -> str:
        """Return the task's key, generating and escrowing one if it has none."""
        if task.encryption_key:
            return task.encryption_key

        entry = f"{TASK_KEY_PREFIX}{task.id}"
        try:
            return self.vault.get_credential(entry).secret
        except CredentialNotFoundError:
            pass

        logger.info(f"No encryption key provided for task {task.id}, generating random key")
        key = EncryptionManager.generate_key()
        self.vault.store_credential(Credential(provider=entry, secret=key))
        return key

    def _set_status(self, task: BackupTask, status: TaskStatus,
                    error_message: Optional[str] = None, persist: bool = True):
        """Apply a transition to the live task and persist it.

        The live task is rolled back if persisting fails, so the next attempt
        starts from the same status.
        """
        previous = (task.status, task.error_message)
        task.transition(status, error_message)
        if not persist:
            return
        try:
            self.store.update_status(task.id, task.status, task.error_message)
        except TaskStoreError:
            task.status, task.error_message = previous
            raise

    def _record_failure(self, task: BackupTask, message: str, persist: bool):
        if not task.can_transition(TaskStatus.FAILED):
            return
        task.transition(TaskStatus.FAILED, message)
        if persist:
            try:
                self.store.update_status(task.id, TaskStatus.FAILED, message)
            except TaskStoreError as e:
                logger.error(f"Failed to record failure of task {task.id}: {e}")

    @staticmethod
    def _timeout_message(task: BackupTask) -> str:
        return f"backup task {task.id} timed out"

    def _record_timeout(self, task: BackupTask, persist: bool):
        message = self._timeout_message(task)
        if task.can_transition(TaskStatus.FAILED):
            task.transition(TaskStatus.FAILED, message)
        else:
            task.error_message = message
        if persist:
            try:
                self.store.update_status(task.id, TaskStatus.FAILED, message)
            except TaskStoreError as e:
                logger.error(f"Failed to record timeout of task {task.id}: {e}")

    def _expire(self, execution: _Execution, persist: bool):
        """Timer / scheduler callback: mark timed out and abort the retry loop."""
        logger.error(f"Backup task {execution.task_id} exceeded its time limit")
        execution.timed_out = True
        execution.cancel_event.set()
        if persist:
            try:
                self.store.update_status(
                    execution.task_id, TaskStatus.FAILED, f"backup task {execution.task_id} timed out"
                )
            except BackupError as e:
                logger.error(f"Failed to record timeout of task {execution.task_id}: {e}")

    def _register_execution(self, task_id: str) -> _Execution:
        execution = _Execution(task_id)
        with self._lock:
            # Transient per-file tasks have unique ids, stored tasks run once at a time
            if task_id in self._executions:
                raise TaskStateError(f"task {task_id} is already running")
            self._executions[task_id] = execution
        return execution

    def _unregister_execution(self, task_id: str, execution: _Execution):
        with self._lock:
            if self._executions.get(task_id) is execution:
                del self._executions[task_id]

    # Continuous sync

    def _state_file(self, task_id: str) -> Path:
        return self.settings.resolved_state_dir / f"sync_state_{task_id}.json"

    def _run_sync(self, task: BackupTask):
        """Watch the source folder and upload changed files until stopped."""
        log = TaskLogger(logger, task.id, mode="sync")
        log.info(f"Starting sync task for folder: {task.source_path}")

        engine_kwargs = {}
        if self._observer_factory is not None:
            engine_kwargs["observer_factory"] = self._observer_factory
        engine = FolderSyncEngine(task.source_path, SyncStateStore(self._state_file(task.id)), **engine_kwargs)
        session = _SyncSession(task, engine)

        with self._lock:
            if task.id in self._syncs:
                raise TaskStateError(f"task {task.id} is already syncing")
            self._syncs[task.id] = session

        try:
            self._set_status(task, TaskStatus.SYNCING)
            try:
                key = self._resolve_key(task) if task.encrypt else None
                engine.start()
            except BackupError as e:
                self._record_failure(task, str(e), True)
                raise
            except OSError as e:
                message = f"could not watch {task.source_path}: {e}"
                self._record_failure(task, message, True)
                raise SyncError(message) from e
            except Exception as e:
                message = f"task panic: {e}"
                log.exception(message)
                self._record_failure(task, message, True)
                raise TaskPanicError(message) from e

            self._consume(session, key, log)
        finally:
            engine.stop()
            with self._lock:
                self._syncs.pop(task.id, None)

        self._set_status(task, TaskStatus.COMPLETED)
        log.info("Sync task stopped")

    def _consume(self, session: _SyncSession, key: Optional[str], log: TaskLogger):
        """Upload queued paths until stopped, then drain what is left."""
        engine = session.engine
        poll_interval = self.settings.sync.poll_interval

        while not session.stop_event.is_set():
            path = engine.next_change(timeout=poll_interval)
            if path is not None:
                self._sync_file(session.task, engine, path, key, log)

        engine.stop()
        while True:
            path = engine.next_change(timeout=0)
            if path is None:
                break
            self._sync_file(session.task, engine, path, key, log)

    def _sync_file(self, task: BackupTask, engine: FolderSyncEngine, path: str,
                   key: Optional[str], log: TaskLogger):
        try:
            relative = engine.relative_path(path)
        except ValueError as e:
            log.error(f"Failed to get relative path of {path}: {e}")
            return

        file_task = task.spawn_file_task(path, FileHelper.join_remote_path(task.destination_path, relative))
        file_task.encryption_key = key
        try:
            self.execute_task(file_task, persist=False)
        except BackupError as e:
            log.error(f"Failed to upload file {path}: {e}")
        else:
            log.info(f"Successfully synced file: {relative}")

    def stop_sync(self, task_or_id: Union[BackupTask, str]) -> bool:
        """Ask a running sync task to stop.

        The task becomes completed once its loop has drained the queue.
        Calling this for a task that is not syncing does nothing.

        Returns:
            True if a running sync was signalled
        """
        task_id = task_or_id.id if isinstance(task_or_id, BackupTask) else task_or_id
        with self._lock:
            session = self._syncs.get(task_id)
        if session is None:
            return False
        session.stop_event.set()
        logger.info(f"Stop requested for sync task {task_id}")
        return True

    def is_syncing(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._syncs

    def shutdown(self, wait: bool = True):
        """Stop sync tasks, cancel retries and shut the worker pool down."""
        with self._lock:
            sessions = list(self._syncs.values())
            executions = list(self._executions.values())
        for session in sessions:
            session.stop_event.set()
        for execution in executions:
            execution.cancel_event.set()
        self._executor.shutdown(wait=wait)
