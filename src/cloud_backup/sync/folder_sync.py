"""Folder watching and change detection for continuous sync.

The engine walks a root folder once, queueing every file that differs from
the persisted fingerprints, then follows filesystem notifications and queues
files as they change. A consumer drains :attr:`FolderSyncEngine.upload_queue`.
"""

import logging
import os
import queue
import stat
import threading
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Set, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..exceptions import ValidationError
from .state_store import SyncStateStore

logger = logging.getLogger(__name__)


class EngineState(str, Enum):
    """Lifecycle of a folder sync engine."""
    IDLE = "idle"
    WATCHING = "watching"
    STOPPED = "stopped"


class _ChangeHandler(FileSystemEventHandler):
    """Forward create, write and move-in notifications to the engine."""

    def __init__(self, engine: "FolderSyncEngine"):
        super().__init__()
        self._engine = engine

    def on_created(self, event: FileSystemEvent):
        self._engine.handle_change(event.src_path)

    def on_modified(self, event: FileSystemEvent):
        self._engine.handle_change(event.src_path)

    def on_moved(self, event: FileSystemEvent):
        self._engine.handle_change(event.dest_path)


class FolderSyncEngine:
    """Watch one folder and queue changed files for upload."""

    def __init__(
        self,
        root: Union[str, Path],
        state_store: SyncStateStore,
        observer_factory: Callable[[], Observer] = Observer,
    ):
        """Initialize folder sync engine.

        Args:
            root: Folder to watch
            state_store: Fingerprint store used for change detection
            observer_factory: Builds the filesystem observer
        """
        self.root = Path(root).absolute()
        self.state_store = state_store
        self._observer_factory = observer_factory
        self._observer = None
        self._handler = _ChangeHandler(self)
        self._queue: "queue.Queue[str]" = queue.Queue()
        self._watched_dirs: Set[str] = set()
        self._watch_lock = threading.Lock()
        self._state = EngineState.IDLE
        self._state_lock = threading.Lock()

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def upload_queue(self) -> "queue.Queue[str]":
        """Paths of changed files, in the order they were detected."""
        return self._queue

    @property
    def watched_directories(self) -> Set[str]:
        with self._watch_lock:
            return set(self._watched_dirs)

    def start(self):
        """Run the initial scan and subscribe to filesystem notifications.

        Raises:
            ValidationError: If the root is not a directory
            RuntimeError: If the engine was already started
        """
        with self._state_lock:
            if self._state != EngineState.IDLE:
                raise RuntimeError(f"sync engine for {self.root} is already {self._state.value}")
            if not self.root.is_dir():
                raise ValidationError(f"sync source is not a directory: {self.root}")

            self.state_store.load()
            self._observer = self._observer_factory()

            queued = self._scan(self.root)
            self._observer.start()
            self._state = EngineState.WATCHING

        logger.info(f"Watching {self.root} ({queued} files queued by initial scan)")

    def _scan(self, folder: Path) -> int:
        """Walk a folder, registering directories and queueing changed files."""
        queued = 0
        for dirpath, dirnames, filenames in os.walk(folder):
            dirnames.sort()
            self._watch_directory(dirpath)

            for name in sorted(filenames):
                path = os.path.join(dirpath, name)
                try:
                    if self.state_store.has_changed(path):
                        self._queue.put(path)
                        queued += 1
                    # Unchanged files are refreshed too so metadata stays current
                    self.state_store.update(path)
                except OSError as e:
                    logger.warning(f"Skipping unreadable file {path}: {e}")
        return queued

    def _watch_directory(self, path: str):
        with self._watch_lock:
            if path in self._watched_dirs:
                return
            self._watched_dirs.add(path)
        self._observer.schedule(self._handler, path, recursive=False)
        logger.debug(f"Registered watch on {path}")

    def handle_change(self, path: Union[str, bytes]):
        """React to a create or write notification for ``path``.

        Directories are registered with the watcher (and files already inside
        them are examined). Files are queued when their content changed.
        """
        if self._state == EngineState.STOPPED:
            return

        path = os.fsdecode(path)
        try:
            mode = os.stat(path).st_mode
        except OSError:
            # Gone before we got to it
            return

        if stat.S_ISDIR(mode):
            self._watch_directory(path)
            for entry in sorted(os.listdir(path)):
                self.handle_change(os.path.join(path, entry))
            return

        try:
            if self.state_store.has_changed(path):
                self.state_store.update(path)
                self._queue.put(path)
                logger.debug(f"Queued changed file {path}")
        except OSError as e:
            logger.warning(f"Could not examine {path}: {e}")

    def stop(self) -> bool:
        """Unsubscribe from notifications and flush the fingerprints.

        Only the first call has an effect.

        Returns:
            True if this call stopped the engine
        """
        with self._state_lock:
            if self._state == EngineState.STOPPED:
                return False
            was_watching = self._state == EngineState.WATCHING
            self._state = EngineState.STOPPED

        if self._observer is not None:
            self._observer.stop()
            if self._observer.is_alive():
                self._observer.join()

        # An engine that never started has nothing loaded worth flushing
        if was_watching:
            self.state_store.save()
        logger.info(f"Stopped watching {self.root}")
        return True

    def relative_path(self, path: Union[str, Path]) -> str:
        """Path of ``path`` relative to the watched root, with POSIX separators."""
        return Path(path).absolute().relative_to(self.root).as_posix()

    def next_change(self, timeout: Optional[float] = None) -> Optional[str]:
        """Pop the next queued path, or None if nothing arrived within ``timeout``."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
