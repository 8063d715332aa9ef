"""Shared test fixtures for cloud_backup."""

import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from cloud_backup.auth.vault import Credential, CredentialVault
from cloud_backup.config.settings import (
    EngineSettings,
    LoggingSettings,
    RetrySettings,
    SyncSettings,
)
from cloud_backup.destinations.base import RemoteFile, StorageProvider
from cloud_backup.destinations.registry import ProviderRegistry
from cloud_backup.tasks.manager import TaskManager
from cloud_backup.tasks.storage import TaskStore
from cloud_backup.utils.file_utils import FileHelper

MASTER_PASSWORD = "pw1"
TEST_ITERATIONS = 1000


class FakeObserver:
    """Stands in for a watchdog observer; events are fed through ``handler``."""

    def __init__(self):
        self.handler = None
        self.scheduled: List[tuple] = []
        self.started = False
        self.stopped = False

    def schedule(self, handler, path, recursive=False):
        self.handler = handler
        self.scheduled.append((path, recursive))

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def is_alive(self):
        return False

    def join(self, timeout=None):
        pass


class UploadRecorder:
    """Scripted behaviour shared by every stub provider instance.

    ``outcomes`` is consumed one entry per upload: None succeeds, an
    exception is raised. Once exhausted, uploads succeed unless
    ``always_fail`` is set.
    """

    def __init__(self, outcomes=None, always_fail: Optional[BaseException] = None, delay: float = 0.0):
        self.outcomes = list(outcomes or [])
        self.always_fail = always_fail
        self.delay = delay
        self.calls = 0
        self.uploads: List[tuple] = []
        self._lock = threading.Lock()

    def upload(self, local_path: Path, remote_path: str):
        with self._lock:
            self.calls += 1
            outcome = self.outcomes.pop(0) if self.outcomes else None
        if self.delay:
            time.sleep(self.delay)
        if self.always_fail is not None:
            raise self.always_fail
        if outcome is not None:
            raise outcome

        local_path = Path(local_path)
        if local_path.is_dir():
            contents = {rel: path.read_bytes() for path, rel in FileHelper.walk_files(local_path)}
        else:
            contents = {local_path.name: local_path.read_bytes()}
        with self._lock:
            self.uploads.append((remote_path, contents))


class StubProvider(StorageProvider):
    name = "stub"

    def __init__(self, credential: Credential, recorder: UploadRecorder):
        super().__init__(credential)
        self.recorder = recorder

    def authenticate(self) -> None:
        pass

    def upload(self, local_path: Path, remote_path: str) -> None:
        self.recorder.upload(local_path, remote_path)

    def download(self, local_path: Path, remote_id: str) -> None:
        raise NotImplementedError

    def list_files(self, remote_folder_id: str) -> List[RemoteFile]:
        return []


def wait_for(condition: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll ``condition`` until it holds or ``timeout`` passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


@pytest.fixture
def settings(tmp_path: Path) -> EngineSettings:
    """Settings pointing into tmp_path with fast retries and a cheap KDF."""
    return EngineSettings(
        task_file=tmp_path / "backup_tasks.json",
        config_dir=tmp_path / "config",
        kdf_iterations=TEST_ITERATIONS,
        retry=RetrySettings(initial_delay=0.001, max_delay=0.01, max_attempts=3, jitter=0.0),
        sync=SyncSettings(poll_interval=0.01),
        logging=LoggingSettings(file=None, console=False),
    )


@pytest.fixture
def vault(settings: EngineSettings) -> CredentialVault:
    vault = CredentialVault(
        MASTER_PASSWORD, vault_file=settings.resolved_vault_file, iterations=TEST_ITERATIONS
    )
    vault.store_credential(Credential(provider="stub", key="id", secret="sec"))
    return vault


@pytest.fixture
def recorder() -> UploadRecorder:
    return UploadRecorder()


@pytest.fixture
def stub_factory(recorder: UploadRecorder) -> Callable[[Credential], StubProvider]:
    """Provider factory bound to the shared recorder."""
    return lambda credential: StubProvider(credential, recorder)


@pytest.fixture
def registry(stub_factory) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register("stub", stub_factory)
    return registry


@pytest.fixture
def observers() -> List[FakeObserver]:
    """Every FakeObserver built by the manager under test."""
    return []


@pytest.fixture
def manager(settings, vault, registry, observers):
    def observer_factory():
        observer = FakeObserver()
        observers.append(observer)
        return observer

    manager = TaskManager(
        TaskStore(settings.task_file), vault, registry, settings, observer_factory=observer_factory
    )
    yield manager
    manager.shutdown()


@pytest.fixture
def source_file(tmp_path: Path) -> Path:
    path = tmp_path / "data" / "a.txt"
    path.parent.mkdir(parents=True)
    path.write_text("hello backup")
    return path


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    root = tmp_path / "folder"
    (root / "sub").mkdir(parents=True)
    (root / "a.txt").write_text("alpha")
    (root / "sub" / "b.txt").write_text("beta")
    return root
