"""Tests for task creation and the execution pipeline."""

import io
import json
import tarfile
import tempfile
import threading
from pathlib import Path

import pytest

from cloud_backup.auth.vault import Credential
from cloud_backup.destinations.local import LocalProvider
from cloud_backup.exceptions import (
    BackupError,
    CredentialNotFoundError,
    ProviderError,
    RetryExhaustedError,
    TaskNotFoundError,
    TaskPanicError,
    TaskTimeoutError,
    UnsupportedProviderError,
    ValidationError,
)
from cloud_backup.tasks.manager import TASK_KEY_PREFIX, TaskManager
from cloud_backup.tasks.models import BackupTask, TaskStatus
from cloud_backup.tasks.storage import TaskStore
from cloud_backup.utils.encryption import EncryptionManager

from conftest import TEST_ITERATIONS


def _task(source, **kwargs) -> BackupTask:
    fields = {"source_path": str(source), "provider": "stub", "destination_path": "/backups"}
    fields.update(kwargs)
    return BackupTask(**fields)


class TestCreateTask:
    """Tests for creating and listing tasks."""

    def test_create_then_list_returns_pending_task(self, manager, source_file):
        """A created task is listed with matching fields and pending status."""
        created = manager.create_task(_task(source_file, schedule="0 2 * * *", compress=True))

        tasks = manager.list_tasks()
        assert len(tasks) == 1
        stored = tasks[0]
        assert stored.id == created.id
        assert stored.source_path == str(source_file)
        assert stored.provider == "stub"
        assert stored.destination_path == "/backups"
        assert stored.schedule == "0 2 * * *"
        assert stored.compress is True
        assert stored.status == TaskStatus.PENDING

    def test_each_task_gets_a_fresh_id(self, manager, source_file):
        first = manager.create_task(_task(source_file))
        second = manager.create_task(_task(source_file))
        assert first.id and second.id and first.id != second.id

    @pytest.mark.parametrize("fields", [
        {"source_path": ""},
        {"provider": ""},
    ])
    def test_missing_required_field_is_rejected(self, manager, source_file, fields):
        with pytest.raises(ValidationError):
            manager.create_task(_task(source_file, **fields))
        assert manager.list_tasks() == []

    def test_delete_task(self, manager, source_file):
        task = manager.create_task(_task(source_file))
        manager.delete_task(task.id)
        assert manager.list_tasks() == []

    def test_delete_unknown_task(self, manager):
        with pytest.raises(TaskNotFoundError, match="not found"):
            manager.delete_task("missing")


class TestExecuteTask:
    """Tests for the per-execution pipeline."""

    def test_successful_upload_completes(self, manager, recorder, source_file):
        """A provider that always succeeds leaves the task completed without error."""
        task = manager.create_task(_task(source_file))
        manager.execute_task(task)

        assert task.status == TaskStatus.COMPLETED
        assert task.error_message is None
        stored = manager.get_task(task.id)
        assert stored.status == TaskStatus.COMPLETED
        assert not stored.error_message
        assert recorder.uploads == [("/backups", {"a.txt": b"hello backup"})]

    def test_non_retryable_failure_makes_one_attempt(self, manager, recorder, source_file):
        recorder.always_fail = BackupError("quota policy violated")
        task = manager.create_task(_task(source_file))

        with pytest.raises(BackupError, match="quota policy violated"):
            manager.execute_task(task)

        assert recorder.calls == 1
        stored = manager.get_task(task.id)
        assert stored.status == TaskStatus.FAILED
        assert stored.error_message == "quota policy violated"

    @pytest.mark.parametrize("failures", [1, 2])
    def test_transient_failures_then_success(self, manager, recorder, source_file, failures):
        """k retryable failures then success: completed after k+1 attempts."""
        recorder.outcomes = [ProviderError("connection reset")] * failures
        task = manager.create_task(_task(source_file))

        manager.execute_task(task)

        assert recorder.calls == failures + 1
        assert manager.get_task(task.id).status == TaskStatus.COMPLETED
        assert manager.get_task(task.id).error_message is None

    def test_exhausted_retries_record_last_error(self, manager, recorder, source_file):
        recorder.always_fail = ProviderError("service unavailable")
        task = manager.create_task(_task(source_file))

        with pytest.raises(RetryExhaustedError, match="after 3 attempts: service unavailable"):
            manager.execute_task(task)

        assert recorder.calls == 3
        stored = manager.get_task(task.id)
        assert stored.status == TaskStatus.FAILED
        assert stored.error_message == "service unavailable"

    def test_missing_credentials_fail_fast(self, manager, recorder, registry, stub_factory, source_file):
        registry.register("other", stub_factory)
        task = manager.create_task(_task(source_file, provider="other"))

        with pytest.raises(CredentialNotFoundError):
            manager.execute_task(task)

        assert recorder.calls == 0
        stored = manager.get_task(task.id)
        assert stored.status == TaskStatus.FAILED
        assert stored.error_message == "no credentials found for provider: other"

    def test_unsupported_provider_fails_fast(self, manager, vault, source_file):
        vault.store_credential(Credential(provider="dropbox", key="id", secret="sec"))
        task = manager.create_task(_task(source_file, provider="dropbox"))

        with pytest.raises(UnsupportedProviderError):
            manager.execute_task(task)

        assert manager.get_task(task.id).error_message == "unsupported provider dropbox"

    def test_misconfigured_local_root_is_not_retried(self, manager, registry, vault, source_file):
        registry.register("local", LocalProvider)
        vault.store_credential(Credential(provider="local"))
        task = manager.create_task(_task(source_file, provider="local"))

        with pytest.raises(ValidationError, match="root directory"):
            manager.execute_task(task)

        stored = manager.get_task(task.id)
        assert stored.status == TaskStatus.FAILED
        assert "root directory" in stored.error_message

    def test_missing_source_is_not_retried(self, manager, recorder, tmp_path):
        task = manager.create_task(_task(tmp_path / "nope.txt"))

        with pytest.raises(ValidationError, match="does not exist"):
            manager.execute_task(task)
        assert recorder.calls == 0

    def test_unexpected_error_becomes_task_panic(self, manager, recorder, source_file):
        recorder.always_fail = RuntimeError("boom")
        task = manager.create_task(_task(source_file))

        with pytest.raises(TaskPanicError, match="task panic: boom"):
            manager.execute_task(task)

        assert recorder.calls == 1
        stored = manager.get_task(task.id)
        assert stored.status == TaskStatus.FAILED
        assert stored.error_message == "task panic: boom"

    def test_failed_task_can_run_again(self, manager, recorder, source_file):
        recorder.outcomes = [BackupError("first run fails")]
        task = manager.create_task(_task(source_file))
        with pytest.raises(BackupError):
            manager.execute_task(task)

        manager.execute_task(task)
        assert manager.get_task(task.id).status == TaskStatus.COMPLETED

    def test_upload_timeout_marks_task_failed(self, settings, vault, registry, recorder, source_file):
        settings.timeouts.upload = 0.05
        recorder.delay = 0.3
        manager = TaskManager(TaskStore(settings.task_file), vault, registry, settings)
        try:
            task = manager.create_task(_task(source_file))
            with pytest.raises(TaskTimeoutError):
                manager.execute_task(task)
        finally:
            manager.shutdown()

        stored = manager.get_task(task.id)
        assert stored.status == TaskStatus.FAILED
        assert stored.error_message == f"backup task {task.id} timed out"

    def test_submit_runs_tasks_concurrently(self, manager, recorder, source_file):
        tasks = [manager.create_task(_task(source_file, destination_path=f"/b{i}")) for i in range(3)]

        futures = [manager.submit(task) for task in tasks]
        for future in futures:
            future.result(timeout=10)

        assert sorted(remote for remote, _ in recorder.uploads) == ["/b0", "/b1", "/b2"]
        assert all(t.status == TaskStatus.COMPLETED for t in manager.list_tasks())

    def test_expired_submission_does_not_run_late(self, settings, vault, registry, recorder, source_file):
        settings.max_workers = 1
        recorder.delay = 0.3
        manager = TaskManager(TaskStore(settings.task_file), vault, registry, settings)
        try:
            blocker = manager.create_task(_task(source_file, destination_path="/b"))
            queued = manager.create_task(_task(source_file, destination_path="/q"))
            running = manager.submit(blocker)
            waiting = manager.submit(queued)

            assert manager.expire_task(queued.id) is True
            with pytest.raises(TaskTimeoutError):
                waiting.result(timeout=5)
            running.result(timeout=5)
        finally:
            manager.shutdown()

        stored = manager.get_task(queued.id)
        assert stored.status == TaskStatus.FAILED
        assert stored.error_message == f"backup task {queued.id} timed out"
        assert [remote for remote, _ in recorder.uploads] == ["/b"]


class TestPayloadTransforms:
    """Tests for encryption and compression before upload."""

    def test_encrypt_with_supplied_key(self, manager, recorder, source_file):
        task = manager.create_task(_task(source_file, encrypt=True, encryption_key="secret-key"))
        manager.execute_task(task)

        (remote, contents), = recorder.uploads
        assert list(contents) == ["a.txt.encrypted"]
        plaintext = EncryptionManager("secret-key", iterations=TEST_ITERATIONS).decrypt(
            contents["a.txt.encrypted"]
        )
        assert plaintext == b"hello backup"

    def test_generated_key_is_escrowed_not_persisted(self, manager, recorder, vault, settings, source_file):
        task = manager.create_task(_task(source_file, encrypt=True))
        manager.execute_task(task)

        escrowed = vault.get_credential(f"{TASK_KEY_PREFIX}{task.id}").secret
        (_, contents), = recorder.uploads
        plaintext = EncryptionManager(escrowed, iterations=TEST_ITERATIONS).decrypt(
            contents["a.txt.encrypted"]
        )
        assert plaintext == b"hello backup"

        records = json.loads(Path(settings.task_file).read_text())
        assert records[0]["encryption_key"] is None
        assert escrowed not in Path(settings.task_file).read_text()

    def test_escrowed_key_is_reused_and_dropped_on_delete(self, manager, recorder, vault, source_file):
        task = manager.create_task(_task(source_file, encrypt=True, recurring=True))
        manager.execute_task(task)
        manager.execute_task(task)

        key = vault.get_credential(f"{TASK_KEY_PREFIX}{task.id}").secret
        encryption = EncryptionManager(key, iterations=TEST_ITERATIONS)
        for _, contents in recorder.uploads:
            assert encryption.decrypt(contents["a.txt.encrypted"]) == b"hello backup"

        manager.delete_task(task.id)
        with pytest.raises(CredentialNotFoundError):
            vault.get_credential(f"{TASK_KEY_PREFIX}{task.id}")

    def test_compress_single_file(self, manager, recorder, source_file):
        task = manager.create_task(_task(source_file, compress=True))
        manager.execute_task(task)

        (_, contents), = recorder.uploads
        assert list(contents) == ["a.txt.tar.gz"]
        with tarfile.open(fileobj=io.BytesIO(contents["a.txt.tar.gz"]), mode="r:gz") as tar:
            assert tar.getnames() == ["a.txt"]
            assert tar.extractfile("a.txt").read() == b"hello backup"

    def test_compress_directory_keeps_tree(self, manager, recorder, source_dir):
        task = manager.create_task(_task(source_dir, compress=True))
        manager.execute_task(task)

        (_, contents), = recorder.uploads
        with tarfile.open(fileobj=io.BytesIO(contents["folder.tar.gz"]), mode="r:gz") as tar:
            assert sorted(tar.getnames()) == ["a.txt", "sub/b.txt"]

    def test_encrypt_then_compress_directory(self, manager, recorder, source_dir):
        task = manager.create_task(_task(source_dir, encrypt=True, compress=True, encryption_key="k"))
        manager.execute_task(task)

        (_, contents), = recorder.uploads
        assert list(contents) == ["folder.tar.encrypted.tar.gz"]
        with tarfile.open(fileobj=io.BytesIO(contents["folder.tar.encrypted.tar.gz"]), mode="r:gz") as outer:
            sealed = outer.extractfile("folder.tar.encrypted").read()
        archive = EncryptionManager("k", iterations=TEST_ITERATIONS).decrypt(sealed)
        with tarfile.open(fileobj=io.BytesIO(archive), mode="r:") as inner:
            assert sorted(inner.getnames()) == ["a.txt", "sub/b.txt"]

    def test_directory_upload_without_transform(self, manager, recorder, source_dir):
        task = manager.create_task(_task(source_dir))
        manager.execute_task(task)

        (remote, contents), = recorder.uploads
        assert remote == "/backups"
        assert contents == {"a.txt": b"alpha", "sub/b.txt": b"beta"}

    def test_scratch_files_removed_on_success_and_failure(self, manager, recorder, source_file,
                                                          tmp_path, monkeypatch):
        scratch_root = tmp_path / "scratch"
        scratch_root.mkdir()
        monkeypatch.setattr(tempfile, "tempdir", str(scratch_root))

        ok = manager.create_task(_task(source_file, compress=True, encrypt=True, encryption_key="k"))
        manager.execute_task(ok)
        assert list(scratch_root.iterdir()) == []

        recorder.always_fail = BackupError("rejected")
        bad = manager.create_task(_task(source_file, compress=True))
        with pytest.raises(BackupError):
            manager.execute_task(bad)
        assert list(scratch_root.iterdir()) == []


class TestImmediateScenario:
    """Create a task without a schedule and run it straight away."""

    def test_create_and_execute_immediately(self, settings, vault, registry, stub_factory, recorder, tmp_path):
        source = tmp_path / "tmp" / "a.txt"
        source.parent.mkdir()
        source.write_text("payload")
        vault.store_credential(Credential(provider="gdrive", key="id", secret="sec"))
        registry.register("gdrive", stub_factory)

        manager = TaskManager(TaskStore(settings.task_file), vault, registry, settings)
        try:
            task = manager.create_task(BackupTask(
                source_path=str(source), provider="gdrive", destination_path="/backups"
            ))
            manager.execute_task(task)
        finally:
            manager.shutdown()

        assert manager.get_task(task.id).status == TaskStatus.COMPLETED
        assert recorder.uploads[0][0] == "/backups"


def test_concurrent_create_keeps_every_task(manager, source_file):
    threads = [
        threading.Thread(target=manager.create_task, args=(_task(source_file),)) for _ in range(8)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(manager.list_tasks()) == 8
