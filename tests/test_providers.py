"""Tests for the provider registry, the local provider and file helpers."""

import tarfile

import pytest

from cloud_backup.auth.vault import Credential
from cloud_backup.destinations.base import StorageProvider
from cloud_backup.destinations.local import LocalProvider
from cloud_backup.destinations.registry import ProviderRegistry, default_registry
from cloud_backup.exceptions import ProviderError, UnsupportedProviderError, ValidationError
from cloud_backup.utils.file_utils import FileHelper


@pytest.fixture
def provider(tmp_path):
    return LocalProvider(Credential(provider="local", key=str(tmp_path / "remote")))


class TestFileHelper:
    """Tests for FileHelper."""

    @pytest.mark.parametrize("size,expected", [
        (0, "0 B"),
        (512, "512.0 B"),
        (2048, "2.0 KB"),
        (5 * 1024 ** 3, "5.0 GB"),
    ])
    def test_format_file_size(self, size, expected):
        assert FileHelper.format_file_size(size) == expected

    @pytest.mark.parametrize("base,relative,expected", [
        ("", "a.txt", "a.txt"),
        ("/backups", "sub/b.txt", "/backups/sub/b.txt"),
        ("backups/", "/a.txt", "backups/a.txt"),
        ("backups", "sub\\c.txt", "backups/sub/c.txt"),
    ])
    def test_join_remote_path(self, base, relative, expected):
        assert FileHelper.join_remote_path(base, relative) == expected

    def test_walk_files_is_sorted(self, source_dir):
        assert [rel for _, rel in FileHelper.walk_files(source_dir)] == ["a.txt", "sub/b.txt"]

    def test_compress_directory(self, source_dir, tmp_path):
        out = tmp_path / "out"
        out.mkdir()

        archive = FileHelper.compress(source_dir, out)

        assert archive.name == "folder.tar.gz"
        with tarfile.open(archive, "r:gz") as tar:
            assert sorted(tar.getnames()) == ["a.txt", "sub/b.txt"]

    def test_package_single_file(self, source_file, tmp_path):
        archive = FileHelper.package_directory(source_file, tmp_path)

        with tarfile.open(archive) as tar:
            assert tar.getnames() == ["a.txt"]

    def test_compress_missing_source(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            FileHelper.compress(tmp_path / "missing", tmp_path)


class TestProviderRegistry:
    """Tests for ProviderRegistry."""

    def test_create_registered(self, tmp_path):
        registry = ProviderRegistry()
        registry.register("local", LocalProvider)

        provider = registry.create("local", Credential(provider="local", key=str(tmp_path)))

        assert isinstance(provider, LocalProvider)
        assert "local" in registry

    def test_unknown_provider(self):
        with pytest.raises(UnsupportedProviderError, match="unsupported provider dropbox"):
            ProviderRegistry().create("dropbox", Credential(provider="dropbox"))

    def test_unregister(self):
        registry = ProviderRegistry()
        registry.register("local", LocalProvider)
        registry.unregister("local")
        assert registry.names() == []

    def test_default_registry(self):
        assert default_registry().names() == ["azure_blob", "gdrive", "local", "onedrive", "s3"]


class TestLocalProvider:
    """Tests for LocalProvider."""

    def test_requires_root(self):
        with pytest.raises(ValidationError) as exc_info:
            LocalProvider(Credential(provider="local"))

        assert not exc_info.value.retryable

    def test_upload_file(self, provider, source_file):
        provider.upload(source_file, "/backups/a.txt")

        assert (provider.base_path / "backups" / "a.txt").read_text() == "hello backup"

    def test_upload_directory(self, provider, source_dir):
        provider.upload(source_dir, "nightly")

        assert (provider.base_path / "nightly" / "a.txt").read_text() == "alpha"
        assert (provider.base_path / "nightly" / "sub" / "b.txt").read_text() == "beta"

    def test_upload_without_destination_uses_name(self, provider, source_file):
        provider.upload(source_file, "")

        assert (provider.base_path / "a.txt").exists()

    def test_refuses_parent_references(self, provider, source_file):
        with pytest.raises(ValidationError, match="escapes"):
            provider.upload(source_file, "../outside.txt")

    def test_list_and_download(self, provider, source_dir, tmp_path):
        provider.upload(source_dir, "nightly")

        entries = provider.list_files("nightly")
        assert [(e.name, e.is_folder) for e in entries] == [("a.txt", False), ("sub", True)]
        assert entries[0].id == "nightly/a.txt"
        assert entries[0].size == len("alpha")

        target = tmp_path / "restore" / "a.txt"
        provider.download(target, entries[0].id)
        assert target.read_text() == "alpha"

    def test_download_missing(self, provider, tmp_path):
        provider.authenticate()
        with pytest.raises(ProviderError, match="not found"):
            provider.download(tmp_path / "x", "missing.txt")

    def test_list_missing_folder(self, provider):
        provider.authenticate()
        with pytest.raises(ProviderError):
            provider.list_files("missing")

    def test_upload_pairs(self, source_dir):
        pairs = list(StorageProvider.iter_upload_pairs(source_dir, "/dest"))
        assert [remote for _, remote in pairs] == ["/dest/a.txt", "/dest/sub/b.txt"]
