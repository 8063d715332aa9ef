"""Local filesystem storage provider.

Copies backups into a directory, for example a mounted NAS or USB drive.
The credential ``key`` is the root directory.
"""

import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import List

from ..auth.vault import Credential
from ..exceptions import ProviderError, ValidationError
from .base import RemoteFile, StorageProvider

logger = logging.getLogger(__name__)


class LocalProvider(StorageProvider):
    """Local filesystem storage provider."""

    name = "local"

    def __init__(self, credential: Credential):
        super().__init__(credential)
        if not credential.key:
            raise ValidationError("local provider needs a root directory in the credential key")
        self.base_path = Path(credential.key).expanduser()

    def _resolve(self, remote_path: str) -> Path:
        """Map a remote path below the root, refusing to escape it."""
        relative = PurePosixPath(remote_path.replace("\\", "/").lstrip("/"))
        if ".." in relative.parts:
            raise ValidationError(f"remote path escapes the storage root: {remote_path}")
        return self.base_path.joinpath(*relative.parts)

    def authenticate(self) -> None:
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ProviderError(f"cannot prepare storage root {self.base_path}: {e}") from e

    def upload(self, local_path: Path, remote_path: str) -> None:
        self.authenticate()
        for file_path, target in self.iter_upload_pairs(local_path, remote_path):
            dest = self._resolve(target)
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
                tmp = dest.with_name(f".{dest.name}.part")
                shutil.copy2(file_path, tmp)
                tmp.replace(dest)
            except OSError as e:
                raise ProviderError(f"cannot copy {file_path} to {dest}: {e}") from e
            logger.debug(f"Copied {file_path} -> {dest}")

    def download(self, local_path: Path, remote_id: str) -> None:
        source = self._resolve(remote_id)
        if not source.is_file():
            raise ProviderError(f"remote file not found: {remote_id}")
        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, local_path)
        except OSError as e:
            raise ProviderError(f"cannot copy {source} to {local_path}: {e}") from e

    def list_files(self, remote_folder_id: str) -> List[RemoteFile]:
        folder = self._resolve(remote_folder_id or "")
        if not folder.is_dir():
            raise ProviderError(f"remote folder not found: {remote_folder_id}")

        files = []
        for entry in sorted(folder.iterdir()):
            if entry.name.endswith(".part"):
                continue
            stat = entry.stat()
            files.append(RemoteFile(
                id=entry.relative_to(self.base_path).as_posix(),
                name=entry.name,
                size=0 if entry.is_dir() else stat.st_size,
                modified_time=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                is_folder=entry.is_dir(),
            ))
        return files
