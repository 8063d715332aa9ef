"""Storage provider contract consumed by the backup engine."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

from ..auth.vault import Credential
from ..utils.file_utils import FileHelper


@dataclass
class RemoteFile:
    """A file or folder as reported by a provider listing."""
    id: str
    name: str
    size: int = 0
    modified_time: Optional[datetime] = None
    is_folder: bool = False


class StorageProvider(ABC):
    """Abstract base class for remote storage backends.

    Implementations raise :class:`~cloud_backup.exceptions.ProviderError` for
    every authentication or transfer failure; the engine only looks at
    success, failure and the error text.
    """

    name: str = ""

    def __init__(self, credential: Credential):
        """Initialize a storage provider.

        Args:
            credential: Key / secret / redirect triple from the vault
        """
        self.credential = credential

    @abstractmethod
    def authenticate(self) -> None:
        """Establish a session with the backend."""

    @abstractmethod
    def upload(self, local_path: Path, remote_path: str) -> None:
        """Upload a file, or every file of a directory tree, to ``remote_path``.

        Args:
            local_path: File or directory to upload
            remote_path: Destination path on the backend
        """

    @abstractmethod
    def download(self, local_path: Path, remote_id: str) -> None:
        """Download the remote object ``remote_id`` into ``local_path``."""

    @abstractmethod
    def list_files(self, remote_folder_id: str) -> List[RemoteFile]:
        """List the entries of a remote folder."""

    @staticmethod
    def iter_upload_pairs(local_path: Union[str, Path], remote_path: str) -> Iterator[Tuple[Path, str]]:
        """Expand an upload request into (local file, remote path) pairs.

        A single file maps to ``remote_path`` itself; a directory maps each
        contained file to ``remote_path`` joined with its relative path.
        """
        local_path = Path(local_path)
        if local_path.is_dir():
            for file_path, relative in FileHelper.walk_files(local_path):
                yield file_path, FileHelper.join_remote_path(remote_path, relative)
        else:
            yield local_path, remote_path or local_path.name
