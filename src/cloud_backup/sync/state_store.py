"""Durable fingerprints of watched files for change detection."""

import hashlib
import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Optional, Set, Union

from ..utils.locks import ReadWriteLock

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass
class FileFingerprint:
    """Content hash and metadata of one watched file."""
    path: str
    hash: str
    last_modified: float  # POSIX timestamp
    size: int


def calculate_file_hash(file_path: PathLike, chunk_size: int = 65536) -> str:
    """Calculate SHA-256 hash of a file.

    Args:
        file_path: Path to the file
        chunk_size: Size of chunks to read

    Returns:
        SHA-256 hash as hex string
    """
    digest = hashlib.sha256()

    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)

    return digest.hexdigest()


def compute_fingerprint(file_path: PathLike) -> FileFingerprint:
    """Stat and hash a file."""
    stat = os.stat(file_path)
    return FileFingerprint(
        path=str(file_path),
        hash=calculate_file_hash(file_path),
        last_modified=stat.st_mtime,
        size=stat.st_size,
    )


class SyncStateStore:
    """Map of watched path to :class:`FileFingerprint`, persisted as JSON."""

    def __init__(self, state_file: Path):
        """Initialize sync state store.

        Args:
            state_file: Path to the JSON state file
        """
        self.state_file = Path(state_file)
        self._files: Dict[str, FileFingerprint] = {}
        self._lock = ReadWriteLock()

    def load(self):
        """Load fingerprints from disk. A missing file means an empty store."""
        with self._lock.write_locked():
            if not self.state_file.exists():
                self._files = {}
                return

            try:
                with open(self.state_file, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                self._files = {
                    path: FileFingerprint(**info) for path, info in data.items()
                }
            except (json.JSONDecodeError, TypeError, AttributeError) as e:
                # Unreadable state only costs a full re-upload
                logger.warning(f"Discarding unreadable sync state {self.state_file}: {e}")
                self._files = {}
        logger.debug(f"Loaded {len(self._files)} fingerprints from {self.state_file}")

    def save(self):
        """Write fingerprints to disk atomically."""
        with self._lock.read_locked():
            data = {path: asdict(info) for path, info in self._files.items()}

        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.state_file.parent), prefix=".sync-state-", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.state_file)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.debug(f"Saved {len(data)} fingerprints to {self.state_file}")

    def get(self, file_path: PathLike) -> Optional[FileFingerprint]:
        """Get the stored fingerprint of a file, if any."""
        with self._lock.read_locked():
            return self._files.get(str(file_path))

    def update(self, file_path: PathLike) -> Optional[FileFingerprint]:
        """Recompute and store the fingerprint of a file.

        Directories are ignored.

        Returns:
            The new fingerprint, or None for directories
        """
        if os.path.isdir(file_path):
            return None

        fingerprint = compute_fingerprint(file_path)
        with self._lock.write_locked():
            self._files[str(file_path)] = fingerprint
        return fingerprint

    def put(self, fingerprint: FileFingerprint):
        """Store a precomputed fingerprint."""
        with self._lock.write_locked():
            self._files[fingerprint.path] = fingerprint

    def has_changed(self, file_path: PathLike) -> bool:
        """Check whether a file differs from its stored fingerprint.

        A file without a stored fingerprint has changed. Otherwise the content
        hash is only recomputed when the modification time advanced, and the
        file has changed only if that hash differs.

        Raises:
            OSError: If the file cannot be read
        """
        stored = self.get(file_path)
        if stored is None:
            return True

        stat = os.stat(file_path)
        if stat.st_mtime > stored.last_modified:
            return calculate_file_hash(file_path) != stored.hash

        return False

    def remove(self, file_path: PathLike):
        """Forget a file."""
        with self._lock.write_locked():
            self._files.pop(str(file_path), None)

    def tracked_files(self) -> Set[str]:
        """Get set of all tracked file paths."""
        with self._lock.read_locked():
            return set(self._files)

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._files)
