"""File utility functions."""

import os
import tarfile
from pathlib import Path, PurePosixPath
from typing import Iterator, Tuple, Union

COMPRESSED_SUFFIX = ".tar.gz"
ARCHIVE_SUFFIX = ".tar"


class FileHelper:
    """Helper class for file operations."""

    @staticmethod
    def format_file_size(size_bytes: int) -> str:
        """Format file size in human readable format.

        Args:
            size_bytes: Size in bytes

        Returns:
            Formatted size string
        """
        if size_bytes == 0:
            return "0 B"

        size_names = ["B", "KB", "MB", "GB", "TB", "PB"]
        i = 0
        size = float(size_bytes)

        while size >= 1024 and i < len(size_names) - 1:
            size /= 1024.0
            i += 1

        return f"{size:.1f} {size_names[i]}"

    @staticmethod
    def compress(source_path: Union[str, Path], output_dir: Path) -> Path:
        """Pack and gzip a file or directory.

        A directory is archived as a tree of its contents; a single file
        becomes an archive with one member.

        Args:
            source_path: File or directory to compress
            output_dir: Directory for the ``.tar.gz`` artifact

        Returns:
            Path of the compressed archive
        """
        return FileHelper._archive(Path(source_path), output_dir, COMPRESSED_SUFFIX, "w:gz")

    @staticmethod
    def package_directory(source_path: Union[str, Path], output_dir: Path) -> Path:
        """Pack a directory into an uncompressed tar archive.

        Args:
            source_path: Directory to pack
            output_dir: Directory for the ``.tar`` artifact

        Returns:
            Path of the archive
        """
        return FileHelper._archive(Path(source_path), output_dir, ARCHIVE_SUFFIX, "w")

    @staticmethod
    def _archive(source_path: Path, output_dir: Path, suffix: str, mode: str) -> Path:
        if not source_path.exists():
            raise FileNotFoundError(f"File not found: {source_path}")

        archive_path = Path(output_dir) / f"{source_path.name}{suffix}"
        with tarfile.open(archive_path, mode) as tar:
            if source_path.is_dir():
                for file_path, arcname in FileHelper.walk_files(source_path):
                    tar.add(str(file_path), arcname=arcname, recursive=False)
            else:
                tar.add(str(source_path), arcname=source_path.name, recursive=False)

        return archive_path

    @staticmethod
    def walk_files(root: Union[str, Path]) -> Iterator[Tuple[Path, str]]:
        """Yield every file below ``root`` with its POSIX path relative to ``root``.

        Args:
            root: Directory to walk

        Yields:
            Tuples of (absolute file path, relative path)
        """
        root = Path(root)
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            for name in sorted(filenames):
                file_path = Path(dirpath) / name
                yield file_path, file_path.relative_to(root).as_posix()

    @staticmethod
    def join_remote_path(base: str, relative: str) -> str:
        """Join a remote destination and a relative path with ``/`` separators.

        Args:
            base: Remote destination, possibly empty
            relative: Relative path (either separator style)

        Returns:
            Joined remote path
        """
        relative = relative.replace('\\', '/').lstrip('/')
        if not base:
            return relative
        return str(PurePosixPath(base.replace('\\', '/')) / relative)
