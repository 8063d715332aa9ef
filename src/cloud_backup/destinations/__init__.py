"""Storage providers backups are uploaded to."""

from .base import RemoteFile, StorageProvider
from .registry import ProviderRegistry, default_registry

__all__ = ["ProviderRegistry", "RemoteFile", "StorageProvider", "default_registry"]
