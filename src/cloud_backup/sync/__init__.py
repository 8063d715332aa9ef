"""Folder watching and change detection for continuous sync."""

from .folder_sync import EngineState, FolderSyncEngine
from .state_store import FileFingerprint, SyncStateStore

__all__ = ["EngineState", "FileFingerprint", "FolderSyncEngine", "SyncStateStore"]
