"""Versioned snapshot store module."""

from .diff import ChangeType, FileChange, compute_changes
from .lock import AdvisoryLock, LockBusy
from .models import FileEntry, HistoryEntry, Snapshot
from .snapshot_store import (
    CorruptSnapshot,
    NoChange,
    SnapshotNotFound,
    SnapshotStore,
    SnapshotStoreError,
    StoreNotInitialized,
)

__all__ = [
    "AdvisoryLock",
    "ChangeType",
    "CorruptSnapshot",
    "FileChange",
    "FileEntry",
    "HistoryEntry",
    "LockBusy",
    "NoChange",
    "Snapshot",
    "SnapshotNotFound",
    "SnapshotStore",
    "SnapshotStoreError",
    "StoreNotInitialized",
    "compute_changes",
]
