"""
Snapshot store models.

Snapshots are immutable once written; these are read-side views of them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


@dataclass(frozen=True)
class FileEntry:
    """
    One captured file.

    Attributes:
        path: Logical path
        content: File content
        checksum: Git blob id of the content
    """
    path: str
    content: bytes
    checksum: str


@dataclass(frozen=True)
class Snapshot:
    """
    Versioned capture of the selected configuration files.

    Attributes:
        id: Commit id (40 hex characters)
        created_at: Commit time (UTC)
        author: Device that created the snapshot
        message: Backup message including the operator's note
        parent: Previous snapshot id, None for the first one
        files: Captured files ordered by path
    """
    id: str
    created_at: datetime
    author: str
    message: str
    parent: Optional[str] = None
    files: tuple[FileEntry, ...] = field(default_factory=tuple)

    @property
    def short_id(self) -> str:
        return self.id[:7]

    @property
    def is_root(self) -> bool:
        return self.parent is None

    @property
    def contents(self) -> dict[str, bytes]:
        return {entry.path: entry.content for entry in self.files}

    @property
    def checksums(self) -> dict[str, str]:
        return {entry.path: entry.checksum for entry in self.files}


@dataclass(frozen=True)
class HistoryEntry:
    """
    One line of history, newest first.

    ``age`` is relative to when the history was read; formatting it for
    people is left to the caller.
    """
    id: str
    created_at: datetime
    age: timedelta
    message: str
    author: str

    @property
    def short_id(self) -> str:
        return self.id[:7]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "age_seconds": int(self.age.total_seconds()),
            "message": self.message,
            "author": self.author,
        }


def age_since(created_at: datetime, now: Optional[datetime] = None) -> timedelta:
    """Non-negative age of a timestamp."""
    now = now or datetime.now(timezone.utc)
    return max(now - created_at, timedelta(0))
