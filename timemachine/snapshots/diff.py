"""
Change detection between live files and a snapshot.

Pure comparison: nothing here reads the disk or the store. Callers pass
in live content and the checksums recorded in a snapshot.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping, Optional

from dulwich.objects import Blob


class ChangeType(str, Enum):
    """How a path differs from the snapshot it is compared to."""
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class FileChange:
    """
    One path's classification.

    Attributes:
        path: Logical path (``etc/config/network``)
        change_type: Classification against the reference snapshot
        label: Display label supplied by the caller, if any
    """
    path: str
    change_type: ChangeType
    label: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "change_type": self.change_type.value,
            "label": self.label,
        }


def content_checksum(content: bytes) -> str:
    """Checksum used throughout the store: the git blob id of the content."""
    return Blob.from_string(content).id.decode("ascii")


def compute_changes(
    live: Mapping[str, bytes],
    reference: Mapping[str, str],
    labeler: Optional[Callable[[str], str]] = None,
    include_unchanged: bool = False,
) -> list[FileChange]:
    """
    Classify every path in either side.

    Rules:
    - in live only → ADDED
    - in reference only → REMOVED
    - in both, checksum differs → MODIFIED
    - in both, checksum equal → UNCHANGED (omitted unless requested)

    Args:
        live: Live content by logical path
        reference: Snapshot checksums by logical path
        labeler: Optional callable mapping a path to a display label
        include_unchanged: Whether UNCHANGED entries are returned

    Returns:
        Changes ordered by path
    """
    changes = []

    for path in sorted(set(live) | set(reference)):
        if path not in reference:
            change_type = ChangeType.ADDED
        elif path not in live:
            change_type = ChangeType.REMOVED
        elif content_checksum(live[path]) != reference[path]:
            change_type = ChangeType.MODIFIED
        else:
            change_type = ChangeType.UNCHANGED

        if change_type is ChangeType.UNCHANGED and not include_unchanged:
            continue

        changes.append(FileChange(
            path=path,
            change_type=change_type,
            label=labeler(path) if labeler else None,
        ))

    return changes


def compare_checksums(
    old: Mapping[str, str],
    new: Mapping[str, str],
) -> list[FileChange]:
    """Differences between two snapshots' checksum maps, ordered by path."""
    changes = []
    for path in sorted(set(old) | set(new)):
        if path not in old:
            changes.append(FileChange(path, ChangeType.ADDED))
        elif path not in new:
            changes.append(FileChange(path, ChangeType.REMOVED))
        elif old[path] != new[path]:
            changes.append(FileChange(path, ChangeType.MODIFIED))
    return changes
