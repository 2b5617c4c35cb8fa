"""
Restore engine.

Writes a historical snapshot back onto live files, one atomic rename per
file. If any file fails, files already replaced are rolled back from
content read before the first write.
"""

import logging
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..files.fileset import FileSet, FileSetError
from ..snapshots.diff import FileChange, content_checksum
from ..snapshots.lock import AdvisoryLock
from ..snapshots.snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)


class PartialRestore(Exception):
    """
    Raised when a restore could not be completed.

    Attributes:
        snapshot_id: Snapshot being restored
        failed: Files that could not be restored
        rolled_back: Files returned to their previous content
        unrecovered: Files whose rollback also failed
    """

    def __init__(
        self,
        snapshot_id: str,
        failed: list[str],
        rolled_back: list[str],
        unrecovered: list[str],
    ):
        super().__init__(
            f"Restore of {snapshot_id[:7]} failed for {len(failed)} file(s); "
            f"{len(unrecovered)} could not be rolled back"
        )
        self.snapshot_id = snapshot_id
        self.failed = failed
        self.rolled_back = rolled_back
        self.unrecovered = unrecovered


@dataclass
class RestoreReport:
    """What a completed restore did."""
    snapshot_id: str
    restored: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def changed(self) -> int:
        return len(self.restored) + len(self.removed)

    def to_dict(self) -> dict:
        return {
            "snapshot_id": self.snapshot_id,
            "restored": self.restored,
            "removed": self.removed,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
        }

    def __str__(self) -> str:
        return (
            f"Restored {self.snapshot_id[:7]}: {len(self.restored)} written, "
            f"{len(self.removed)} removed, {len(self.unchanged)} unchanged, "
            f"{len(self.skipped)} skipped"
        )


class RestoreEngine:
    """
    Materializes snapshots onto a file set.

    Restore never moves the store's HEAD: the restored state becomes
    history only when the operator commits it.

    Usage:
        engine = RestoreEngine(store, live_files, lock=lock)

        for change in engine.preview(snapshot_id):
            print(change.path, change.change_type.value)
        report = engine.restore(snapshot_id)
    """

    def __init__(
        self,
        store: SnapshotStore,
        file_set: FileSet,
        lock: Optional[AdvisoryLock] = None,
    ):
        self.store = store
        self.file_set = file_set
        self.lock = lock if lock is not None else store.lock

    def _locked(self):
        return self.lock if self.lock is not None else nullcontext()

    def preview(
        self,
        snapshot_id: str,
        labeler: Optional[Callable[[str], str]] = None,
    ) -> list[FileChange]:
        """
        Differences between live files and a snapshot.

        ``added`` paths exist only live, ``removed`` paths exist only in
        the snapshot; restoring removes the former and writes the latter.
        """
        return self.store.status(self.file_set, labeler=labeler, against=snapshot_id)

    def restore(self, snapshot_id: str) -> RestoreReport:
        """
        Write every file of a snapshot to the live file set.

        Selected live files that the snapshot does not contain are removed.
        Generated entries cannot be written and are reported as skipped.

        Raises:
            PartialRestore: If a write failed (after rollback)
            LockBusy: If another operation holds the lock
        """
        with self._locked():
            target = self.store.checkout(snapshot_id)
            report = RestoreReport(snapshot_id=snapshot_id)

            current_paths = set(self.file_set.paths())
            previous: dict[str, Optional[bytes]] = {}
            writes: list[str] = []
            removals: list[str] = []

            for path, content in target.items():
                if not self.file_set.is_writable(path):
                    report.skipped.append(path)
                    continue
                # Unselected files on disk still get their content cached
                if path in current_paths or self.file_set.exists(path):
                    existing = self.file_set.read(path)
                    if content_checksum(existing) == content_checksum(content):
                        report.unchanged.append(path)
                        continue
                    previous[path] = existing
                else:
                    previous[path] = None
                writes.append(path)

            for path in sorted(current_paths - set(target)):
                if not self.file_set.is_writable(path):
                    report.skipped.append(path)
                    continue
                previous[path] = self.file_set.read(path)
                removals.append(path)

            logger.info(
                f"Restoring {snapshot_id[:7]}: {len(writes)} to write, "
                f"{len(removals)} to remove"
            )

            applied: list[str] = []
            for path in writes + removals:
                try:
                    if path in target:
                        self.file_set.write(path, target[path])
                    else:
                        self.file_set.remove(path)
                except (FileSetError, OSError) as e:
                    logger.error(f"Restore failed at {path}: {e}")
                    rolled_back, unrecovered = self._rollback(applied, previous)
                    raise PartialRestore(snapshot_id, [path], rolled_back, unrecovered) from e
                applied.append(path)

            report.restored = writes
            report.removed = removals

        logger.info(str(report))
        return report

    def _rollback(
        self,
        applied: list[str],
        previous: dict[str, Optional[bytes]],
    ) -> tuple[list[str], list[str]]:
        """Return applied files to their cached content, newest first."""
        rolled_back = []
        unrecovered = []
        for path in reversed(applied):
            try:
                content = previous[path]
                if content is None:
                    self.file_set.remove(path)
                else:
                    self.file_set.write(path, content)
                rolled_back.append(path)
            except (FileSetError, OSError) as e:
                logger.error(f"Rollback failed for {path}: {e}")
                unrecovered.append(path)

        if unrecovered:
            logger.error(f"{len(unrecovered)} file(s) could not be rolled back: {unrecovered}")
        else:
            logger.warning(f"Rolled back {len(rolled_back)} file(s)")
        return rolled_back, unrecovered
