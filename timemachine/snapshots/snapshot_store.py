"""
Git-backed snapshot store.

Snapshots are commits in a bare repository managed with dulwich:
content-addressed blobs give deduplication, and the branch ref is only
ever moved with a compare-and-swap after every new object is on disk.
A crash therefore leaves either the prior HEAD or the new one.
"""

import hashlib
import logging
import stat
import zlib
from contextlib import contextmanager, nullcontext
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, Mapping, Optional, Union

from dulwich.errors import ChecksumMismatch, ObjectFormatException
from dulwich.objects import Blob, Commit, ShaFile, Tree
from dulwich.repo import Repo

from ..files.fileset import FileSet, validate_logical_path
from ..profile.models import DeviceIdentity
from .diff import FileChange, compare_checksums, compute_changes, content_checksum
from .lock import AdvisoryLock
from .models import FileEntry, HistoryEntry, Snapshot, age_since

logger = logging.getLogger(__name__)

FILE_MODE = 0o100644
MIN_PREFIX_LENGTH = 4


class SnapshotStoreError(Exception):
    """Base class for snapshot store failures."""

    def __init__(self, message: str, snapshot_id: Optional[str] = None):
        super().__init__(message)
        self.snapshot_id = snapshot_id


class StoreNotInitialized(SnapshotStoreError):
    """Raised when the store directory holds no repository."""

    def __init__(self, path: Path):
        super().__init__(f"No snapshot store at {path}")
        self.path = path


class NoChange(SnapshotStoreError):
    """Raised by commit when the file set matches HEAD. Not a failure."""

    def __init__(self, head: Optional[str]):
        super().__init__("File set matches the current snapshot", head)


class SnapshotNotFound(SnapshotStoreError):
    """Raised when an id or prefix names no snapshot."""


class CorruptSnapshot(SnapshotStoreError):
    """Raised when a snapshot's objects are missing or damaged."""

    def __init__(self, snapshot_id: str, object_id: str, reason: str):
        super().__init__(f"Snapshot {snapshot_id} is corrupt: {reason}", snapshot_id)
        self.object_id = object_id
        self.reason = reason


class ConcurrentUpdate(SnapshotStoreError):
    """Raised when HEAD moved between reading it and repointing it."""


FileSource = Union[FileSet, Mapping[str, bytes]]


class SnapshotStore:
    """
    Append-only, deduplicated history of configuration file sets.

    Features:
    - Linear history on a single branch
    - Atomic HEAD repointing (lock file + rename, compare-and-swap)
    - Per-snapshot corruption isolation
    - Separate remote-view ref for pulled history

    Usage:
        store = SnapshotStore(Path("/root/time-machine"), identity)
        store.initialize()

        snapshot_id = store.commit(live_files, "Backup from router")
        for entry in store.history(limit=10):
            print(entry.short_id, entry.message)
    """

    REMOTE_PREFIX = b"refs/remotes/mirror/"
    ABANDONED_PREFIX = b"refs/timemachine/abandoned/"

    def __init__(
        self,
        path: Path,
        identity: DeviceIdentity,
        branch: str = "main",
        lock: Optional[AdvisoryLock] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """
        Initialize snapshot store.

        Args:
            path: Directory of the bare repository
            identity: Device recorded as author of new snapshots
            branch: Branch holding the snapshot line
            lock: Advisory lock taken by mutating operations
            clock: Source of commit timestamps
        """
        self.path = Path(path)
        self.identity = identity
        self.branch = branch
        self.lock = lock
        self._clock = clock

    def __repr__(self) -> str:
        return f"SnapshotStore(path='{self.path}', branch='{self.branch}')"

    @property
    def branch_ref(self) -> bytes:
        return b"refs/heads/" + self.branch.encode()

    @property
    def remote_ref(self) -> bytes:
        return self.REMOTE_PREFIX + self.branch.encode()

    @property
    def is_initialized(self) -> bool:
        return (self.path / "HEAD").is_file() and (self.path / "objects").is_dir()

    def initialize(self) -> bool:
        """
        Create an empty store with device identity metadata.

        Returns:
            True if a store was created, False if one already existed
        """
        if self.is_initialized:
            logger.debug(f"Snapshot store already initialized at {self.path}")
            return False

        self.path.mkdir(parents=True, exist_ok=True)
        repo = Repo.init_bare(str(self.path))
        try:
            repo.refs.set_symbolic_ref(b"HEAD", self.branch_ref)
            config = repo.get_config()
            config.set((b"user",), b"name", self.identity.name.encode())
            config.set((b"user",), b"email", self.identity.email.encode())
            config.set((b"timemachine",), b"device", self.identity.slug.encode())
            config.write_to_path()
        finally:
            repo.close()

        logger.info(f"Snapshot store initialized at {self.path}")
        return True

    @contextmanager
    def _open(self) -> Iterator[Repo]:
        if not self.is_initialized:
            raise StoreNotInitialized(self.path)
        repo = Repo(str(self.path))
        try:
            yield repo
        finally:
            repo.close()

    def _locked(self):
        return self.lock if self.lock is not None else nullcontext()

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def head(self) -> Optional[str]:
        """Current snapshot id, None before the first commit."""
        with self._open() as repo:
            return self._read_ref(repo, self.branch_ref)

    def remote_head(self) -> Optional[str]:
        """Last pulled remote snapshot id, None if nothing was pulled."""
        with self._open() as repo:
            return self._read_ref(repo, self.remote_ref)

    @staticmethod
    def _read_ref(repo: Repo, ref: bytes) -> Optional[str]:
        try:
            return repo.refs[ref].decode("ascii")
        except KeyError:
            return None

    def get(self, snapshot_id: str) -> Snapshot:
        """
        Load a snapshot with its file contents.

        Raises:
            SnapshotNotFound: If the id is unknown
            CorruptSnapshot: If any of its objects is damaged
        """
        with self._open() as repo:
            commit = self._read_commit(repo, snapshot_id)
            checksums = self._walk_tree(repo, commit.tree, snapshot_id)
            files = tuple(
                FileEntry(path=path, content=self._read_blob(repo, sha, snapshot_id), checksum=sha)
                for path, sha in checksums.items()
            )
            return self._to_snapshot(commit, files)

    def files(self, snapshot_id: str) -> dict[str, str]:
        """Checksums by path for one snapshot, without reading content."""
        with self._open() as repo:
            commit = self._read_commit(repo, snapshot_id)
            return self._walk_tree(repo, commit.tree, snapshot_id)

    def checkout(self, snapshot_id: str) -> dict[str, bytes]:
        """
        Read a snapshot into memory.

        Pure read into a staging buffer; live files are never touched.
        """
        return self.get(snapshot_id).contents

    def history(self, limit: Optional[int] = 20, start: Optional[str] = None) -> list[HistoryEntry]:
        """
        List snapshots newest first.

        Args:
            limit: Maximum entries, None for all
            start: Snapshot to start from (default: HEAD)
        """
        now = self._clock()
        entries = []
        with self._open() as repo:
            tip = start or self._read_ref(repo, self.branch_ref)
            for commit in self._iter_chain(repo, tip):
                if limit is not None and len(entries) >= limit:
                    break
                snapshot = self._to_snapshot(commit)
                entries.append(HistoryEntry(
                    id=snapshot.id,
                    created_at=snapshot.created_at,
                    age=age_since(snapshot.created_at, now),
                    message=snapshot.message,
                    author=snapshot.author,
                ))
        return entries

    def count(self) -> int:
        """Number of snapshots on the local line."""
        with self._open() as repo:
            return sum(1 for _ in self._iter_chain(repo, self._read_ref(repo, self.branch_ref)))

    def last_snapshot_time(self) -> Optional[datetime]:
        with self._open() as repo:
            head = self._read_ref(repo, self.branch_ref)
            if head is None:
                return None
            return self._to_snapshot(self._read_commit(repo, head)).created_at

    def diff(self, id_a: str, id_b: str) -> list[FileChange]:
        """Files added, modified or removed going from ``id_a`` to ``id_b``."""
        return compare_checksums(self.files(id_a), self.files(id_b))

    def status(
        self,
        file_set: FileSource,
        labeler: Optional[Callable[[str], str]] = None,
        against: Optional[str] = None,
    ) -> list[FileChange]:
        """
        Compare live files with HEAD (or ``against``) without committing.
        """
        reference_id = against or self.head()
        reference = self.files(reference_id) if reference_id else {}
        return compute_changes(_materialize(file_set), reference, labeler=labeler)

    def resolve(self, ref: str) -> str:
        """
        Expand a full id or unique prefix to a snapshot id.

        Prefixes are matched against the local line and the remote view.

        Raises:
            SnapshotNotFound: If nothing or more than one snapshot matches
        """
        ref = ref.strip().lower()
        if len(ref) < MIN_PREFIX_LENGTH or any(c not in "0123456789abcdef" for c in ref):
            raise SnapshotNotFound(f"Not a snapshot id: {ref!r}", ref)

        with self._open() as repo:
            if len(ref) == 40:
                self._read_commit(repo, ref)
                return ref

            matches = set()
            for tip_ref in (self.branch_ref, self.remote_ref):
                for commit in self._iter_chain(repo, self._read_ref(repo, tip_ref)):
                    commit_id = commit.id.decode("ascii")
                    if commit_id.startswith(ref):
                        matches.add(commit_id)

        if len(matches) == 1:
            return matches.pop()
        if not matches:
            raise SnapshotNotFound(f"No snapshot matches {ref!r}", ref)
        raise SnapshotNotFound(f"Snapshot id {ref!r} is ambiguous", ref)

    def is_ancestor(self, ancestor: str, descendant: Optional[str]) -> bool:
        """True when ``ancestor`` is on the first-parent line of ``descendant`` (or equal)."""
        with self._open() as repo:
            return any(
                commit.id.decode("ascii") == ancestor
                for commit in self._iter_chain(repo, descendant)
            )

    def contains(self, snapshot_id: str) -> bool:
        with self._open() as repo:
            return snapshot_id.encode("ascii") in repo.object_store

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def commit(self, file_set: FileSource, message: str) -> str:
        """
        Record the file set as a new snapshot on top of HEAD.

        Objects are written first; HEAD moves last, by compare-and-swap.

        Args:
            file_set: Live files (FileSet or mapping of path to content)
            message: Backup message

        Returns:
            New snapshot id

        Raises:
            NoChange: If the file set matches HEAD
            LockBusy: If another operation holds the lock
        """
        files = _materialize(file_set)
        for path in files:
            validate_logical_path(path)

        with self._locked(), self._open() as repo:
            parent = self._read_ref(repo, self.branch_ref)
            parent_commit = self._read_commit(repo, parent) if parent else None
            parent_checksums = self._walk_tree(
                repo, parent_commit.tree, parent
            ) if parent_commit else {}

            new_checksums = {path: content_checksum(content) for path, content in files.items()}
            changes = compare_checksums(parent_checksums, new_checksums)
            if not changes:
                logger.info("No changes since last snapshot")
                raise NoChange(parent)

            stored = 0
            for path, content in files.items():
                blob = Blob.from_string(content)
                if blob.id not in repo.object_store:
                    repo.object_store.add_object(blob)
                    stored += 1

            tree_id = self._write_tree(repo, new_checksums)
            commit = self._build_commit(tree_id, parent_commit, message, self._clock())
            repo.object_store.add_object(commit)

            self._swap_ref(repo, self.branch_ref, parent, commit.id.decode("ascii"))

        snapshot_id = commit.id.decode("ascii")
        logger.info(
            f"Created snapshot {snapshot_id[:7]}: {len(changes)} changed, "
            f"{stored} new blob(s)"
        )
        return snapshot_id

    def set_remote_head(self, snapshot_id: str) -> None:
        """Record the remote view after a fetch. Never touches HEAD."""
        with self._open() as repo:
            self._read_commit(repo, snapshot_id)
            repo.refs[self.remote_ref] = snapshot_id.encode("ascii")
        logger.debug(f"Remote view now at {snapshot_id[:7]}")

    def set_head(self, snapshot_id: str, expected: Optional[str]) -> Optional[str]:
        """
        Repoint HEAD to another snapshot (operator resolution only).

        When the current HEAD would become unreachable it is kept under
        ``refs/timemachine/abandoned/`` so no snapshot is lost.

        Returns:
            Name of the ref preserving the old HEAD, if one was created
        """
        with self._locked(), self._open() as repo:
            self._read_commit(repo, snapshot_id)
            keep_ref = None
            if expected and not any(
                c.id.decode("ascii") == expected for c in self._iter_chain(repo, snapshot_id)
            ):
                stamp = self._clock().strftime("%Y%m%d-%H%M%S")
                keep_ref = self.ABANDONED_PREFIX + f"{stamp}-{expected[:7]}".encode()
                repo.refs[keep_ref] = expected.encode("ascii")
                logger.warning(f"Kept previous HEAD {expected[:7]} as {keep_ref.decode()}")
            self._swap_ref(repo, self.branch_ref, expected, snapshot_id)

        logger.info(f"HEAD moved to {snapshot_id[:7]}")
        return keep_ref.decode() if keep_ref else None

    def replay(self, snapshot_ids: list[str], onto: str, expected: Optional[str]) -> str:
        """
        Re-create snapshots, oldest first, as a linear line on top of ``onto``.

        Each new snapshot keeps the original tree, author, author time and
        message. Its parent changes and its commit time is taken now, so
        the line stays newest first. HEAD moves once, at the end.

        Returns:
            Id of the new HEAD
        """
        with self._locked(), self._open() as repo:
            parent_commit = self._read_commit(repo, onto)
            parent = onto
            now = self._clock()
            for snapshot_id in snapshot_ids:
                original = self._read_commit(repo, snapshot_id)
                commit = Commit()
                commit.tree = original.tree
                commit.parents = [parent.encode("ascii")]
                commit.author = original.author
                commit.committer = original.committer
                commit.author_time = original.author_time
                commit.commit_time = _commit_time(now, parent_commit)
                commit.author_timezone = original.author_timezone
                commit.commit_timezone = 0
                commit.encoding = b"UTF-8"
                commit.message = original.message
                repo.object_store.add_object(commit)
                parent = commit.id.decode("ascii")
                parent_commit = commit

            self._swap_ref(repo, self.branch_ref, expected, parent)

        logger.info(f"Replayed {len(snapshot_ids)} snapshot(s) onto {onto[:7]}")
        return parent

    # ------------------------------------------------------------------
    # Object helpers
    # ------------------------------------------------------------------

    def _swap_ref(self, repo: Repo, ref: bytes, old: Optional[str], new: str) -> None:
        if old is None:
            updated = repo.refs.add_if_new(ref, new.encode("ascii"))
        else:
            updated = repo.refs.set_if_equals(ref, old.encode("ascii"), new.encode("ascii"))
        if not updated:
            raise ConcurrentUpdate(f"{ref.decode()} moved during update", old)

    def _build_commit(
        self,
        tree_id: bytes,
        parent: Optional[Commit],
        message: str,
        when: datetime,
    ) -> Commit:
        commit = Commit()
        commit.tree = tree_id
        commit.parents = [parent.id] if parent is not None else []
        commit.author = commit.committer = self.identity.signature.encode("utf-8")
        commit.author_time = int(when.timestamp())
        commit.commit_time = _commit_time(when, parent)
        commit.author_timezone = commit.commit_timezone = 0
        commit.encoding = b"UTF-8"
        commit.message = message.strip().encode("utf-8") + b"\n"
        return commit

    def _write_tree(self, repo: Repo, checksums: Mapping[str, str]) -> bytes:
        """Build nested trees from flat paths; returns the root tree id."""
        root: dict = {}
        for path, sha in checksums.items():
            parts = validate_logical_path(path).parts
            node = root
            for part in parts[:-1]:
                node = node.setdefault(part, {})
            node[parts[-1]] = sha.encode("ascii")

        def build(node: dict) -> bytes:
            tree = Tree()
            for name, value in node.items():
                if isinstance(value, dict):
                    tree.add(name.encode("utf-8"), stat.S_IFDIR, build(value))
                else:
                    tree.add(name.encode("utf-8"), FILE_MODE, value)
            if tree.id not in repo.object_store:
                repo.object_store.add_object(tree)
            return tree.id

        return build(root)

    def _walk_tree(self, repo: Repo, tree_id: bytes, snapshot_id: str, prefix: str = "") -> dict[str, str]:
        tree = self._read_object(repo, tree_id, Tree, snapshot_id)
        checksums = {}
        for entry in tree.iteritems():
            path = prefix + entry.path.decode("utf-8")
            if stat.S_ISDIR(entry.mode):
                checksums.update(self._walk_tree(repo, entry.sha, snapshot_id, path + "/"))
            else:
                checksums[path] = entry.sha.decode("ascii")
        return dict(sorted(checksums.items()))

    def _read_blob(self, repo: Repo, sha: str, snapshot_id: str) -> bytes:
        return self._read_object(repo, sha.encode("ascii"), Blob, snapshot_id).data

    def _read_commit(self, repo: Repo, snapshot_id: str) -> Commit:
        sha = snapshot_id.encode("ascii")
        if sha not in repo.object_store:
            raise SnapshotNotFound(f"Unknown snapshot {snapshot_id}", snapshot_id)
        commit = self._read_object(repo, sha, ShaFile, snapshot_id)
        if not isinstance(commit, Commit):
            raise SnapshotNotFound(f"{snapshot_id} is not a snapshot", snapshot_id)
        return commit

    def _read_object(self, repo: Repo, sha: bytes, expected_type: type, snapshot_id: str):
        object_id = sha.decode("ascii")
        try:
            obj = repo.object_store[sha]
        except KeyError:
            raise CorruptSnapshot(snapshot_id, object_id, "object missing")
        except (zlib.error, ObjectFormatException, ChecksumMismatch, ValueError, OSError) as e:
            raise CorruptSnapshot(snapshot_id, object_id, f"unreadable object: {e}") from e

        if not isinstance(obj, expected_type):
            raise CorruptSnapshot(snapshot_id, object_id, f"unexpected {obj.type_name.decode()}")
        if _object_checksum(obj) != object_id:
            raise CorruptSnapshot(snapshot_id, object_id, "checksum mismatch")
        return obj

    def _iter_chain(self, repo: Repo, tip: Optional[str]) -> Iterator[Commit]:
        """
        Walk first parents from ``tip``.

        Stops at the first unreadable commit: its parent cannot be known,
        but everything newer stays usable.
        """
        current = tip
        while current:
            try:
                commit = self._read_commit(repo, current)
            except CorruptSnapshot as e:
                logger.error(f"History walk stopped at corrupt snapshot {current[:7]}: {e.reason}")
                return
            yield commit
            current = commit.parents[0].decode("ascii") if commit.parents else None

    @staticmethod
    def _to_snapshot(commit: Commit, files: tuple[FileEntry, ...] = ()) -> Snapshot:
        author = commit.author.decode("utf-8", errors="replace")
        return Snapshot(
            id=commit.id.decode("ascii"),
            created_at=datetime.fromtimestamp(commit.commit_time, tz=timezone.utc),
            author=author.split(" <")[0],
            message=commit.message.decode("utf-8", errors="replace").strip(),
            parent=commit.parents[0].decode("ascii") if commit.parents else None,
            files=files,
        )


def _commit_time(now: datetime, parent: Optional[Commit]) -> int:
    """Whole seconds, strictly after the parent so history sorts newest first."""
    seconds = int(now.timestamp())
    if parent is not None:
        seconds = max(seconds, parent.commit_time + 1)
    return seconds


def _materialize(file_set: FileSource) -> dict[str, bytes]:
    if isinstance(file_set, FileSet):
        return file_set.read_all()
    return dict(sorted(file_set.items()))


def _object_checksum(obj: ShaFile) -> str:
    """Recompute an object's id from its raw content."""
    raw = obj.as_raw_string()
    header = obj.type_name + b" " + str(len(raw)).encode("ascii") + b"\0"
    return hashlib.sha1(header + raw).hexdigest()
