"""
Advisory lock for mutating operations.

A scheduled backup and an interactive session can race. Every mutating
operation takes this lock first; the loser gets LockBusy instead of
interleaving writes.
"""

import json
import logging
import os
import socket
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class LockBusy(Exception):
    """Raised when another holder owns the lock."""

    def __init__(self, lock_path: Path, holder: Optional[dict] = None):
        super().__init__(f"Lock {lock_path} is held")
        self.lock_path = lock_path
        self.holder = holder or {}


class AdvisoryLock:
    """
    Cooperative lock file with stale-holder recovery.

    The lock file is created with O_EXCL and records pid, hostname and
    acquisition time. A lock counts as stale when it is older than
    ``stale_after`` seconds or when its pid is dead on this host. A lock
    file without a readable holder is only stale once its mtime is older
    than ``stale_after``. Stale locks are renamed aside before removal and
    acquisition is retried.

    Re-entrant per instance, so a component may call another mutating
    component while holding it.

    Usage:
        lock = AdvisoryLock(Path("/root/.timemachine/timemachine.lock"))
        with lock:
            store.commit(files, "Backup from router")
    """

    def __init__(self, path: Path, stale_after: float = 600.0):
        self.path = Path(path)
        self.stale_after = stale_after
        self._depth = 0

    def __repr__(self) -> str:
        return f"AdvisoryLock(path='{self.path}', held={self.held})"

    @property
    def held(self) -> bool:
        return self._depth > 0

    def __enter__(self) -> "AdvisoryLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def acquire(self) -> None:
        """
        Take the lock without waiting.

        Raises:
            LockBusy: If a live holder owns the lock
        """
        if self._depth:
            self._depth += 1
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)

        for attempt in range(3):
            if self._try_create():
                self._depth = 1
                logger.debug(f"Acquired lock {self.path}")
                return

            observed = self._observe(self.path)
            if observed is None:
                # Released between the create attempt and the read
                continue

            holder = _parse_holder(observed.content)
            if attempt < 2 and self._is_stale(holder, observed.mtime) and self._break_stale(observed):
                continue

            raise LockBusy(self.path, holder)

        raise LockBusy(self.path, self._read_holder())

    def release(self) -> None:
        if not self._depth:
            return
        self._depth -= 1
        if self._depth == 0:
            self.path.unlink(missing_ok=True)
            logger.debug(f"Released lock {self.path}")

    def _try_create(self) -> bool:
        lock_data = {
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "acquired_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        try:
            os.write(fd, json.dumps(lock_data).encode())
            os.fsync(fd)
        finally:
            os.close(fd)
        return True

    @staticmethod
    def _observe(path: Path) -> Optional["_LockFile"]:
        try:
            with open(path, "rb") as f:
                info = os.fstat(f.fileno())
                content = f.read()
        except FileNotFoundError:
            return None
        return _LockFile(inode=info.st_ino, mtime=info.st_mtime, content=content)

    def _read_holder(self) -> Optional[dict]:
        observed = self._observe(self.path)
        if observed is None:
            return {}
        return _parse_holder(observed.content)

    def _is_stale(self, holder: Optional[dict], mtime: float) -> bool:
        """Expired, or held by a dead local process."""
        age = time.time() - mtime
        if holder is None:
            # Empty or partial content: a new holder may not have written yet
            return age > self.stale_after

        acquired_at = holder.get("acquired_at")
        try:
            acquired = datetime.fromisoformat(acquired_at)
        except (TypeError, ValueError):
            return age > self.stale_after
        if (datetime.now(timezone.utc) - acquired).total_seconds() > self.stale_after:
            return True

        pid = holder.get("pid")
        if holder.get("hostname") == socket.gethostname() and isinstance(pid, int):
            return not _is_process_alive(pid)

        return False

    def _break_stale(self, observed: "_LockFile") -> bool:
        """
        Move the judged lock file aside and discard it.

        The rename is atomic, so only one contender gets the file. If what
        was moved is no longer the file judged stale, another contender
        took the lock in between and the file is put back.

        Returns:
            True when the caller may retry creation
        """
        aside = self.path.with_name(f"{self.path.name}.stale-{os.getpid()}-{uuid.uuid4().hex[:8]}")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return True

        moved = self._observe(aside)
        if moved is not None and (moved.inode, moved.content) == (observed.inode, observed.content):
            logger.warning(f"Broke stale lock {self.path} (holder: {_parse_holder(observed.content)})")
            aside.unlink(missing_ok=True)
            return True

        try:
            os.link(aside, self.path)
        except FileExistsError:
            logger.error(f"Lock {self.path} was displaced while breaking a stale holder")
        aside.unlink(missing_ok=True)
        return False


@dataclass(frozen=True)
class _LockFile:
    """One observation of the lock file."""
    inode: int
    mtime: float
    content: bytes


def _parse_holder(content: bytes) -> Optional[dict]:
    try:
        data = json.loads(content)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _is_process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
