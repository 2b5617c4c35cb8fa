"""
Store export.

Packs the whole snapshot store into a gzip tarball and delivers it to a
local directory (USB drive), an HTTP(S) endpoint, or an scp target.
"""

import hashlib
import logging
import os
import shutil
import subprocess
import tarfile
import tempfile
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .snapshots.lock import AdvisoryLock
from .sync.mirror import SCP_STYLE, is_http_address

logger = logging.getLogger(__name__)


class ExportError(Exception):
    """Raised when an archive cannot be built or delivered."""

    def __init__(self, message: str, destination: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.destination = destination
        self.status_code = status_code


@dataclass(frozen=True)
class ExportResult:
    """Where an archive went and what it contained."""
    archive_name: str
    destination: str
    size_bytes: int
    sha256: str
    file_count: int

    def to_dict(self) -> dict:
        return {
            "archive_name": self.archive_name,
            "destination": self.destination,
            "size_bytes": self.size_bytes,
            "sha256": self.sha256,
            "file_count": self.file_count,
        }


class Exporter:
    """
    Builds and ships store archives.

    Usage:
        exporter = Exporter(Path("/root/time-machine"), device_slug="router")

        result = exporter.export("/mnt/sda1")
        result = exporter.export("https://backup.example.com/uploads/")
        result = exporter.export("me@nas:/srv/backups/")
    """

    def __init__(
        self,
        store_path: Path,
        device_slug: str,
        key_path: Optional[Path] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        lock: Optional[AdvisoryLock] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """
        Initialize exporter.

        Args:
            store_path: Snapshot store directory to archive
            device_slug: Device label used in the archive name
            key_path: Private key for scp targets (never logged)
            timeout: Upload timeout in seconds
            max_retries: Retry attempts for HTTP uploads
            lock: Held while the archive is built so no commit lands mid-pack
            clock: Source of the archive timestamp
        """
        self.store_path = Path(store_path)
        self.device_slug = device_slug
        self._key_path = key_path
        self.timeout = timeout
        self.max_retries = max_retries
        self.lock = lock
        self._clock = clock

    def __repr__(self) -> str:
        return f"Exporter(store_path='{self.store_path}')"

    def archive_name(self) -> str:
        stamp = self._clock().strftime("%Y%m%d-%H%M%S")
        return f"openwrt-timemachine-{self.device_slug}-{stamp}.tar.gz"

    def export(self, destination: str) -> ExportResult:
        """
        Archive the store and deliver it.

        Raises:
            ExportError: If the store is missing or delivery fails
        """
        if not self.store_path.is_dir():
            raise ExportError(f"No snapshot store at {self.store_path}", destination)

        name = self.archive_name()
        with tempfile.TemporaryDirectory(prefix="timemachine-export-") as staging:
            archive = Path(staging) / name
            with self.lock if self.lock is not None else nullcontext():
                sha256, file_count = self._create_archive(archive)
            size = archive.stat().st_size
            logger.info(f"Created {name} ({size} bytes, {file_count} files)")

            if is_http_address(destination):
                delivered = self._upload(archive, destination)
            elif SCP_STYLE.match(destination):
                delivered = self._scp(archive, destination)
            else:
                delivered = self._copy(archive, destination)

        logger.info(f"Exported to {delivered}")
        return ExportResult(
            archive_name=name,
            destination=delivered,
            size_bytes=size,
            sha256=sha256,
            file_count=file_count,
        )

    def _create_archive(self, archive_path: Path) -> tuple[str, int]:
        """Create tar.gz archive and return (hash, file_count)."""
        file_count = 0

        with tarfile.open(archive_path, "w:gz") as tar:
            for root, dirs, files in os.walk(self.store_path):
                dirs.sort()
                for file in sorted(files):
                    file_path = Path(root) / file
                    tar.add(file_path, arcname=file_path.relative_to(self.store_path).as_posix())
                    file_count += 1

        hasher = hashlib.sha256()
        with open(archive_path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                hasher.update(chunk)

        return hasher.hexdigest(), file_count

    def _copy(self, archive: Path, destination: str) -> str:
        target_dir = Path(destination).expanduser()
        if not target_dir.is_dir():
            raise ExportError(f"Export directory does not exist: {target_dir}", destination)

        target = target_dir / archive.name
        partial = target.with_name(target.name + ".part")
        try:
            shutil.copyfile(archive, partial)
            os.replace(partial, target)
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise ExportError(f"Cannot write {target}: {e}", destination) from e
        return str(target)

    def _upload(self, archive: Path, destination: str) -> str:
        url = destination + archive.name if destination.endswith("/") else destination

        session = requests.Session()
        retry_strategy = Retry(
            total=self.max_retries,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["PUT"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        try:
            response = session.put(
                url,
                data=archive.read_bytes(),
                headers={"Content-Type": "application/gzip"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            raise ExportError(
                f"Upload rejected: HTTP {e.response.status_code}",
                destination,
                status_code=e.response.status_code,
            ) from e
        except requests.exceptions.RequestException as e:
            raise ExportError(f"Upload failed: {e}", destination) from e
        finally:
            session.close()

        return url

    def _scp(self, archive: Path, destination: str) -> str:
        command = ["scp", "-o", "BatchMode=yes"]
        if self._key_path is not None:
            command += ["-i", str(self._key_path)]
        command += [str(archive), destination]

        try:
            subprocess.run(command, capture_output=True, timeout=self.timeout * 10, check=True)
        except subprocess.CalledProcessError as e:
            detail = (e.stderr or b"").decode("utf-8", errors="replace").strip()
            raise ExportError(f"scp failed: {detail or e.returncode}", destination) from e
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ExportError(f"scp failed: {e}", destination) from e

        return destination
