"""
File sets: the live configuration files the core reads and writes.

The core never touches device files directly. Everything goes through
a FileSet, so tests and alternative devices can supply their own.
"""

import logging
import os
import subprocess
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Callable, Optional

from ..profile.models import (
    CONFIG_DIR,
    Category,
    ConfigurationProfile,
    category_path,
)

logger = logging.getLogger(__name__)


class FileSetError(Exception):
    """Raised when a live file cannot be read or written."""

    def __init__(self, message: str, path: str):
        super().__init__(message)
        self.path = path


class FileSet(ABC):
    """Interface to a set of logical configuration files."""

    @abstractmethod
    def paths(self) -> list[str]:
        """Logical paths currently present, sorted."""

    @abstractmethod
    def read(self, path: str) -> bytes:
        """Read the content of one logical path."""

    @abstractmethod
    def write(self, path: str, content: bytes) -> None:
        """Replace one logical path atomically."""

    @abstractmethod
    def remove(self, path: str) -> None:
        """Remove one logical path."""

    def exists(self, path: str) -> bool:
        """True when the path is present."""
        return path in self.paths()

    def is_writable(self, path: str) -> bool:
        return True

    def read_all(self) -> dict[str, bytes]:
        """Read every selected file into memory, ordered by path."""
        return {path: self.read(path) for path in self.paths()}


def validate_logical_path(path: str) -> PurePosixPath:
    """
    Reject paths that would escape the file set root.

    Snapshots may come from a mirror, so their paths are untrusted.
    """
    logical = PurePosixPath(path)
    if logical.is_absolute() or not logical.parts or ".." in logical.parts:
        raise FileSetError(f"Unsafe path in file set: {path!r}", path)
    return logical


def write_atomic(target: Path, content: bytes) -> None:
    """
    Write a file via temp-file-then-rename.

    A crash leaves the target either fully old or fully new. The mode of
    an existing target is preserved.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    mode = target.stat().st_mode & 0o7777 if target.exists() else 0o644

    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, target)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise

    _fsync_dir(target.parent)


def _fsync_dir(directory: Path) -> None:
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def list_installed_packages() -> Optional[bytes]:
    """Capture ``opkg list-installed``; None when opkg is unavailable."""
    try:
        result = subprocess.run(
            ["opkg", "list-installed"],
            capture_output=True,
            timeout=60,
            check=True,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"Package list unavailable: {e}")
        return None
    return result.stdout


class LiveFileSet(FileSet):
    """
    Configuration files on the device, selected by a profile.

    Usage:
        files = LiveFileSet(Path("/"), profile)
        for path, content in files.read_all().items():
            ...

    Logical paths are relative to ``root`` (``etc/config/network``).
    The package list is generated from command output and cannot be
    written back.
    """

    def __init__(
        self,
        root: Path,
        profile: ConfigurationProfile,
        package_lister: Optional[Callable[[], Optional[bytes]]] = list_installed_packages,
    ):
        self.root = Path(root)
        self.profile = profile
        self._package_lister = package_lister
        self._generated: dict[str, bytes] = {}
        self._generated_loaded = False

    def __repr__(self) -> str:
        categories = [c.value for c in self.profile.categories]
        return f"LiveFileSet(root='{self.root}', categories={categories})"

    def _resolve(self, path: str) -> Path:
        return self.root.joinpath(*validate_logical_path(path).parts)

    def _load_generated(self) -> dict[str, bytes]:
        if not self._generated_loaded:
            self._generated_loaded = True
            if Category.PACKAGES in self.profile.categories and self._package_lister:
                content = self._package_lister()
                if content is not None:
                    self._generated[category_path(Category.PACKAGES)] = content
        return self._generated

    def selected_paths(self) -> set[str]:
        """Every logical path the profile selects, present or not."""
        selected = set()
        for category in self.profile.categories:
            if category is Category.ALL:
                selected.update(self._walk_config_dir())
            else:
                selected.add(category_path(category))
        return selected

    def _walk_config_dir(self) -> list[str]:
        config_dir = self.root / CONFIG_DIR
        if not config_dir.is_dir():
            return []
        found = []
        for file_path in config_dir.rglob("*"):
            if file_path.is_file() and not file_path.name.endswith(".tmp"):
                found.append(file_path.relative_to(self.root).as_posix())
        return found

    def is_selected(self, path: str) -> bool:
        if Category.ALL in self.profile.categories and path.startswith(CONFIG_DIR + "/"):
            return True
        return path in self.selected_paths()

    def exists(self, path: str) -> bool:
        """Present on the device, selected or not."""
        return path in self._load_generated() or self._resolve(path).is_file()

    def is_writable(self, path: str) -> bool:
        return path != category_path(Category.PACKAGES)

    def paths(self) -> list[str]:
        present = set()
        generated = self._load_generated()
        for path in self.selected_paths():
            if path in generated or self._resolve(path).is_file():
                present.add(path)
        return sorted(present)

    def read(self, path: str) -> bytes:
        generated = self._load_generated()
        if path in generated:
            return generated[path]
        try:
            return self._resolve(path).read_bytes()
        except OSError as e:
            raise FileSetError(f"Cannot read {path}: {e}", path) from e

    def write(self, path: str, content: bytes) -> None:
        if not self.is_writable(path):
            raise FileSetError(f"{path} is generated and cannot be written", path)
        try:
            write_atomic(self._resolve(path), content)
        except OSError as e:
            raise FileSetError(f"Cannot write {path}: {e}", path) from e
        logger.debug(f"Wrote {path} ({len(content)} bytes)")

    def remove(self, path: str) -> None:
        if not self.is_writable(path):
            raise FileSetError(f"{path} is generated and cannot be removed", path)
        try:
            self._resolve(path).unlink(missing_ok=True)
        except OSError as e:
            raise FileSetError(f"Cannot remove {path}: {e}", path) from e
        logger.debug(f"Removed {path}")
