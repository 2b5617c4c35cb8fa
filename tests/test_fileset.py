"""
Unit tests for live file sets.
"""

import os
import stat

import pytest
from pathlib import Path

from timemachine.files.fileset import (
    FileSetError,
    LiveFileSet,
    validate_logical_path,
    write_atomic,
)
from timemachine.profile.models import Category, ConfigurationProfile


class TestValidateLogicalPath:
    """Tests for path validation."""

    @pytest.mark.parametrize("path", ["/etc/config/network", "../etc/passwd", "etc/../../x", ""])
    def test_rejects_unsafe_paths(self, path: str):
        """Test paths escaping the root are refused."""
        with pytest.raises(FileSetError):
            validate_logical_path(path)

    def test_accepts_relative_path(self):
        """Test a normal logical path."""
        assert validate_logical_path("etc/config/network").parts == ("etc", "config", "network")


class TestWriteAtomic:
    """Tests for write_atomic."""

    def test_replaces_content_and_keeps_mode(self, tmp_path: Path):
        """Test the target is replaced and its permissions survive."""
        target = tmp_path / "wireless"
        target.write_bytes(b"old")
        os.chmod(target, 0o600)

        write_atomic(target, b"new")

        assert target.read_bytes() == b"new"
        assert stat.S_IMODE(target.stat().st_mode) == 0o600
        assert list(tmp_path.glob("*.tmp")) == []

    def test_creates_parent_directories(self, tmp_path: Path):
        """Test writing into a missing directory."""
        target = tmp_path / "etc" / "config" / "uhttpd"

        write_atomic(target, b"config uhttpd 'main'\n")

        assert target.read_bytes() == b"config uhttpd 'main'\n"


class TestLiveFileSet:
    """Tests for LiveFileSet."""

    def test_paths_follow_profile(self, live_files: LiveFileSet):
        """Test only selected, present files are listed."""
        assert live_files.paths() == [
            "etc/config/dhcp",
            "etc/config/firewall",
            "etc/config/network",
            "etc/config/system",
        ]

    def test_missing_selected_file_not_listed(self, live_root: Path):
        """Test a selected file that does not exist is skipped."""
        files = LiveFileSet(live_root, ConfigurationProfile([Category.UHTTPD, Category.NETWORK]), None)

        assert files.paths() == ["etc/config/network"]
        assert files.is_selected("etc/config/uhttpd")

    def test_all_walks_config_dir(self, live_root: Path):
        """Test ALL picks up every config file, skipping temp files."""
        (live_root / "etc" / "config" / ".network.abc.tmp").write_bytes(b"partial")
        files = LiveFileSet(live_root, ConfigurationProfile([Category.ALL]), None)

        assert "etc/config/wireless" in files.paths()
        assert not any(p.endswith(".tmp") for p in files.paths())
        assert files.is_selected("etc/config/anything")

    def test_package_list_is_generated(self, live_root: Path):
        """Test the package list comes from the lister and is read-only."""
        files = LiveFileSet(
            live_root,
            ConfigurationProfile([Category.PACKAGES]),
            package_lister=lambda: b"dnsmasq - 2.90-1\n",
        )

        assert files.paths() == ["package-list.txt"]
        assert files.read("package-list.txt") == b"dnsmasq - 2.90-1\n"
        assert files.is_writable("package-list.txt") is False
        with pytest.raises(FileSetError):
            files.write("package-list.txt", b"x")

    def test_package_list_absent_without_opkg(self, live_root: Path):
        """Test a lister returning None contributes nothing."""
        files = LiveFileSet(live_root, ConfigurationProfile([Category.PACKAGES]), lambda: None)

        assert files.paths() == []

    def test_write_read_remove(self, live_files: LiveFileSet, live_root: Path):
        """Test round trip through the file set."""
        live_files.write("etc/config/network", b"config interface 'wan'\n")
        assert live_files.read("etc/config/network") == b"config interface 'wan'\n"

        live_files.remove("etc/config/network")
        assert not (live_root / "etc" / "config" / "network").exists()

    def test_read_missing_raises(self, live_files: LiveFileSet):
        """Test reading an absent file raises FileSetError with the path."""
        with pytest.raises(FileSetError) as exc_info:
            live_files.read("etc/config/uhttpd")

        assert exc_info.value.path == "etc/config/uhttpd"

    def test_exists_ignores_selection(self, live_files: LiveFileSet):
        """Test exists reports files on disk even when the profile does not select them."""
        assert "etc/config/wireless" not in live_files.paths()
        assert live_files.exists("etc/config/wireless")
        assert not live_files.exists("etc/config/dropbear")

    def test_read_all(self, live_files: LiveFileSet):
        """Test read_all returns content keyed by path."""
        content = live_files.read_all()

        assert list(content) == live_files.paths()
        assert content["etc/config/dhcp"].startswith(b"config dhcp")
