"""
Unit tests for change detection.
"""

import pytest

from timemachine.snapshots.diff import (
    ChangeType,
    FileChange,
    compare_checksums,
    compute_changes,
    content_checksum,
)

NETWORK = "etc/config/network"
FIREWALL = "etc/config/firewall"
DHCP = "etc/config/dhcp"


class TestContentChecksum:
    """Tests for content_checksum."""

    def test_matches_git_blob_id(self):
        """Test the checksum is the git blob id."""
        # git hash-object /dev/null
        assert content_checksum(b"") == "e69de29bb2d1d6434b8b29ae775ad8c2e48c5391"

    def test_differs_on_content(self):
        """Test different content hashes differently."""
        assert content_checksum(b"a") != content_checksum(b"b")


class TestComputeChanges:
    """Tests for compute_changes."""

    @pytest.fixture
    def reference(self) -> dict:
        return {
            NETWORK: content_checksum(b"network"),
            FIREWALL: content_checksum(b"firewall"),
        }

    def test_identical_has_no_changes(self, reference: dict):
        """Test identical content produces nothing."""
        live = {NETWORK: b"network", FIREWALL: b"firewall"}
        assert compute_changes(live, reference) == []

    def test_classifies_each_path(self, reference: dict):
        """Test added, modified and removed paths."""
        live = {NETWORK: b"edited", DHCP: b"dhcp"}

        changes = compute_changes(live, reference)

        assert changes == [
            FileChange(DHCP, ChangeType.ADDED),
            FileChange(FIREWALL, ChangeType.REMOVED),
            FileChange(NETWORK, ChangeType.MODIFIED),
        ]

    def test_include_unchanged(self, reference: dict):
        """Test unchanged paths are returned on request."""
        live = {NETWORK: b"network", FIREWALL: b"edited"}

        changes = compute_changes(live, reference, include_unchanged=True)

        assert [(c.path, c.change_type) for c in changes] == [
            (FIREWALL, ChangeType.MODIFIED),
            (NETWORK, ChangeType.UNCHANGED),
        ]

    def test_labeler_applied(self, reference: dict):
        """Test the caller's labeler supplies display labels."""
        labels = {NETWORK: "Network settings"}

        changes = compute_changes({FIREWALL: b"firewall"}, reference, labeler=lambda p: labels.get(p, p))

        assert changes == [FileChange(NETWORK, ChangeType.REMOVED, "Network settings")]

    def test_empty_reference(self):
        """Test everything is added against an empty snapshot."""
        changes = compute_changes({NETWORK: b"n"}, {})
        assert changes == [FileChange(NETWORK, ChangeType.ADDED)]

    def test_to_dict(self):
        """Test conversion to dictionary."""
        change = FileChange(NETWORK, ChangeType.MODIFIED, "Network")
        assert change.to_dict() == {
            "path": NETWORK,
            "change_type": "modified",
            "label": "Network",
        }


class TestCompareChecksums:
    """Tests for compare_checksums."""

    def test_symmetric_classification(self):
        """Test swapping sides swaps added and removed."""
        old = {NETWORK: "1" * 40, FIREWALL: "2" * 40}
        new = {NETWORK: "3" * 40, DHCP: "4" * 40}

        forward = compare_checksums(old, new)
        backward = compare_checksums(new, old)

        assert forward == [
            FileChange(DHCP, ChangeType.ADDED),
            FileChange(FIREWALL, ChangeType.REMOVED),
            FileChange(NETWORK, ChangeType.MODIFIED),
        ]
        assert backward == [
            FileChange(DHCP, ChangeType.REMOVED),
            FileChange(FIREWALL, ChangeType.ADDED),
            FileChange(NETWORK, ChangeType.MODIFIED),
        ]

    def test_equal_maps(self):
        """Test equal maps produce no changes."""
        checksums = {NETWORK: "1" * 40}
        assert compare_checksums(checksums, dict(checksums)) == []
