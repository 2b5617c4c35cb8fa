"""
Unit tests for SQLite state store.
"""

import sqlite3

import pytest
from datetime import datetime, timezone
from pathlib import Path

from timemachine.storage.models import MirrorReference, MirrorState
from timemachine.storage.state_store import StateStore


class TestStateStore:
    """Tests for mirror reference persistence."""

    def test_initialize_creates_database(self, temp_db_path: Path):
        """Test that StateStore creates database file."""
        StateStore(temp_db_path)
        assert temp_db_path.exists()

    def test_schema_version_recorded(self, state_store: StateStore, temp_db_path: Path):
        """Test the schema version lands in the metadata table."""
        with sqlite3.connect(temp_db_path) as conn:
            row = conn.execute("SELECT value FROM _metadata WHERE key = 'schema_version'").fetchone()
        assert row == (str(StateStore.SCHEMA_VERSION),)

    def test_default_mirror_is_disabled(self, state_store: StateStore):
        """Test a fresh database reports no mirror."""
        mirror = state_store.get_mirror()

        assert mirror.state is MirrorState.DISABLED
        assert mirror.address is None
        assert mirror.is_configured is False

    def test_save_and_get(self, state_store: StateStore):
        """Test every field survives a round trip."""
        verified = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
        state_store.save_mirror(MirrorReference(
            address="git@github.com:me/router.git",
            identity="/root/.ssh/id_ed25519",
            cursor="a" * 40,
            state=MirrorState.ERROR,
            last_error="NetworkUnavailable",
            resume_state=MirrorState.DIVERGED,
            verified_at=verified,
        ))

        mirror = state_store.get_mirror()

        assert mirror.address == "git@github.com:me/router.git"
        assert mirror.identity == "/root/.ssh/id_ed25519"
        assert mirror.cursor == "a" * 40
        assert mirror.state is MirrorState.ERROR
        assert mirror.last_error == "NetworkUnavailable"
        assert mirror.resume_state is MirrorState.DIVERGED
        assert mirror.verified_at == verified

    def test_save_sets_updated_at(self, state_store: StateStore):
        """Test that save stamps updated_at."""
        before = datetime.now(timezone.utc)
        saved = state_store.save_mirror(MirrorReference(address="/srv/mirror.git"))
        after = datetime.now(timezone.utc)

        assert before <= saved.updated_at <= after
        assert state_store.get_mirror().updated_at == saved.updated_at

    def test_save_replaces_single_row(self, state_store: StateStore, temp_db_path: Path):
        """Test there is only ever one mirror reference."""
        state_store.save_mirror(MirrorReference(address="/srv/one.git"))
        state_store.save_mirror(MirrorReference(address="/srv/two.git"))

        with sqlite3.connect(temp_db_path) as conn:
            count = conn.execute("SELECT COUNT(*) FROM mirror_reference").fetchone()[0]

        assert count == 1
        assert state_store.get_mirror().address == "/srv/two.git"

    def test_state_persists_across_instances(self, temp_db_path: Path):
        """Test a new StateStore sees what an earlier one saved."""
        StateStore(temp_db_path).save_mirror(MirrorReference(
            address="/srv/mirror.git",
            state=MirrorState.CONNECTED,
            cursor="b" * 40,
        ))

        mirror = StateStore(temp_db_path).get_mirror()

        assert mirror.state is MirrorState.CONNECTED
        assert mirror.cursor == "b" * 40

    def test_clear(self, state_store: StateStore):
        """Test clear forgets the mirror and its log."""
        state_store.save_mirror(MirrorReference(address="/srv/mirror.git", state=MirrorState.CONNECTED))
        state_store.record_event("push", "success")

        state_store.clear()

        assert state_store.get_mirror().state is MirrorState.DISABLED
        assert state_store.recent_events() == []


class TestSyncEvents:
    """Tests for the sync outcome log."""

    def test_events_newest_first(self, state_store: StateStore):
        """Test recent_events orders by insertion, newest first."""
        state_store.record_event("push", "success", snapshot_id="a" * 40)
        state_store.record_event("pull", "diverged", detail="remote moved")

        events = state_store.recent_events()

        assert [e.operation for e in events] == ["pull", "push"]
        assert events[0].detail == "remote moved"
        assert events[1].snapshot_id == "a" * 40
        assert events[0].occurred_at.tzinfo is not None

    def test_retention_limit(self, state_store: StateStore, monkeypatch):
        """Test the log is trimmed to the retention limit."""
        monkeypatch.setattr(StateStore, "EVENT_RETENTION", 3)

        for i in range(5):
            state_store.record_event("push", "success", detail=str(i))

        events = state_store.recent_events(limit=10)
        assert [e.detail for e in events] == ["4", "3", "2"]


class TestMirrorReference:
    """Tests for the MirrorReference model."""

    @pytest.mark.parametrize("state,verified,expected", [
        (MirrorState.CONNECTED, True, True),
        (MirrorState.DIVERGED, True, True),
        (MirrorState.CONFIGURED_UNVERIFIED, False, False),
        (MirrorState.ERROR, True, False),
    ])
    def test_is_verified(self, state, verified, expected):
        """Test verification needs a timestamp and a reachable state."""
        mirror = MirrorReference(
            address="/srv/mirror.git",
            state=state,
            verified_at=datetime.now(timezone.utc) if verified else None,
        )
        assert mirror.is_verified is expected

    def test_disabled_is_not_configured(self):
        """Test an address alone does not configure a disabled mirror."""
        assert MirrorReference(address="/srv/mirror.git").is_configured is False

    def test_to_dict(self):
        """Test conversion to dictionary."""
        data = MirrorReference(
            address="/srv/mirror.git",
            state=MirrorState.ERROR,
            resume_state=MirrorState.CONNECTED,
        ).to_dict()

        assert data["state"] == "error"
        assert data["resume_state"] == "connected"
        assert data["verified_at"] is None

    def test_from_row_defaults_state(self):
        """Test a NULL state reads as disabled."""
        mirror = MirrorReference.from_row((None, None, None, None, None, None, None, None))
        assert mirror.state is MirrorState.DISABLED
