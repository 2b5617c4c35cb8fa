"""
Unit tests for the sync engine.

A bare repository in the temp dir stands in for the mirror; a second
store plays the part of another device writing to the same mirror.
"""

import pytest
from pathlib import Path
from typing import Callable
from unittest.mock import Mock

from dulwich.repo import Repo

from timemachine.snapshots.snapshot_store import SnapshotStore
from timemachine.storage.models import MirrorReference, MirrorState
from timemachine.storage.state_store import StateStore
from timemachine.sync.engine import (
    DivergedHistory,
    HistoryRelation,
    InvalidTransition,
    MirrorNotConfigured,
    RemoteAhead,
    ResolutionStrategy,
    SyncEngine,
)
from timemachine.sync.mirror import (
    AuthenticationError,
    MirrorClient,
    MirrorError,
    MirrorNotFound,
    NetworkUnavailable,
)

NETWORK = "etc/config/network"
DHCP = "etc/config/dhcp"


def mirror_head(mirror_path: str) -> str:
    with Repo(mirror_path) as repo:
        return repo.refs[b"refs/heads/main"].decode("ascii")


@pytest.fixture
def second_device(make_store, tmp_path: Path, mirror_path: str) -> SyncEngine:
    """Another device's engine, configured against the same mirror."""
    store = make_store("second-router")
    engine = SyncEngine(
        store=store,
        state_store=StateStore(tmp_path / "second-router" / "sync_state.db"),
        identity=store.identity,
        max_retries=1,
        retry_delay=0,
    )
    engine.configure(mirror_path)
    return engine


@pytest.fixture
def mock_client() -> Mock:
    """Mirror client double; tests set side effects per method."""
    return Mock(spec=MirrorClient)


@pytest.fixture
def engine_with_mock(store: SnapshotStore, state_store: StateStore, identity, mock_client: Mock) -> SyncEngine:
    """Engine whose mirror client is the mock, configured and retrying three times."""
    engine = SyncEngine(
        store=store,
        state_store=state_store,
        identity=identity,
        client_factory=lambda address, **kwargs: mock_client,
        max_retries=3,
        retry_delay=0,
    )
    engine.configure("git@example.com:me/router.git")
    return engine


@pytest.fixture
def diverged(sync_engine: SyncEngine, second_device: SyncEngine, mirror_path: str) -> tuple[str, str]:
    """
    Split history: this device holds S1 -> S2, the mirror holds S1 -> S3.

    Returns:
        (local S2, mirror S3)
    """
    store = sync_engine.store
    store.commit({NETWORK: b"a"}, "S1")
    sync_engine.configure(mirror_path)
    sync_engine.push()

    second_device.pull()
    second_device.resolve(ResolutionStrategy.ADOPT_REMOTE)
    s3 = second_device.store.commit({NETWORK: b"a", DHCP: b"d"}, "S3")
    second_device.push()

    s2 = store.commit({NETWORK: b"b"}, "S2")
    return s2, s3


class TestConfiguration:
    """Tests for configure, disable and verify."""

    def test_configure_starts_unverified(self, sync_engine: SyncEngine, identity, mirror_path: str):
        """Test a new mirror is recorded but not yet trusted."""
        mirror = sync_engine.configure(mirror_path)

        assert mirror.state is MirrorState.CONFIGURED_UNVERIFIED
        assert mirror.address == mirror_path
        assert mirror.identity == str(identity.key_path)
        assert mirror.cursor is None
        assert sync_engine.state_store.recent_events()[0].operation == "configure"

    def test_configure_rejects_empty_address(self, sync_engine: SyncEngine):
        """Test a blank address is refused."""
        with pytest.raises(MirrorError):
            sync_engine.configure("   ")

        assert sync_engine.mirror.state is MirrorState.DISABLED

    def test_operations_need_a_mirror(self, sync_engine: SyncEngine):
        """Test sync operations without a mirror raise MirrorNotConfigured."""
        for operation in (sync_engine.push, sync_engine.pull, sync_engine.verify):
            with pytest.raises(MirrorNotConfigured):
                operation()

    def test_verify_connects(self, sync_engine: SyncEngine, mirror_path: str):
        """Test a reachable mirror moves to connected."""
        sync_engine.configure(mirror_path)

        mirror = sync_engine.verify()

        assert mirror.state is MirrorState.CONNECTED
        assert mirror.verified_at is not None
        assert mirror.is_verified

    def test_verify_missing_repository(self, sync_engine: SyncEngine, tmp_path: Path):
        """Test a missing mirror repository records an error."""
        sync_engine.configure(str(tmp_path / "nowhere.git"))

        with pytest.raises(MirrorNotFound):
            sync_engine.verify()

        mirror = sync_engine.mirror
        assert mirror.state is MirrorState.ERROR
        assert mirror.last_error == "MirrorNotFound"
        assert mirror.resume_state is MirrorState.CONFIGURED_UNVERIFIED

    def test_disable(self, sync_engine: SyncEngine, mirror_path: str):
        """Test disabling keeps the address but stops syncing."""
        sync_engine.configure(mirror_path)

        mirror = sync_engine.disable()

        assert mirror.state is MirrorState.DISABLED
        assert mirror.address == mirror_path
        with pytest.raises(MirrorNotConfigured):
            sync_engine.push()

    def test_disabled_cannot_connect(self, sync_engine: SyncEngine):
        """Test transitions outside the table are refused."""
        with pytest.raises(InvalidTransition):
            sync_engine._transition(sync_engine.mirror, MirrorState.CONNECTED)


class TestPush:
    """Tests for fast-forward push."""

    def test_push_to_empty_mirror(self, sync_engine: SyncEngine, mirror_path: str):
        """Test every local snapshot reaches an empty mirror."""
        store = sync_engine.store
        store.commit({NETWORK: b"a"}, "S1")
        s2 = store.commit({NETWORK: b"b"}, "S2")
        sync_engine.configure(mirror_path)

        result = sync_engine.push()

        assert result.sent == 2
        assert result.remote_before is None
        assert mirror_head(mirror_path) == s2
        assert sync_engine.mirror.cursor == s2
        assert sync_engine.mirror.state is MirrorState.CONNECTED

    def test_push_up_to_date(self, sync_engine: SyncEngine, mirror_path: str):
        """Test a second push sends nothing."""
        sync_engine.store.commit({NETWORK: b"a"}, "S1")
        sync_engine.configure(mirror_path)
        sync_engine.push()

        result = sync_engine.push()

        assert result.up_to_date
        assert str(result) == "Mirror already up to date"

    def test_push_fast_forwards(self, sync_engine: SyncEngine, mirror_path: str):
        """Test only new snapshots are sent after the first push."""
        store = sync_engine.store
        store.commit({NETWORK: b"a"}, "S1")
        sync_engine.configure(mirror_path)
        sync_engine.push()
        s2 = store.commit({NETWORK: b"b"}, "S2")

        result = sync_engine.push()

        assert result.sent == 1
        assert mirror_head(mirror_path) == s2

    def test_behind_device_is_refused_without_diverging(
        self, sync_engine: SyncEngine, second_device: SyncEngine, mirror_path: str
    ):
        """Test a device whose HEAD is an ancestor of the mirror is told to pull, not marked diverged."""
        sync_engine.configure(mirror_path)
        s1 = sync_engine.store.commit({NETWORK: b"a"}, "S1")
        sync_engine.push()
        second_device.pull()
        second_device.resolve(ResolutionStrategy.ADOPT_REMOTE)
        s2 = second_device.store.commit({NETWORK: b"b"}, "S2")
        second_device.push()
        sync_engine.pull()
        assert sync_engine.mirror.state is MirrorState.CONNECTED

        with pytest.raises(RemoteAhead) as exc_info:
            sync_engine.push()

        assert exc_info.value.local_head == s1
        assert exc_info.value.remote_head == s2
        assert sync_engine.mirror.state is MirrorState.CONNECTED
        assert sync_engine.state_store.recent_events()[0].outcome == "remote_ahead"
        assert mirror_head(mirror_path) == s2

    def test_unknown_mirror_descendant_is_fetched_before_classifying(
        self, sync_engine: SyncEngine, second_device: SyncEngine, mirror_path: str
    ):
        """Test a newer mirror head never fetched locally is recognized as ahead."""
        sync_engine.configure(mirror_path)
        sync_engine.store.commit({NETWORK: b"a"}, "S1")
        sync_engine.push()
        second_device.pull()
        second_device.resolve(ResolutionStrategy.ADOPT_REMOTE)
        s2 = second_device.store.commit({NETWORK: b"b"}, "S2")
        second_device.push()
        assert not sync_engine.store.contains(s2)

        with pytest.raises(RemoteAhead):
            sync_engine.push()

        assert sync_engine.store.contains(s2)
        assert sync_engine.mirror.state is MirrorState.CONNECTED

    def test_split_history_is_never_forced(self, sync_engine: SyncEngine, diverged, mirror_path: str):
        """Test a push over another device's snapshot stops in diverged."""
        s2, s3 = diverged

        with pytest.raises(DivergedHistory) as exc_info:
            sync_engine.push()

        assert exc_info.value.local_head == s2
        assert exc_info.value.remote_head == s3
        assert mirror_head(mirror_path) == s3
        assert sync_engine.store.head() == s2
        assert sync_engine.mirror.state is MirrorState.DIVERGED

    def test_diverged_refuses_without_contacting_mirror(self, sync_engine: SyncEngine, diverged, mirror_path: str):
        """Test pushes stay refused until an operator resolves."""
        with pytest.raises(DivergedHistory):
            sync_engine.push()

        with pytest.raises(DivergedHistory):
            sync_engine.push()

        assert sync_engine.mirror.state is MirrorState.DIVERGED
        assert mirror_head(mirror_path) == diverged[1]


class TestPull:
    """Tests for pull and remote history."""

    def test_pull_records_remote_view_only(self, sync_engine: SyncEngine, second_device: SyncEngine, mirror_path: str):
        """Test pulled snapshots land on the remote view, not HEAD."""
        s1 = sync_engine.store.commit({NETWORK: b"a"}, "S1")
        sync_engine.configure(mirror_path)
        sync_engine.push()

        result = second_device.pull()

        assert result.relation is HistoryRelation.REMOTE_AHEAD
        assert result.received == 1
        assert second_device.store.head() is None
        assert second_device.store.remote_head() == s1
        assert second_device.mirror.cursor == s1
        assert second_device.mirror.state is MirrorState.CONNECTED

    def test_pull_detects_divergence(self, sync_engine: SyncEngine, diverged):
        """Test a pull over split histories marks diverged after recording the view."""
        s2, s3 = diverged

        with pytest.raises(DivergedHistory):
            sync_engine.pull()

        assert sync_engine.store.remote_head() == s3
        assert sync_engine.store.head() == s2
        assert sync_engine.mirror.state is MirrorState.DIVERGED

    def test_list_remote(self, sync_engine: SyncEngine, second_device: SyncEngine, mirror_path: str):
        """Test mirror history is listed without moving any local ref."""
        store = sync_engine.store
        s1 = store.commit({NETWORK: b"a"}, "S1")
        s2 = store.commit({NETWORK: b"b"}, "S2")
        sync_engine.configure(mirror_path)
        sync_engine.push()

        entries = second_device.list_remote()

        assert [entry.id for entry in entries] == [s2, s1]
        assert second_device.store.head() is None
        assert second_device.store.remote_head() is None

    def test_list_remote_empty_mirror(self, second_device: SyncEngine):
        """Test an empty mirror has no history."""
        assert second_device.list_remote() == []


class TestResolve:
    """Tests for operator resolution of split histories."""

    def test_adopt_remote(self, sync_engine: SyncEngine, diverged, mirror_path: str):
        """Test adopting the mirror line keeps the local line under a ref."""
        s2, s3 = diverged
        with pytest.raises(DivergedHistory):
            sync_engine.push()

        result = sync_engine.resolve(ResolutionStrategy.ADOPT_REMOTE)

        assert result.head == s3
        assert result.kept_ref is not None
        assert sync_engine.store.head() == s3
        assert sync_engine.store.contains(s2)
        assert sync_engine.mirror.state is MirrorState.CONNECTED
        assert sync_engine.push().up_to_date

    def test_replay_local(self, sync_engine: SyncEngine, diverged, mirror_path: str):
        """Test local snapshots are re-applied on top of the mirror line."""
        s2, s3 = diverged
        with pytest.raises(DivergedHistory):
            sync_engine.push()

        result = sync_engine.resolve(ResolutionStrategy.REPLAY_LOCAL)

        replayed = sync_engine.store.get(result.head)
        assert result.replayed == 1
        assert replayed.parent == s3
        assert replayed.message == "S2"
        assert replayed.contents == {NETWORK: b"b"}

        push = sync_engine.push()
        assert push.sent == 1
        assert mirror_head(mirror_path) == result.head

    def test_adopt_remote_fast_forwards_behind_device(
        self, sync_engine: SyncEngine, second_device: SyncEngine, mirror_path: str
    ):
        """Test adopting a mirror that only extends local history keeps no abandoned ref."""
        sync_engine.configure(mirror_path)
        s1 = sync_engine.store.commit({NETWORK: b"a"}, "S1")
        sync_engine.push()
        second_device.pull()
        second_device.resolve(ResolutionStrategy.ADOPT_REMOTE)
        s2 = second_device.store.commit({NETWORK: b"b"}, "S2")
        second_device.push()

        result = sync_engine.resolve(ResolutionStrategy.ADOPT_REMOTE)

        assert result.head == s2
        assert result.kept_ref is None
        assert sync_engine.store.get(s2).parent == s1
        assert sync_engine.push().up_to_date

    def test_strategy_from_string(self, sync_engine: SyncEngine, diverged):
        """Test strategies may be given by value."""
        result = sync_engine.resolve("adopt_remote")
        assert result.strategy is ResolutionStrategy.ADOPT_REMOTE


class TestFailures:
    """Tests for transport failures and the error state."""

    def test_network_error_retried_then_recorded(self, engine_with_mock: SyncEngine, mock_client: Mock):
        """Test transient failures are retried, then the mirror goes to error."""
        mock_client.list_refs.side_effect = NetworkUnavailable("unreachable")

        with pytest.raises(NetworkUnavailable):
            engine_with_mock.verify()

        assert mock_client.list_refs.call_count == 3
        mirror = engine_with_mock.mirror
        assert mirror.state is MirrorState.ERROR
        assert mirror.last_error == "NetworkUnavailable"
        assert engine_with_mock.state_store.recent_events()[0].outcome == "error"

    def test_network_error_leaves_store_untouched(self, engine_with_mock: SyncEngine, mock_client: Mock):
        """Test a failed push changes nothing locally."""
        head = engine_with_mock.store.commit({NETWORK: b"a"}, "S1")
        mock_client.remote_head.side_effect = NetworkUnavailable("unreachable")

        with pytest.raises(NetworkUnavailable):
            engine_with_mock.push()

        assert engine_with_mock.store.head() == head
        assert engine_with_mock.store.count() == 1
        mock_client.push.assert_not_called()

    def test_recovery_after_error(self, engine_with_mock: SyncEngine, mock_client: Mock):
        """Test a later success clears the error."""
        mock_client.list_refs.side_effect = [NetworkUnavailable("down")] * 3 + [{}]

        with pytest.raises(NetworkUnavailable):
            engine_with_mock.verify()
        mirror = engine_with_mock.verify()

        assert mirror.state is MirrorState.CONNECTED
        assert mirror.last_error is None
        assert mirror.resume_state is None

    def test_auth_error_not_retried(self, engine_with_mock: SyncEngine, mock_client: Mock):
        """Test rejected credentials fail on the first attempt."""
        mock_client.list_refs.side_effect = AuthenticationError("denied")

        with pytest.raises(AuthenticationError):
            engine_with_mock.verify()

        assert mock_client.list_refs.call_count == 1
        assert engine_with_mock.mirror.last_error == "AuthenticationError"

    def test_error_keeps_divergence(self, engine_with_mock: SyncEngine, mock_client: Mock):
        """Test an error while diverged cannot lead back to connected."""
        state_store = engine_with_mock.state_store
        state_store.save_mirror(state_store.get_mirror().evolve(state=MirrorState.DIVERGED))
        mock_client.list_refs.side_effect = [NetworkUnavailable("down")] * 3 + [{}]

        with pytest.raises(NetworkUnavailable):
            engine_with_mock.verify()
        assert engine_with_mock.mirror.resume_state is MirrorState.DIVERGED

        with pytest.raises(DivergedHistory):
            engine_with_mock.push()
        mock_client.remote_head.assert_not_called()

        assert engine_with_mock.verify().state is MirrorState.DIVERGED

    def test_refused_update_is_an_error_not_divergence(self, engine_with_mock: SyncEngine, mock_client: Mock):
        """Test a mirror refusing the update (hook, protected branch) records an error."""
        engine_with_mock.store.commit({NETWORK: b"a"}, "S1")
        mock_client.remote_head.return_value = None
        mock_client.push.side_effect = MirrorError("Mirror refused update: protected branch")

        with pytest.raises(MirrorError):
            engine_with_mock.push()

        mirror = engine_with_mock.mirror
        assert mirror.state is MirrorState.ERROR
        assert mirror.last_error == "MirrorError"
        assert mirror.resume_state is MirrorState.CONFIGURED_UNVERIFIED

    def test_reconfigure_clears_state(self, engine_with_mock: SyncEngine, mock_client: Mock):
        """Test configuring a new address starts fresh."""
        mock_client.list_refs.side_effect = AuthenticationError("denied")
        with pytest.raises(AuthenticationError):
            engine_with_mock.verify()

        mirror = engine_with_mock.configure("git@example.com:me/other.git")

        assert mirror == MirrorReference(
            address="git@example.com:me/other.git",
            identity=mirror.identity,
            state=MirrorState.CONFIGURED_UNVERIFIED,
            updated_at=mirror.updated_at,
        )


class TestTwoDevices:
    """End-to-end runs with two devices sharing one mirror."""

    def test_stale_second_device_diverges(self, sync_engine: SyncEngine, second_device: SyncEngine, mirror_path: str):
        """Test a device building on an old mirror head cannot overwrite newer history."""
        store = sync_engine.store
        sync_engine.configure(mirror_path)
        s1 = store.commit({NETWORK: b"a"}, "S1")
        sync_engine.push()
        second_device.pull()
        second_device.resolve(ResolutionStrategy.ADOPT_REMOTE)
        assert second_device.mirror.cursor == s1

        s2 = store.commit({NETWORK: b"b"}, "S2")
        assert [(c.path, c.change_type.value) for c in store.diff(s1, s2)] == [(NETWORK, "modified")]
        assert sync_engine.push().sent == 1
        assert sync_engine.mirror.cursor == s2

        s3 = second_device.store.commit({NETWORK: b"c"}, "S3")
        assert second_device.store.get(s3).parent == s1

        with pytest.raises(DivergedHistory) as exc_info:
            second_device.push()

        assert exc_info.value.remote_head == s2
        assert mirror_head(mirror_path) == s2
        assert second_device.mirror.state is MirrorState.DIVERGED
