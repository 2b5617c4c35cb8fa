"""
Pytest configuration and shared fixtures.

Provides a throwaway device root, snapshot store, mirror and state
database for each test.
"""

import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

from dulwich.repo import Repo

from config.settings import (
    DeviceConfig,
    LockConfig,
    MirrorConfig,
    Settings,
    StoreConfig,
    SyncConfig,
)
from timemachine.files.fileset import LiveFileSet
from timemachine.profile.models import Category, ConfigurationProfile, DeviceIdentity
from timemachine.snapshots.lock import AdvisoryLock
from timemachine.snapshots.snapshot_store import SnapshotStore
from timemachine.storage.state_store import StateStore
from timemachine.sync.engine import SyncEngine


class TickingClock:
    """Clock that advances one minute per reading."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(minutes=1)
        return self.current


# ============================================================================
# Device Fixtures
# ============================================================================

@pytest.fixture
def live_root(tmp_path: Path) -> Path:
    """Create a device root with a few UCI config files."""
    root = tmp_path / "device"
    config_dir = root / "etc" / "config"
    config_dir.mkdir(parents=True)
    (config_dir / "network").write_bytes(b"config interface 'lan'\n\toption proto 'static'\n")
    (config_dir / "firewall").write_bytes(b"config defaults\n\toption input 'ACCEPT'\n")
    (config_dir / "dhcp").write_bytes(b"config dhcp 'lan'\n\toption start '100'\n")
    (config_dir / "system").write_bytes(b"config system\n\toption hostname 'OpenWrt'\n")
    (config_dir / "wireless").write_bytes(b"config wifi-iface\n\toption key 'secret'\n")
    return root


@pytest.fixture
def profile() -> ConfigurationProfile:
    """Profile selecting the four file categories (no package list)."""
    return ConfigurationProfile(categories=[
        Category.NETWORK,
        Category.FIREWALL,
        Category.DHCP,
        Category.SYSTEM,
    ])


@pytest.fixture
def live_files(live_root: Path, profile: ConfigurationProfile) -> LiveFileSet:
    """Live file set over the temp device root."""
    return LiveFileSet(live_root, profile, package_lister=None)


@pytest.fixture
def identity(tmp_path: Path) -> DeviceIdentity:
    """Device identity with a key location inside the temp dir."""
    return DeviceIdentity(name="Test Router", key_path=tmp_path / "keys" / "id_ed25519")


# ============================================================================
# Store Fixtures
# ============================================================================

@pytest.fixture
def clock() -> Callable[[], datetime]:
    """Deterministic, strictly increasing clock."""
    return TickingClock(datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def lock(tmp_path: Path) -> AdvisoryLock:
    """Advisory lock in the temp dir."""
    return AdvisoryLock(tmp_path / "state" / "timemachine.lock")


@pytest.fixture
def store(tmp_path: Path, identity: DeviceIdentity, lock: AdvisoryLock, clock) -> SnapshotStore:
    """Create an initialized, empty snapshot store."""
    snapshot_store = SnapshotStore(tmp_path / "time-machine", identity, lock=lock, clock=clock)
    snapshot_store.initialize()
    return snapshot_store


@pytest.fixture
def make_store(tmp_path: Path, clock) -> Callable[[str], SnapshotStore]:
    """Factory for additional stores (a second device)."""

    def factory(name: str) -> SnapshotStore:
        identity = DeviceIdentity(name=name, key_path=tmp_path / name / "id_ed25519")
        other = SnapshotStore(
            tmp_path / f"{name}-store",
            identity,
            lock=AdvisoryLock(tmp_path / name / "timemachine.lock"),
            clock=clock,
        )
        other.initialize()
        return other

    return factory


@pytest.fixture
def mirror_path(tmp_path: Path) -> str:
    """Create an empty bare repository acting as the mirror."""
    path = tmp_path / "mirror.git"
    path.mkdir()
    Repo.init_bare(str(path)).close()
    return str(path)


# ============================================================================
# Storage Fixtures
# ============================================================================

@pytest.fixture
def temp_db_path(tmp_path: Path) -> Path:
    """Path for a temporary database file."""
    return tmp_path / "state" / "sync_state.db"


@pytest.fixture
def state_store(temp_db_path: Path) -> StateStore:
    """Create a fresh StateStore with temp database."""
    return StateStore(temp_db_path)


@pytest.fixture
def sync_engine(store: SnapshotStore, state_store: StateStore, identity: DeviceIdentity) -> SyncEngine:
    """Sync engine without retry delays."""
    return SyncEngine(
        store=store,
        state_store=state_store,
        identity=identity,
        max_retries=2,
        retry_delay=0,
    )


# ============================================================================
# Settings Fixtures
# ============================================================================

@pytest.fixture
def settings(tmp_path: Path, live_root: Path) -> Settings:
    """Settings pointing every path into the temp dir."""
    config_dir = tmp_path / "config"
    return Settings(
        config_dir=config_dir,
        device=DeviceConfig(name="Test Router", key_path=tmp_path / "keys" / "id_ed25519"),
        store=StoreConfig(backup_dir=tmp_path / "time-machine", live_root=live_root),
        mirror=MirrorConfig(),
        sync=SyncConfig(max_retries=1, retry_delay_seconds=0),
        lock=LockConfig(path=config_dir / "timemachine.lock"),
    )
