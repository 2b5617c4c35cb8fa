"""
Read-only health diagnostics.

Aggregates store, identity, mirror and profile state into an ordered
list of checks. Values are left raw (counts, timedeltas, state names)
for the presentation layer to phrase.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from ..files.fileset import FileSet, FileSetError
from ..profile.models import ConfigurationProfile, DeviceIdentity, Schedule
from ..snapshots.snapshot_store import SnapshotStore, SnapshotStoreError
from ..storage.models import MirrorReference, MirrorState

logger = logging.getLogger(__name__)

STALE_AFTER = timedelta(days=7)


class HealthStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    FAIL = "fail"


@dataclass(frozen=True)
class HealthCheck:
    """
    One diagnostic result.

    Attributes:
        check: Stable check name (``store_initialized``, ``mirror``, ...)
        status: Outcome of the check
        value: Raw observation behind the status
    """
    check: str
    status: HealthStatus
    value: Any = None

    def to_dict(self) -> dict:
        value = self.value
        if isinstance(value, timedelta):
            value = int(value.total_seconds())
        return {"check": self.check, "status": self.status.value, "value": value}


@dataclass
class HealthReport:
    """Ordered diagnostics."""
    checks: list[HealthCheck] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return all(c.status is not HealthStatus.FAIL for c in self.checks)

    @property
    def warnings(self) -> list[HealthCheck]:
        return [c for c in self.checks if c.status is HealthStatus.WARNING]

    @property
    def failures(self) -> list[HealthCheck]:
        return [c for c in self.checks if c.status is HealthStatus.FAIL]

    def get(self, check: str) -> Optional[HealthCheck]:
        for item in self.checks:
            if item.check == check:
                return item
        return None

    def __str__(self) -> str:
        return (
            f"Health: {len(self.checks)} checks, {len(self.warnings)} warnings, "
            f"{len(self.failures)} failures"
        )


def _mirror_check(mirror: MirrorReference) -> HealthCheck:
    if mirror.state is MirrorState.DISABLED:
        return HealthCheck("mirror", HealthStatus.WARNING, mirror.state.value)
    if mirror.state is MirrorState.CONNECTED and mirror.is_verified:
        return HealthCheck("mirror", HealthStatus.OK, mirror.state.value)
    if mirror.state is MirrorState.CONFIGURED_UNVERIFIED:
        return HealthCheck("mirror", HealthStatus.WARNING, mirror.state.value)
    if mirror.state is MirrorState.ERROR:
        return HealthCheck("mirror", HealthStatus.FAIL, mirror.last_error or mirror.state.value)
    return HealthCheck("mirror", HealthStatus.FAIL, mirror.state.value)


def run_health_checks(
    store: SnapshotStore,
    identity: DeviceIdentity,
    mirror: MirrorReference,
    profile: ConfigurationProfile,
    file_set: FileSet,
    now: Optional[datetime] = None,
    stale_after: timedelta = STALE_AFTER,
) -> HealthReport:
    """
    Run every diagnostic in display order.

    Nothing is written: the store, mirror state and live files are only read.
    """
    now = now or datetime.now(timezone.utc)
    report = HealthReport()
    add = report.checks.append

    initialized = store.is_initialized
    add(HealthCheck(
        "store_initialized",
        HealthStatus.OK if initialized else HealthStatus.FAIL,
        str(store.path),
    ))

    add(HealthCheck(
        "security_key",
        HealthStatus.OK if identity.has_key else HealthStatus.WARNING,
        str(identity.public_key_path) if identity.has_key else None,
    ))

    add(_mirror_check(mirror))

    if initialized:
        try:
            last = store.last_snapshot_time()
            count = store.count()
            changes = store.status(file_set)
        except (SnapshotStoreError, FileSetError) as e:
            logger.error(f"Health check could not read the store: {e}")
            add(HealthCheck("last_snapshot", HealthStatus.FAIL, type(e).__name__))
            add(HealthCheck("snapshot_count", HealthStatus.FAIL, type(e).__name__))
            add(HealthCheck("unsaved_changes", HealthStatus.FAIL, type(e).__name__))
        else:
            if last is None:
                add(HealthCheck("last_snapshot", HealthStatus.WARNING, None))
            else:
                age = now - last
                add(HealthCheck(
                    "last_snapshot",
                    HealthStatus.WARNING if age > stale_after else HealthStatus.OK,
                    age,
                ))
            add(HealthCheck(
                "snapshot_count",
                HealthStatus.OK if count else HealthStatus.WARNING,
                count,
            ))
            add(HealthCheck(
                "unsaved_changes",
                HealthStatus.WARNING if changes else HealthStatus.OK,
                len(changes),
            ))
    else:
        for check in ("last_snapshot", "snapshot_count", "unsaved_changes"):
            add(HealthCheck(check, HealthStatus.FAIL, None))

    # Flag only; selecting sensitive categories is allowed
    sensitive = [c.value for c in profile.sensitive_categories]
    add(HealthCheck(
        "sensitive_categories",
        HealthStatus.WARNING if sensitive else HealthStatus.OK,
        sensitive,
    ))

    try:
        protected = len(file_set.paths())
    except FileSetError as e:
        logger.error(f"Health check could not list live files: {e}")
        add(HealthCheck("protected_files", HealthStatus.FAIL, type(e).__name__))
    else:
        add(HealthCheck(
            "protected_files",
            HealthStatus.OK if protected else HealthStatus.WARNING,
            protected,
        ))

    add(HealthCheck(
        "schedule",
        HealthStatus.WARNING if profile.schedule is Schedule.NEVER else HealthStatus.OK,
        profile.schedule.value,
    ))

    logger.debug(str(report))
    return report
