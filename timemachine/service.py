"""
Command facade.

One object wires the store, mirror, restore and diagnostics together
from Settings and exposes every operation the presentation layer calls.
Each operation returns an OperationResult: exceptions the operator can
act on are mapped to an Outcome, with the original exception attached
for structured context.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from config.settings import ConfigurationError, Settings

from .export import ExportError, Exporter
from .files.fileset import FileSetError, LiveFileSet, list_installed_packages
from .health.checks import run_health_checks
from .profile.identity import IdentityError, ensure_keypair
from .profile.models import Category, ConfigurationProfile, DeviceIdentity, Schedule
from .profile.store import load_profile, save_profile
from .restore.engine import PartialRestore, RestoreEngine
from .snapshots.lock import AdvisoryLock, LockBusy
from .snapshots.snapshot_store import NoChange, SnapshotStore, SnapshotStoreError
from .storage.state_store import StateStore, StateStoreError
from .sync.engine import (
    DivergedHistory,
    InvalidTransition,
    MirrorNotConfigured,
    RemoteAhead,
    ResolutionStrategy,
    SyncEngine,
)
from .sync.mirror import AuthenticationError, MirrorClient, MirrorError, NetworkUnavailable

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    """Reported result of a facade operation."""
    SUCCESS = "success"
    NO_CHANGE = "no_change"
    DIVERGED = "diverged"
    REMOTE_AHEAD = "remote_ahead"
    NETWORK_ERROR = "network_error"
    AUTH_ERROR = "auth_error"
    LOCK_BUSY = "lock_busy"
    PARTIAL_RESTORE_FAILURE = "partial_restore_failure"
    ERROR = "error"


# Most specific first
OUTCOME_BY_ERROR: tuple[tuple[type, Outcome], ...] = (
    (NoChange, Outcome.NO_CHANGE),
    (LockBusy, Outcome.LOCK_BUSY),
    (DivergedHistory, Outcome.DIVERGED),
    (RemoteAhead, Outcome.REMOTE_AHEAD),
    (NetworkUnavailable, Outcome.NETWORK_ERROR),
    (AuthenticationError, Outcome.AUTH_ERROR),
    (PartialRestore, Outcome.PARTIAL_RESTORE_FAILURE),
    (MirrorError, Outcome.ERROR),
    (MirrorNotConfigured, Outcome.ERROR),
    (InvalidTransition, Outcome.ERROR),
    (SnapshotStoreError, Outcome.ERROR),
    (FileSetError, Outcome.ERROR),
    (StateStoreError, Outcome.ERROR),
    (IdentityError, Outcome.ERROR),
    (ExportError, Outcome.ERROR),
    (ConfigurationError, Outcome.ERROR),
)


@dataclass
class OperationResult:
    """
    Result of one facade operation.

    Attributes:
        operation: Operation name (``backup``, ``push``, ...)
        outcome: Classified outcome
        data: Operation payload on success (snapshot id, report, ...)
        error: The exception behind a non-success outcome
    """
    operation: str
    outcome: Outcome
    data: Any = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.outcome in (Outcome.SUCCESS, Outcome.NO_CHANGE)

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "outcome": self.outcome.value,
            "error": type(self.error).__name__ if self.error else None,
        }


def parse_choice(enum_type: type[Enum], value: str) -> Enum:
    """Enum member for an operator-supplied value."""
    try:
        return enum_type(value)
    except ValueError as e:
        choices = ", ".join(member.value for member in enum_type)
        raise ConfigurationError(
            f"Invalid {enum_type.__name__} {value!r} (choose from: {choices})"
        ) from e


def classify(error: Exception) -> Optional[Outcome]:
    for error_type, outcome in OUTCOME_BY_ERROR:
        if isinstance(error, error_type):
            return outcome
    return None


class TimeMachine:
    """
    Facade over every core operation.

    Usage:
        machine = TimeMachine(load_settings())

        result = machine.backup_now(note="Changed WiFi channel")
        if result.outcome is Outcome.NO_CHANGE:
            ...
    """

    def __init__(
        self,
        settings: Settings,
        client_factory: Callable[..., MirrorClient] = MirrorClient,
        package_lister: Optional[Callable[[], Optional[bytes]]] = list_installed_packages,
    ):
        self.settings = settings
        self.identity = DeviceIdentity(
            name=settings.device.name,
            key_path=settings.device.key_path,
            email=settings.device.email,
        )
        self.lock = AdvisoryLock(settings.lock.path, stale_after=settings.lock.stale_after_seconds)
        self.store = SnapshotStore(
            settings.store.backup_dir,
            self.identity,
            branch=settings.store.branch,
            lock=self.lock,
        )
        self.state_store = StateStore(settings.state_database_path)
        self.sync = SyncEngine(
            store=self.store,
            state_store=self.state_store,
            identity=self.identity,
            client_factory=client_factory,
            max_retries=settings.sync.max_retries,
            retry_delay=settings.sync.retry_delay_seconds,
            timeout=settings.sync.timeout_seconds,
            lock=self.lock,
        )
        self._package_lister = package_lister

    def __repr__(self) -> str:
        return f"TimeMachine(device='{self.identity.name}', store='{self.store.path}')"

    @property
    def profile(self) -> ConfigurationProfile:
        return load_profile(self.settings.profile_path)

    def live_files(self, profile: Optional[ConfigurationProfile] = None) -> LiveFileSet:
        return LiveFileSet(
            self.settings.store.live_root,
            profile or self.profile,
            package_lister=self._package_lister,
        )

    def _run(self, operation: str, action: Callable[[], Any]) -> OperationResult:
        try:
            data = action()
        except Exception as e:
            outcome = classify(e)
            if outcome is None:
                raise
            if outcome is Outcome.NO_CHANGE:
                logger.info(f"{operation}: no change")
            else:
                logger.error(f"{operation} failed ({outcome.value}): {e}")
            return OperationResult(operation=operation, outcome=outcome, error=e)
        return OperationResult(operation=operation, outcome=Outcome.SUCCESS, data=data)

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def initialize(self) -> OperationResult:
        """Create the store and persist the profile on first run."""

        def action() -> bool:
            if not self.settings.profile_path.exists():
                save_profile(self.settings.profile_path, self.profile)
            created = self.store.initialize()
            mirror = self.settings.mirror
            if created and mirror.enabled and not self.sync.mirror.is_configured:
                self.sync.configure(mirror.address, self.identity.key_path)
            return created

        return self._run("initialize", action)

    def ensure_identity(self) -> OperationResult:
        """Public key line of the device, generating the pair if needed."""
        return self._run("identity", lambda: ensure_keypair(self.identity))

    def update_profile(
        self,
        select: Iterable[str] = (),
        deselect: Iterable[str] = (),
        schedule: Optional[str] = None,
    ) -> OperationResult:

        def action() -> ConfigurationProfile:
            profile = self.profile
            for category in select:
                profile.select(parse_choice(Category, category))
            for category in deselect:
                profile.deselect(parse_choice(Category, category))
            if schedule is not None:
                profile.schedule = parse_choice(Schedule, schedule)
            save_profile(self.settings.profile_path, profile)
            return profile

        return self._run("profile", action)

    # ------------------------------------------------------------------
    # Local history
    # ------------------------------------------------------------------

    def backup_message(self, note: Optional[str] = None, auto: bool = False) -> str:
        if auto:
            message = f"Automatic backup from {self.identity.name}"
        elif not self.store.head():
            message = f"Initial backup from {self.identity.name}"
        else:
            message = f"Backup from {self.identity.name}"
        if note and note.strip():
            message = f"{message}: {note.strip()}"
        return message

    def backup_now(self, note: Optional[str] = None, auto: bool = False) -> OperationResult:
        """
        Commit the selected live files.

        Automatic backups also push when a mirror is configured; a failed
        push is logged and reported in ``data`` but the backup stands.
        """
        result = self._run(
            "backup",
            lambda: self.store.commit(self.live_files(), self.backup_message(note, auto)),
        )
        if auto and result.outcome is Outcome.SUCCESS and self.sync.mirror.is_configured:
            push = self.sync_push()
            result.data = {"snapshot_id": result.data, "push": push.outcome.value}
        return result

    def status(self, labeler: Optional[Callable[[str], str]] = None) -> OperationResult:
        return self._run("status", lambda: self.store.status(self.live_files(), labeler=labeler))

    def view_history(self, limit: Optional[int] = 20) -> OperationResult:
        return self._run("history", lambda: self.store.history(limit=limit))

    def compare(self, id_a: str, id_b: str) -> OperationResult:
        return self._run(
            "compare",
            lambda: self.store.diff(self.store.resolve(id_a), self.store.resolve(id_b)),
        )

    def preview(self, snapshot_id: str, labeler: Optional[Callable[[str], str]] = None) -> OperationResult:
        return self._run(
            "preview",
            lambda: RestoreEngine(self.store, self.live_files(), lock=self.lock).preview(
                self.store.resolve(snapshot_id), labeler=labeler
            ),
        )

    def restore(self, snapshot_id: str) -> OperationResult:
        """Write a snapshot to live files. HEAD does not move."""
        return self._run(
            "restore",
            lambda: RestoreEngine(self.store, self.live_files(), lock=self.lock).restore(
                self.store.resolve(snapshot_id)
            ),
        )

    # ------------------------------------------------------------------
    # Mirror
    # ------------------------------------------------------------------

    def setup_mirror(self, address: str) -> OperationResult:
        return self._run("mirror", lambda: self.sync.configure(address, self.identity.key_path))

    def verify_mirror(self) -> OperationResult:
        return self._run("verify", self.sync.verify)

    def sync_push(self) -> OperationResult:
        return self._run("push", self.sync.push)

    def sync_pull(self) -> OperationResult:
        return self._run("pull", self.sync.pull)

    def list_remote(self, limit: Optional[int] = 20) -> OperationResult:
        return self._run("remote-history", lambda: self.sync.list_remote(limit))

    def resolve(self, strategy: str) -> OperationResult:
        return self._run("resolve", lambda: self.sync.resolve(parse_choice(ResolutionStrategy, strategy)))

    # ------------------------------------------------------------------
    # Diagnostics and export
    # ------------------------------------------------------------------

    def health_check(self) -> OperationResult:
        profile = self.profile
        return self._run(
            "health",
            lambda: run_health_checks(
                store=self.store,
                identity=self.identity,
                mirror=self.sync.mirror,
                profile=profile,
                file_set=self.live_files(profile),
            ),
        )

    def export(self, destination: str) -> OperationResult:
        exporter = Exporter(
            self.store.path,
            device_slug=self.identity.slug,
            key_path=self.identity.key_path if self.identity.has_key else None,
            timeout=self.settings.sync.timeout_seconds,
            max_retries=self.settings.sync.max_retries,
            lock=self.lock,
        )
        return self._run("export", lambda: exporter.export(destination))
