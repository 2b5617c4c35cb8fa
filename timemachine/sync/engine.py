"""
Remote sync engine.

Moves snapshots between the local store and its mirror. Updates are
fast-forward only: when the two histories have split, the engine stops
in the ``diverged`` state and waits for an explicit operator decision.
Network failures move the mirror to ``error`` without touching the
local store.
"""

import logging
import time
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from ..profile.models import DeviceIdentity
from ..snapshots.lock import AdvisoryLock
from ..snapshots.snapshot_store import SnapshotStore
from ..storage.models import MirrorReference, MirrorState
from ..storage.state_store import StateStore
from .mirror import MirrorClient, MirrorError, NetworkUnavailable, PushRejected

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[MirrorState, frozenset[MirrorState]] = {
    MirrorState.DISABLED: frozenset({MirrorState.CONFIGURED_UNVERIFIED}),
    MirrorState.CONFIGURED_UNVERIFIED: frozenset({
        MirrorState.CONFIGURED_UNVERIFIED,
        MirrorState.CONNECTED,
        MirrorState.DIVERGED,
        MirrorState.ERROR,
        MirrorState.DISABLED,
    }),
    MirrorState.CONNECTED: frozenset({
        MirrorState.CONNECTED,
        MirrorState.DIVERGED,
        MirrorState.ERROR,
        MirrorState.CONFIGURED_UNVERIFIED,
        MirrorState.DISABLED,
    }),
    MirrorState.DIVERGED: frozenset({
        MirrorState.DIVERGED,
        MirrorState.CONNECTED,
        MirrorState.ERROR,
        MirrorState.CONFIGURED_UNVERIFIED,
        MirrorState.DISABLED,
    }),
    MirrorState.ERROR: frozenset({
        MirrorState.ERROR,
        MirrorState.CONNECTED,
        MirrorState.DIVERGED,
        MirrorState.CONFIGURED_UNVERIFIED,
        MirrorState.DISABLED,
    }),
}


class DivergedHistory(Exception):
    """Raised when local and mirror histories are on different lines."""

    def __init__(self, local_head: Optional[str], remote_head: Optional[str], address: Optional[str] = None):
        super().__init__(
            f"Local {local_head[:7] if local_head else 'empty'} and mirror "
            f"{remote_head[:7] if remote_head else 'empty'} have diverged"
        )
        self.local_head = local_head
        self.remote_head = remote_head
        self.address = address


class RemoteAhead(Exception):
    """Raised when the mirror already extends local history; pull and adopt it first."""

    def __init__(self, local_head: Optional[str], remote_head: str, address: Optional[str] = None):
        super().__init__(
            f"Mirror at {remote_head[:7]} is ahead of local "
            f"{local_head[:7] if local_head else 'empty'}; pull first"
        )
        self.local_head = local_head
        self.remote_head = remote_head
        self.address = address


class MirrorNotConfigured(Exception):
    """Raised when a sync operation runs without a mirror."""
    pass


class InvalidTransition(Exception):
    """Raised when a sync state change is not permitted."""

    def __init__(self, current: MirrorState, target: MirrorState):
        super().__init__(f"Cannot move mirror from {current.value} to {target.value}")
        self.current = current
        self.target = target


class HistoryRelation(str, Enum):
    """How the local line relates to the mirror line."""
    EQUAL = "equal"
    LOCAL_AHEAD = "local_ahead"
    REMOTE_AHEAD = "remote_ahead"
    DIVERGED = "diverged"


class ResolutionStrategy(str, Enum):
    """Operator choices for leaving the diverged state."""
    ADOPT_REMOTE = "adopt_remote"
    REPLAY_LOCAL = "replay_local"


@dataclass
class PushResult:
    """Outcome of a push."""
    local_head: Optional[str]
    remote_before: Optional[str]
    sent: int = 0

    @property
    def up_to_date(self) -> bool:
        return self.sent == 0

    def __str__(self) -> str:
        if self.up_to_date:
            return "Mirror already up to date"
        return f"Pushed {self.sent} snapshot(s), mirror at {self.local_head[:7]}"


@dataclass
class PullResult:
    """Outcome of a pull."""
    local_head: Optional[str]
    remote_head: Optional[str]
    relation: HistoryRelation
    received: int = 0

    def __str__(self) -> str:
        remote = self.remote_head[:7] if self.remote_head else "empty"
        return f"Mirror at {remote} ({self.relation.value}), {self.received} new snapshot(s)"


@dataclass
class ResolveResult:
    """Outcome of an operator resolution."""
    strategy: ResolutionStrategy
    head: Optional[str]
    kept_ref: Optional[str] = None
    replayed: int = 0


class SyncEngine:
    """
    Fast-forward-only synchronization with a git mirror.

    Core principles:
    - The mirror ref is never force-updated
    - Pulled history lands on a separate remote-view ref
    - Diverged histories are only reconciled by ``resolve``
    - Failures are recorded, never silently retried forever

    Usage:
        engine = SyncEngine(store=store, state_store=state, identity=identity)

        engine.configure("git@github.com:me/router-backups.git")
        engine.verify()
        result = engine.push()
        print(result)
    """

    def __init__(
        self,
        store: SnapshotStore,
        state_store: StateStore,
        identity: DeviceIdentity,
        client_factory: Callable[..., MirrorClient] = MirrorClient,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 30.0,
        lock: Optional[AdvisoryLock] = None,
    ):
        """
        Initialize sync engine.

        Args:
            store: Local snapshot store
            state_store: Persistent mirror state
            identity: Device identity (default key for the mirror)
            client_factory: Builds a mirror client for an address
            max_retries: Attempts for transient network failures
            retry_delay: Base delay between retries in seconds
            timeout: Network timeout in seconds
            lock: Advisory lock for mutating operations (default: the store's)
        """
        self.store = store
        self.state_store = state_store
        self.identity = identity
        self.client_factory = client_factory
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.lock = lock if lock is not None else store.lock

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def mirror(self) -> MirrorReference:
        return self.state_store.get_mirror()

    @staticmethod
    def effective_state(mirror: MirrorReference) -> MirrorState:
        """State the mirror returns to once a pending error clears."""
        if mirror.state is MirrorState.ERROR and mirror.resume_state is not None:
            return mirror.resume_state
        return mirror.state

    def _transition(
        self,
        mirror: MirrorReference,
        target: MirrorState,
        resolution: bool = False,
        **changes,
    ) -> MirrorReference:
        if target not in ALLOWED_TRANSITIONS[mirror.state]:
            raise InvalidTransition(mirror.state, target)
        if (
            self.effective_state(mirror) is MirrorState.DIVERGED
            and target is MirrorState.CONNECTED
            and not resolution
        ):
            raise InvalidTransition(mirror.state, target)

        if target is not MirrorState.ERROR:
            changes.setdefault("last_error", None)
            changes.setdefault("resume_state", None)

        if mirror.state is not target:
            logger.info(f"Mirror state: {mirror.state.value} -> {target.value}")
        return self.state_store.save_mirror(mirror.evolve(state=target, **changes))

    def _settled_state(self, mirror: MirrorReference) -> MirrorState:
        """State after a successful network operation."""
        if self.effective_state(mirror) is MirrorState.DIVERGED:
            return MirrorState.DIVERGED
        return MirrorState.CONNECTED

    def _succeed(self, mirror: MirrorReference, **changes) -> MirrorReference:
        changes.setdefault("verified_at", datetime.now(timezone.utc))
        return self._transition(mirror, self._settled_state(mirror), **changes)

    def _fail(self, mirror: MirrorReference, operation: str, error: MirrorError) -> None:
        logger.error(f"{operation} failed: {error}")
        resume = mirror.resume_state if mirror.state is MirrorState.ERROR else mirror.state
        self._transition(
            mirror,
            MirrorState.ERROR,
            last_error=type(error).__name__,
            resume_state=resume,
        )
        self.record_event(operation, "error", detail=type(error).__name__)

    def _mark_diverged(
        self,
        mirror: MirrorReference,
        operation: str,
        local_head: Optional[str],
        remote_head: Optional[str],
    ) -> DivergedHistory:
        logger.warning(
            f"Histories diverged: local {local_head[:7] if local_head else 'empty'}, "
            f"mirror {remote_head[:7] if remote_head else 'empty'}"
        )
        self._transition(mirror, MirrorState.DIVERGED, verified_at=datetime.now(timezone.utc))
        self.record_event(operation, "diverged", snapshot_id=local_head, detail=remote_head)
        return DivergedHistory(local_head, remote_head, mirror.address)

    def _remote_ahead(
        self,
        mirror: MirrorReference,
        local_head: Optional[str],
        remote_head: str,
    ) -> RemoteAhead:
        logger.warning(
            f"Mirror is ahead at {remote_head[:7]}; pull and adopt it before pushing"
        )
        self.record_event("push", "remote_ahead", snapshot_id=local_head, detail=remote_head)
        return RemoteAhead(local_head, remote_head, mirror.address)

    def record_event(
        self,
        operation: str,
        outcome: str,
        snapshot_id: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> None:
        self.state_store.record_event(operation, outcome, snapshot_id, detail)

    def _require_mirror(self) -> MirrorReference:
        mirror = self.mirror
        if not mirror.is_configured:
            raise MirrorNotConfigured("No mirror configured")
        return mirror

    def _client(self, mirror: MirrorReference) -> MirrorClient:
        key_path = Path(mirror.identity) if mirror.identity else self.identity.key_path
        return self.client_factory(
            mirror.address,
            key_path=key_path,
            timeout=self.timeout,
            max_retries=self.max_retries,
        )

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def configure(self, address: str, key_path: Optional[Path] = None) -> MirrorReference:
        """
        Point the store at a mirror. Reachability is not checked here.

        The cursor is reset: nothing is known about the new mirror yet.
        """
        address = address.strip()
        if not address:
            raise MirrorError("Mirror address is empty", address)

        mirror = self.mirror
        target = MirrorState.CONFIGURED_UNVERIFIED
        saved = self.state_store.save_mirror(MirrorReference(
            address=address,
            identity=str(key_path or self.identity.key_path),
            state=target,
        ))
        logger.info(f"Mirror configured: {address} ({mirror.state.value} -> {target.value})")
        self.record_event("configure", "success", detail=address)
        return saved

    def disable(self) -> MirrorReference:
        """Stop syncing. The address is kept for a later ``configure``."""
        mirror = self.mirror
        if mirror.state is MirrorState.DISABLED:
            return mirror
        saved = self._transition(mirror, MirrorState.DISABLED, cursor=None)
        self.record_event("disable", "success")
        return saved

    def verify(self) -> MirrorReference:
        """
        Read-only reachability and authentication check.

        Raises:
            MirrorNotConfigured: If no mirror is set up
            MirrorError: If the mirror cannot be reached
        """
        mirror = self._require_mirror()
        client = self._client(mirror)
        try:
            refs = self._retry_operation(client.list_refs, "verify mirror")
        except MirrorError as e:
            self._fail(mirror, "verify", e)
            raise

        logger.info(f"Mirror reachable: {len(refs)} ref(s)")
        saved = self._succeed(mirror)
        self.record_event("verify", "success")
        return saved

    # ------------------------------------------------------------------
    # Transfer
    # ------------------------------------------------------------------

    def relation(self, local_head: Optional[str], remote_head: Optional[str]) -> HistoryRelation:
        """Classify two heads; the remote head must already be fetched to tell ahead from split."""
        if local_head == remote_head:
            return HistoryRelation.EQUAL
        if remote_head is None:
            return HistoryRelation.LOCAL_AHEAD
        if local_head is None:
            return HistoryRelation.REMOTE_AHEAD
        if self.store.contains(remote_head) and self.store.is_ancestor(remote_head, local_head):
            return HistoryRelation.LOCAL_AHEAD
        if self.store.contains(remote_head) and self.store.is_ancestor(local_head, remote_head):
            return HistoryRelation.REMOTE_AHEAD
        return HistoryRelation.DIVERGED

    def _classify(
        self,
        client: MirrorClient,
        local_head: Optional[str],
        remote_head: Optional[str],
    ) -> HistoryRelation:
        """Relation of the heads, fetching first when the mirror head is unknown locally."""
        if remote_head is not None and not self.store.contains(remote_head):
            self._retry_operation(lambda: client.fetch(self.store.path), "fetch snapshots")
        return self.relation(local_head, remote_head)

    def _count_between(self, newer: Optional[str], older: Optional[str]) -> int:
        count = 0
        for entry in self.store.history(limit=None, start=newer) if newer else []:
            if entry.id == older:
                break
            count += 1
        return count

    def push(self) -> PushResult:
        """
        Fast-forward the mirror to local HEAD.

        Succeeds only when the mirror branch is empty or its head is an
        ancestor of (or equal to) local HEAD. A mirror that merely extends
        the local line is refused without changing the mirror state.

        Raises:
            RemoteAhead: If local HEAD is an ancestor of the mirror head
            DivergedHistory: If the mirror holds history not on the local line
            MirrorError: On transport failure (state becomes ``error``)
        """
        mirror = self._require_mirror()
        if self.effective_state(mirror) is MirrorState.DIVERGED:
            raise DivergedHistory(self.store.head(), self.store.remote_head(), mirror.address)

        client = self._client(mirror)
        with self._locked():
            local_head = self.store.head()
            try:
                remote_head = self._retry_operation(
                    lambda: client.remote_head(self.store.branch), "read mirror head"
                )
                relation = self._classify(client, local_head, remote_head)

                if relation is HistoryRelation.EQUAL:
                    logger.info("Mirror already up to date")
                    self._succeed(mirror, cursor=local_head)
                    self.record_event("push", "success", snapshot_id=local_head)
                    return PushResult(local_head=local_head, remote_before=remote_head)

                if relation is HistoryRelation.REMOTE_AHEAD:
                    raise self._remote_ahead(mirror, local_head, remote_head)
                if relation is HistoryRelation.DIVERGED:
                    raise self._mark_diverged(mirror, "push", local_head, remote_head)

                try:
                    self._retry_operation(
                        lambda: client.push(self.store.path, self.store.branch, remote_head, local_head),
                        "push snapshots",
                    )
                except PushRejected as e:
                    # The mirror moved after it was read
                    moved = self._classify(client, local_head, e.remote_head)
                    if moved is HistoryRelation.REMOTE_AHEAD:
                        raise self._remote_ahead(mirror, local_head, e.remote_head) from e
                    if moved is HistoryRelation.DIVERGED:
                        raise self._mark_diverged(mirror, "push", local_head, e.remote_head) from e
                    raise
            except MirrorError as e:
                self._fail(mirror, "push", e)
                raise

            sent = self._count_between(local_head, remote_head)
            self._succeed(mirror, cursor=local_head)
            self.record_event("push", "success", snapshot_id=local_head, detail=f"{sent} sent")

        result = PushResult(local_head=local_head, remote_before=remote_head, sent=sent)
        logger.info(str(result))
        return result

    def pull(self) -> PullResult:
        """
        Fetch mirror snapshots onto the remote-view ref.

        Local HEAD and live files are never touched.

        Raises:
            DivergedHistory: If the heads are on different lines (after the
                remote view is recorded)
            MirrorError: On transport failure (state becomes ``error``)
        """
        mirror = self._require_mirror()
        client = self._client(mirror)

        with self._locked():
            previous_view = self.store.remote_head()
            try:
                refs = self._retry_operation(
                    lambda: client.fetch(self.store.path), "fetch snapshots"
                )
            except MirrorError as e:
                self._fail(mirror, "pull", e)
                raise

            sha = refs.get(self.store.branch_ref)
            remote_head = sha.decode("ascii") if sha else None
            if remote_head is not None:
                self.store.set_remote_head(remote_head)

            local_head = self.store.head()
            relation = self.relation(local_head, remote_head)
            if relation is HistoryRelation.DIVERGED:
                raise self._mark_diverged(mirror, "pull", local_head, remote_head)

            received = self._count_between(remote_head, previous_view)
            self._succeed(mirror, cursor=remote_head)
            self.record_event("pull", "success", snapshot_id=remote_head, detail=relation.value)

        result = PullResult(
            local_head=local_head,
            remote_head=remote_head,
            relation=relation,
            received=received,
        )
        logger.info(str(result))
        return result

    def list_remote(self, limit: Optional[int] = 20):
        """
        Mirror history, newest first.

        Objects are fetched but no local ref and no cursor moves.
        """
        mirror = self._require_mirror()
        client = self._client(mirror)
        try:
            refs = self._retry_operation(lambda: client.fetch(self.store.path), "list mirror history")
        except MirrorError as e:
            self._fail(mirror, "list_remote", e)
            raise

        self._succeed(mirror)
        sha = refs.get(self.store.branch_ref)
        if sha is None:
            return []
        return self.store.history(limit=limit, start=sha.decode("ascii"))

    def resolve(self, strategy: ResolutionStrategy) -> ResolveResult:
        """
        Leave the diverged state by operator choice.

        ``adopt_remote`` repoints local HEAD to the mirror head, keeping the
        old HEAD under an abandoned ref when it is not on the mirror line;
        a device that is only behind is fast-forwarded. ``replay_local``
        re-creates local-only snapshots on top of the mirror head. The mirror
        itself is not written; a following ``push`` fast-forwards it.
        """
        strategy = ResolutionStrategy(strategy)
        mirror = self._require_mirror()
        client = self._client(mirror)

        with self._locked():
            try:
                refs = self._retry_operation(
                    lambda: client.fetch(self.store.path), "fetch snapshots"
                )
            except MirrorError as e:
                self._fail(mirror, "resolve", e)
                raise

            sha = refs.get(self.store.branch_ref)
            remote_head = sha.decode("ascii") if sha else None
            local_head = self.store.head()
            result = ResolveResult(strategy=strategy, head=local_head)

            if remote_head is not None:
                self.store.set_remote_head(remote_head)
                if strategy is ResolutionStrategy.ADOPT_REMOTE:
                    result.kept_ref = self.store.set_head(remote_head, expected=local_head)
                    result.head = remote_head
                else:
                    local_only = self._local_only(local_head, remote_head)
                    result.head = self.store.replay(local_only, onto=remote_head, expected=local_head)
                    result.replayed = len(local_only)

            self._transition(
                mirror,
                MirrorState.CONNECTED,
                resolution=True,
                cursor=remote_head,
                verified_at=datetime.now(timezone.utc),
            )
            self.record_event("resolve", "success", snapshot_id=result.head, detail=strategy.value)

        logger.info(f"Resolved with {strategy.value}: HEAD at {result.head[:7] if result.head else 'empty'}")
        return result

    def _local_only(self, local_head: Optional[str], remote_head: str) -> list[str]:
        """Local snapshots not on the mirror line, oldest first."""
        if local_head is None:
            return []
        remote_ids = {entry.id for entry in self.store.history(limit=None, start=remote_head)}
        local_only = []
        for entry in self.store.history(limit=None, start=local_head):
            if entry.id in remote_ids:
                break
            local_only.append(entry.id)
        return list(reversed(local_only))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _locked(self):
        return self.lock if self.lock is not None else nullcontext()

    def _retry_operation(self, operation, description: str):
        """
        Execute an operation with retry logic.

        Only ``NetworkUnavailable`` is retried; authentication and other
        mirror errors fail on the first attempt.

        Args:
            operation: Callable to execute
            description: Human-readable description for logging

        Returns:
            Result of operation

        Raises:
            Last exception if all retries failed
        """
        last_error = None

        for attempt in range(self.max_retries):
            try:
                return operation()
            except NetworkUnavailable as e:
                last_error = e

                if attempt < self.max_retries - 1:
                    delay = self.retry_delay * (2 ** attempt)  # Exponential backoff
                    logger.warning(
                        f"Retry {attempt + 1}/{self.max_retries} for {description}: {e}. "
                        f"Waiting {delay}s..."
                    )
                    time.sleep(delay)

        logger.error(f"All retries failed for {description}: {last_error}")
        raise last_error
