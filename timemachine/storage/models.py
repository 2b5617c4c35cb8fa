"""
Persistent mirror state models.

These models track the relationship between the local snapshot store
and its remote mirror.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional


class MirrorState(str, Enum):
    """Remote sync states."""
    DISABLED = "disabled"
    CONFIGURED_UNVERIFIED = "configured_unverified"
    CONNECTED = "connected"
    DIVERGED = "diverged"
    ERROR = "error"


@dataclass(frozen=True)
class MirrorReference:
    """
    Where the mirror lives and how far it is known to be in sync.

    Attributes:
        address: Remote location (``git@host:user/repo.git``, URL or path)
        identity: Path of the private key used to reach the mirror
        cursor: Last snapshot id known to be present on both sides
        state: Current sync state
        last_error: Error class name of the last failure, if any
        resume_state: State to return to once an error clears
        verified_at: Last successful reachability check
        updated_at: Last state change
    """
    address: Optional[str] = None
    identity: Optional[str] = None
    cursor: Optional[str] = None
    state: MirrorState = MirrorState.DISABLED
    last_error: Optional[str] = None
    resume_state: Optional[MirrorState] = None
    verified_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_configured(self) -> bool:
        return self.address is not None and self.state is not MirrorState.DISABLED

    @property
    def is_verified(self) -> bool:
        return self.verified_at is not None and self.state in (
            MirrorState.CONNECTED,
            MirrorState.DIVERGED,
        )

    def evolve(self, **changes) -> "MirrorReference":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        """Convert to dictionary for reporting."""
        return {
            "address": self.address,
            "identity": self.identity,
            "cursor": self.cursor,
            "state": self.state.value,
            "last_error": self.last_error,
            "resume_state": self.resume_state.value if self.resume_state else None,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_row(cls, row: tuple) -> "MirrorReference":
        """Create from SQLite row tuple."""
        (
            address,
            identity,
            cursor,
            state,
            last_error,
            resume_state,
            verified_at,
            updated_at,
        ) = row

        return cls(
            address=address,
            identity=identity,
            cursor=cursor,
            state=MirrorState(state or MirrorState.DISABLED.value),
            last_error=last_error,
            resume_state=MirrorState(resume_state) if resume_state else None,
            verified_at=datetime.fromisoformat(verified_at) if verified_at else None,
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
        )


@dataclass(frozen=True)
class SyncEvent:
    """One recorded sync operation outcome."""
    operation: str
    outcome: str
    snapshot_id: Optional[str]
    detail: Optional[str]
    occurred_at: datetime

    @classmethod
    def from_row(cls, row: tuple) -> "SyncEvent":
        operation, outcome, snapshot_id, detail, occurred_at = row
        return cls(
            operation=operation,
            outcome=outcome,
            snapshot_id=snapshot_id,
            detail=detail,
            occurred_at=datetime.fromisoformat(occurred_at),
        )
