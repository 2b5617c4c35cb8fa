"""Mirror synchronization module."""

from .engine import (
    DivergedHistory,
    HistoryRelation,
    InvalidTransition,
    MirrorNotConfigured,
    PullResult,
    PushResult,
    RemoteAhead,
    ResolutionStrategy,
    ResolveResult,
    SyncEngine,
)
from .mirror import (
    AuthenticationError,
    MirrorClient,
    MirrorError,
    MirrorNotFound,
    NetworkUnavailable,
    PushRejected,
)

__all__ = [
    "AuthenticationError",
    "DivergedHistory",
    "HistoryRelation",
    "InvalidTransition",
    "MirrorClient",
    "MirrorError",
    "MirrorNotConfigured",
    "MirrorNotFound",
    "NetworkUnavailable",
    "PullResult",
    "PushRejected",
    "PushResult",
    "RemoteAhead",
    "ResolutionStrategy",
    "ResolveResult",
    "SyncEngine",
]
