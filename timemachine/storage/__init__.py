"""Persistent mirror state storage module."""

from .state_store import StateStore, StateStoreError
from .models import MirrorReference, MirrorState, SyncEvent

__all__ = ["StateStore", "StateStoreError", "MirrorReference", "MirrorState", "SyncEvent"]
