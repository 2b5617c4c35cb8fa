"""Snapshot restore module."""

from .engine import PartialRestore, RestoreEngine, RestoreReport

__all__ = ["PartialRestore", "RestoreEngine", "RestoreReport"]
