"""Live configuration file access module."""

from .fileset import FileSet, FileSetError, LiveFileSet, write_atomic

__all__ = ["FileSet", "FileSetError", "LiveFileSet", "write_atomic"]
