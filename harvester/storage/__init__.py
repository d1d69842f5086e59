"""Storage module - persistent job and listing store."""

from .sqlite_store import SQLiteJobStore

__all__ = ["SQLiteJobStore"]
