"""SQLite-backed document store of record."""

from __future__ import annotations

from .schema import metadata as db_metadata
from .sqlite_store import SQLiteStore

__all__ = ["SQLiteStore", "db_metadata"]
