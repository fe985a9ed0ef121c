"""Storage backends for the memory engine."""

from __future__ import annotations

from .sqlite_store import SQLiteStore, build_fts_query

__all__ = ["SQLiteStore", "build_fts_query"]
