"""Reference persistence for crawled records and sessions."""

from .sqlite_store import SQLiteStore

__all__ = ["SQLiteStore"]
