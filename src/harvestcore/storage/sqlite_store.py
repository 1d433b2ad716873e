"""
SQLite reference store for crawled records and crawl sessions.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Set, Union

import aiosqlite
import structlog

from harvestcore.protocols import Record, SessionStatus

logger = structlog.get_logger(__name__)

# Incremented whenever SCHEMA changes.
CURRENT_SCHEMA_VERSION = 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    source TEXT NOT NULL,
    id TEXT NOT NULL,
    category TEXT,
    data TEXT NOT NULL,
    first_seen TEXT NOT NULL,
    last_seen TEXT NOT NULL,
    PRIMARY KEY (source, id)
);
CREATE INDEX IF NOT EXISTS idx_records_category ON records (source, category);
CREATE TABLE IF NOT EXISTS crawl_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    pages_scraped INTEGER NOT NULL DEFAULT 0,
    items_found INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    error_message TEXT
);
"""

UPSERT_SQL = """
INSERT INTO records (source, id, category, data, first_seen, last_seen)
VALUES (?, ?, ?, ?, ?, ?)
ON CONFLICT(source, id) DO UPDATE SET
    category = COALESCE(excluded.category, records.category),
    data = excluded.data,
    last_seen = excluded.last_seen
"""

# SQLite caps host parameters per statement; stay well under the old default of 999.
_ID_CHUNK = 500


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteStore:
    """Handles all interactions with the SQLite database for one source."""

    def __init__(self, db_path: Union[str, Path], source: str):
        self.db_path = db_path if str(db_path) == ":memory:" else Path(db_path)
        self.source = source
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Opens the connection and runs migrations."""
        if self._conn is not None:
            return
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(self.db_path)
        if str(self.db_path) != ":memory:":
            await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA busy_timeout = 5000;")
        conn.row_factory = aiosqlite.Row
        self._conn = conn
        await self._run_migrations(conn)
        logger.info("SQLite store initialized", path=str(self.db_path), source=self.source)

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "SQLiteStore":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @asynccontextmanager
    async def get_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serializes access to the single connection."""
        if self._conn is None:
            await self.initialize()
        assert self._conn is not None
        async with self._lock:
            yield self._conn

    async def _run_migrations(self, conn: aiosqlite.Connection) -> None:
        """Checks schema version and applies migrations if necessary."""
        cursor = await conn.execute("PRAGMA user_version;")
        version_row = await cursor.fetchone()
        current_version = version_row[0] if version_row is not None else 0

        if current_version < CURRENT_SCHEMA_VERSION:
            logger.info("Migrating database schema", from_version=current_version, to_version=CURRENT_SCHEMA_VERSION)
            await conn.executescript(SCHEMA)
            await conn.execute(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION};")
            await conn.commit()

    # --- records -------------------------------------------------------------

    async def upsert_many(self, records: Sequence[Record]) -> int:
        """Insert or refresh records; returns how many were not stored before."""
        if not records:
            return 0

        now = _now()
        rows: Dict[str, tuple] = {}
        for record in records:
            record_id = str(record.id)
            rows[record_id] = (
                self.source,
                record_id,
                record.category,
                json.dumps(record.data, ensure_ascii=False, default=str),
                now,
                now,
            )

        async with self.get_connection() as conn:
            existing = await self._existing_ids(conn, list(rows))
            await conn.executemany(UPSERT_SQL, list(rows.values()))
            await conn.commit()

        persisted = len(rows) - len(existing)
        logger.debug("Records upserted", source=self.source, total=len(rows), new=persisted)
        return persisted

    async def get_existing_ids(self, ids: Sequence[str]) -> Set[str]:
        async with self.get_connection() as conn:
            return await self._existing_ids(conn, [str(i) for i in ids])

    async def _existing_ids(self, conn: aiosqlite.Connection, ids: List[str]) -> Set[str]:
        found: Set[str] = set()
        for start in range(0, len(ids), _ID_CHUNK):
            chunk = ids[start : start + _ID_CHUNK]
            placeholders = ", ".join("?" for _ in chunk)
            cursor = await conn.execute(
                f"SELECT id FROM records WHERE source = ? AND id IN ({placeholders})",
                (self.source, *chunk),
            )
            found.update(row["id"] for row in await cursor.fetchall())
        return found

    async def get_record(self, record_id: str) -> Optional[Record]:
        async with self.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT id, category, data FROM records WHERE source = ? AND id = ?",
                (self.source, str(record_id)),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return Record(id=row["id"], data=json.loads(row["data"]), category=row["category"])

    async def count_records(self, category: Optional[str] = None) -> int:
        sql = "SELECT COUNT(*) FROM records WHERE source = ?"
        params: tuple = (self.source,)
        if category is not None:
            sql += " AND category = ?"
            params += (category,)
        async with self.get_connection() as conn:
            cursor = await conn.execute(sql, params)
            row = await cursor.fetchone()
        return int(row[0]) if row is not None else 0

    # --- sessions ------------------------------------------------------------

    async def create_session(self) -> int:
        async with self.get_connection() as conn:
            cursor = await conn.execute(
                "INSERT INTO crawl_sessions (source, started_at, status) VALUES (?, ?, ?)",
                (self.source, _now(), SessionStatus.RUNNING.value),
            )
            await conn.commit()
            session_id = cursor.lastrowid
        assert session_id is not None
        return session_id

    async def update_session(
        self,
        session_id: Any,
        *,
        pages_scraped: int,
        items_found: int,
        status: SessionStatus,
        error_message: Optional[str] = None,
    ) -> None:
        completed_at = _now() if status is not SessionStatus.RUNNING else None
        async with self.get_connection() as conn:
            await conn.execute(
                """
                UPDATE crawl_sessions
                SET pages_scraped = ?, items_found = ?, status = ?, error_message = ?,
                    completed_at = COALESCE(?, completed_at)
                WHERE id = ?
                """,
                (pages_scraped, items_found, status.value, error_message, completed_at, session_id),
            )
            await conn.commit()

    async def get_session(self, session_id: Any) -> Optional[Dict[str, Any]]:
        async with self.get_connection() as conn:
            cursor = await conn.execute("SELECT * FROM crawl_sessions WHERE id = ?", (session_id,))
            row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def list_sessions(self, limit: int = 20, all_sources: bool = False) -> List[Dict[str, Any]]:
        async with self.get_connection() as conn:
            if all_sources:
                cursor = await conn.execute("SELECT * FROM crawl_sessions ORDER BY id DESC LIMIT ?", (limit,))
            else:
                cursor = await conn.execute(
                    "SELECT * FROM crawl_sessions WHERE source = ? ORDER BY id DESC LIMIT ?",
                    (self.source, limit),
                )
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]
