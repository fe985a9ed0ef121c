"""SQLite storage backend for the memory engine.

Persists memories, their FTS5 lexical index and their quantized vectors in one
SQLite file using aiosqlite. Every memory operation is scoped by persona id.

Two connections are opened against a WAL-mode database:

- a writer, used only inside explicit ``BEGIN IMMEDIATE`` transactions that
  are serialized by an asyncio lock and rolled back on any failure;
- a reader, which only ever observes committed transactions, so a memory is
  never visible without its vector and lexical index entry.
"""

from __future__ import annotations

import asyncio
import re
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Iterable, Sequence

import aiosqlite
from loguru import logger

from ..exceptions import StorageFailure
from ..models import (
    CategoryCount,
    EmotionType,
    Memory,
    MemoryKind,
    QuantizedVector,
    ensure_utc,
)
from ..quantizer import cosine_matrix

_MEMORY_COLUMNS = (
    "id, persona_id, user_id, role, text, kind, emotion, importance, "
    "created_at, last_accessed_at, mention_count, source_chat_id, "
    "source_message_id"
)

# Parameters per IN (...) clause, well below SQLite's variable limit
_IN_CHUNK = 500

_FTS_TOKEN = re.compile(r"\w+", re.UNICODE)

_STOPWORDS = frozenset(
    """
    a an and are as at be but by can could did do does doing for from had has
    have how i if in into is it its me my of on or our so that the their them
    then there these they this to was we were what when where which who why
    will with would you your
    """.split()
)


def _to_iso(value: datetime) -> str:
    # Fixed-width UTC timestamps sort lexicographically
    return ensure_utc(value).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    return ensure_utc(datetime.fromisoformat(value))


def _chunks(items: Sequence[str], size: int = _IN_CHUNK) -> Iterable[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def build_fts_query(text: str) -> str:
    """Turn free text into a safe FTS5 OR-query.

    Each remaining word is double-quoted so punctuation in the input can never
    be read as FTS5 syntax. Stopwords are dropped; an empty string means there
    is nothing to search for.
    """
    seen: list[str] = []
    for token in _FTS_TOKEN.findall(text.lower()):
        if token in _STOPWORDS or token in seen:
            continue
        seen.append(token)
    return " OR ".join(f'"{token}"' for token in seen)


class SQLiteStore:
    """SQLite storage backend for persona-scoped memories.

    Provides async CRUD for memories, their lexical index and quantized
    vectors, plus a small key/value settings table.
    """

    def __init__(self, db_path: str = "./memory/persona_memory.db"):
        """Initialize SQLite store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._writer: aiosqlite.Connection | None = None
        self._reader: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        logger.info(f"SQLiteStore initialized with db_path: {db_path}")

    async def initialize(self) -> None:
        """Create database tables and indexes if they don't exist.

        Creates directory for database file if needed.
        Enables WAL mode so the reader never sees uncommitted writes.
        """
        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Ensured database directory exists: {db_dir}")

        try:
            self._writer = await aiosqlite.connect(self.db_path, isolation_level=None)
            await self._writer.execute("PRAGMA journal_mode=WAL")
            await self._writer.execute("PRAGMA foreign_keys=ON")
            await self._writer.execute("PRAGMA busy_timeout=5000")
            await self._create_tables()
            await self._create_indexes()

            self._reader = await aiosqlite.connect(self.db_path, isolation_level=None)
            self._reader.row_factory = aiosqlite.Row
            await self._reader.execute("PRAGMA foreign_keys=ON")
            await self._reader.execute("PRAGMA busy_timeout=5000")
        except sqlite3.Error as e:
            await self.close()
            raise StorageFailure(
                f"Failed to initialize database {self.db_path}: {e}",
                operation="initialize",
            ) from e

        logger.info("SQLite database initialized successfully")

    async def _create_tables(self) -> None:
        """Create memory, lexical index, vector and settings tables."""
        await self._writer.execute("""
            CREATE TABLE IF NOT EXISTS memories (
                id TEXT PRIMARY KEY,
                persona_id TEXT NOT NULL,
                user_id TEXT NOT NULL DEFAULT '',
                role TEXT NOT NULL DEFAULT 'user',
                text TEXT NOT NULL,
                kind TEXT NOT NULL,
                emotion TEXT NOT NULL,
                importance REAL NOT NULL DEFAULT 0.5,
                created_at TEXT NOT NULL,
                last_accessed_at TEXT NOT NULL,
                mention_count INTEGER NOT NULL DEFAULT 0,
                source_chat_id TEXT,
                source_message_id TEXT
            )
        """)

        await self._writer.execute("""
            CREATE TABLE IF NOT EXISTS memory_vectors (
                memory_id TEXT PRIMARY KEY,
                dim INTEGER NOT NULL,
                q8 BLOB NOT NULL,
                scale REAL NOT NULL,
                FOREIGN KEY (memory_id) REFERENCES memories(id)
                    ON DELETE CASCADE
            )
        """)

        await self._writer.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # FTS5 external-content index over memories.text
        await self._writer.execute("""
            CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts
            USING fts5(
                text,
                content=memories,
                content_rowid=rowid,
                tokenize='porter unicode61'
            )
        """)

        # Triggers keep FTS5 in lockstep with memories, inside the same transaction
        await self._writer.execute("""
            CREATE TRIGGER IF NOT EXISTS memories_ai AFTER INSERT ON memories BEGIN
                INSERT INTO memories_fts(rowid, text) VALUES (new.rowid, new.text);
            END
        """)

        await self._writer.execute("""
            CREATE TRIGGER IF NOT EXISTS memories_ad AFTER DELETE ON memories BEGIN
                INSERT INTO memories_fts(memories_fts, rowid, text)
                VALUES('delete', old.rowid, old.text);
            END
        """)

        await self._writer.execute("""
            CREATE TRIGGER IF NOT EXISTS memories_au AFTER UPDATE OF text ON memories BEGIN
                INSERT INTO memories_fts(memories_fts, rowid, text)
                VALUES('delete', old.rowid, old.text);
                INSERT INTO memories_fts(rowid, text) VALUES (new.rowid, new.text);
            END
        """)

        logger.debug("All tables created successfully")

    async def _create_indexes(self) -> None:
        """Create indexes for persona-scoped queries."""
        await self._writer.execute("""
            CREATE INDEX IF NOT EXISTS idx_memories_persona_created
            ON memories(persona_id, created_at DESC)
        """)

        await self._writer.execute("""
            CREATE INDEX IF NOT EXISTS idx_memories_persona_kind
            ON memories(persona_id, kind)
        """)

        await self._writer.execute("""
            CREATE INDEX IF NOT EXISTS idx_memories_persona_chat
            ON memories(persona_id, source_chat_id)
        """)

        logger.debug("All indexes created successfully")

    async def close(self) -> None:
        """Close database connections."""
        for conn in (self._reader, self._writer):
            if conn is not None:
                await conn.close()
        if self._writer is not None:
            logger.info("SQLite database connections closed")
        self._reader = None
        self._writer = None

    # ── connection helpers ──────────────────────────────────────────────

    def _require_reader(self) -> aiosqlite.Connection:
        if not self._reader:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._reader

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[aiosqlite.Connection]:
        """Run the body as one all-or-nothing write transaction."""
        if not self._writer:
            raise RuntimeError("Database not initialized. Call initialize() first.")

        db = self._writer
        async with self._write_lock:
            try:
                await db.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageFailure(
                    f"{operation} failed to start transaction: {e}",
                    operation=operation,
                ) from e

            try:
                yield db
            except BaseException as e:
                try:
                    await db.execute("ROLLBACK")
                except sqlite3.Error as rollback_error:
                    logger.error(f"Rollback failed during {operation}: {rollback_error}")
                if isinstance(e, sqlite3.Error):
                    raise StorageFailure(
                        f"{operation} failed: {e}", operation=operation
                    ) from e
                raise

            try:
                await db.execute("COMMIT")
            except sqlite3.Error as e:
                await db.execute("ROLLBACK")
                raise StorageFailure(
                    f"{operation} failed to commit: {e}", operation=operation
                ) from e

    async def _fetchall(
        self, sql: str, params: Sequence, operation: str
    ) -> list[aiosqlite.Row]:
        db = self._require_reader()
        try:
            async with db.execute(sql, params) as cursor:
                return list(await cursor.fetchall())
        except sqlite3.Error as e:
            raise StorageFailure(f"{operation} failed: {e}", operation=operation) from e

    @staticmethod
    def _row_to_memory(row: aiosqlite.Row) -> Memory:
        return Memory(
            id=row["id"],
            persona_id=row["persona_id"],
            user_id=row["user_id"],
            role=row["role"],
            text=row["text"],
            kind=MemoryKind(row["kind"]),
            emotion=EmotionType(row["emotion"]),
            importance=min(1.0, max(0.0, row["importance"])),
            created_at=_from_iso(row["created_at"]),
            last_accessed_at=_from_iso(row["last_accessed_at"]),
            mention_count=row["mention_count"],
            source_chat_id=row["source_chat_id"],
            source_message_id=row["source_message_id"],
        )

    # ── memories ────────────────────────────────────────────────────────

    async def insert_memory(self, memory: Memory, vector: QuantizedVector) -> str:
        """Atomically insert a memory, its lexical entry and its vector.

        Args:
            memory: Memory to store
            vector: Quantized embedding of ``memory.text``

        Returns:
            Memory ID
        """
        async with self._transaction("insert_memory") as db:
            await db.execute(
                f"""
                INSERT INTO memories ({_MEMORY_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    memory.id,
                    memory.persona_id,
                    memory.user_id,
                    memory.role,
                    memory.text,
                    memory.kind.value,
                    memory.emotion.value,
                    memory.importance,
                    _to_iso(memory.created_at),
                    _to_iso(memory.last_accessed_at),
                    memory.mention_count,
                    memory.source_chat_id,
                    memory.source_message_id,
                ),
            )
            await db.execute(
                """
                INSERT INTO memory_vectors (memory_id, dim, q8, scale)
                VALUES (?, ?, ?, ?)
                """,
                (memory.id, vector.dim, vector.data, vector.scale),
            )

        logger.debug(
            f"Memory inserted: {memory.id} (persona={memory.persona_id}, "
            f"kind={memory.kind.value}, dim={vector.dim})"
        )
        return memory.id

    async def get_memory(self, persona_id: str, memory_id: str) -> Memory | None:
        rows = await self._fetchall(
            f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE persona_id = ? AND id = ?",
            (persona_id, memory_id),
            "get_memory",
        )
        return self._row_to_memory(rows[0]) if rows else None

    async def get_memories(
        self, persona_id: str, memory_ids: Sequence[str]
    ) -> dict[str, Memory]:
        """Fetch several memories of one persona, keyed by id.

        Ids that do not exist or belong to another persona are omitted.
        """
        found: dict[str, Memory] = {}
        unique_ids = list(dict.fromkeys(memory_ids))
        for chunk in _chunks(unique_ids):
            placeholders = ", ".join("?" for _ in chunk)
            rows = await self._fetchall(
                f"""
                SELECT {_MEMORY_COLUMNS} FROM memories
                WHERE persona_id = ? AND id IN ({placeholders})
                """,
                (persona_id, *chunk),
                "get_memories",
            )
            for row in rows:
                memory = self._row_to_memory(row)
                found[memory.id] = memory
        return found

    async def recent_memories(self, persona_id: str, limit: int = 50) -> list[Memory]:
        """Most recently created memories of a persona, newest first."""
        rows = await self._fetchall(
            f"""
            SELECT {_MEMORY_COLUMNS} FROM memories
            WHERE persona_id = ?
            ORDER BY created_at DESC, id
            LIMIT ?
            """,
            (persona_id, limit),
            "recent_memories",
        )
        return [self._row_to_memory(row) for row in rows]

    async def list_memories(
        self,
        persona_id: str,
        kind: MemoryKind | None = None,
        text_filter: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 100,
    ) -> list[Memory]:
        """List memories of a persona, newest first, with optional filters.

        Args:
            persona_id: Persona scope
            kind: Only this kind
            text_filter: Case-insensitive substring of the memory text
            created_after: Inclusive lower bound on created_at
            created_before: Inclusive upper bound on created_at
            limit: Maximum results
        """
        clauses = ["persona_id = ?"]
        params: list = [persona_id]
        if kind is not None:
            clauses.append("kind = ?")
            params.append(kind.value)
        if text_filter:
            clauses.append("instr(lower(text), lower(?)) > 0")
            params.append(text_filter)
        if created_after is not None:
            clauses.append("created_at >= ?")
            params.append(_to_iso(created_after))
        if created_before is not None:
            clauses.append("created_at <= ?")
            params.append(_to_iso(created_before))
        params.append(limit)

        rows = await self._fetchall(
            f"""
            SELECT {_MEMORY_COLUMNS} FROM memories
            WHERE {" AND ".join(clauses)}
            ORDER BY created_at DESC, id
            LIMIT ?
            """,
            params,
            "list_memories",
        )
        return [self._row_to_memory(row) for row in rows]

    async def count(self, persona_id: str, kind: MemoryKind | None = None) -> int:
        if kind is None:
            sql = "SELECT COUNT(*) FROM memories WHERE persona_id = ?"
            params: tuple = (persona_id,)
        else:
            sql = "SELECT COUNT(*) FROM memories WHERE persona_id = ? AND kind = ?"
            params = (persona_id, kind.value)
        rows = await self._fetchall(sql, params, "count")
        return int(rows[0][0])

    async def count_by_kind(self, persona_id: str) -> list[CategoryCount]:
        rows = await self._fetchall(
            """
            SELECT kind, COUNT(*) AS n FROM memories
            WHERE persona_id = ?
            GROUP BY kind
            ORDER BY n DESC, kind
            """,
            (persona_id,),
            "count_by_kind",
        )
        return [CategoryCount(kind=MemoryKind(row["kind"]), count=row["n"]) for row in rows]

    async def delete_memory(self, persona_id: str, memory_id: str) -> bool:
        """Delete a memory together with its vector and lexical entry.

        Returns:
            True if the memory was deleted, False if not found
        """
        async with self._transaction("delete_memory") as db:
            cursor = await db.execute(
                "DELETE FROM memories WHERE persona_id = ? AND id = ?",
                (persona_id, memory_id),
            )
            deleted = cursor.rowcount > 0
        if deleted:
            logger.debug(f"Memory deleted: {memory_id} (persona={persona_id})")
        return deleted

    async def delete_all(self, persona_id: str) -> int:
        """Delete every memory of a persona. Returns the number deleted."""
        async with self._transaction("delete_all") as db:
            cursor = await db.execute(
                "DELETE FROM memories WHERE persona_id = ?", (persona_id,)
            )
            count = cursor.rowcount
        logger.debug(f"Deleted {count} memories (persona={persona_id})")
        return count

    async def merge_duplicate(
        self,
        persona_id: str,
        memory_id: str,
        importance: float,
        accessed_at: datetime | None = None,
    ) -> bool:
        """Fold a near-duplicate into an existing memory.

        Sets the new importance (clipped to [0, 1]), increments mention_count
        and refreshes last_accessed_at.
        """
        accessed_at = accessed_at or datetime.now(timezone.utc)
        async with self._transaction("merge_duplicate") as db:
            cursor = await db.execute(
                """
                UPDATE memories
                SET importance = MIN(1.0, MAX(0.0, ?)),
                    mention_count = mention_count + 1,
                    last_accessed_at = ?
                WHERE persona_id = ? AND id = ?
                """,
                (importance, _to_iso(accessed_at), persona_id, memory_id),
            )
            updated = cursor.rowcount > 0
        if updated:
            logger.debug(f"Duplicate merged into memory {memory_id}")
        return updated

    async def touch_memories(
        self,
        persona_id: str,
        memory_ids: Sequence[str],
        accessed_at: datetime | None = None,
    ) -> None:
        """Update last_accessed_at for retrieved memories."""
        if not memory_ids:
            return
        stamp = _to_iso(accessed_at or datetime.now(timezone.utc))
        async with self._transaction("touch_memories") as db:
            for chunk in _chunks(list(memory_ids)):
                placeholders = ", ".join("?" for _ in chunk)
                await db.execute(
                    f"""
                    UPDATE memories SET last_accessed_at = ?
                    WHERE persona_id = ? AND id IN ({placeholders})
                    """,
                    (stamp, persona_id, *chunk),
                )

    async def prune_low_importance(
        self, persona_id: str, created_before: datetime, min_importance: float
    ) -> int:
        """Delete old memories whose importance is below ``min_importance``."""
        async with self._transaction("prune_low_importance") as db:
            cursor = await db.execute(
                """
                DELETE FROM memories
                WHERE persona_id = ? AND created_at < ? AND importance < ?
                """,
                (persona_id, _to_iso(created_before), min_importance),
            )
            count = cursor.rowcount
        logger.debug(f"Pruned {count} low-importance memories (persona={persona_id})")
        return count

    # ── lexical index ───────────────────────────────────────────────────

    async def lexical_search(
        self, persona_id: str, query: str, limit: int = 20
    ) -> list[tuple[str, float]]:
        """BM25 full-text search over a persona's memories.

        Returns:
            (memory_id, score) pairs, best first; higher score = more relevant
        """
        fts_query = build_fts_query(query)
        if not fts_query:
            return []

        rows = await self._fetchall(
            """
            SELECT m.id, bm25(memories_fts) AS text_rank
            FROM memories_fts
            JOIN memories m ON m.rowid = memories_fts.rowid
            WHERE memories_fts MATCH ?
              AND m.persona_id = ?
            ORDER BY text_rank, m.id
            LIMIT ?
            """,
            (fts_query, persona_id, limit),
            "lexical_search",
        )
        # FTS5 bm25() is negative; more negative = better match
        return [(row["id"], -float(row["text_rank"])) for row in rows]

    # ── vectors ─────────────────────────────────────────────────────────

    async def vector_scan(
        self, persona_id: str, query: QuantizedVector, limit: int = 20
    ) -> list[tuple[str, float]]:
        """Linear cosine scan over all vectors of a persona.

        Vectors whose dimension differs from the query are skipped.

        Returns:
            (memory_id, cosine) pairs, best first
        """
        if query.dim == 0 or limit <= 0:
            return []

        rows = await self._fetchall(
            """
            SELECT v.memory_id, v.q8
            FROM memory_vectors v
            JOIN memories m ON m.id = v.memory_id
            WHERE m.persona_id = ? AND v.dim = ?
            """,
            (persona_id, query.dim),
            "vector_scan",
        )
        if not rows:
            return []

        sims = cosine_matrix(query, [row["q8"] for row in rows])
        scored = sorted(
            ((row["memory_id"], float(sim)) for row, sim in zip(rows, sims)),
            key=lambda pair: (-pair[1], pair[0]),
        )
        return scored[:limit]

    async def get_vectors(
        self, persona_id: str, memory_ids: Sequence[str]
    ) -> dict[str, QuantizedVector]:
        vectors: dict[str, QuantizedVector] = {}
        unique_ids = list(dict.fromkeys(memory_ids))
        for chunk in _chunks(unique_ids):
            placeholders = ", ".join("?" for _ in chunk)
            rows = await self._fetchall(
                f"""
                SELECT v.memory_id, v.q8, v.scale
                FROM memory_vectors v
                JOIN memories m ON m.id = v.memory_id
                WHERE m.persona_id = ? AND v.memory_id IN ({placeholders})
                """,
                (persona_id, *chunk),
                "get_vectors",
            )
            for row in rows:
                vectors[row["memory_id"]] = QuantizedVector(
                    data=row["q8"], scale=row["scale"]
                )
        return vectors

    async def replace_vector(
        self, persona_id: str, memory_id: str, vector: QuantizedVector
    ) -> bool:
        """Replace a memory's vector wholesale (re-embedding)."""
        async with self._transaction("replace_vector") as db:
            async with db.execute(
                "SELECT 1 FROM memories WHERE persona_id = ? AND id = ?",
                (persona_id, memory_id),
            ) as cursor:
                exists = await cursor.fetchone() is not None
            if exists:
                await db.execute(
                    """
                    INSERT OR REPLACE INTO memory_vectors (memory_id, dim, q8, scale)
                    VALUES (?, ?, ?, ?)
                    """,
                    (memory_id, vector.dim, vector.data, vector.scale),
                )
        return exists

    # ── settings ────────────────────────────────────────────────────────

    async def get_setting(self, key: str) -> str | None:
        rows = await self._fetchall(
            "SELECT value FROM settings WHERE key = ?", (key,), "get_setting"
        )
        return rows[0]["value"] if rows else None

    async def set_setting(self, key: str, value: str) -> None:
        async with self._transaction("set_setting") as db:
            await db.execute(
                """
                INSERT INTO settings (key, value, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (key, value),
            )
        logger.debug(f"Setting updated: {key}={value}")

    async def delete_settings(self, prefix: str) -> int:
        """Delete all settings whose key starts with ``prefix``."""
        async with self._transaction("delete_settings") as db:
            cursor = await db.execute(
                "DELETE FROM settings WHERE substr(key, 1, ?) = ?",
                (len(prefix), prefix),
            )
            return cursor.rowcount
