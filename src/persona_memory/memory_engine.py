"""Memory Engine - facade for the persona memory system.

This module provides the MemoryEngine class that consuming applications use.
It is the only entry point for enabling/disabling memory per persona,
ingesting turns, retrieving memories and building context bundles.
"""

from __future__ import annotations

import asyncio
import re
import weakref
from datetime import datetime, timedelta, timezone
from typing import Sequence

from loguru import logger

from .config import MemoryConfig
from .context_builder import ContextBuilder
from .embedding import Embedder, create_embedder
from .exceptions import InvalidInput, StorageFailure
from .ingestor import Ingestor
from .models import (
    CategoryCount,
    ChatTurn,
    ContextBundle,
    IngestOutcome,
    IngestStatus,
    Memory,
    MemoryKind,
    RetrievalStatus,
    RetrieveOutcome,
    ensure_utc,
)
from .recent_turns import RecentTurns
from .retrieval import HybridRetriever
from .storage.sqlite_store import SQLiteStore
from .token_counter import TokenCounter

ENABLED_KEY_PREFIX = "memory_enabled_"

_PERSONA_ID = re.compile(r"^[A-Za-z0-9_.:-]{1,128}$")


def _validate_persona_id(persona_id: str) -> None:
    if not isinstance(persona_id, str) or not _PERSONA_ID.match(persona_id):
        raise InvalidInput(
            "persona_id",
            f"expected 1-128 characters from [A-Za-z0-9_.:-], got {persona_id!r}",
        )


class MemoryEngine:
    """Main memory engine facade.

    Provides:
    - Per-persona enable/disable gate, read from settings storage before
      every operation
    - Turn ingestion (with incognito support)
    - Hybrid retrieval and context bundle building
    - Memory management: delete, counts, feed, pruning

    The store is lazily initialized on first use.
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        embedder: Embedder | None = None,
        store: SQLiteStore | None = None,
        token_counter: TokenCounter | None = None,
    ):
        """Initialize memory engine.

        Args:
            config: Memory configuration (uses defaults if not provided)
            embedder: Embedding collaborator (built from config.embedding if None)
            store: Storage layer (built from config.storage if None)
            token_counter: Token counter for context budgets
        """
        self.config = config or MemoryConfig()
        self._embedder = embedder or create_embedder(self.config.embedding)
        self._store = store or SQLiteStore(db_path=self.config.storage.sqlite_db_path)
        self._store_initialized = False
        self._init_lock = asyncio.Lock()
        self._persona_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

        self._ingestor = Ingestor(self._store, self._embedder, self.config.ingestion)
        self._retriever = HybridRetriever(self._store, self._embedder, self.config.retrieval)
        self._context_builder = ContextBuilder(
            self._retriever,
            token_counter=token_counter,
            config=self.config.context,
        )
        self._recent_turns = RecentTurns(max_turns=self.config.context.recent_turn_window)

        logger.debug(f"MemoryEngine full config: {self.config.model_dump()}")
        logger.info(
            f"MemoryEngine initialized: "
            f"sqlite_db_path={self.config.storage.sqlite_db_path!r}"
        )

    async def __aenter__(self) -> "MemoryEngine":
        await self._ensure_store()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _ensure_store(self) -> SQLiteStore:
        """Lazy initialization of SQLite store."""
        async with self._init_lock:
            if not self._store_initialized:
                await self._store.initialize()
                self._store_initialized = True
                logger.debug(
                    f"SQLiteStore initialized at {self.config.storage.sqlite_db_path}"
                )
        return self._store

    async def close(self) -> None:
        """Close resources (SQLite connections)."""
        if self._store_initialized:
            await self._store.close()
            self._store_initialized = False
            logger.info("MemoryEngine: SQLiteStore closed")

    def _persona_lock(self, persona_id: str) -> asyncio.Lock:
        # Entries disappear once no ingest holds or awaits the lock
        lock = self._persona_locks.get(persona_id)
        if lock is None:
            lock = self._persona_locks[persona_id] = asyncio.Lock()
        return lock

    @property
    def recent_turns(self) -> RecentTurns:
        return self._recent_turns

    # ── enable gate ─────────────────────────────────────────────────────

    async def set_enabled(self, persona_id: str, enabled: bool) -> None:
        """Enable or disable memory for a persona."""
        _validate_persona_id(persona_id)
        store = await self._ensure_store()
        await store.set_setting(
            f"{ENABLED_KEY_PREFIX}{persona_id}", "true" if enabled else "false"
        )
        logger.info(f"Memory {'enabled' if enabled else 'disabled'} for persona {persona_id}")

    async def is_enabled(self, persona_id: str) -> bool:
        """Whether memory is enabled for a persona. Defaults to True."""
        _validate_persona_id(persona_id)
        store = await self._ensure_store()
        value = await store.get_setting(f"{ENABLED_KEY_PREFIX}{persona_id}")
        return value is None or value == "true"

    async def clear_enabled_flags(self) -> int:
        """Reset every persona to the default (enabled) state."""
        store = await self._ensure_store()
        count = await store.delete_settings(ENABLED_KEY_PREFIX)
        logger.info(f"Cleared {count} memory enabled flags")
        return count

    # ── ingestion & retrieval ───────────────────────────────────────────

    async def ingest(
        self, turn: ChatTurn, persona_id: str, incognito: bool = False
    ) -> IngestOutcome:
        """Ingest a conversation turn for a persona.

        Args:
            turn: User/assistant message pair
            persona_id: Persona identifier
            incognito: When True nothing is persisted

        Returns:
            IngestOutcome; storage failures are reported as status FAILED

        Raises:
            InvalidInput: For a malformed persona id or an empty turn
        """
        _validate_persona_id(persona_id)
        if turn.is_empty():
            raise InvalidInput("turn", "user and assistant messages are both empty")

        try:
            if not await self.is_enabled(persona_id):
                logger.debug(f"Memory disabled, ingest skipped (persona={persona_id})")
                return IngestOutcome(status=IngestStatus.SKIPPED_DISABLED)

            async with self._persona_lock(persona_id):
                outcome = await self._ingestor.ingest(turn, persona_id, incognito)
        except StorageFailure as e:
            logger.error(f"Ingest failed (persona={persona_id}): {e}")
            return IngestOutcome(status=IngestStatus.FAILED, error=str(e))

        if outcome.status is not IngestStatus.SKIPPED_INCOGNITO:
            self._recent_turns.add(persona_id, turn)
        return outcome

    async def retrieve(
        self, persona_id: str, query: str, k: int | None = None
    ) -> RetrieveOutcome:
        """Retrieve the memories most relevant to ``query``.

        Returns:
            RetrieveOutcome with status OK, DISABLED or FAILED
        """
        _validate_persona_id(persona_id)
        try:
            if not await self.is_enabled(persona_id):
                return RetrieveOutcome(status=RetrievalStatus.DISABLED)
            hits = await self._retriever.retrieve(persona_id, query, k)
        except StorageFailure as e:
            logger.error(f"Retrieve failed (persona={persona_id}): {e}")
            return RetrieveOutcome(status=RetrievalStatus.FAILED, error=str(e))
        return RetrieveOutcome(status=RetrievalStatus.OK, hits=hits)

    async def build_context(
        self,
        persona_id: str,
        chat_id: str,
        message: str,
        recent_turns: Sequence[ChatTurn] | None = None,
        recent_turn_window: int | None = None,
    ) -> ContextBundle:
        """Build a budgeted context bundle for the next prompt.

        Args:
            persona_id: Persona identifier
            chat_id: Chat the message belongs to
            message: Current user message
            recent_turns: Recent turns of the chat, oldest first. Falls back to
                the turns this engine has ingested for the chat.
            recent_turn_window: Number of turns kept verbatim

        Returns:
            ContextBundle; never raises for storage or embedding failures
        """
        _validate_persona_id(persona_id)
        if recent_turns is None:
            recent_turns = self._recent_turns.get(persona_id, chat_id)

        status = RetrievalStatus.OK
        try:
            enabled = await self.is_enabled(persona_id)
        except StorageFailure as e:
            logger.error(f"Could not read enabled flag (persona={persona_id}): {e}")
            enabled = False
            status = RetrievalStatus.FAILED

        if enabled:
            return await self._context_builder.build(
                persona_id, chat_id, message, recent_turns, recent_turn_window
            )

        if status is RetrievalStatus.OK:
            status = RetrievalStatus.DISABLED
        bundle = await self._context_builder.build(
            persona_id,
            chat_id,
            message,
            recent_turns,
            recent_turn_window,
            include_long_term=False,
        )
        return bundle.model_copy(update={"retrieval_status": status})

    # ── management ──────────────────────────────────────────────────────

    async def delete_memory(self, persona_id: str, memory_id: str) -> bool:
        """Delete one memory with its vector and lexical entry."""
        _validate_persona_id(persona_id)
        store = await self._ensure_store()
        return await store.delete_memory(persona_id, memory_id)

    async def delete_all(self, persona_id: str) -> int:
        """Delete every memory of a persona and forget its recent turns."""
        _validate_persona_id(persona_id)
        store = await self._ensure_store()
        count = await store.delete_all(persona_id)
        self._recent_turns.clear_persona(persona_id)
        logger.info(f"Deleted all {count} memories (persona={persona_id})")
        return count

    async def count(self, persona_id: str, kind: MemoryKind | None = None) -> int:
        _validate_persona_id(persona_id)
        store = await self._ensure_store()
        return await store.count(persona_id, kind)

    async def count_by_kind(self, persona_id: str) -> list[CategoryCount]:
        _validate_persona_id(persona_id)
        store = await self._ensure_store()
        return await store.count_by_kind(persona_id)

    async def feed(
        self,
        persona_id: str,
        kind: MemoryKind | None = None,
        text_filter: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 100,
    ) -> list[Memory]:
        """Browse a persona's memories, newest first."""
        _validate_persona_id(persona_id)
        store = await self._ensure_store()
        return await store.list_memories(
            persona_id,
            kind=kind,
            text_filter=text_filter,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
        )

    async def prune(self, persona_id: str, now: datetime | None = None) -> int:
        """Delete old memories below the configured importance floor."""
        _validate_persona_id(persona_id)
        store = await self._ensure_store()
        now = ensure_utc(now or datetime.now(timezone.utc))
        cutoff = now - timedelta(days=self.config.pruning.prune_after_days)
        count = await store.prune_low_importance(
            persona_id, cutoff, self.config.pruning.importance_floor
        )
        logger.info(f"Pruned {count} memories older than {cutoff:%Y-%m-%d} (persona={persona_id})")
        return count
