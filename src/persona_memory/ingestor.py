"""Turn ingestion: chat turn -> candidate memories -> stored memories.

Each surviving candidate is written as one atomic unit (memory row, lexical
index entry and quantized vector). A candidate whose embedding fails is
dropped without affecting its siblings.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from .config import IngestionConfig
from .embedding import Embedder, embed_quantized
from .exceptions import EmbeddingFailure
from .heuristics import Classification, classify
from .models import (
    ChatTurn,
    IngestOutcome,
    IngestStatus,
    Memory,
    MemoryKind,
    ensure_utc,
)
from .normalizer import Deduplicator, is_trivial, normalize, split_sentences
from .storage.sqlite_store import SQLiteStore


@dataclass(frozen=True, slots=True)
class Candidate:
    """A normalized, classified span extracted from a turn."""

    text: str
    role: str
    classification: Classification


class Ingestor:
    """Extracts, classifies, deduplicates, embeds and stores memories."""

    def __init__(
        self,
        store: SQLiteStore,
        embedder: Embedder,
        config: IngestionConfig | None = None,
    ):
        """Initialize the ingestor.

        Args:
            store: Storage layer receiving the memories
            embedder: Embedding collaborator
            config: Ingestion configuration
        """
        self._store = store
        self._embedder = embedder
        self._config = config or IngestionConfig()
        self._dedup = Deduplicator(threshold=self._config.dedup_threshold)

    def extract_candidates(self, turn: ChatTurn) -> list[Candidate]:
        """Split a turn into sentence-level candidates worth remembering.

        Every non-trivial user sentence is a candidate. Assistant sentences
        only qualify when they carry a recognizable memory cue.
        """
        candidates: list[Candidate] = []
        sources = [("user", turn.user_message), ("assistant", turn.assistant_message or "")]

        for role, message in sources:
            for sentence in split_sentences(message):
                text = normalize(sentence, self._config.max_text_length)
                if not text or is_trivial(text, self._config.min_words):
                    continue
                classification = classify(text)
                if (
                    role == "assistant"
                    and self._config.assistant_requires_cue
                    and classification.kind is MemoryKind.OTHER
                ):
                    continue
                candidates.append(Candidate(text, role, classification))

        return candidates

    async def ingest(
        self, turn: ChatTurn, persona_id: str, incognito: bool = False
    ) -> IngestOutcome:
        """Ingest one chat turn for a persona.

        Args:
            turn: User/assistant message pair
            persona_id: Persona scope for every write
            incognito: When True nothing is persisted

        Returns:
            IngestOutcome describing stored, merged and dropped candidates

        Raises:
            StorageFailure: If a storage operation failed. Memories written
                before the failure stay committed; the failed one left no trace.
        """
        if incognito:
            logger.debug(f"Incognito turn {turn.turn_key} skipped (persona={persona_id})")
            return IngestOutcome(status=IngestStatus.SKIPPED_INCOGNITO)

        candidates = self.extract_candidates(turn)
        if not candidates:
            logger.debug(f"No memory candidates in turn {turn.turn_key}")
            return IngestOutcome(status=IngestStatus.NOTHING_TO_STORE)

        recent = await self._store.recent_memories(persona_id, self._config.dedup_window)

        stored_ids: list[str] = []
        merged_ids: list[str] = []
        accepted: list[str] = []
        dropped = 0
        embedding_errors: list[str] = []

        for candidate in candidates:
            if self._dedup.is_duplicate_text(candidate.text, accepted):
                dropped += 1
                continue

            match = self._dedup.find_duplicate(candidate.text, recent)
            if match is not None:
                importance = min(
                    1.0,
                    max(match.memory.importance, candidate.classification.importance)
                    + self._config.merge_importance_boost,
                )
                if await self._store.merge_duplicate(
                    persona_id, match.memory.id, importance
                ):
                    merged_ids.append(match.memory.id)
                    logger.debug(
                        f"Merged candidate into {match.memory.id} "
                        f"(similarity={match.similarity:.2f})"
                    )
                accepted.append(candidate.text)
                continue

            try:
                vector = await embed_quantized(self._embedder, candidate.text)
            except EmbeddingFailure as e:
                logger.warning(f"Dropping candidate, embedding failed: {e}")
                embedding_errors.append(str(e))
                dropped += 1
                continue

            memory = Memory(
                persona_id=persona_id,
                user_id=turn.user_id,
                role=candidate.role,
                text=candidate.text,
                kind=candidate.classification.kind,
                emotion=candidate.classification.emotion,
                importance=candidate.classification.importance,
                created_at=ensure_utc(turn.timestamp),
                last_accessed_at=ensure_utc(turn.timestamp),
                source_chat_id=turn.chat_id,
                source_message_id=turn.turn_key,
            )
            await self._store.insert_memory(memory, vector)
            stored_ids.append(memory.id)
            accepted.append(candidate.text)

        if stored_ids or merged_ids:
            status = IngestStatus.STORED
        elif embedding_errors:
            status = IngestStatus.FAILED
        else:
            status = IngestStatus.NOTHING_TO_STORE

        logger.info(
            f"Ingested turn {turn.turn_key} (persona={persona_id}): "
            f"stored={len(stored_ids)}, merged={len(merged_ids)}, dropped={dropped}"
        )
        return IngestOutcome(
            status=status,
            stored_ids=stored_ids,
            merged_ids=merged_ids,
            dropped=dropped,
            error="; ".join(embedding_errors) or None,
        )
