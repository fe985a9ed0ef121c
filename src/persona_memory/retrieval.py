"""Hybrid retrieval with blended four-factor scoring.

Combines two retrieval sources scoped to one persona:
- FTS5 search: BM25 over memories.text
- Vector scan: cosine similarity on int8-quantized embeddings

Candidates from both sources are merged by memory id and scored as:
  score = w1 * norm(bm25) + w2 * max(0, cosine) + w3 * recency + w4 * importance
"""

from __future__ import annotations

import math
from datetime import datetime, timezone

from loguru import logger

from .config import RetrievalConfig
from .embedding import Embedder, embed_quantized
from .exceptions import EmbeddingFailure, StorageFailure
from .models import Memory, MemoryHit, QuantizedVector, ensure_utc
from .quantizer import cosine_similarity
from .storage.sqlite_store import SQLiteStore
from .temporal import parse_temporal

# Floor for the weakest lexical match so it still beats "no lexical match"
LEXICAL_FLOOR = 0.1


def recency_score(created_at: datetime, now: datetime, half_life_days: float) -> float:
    """Exponential decay: 1.0 for brand-new memories, 0.5 after one half-life."""
    age_days = (ensure_utc(now) - ensure_utc(created_at)).total_seconds() / 86400.0
    decay = math.pow(2.0, -max(0.0, age_days) / half_life_days)
    return max(0.0, min(1.0, decay))


def normalize_lexical(scores: dict[str, float]) -> dict[str, float]:
    """Min-max normalize BM25 scores into [LEXICAL_FLOOR, 1.0].

    A single result, or results that all score the same, normalize to 1.0.
    """
    if not scores:
        return {}
    high = max(scores.values())
    low = min(scores.values())
    if high - low <= 1e-12:
        return {memory_id: 1.0 for memory_id in scores}
    span = high - low
    return {
        memory_id: LEXICAL_FLOOR + (1.0 - LEXICAL_FLOOR) * (score - low) / span
        for memory_id, score in scores.items()
    }


class HybridRetriever:
    """Hybrid retrieval combining FTS5 and quantized vector sources.

    Ties are broken by newer created_at, then by memory id, so rankings are
    deterministic for identical inputs.
    """

    def __init__(
        self,
        store: SQLiteStore,
        embedder: Embedder,
        config: RetrievalConfig | None = None,
    ):
        """Initialize hybrid retriever.

        Args:
            store: SQLite store for data access
            embedder: Embedding collaborator for query encoding
            config: Retrieval configuration
        """
        self._store = store
        self._embedder = embedder
        self._config = config or RetrievalConfig()

    async def retrieve(
        self,
        persona_id: str,
        query: str,
        k: int | None = None,
        now: datetime | None = None,
    ) -> list[MemoryHit]:
        """Retrieve the most relevant memories of a persona.

        Args:
            persona_id: Persona scope
            query: Search query text
            k: Maximum number of hits (defaults to config.top_k)
            now: Reference time for recency and temporal phrases

        Returns:
            At most k hits, best first. Empty when the persona has no memories.

        Raises:
            StorageFailure: If the lexical search or vector scan failed.
        """
        k = self._config.top_k if k is None else k
        if k <= 0:
            return []
        now = ensure_utc(now or datetime.now(timezone.utc))
        pool = k * self._config.candidate_multiplier

        lexical = dict(await self._store.lexical_search(persona_id, query, pool))

        query_vector = await self._embed_query(query)
        cosines: dict[str, float] = {}
        if query_vector is not None:
            cosines = dict(await self._store.vector_scan(persona_id, query_vector, pool))

        candidate_ids = list(dict.fromkeys([*lexical, *cosines]))
        if not candidate_ids:
            logger.debug(f"No retrieval candidates (persona={persona_id})")
            return []

        memories = await self._store.get_memories(persona_id, candidate_ids)
        if query_vector is not None:
            await self._fill_cosines(persona_id, query_vector, memories, cosines)

        in_window = self._temporal_matches(query, now, memories)
        lexical_norm = normalize_lexical(
            {memory_id: lexical[memory_id] for memory_id in memories if memory_id in lexical}
        )

        hits = [
            self._score(memory, lexical_norm.get(memory.id, 0.0), cosines.get(memory.id, 0.0), now)
            for memory in memories.values()
        ]
        hits.sort(
            key=lambda hit: (
                hit.memory.id not in in_window,
                -hit.score,
                -hit.memory.created_at.timestamp(),
                hit.memory.id,
            )
        )
        results = hits[:k]

        if results and self._config.touch_on_retrieve:
            try:
                await self._store.touch_memories(
                    persona_id, [hit.memory.id for hit in results], now
                )
            except StorageFailure as e:
                logger.warning(f"Failed to update last_accessed_at after retrieval: {e}")

        logger.info(
            f"Retrieved {len(results)} memories (persona={persona_id}, "
            f"fts={len(lexical)}, vector={len(cosines)})"
        )
        return results

    async def _embed_query(self, query: str) -> QuantizedVector | None:
        """Embed the query; None degrades retrieval to lexical-only."""
        if not query.strip():
            return None
        try:
            return await embed_quantized(self._embedder, query)
        except EmbeddingFailure as e:
            logger.warning(f"Query embedding failed, using lexical results only: {e}")
            return None

    async def _fill_cosines(
        self,
        persona_id: str,
        query_vector: QuantizedVector,
        memories: dict[str, Memory],
        cosines: dict[str, float],
    ) -> None:
        """Compute cosine for candidates that only the lexical search found."""
        missing = [memory_id for memory_id in memories if memory_id not in cosines]
        if not missing:
            return
        vectors = await self._store.get_vectors(persona_id, missing)
        for memory_id, vector in vectors.items():
            cosines[memory_id] = cosine_similarity(
                query_vector.data, query_vector.scale, vector.data, vector.scale
            )

    def _temporal_matches(
        self, query: str, now: datetime, memories: dict[str, Memory]
    ) -> set[str]:
        """Ids of candidates created inside a time period named by the query.

        These rank ahead of the rest; candidates outside the period still
        fill the remaining slots.
        """
        window = parse_temporal(query, now)
        if window is None:
            return set()
        inside = {
            memory_id
            for memory_id, memory in memories.items()
            if window.contains(memory.created_at)
        }
        logger.debug(
            f"Temporal window '{window.description}' matched {len(inside)}/{len(memories)}"
        )
        return inside

    def _score(
        self, memory: Memory, lexical: float, cosine: float, now: datetime
    ) -> MemoryHit:
        config = self._config
        recency = recency_score(memory.created_at, now, config.recency_half_life_days)
        score = (
            config.bm25_weight * lexical
            + config.cosine_weight * max(0.0, cosine)
            + config.recency_weight * recency
            + config.importance_weight * memory.importance
        )
        return MemoryHit(
            memory=memory,
            score=score,
            lexical=lexical,
            cosine=cosine,
            recency=recency,
        )
