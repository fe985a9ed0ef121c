"""Context builder.

Assembles the short-term turns and ranked long-term memories handed to a
prompt consumer, within a maximum hit count and an approximate token budget.
"""

from __future__ import annotations

from datetime import datetime
from typing import Sequence

from loguru import logger

from .config import ContextConfig
from .exceptions import StorageFailure
from .models import ChatTurn, ContextBundle, MemoryHit, RetrievalStatus
from .retrieval import HybridRetriever
from .token_counter import TokenCounter

# Initial extra hits requested per short-term turn to make up for excluded memories
_EXCLUSION_MARGIN = 4


class ContextBuilder:
    """Builds a size-bounded ContextBundle for one chat message.

    Budget enforcement drops the lowest-scored long-term hits first, and only
    then the oldest short-term turns.
    """

    def __init__(
        self,
        retriever: HybridRetriever,
        token_counter: TokenCounter | None = None,
        config: ContextConfig | None = None,
    ):
        """Initialize context builder.

        Args:
            retriever: Retriever producing long-term hits
            token_counter: Token counter for budget measurement
            config: Context budget configuration
        """
        self._retriever = retriever
        self._config = config or ContextConfig()
        self._counter = token_counter or TokenCounter(model=self._config.token_model)

    async def build(
        self,
        persona_id: str,
        chat_id: str,
        message: str,
        recent_turns: Sequence[ChatTurn],
        recent_turn_window: int | None = None,
        now: datetime | None = None,
        include_long_term: bool = True,
    ) -> ContextBundle:
        """Build the context bundle for ``message`` in ``chat_id``.

        Args:
            persona_id: Persona scope for retrieval
            chat_id: Chat the message belongs to
            message: Current user message, used as the retrieval query
            recent_turns: Recent turns, oldest first
            recent_turn_window: Number of turns kept verbatim
                (defaults to config.recent_turn_window)
            now: Reference time for retrieval
            include_long_term: When False no retrieval is attempted

        Returns:
            ContextBundle; retrieval failures yield an empty long_term
            with retrieval_status FAILED
        """
        window = (
            self._config.recent_turn_window
            if recent_turn_window is None
            else recent_turn_window
        )
        chat_turns = [turn for turn in recent_turns if turn.chat_id == chat_id]
        short_term = chat_turns[-window:] if window > 0 else []

        status = RetrievalStatus.OK
        long_term: list[MemoryHit] = []
        if include_long_term and self._config.max_hits > 0 and message.strip():
            try:
                long_term = await self._long_term_hits(persona_id, message, short_term, now)
            except StorageFailure as e:
                logger.warning(f"Retrieval failed, building context without memories: {e}")
                status = RetrievalStatus.FAILED

        short_term, long_term, total = self._fit_budget(short_term, long_term)

        logger.info(
            f"Context built (persona={persona_id}, chat={chat_id}): "
            f"{len(short_term)} turns, {len(long_term)} memories, {total} tokens"
        )
        return ContextBundle(
            short_term=short_term,
            long_term=long_term,
            total_tokens=total,
            retrieval_status=status,
        )

    async def _long_term_hits(
        self,
        persona_id: str,
        message: str,
        short_term: list[ChatTurn],
        now: datetime | None,
    ) -> list[MemoryHit]:
        """Top hits not sourced from a short-term turn, at most max_hits.

        The retrieval size doubles until enough hits survive the exclusion
        or the persona has no further candidates.
        """
        max_hits = self._config.max_hits
        excluded = {(turn.chat_id, turn.turn_key) for turn in short_term}
        k = max_hits + _EXCLUSION_MARGIN * len(short_term)

        while True:
            hits = await self._retriever.retrieve(persona_id, message, k=k, now=now)
            eligible = [
                hit
                for hit in hits
                if (hit.memory.source_chat_id, hit.memory.source_message_id)
                not in excluded
            ]
            if len(eligible) >= max_hits or len(hits) < k:
                return eligible[:max_hits]
            logger.debug(
                f"{len(hits) - len(eligible)} of {k} hits came from short-term turns, "
                f"retrying with k={k * 2}"
            )
            k *= 2

    def _fit_budget(
        self, short_term: list[ChatTurn], long_term: list[MemoryHit]
    ) -> tuple[list[ChatTurn], list[MemoryHit], int]:
        """Trim long_term from the bottom, then short_term from the oldest."""
        short_term = list(short_term)
        long_term = list(long_term)
        turn_tokens = [self._counter.count_turn(turn) for turn in short_term]
        hit_tokens = [self._counter.count_hit(hit) for hit in long_term]
        total = sum(turn_tokens) + sum(hit_tokens)
        budget = self._config.max_tokens

        while total > budget and long_term:
            long_term.pop()
            total -= hit_tokens.pop()
        while total > budget and short_term:
            short_term.pop(0)
            total -= turn_tokens.pop(0)

        return short_term, long_term, total
