"""In-process buffer of recent chat turns.

Holds the short-term side of a context bundle when the caller does not pass
its own turn history. Turns are kept per (persona, chat) with a fixed
capacity; the oldest turn is evicted first. Nothing here is persisted.
"""

from __future__ import annotations

from collections import deque

from loguru import logger

from .models import ChatTurn


class RecentTurns:
    """Bounded FIFO of recent turns for each persona/chat pair.

    Attributes:
        max_turns: Turns kept per chat before the oldest is evicted
    """

    def __init__(self, max_turns: int = 10) -> None:
        """Initialize the buffer.

        Args:
            max_turns: Capacity per (persona, chat) pair
        """
        self.max_turns = max(0, max_turns)
        self._turns: dict[tuple[str, str], deque[ChatTurn]] = {}

        logger.debug(f"RecentTurns initialized with max_turns={self.max_turns}")

    def add(self, persona_id: str, turn: ChatTurn) -> ChatTurn | None:
        """Append a turn, returning the evicted turn if capacity was exceeded."""
        if self.max_turns == 0:
            return None

        key = (persona_id, turn.chat_id)
        buffer = self._turns.setdefault(key, deque())
        buffer.append(turn)

        evicted = None
        if len(buffer) > self.max_turns:
            evicted = buffer.popleft()
            logger.debug(
                f"Evicted turn {evicted.turn_key} from chat {turn.chat_id} "
                f"(persona={persona_id})"
            )
        return evicted

    def get(
        self, persona_id: str, chat_id: str, limit: int | None = None
    ) -> list[ChatTurn]:
        """Most recent turns of a chat, oldest first."""
        turns = list(self._turns.get((persona_id, chat_id), ()))
        if limit is not None:
            turns = turns[-limit:] if limit > 0 else []
        return turns

    def clear_persona(self, persona_id: str) -> None:
        """Forget every buffered turn of a persona."""
        keys = [key for key in self._turns if key[0] == persona_id]
        for key in keys:
            del self._turns[key]
        if keys:
            logger.info(f"Cleared recent turns of {len(keys)} chats (persona={persona_id})")

    def clear(self) -> None:
        count = len(self._turns)
        self._turns.clear()
        logger.info(f"Cleared recent turns of {count} chats")

    @property
    def chat_count(self) -> int:
        return len(self._turns)
