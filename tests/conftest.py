"""
persona-memory test fixtures
"""

from __future__ import annotations

import os
import tempfile
from datetime import datetime, timezone

import pytest

from persona_memory.config import MemoryConfig
from persona_memory.embedding import HashingEmbedder
from persona_memory.memory_engine import MemoryEngine
from persona_memory.models import ChatTurn
from persona_memory.storage.sqlite_store import SQLiteStore
from persona_memory.token_counter import TokenCounter

DIM = 64


class WordTokenCounter(TokenCounter):
    """One token per whitespace-separated word, for predictable budgets."""

    def __init__(self):
        self._encoder = None
        self._model = "words"

    def count(self, text: str) -> int:
        return len(text.split())


class FailingEmbedder:
    """Embedder that raises for texts containing a marker word."""

    def __init__(self, marker: str | None = None, dimension: int = DIM):
        self._marker = marker
        self._inner = HashingEmbedder(dimension=dimension)

    @property
    def dimension(self) -> int:
        return self._inner.dimension

    def embed(self, text: str) -> list[float]:
        if self._marker is None or self._marker in text.lower():
            raise RuntimeError("embedding backend unavailable")
        return self._inner.embed(text)


@pytest.fixture
def embedder():
    return HashingEmbedder(dimension=DIM)


@pytest.fixture
def word_counter():
    return WordTokenCounter()


@pytest.fixture
async def store():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = os.path.join(tmpdir, "test.db")
        s = SQLiteStore(db_path=db_path)
        await s.initialize()
        yield s
        await s.close()


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield os.path.join(tmpdir, "memory.db")


@pytest.fixture
def config(db_path):
    return MemoryConfig(
        storage={"sqlite_db_path": db_path},
        embedding={"provider": "hashing", "dimension": DIM},
    )


@pytest.fixture
async def engine(config, embedder, word_counter):
    async with MemoryEngine(
        config=config, embedder=embedder, token_counter=word_counter
    ) as e:
        yield e


@pytest.fixture
def make_turn():
    """Factory for ChatTurn values with sensible defaults."""
    counter = {"n": 0}

    def _make(
        user: str = "",
        assistant: str | None = None,
        chat_id: str = "chat-1",
        message_id: str | None = None,
        timestamp: datetime | None = None,
    ) -> ChatTurn:
        counter["n"] += 1
        return ChatTurn(
            chat_id=chat_id,
            user_id="user-1",
            user_message=user,
            assistant_message=assistant,
            timestamp=timestamp or datetime.now(timezone.utc),
            message_id=message_id or f"msg-{counter['n']}",
        )

    return _make
