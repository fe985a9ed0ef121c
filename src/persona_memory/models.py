"""Memory engine data models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MemoryKind(str, Enum):
    FACT = "fact"
    EVENT = "event"
    PREFERENCE = "preference"
    PROJECT = "project"
    KNOWLEDGE = "knowledge"
    EMOTION = "emotion"
    OTHER = "other"


class EmotionType(str, Enum):
    HAPPY = "happy"
    SAD = "sad"
    EXCITED = "excited"
    CURIOUS = "curious"
    FRUSTRATED = "frustrated"
    NEUTRAL = "neutral"
    ANXIOUS = "anxious"
    CONFIDENT = "confident"


class Memory(BaseModel):
    """A durable unit of extracted knowledge, scoped to one persona."""

    id: str = Field(default_factory=_uuid)
    persona_id: str
    user_id: str = ""
    role: str = "user"  # "user" or "assistant"
    text: str
    kind: MemoryKind = MemoryKind.OTHER
    emotion: EmotionType = EmotionType.NEUTRAL
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=_utcnow)
    last_accessed_at: datetime = Field(default_factory=_utcnow)
    mention_count: int = 0
    source_chat_id: str | None = None
    source_message_id: str | None = None


class QuantizedVector(BaseModel):
    """An int8 embedding plus the scale needed to dequantize it."""

    data: bytes
    scale: float

    @property
    def dim(self) -> int:
        return len(self.data)


class MemoryHit(BaseModel):
    """A retrieved memory with its blended relevance score."""

    memory: Memory
    score: float = 0.0
    lexical: float = 0.0
    cosine: float = 0.0
    recency: float = 0.0


class ChatTurn(BaseModel):
    """A user/assistant message pair handed over by the turn source."""

    chat_id: str
    user_id: str = ""
    user_message: str = ""
    assistant_message: str | None = None
    timestamp: datetime = Field(default_factory=_utcnow)
    message_id: str | None = None

    @property
    def turn_key(self) -> str:
        """Stable identifier used as the source message id of its memories."""
        if self.message_id:
            return self.message_id
        millis = int(ensure_utc(self.timestamp).timestamp() * 1000)
        return f"{self.chat_id}:{millis}"

    def is_empty(self) -> bool:
        return not self.user_message.strip() and not (
            self.assistant_message or ""
        ).strip()


class RetrievalStatus(str, Enum):
    OK = "ok"
    DISABLED = "disabled"
    FAILED = "failed"


class ContextBundle(BaseModel):
    """Short-term turns plus ranked long-term memories for a prompt."""

    short_term: list[ChatTurn] = Field(default_factory=list)
    long_term: list[MemoryHit] = Field(default_factory=list)
    total_tokens: int = 0
    retrieval_status: RetrievalStatus = RetrievalStatus.OK


class IngestStatus(str, Enum):
    STORED = "stored"
    NOTHING_TO_STORE = "nothing_to_store"
    SKIPPED_INCOGNITO = "skipped_incognito"
    SKIPPED_DISABLED = "skipped_disabled"
    FAILED = "failed"


class IngestOutcome(BaseModel):
    """Result of ingesting one chat turn."""

    status: IngestStatus
    stored_ids: list[str] = Field(default_factory=list)
    merged_ids: list[str] = Field(default_factory=list)
    dropped: int = 0
    error: str | None = None


class RetrieveOutcome(BaseModel):
    """Result of a facade-level retrieval."""

    status: RetrievalStatus
    hits: list[MemoryHit] = Field(default_factory=list)
    error: str | None = None


class CategoryCount(BaseModel):
    """Number of memories of one kind for a persona."""

    kind: MemoryKind
    count: int
