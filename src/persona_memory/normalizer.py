"""Text cleanup, candidate filtering and near-duplicate detection."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Sequence

from .models import Memory

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WHITESPACE = re.compile(r"\s+")
_NON_WORD = re.compile(r"[^\w\s]|_")
_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+|\n+")

_GREETINGS = frozenset(
    {
        "hi",
        "hello",
        "hey",
        "goodbye",
        "bye",
        "thanks",
        "thank you",
        "ok",
        "okay",
        "sure",
        "yes",
        "no",
        "got it",
        "cool",
        "nice",
    }
)


def normalize(text: str, max_length: int = 2000) -> str:
    """Strip control characters, collapse whitespace and truncate."""
    if not text:
        return ""
    cleaned = _CONTROL_CHARS.sub("", text)
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    return cleaned[:max_length].rstrip()


def dedup_key(text: str) -> str:
    """Casefolded letters, digits and spaces of ``text`` used for duplicate checks."""
    key = _NON_WORD.sub("", text.casefold())
    return _WHITESPACE.sub(" ", key).strip()[:200]


def similarity(a: str, b: str) -> float:
    """Token-set Jaccard similarity of two texts, in [0, 1]."""
    tokens_a = set(dedup_key(a).split())
    tokens_b = set(dedup_key(b).split())
    if not tokens_a and not tokens_b:
        return 1.0 if a.strip() == b.strip() else 0.0
    union = tokens_a | tokens_b
    return len(tokens_a & tokens_b) / len(union)


def is_greeting(text: str) -> bool:
    return dedup_key(text) in _GREETINGS


def is_trivial(text: str, min_words: int = 3) -> bool:
    """True for greetings, acknowledgements and very short fragments."""
    return is_greeting(text) or len(text.split()) < min_words


def split_sentences(text: str) -> list[str]:
    """Split a message into sentence-level candidate spans."""
    return [part.strip() for part in _SENTENCE_BOUNDARY.split(text) if part.strip()]


@dataclass(frozen=True, slots=True)
class DuplicateMatch:
    memory: Memory
    similarity: float


class Deduplicator:
    """Finds an existing memory that a candidate would duplicate.

    A candidate is a near-duplicate when its token-set similarity to an
    existing memory is at or above ``threshold``.
    """

    def __init__(self, threshold: float = 0.85):
        self.threshold = threshold

    def find_duplicate(
        self, candidate: str, existing: Sequence[Memory]
    ) -> DuplicateMatch | None:
        best: DuplicateMatch | None = None
        for memory in existing:
            score = similarity(candidate, memory.text)
            if score < self.threshold:
                continue
            if best is None or score > best.similarity:
                best = DuplicateMatch(memory=memory, similarity=score)
        return best

    def is_duplicate_text(self, candidate: str, others: Sequence[str]) -> bool:
        return any(similarity(candidate, other) >= self.threshold for other in others)
