"""Keyword-driven classification of memory text.

Runs synchronously with zero model dependency. Maps lexical cues to a closed
set of memory kinds and emotions and derives an importance score from the
number of signals found. Rules are evaluated in order; the first match wins.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from .models import EmotionType, MemoryKind

MIN_IMPORTANCE: float = 0.1
BASE_IMPORTANCE: float = 0.3


@dataclass(frozen=True, slots=True)
class _Rule:
    """A compiled cue pattern mapped to one enum member."""

    pattern: re.Pattern[str]
    label: MemoryKind | EmotionType


@dataclass(frozen=True, slots=True)
class Classification:
    kind: MemoryKind
    emotion: EmotionType
    importance: float


def _compile(cues: list[str]) -> re.Pattern[str]:
    return re.compile("|".join(f"(?:{cue})" for cue in cues), re.IGNORECASE)


def _build_kind_rules() -> tuple[_Rule, ...]:
    raw: list[tuple[MemoryKind, list[str]]] = [
        (
            MemoryKind.PREFERENCE,
            [
                r"\bi (?:really )?(?:like|love|enjoy|prefer|adore)\b",
                r"\bi (?:hate|dislike|can't stand|don't like)\b",
                r"\bmy fav(?:ou?rite)?\b",
                r"\bi'?m (?:a )?(?:big )?fan of\b",
            ],
        ),
        (
            MemoryKind.EVENT,
            [
                r"\b(?:yesterday|today|tonight|tomorrow)\b",
                r"\blast (?:week|month|year|night|weekend)\b",
                r"\b(?:went|going) to\b",
                r"\b\d{1,2}[:/]\d{1,2}\b",
            ],
        ),
        (
            MemoryKind.PROJECT,
            [
                r"\bworking on\b",
                r"\bbuilding\b",
                r"\bprojects?\b",
                r"\bplanning to\b",
                r"\bgoals?\b",
            ],
        ),
        (
            MemoryKind.FACT,
            [
                r"\bmy name is\b",
                r"\bi (?:am|live|work|was born)\b",
                r"\bi'm\b",
                r"\bi have (?:a|an|two|three)\b",
            ],
        ),
        (
            MemoryKind.KNOWLEDGE,
            [
                r"\blearn(?:ed|t|ing)\b",
                r"\bdiscovered\b",
                r"\bfound out\b",
                r"\bunderstand\b",
            ],
        ),
        (
            MemoryKind.EMOTION,
            [
                r"\bfeel(?:s|ing)?\b",
                r"\bemotion(?:al|s)?\b",
                r"\bmood\b",
            ],
        ),
    ]
    return tuple(_Rule(_compile(cues), kind) for kind, cues in raw)


def _build_emotion_rules() -> tuple[_Rule, ...]:
    raw: list[tuple[EmotionType, list[str]]] = [
        (
            EmotionType.EXCITED,
            [r"\bexcited\b", r"\bcan'?t wait\b", r"\bamazing\b", "\U0001f929"],
        ),
        (
            EmotionType.HAPPY,
            [
                r"\bhappy\b",
                r"\bglad\b",
                r"\bgreat\b",
                r"\bawesome\b",
                r"\bwonderful\b",
                r"\blove\b",
                "\U0001f60a|\U0001f600|\U0001f389",
            ],
        ),
        (
            EmotionType.SAD,
            [
                r"\bsad\b",
                r"\bdisappointed\b",
                r"\bunfortunate(?:ly)?\b",
                r"\bmiss(?:ing)?\b",
                "\U0001f622|\U0001f61e",
            ],
        ),
        (
            EmotionType.FRUSTRATED,
            [
                r"\bfrustrat(?:ed|ing)\b",
                r"\bannoy(?:ed|ing)\b",
                r"\bstruggling\b",
                r"\bhate\b",
            ],
        ),
        (
            EmotionType.ANXIOUS,
            [r"\bworried\b", r"\bnervous\b", r"\banxious\b", r"\bconcerned\b"],
        ),
        (
            EmotionType.CURIOUS,
            [r"\bcurious\b", r"\bwondering\b", r"\bhow does\b", r"\bwhat if\b"],
        ),
        (
            EmotionType.CONFIDENT,
            [r"\bconfident\b", r"\bdefinitely\b", r"\bcertain(?:ly)?\b"],
        ),
    ]
    return tuple(_Rule(_compile(cues), emotion) for emotion, cues in raw)


_KIND_RULES = _build_kind_rules()
_EMOTION_RULES = _build_emotion_rules()

# Words that signal a commitment or strong stance by the user
_IMPORTANCE_KEYWORDS = _compile(
    [
        r"\bi (?:will|promise|must|need to|have to|want to|plan to)\b",
        r"\bi'?m going to\b",
        r"\b(?:always|never|important|remember)\b",
        r"\b(?:love|hate|allergic)\b",
    ]
)

_CAPITALIZED = re.compile(r"\b[A-Z][a-z]+\b")
_NUMBER = re.compile(r"\b\d+(?:[.,]\d+)?\b")
_DATE = re.compile(
    r"\b(?:\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}(?:/\d{2,4})?|"
    r"(?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\.? \d{1,2})\b",
    re.IGNORECASE,
)
_SENTENCE_START = re.compile(r"(?:^|[.!?]\s+)([A-Z][a-z]+)")

_KIND_WEIGHT = {
    MemoryKind.PREFERENCE: 0.15,
    MemoryKind.PROJECT: 0.15,
    MemoryKind.FACT: 0.1,
    MemoryKind.EVENT: 0.05,
    MemoryKind.KNOWLEDGE: 0.05,
    MemoryKind.EMOTION: 0.05,
    MemoryKind.OTHER: 0.0,
}

_EMOTION_WEIGHT = {
    EmotionType.EXCITED: 0.1,
    EmotionType.FRUSTRATED: 0.1,
    EmotionType.ANXIOUS: 0.1,
    EmotionType.HAPPY: 0.05,
    EmotionType.SAD: 0.05,
}


def classify_kind(text: str) -> MemoryKind:
    for rule in _KIND_RULES:
        if rule.pattern.search(text):
            return rule.label  # type: ignore[return-value]
    return MemoryKind.OTHER


def detect_emotion(text: str) -> EmotionType:
    for rule in _EMOTION_RULES:
        if rule.pattern.search(text):
            return rule.label  # type: ignore[return-value]
    return EmotionType.NEUTRAL


def count_entities(text: str) -> int:
    """Count entity-like tokens: capitalized words, numbers and dates.

    Capitalized words that only open a sentence are not counted.
    """
    sentence_openers = {m.start(1) for m in _SENTENCE_START.finditer(text)}
    capitals = sum(
        1 for m in _CAPITALIZED.finditer(text) if m.start() not in sentence_openers
    )
    return capitals + len(_NUMBER.findall(text)) + len(_DATE.findall(text))


def calculate_importance(
    text: str, kind: MemoryKind, emotion: EmotionType
) -> float:
    """Score importance from length, entity, keyword, kind and emotion signals.

    Every term is non-negative, so adding a signal never lowers the score.
    """
    words = len(text.split())
    if words >= 50:
        length_bonus = 0.2
    elif words >= 20:
        length_bonus = 0.1
    elif words >= 8:
        length_bonus = 0.05
    else:
        length_bonus = 0.0

    entity_bonus = min(0.15, 0.03 * count_entities(text))
    keyword_bonus = min(0.2, 0.1 * len(_IMPORTANCE_KEYWORDS.findall(text)))

    score = (
        BASE_IMPORTANCE
        + length_bonus
        + entity_bonus
        + keyword_bonus
        + _KIND_WEIGHT[kind]
        + _EMOTION_WEIGHT.get(emotion, 0.0)
    )
    return round(max(MIN_IMPORTANCE, min(1.0, score)), 4)


def classify(text: str) -> Classification:
    """Classify text into (kind, emotion, importance). Never raises."""
    if not isinstance(text, str) or not text.strip():
        return Classification(MemoryKind.OTHER, EmotionType.NEUTRAL, MIN_IMPORTANCE)

    kind = classify_kind(text)
    emotion = detect_emotion(text)
    return Classification(kind, emotion, calculate_importance(text, kind, emotion))
