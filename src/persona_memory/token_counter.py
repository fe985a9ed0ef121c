"""Token counting utility with tiktoken and CJK fallback."""

from __future__ import annotations

from loguru import logger

from .models import ChatTurn, MemoryHit

# Per-item formatting overhead (role labels, separators)
TURN_OVERHEAD = 4
HIT_OVERHEAD = 2


class TokenCounter:
    """Counts tokens for context budget management.

    Uses tiktoken when the encoding can be loaded, falls back to
    character-based estimation with CJK-aware heuristics.
    """

    def __init__(self, model: str = "gpt-4"):
        self._encoder = None
        self._model = model
        try:
            import tiktoken

            self._encoder = tiktoken.encoding_for_model(model)
        except Exception:
            logger.debug(
                f"tiktoken encoding for {model!r} unavailable, "
                "using character-based estimation"
            )

    def count(self, text: str) -> int:
        """Count tokens in a text string."""
        if not text:
            return 0
        if self._encoder:
            return len(self._encoder.encode(text))
        return self._estimate_tokens(text)

    def count_turn(self, turn: ChatTurn) -> int:
        """Tokens taken by one short-term turn in a prompt."""
        total = TURN_OVERHEAD + self.count(turn.user_message)
        if turn.assistant_message:
            total += TURN_OVERHEAD + self.count(turn.assistant_message)
        return total

    def count_hit(self, hit: MemoryHit) -> int:
        """Tokens taken by one long-term memory line in a prompt."""
        return HIT_OVERHEAD + self.count(hit.memory.text)

    @staticmethod
    def _estimate_tokens(text: str) -> int:
        """Estimate tokens using character-based heuristics.

        English: ~4 characters per token
        CJK (Korean, Japanese, Chinese): ~2 characters per token
        """
        cjk_count = sum(
            1
            for c in text
            if "一" <= c <= "鿿"  # CJK Unified
            or "가" <= c <= "힯"  # Korean Hangul
            or "぀" <= c <= "ゟ"  # Hiragana
            or "゠" <= c <= "ヿ"  # Katakana
        )
        non_cjk = len(text) - cjk_count
        return max(1, (non_cjk // 4) + (cjk_count // 2))
