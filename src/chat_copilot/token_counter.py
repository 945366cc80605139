"""Token counting utility with tiktoken and CJK fallback."""

from __future__ import annotations

from typing import Iterable

import tiktoken
from loguru import logger

DEFAULT_ENCODING = "cl100k_base"


class TokenCounter:
    """Counts tokens for budget management.

    Uses the tiktoken encoding when it can be loaded and falls back to a
    character-based estimate with CJK-aware heuristics otherwise. Passing
    ``encoding=None`` forces the estimate, which keeps budget arithmetic
    reproducible without network access.

    Counts are pure functions of their input.
    """

    def __init__(self, encoding: str | None = DEFAULT_ENCODING):
        self._encoder = None
        self._encoding = encoding
        if encoding is None:
            return
        try:
            self._encoder = tiktoken.get_encoding(encoding)
        except Exception as e:
            logger.debug(
                f"tiktoken encoding '{encoding}' unavailable ({e}), "
                "using character-based estimation"
            )

    @property
    def uses_estimate(self) -> bool:
        return self._encoder is None

    def count(self, text: str) -> int:
        """Count tokens in a text string."""
        if not text:
            return 0
        if self._encoder:
            return len(self._encoder.encode(text, disallowed_special=()))
        return self._estimate_tokens(text)

    def count_message(self, role: str, text: str) -> int:
        """Count tokens of a role-tagged message including its framing."""
        return self.count(f"role:{role}") + self.count(f"content:{text}\n")

    def count_messages(self, messages: Iterable[dict]) -> int:
        """Count total tokens in a list of ``{"role", "content"}`` messages."""
        total = 0
        for msg in messages:
            total += self.count_message(msg.get("role", ""), msg.get("content", ""))
        return total

    def truncate(self, text: str, max_tokens: int) -> str:
        """Cut ``text`` so that ``count(result) <= max_tokens``."""
        if max_tokens <= 0:
            return ""
        if self.count(text) <= max_tokens:
            return text
        if self._encoder:
            tokens = self._encoder.encode(text, disallowed_special=())
            result = self._encoder.decode(tokens[:max_tokens])
        else:
            # Rough cut, refined below
            result = text[: max_tokens * 4 + 3]
        while result and self.count(result) > max_tokens:
            result = result[: max(0, len(result) - max(1, len(result) // 20))]
        return result

    @staticmethod
    def _estimate_tokens(text: str) -> int:
        """Estimate tokens using character-based heuristics.

        English: ~4 characters per token
        CJK (Korean, Japanese, Chinese): ~2 characters per token
        """
        cjk_count = sum(
            1
            for c in text
            if "\u4e00" <= c <= "\u9fff"  # CJK Unified
            or "\uac00" <= c <= "\ud7af"  # Korean Hangul
            or "\u3040" <= c <= "\u309f"  # Hiragana
            or "\u30a0" <= c <= "\u30ff"  # Katakana
        )
        non_cjk = len(text) - cjk_count
        return max(1, (non_cjk // 4) + (cjk_count // 2))
