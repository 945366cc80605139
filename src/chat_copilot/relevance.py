"""Memory balance to relevance threshold mapping."""

from __future__ import annotations

from .config import PromptsConfig
from .exceptions import InvalidMemoryBalance


class RelevanceThresholdPolicy:
    """Maps a chat's memory balance to a minimum relevance per memory kind.

    Long-term and working memory sit on the same line between
    ``relevance_lower`` and ``relevance_upper`` and move in opposite
    directions: raising the balance relaxes the long-term threshold toward
    the lower bound while tightening working memory toward the upper one.
    Their sum is always ``lower + upper``. Document memories ignore the
    balance.
    """

    def __init__(self, prompts: PromptsConfig):
        self._prompts = prompts

    @property
    def upper(self) -> float:
        return self._prompts.relevance_upper

    @property
    def lower(self) -> float:
        return self._prompts.relevance_lower

    @staticmethod
    def validate_balance(memory_balance: float) -> float:
        if not 0.0 <= memory_balance <= 1.0:
            raise InvalidMemoryBalance(memory_balance)
        return memory_balance

    def threshold(self, memory_kind: str, memory_balance: float) -> float:
        """Minimum relevance for ``memory_kind`` at ``memory_balance``.

        Raises:
            InvalidMemoryBalance: ``memory_balance`` outside ``[0, 1]``.
            ValueError: ``memory_kind`` is not a configured memory kind.
        """
        self.validate_balance(memory_balance)
        prompts = self._prompts

        if memory_kind == prompts.document_memory_name:
            return prompts.document_min_relevance
        if memory_kind == prompts.long_term_memory_name:
            if memory_balance == 1.0:
                return self.lower
            return (self.lower - self.upper) * memory_balance + self.upper
        if memory_kind == prompts.working_memory_name or memory_kind in prompts.custom_memory_kinds:
            if memory_balance == 1.0:
                return self.upper
            return (self.upper - self.lower) * memory_balance + self.lower

        raise ValueError(f"Unknown memory kind: {memory_kind}")

    def thresholds(self, memory_kinds: list[str], memory_balance: float) -> dict[str, float]:
        """Thresholds for every kind, validated up front."""
        self.validate_balance(memory_balance)
        return {kind: self.threshold(kind, memory_balance) for kind in memory_kinds}
