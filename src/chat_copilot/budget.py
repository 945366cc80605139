"""Token budget arithmetic for prompt assembly."""

from __future__ import annotations

from loguru import logger

from .config import PromptsConfig
from .models import PromptAssembly, TokenBudget


class TokenBudgetAllocator:
    """Computes how many prompt tokens each assembly stage may use.

    All blocks are measured with the role-tagged count of
    :meth:`TokenCounter.count_message`, both when they are placed and when
    the remaining budget is derived, so the two never disagree.
    """

    def __init__(self, prompts: PromptsConfig, tools_enabled: bool = False):
        self._prompts = prompts
        self._tools_enabled = tools_enabled

    @property
    def tool_call_reservation(self) -> int:
        return self._prompts.tool_call_token_reservation if self._tools_enabled else 0

    def max_request_budget(self) -> int:
        """Prompt tokens available before anything is placed."""
        budget = (
            self._prompts.completion_token_limit
            - self._prompts.framing_token_overhead
            - self._prompts.response_token_limit
            - self.tool_call_reservation
        )
        return max(0, budget)

    def new_budget(self) -> TokenBudget:
        return TokenBudget(
            total=self._prompts.completion_token_limit
            - self._prompts.framing_token_overhead,
            reserved_for_response=self._prompts.response_token_limit,
            reserved_for_tool_calls=self.tool_call_reservation,
        )

    def remaining_budget(self, assembly: PromptAssembly, reservations: int = 0) -> int:
        """Budget left after the blocks in ``assembly`` and ``reservations``."""
        remaining = self.max_request_budget() - assembly.total_tokens - reservations
        logger.debug(
            f"Remaining budget {remaining} "
            f"(max {self.max_request_budget()}, placed {assembly.total_tokens}, "
            f"reserved {reservations})"
        )
        return max(0, remaining)

    @staticmethod
    def fraction(remaining: int, weight: float) -> int:
        return max(0, int(remaining * weight))

    def memory_budget(self, remaining: int) -> int:
        return self.fraction(remaining, self._prompts.memories_response_context_weight)

    def external_information_budget(self, remaining: int) -> int:
        return self.fraction(remaining, self._prompts.external_information_context_weight)
