"""Tests for the memory balance to relevance threshold mapping."""

from __future__ import annotations

import pytest

from chat_copilot.config import PromptsConfig
from chat_copilot.exceptions import InvalidMemoryBalance
from chat_copilot.relevance import RelevanceThresholdPolicy


@pytest.fixture
def policy(prompts):
    return RelevanceThresholdPolicy(prompts)


class TestThresholds:
    """Long-term and working thresholds move along the same line."""

    @pytest.mark.parametrize("balance", [0.0, 0.1, 0.25, 0.5, 0.6, 0.75, 0.9, 1.0])
    def test_sum_is_constant(self, policy, balance):
        total = policy.threshold("LongTermMemory", balance) + policy.threshold(
            "WorkingMemory", balance
        )
        assert total == pytest.approx(0.6 + 0.9)

    def test_bounds_exact_at_zero(self, policy):
        assert policy.threshold("LongTermMemory", 0.0) == 0.9
        assert policy.threshold("WorkingMemory", 0.0) == 0.6

    def test_bounds_exact_at_one(self, policy):
        assert policy.threshold("LongTermMemory", 1.0) == 0.6
        assert policy.threshold("WorkingMemory", 1.0) == 0.9

    def test_midpoint_meets(self, policy):
        assert policy.threshold("LongTermMemory", 0.5) == pytest.approx(0.75)
        assert policy.threshold("WorkingMemory", 0.5) == pytest.approx(0.75)

    def test_long_term_relaxes_as_balance_rises(self, policy):
        values = [policy.threshold("LongTermMemory", b / 10) for b in range(11)]
        assert values == sorted(values, reverse=True)

    @pytest.mark.parametrize("balance", [0.0, 0.3, 1.0])
    def test_document_ignores_balance(self, policy, balance):
        assert policy.threshold("DocumentMemory", balance) == 0.8

    def test_custom_kind_follows_working_memory(self):
        policy = RelevanceThresholdPolicy(
            PromptsConfig(custom_memory_kinds={"EpisodicMemory": "Events"})
        )
        assert policy.threshold("EpisodicMemory", 0.25) == pytest.approx(
            policy.threshold("WorkingMemory", 0.25)
        )

    def test_unknown_kind_rejected(self, policy):
        with pytest.raises(ValueError, match="Unknown memory kind"):
            policy.threshold("ShortTermMemory", 0.5)


class TestValidation:
    @pytest.mark.parametrize("balance", [-0.01, 1.01, -5.0, 2.0])
    def test_out_of_range_raises(self, policy, balance):
        with pytest.raises(InvalidMemoryBalance) as exc_info:
            policy.threshold("LongTermMemory", balance)
        assert exc_info.value.memory_balance == balance

    def test_document_kind_still_validates_balance(self, policy):
        with pytest.raises(InvalidMemoryBalance):
            policy.threshold("DocumentMemory", 1.5)

    def test_thresholds_validate_before_computing(self, policy):
        with pytest.raises(InvalidMemoryBalance):
            policy.thresholds(["DocumentMemory", "LongTermMemory"], -1.0)

    def test_invalid_balance_is_value_error(self, policy):
        with pytest.raises(ValueError):
            policy.threshold("WorkingMemory", 3.0)

    def test_custom_bounds(self):
        policy = RelevanceThresholdPolicy(
            PromptsConfig(relevance_lower=0.2, relevance_upper=0.8)
        )
        assert policy.threshold("LongTermMemory", 0.0) == 0.8
        assert policy.threshold("WorkingMemory", 0.0) == 0.2
        assert policy.threshold("WorkingMemory", 0.5) == pytest.approx(0.5)
