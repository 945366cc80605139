"""Tests for MemoryRetriever ranking, budgeting and failure tolerance."""

from __future__ import annotations

import asyncio
import random

import pytest

from chat_copilot.exceptions import ChatSessionNotFound, InvalidMemoryBalance
from chat_copilot.models import ChatSession, MemoryPartition, MemorySearchResult
from chat_copilot.prompts import DOCUMENT_MEMORIES_HEADER, PAST_MEMORIES_HEADER
from chat_copilot.relevance import RelevanceThresholdPolicy
from chat_copilot.retrieval import MemoryRetriever

from conftest import ScriptedMemoryProvider, memory_hit

WORDS = "alice cat fish dinner seattle weather garden piano tuesday coffee".split()


def make_retriever(sessions, provider, token_counter, prompts):
    return MemoryRetriever(
        sessions,
        provider,
        RelevanceThresholdPolicy(prompts),
        token_counter,
        prompts,
    )


@pytest.fixture
def sample_results():
    return {
        "LongTermMemory": [memory_hit("LongTermMemory", "Pet: Alice has a cat named Tom", 0.95)],
        "WorkingMemory": [memory_hit("WorkingMemory", "Task: Alice is planning dinner", 0.80)],
        "DocumentMemory": [
            memory_hit("DocumentMemory", "Cats are obligate carnivores.", 0.90, link="doc-1", source_name="cats.pdf")
        ],
    }


# ---------------------------------------------------------------------------
# Searching
# ---------------------------------------------------------------------------


class TestSearch:
    async def test_searches_every_kind_with_its_threshold(self, session, sessions, token_counter, prompts):
        provider = ScriptedMemoryProvider()
        retriever = make_retriever(sessions, provider, token_counter, prompts)

        await retriever.retrieve("cats", "chat-1", 500)

        searched = {s["kind"]: s["min_relevance"] for s in provider.searches}
        assert searched["DocumentMemory"] == 0.8
        assert searched["LongTermMemory"] == pytest.approx(0.75)
        assert searched["WorkingMemory"] == pytest.approx(0.75)
        assert all(s["chat_id"] == "chat-1" for s in provider.searches)
        assert all(s["index"] == "chatmemory" for s in provider.searches)

    async def test_missing_session(self, sessions, token_counter, prompts):
        retriever = make_retriever(sessions, ScriptedMemoryProvider(), token_counter, prompts)
        with pytest.raises(ChatSessionNotFound):
            await retriever.retrieve("cats", "nope", 500)

    async def test_invalid_balance_rejected_before_search(self, sessions, token_counter, prompts):
        await sessions.create(ChatSession(id="chat-2", memory_balance=1.5))
        provider = ScriptedMemoryProvider()
        retriever = make_retriever(sessions, provider, token_counter, prompts)

        with pytest.raises(InvalidMemoryBalance):
            await retriever.retrieve("cats", "chat-2", 500)
        assert provider.searches == []

    async def test_zero_budget_returns_nothing(self, session, sessions, token_counter, prompts, sample_results):
        provider = ScriptedMemoryProvider(sample_results)
        retriever = make_retriever(sessions, provider, token_counter, prompts)

        assert await retriever.retrieve("cats", "chat-1", 0) == ("", {})

    async def test_kinds_searched_concurrently(self, session, sessions, token_counter, prompts, sample_results):
        class GatedProvider(ScriptedMemoryProvider):
            """Holds every search until all kinds have started."""

            def __init__(self, results, expected):
                super().__init__(results)
                self.expected = expected
                self.all_started = asyncio.Event()

            async def search(self, index, query, filter, min_relevance=0.0, limit=1):
                hits = await super().search(index, query, filter, min_relevance, limit)
                if len(self.searches) == self.expected:
                    self.all_started.set()
                await self.all_started.wait()
                return hits

        # DocumentMemory, LongTermMemory, WorkingMemory
        provider = GatedProvider(sample_results, expected=3)
        retriever = make_retriever(sessions, provider, token_counter, prompts)

        text, _ = await asyncio.wait_for(retriever.retrieve("cats", "chat-1", 500), 1.0)

        assert "Alice has a cat named Tom" in text
        assert "Cats are obligate carnivores." in text


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


class TestFormatting:
    async def test_groups_memories_and_documents(self, session, sessions, token_counter, prompts, sample_results):
        retriever = make_retriever(sessions, ScriptedMemoryProvider(sample_results), token_counter, prompts)

        text, citations = await retriever.retrieve("cats", "chat-1", 1000)

        assert text.startswith(PAST_MEMORIES_HEADER)
        assert (
            "[LongTermMemory] Pet: Alice has a cat named Tom\n"
            "[WorkingMemory] Task: Alice is planning dinner\n"
        ) in text
        assert DOCUMENT_MEMORIES_HEADER in text
        assert "Document name: cats.pdf\nDocument link: doc-1.\n" in text
        assert "[CONTENT START]\nCats are obligate carnivores.\n[CONTENT END]" in text
        assert text.index(PAST_MEMORIES_HEADER) < text.index(DOCUMENT_MEMORIES_HEADER)

    async def test_only_documents_are_cited(self, session, sessions, token_counter, prompts, sample_results):
        retriever = make_retriever(sessions, ScriptedMemoryProvider(sample_results), token_counter, prompts)

        _, citations = await retriever.retrieve("cats", "chat-1", 1000)

        assert list(citations) == ["doc-1"]
        citation = citations["doc-1"]
        assert citation.source_name == "cats.pdf"
        assert citation.snippet == "Cats are obligate carnivores."
        assert citation.relevance_score == 0.90

    async def test_one_citation_per_link(self, session, sessions, token_counter, prompts):
        document = MemorySearchResult(
            document_id="doc-1",
            link="doc-1",
            source_name="cats.pdf",
            partitions=[
                MemoryPartition(text="Cats sleep a lot.", relevance=0.97),
                MemoryPartition(text="Cats purr.", relevance=0.85, partition_number=1),
            ],
        )
        provider = ScriptedMemoryProvider({"DocumentMemory": [document]})
        retriever = make_retriever(sessions, provider, token_counter, prompts)

        text, citations = await retriever.retrieve("cats", "chat-1", 1000)

        assert text.count("Document link: doc-1.") == 2
        assert citations["doc-1"].snippet == "Cats sleep a lot."

    async def test_memory_map_order_not_relevance_order(self, session, sessions, token_counter, prompts):
        provider = ScriptedMemoryProvider(
            {
                "LongTermMemory": [memory_hit("LongTermMemory", "older fact", 0.76)],
                "WorkingMemory": [memory_hit("WorkingMemory", "recent fact", 0.99)],
            }
        )
        retriever = make_retriever(sessions, provider, token_counter, prompts)

        text, _ = await retriever.retrieve("facts", "chat-1", 1000)

        assert text.index("[LongTermMemory] older fact") < text.index("[WorkingMemory] recent fact")


# ---------------------------------------------------------------------------
# Budgeting
# ---------------------------------------------------------------------------


class TestBudget:
    async def test_stops_at_first_rejection(self, session, sessions, token_counter, prompts):
        provider = ScriptedMemoryProvider(
            {
                "LongTermMemory": [
                    memory_hit("LongTermMemory", "short and relevant", 0.99),
                    memory_hit("LongTermMemory", "long " * 100, 0.95),
                    memory_hit("LongTermMemory", "tiny", 0.90),
                ]
            }
        )
        retriever = make_retriever(sessions, provider, token_counter, prompts)

        text, _ = await retriever.retrieve("facts", "chat-1", 60)

        assert "short and relevant" in text
        assert "long long" not in text
        assert "tiny" not in text

    async def test_most_relevant_too_large_yields_nothing(self, session, sessions, token_counter, prompts):
        provider = ScriptedMemoryProvider(
            {
                "LongTermMemory": [memory_hit("LongTermMemory", "x" * 400, 0.99)],
                "WorkingMemory": [memory_hit("WorkingMemory", "fits easily", 0.80)],
            }
        )
        retriever = make_retriever(sessions, provider, token_counter, prompts)

        text, citations = await retriever.retrieve("facts", "chat-1", 50)

        assert text == ""
        assert citations == {}

    @pytest.mark.parametrize("seed", range(25))
    async def test_never_exceeds_budget(self, seed, session, sessions, token_counter, prompts):
        rng = random.Random(seed)
        results: dict[str, list[MemorySearchResult]] = {}
        for i in range(rng.randint(0, 15)):
            kind = rng.choice(["LongTermMemory", "WorkingMemory", "DocumentMemory"])
            text = " ".join(rng.choice(WORDS) for _ in range(rng.randint(1, 40)))
            results.setdefault(kind, []).append(
                memory_hit(kind, text, rng.uniform(0.8, 1.0), link=f"doc-{i}", source_name=f"file-{i}.txt")
            )
        budget = rng.randint(0, 400)
        retriever = make_retriever(sessions, ScriptedMemoryProvider(results), token_counter, prompts)

        text, citations = await retriever.retrieve("query", "chat-1", budget)

        assert token_counter.count(text) <= budget
        assert all(link in text for link in citations)


# ---------------------------------------------------------------------------
# Failure tolerance
# ---------------------------------------------------------------------------


class TestFailures:
    async def test_document_failure_is_swallowed(self, session, sessions, token_counter, prompts, sample_results, log_messages):
        provider = ScriptedMemoryProvider(sample_results, failing_kinds={"DocumentMemory"})
        retriever = make_retriever(sessions, provider, token_counter, prompts)

        text, citations = await retriever.retrieve("cats", "chat-1", 1000)

        assert "[LongTermMemory] Pet: Alice has a cat named Tom" in text
        assert "[WorkingMemory] Task: Alice is planning dinner" in text
        assert citations == {}
        warnings = log_messages("WARNING")
        assert len(warnings) == 1
        assert "DocumentMemory" in warnings[0]

    async def test_one_warning_per_failing_kind(self, session, sessions, token_counter, prompts, sample_results, log_messages):
        provider = ScriptedMemoryProvider(
            sample_results, failing_kinds={"DocumentMemory", "WorkingMemory"}
        )
        retriever = make_retriever(sessions, provider, token_counter, prompts)

        text, _ = await retriever.retrieve("cats", "chat-1", 1000)

        assert "[LongTermMemory]" in text
        warnings = log_messages("WARNING")
        assert len(warnings) == 2
        assert sum("DocumentMemory" in w for w in warnings) == 1
        assert sum("WorkingMemory" in w for w in warnings) == 1
