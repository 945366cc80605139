"""
chat_copilot test fixtures

Shared fakes for the collaborators of the core: repositories, memory
provider, completion provider, planner and broadcaster.
"""
from __future__ import annotations

from typing import Any, AsyncIterator

import pytest
from loguru import logger

from chat_copilot.config import CopilotConfig, PromptsConfig
from chat_copilot.models import (
    ChatSession,
    CompletionResult,
    CompletionSettings,
    DocumentImportRequest,
    MemoryFilter,
    MemoryPartition,
    MemorySearchResult,
    Plan,
    StepwiseResult,
)
from chat_copilot.storage import (
    HashingEmbedder,
    InProcessMemoryProvider,
    VolatileChatMessageRepository,
    VolatileChatSessionRepository,
)
from chat_copilot.token_counter import TokenCounter

EXTRACTION_JSON = '{"items": [{"label": "Pet", "details": "Alice has a cat named Tom"}]}'


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeCompletionProvider:
    """Answers by recognizing which prompt it was given."""

    def __init__(
        self,
        audience: str = "Alice",
        intent: str = "Alice wants to know what her cat likes to eat",
        extraction: str = EXTRACTION_JSON,
        chunks: list[str] | None = None,
        total_tokens: int | None = 10,
    ):
        self.audience = audience
        self.intent = intent
        self.extraction = extraction
        self.chunks = chunks if chunks is not None else ["Cats ", "like ", "fish."]
        self.total_tokens = total_tokens
        self.calls: list[list[dict[str, str]]] = []
        self.stream_calls: list[list[dict[str, str]]] = []
        self.fail_on: set[str] = set()

    def _kind(self, messages: list[dict[str, str]]) -> str:
        prompt = messages[-1]["content"]
        if "Participants:" in prompt:
            return "audience"
        if "REWRITTEN INTENT" in prompt:
            return "intent"
        return "extraction"

    async def complete(
        self, messages: list[dict[str, str]], settings: CompletionSettings
    ) -> CompletionResult:
        self.calls.append(messages)
        kind = self._kind(messages)
        if kind in self.fail_on:
            raise RuntimeError(f"{kind} completion failed")
        text = {"audience": self.audience, "intent": self.intent}.get(kind, self.extraction)
        return CompletionResult(text=text, total_tokens=self.total_tokens)

    async def complete_streaming(
        self, messages: list[dict[str, str]], settings: CompletionSettings
    ) -> AsyncIterator[str]:
        self.stream_calls.append(messages)
        for chunk in self.chunks:
            yield chunk


class RecordingBroadcaster:
    def __init__(self):
        self.events: list[tuple[str, str, tuple[Any, ...]]] = []

    async def broadcast(self, group_id: str, event: str, *payload: Any) -> None:
        self.events.append((group_id, event, payload))

    def names(self, exclude_status: bool = True) -> list[str]:
        return [
            event
            for _, event, _ in self.events
            if not (exclude_status and event == "ReceiveBotResponseStatus")
        ]


class ScriptedMemoryProvider:
    """Returns canned results per memory kind and records every search."""

    def __init__(
        self,
        results: dict[str, list[MemorySearchResult]] | None = None,
        failing_kinds: set[str] | None = None,
    ):
        self.results = results or {}
        self.failing_kinds = failing_kinds or set()
        self.searches: list[dict[str, Any]] = []

    async def search(
        self,
        index: str,
        query: str,
        filter: MemoryFilter,
        min_relevance: float = 0.0,
        limit: int = 1,
    ) -> list[MemorySearchResult]:
        self.searches.append(
            {
                "index": index,
                "query": query,
                "kind": filter.memory_kind,
                "chat_id": filter.chat_id,
                "min_relevance": min_relevance,
                "limit": limit,
            }
        )
        if filter.memory_kind in self.failing_kinds:
            raise ConnectionError(f"{filter.memory_kind} index offline")
        hits = []
        for result in self.results.get(filter.memory_kind, []):
            partitions = [p for p in result.partitions if p.relevance >= min_relevance]
            if partitions:
                hits.append(result.model_copy(update={"partitions": partitions}))
        return hits

    async def import_document(self, request: DocumentImportRequest) -> str:
        return request.document_id

    async def delete_document(self, document_id: str, index: str) -> None:
        return None

    async def list_indexes(self) -> list[str]:
        return ["chatmemory"]


class FakePlanner:
    def __init__(
        self,
        plan: Plan | None = None,
        result: str = "It is sunny in Seattle.",
        stepwise: StepwiseResult | None = None,
        functions: bool = True,
    ):
        self.plan = plan
        self.result = result
        self.stepwise = stepwise
        self.functions = functions
        self.goals: list[str] = []
        self.executed: list[Plan] = []
        self.create_error: Exception | None = None
        self.execute_error: Exception | None = None

    def has_functions(self) -> bool:
        return self.functions

    async def create_plan(self, goal: str, context: dict[str, Any]) -> Plan:
        self.goals.append(goal)
        if self.create_error is not None:
            raise self.create_error
        return self.plan or Plan()

    async def execute_plan(self, plan: Plan, context: dict[str, Any]) -> str:
        self.executed.append(plan)
        if self.execute_error is not None:
            raise self.execute_error
        return self.result

    async def run_stepwise(self, goal: str, context: dict[str, Any]) -> StepwiseResult:
        self.goals.append(goal)
        return self.stepwise or StepwiseResult(answer="")


def memory_hit(
    kind: str,
    text: str,
    relevance: float,
    link: str = "",
    source_name: str = "",
) -> MemorySearchResult:
    return MemorySearchResult(
        document_id=link or f"{kind}-{abs(hash(text)) % 10_000}",
        link=link,
        source_name=source_name,
        tags={"chatid": ["chat-1"], "memory": [kind]},
        partitions=[MemoryPartition(text=text, relevance=relevance)],
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def token_counter() -> TokenCounter:
    """Character-estimate counter so budget arithmetic is reproducible."""
    return TokenCounter(encoding=None)


@pytest.fixture
def prompts() -> PromptsConfig:
    return PromptsConfig()


@pytest.fixture
def config(prompts) -> CopilotConfig:
    return CopilotConfig(prompts=prompts)


@pytest.fixture
def sessions() -> VolatileChatSessionRepository:
    return VolatileChatSessionRepository()


@pytest.fixture
def messages() -> VolatileChatMessageRepository:
    return VolatileChatMessageRepository()


@pytest.fixture
async def session(sessions) -> ChatSession:
    chat = ChatSession(id="chat-1", title="Cats", memory_balance=0.5)
    await sessions.create(chat)
    return chat


@pytest.fixture
def completion() -> FakeCompletionProvider:
    return FakeCompletionProvider()


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def memory_store(token_counter) -> InProcessMemoryProvider:
    return InProcessMemoryProvider(HashingEmbedder(), token_counter)


@pytest.fixture
def log_messages():
    """Capture loguru output; call the fixture value to read records by level."""
    records: list[tuple[str, str]] = []
    sink_id = logger.add(
        lambda message: records.append(
            (message.record["level"].name, message.record["message"])
        ),
        level="DEBUG",
    )

    def read(level: str | None = None) -> list[str]:
        return [text for lvl, text in records if level is None or lvl == level]

    yield read
    logger.remove(sink_id)
