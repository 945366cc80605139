"""Core data models.

Everything that crosses the transport boundary (messages, citations, plans,
token usage) is a pydantic model with camelCase aliases so it round-trips
through JSON unchanged.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .exceptions import ExtractionParseFailure


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


class WireModel(BaseModel):
    """Base for models that are serialized to clients."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Memory tags
# ---------------------------------------------------------------------------

TAG_CHAT_ID = "chatid"
TAG_MEMORY = "memory"


class AuthorRole(str, Enum):
    USER = "user"
    BOT = "bot"
    PARTICIPANT = "participant"


class ChatMessageType(str, Enum):
    MESSAGE = "message"
    PLAN = "plan"
    DOCUMENT = "document"

    @classmethod
    def parse(cls, value: str | None) -> "ChatMessageType":
        """Parse a message type, defaulting to a standard message."""
        if not value:
            return cls.MESSAGE
        try:
            return cls(value.lower())
        except ValueError:
            return cls.MESSAGE


class TokenUsageStage(str, Enum):
    """Keys of the per-stage token usage breakdown."""

    AUDIENCE_EXTRACTION = "audienceExtraction"
    INTENT_EXTRACTION = "userIntentExtraction"
    META_PROMPT = "metaPromptTemplate"
    RESPONSE_COMPLETION = "responseCompletion"
    WORKING_MEMORY_EXTRACTION = "workingMemoryExtraction"
    LONG_TERM_MEMORY_EXTRACTION = "longTermMemoryExtraction"


def memory_extraction_stage(memory_kind: str) -> str:
    """Token usage key for extracting ``memory_kind`` (``LongTermMemory`` -> ``longTermMemoryExtraction``)."""
    if not memory_kind:
        return "memoryExtraction"
    return f"{memory_kind[0].lower()}{memory_kind[1:]}Extraction"


def empty_token_usage() -> dict[str, int]:
    """Token usage for responses that do not call the model."""
    return {stage.value: 0 for stage in TokenUsageStage}


class Citation(WireModel):
    """A document snippet a bot response may cite."""

    link: str = ""
    source_content_type: str = ""
    source_name: str = ""
    snippet: str = ""
    relevance_score: float = 0.0


class ChatMessage(WireModel):
    """A single message in a chat session."""

    id: str = Field(default_factory=_uuid)
    chat_id: str
    author_id: str
    author_name: str
    role: AuthorRole = AuthorRole.USER
    kind: ChatMessageType = ChatMessageType.MESSAGE
    content: str = ""
    prompt: str = ""
    citations: list[Citation] = Field(default_factory=list)
    token_usage: dict[str, int] | None = None
    timestamp: datetime = Field(default_factory=_utcnow)

    BOT_ID: ClassVar[str] = "Bot"

    @classmethod
    def create_bot_response(
        cls,
        chat_id: str,
        content: str,
        prompt: str = "",
        citations: list[Citation] | None = None,
        token_usage: dict[str, int] | None = None,
        kind: ChatMessageType = ChatMessageType.MESSAGE,
    ) -> "ChatMessage":
        return cls(
            chat_id=chat_id,
            author_id=cls.BOT_ID,
            author_name=cls.BOT_ID,
            role=AuthorRole.BOT,
            kind=kind,
            content=content,
            prompt=prompt,
            citations=list(citations or []),
            token_usage=token_usage,
        )

    def to_formatted_string(self) -> str:
        """Render the message the way it appears in chat history prompts."""
        stamp = self.timestamp.strftime("%m/%d/%Y %H:%M:%S")
        if self.kind == ChatMessageType.DOCUMENT:
            return f"[{stamp}] {self.author_name} uploaded documents: {self.content}"
        return f"[{stamp}] {self.author_name}: {self.content}"


class ChatSession(WireModel):
    """A chat session; ``memory_balance`` is validated where it is used."""

    id: str = Field(default_factory=_uuid)
    title: str = ""
    system_description: str = ""
    memory_balance: float = 0.5
    enabled_tools: list[str] = Field(default_factory=list)
    created_on: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Semantic memory
# ---------------------------------------------------------------------------


class MemoryItem(BaseModel):
    """One extracted memory; stored as a document tagged with chat id and kind."""

    kind: str
    label: str = ""
    details: str

    @property
    def text(self) -> str:
        if self.label:
            return f"{self.label}: {self.details}"
        return self.details


class SemanticChatMemory(BaseModel):
    """Parsed output of one memory extraction call."""

    kind: str
    items: list[MemoryItem] = Field(default_factory=list)

    @classmethod
    def from_json(cls, kind: str, raw: str) -> "SemanticChatMemory":
        """Parse the model output for ``kind``.

        Accepts ``{"items": [...]}`` or a bare list; each element needs
        ``details`` and may carry a ``label``. Markdown code fences are
        stripped first.

        Raises:
            ExtractionParseFailure: When the payload is not valid JSON of
                the expected shape.
        """
        text = (raw or "").strip()
        if text.startswith("```"):
            first_newline = text.find("\n")
            if first_newline != -1:
                text = text[first_newline + 1:]
            if text.endswith("```"):
                text = text[:-3].strip()

        if not text:
            raise ExtractionParseFailure(kind, "empty response", raw)

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ExtractionParseFailure(kind, str(e), raw) from e

        if isinstance(data, dict):
            data = data.get("items")
        if not isinstance(data, list):
            raise ExtractionParseFailure(
                kind, f"expected a list of items, got {type(data).__name__}", raw
            )

        items: list[MemoryItem] = []
        for entry in data:
            if isinstance(entry, str) and entry.strip():
                items.append(MemoryItem(kind=kind, details=entry.strip()))
                continue
            if not isinstance(entry, dict):
                continue
            details = str(entry.get("details") or "").strip()
            if not details:
                continue
            items.append(
                MemoryItem(
                    kind=kind,
                    label=str(entry.get("label") or "").strip(),
                    details=details,
                )
            )
        return cls(kind=kind, items=items)


class MemoryFilter(BaseModel):
    """Tag filter for memory provider searches."""

    chat_id: str
    memory_kind: str | None = None

    def to_tags(self) -> dict[str, str]:
        tags = {TAG_CHAT_ID: self.chat_id}
        if self.memory_kind:
            tags[TAG_MEMORY] = self.memory_kind
        return tags


class MemoryPartition(BaseModel):
    """A scored passage of a stored document."""

    text: str
    relevance: float
    partition_number: int = 0


class MemorySearchResult(BaseModel):
    """One document returned by a memory provider search."""

    document_id: str
    index: str = ""
    link: str = ""
    source_name: str = ""
    source_content_type: str = "text/plain"
    tags: dict[str, list[str]] = Field(default_factory=dict)
    partitions: list[MemoryPartition] = Field(default_factory=list)

    @property
    def memory_kind(self) -> str | None:
        values = self.tags.get(TAG_MEMORY) or []
        return values[0] if values else None

    def to_citation(self, partition: MemoryPartition) -> Citation:
        return Citation(
            link=self.link,
            source_content_type=self.source_content_type,
            source_name=self.source_name,
            snippet=partition.text,
            relevance_score=partition.relevance,
        )


class UploadedFile(BaseModel):
    name: str
    content: str


class DocumentImportRequest(BaseModel):
    """A document handed to the memory provider for ingestion."""

    document_id: str = Field(default_factory=_uuid)
    index: str
    tags: dict[str, str] = Field(default_factory=dict)
    files: list[UploadedFile] = Field(default_factory=list)
    steps: list[str] = Field(
        default_factory=lambda: ["extract", "partition", "gen_embeddings", "save_records"]
    )

    @classmethod
    def for_memory(
        cls, index: str, chat_id: str, memory_kind: str, text: str
    ) -> "DocumentImportRequest":
        return cls(
            index=index,
            tags={TAG_CHAT_ID: chat_id, TAG_MEMORY: memory_kind},
            # File name is required but not meaningful for memories.
            files=[UploadedFile(name="memory.txt", content=text)],
        )


# ---------------------------------------------------------------------------
# Prompt assembly
# ---------------------------------------------------------------------------


class PromptStage(str, Enum):
    """Stages that contribute blocks to the meta-prompt, in precedence order."""

    PERSONA = "persona"
    AUDIENCE = "audience"
    INTENT = "intent"
    MEMORY = "memory"
    HISTORY = "history"
    EXTERNAL_INFORMATION = "external_information"


PROMPT_STAGE_ORDER: tuple[PromptStage, ...] = tuple(PromptStage)


class PromptBlock(BaseModel):
    role: str  # "system", "user", "assistant"
    content: str
    stage: PromptStage
    tokens: int = 0


class PromptAssembly(BaseModel):
    """Ordered role-tagged blocks for one turn, with a running token total."""

    blocks: list[PromptBlock] = Field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return sum(block.tokens for block in self.blocks)

    def add(self, block: PromptBlock) -> None:
        self.blocks.append(block)

    def stages(self) -> list[PromptStage]:
        """Distinct stages in the order they first appear."""
        seen: list[PromptStage] = []
        for block in self.blocks:
            if block.stage not in seen:
                seen.append(block.stage)
        return seen

    def blocks_for(self, stage: PromptStage) -> list[PromptBlock]:
        return [block for block in self.blocks if block.stage == stage]

    def to_messages(self) -> list[dict[str, str]]:
        return [{"role": block.role, "content": block.content} for block in self.blocks]


class TokenBudget(BaseModel):
    """Running budget for one assembly.

    ``consumed_so_far + reserved_for_response + reserved_for_tool_calls`` never
    exceeds ``total``; callers check :meth:`can_add` and truncate or skip.
    """

    total: int
    reserved_for_response: int = 0
    reserved_for_tool_calls: int = 0
    consumed_so_far: int = 0

    @property
    def remaining(self) -> int:
        return max(
            0,
            self.total
            - self.reserved_for_response
            - self.reserved_for_tool_calls
            - self.consumed_so_far,
        )

    def can_add(self, tokens: int) -> bool:
        return tokens <= self.remaining

    def consume(self, tokens: int) -> None:
        if not self.can_add(tokens):
            raise ValueError(
                f"Cannot consume {tokens} tokens, only {self.remaining} remaining"
            )
        self.consumed_so_far += tokens


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------


class CompletionSettings(BaseModel):
    max_tokens: int = 1024
    temperature: float = 0.7
    top_p: float = 1.0
    presence_penalty: float = 0.5
    frequency_penalty: float = 0.5
    stop_sequences: list[str] = Field(default_factory=list)


class CompletionResult(BaseModel):
    text: str
    total_tokens: int | None = None


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


class PlanType(str, Enum):
    ACTION = "Action"
    SEQUENTIAL = "Sequential"
    STEPWISE = "Stepwise"


class PlanState(str, Enum):
    NO_OP = "NoOp"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    DERIVED = "Derived"


class PlanStep(WireModel):
    name: str
    plugin_name: str = ""
    description: str = ""
    parameters: dict[str, str] = Field(default_factory=dict)
    outputs: list[str] = Field(default_factory=list)


class Plan(WireModel):
    description: str = ""
    steps: list[PlanStep] = Field(default_factory=list)
    parameters: dict[str, str] = Field(default_factory=dict)

    def function_names(self) -> list[str]:
        names = []
        for step in self.steps:
            names.append(f"{step.plugin_name}.{step.name}" if step.plugin_name else step.name)
        return names


class ProposedPlan(WireModel):
    """A plan waiting for the user's approval."""

    plan: Plan
    type: PlanType = PlanType.ACTION
    state: PlanState = PlanState.NO_OP
    original_user_input: str = ""
    user_intent: str = ""


class StepwiseResult(BaseModel):
    """Outcome of a stepwise planner run."""

    answer: str
    steps_taken: list[dict[str, Any]] = Field(default_factory=list)
    time_taken: str = ""
    function_count: int = 0


class PlanExecutionMetadata(WireModel):
    steps_taken: str = ""
    time_taken: str = ""
    functions_used: str = ""
    final_answer: str = ""


class BotResponsePrompt(WireModel):
    """Debug view of the prompt a bot message was generated from."""

    system_persona: str = ""
    audience: str = ""
    user_intent: str = ""
    past_memories: str = ""
    external_information: str = ""
    plan_execution_metadata: PlanExecutionMetadata | None = None
    chat_history: str = ""
    meta_prompt_template: list[dict[str, str]] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Turn context
# ---------------------------------------------------------------------------


class TurnContext(BaseModel):
    """Per-turn state threaded through every stage.

    Stages produce updated copies with :meth:`with_updates`; ``token_usage``
    and ``budgets`` are shared between copies so every stage reports into the
    same breakdown. ``extras`` carries provider pass-through values only.
    """

    chat_id: str
    user_id: str
    user_name: str = ""
    message: str = ""
    message_type: ChatMessageType = ChatMessageType.MESSAGE
    system_description: str = ""
    persona: str = ""
    audience: str = ""
    user_intent: str = ""
    memory_text: str = ""
    plan_result: str = ""
    plan_user_intent: str | None = None
    budgets: dict[str, int] = Field(default_factory=dict)
    token_usage: dict[str, int] = Field(default_factory=dict)
    extras: dict[str, str] = Field(default_factory=dict)

    def with_updates(self, **updates: Any) -> "TurnContext":
        return self.model_copy(update=updates)

    def record_usage(self, stage: str, tokens: int) -> None:
        """Accumulate token usage for ``stage``."""
        self.token_usage[stage] = self.token_usage.get(stage, 0) + max(0, int(tokens))

    def template_variables(self) -> dict[str, str]:
        """Variables available to prompt templates."""
        variables = dict(self.extras)
        variables.update(
            {
                "chat_id": self.chat_id,
                "user_id": self.user_id,
                "user_name": self.user_name,
                "message": self.message,
                "system_description": self.system_description,
                "audience": self.audience,
                "user_intent": self.user_intent,
            }
        )
        return variables
