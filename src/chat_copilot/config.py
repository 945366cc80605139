"""Chat copilot configuration models."""

from __future__ import annotations

from loguru import logger
from pydantic import BaseModel, Field, model_validator

from .prompts import (
    DEFAULT_INITIAL_BOT_MESSAGE,
    DEFAULT_KNOWLEDGE_CUTOFF,
    DEFAULT_LONG_TERM_MEMORY_EXTRACTION,
    DEFAULT_MEMORY_ANTI_HALLUCINATION,
    DEFAULT_MEMORY_CONTINUATION,
    DEFAULT_MEMORY_FORMAT,
    DEFAULT_PLAN_RESULTS_DESCRIPTION,
    DEFAULT_PROPOSED_PLAN_BOT_MESSAGE,
    DEFAULT_STEPWISE_PLANNER_SUPPLEMENT,
    DEFAULT_SYSTEM_AUDIENCE,
    DEFAULT_SYSTEM_AUDIENCE_CONTINUATION,
    DEFAULT_SYSTEM_COGNITIVE,
    DEFAULT_SYSTEM_DESCRIPTION,
    DEFAULT_SYSTEM_INTENT,
    DEFAULT_SYSTEM_INTENT_CONTINUATION,
    DEFAULT_SYSTEM_RESPONSE,
    DEFAULT_WORKING_MEMORY_EXTRACTION,
    HISTORY_PLACEHOLDER,
)


class CompletionParameters(BaseModel):
    """Sampling parameters for one family of completion calls."""

    temperature: float = 0.7
    top_p: float = 1.0
    presence_penalty: float = 0.5
    frequency_penalty: float = 0.5


class PromptsConfig(BaseModel):
    """Token limits, relevance bounds and prompt text."""

    completion_token_limit: int = Field(default=4096, ge=0)
    response_token_limit: int = Field(default=1024, ge=0)
    # Framing tokens the completion provider adds around a request.
    framing_token_overhead: int = Field(default=0, ge=0)
    # Reserved for function definitions when tools are enabled.
    tool_call_token_reservation: int = Field(default=0, ge=0)

    memories_response_context_weight: float = Field(default=0.6, ge=0.0, le=1.0)
    external_information_context_weight: float = Field(default=0.3, ge=0.0, le=1.0)

    relevance_upper: float = Field(default=0.9, ge=0.0, le=1.0)
    relevance_lower: float = Field(default=0.6, ge=0.0, le=1.0)
    document_min_relevance: float = Field(default=0.8, ge=0.0, le=1.0)

    memory_index_name: str = "chatmemory"
    document_memory_name: str = "DocumentMemory"
    long_term_memory_name: str = "LongTermMemory"
    working_memory_name: str = "WorkingMemory"

    knowledge_cutoff_date: str = DEFAULT_KNOWLEDGE_CUTOFF
    initial_bot_message: str = DEFAULT_INITIAL_BOT_MESSAGE
    system_description: str = DEFAULT_SYSTEM_DESCRIPTION
    system_response: str = DEFAULT_SYSTEM_RESPONSE
    proposed_plan_bot_message: str = DEFAULT_PROPOSED_PLAN_BOT_MESSAGE
    plan_results_description: str = DEFAULT_PLAN_RESULTS_DESCRIPTION
    stepwise_planner_supplement: str = DEFAULT_STEPWISE_PLANNER_SUPPLEMENT

    system_intent: str = DEFAULT_SYSTEM_INTENT
    system_intent_continuation: str = DEFAULT_SYSTEM_INTENT_CONTINUATION
    system_audience: str = DEFAULT_SYSTEM_AUDIENCE
    system_audience_continuation: str = DEFAULT_SYSTEM_AUDIENCE_CONTINUATION

    system_cognitive: str = DEFAULT_SYSTEM_COGNITIVE
    memory_format: str = DEFAULT_MEMORY_FORMAT
    memory_anti_hallucination: str = DEFAULT_MEMORY_ANTI_HALLUCINATION
    memory_continuation: str = DEFAULT_MEMORY_CONTINUATION
    long_term_memory_extraction: str = DEFAULT_LONG_TERM_MEMORY_EXTRACTION
    working_memory_extraction: str = DEFAULT_WORKING_MEMORY_EXTRACTION

    # Additional memory kinds: name -> extraction description.
    custom_memory_kinds: dict[str, str] = Field(default_factory=dict)

    response: CompletionParameters = Field(default_factory=CompletionParameters)
    intent: CompletionParameters = Field(default_factory=CompletionParameters)

    @model_validator(mode="after")
    def _check_bounds(self) -> "PromptsConfig":
        if self.relevance_lower > self.relevance_upper:
            raise ValueError(
                f"relevance_lower ({self.relevance_lower}) must not exceed "
                f"relevance_upper ({self.relevance_upper})"
            )
        if self.response_token_limit > self.completion_token_limit:
            raise ValueError(
                f"response_token_limit ({self.response_token_limit}) must not "
                f"exceed completion_token_limit ({self.completion_token_limit})"
            )
        weights = (
            self.memories_response_context_weight
            + self.external_information_context_weight
        )
        if weights > 1.0:
            logger.warning(
                f"Context weights sum to {weights:.2f} (> 1.0); memory and "
                f"external information may crowd out chat history"
            )
        return self

    # -- derived prompt templates -------------------------------------------

    def system_persona(self, system_description: str = "") -> str:
        """Persona template; a chat's own description replaces the default."""
        return "\n\n".join(
            [system_description or self.system_description, self.system_response]
        )

    @property
    def system_audience_extraction(self) -> str:
        return "\n".join(
            [self.system_audience, HISTORY_PLACEHOLDER, self.system_audience_continuation]
        )

    def system_intent_extraction(self, system_description: str = "") -> str:
        return "\n".join(
            [
                system_description or self.system_description,
                self.system_intent,
                HISTORY_PLACEHOLDER,
                self.system_intent_continuation,
            ]
        )

    def memory_extraction_prompt(self, memory_name: str, description: str) -> str:
        return "\n".join(
            [
                self.system_cognitive,
                f"{memory_name} Description:\n{description}",
                self.memory_anti_hallucination,
                f"Chat Description:\n{self.system_description}",
                HISTORY_PLACEHOLDER,
                self.memory_continuation,
            ]
        )

    @property
    def memory_map(self) -> dict[str, str]:
        """Memory kind -> extraction prompt template, in declared order."""
        kinds = {
            self.long_term_memory_name: self.long_term_memory_extraction,
            self.working_memory_name: self.working_memory_extraction,
        }
        for name, description in self.custom_memory_kinds.items():
            kinds.setdefault(name, description)
        return {
            name: self.memory_extraction_prompt(name, description)
            for name, description in kinds.items()
        }


class PlannerConfig(BaseModel):
    """How external information is acquired through the planner."""

    # "action", "sequential" or "stepwise"
    type: str = "sequential"
    # Bypass response generation and answer with the stepwise result.
    use_stepwise_result_as_bot_response: bool = False
    # Number of times plan creation is retried after a failure.
    max_create_retries: int = Field(default=0, ge=0)
    # Default anonymous user; audience extraction is skipped for it.
    anonymous_user_id: str = "c05c61eb-65e4-4223-915a-fe72b0c9ece1"


class EmbeddingConfig(BaseModel):
    """Embedding model used by the in-process memory store."""

    model: str = "sentence-transformers/all-MiniLM-L6-v2"
    dimension: int = 384
    trust_remote_code: bool = False


class MemoryStoreConfig(BaseModel):
    """In-process vector memory store."""

    partition_size_tokens: int = Field(default=500, gt=0)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)


class ServiceConfig(BaseModel):
    """Turn-level service behaviour."""

    # Wall-clock timeout for a whole turn; None disables it.
    turn_timeout_seconds: float | None = Field(default=None, gt=0)
    # Applied by ChatService.create(configure_logs=True)
    log_level: str = "INFO"
    log_file: str | None = None


class CopilotConfig(BaseModel):
    """Top-level chat copilot configuration."""

    prompts: PromptsConfig = Field(default_factory=PromptsConfig)
    planner: PlannerConfig = Field(default_factory=PlannerConfig)
    memory_store: MemoryStoreConfig = Field(default_factory=MemoryStoreConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
