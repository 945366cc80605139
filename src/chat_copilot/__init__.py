"""
chat_copilot - conversation context assembler and memory engine

Turns a user message into a token-budgeted prompt, streams the model's
response to chat subscribers and harvests semantic memories after each turn.
"""

from .budget import TokenBudgetAllocator
from .chat_history import ChatHistoryReader, ChatHistoryWindow
from .chat_service import ChatRequest, ChatService
from .config import CopilotConfig, PlannerConfig, PromptsConfig
from .context_assembler import AssemblyResult, ContextAssembler
from .exceptions import (
    ChatCopilotError,
    ChatMessageNotFound,
    ChatSessionNotFound,
    ExtractionParseFailure,
    InvalidMemoryBalance,
    MemoryProviderUnavailable,
    MigrationInProgress,
    OperationTimedOut,
    PlannerFailure,
    StageFailure,
)
from .external_information import ExternalInformation
from .extraction import SemanticMemoryExtractor
from .migration import MigrationStatus, MigrationStatusCache
from .models import ChatMessage, ChatSession, Citation, PromptAssembly, TokenBudget, TurnContext
from .relevance import RelevanceThresholdPolicy
from .retrieval import MemoryRetriever
from .stages import safe_invoke, with_stage_name
from .streaming import ResponseStreamer
from .token_counter import TokenCounter

__all__ = [
    "TokenBudgetAllocator",
    "ChatHistoryReader",
    "ChatHistoryWindow",
    "ChatRequest",
    "ChatService",
    "CopilotConfig",
    "PlannerConfig",
    "PromptsConfig",
    "AssemblyResult",
    "ContextAssembler",
    "ChatCopilotError",
    "ChatMessageNotFound",
    "ChatSessionNotFound",
    "ExtractionParseFailure",
    "InvalidMemoryBalance",
    "MemoryProviderUnavailable",
    "MigrationInProgress",
    "OperationTimedOut",
    "PlannerFailure",
    "StageFailure",
    "ExternalInformation",
    "SemanticMemoryExtractor",
    "MigrationStatus",
    "MigrationStatusCache",
    "ChatMessage",
    "ChatSession",
    "Citation",
    "PromptAssembly",
    "TokenBudget",
    "TurnContext",
    "RelevanceThresholdPolicy",
    "MemoryRetriever",
    "safe_invoke",
    "with_stage_name",
    "ResponseStreamer",
    "TokenCounter",
]
