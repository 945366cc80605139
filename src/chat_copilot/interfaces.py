"""
Collaborator interfaces.

Protocols keep the core independent of storage engines, model providers,
planners and transports. In-process implementations live in
:mod:`chat_copilot.storage` and :mod:`chat_copilot.transport`.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Protocol, TypeVar, runtime_checkable

from .models import (
    ChatMessage,
    ChatSession,
    CompletionResult,
    CompletionSettings,
    DocumentImportRequest,
    MemoryFilter,
    MemorySearchResult,
    Plan,
    StepwiseResult,
)

T = TypeVar("T")


@runtime_checkable
class Repository(Protocol[T]):
    """CRUD storage for entities with a string ``id``."""

    async def find_by_id(self, entity_id: str) -> T:
        """
        Load an entity.

        Raises:
            KeyError: The entity does not exist.
        """
        ...

    async def try_find_by_id(self, entity_id: str) -> T | None:
        ...

    async def create(self, entity: T) -> None:
        ...

    async def upsert(self, entity: T) -> None:
        ...

    async def delete(self, entity: T) -> None:
        ...


@runtime_checkable
class ChatSessionRepository(Repository[ChatSession], Protocol):
    pass


@runtime_checkable
class ChatMessageRepository(Repository[ChatMessage], Protocol):
    async def find_by_chat_id(
        self, chat_id: str, skip: int = 0, count: int = -1
    ) -> list[ChatMessage]:
        """
        Messages of a chat, newest first.

        Args:
            chat_id: Chat to read
            skip: Number of newest messages to skip
            count: Maximum number of messages, -1 for all
        """
        ...


@runtime_checkable
class MemoryProvider(Protocol):
    """Vector memory index."""

    async def search(
        self,
        index: str,
        query: str,
        filter: MemoryFilter,
        min_relevance: float = 0.0,
        limit: int = 1,
    ) -> list[MemorySearchResult]:
        """
        Similarity search.

        Args:
            index: Index name
            query: Query text, ``"*"`` matches every document
            filter: Tag filter (chat id and optional memory kind)
            min_relevance: Partitions scoring below are dropped
            limit: Maximum number of documents, -1 for all

        Returns:
            Documents ordered by their best partition, most relevant first
        """
        ...

    async def import_document(self, request: DocumentImportRequest) -> str:
        """Ingest a document and return its id."""
        ...

    async def delete_document(self, document_id: str, index: str) -> None:
        ...

    async def list_indexes(self) -> list[str]:
        ...


@runtime_checkable
class CompletionProvider(Protocol):
    async def complete(
        self, messages: list[dict[str, str]], settings: CompletionSettings
    ) -> CompletionResult:
        ...

    def complete_streaming(
        self, messages: list[dict[str, str]], settings: CompletionSettings
    ) -> AsyncIterator[str]:
        """Yield the response in chunks. The iterator is not restartable."""
        ...


@runtime_checkable
class Planner(Protocol):
    def has_functions(self) -> bool:
        """Whether any plugin functions are available to plan with."""
        ...

    async def create_plan(self, goal: str, context: dict[str, Any]) -> Plan:
        ...

    async def execute_plan(self, plan: Plan, context: dict[str, Any]) -> str:
        ...

    async def run_stepwise(self, goal: str, context: dict[str, Any]) -> StepwiseResult:
        ...


@runtime_checkable
class MessageBroadcaster(Protocol):
    async def broadcast(self, group_id: str, event: str, *payload: Any) -> None:
        """Send ``event`` to every subscriber of ``group_id``."""
        ...


# Broadcast event names
RECEIVE_MESSAGE = "ReceiveMessage"
RECEIVE_MESSAGE_UPDATE = "ReceiveMessageUpdate"
RECEIVE_BOT_RESPONSE_STATUS = "ReceiveBotResponseStatus"
RECEIVE_PLAN_STATE_UPDATE = "ReceivePlanStateUpdate"
