"""In-memory repositories.

Suitable for local runs and tests; nothing is persisted across processes.
"""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel

from ..models import ChatMessage, ChatSession

T = TypeVar("T", bound=BaseModel)


class VolatileRepository(Generic[T]):
    """Dictionary backed repository keyed by the entity ``id``."""

    def __init__(self):
        self._entities: dict[str, T] = {}

    def __len__(self) -> int:
        return len(self._entities)

    async def find_by_id(self, entity_id: str) -> T:
        entity = self._entities.get(entity_id)
        if entity is None:
            raise KeyError(f"Entity {entity_id} not found")
        return entity

    async def try_find_by_id(self, entity_id: str) -> T | None:
        return self._entities.get(entity_id)

    async def create(self, entity: T) -> None:
        entity_id = getattr(entity, "id")
        if not entity_id:
            raise ValueError("Entity id must not be empty")
        if entity_id in self._entities:
            raise ValueError(f"Entity {entity_id} already exists")
        self._entities[entity_id] = entity

    async def upsert(self, entity: T) -> None:
        self._entities[getattr(entity, "id")] = entity

    async def delete(self, entity: T) -> None:
        self._entities.pop(getattr(entity, "id"), None)


class VolatileChatSessionRepository(VolatileRepository[ChatSession]):
    pass


class VolatileChatMessageRepository(VolatileRepository[ChatMessage]):
    async def find_by_chat_id(
        self, chat_id: str, skip: int = 0, count: int = -1
    ) -> list[ChatMessage]:
        messages = [m for m in self._entities.values() if m.chat_id == chat_id]
        # Insertion order breaks timestamp ties
        ordered = [
            m
            for _, m in sorted(
                enumerate(messages), key=lambda pair: (pair[1].timestamp, pair[0]), reverse=True
            )
        ]
        ordered = ordered[skip:]
        if count >= 0:
            ordered = ordered[:count]
        return ordered
