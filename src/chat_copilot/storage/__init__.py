"""In-process storage backends.

Volatile repositories and a vector memory provider for local runs and tests.
"""

from __future__ import annotations

from .embedding import Embedder, EmbeddingService, HashingEmbedder
from .memory_store import InProcessMemoryProvider
from .volatile import (
    VolatileChatMessageRepository,
    VolatileChatSessionRepository,
    VolatileRepository,
)

__all__ = [
    "Embedder",
    "EmbeddingService",
    "HashingEmbedder",
    "InProcessMemoryProvider",
    "VolatileRepository",
    "VolatileChatMessageRepository",
    "VolatileChatSessionRepository",
]
