"""Embedding services for the in-process memory store.

:class:`EmbeddingService` wraps sentence-transformers and lazy-loads the model
on first use. :class:`HashingEmbedder` is a dependency-light embedder based on
hashed word counts, useful for local runs and deterministic tests.
"""

from __future__ import annotations

import hashlib
import re
from typing import Protocol, runtime_checkable

import numpy as np
from loguru import logger

from ..config import EmbeddingConfig

_WORD_PATTERN = re.compile(r"\w+", re.UNICODE)


@runtime_checkable
class Embedder(Protocol):
    @property
    def dimension(self) -> int:
        ...

    def encode(self, texts: list[str]) -> np.ndarray:
        """Encode texts into L2-normalized vectors, one row per text."""
        ...


class EmbeddingService:
    """Embedding service using sentence-transformers.

    Features:
    - Lazy model loading (only when first embedding is requested)
    - Batch encoding with normalized output
    """

    def __init__(self, config: EmbeddingConfig | None = None):
        self._config = config or EmbeddingConfig()
        self._model = None
        self._dimension = self._config.dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    def _ensure_model(self) -> None:
        """Lazy-load the sentence-transformers model."""
        if self._model is not None:
            return

        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise ImportError(
                "sentence-transformers is required for EmbeddingService. "
                "Install with: pip install chat-copilot-core[embeddings]"
            )

        logger.info(f"Loading embedding model: {self._config.model}")
        self._model = SentenceTransformer(
            self._config.model,
            trust_remote_code=self._config.trust_remote_code,
        )
        self._dimension = self._model.get_sentence_embedding_dimension()
        logger.info(f"Embedding model loaded: dim={self._dimension}")

    def encode(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self._dimension), dtype=np.float32)

        self._ensure_model()
        embeddings = self._model.encode(
            texts,
            batch_size=32,
            show_progress_bar=False,
            normalize_embeddings=True,
        )
        return np.asarray(embeddings, dtype=np.float32)


class HashingEmbedder:
    """Bag-of-words embedder using the hashing trick.

    Identical texts map to identical vectors and texts sharing most of their
    words score close to 1.0 under cosine similarity.
    """

    def __init__(self, dimension: int = 256):
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    def _bucket(self, word: str) -> int:
        digest = hashlib.blake2b(word.encode("utf-8"), digest_size=8).digest()
        return int.from_bytes(digest, "little") % self._dimension

    def encode(self, texts: list[str]) -> np.ndarray:
        vectors = np.zeros((len(texts), self._dimension), dtype=np.float32)
        for row, text in enumerate(texts):
            for word in _WORD_PATTERN.findall(text.lower()):
                vectors[row, self._bucket(word)] += 1.0
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        return vectors / norms


def cosine_similarity(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against every row of ``matrix``.

    Both sides are expected to be normalized already.
    """
    if matrix.size == 0:
        return np.zeros(0, dtype=np.float32)
    return matrix @ query
