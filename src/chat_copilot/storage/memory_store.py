"""In-process vector memory provider.

Documents are split into token-bounded partitions, embedded with an
:class:`~chat_copilot.storage.embedding.Embedder` and scored by cosine
similarity at query time. Meant for local runs and tests, not for large
corpora.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import numpy as np
from loguru import logger

from ..models import (
    DocumentImportRequest,
    MemoryFilter,
    MemoryPartition,
    MemorySearchResult,
)
from ..token_counter import TokenCounter
from .embedding import Embedder, cosine_similarity

WILDCARD_QUERY = "*"


@dataclass
class _StoredDocument:
    document_id: str
    index: str
    source_name: str
    tags: dict[str, str]
    partitions: list[str]
    vectors: np.ndarray = field(repr=False)

    def matches(self, tags: dict[str, str]) -> bool:
        return all(self.tags.get(key) == value for key, value in tags.items())


class InProcessMemoryProvider:
    """Memory provider keeping every document in process memory."""

    def __init__(
        self,
        embedder: Embedder,
        token_counter: TokenCounter | None = None,
        partition_size_tokens: int = 500,
    ):
        self._embedder = embedder
        self._token_counter = token_counter or TokenCounter(encoding=None)
        self._partition_size = partition_size_tokens
        self._documents: dict[tuple[str, str], _StoredDocument] = {}

    def document_count(self, index: str | None = None) -> int:
        return sum(1 for key in self._documents if index is None or key[0] == index)

    async def list_indexes(self) -> list[str]:
        return sorted({index for index, _ in self._documents})

    async def import_document(self, request: DocumentImportRequest) -> str:
        partitions: list[str] = []
        for uploaded in request.files:
            partitions.extend(self._partition(uploaded.content))
        if not partitions:
            raise ValueError(f"Document {request.document_id} has no content")

        vectors = await asyncio.to_thread(self._embedder.encode, partitions)
        source_name = request.files[0].name if request.files else request.document_id
        self._documents[(request.index, request.document_id)] = _StoredDocument(
            document_id=request.document_id,
            index=request.index,
            source_name=source_name,
            tags=dict(request.tags),
            partitions=partitions,
            vectors=np.asarray(vectors, dtype=np.float32),
        )
        logger.debug(
            f"Imported document {request.document_id} into '{request.index}' "
            f"({len(partitions)} partitions, tags={request.tags})"
        )
        return request.document_id

    async def delete_document(self, document_id: str, index: str) -> None:
        if self._documents.pop((index, document_id), None) is None:
            logger.debug(f"Document {document_id} not found in '{index}'")

    async def search(
        self,
        index: str,
        query: str,
        filter: MemoryFilter,
        min_relevance: float = 0.0,
        limit: int = 1,
    ) -> list[MemorySearchResult]:
        tags = filter.to_tags()
        candidates = [
            doc
            for (doc_index, _), doc in self._documents.items()
            if doc_index == index and doc.matches(tags)
        ]
        if not candidates:
            return []

        query_vector = None
        if query.strip() != WILDCARD_QUERY:
            encoded = await asyncio.to_thread(self._embedder.encode, [query])
            query_vector = np.asarray(encoded, dtype=np.float32)[0]

        results: list[MemorySearchResult] = []
        for doc in candidates:
            if query_vector is None:
                scores = np.ones(len(doc.partitions), dtype=np.float32)
            else:
                scores = cosine_similarity(query_vector, doc.vectors)

            partitions = [
                MemoryPartition(text=text, relevance=float(score), partition_number=i)
                for i, (text, score) in enumerate(zip(doc.partitions, scores))
                if float(score) >= min_relevance
            ]
            if not partitions:
                continue
            partitions.sort(key=lambda p: p.relevance, reverse=True)
            results.append(
                MemorySearchResult(
                    document_id=doc.document_id,
                    index=doc.index,
                    link=doc.document_id,
                    source_name=doc.source_name,
                    tags={key: [value] for key, value in doc.tags.items()},
                    partitions=partitions,
                )
            )

        results.sort(key=lambda r: r.partitions[0].relevance, reverse=True)
        if limit >= 0:
            results = results[:limit]
        return results

    def _partition(self, content: str) -> list[str]:
        """Split text into chunks of at most ``partition_size_tokens``."""
        content = content.strip()
        if not content:
            return []
        if self._token_counter.count(content) <= self._partition_size:
            return [content]

        chunks: list[str] = []
        current: list[str] = []
        for word in content.split():
            candidate = " ".join(current + [word])
            if current and self._token_counter.count(candidate) > self._partition_size:
                chunks.append(" ".join(current))
                current = [word]
            else:
                current.append(word)
        if current:
            chunks.append(" ".join(current))
        return chunks
