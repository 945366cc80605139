"""Semantic memory retrieval for prompt assembly.

Searches every memory kind of a chat concurrently, ranks all hits globally
by relevance and keeps the most relevant ones that fit the token budget.
Selection is precedence-by-relevance: the walk stops at the first hit that
does not fit rather than looking for shorter ones further down.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from loguru import logger

from .config import PromptsConfig
from .exceptions import ChatSessionNotFound, MemoryProviderUnavailable
from .interfaces import ChatSessionRepository, MemoryProvider
from .models import Citation, MemoryFilter, MemoryPartition, MemorySearchResult
from .prompts import (
    DOCUMENT_MEMORIES_HEADER,
    PAST_MEMORIES_HEADER,
    format_document_snippet,
    format_memory_line,
)
from .relevance import RelevanceThresholdPolicy
from .token_counter import TokenCounter


@dataclass
class MemoryCandidate:
    """A scored passage from one search hit."""

    memory_kind: str
    document: MemorySearchResult
    partition: MemoryPartition

    @property
    def relevance(self) -> float:
        return self.partition.relevance

    @property
    def passage(self) -> str:
        return self.partition.text.strip()


class MemoryRetriever:
    """Retrieves formatted memories and document citations under a token budget."""

    def __init__(
        self,
        sessions: ChatSessionRepository,
        memory_provider: MemoryProvider,
        policy: RelevanceThresholdPolicy,
        token_counter: TokenCounter,
        prompts: PromptsConfig,
        search_limit: int = 100,
    ):
        self._sessions = sessions
        self._memory_provider = memory_provider
        self._policy = policy
        self._token_counter = token_counter
        self._prompts = prompts
        self._search_limit = search_limit

    @property
    def memory_kinds(self) -> list[str]:
        """Kinds searched per turn: documents first, then the memory map."""
        return [self._prompts.document_memory_name, *self._prompts.memory_map.keys()]

    async def retrieve(
        self, query: str, chat_id: str, token_budget: int
    ) -> tuple[str, dict[str, Citation]]:
        """Retrieve memories relevant to ``query``.

        Args:
            query: Search text, usually the extracted user intent
            chat_id: Chat whose memories are searched
            token_budget: Upper bound on ``count(formatted_text)``

        Returns:
            Formatted memory text and a link -> citation map covering
            document memories only

        Raises:
            ChatSessionNotFound: The chat does not exist.
            InvalidMemoryBalance: The chat's memory balance is out of range.
        """
        session = await self._sessions.try_find_by_id(chat_id)
        if session is None:
            raise ChatSessionNotFound(chat_id)

        thresholds = self._policy.thresholds(self.memory_kinds, session.memory_balance)
        if token_budget <= 0:
            logger.debug(f"No memory budget for chat {chat_id}, skipping retrieval")
            return "", {}

        searches = await asyncio.gather(
            *(
                self._search_kind(query, chat_id, memory_kind, min_relevance)
                for memory_kind, min_relevance in thresholds.items()
            )
        )
        candidates = [candidate for hits in searches for candidate in hits]

        # sort() is stable, so ties keep search order
        candidates.sort(key=lambda c: c.relevance, reverse=True)
        accepted = self._select(candidates, token_budget)

        text = self._format(accepted)
        while accepted and self._token_counter.count(text) > token_budget:
            accepted.pop()
            text = self._format(accepted)

        citations: dict[str, Citation] = {}
        for candidate in accepted:
            if candidate.memory_kind != self._prompts.document_memory_name:
                continue
            link = candidate.document.link
            if link not in citations:
                citations[link] = candidate.document.to_citation(candidate.partition)

        logger.info(
            f"Retrieved {len(accepted)}/{len(candidates)} memories for chat {chat_id} "
            f"({self._token_counter.count(text)}/{token_budget} tokens, "
            f"{len(citations)} citations)"
        )
        return text, citations

    async def _search_kind(
        self, query: str, chat_id: str, memory_kind: str, min_relevance: float
    ) -> list[MemoryCandidate]:
        try:
            results = await self._memory_provider.search(
                self._prompts.memory_index_name,
                query,
                MemoryFilter(chat_id=chat_id, memory_kind=memory_kind),
                min_relevance=min_relevance,
                limit=self._search_limit,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = MemoryProviderUnavailable(memory_kind, str(e))
            logger.warning(f"{error}; continuing without {memory_kind}")
            return []

        return [
            MemoryCandidate(memory_kind, result, partition)
            for result in results
            for partition in result.partitions
            if partition.text.strip()
        ]

    def _entry_cost(self, candidate: MemoryCandidate) -> int:
        if candidate.memory_kind == self._prompts.document_memory_name:
            entry = format_document_snippet(
                candidate.document.source_name,
                candidate.document.link,
                candidate.passage,
            )
        else:
            entry = format_memory_line(candidate.memory_kind, candidate.passage)
        return self._token_counter.count(entry)

    def _select(
        self, candidates: list[MemoryCandidate], token_budget: int
    ) -> list[MemoryCandidate]:
        remaining = token_budget
        accepted: list[MemoryCandidate] = []
        for candidate in candidates:
            tokens = self._entry_cost(candidate)
            if remaining - tokens > 0:
                remaining -= tokens
                accepted.append(candidate)
            else:
                break
        return accepted

    def _format(self, accepted: list[MemoryCandidate]) -> str:
        """Render accepted candidates grouped by kind in memory-map order."""
        document_kind = self._prompts.document_memory_name

        memory_lines = []
        for memory_kind in self._prompts.memory_map:
            memory_lines.extend(
                format_memory_line(memory_kind, c.passage)
                for c in accepted
                if c.memory_kind == memory_kind
            )

        snippets = [
            format_document_snippet(c.document.source_name, c.document.link, c.passage)
            for c in accepted
            if c.memory_kind == document_kind
        ]

        sections = []
        if memory_lines:
            sections.append(PAST_MEMORIES_HEADER + "".join(memory_lines))
        if snippets:
            sections.append(DOCUMENT_MEMORIES_HEADER + "".join(snippets))
        return "\n".join(sections).strip()
