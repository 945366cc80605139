"""Post-turn semantic memory extraction.

After each turn the model is asked, once per memory kind, to summarize the
conversation into JSON memory items. Items are stored only when no
near-duplicate already exists for the same chat and kind, so re-running
extraction over unchanged history stores nothing new.

The duplicate check is a search followed by a write; two turns running
concurrently may both pass the check and store near-identical memories.
"""

from __future__ import annotations

import asyncio
from datetime import datetime

from loguru import logger

from .chat_history import ChatHistoryReader
from .config import PromptsConfig
from .exceptions import ExtractionParseFailure
from .interfaces import CompletionProvider, MemoryProvider
from .models import (
    CompletionSettings,
    DocumentImportRequest,
    MemoryFilter,
    MemoryItem,
    SemanticChatMemory,
    TurnContext,
    memory_extraction_stage,
)
from .prompts import render
from .token_counter import TokenCounter


class SemanticMemoryExtractor:
    """Extracts, deduplicates and stores memories for every memory kind."""

    def __init__(
        self,
        completion: CompletionProvider,
        memory_provider: MemoryProvider,
        history: ChatHistoryReader,
        token_counter: TokenCounter,
        prompts: PromptsConfig,
    ):
        self._completion = completion
        self._memory_provider = memory_provider
        self._history = history
        self._token_counter = token_counter
        self._prompts = prompts

    def _settings(self) -> CompletionSettings:
        params = self._prompts.response
        return CompletionSettings(
            max_tokens=self._prompts.response_token_limit,
            temperature=params.temperature,
            top_p=params.top_p,
            presence_penalty=params.presence_penalty,
            frequency_penalty=params.frequency_penalty,
        )

    async def extract(self, chat_id: str, turn: TurnContext) -> None:
        """Run extraction for every memory kind; never raises except on cancellation."""
        stored_total = 0
        for memory_kind, memory_prompt in self._prompts.memory_map.items():
            try:
                memory = await self._extract_kind(chat_id, turn, memory_kind, memory_prompt)
            except asyncio.CancelledError:
                raise
            except ExtractionParseFailure as e:
                logger.info(f"{e}. Skipping {memory_kind}")
                logger.debug(f"Raw extraction response: {e.raw[:500]}")
                continue
            except Exception as e:
                logger.warning(f"Unable to extract {memory_kind} for chat {chat_id}: {e}")
                continue

            for item in memory.items:
                if await self._store_if_novel(chat_id, item):
                    stored_total += 1

        logger.info(f"Memory extraction for chat {chat_id} stored {stored_total} new items")

    async def _extract_kind(
        self, chat_id: str, turn: TurnContext, memory_kind: str, memory_prompt: str
    ) -> SemanticChatMemory:
        history_budget = (
            self._prompts.completion_token_limit
            - self._prompts.response_token_limit
            - self._token_counter.count(memory_prompt)
        )
        chat_history = await self._history.extract_text(chat_id, max(0, history_budget))

        variables = turn.template_variables()
        variables.update(
            {
                "memory_name": memory_kind,
                "format": self._prompts.memory_format,
                "knowledge_cutoff": self._prompts.knowledge_cutoff_date,
                "current_date": datetime.now().strftime("%A, %B %d, %Y"),
                "chat_history": chat_history,
            }
        )
        rendered = render(memory_prompt, variables)

        messages = [{"role": "system", "content": rendered}]
        result = await self._completion.complete(messages, self._settings())

        usage = result.total_tokens
        if usage is None:
            usage = self._token_counter.count_messages(messages) + self._token_counter.count(result.text)
        turn.record_usage(memory_extraction_stage(memory_kind), usage)

        return SemanticChatMemory.from_json(memory_kind, result.text)

    async def _store_if_novel(self, chat_id: str, item: MemoryItem) -> bool:
        """Store ``item`` unless a near-duplicate exists; failures are logged."""
        index = self._prompts.memory_index_name
        try:
            existing = await self._memory_provider.search(
                index,
                item.text,
                MemoryFilter(chat_id=chat_id, memory_kind=item.kind),
                min_relevance=self._prompts.relevance_upper,
                limit=1,
            )
            if existing:
                logger.debug(f"Skipping duplicate {item.kind} memory: {item.text[:80]}")
                return False

            await self._memory_provider.import_document(
                DocumentImportRequest.for_memory(index, chat_id, item.kind, item.text)
            )
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Unexpected failure storing {item.kind} memory in '{index}': {e}")
            return False
