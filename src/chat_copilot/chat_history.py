"""Chat history fitting.

History is read newest-first and accepted greedily while it fits the budget;
the first message that would overflow stops the walk so the included set is
always the most recent contiguous run. Document upload messages are skipped.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from .interfaces import ChatMessageRepository
from .models import AuthorRole, ChatMessage, ChatMessageType
from .token_counter import TokenCounter

CHAT_HISTORY_HEADER = "Chat history:\n"


@dataclass
class HistoryEntry:
    """One accepted message with the block it becomes in the prompt."""

    message: ChatMessage
    role: str
    content: str
    tokens: int


@dataclass
class ChatHistoryWindow:
    """History that fits a budget, oldest first."""

    entries: list[HistoryEntry] = field(default_factory=list)

    @property
    def tokens(self) -> int:
        return sum(entry.tokens for entry in self.entries)

    @property
    def text(self) -> str:
        """History rendered for extraction prompts."""
        if not self.entries:
            return ""
        lines = "\n".join(entry.message.to_formatted_string() for entry in self.entries)
        return f"{CHAT_HISTORY_HEADER}{lines}"

    def to_messages(self) -> list[dict[str, str]]:
        return [{"role": entry.role, "content": entry.content} for entry in self.entries]


def history_block(message: ChatMessage) -> tuple[str, str]:
    """Role and content a message contributes to the meta-prompt.

    Bot replies go in verbatim as assistant turns; everything else is a user
    turn prefixed with its timestamp and author.
    """
    if message.role == AuthorRole.BOT:
        return "assistant", message.content
    return "user", message.to_formatted_string()


class ChatHistoryReader:
    def __init__(self, messages: ChatMessageRepository, token_counter: TokenCounter):
        self._messages = messages
        self._token_counter = token_counter

    async def fit(
        self,
        chat_id: str,
        token_budget: int,
        skip_message_ids: set[str] | None = None,
    ) -> ChatHistoryWindow:
        """Most recent history of ``chat_id`` that fits ``token_budget``.

        Args:
            chat_id: Chat to read
            token_budget: Tokens available, measured per role-tagged block
            skip_message_ids: Messages to leave out (e.g. a pending plan)

        Returns:
            ChatHistoryWindow ordered oldest to newest
        """
        skip_message_ids = skip_message_ids or set()
        remaining = token_budget
        accepted: list[HistoryEntry] = []

        for message in await self._messages.find_by_chat_id(chat_id):
            if message.kind == ChatMessageType.DOCUMENT or message.id in skip_message_ids:
                continue
            role, content = history_block(message)
            tokens = self._token_counter.count_message(role, content)
            if remaining - tokens < 0:
                break
            remaining -= tokens
            accepted.append(HistoryEntry(message, role, content, tokens))

        accepted.reverse()
        logger.debug(
            f"Chat history for {chat_id}: {len(accepted)} messages, "
            f"{token_budget - remaining}/{token_budget} tokens"
        )
        return ChatHistoryWindow(entries=accepted)

    async def extract_text(self, chat_id: str, token_budget: int) -> str:
        """History as ``Chat history:`` text for extraction prompts."""
        window = await self.fit(chat_id, token_budget)
        return window.text
