"""Bot response delivery.

Two paths produce a bot message: :meth:`ResponseStreamer.stream` grows the
message chunk by chunk from the completion provider, and
:meth:`ResponseStreamer.respond_directly` publishes content the caller
already has. Both emit ``ReceiveMessage`` on creation and a final
``ReceiveMessageUpdate`` before the message is persisted.
"""

from __future__ import annotations

import asyncio
from typing import Any

from loguru import logger

from .config import PromptsConfig
from .interfaces import (
    RECEIVE_BOT_RESPONSE_STATUS,
    RECEIVE_MESSAGE,
    RECEIVE_MESSAGE_UPDATE,
    ChatMessageRepository,
    CompletionProvider,
    MessageBroadcaster,
)
from .models import (
    BotResponsePrompt,
    ChatMessage,
    ChatMessageType,
    Citation,
    CompletionSettings,
    PromptAssembly,
    TokenUsageStage,
    TurnContext,
)
from .token_counter import TokenCounter


class ResponseStreamer:
    def __init__(
        self,
        completion: CompletionProvider,
        messages: ChatMessageRepository,
        broadcaster: MessageBroadcaster,
        token_counter: TokenCounter,
        prompts: PromptsConfig,
    ):
        self._completion = completion
        self._messages = messages
        self._broadcaster = broadcaster
        self._token_counter = token_counter
        self._prompts = prompts

    def response_settings(self) -> CompletionSettings:
        params = self._prompts.response
        return CompletionSettings(
            max_tokens=self._prompts.response_token_limit,
            temperature=params.temperature,
            top_p=params.top_p,
            presence_penalty=params.presence_penalty,
            frequency_penalty=params.frequency_penalty,
        )

    async def broadcast(self, group_id: str, event: str, *payload: Any) -> None:
        """Publish to subscribers; delivery failures are logged, never raised."""
        try:
            await self._broadcaster.broadcast(group_id, event, *payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Failed to broadcast {event} to {group_id}: {e}")

    async def update_status(self, chat_id: str, status: str) -> None:
        await self.broadcast(chat_id, RECEIVE_BOT_RESPONSE_STATUS, chat_id, status)

    async def stream(
        self,
        turn: TurnContext,
        assembly: PromptAssembly,
        prompt_view: BotResponsePrompt,
        citations: list[Citation] | None = None,
    ) -> ChatMessage:
        """Generate the bot response for ``assembly`` and stream it to the chat."""
        message = ChatMessage.create_bot_response(
            turn.chat_id,
            "",
            prompt=prompt_view.model_dump_json(by_alias=True),
            citations=citations,
        )
        await self.broadcast(turn.chat_id, RECEIVE_MESSAGE, message.to_wire())

        turn.record_usage(TokenUsageStage.META_PROMPT.value, assembly.total_tokens)
        chunks = 0
        async for chunk in self._completion.complete_streaming(
            assembly.to_messages(), self.response_settings()
        ):
            if not chunk:
                continue
            message.content += chunk
            chunks += 1
            await self.broadcast(turn.chat_id, RECEIVE_MESSAGE_UPDATE, message.to_wire())

        turn.record_usage(
            TokenUsageStage.RESPONSE_COMPLETION.value,
            self._token_counter.count(message.content),
        )
        logger.info(
            f"Streamed bot response for chat {turn.chat_id} "
            f"({chunks} chunks, {len(message.content)} chars)"
        )
        return await self._finalize(message, turn.token_usage)

    async def respond_directly(
        self,
        turn: TurnContext,
        content: str,
        prompt_view: BotResponsePrompt | None = None,
        citations: list[Citation] | None = None,
        token_usage: dict[str, int] | None = None,
        kind: ChatMessageType = ChatMessageType.MESSAGE,
    ) -> ChatMessage:
        """Publish a bot message whose content is already known.

        ``token_usage`` overrides the turn's usage, e.g. an all-zero breakdown
        for responses that never called the model.
        """
        message = ChatMessage.create_bot_response(
            turn.chat_id,
            content,
            prompt=prompt_view.model_dump_json(by_alias=True) if prompt_view else "",
            citations=citations,
            kind=kind,
        )
        await self.broadcast(turn.chat_id, RECEIVE_MESSAGE, message.to_wire())
        usage = token_usage if token_usage is not None else turn.token_usage
        return await self._finalize(message, usage)

    async def update_token_usage(
        self, message: ChatMessage, token_usage: dict[str, int]
    ) -> ChatMessage:
        """Replace a finished message's usage breakdown and republish it."""
        message.token_usage = dict(token_usage)
        await self._messages.upsert(message)
        await self.broadcast(message.chat_id, RECEIVE_MESSAGE_UPDATE, message.to_wire())
        return message

    async def _finalize(
        self, message: ChatMessage, token_usage: dict[str, int]
    ) -> ChatMessage:
        message.token_usage = dict(token_usage)
        await self.broadcast(message.chat_id, RECEIVE_MESSAGE_UPDATE, message.to_wire())
        await self._messages.upsert(message)
        return message
