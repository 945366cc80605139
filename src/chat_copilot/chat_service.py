"""Chat service facade.

Runs one chat turn end to end: persist the user's message, settle a pending
plan, assemble the prompt, deliver the bot response and harvest memories.
The user's message is saved before anything else so it survives every later
failure, including a turn timeout.
"""

from __future__ import annotations

import asyncio

from loguru import logger
from pydantic import BaseModel, Field

from .budget import TokenBudgetAllocator
from .chat_history import ChatHistoryReader
from .config import CopilotConfig
from .context_assembler import ContextAssembler
from .exceptions import (
    ChatMessageNotFound,
    ChatSessionNotFound,
    MigrationInProgress,
    OperationTimedOut,
    PlannerFailure,
)
from .external_information import ExternalInformation
from .extraction import SemanticMemoryExtractor
from .interfaces import (
    RECEIVE_PLAN_STATE_UPDATE,
    ChatMessageRepository,
    ChatSessionRepository,
    CompletionProvider,
    MemoryProvider,
    MessageBroadcaster,
    Planner,
)
from .logging_setup import configure_logging
from .migration import MigrationStatus, MigrationStatusCache
from .models import (
    BotResponsePrompt,
    ChatMessage,
    ChatMessageType,
    ChatSession,
    MemoryFilter,
    PlanState,
    ProposedPlan,
    TurnContext,
    empty_token_usage,
)
from .prompts import REJECTED_PLAN_RESPONSE
from .relevance import RelevanceThresholdPolicy
from .retrieval import MemoryRetriever
from .streaming import ResponseStreamer
from .token_counter import TokenCounter

WILDCARD_QUERY = "*"


class ChatRequest(BaseModel):
    """One inbound chat turn."""

    chat_id: str
    user_id: str
    user_name: str = ""
    message: str
    message_type: ChatMessageType = ChatMessageType.MESSAGE
    # Set when the user answers a previously proposed plan
    plan: ProposedPlan | None = None
    message_id: str | None = None
    extras: dict[str, str] = Field(default_factory=dict)


class ChatService:
    """Entry point for chat turns and chat memory maintenance."""

    def __init__(
        self,
        config: CopilotConfig,
        sessions: ChatSessionRepository,
        messages: ChatMessageRepository,
        memory_provider: MemoryProvider,
        assembler: ContextAssembler,
        streamer: ResponseStreamer,
        extractor: SemanticMemoryExtractor,
        external: ExternalInformation,
        allocator: TokenBudgetAllocator,
        migration: MigrationStatusCache | None = None,
    ):
        self._config = config
        self._sessions = sessions
        self._messages = messages
        self._memory_provider = memory_provider
        self._assembler = assembler
        self._streamer = streamer
        self._extractor = extractor
        self._external = external
        self._allocator = allocator
        self._migration = migration

    @classmethod
    def create(
        cls,
        config: CopilotConfig,
        sessions: ChatSessionRepository,
        messages: ChatMessageRepository,
        memory_provider: MemoryProvider,
        completion: CompletionProvider,
        broadcaster: MessageBroadcaster,
        planner: Planner | None = None,
        migration: MigrationStatusCache | None = None,
        token_counter: TokenCounter | None = None,
        configure_logs: bool = False,
    ) -> "ChatService":
        """Wire a service and its components from configuration.

        With ``configure_logs`` the loguru sinks are reset to
        ``config.service.log_level`` (and ``log_file`` when set); leave it off
        when the host application owns logging.
        """
        if configure_logs:
            configure_logging(config.service.log_level, config.service.log_file)
        prompts = config.prompts
        token_counter = token_counter or TokenCounter()
        allocator = TokenBudgetAllocator(
            prompts, tools_enabled=planner is not None and planner.has_functions()
        )
        history = ChatHistoryReader(messages, token_counter)
        retriever = MemoryRetriever(
            sessions,
            memory_provider,
            RelevanceThresholdPolicy(prompts),
            token_counter,
            prompts,
        )
        external = ExternalInformation(planner, prompts, config.planner, token_counter)
        streamer = ResponseStreamer(completion, messages, broadcaster, token_counter, prompts)
        assembler = ContextAssembler(
            sessions,
            messages,
            completion,
            retriever,
            history,
            external,
            streamer,
            allocator,
            token_counter,
            prompts,
            config.planner,
        )
        extractor = SemanticMemoryExtractor(
            completion, memory_provider, history, token_counter, prompts
        )
        return cls(
            config,
            sessions,
            messages,
            memory_provider,
            assembler,
            streamer,
            extractor,
            external,
            allocator,
            migration,
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(
        self,
        title: str,
        system_description: str = "",
        memory_balance: float = 0.5,
    ) -> tuple[ChatSession, ChatMessage]:
        """Create a chat session with the configured greeting as first message."""
        RelevanceThresholdPolicy.validate_balance(memory_balance)
        session = ChatSession(
            title=title,
            system_description=system_description,
            memory_balance=memory_balance,
        )
        await self._sessions.create(session)

        greeting = ChatMessage.create_bot_response(
            session.id,
            self._config.prompts.initial_bot_message,
            token_usage=empty_token_usage(),
        )
        await self._messages.create(greeting)
        logger.info(f"Created chat session {session.id} '{title}'")
        return session, greeting

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def chat(self, request: ChatRequest) -> ChatMessage:
        """Run one chat turn and return the bot's message.

        Raises:
            ChatSessionNotFound: The chat does not exist.
            InvalidMemoryBalance: The chat's memory balance is out of range.
            MigrationInProgress: Chat memory is being migrated.
            OperationTimedOut: The turn exceeded ``turn_timeout_seconds``.
        """
        if self._migration is not None:
            if await self._migration.status() == MigrationStatus.MIGRATING:
                raise MigrationInProgress("Chat memory migration in progress")

        timeout = self._config.service.turn_timeout_seconds
        if timeout is None:
            return await self._run_turn(request)

        try:
            async with asyncio.timeout(timeout) as deadline:
                return await self._run_turn(request)
        except TimeoutError:
            # A collaborator's own timeout inside the turn is not a turn timeout
            if not deadline.expired():
                raise
            logger.warning(f"Chat turn for {request.chat_id} timed out after {timeout}s")
            raise OperationTimedOut(request.chat_id, timeout) from None

    async def _run_turn(self, request: ChatRequest) -> ChatMessage:
        chat_id = request.chat_id
        session = await self._sessions.try_find_by_id(chat_id)
        if session is None:
            raise ChatSessionNotFound(chat_id)
        RelevanceThresholdPolicy.validate_balance(session.memory_balance)

        turn = TurnContext(
            chat_id=chat_id,
            user_id=request.user_id,
            user_name=request.user_name,
            message=request.message,
            message_type=request.message_type,
            system_description=session.system_description,
            extras=dict(request.extras),
        )

        await self._streamer.update_status(chat_id, "Saving user message to chat history")
        user_message = await self._assembler.save_user_message(
            chat_id,
            request.user_id,
            request.user_name,
            request.message,
            request.message_type,
        )

        if request.plan is not None:
            if request.message_id:
                await self._update_plan_state(chat_id, request.message_id, request.plan.state)

            if request.plan.state == PlanState.REJECTED:
                message = await self._streamer.respond_directly(
                    turn,
                    REJECTED_PLAN_RESPONSE,
                    prompt_view=BotResponsePrompt(),
                    token_usage=empty_token_usage(),
                )
                await self._streamer.update_status(chat_id, "")
                return message

            if request.plan.state == PlanState.APPROVED:
                turn = turn.with_updates(plan_user_intent=request.plan.user_intent or None)
                await self._streamer.update_status(chat_id, "Executing plan")
                try:
                    plan_result = await self._external.execute_plan(
                        request.plan.plan,
                        turn,
                        self._allocator.external_information_budget(
                            self._allocator.max_request_budget()
                        ),
                    )
                except PlannerFailure as e:
                    logger.warning(f"Plan execution failed for chat {chat_id}: {e}")
                    message = await self._streamer.respond_directly(
                        turn,
                        f"Oops, I encountered an error while executing the plan. "
                        f"Please try again or rephrase your request.\n\nError: {e}",
                        prompt_view=BotResponsePrompt(),
                        token_usage=empty_token_usage(),
                    )
                    await self._streamer.update_status(chat_id, "")
                    return message
                turn = turn.with_updates(plan_result=plan_result)

        skip_message_ids = None
        if request.plan is not None and request.message_id:
            # The answered proposal is plan JSON; its outcome reaches the prompt as tool output
            skip_message_ids = {request.message_id}
        result = await self._assembler.assemble(turn, user_message, skip_message_ids)
        if result.short_circuited:
            await self._streamer.update_status(chat_id, "")
            return result.plan_message

        turn = result.turn
        if self._external.use_stepwise_result_as_bot_response(result.external):
            await self._streamer.update_status(chat_id, "Using stepwise planner result as response")
            message = await self._streamer.respond_directly(
                turn,
                result.external.stepwise_metadata.final_answer,
                prompt_view=result.prompt_view,
                citations=result.citations,
            )
        else:
            await self._streamer.update_status(chat_id, "Generating bot response")
            message = await self._streamer.stream(
                turn, result.assembly, result.prompt_view, result.citations
            )

        await self._streamer.update_status(chat_id, "Extracting semantic memories")
        await self._extractor.extract(chat_id, turn)
        message = await self._streamer.update_token_usage(message, turn.token_usage)

        await self._streamer.update_status(chat_id, "")
        return message

    async def _update_plan_state(self, chat_id: str, message_id: str, state: PlanState) -> None:
        message = await self._messages.try_find_by_id(message_id)
        if message is None or message.chat_id != chat_id:
            raise ChatMessageNotFound(message_id, chat_id)

        try:
            proposed = ProposedPlan.model_validate_json(message.content)
        except ValueError as e:
            logger.warning(f"Message {message_id} does not hold a plan: {e}")
            return

        proposed.state = state
        message.content = proposed.model_dump_json(by_alias=True)
        await self._messages.upsert(message)
        await self._streamer.broadcast(
            chat_id, RECEIVE_PLAN_STATE_UPDATE, chat_id, message_id, state.value
        )

    # ------------------------------------------------------------------
    # Memory maintenance
    # ------------------------------------------------------------------

    async def remove_chat_memories(self, chat_id: str) -> int:
        """Delete every memory and document stored for ``chat_id``."""
        index = self._config.prompts.memory_index_name
        results = await self._memory_provider.search(
            index,
            WILDCARD_QUERY,
            MemoryFilter(chat_id=chat_id),
            min_relevance=0.0,
            limit=-1,
        )
        await asyncio.gather(
            *(self._memory_provider.delete_document(r.document_id, index) for r in results)
        )
        logger.info(f"Removed {len(results)} memory documents for chat {chat_id}")
        return len(results)

