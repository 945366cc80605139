"""Context assembler for the chat copilot.

Builds the meta-prompt for one turn within a strict token budget. Stages run
in a fixed order and every optional stage degrades to "no block" on failure:

1. persona (fatal on failure)
2. audience extraction (skipped for the anonymous user)
3. user intent extraction
4. memory retrieval, ``remaining * memories_response_context_weight``
5. external information, ``remaining * external_information_context_weight``;
   a proposed plan ends the turn here
6. chat history, newest first, with whatever budget is left

Blocks are emitted as persona, audience, intent, memory, history and finally
tool output, so the most grounded information comes last.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from loguru import logger

from .budget import TokenBudgetAllocator
from .chat_history import ChatHistoryReader, ChatHistoryWindow
from .config import PlannerConfig, PromptsConfig
from .exceptions import ChatSessionNotFound
from .external_information import ExternalInformation, ExternalInformationResult
from .interfaces import ChatMessageRepository, ChatSessionRepository, CompletionProvider
from .models import (
    BotResponsePrompt,
    ChatMessage,
    ChatMessageType,
    Citation,
    CompletionResult,
    CompletionSettings,
    PromptAssembly,
    PromptBlock,
    PromptStage,
    TokenBudget,
    TokenUsageStage,
    TurnContext,
)
from .prompts import render
from .retrieval import MemoryRetriever
from .stages import safe_invoke, with_stage_name
from .streaming import ResponseStreamer
from .token_counter import TokenCounter

# Keys of TurnContext.budgets
BUDGET_MEMORY = "memory"
BUDGET_EXTERNAL_INFORMATION = "externalInformation"
BUDGET_HISTORY = "history"


@dataclass
class AssemblyResult:
    """Outcome of :meth:`ContextAssembler.assemble`.

    When the planner proposed a plan, ``plan_message`` holds the persisted
    proposal and no completion should be requested for this turn.
    """

    turn: TurnContext
    assembly: PromptAssembly
    prompt_view: BotResponsePrompt
    citations: list[Citation] = field(default_factory=list)
    external: ExternalInformationResult = field(default_factory=ExternalInformationResult)
    plan_message: ChatMessage | None = None

    @property
    def short_circuited(self) -> bool:
        return self.plan_message is not None


class ContextAssembler:
    """Assembles the meta-prompt for a chat turn."""

    def __init__(
        self,
        sessions: ChatSessionRepository,
        messages: ChatMessageRepository,
        completion: CompletionProvider,
        retriever: MemoryRetriever,
        history: ChatHistoryReader,
        external: ExternalInformation,
        streamer: ResponseStreamer,
        allocator: TokenBudgetAllocator,
        token_counter: TokenCounter,
        prompts: PromptsConfig,
        planner_config: PlannerConfig,
    ):
        self._sessions = sessions
        self._messages = messages
        self._completion = completion
        self._retriever = retriever
        self._history = history
        self._external = external
        self._streamer = streamer
        self._allocator = allocator
        self._token_counter = token_counter
        self._prompts = prompts
        self._planner_config = planner_config

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def save_user_message(
        self,
        chat_id: str,
        user_id: str,
        user_name: str,
        content: str,
        message_type: ChatMessageType = ChatMessageType.MESSAGE,
    ) -> ChatMessage:
        """Persist the incoming message.

        Raises:
            ChatSessionNotFound: The chat does not exist.
        """
        if await self._sessions.try_find_by_id(chat_id) is None:
            raise ChatSessionNotFound(chat_id)

        message = ChatMessage(
            chat_id=chat_id,
            author_id=user_id,
            author_name=user_name,
            content=content,
            kind=message_type,
        )
        await self._messages.create(message)
        return message

    async def assemble(
        self,
        turn: TurnContext,
        user_message: ChatMessage,
        skip_message_ids: set[str] | None = None,
    ) -> AssemblyResult:
        """Build the meta-prompt for ``turn``.

        ``turn.plan_result`` (an executed plan) replaces planner acquisition
        and ``turn.plan_user_intent`` replaces intent extraction. Messages in
        ``skip_message_ids`` are left out of the chat history. The budgets
        granted to the memory, external information and history stages are
        recorded in ``turn.budgets``.

        Raises:
            StageFailure: The persona could not be rendered.
            ChatSessionNotFound: The chat disappeared mid-turn.
            InvalidMemoryBalance: The chat's memory balance is out of range.
        """
        chat_id = turn.chat_id
        assembly = PromptAssembly()
        budget = self._allocator.new_budget()
        user_tokens = self._token_counter.count_message(
            "user", user_message.to_formatted_string()
        )

        # 1. Persona
        persona = await with_stage_name("persona", self._render_persona)(turn)
        turn = turn.with_updates(persona=persona)
        self._place(assembly, budget, "system", persona, PromptStage.PERSONA)

        # 2. Audience
        audience = ""
        if turn.user_id != self._planner_config.anonymous_user_id:
            await self._streamer.update_status(chat_id, "Extracting audience")
            audience = await safe_invoke("audience extraction", self._extract_audience, "", turn)
            turn = turn.with_updates(audience=audience)
            if audience:
                self._place(
                    assembly,
                    budget,
                    "system",
                    f"List of participants: {audience}",
                    PromptStage.AUDIENCE,
                )

        # 3. User intent
        if turn.plan_user_intent:
            intent = turn.plan_user_intent
        else:
            await self._streamer.update_status(chat_id, "Extracting user intent")
            intent = await safe_invoke("user intent extraction", self._extract_intent, "", turn)
        turn = turn.with_updates(user_intent=intent)
        if intent:
            self._place(
                assembly, budget, "system", f"User intent: {intent}", PromptStage.INTENT
            )

        # 4. Memories
        await self._streamer.update_status(chat_id, "Extracting semantic and document memories")
        remaining = self._allocator.remaining_budget(assembly, reservations=user_tokens)
        memory_budget = self._allocator.memory_budget(remaining)
        turn.budgets[BUDGET_MEMORY] = memory_budget
        memory_text, citations_by_link = await self._retriever.retrieve(
            intent or turn.message, chat_id, memory_budget
        )
        turn = turn.with_updates(memory_text=memory_text)
        if memory_text:
            self._place(assembly, budget, "system", memory_text, PromptStage.MEMORY)

        # 5. External information
        remaining = self._allocator.remaining_budget(assembly, reservations=user_tokens)
        external_budget = self._allocator.external_information_budget(remaining)
        turn.budgets[BUDGET_EXTERNAL_INFORMATION] = external_budget
        external = ExternalInformationResult()
        if turn.plan_result:
            tool_text = self._plan_result_text(turn, external_budget)
        else:
            await self._streamer.update_status(chat_id, "Acquiring external information from planner")
            external = await safe_invoke(
                "external information",
                self._external.acquire,
                ExternalInformationResult(),
                turn,
                external_budget,
            )
            if external.proposed_plan is not None:
                plan_message = await self._persist_proposed_plan(turn, assembly, external)
                return AssemblyResult(
                    turn=turn,
                    assembly=assembly,
                    prompt_view=self._prompt_view(turn, assembly, None, external),
                    external=external,
                    plan_message=plan_message,
                )
            tool_text = external.text
        turn = turn.with_updates(plan_result=tool_text)

        # 6. Chat history, leaving room for the tool output placed after it
        tool_tokens = self._token_counter.count_message("system", tool_text) if tool_text else 0
        history_budget = self._allocator.remaining_budget(assembly, reservations=tool_tokens)
        turn.budgets[BUDGET_HISTORY] = history_budget
        await self._streamer.update_status(chat_id, "Extracting chat history")
        window = await self._history.fit(chat_id, history_budget, skip_message_ids)
        for entry in window.entries:
            self._place(assembly, budget, entry.role, entry.content, PromptStage.HISTORY)

        # 7. Tool output last
        if tool_text:
            self._place(
                assembly, budget, "system", tool_text, PromptStage.EXTERNAL_INFORMATION
            )

        logger.info(
            f"Assembled prompt for chat {chat_id}: {len(assembly.blocks)} blocks, "
            f"{assembly.total_tokens}/{self._allocator.max_request_budget()} tokens, "
            f"stages={[stage.value for stage in assembly.stages()]}"
        )
        return AssemblyResult(
            turn=turn,
            assembly=assembly,
            prompt_view=self._prompt_view(turn, assembly, window, external),
            citations=list(citations_by_link.values()),
            external=external,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _variables(self, turn: TurnContext) -> dict[str, str]:
        variables = turn.template_variables()
        variables.update(
            {
                "knowledge_cutoff": self._prompts.knowledge_cutoff_date,
                "current_date": datetime.now().strftime("%A, %B %d, %Y"),
                "format": self._prompts.memory_format,
            }
        )
        return variables

    async def _render_persona(self, turn: TurnContext) -> str:
        template = self._prompts.system_persona(turn.system_description)
        persona = render(template, self._variables(turn)).strip()
        if not persona:
            raise ValueError("System persona rendered empty")
        return persona

    async def _extract_audience(self, turn: TurnContext) -> str:
        return await self._complete_with_history(
            turn,
            self._prompts.system_audience_extraction,
            TokenUsageStage.AUDIENCE_EXTRACTION.value,
        )

    async def _extract_intent(self, turn: TurnContext) -> str:
        return await self._complete_with_history(
            turn,
            self._prompts.system_intent_extraction(turn.system_description),
            TokenUsageStage.INTENT_EXTRACTION.value,
        )

    async def _complete_with_history(
        self, turn: TurnContext, template: str, usage_stage: str
    ) -> str:
        """Render ``template`` over the chat history and complete it."""
        history_budget = (
            self._prompts.completion_token_limit
            - self._prompts.response_token_limit
            - self._token_counter.count(template)
        )
        variables = self._variables(turn)
        variables["chat_history"] = await self._history.extract_text(
            turn.chat_id, max(0, history_budget)
        )

        messages = [{"role": "system", "content": render(template, variables)}]
        params = self._prompts.intent
        settings = CompletionSettings(
            max_tokens=self._prompts.response_token_limit,
            temperature=params.temperature,
            top_p=params.top_p,
            presence_penalty=params.presence_penalty,
            frequency_penalty=params.frequency_penalty,
        )
        result = await self._completion.complete(messages, settings)
        turn.record_usage(usage_stage, self._usage(messages, result))
        return result.text.strip()

    def _usage(self, messages: list[dict[str, str]], result: CompletionResult) -> int:
        if result.total_tokens is not None:
            return result.total_tokens
        return self._token_counter.count_messages(messages) + self._token_counter.count(result.text)

    def _plan_result_text(self, turn: TurnContext, token_budget: int) -> str:
        description = render(self._prompts.plan_results_description, self._variables(turn))
        text = f"{description}\n{turn.plan_result}"
        return self._token_counter.truncate(text, token_budget)

    async def _persist_proposed_plan(
        self,
        turn: TurnContext,
        assembly: PromptAssembly,
        external: ExternalInformationResult,
    ) -> ChatMessage:
        proposed = external.proposed_plan
        prompt_view = self._prompt_view(turn, assembly, None, external)
        prompt_view.external_information = render(
            self._prompts.proposed_plan_bot_message,
            {"plan_functions": ", ".join(proposed.plan.function_names())},
        )
        logger.info(f"Short-circuiting chat {turn.chat_id} with a proposed plan")
        return await self._streamer.respond_directly(
            turn,
            proposed.model_dump_json(by_alias=True),
            prompt_view=prompt_view,
            kind=ChatMessageType.PLAN,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _place(
        self,
        assembly: PromptAssembly,
        budget: TokenBudget,
        role: str,
        content: str,
        stage: PromptStage,
    ) -> bool:
        """Add a block, truncating it to the remaining budget; skip if nothing fits."""
        tokens = self._token_counter.count_message(role, content)
        if not budget.can_add(tokens):
            overhead = self._token_counter.count_message(role, "")
            limit = budget.remaining - overhead
            while limit > 0:
                content = self._token_counter.truncate(content, limit)
                tokens = self._token_counter.count_message(role, content)
                if budget.can_add(tokens):
                    break
                limit -= max(1, tokens - budget.remaining)
            if limit <= 0 or not content:
                logger.warning(
                    f"No budget left for {stage.value} block "
                    f"({budget.remaining} tokens remaining), skipping"
                )
                return False
            logger.debug(f"Truncated {stage.value} block to {tokens} tokens")

        budget.consume(tokens)
        assembly.add(PromptBlock(role=role, content=content, stage=stage, tokens=tokens))
        return True

    def _prompt_view(
        self,
        turn: TurnContext,
        assembly: PromptAssembly,
        window: ChatHistoryWindow | None,
        external: ExternalInformationResult,
    ) -> BotResponsePrompt:
        return BotResponsePrompt(
            system_persona=turn.persona,
            audience=turn.audience,
            user_intent=turn.user_intent,
            past_memories=turn.memory_text,
            external_information=turn.plan_result,
            plan_execution_metadata=external.stepwise_metadata,
            chat_history=window.text if window else "",
            meta_prompt_template=assembly.to_messages(),
        )
