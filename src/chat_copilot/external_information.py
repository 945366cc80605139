"""External information acquired through the planner.

Depending on the planner type a turn either proposes a plan for the user to
approve (action / sequential) or runs the stepwise planner immediately and
feeds its answer into the prompt. Approved plans are executed on the next
turn and their result is appended to the prompt as tool output.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any

from loguru import logger

from .config import PlannerConfig, PromptsConfig
from .exceptions import PlannerFailure
from .interfaces import Planner
from .models import (
    Plan,
    PlanExecutionMetadata,
    PlanState,
    PlanType,
    ProposedPlan,
    TurnContext,
)
from .prompts import PLAN_GOAL_TEMPLATE, render
from .token_counter import TokenCounter

RESULT_HEADER = "RESULT: "
STEPWISE_RESULT_NOT_FOUND = "Result not found, review 'stepsTaken' to see what happened."

# Turn context values that are not useful to the planner
_EXCLUDED_CONTEXT_KEYS = ("tokenusage", "tokenlimit", "chat_id", "chatid")


@dataclass
class ExternalInformationResult:
    text: str = ""
    proposed_plan: ProposedPlan | None = None
    stepwise_metadata: PlanExecutionMetadata | None = None


class ExternalInformation:
    """Delegates to the planner and turns its output into prompt text."""

    def __init__(
        self,
        planner: Planner | None,
        prompts: PromptsConfig,
        planner_config: PlannerConfig,
        token_counter: TokenCounter,
    ):
        self._planner = planner
        self._prompts = prompts
        self._config = planner_config
        self._token_counter = token_counter

    @property
    def plan_type(self) -> PlanType:
        try:
            return PlanType(self._config.type.capitalize())
        except ValueError:
            logger.warning(f"Unknown planner type '{self._config.type}', using Sequential")
            return PlanType.SEQUENTIAL

    def has_functions(self) -> bool:
        return self._planner is not None and self._planner.has_functions()

    def planner_context(self, turn: TurnContext) -> dict[str, Any]:
        return {
            key: value
            for key, value in turn.template_variables().items()
            if not any(excluded in key.lower() for excluded in _EXCLUDED_CONTEXT_KEYS)
        }

    def goal(self, turn: TurnContext) -> str:
        context = "\n".join(
            f"{key}: {value}" for key, value in self.planner_context(turn).items()
        )
        return PLAN_GOAL_TEMPLATE.format(context=context, user_intent=turn.user_intent)

    async def acquire(self, turn: TurnContext, token_budget: int) -> ExternalInformationResult:
        """Plan (or run the stepwise planner) for the turn's user intent.

        Raises:
            PlannerFailure: Plan creation failed after all retries.
        """
        if not self.has_functions():
            return ExternalInformationResult()

        goal = self.goal(turn)
        if self.plan_type == PlanType.STEPWISE:
            return await self._run_stepwise(goal, turn, token_budget)

        plan = await self._create_plan(goal, turn)
        if not plan.steps:
            logger.debug("Planner returned an empty plan, nothing to propose")
            return ExternalInformationResult()

        self._merge_context_into_plan(plan, turn)
        proposed = ProposedPlan(
            plan=plan,
            type=self.plan_type,
            state=PlanState.NO_OP,
            original_user_input=turn.message,
            user_intent=turn.user_intent,
        )
        logger.info(
            f"Proposed plan with {len(plan.steps)} steps: {', '.join(plan.function_names())}"
        )
        return ExternalInformationResult(proposed_plan=proposed)

    async def execute_plan(self, plan: Plan, turn: TurnContext, token_budget: int) -> str:
        """Execute an approved plan and format its result for the prompt.

        Raises:
            PlannerFailure: The planner could not execute the plan.
        """
        if self._planner is None:
            raise PlannerFailure("No planner configured")

        try:
            result = await self._planner.execute_plan(plan, self.planner_context(turn))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise PlannerFailure(f"Plan execution failed: {e}") from e

        functions_used = f"FUNCTIONS USED: {'; '.join(plan.function_names())}"
        token_limit = (
            token_budget
            - self._token_counter.count(functions_used)
            - self._token_counter.count(RESULT_HEADER)
        )

        extracted = self._extract_json_content(result)
        if extracted is not None:
            plan_result = self._fit_json(extracted, token_limit, plan)
        else:
            plan_result = self._token_counter.truncate(result.strip(), token_limit)

        return f"{functions_used}\n{RESULT_HEADER}{plan_result.strip()}"

    def use_stepwise_result_as_bot_response(
        self, result: ExternalInformationResult
    ) -> bool:
        return (
            bool(result.text.strip())
            and self.plan_type == PlanType.STEPWISE
            and self._config.use_stepwise_result_as_bot_response
            and result.stepwise_metadata is not None
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _create_plan(self, goal: str, turn: TurnContext) -> Plan:
        retries = self._config.max_create_retries
        while True:
            try:
                return await self._planner.create_plan(goal, self.planner_context(turn))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if retries > 0:
                    retries -= 1
                    logger.warning(f"Retrying plan creation after error: {e}")
                    continue
                raise PlannerFailure(f"Plan creation failed: {e}") from e

    async def _run_stepwise(
        self, goal: str, turn: TurnContext, token_budget: int
    ) -> ExternalInformationResult:
        try:
            outcome = await self._planner.run_stepwise(goal, self.planner_context(turn))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise PlannerFailure(f"Stepwise planner failed: {e}") from e

        answer = outcome.answer.strip()
        functions: list[str] = []
        for step in outcome.steps_taken:
            action = step.get("action")
            if action and action not in functions:
                functions.append(action)

        metadata = PlanExecutionMetadata(
            steps_taken=json.dumps(outcome.steps_taken),
            time_taken=outcome.time_taken,
            functions_used=str(outcome.function_count),
            final_answer=answer,
        )

        # Omitted from the prompt, the metadata still records the attempt
        if STEPWISE_RESULT_NOT_FOUND.lower() in answer.lower():
            return ExternalInformationResult(stepwise_metadata=metadata)

        supplement = render(
            self._prompts.stepwise_planner_supplement,
            {"plan_functions": ", ".join(functions) if functions else "N/A"},
        )
        text = f'{supplement}\n\nResult:\n"{answer}"'
        return ExternalInformationResult(
            text=self._token_counter.truncate(text, token_budget),
            stepwise_metadata=metadata,
        )

    def _merge_context_into_plan(self, plan: Plan, turn: TurnContext) -> None:
        """Overwrite plan parameters with same-named values from the turn."""
        variables = self.planner_context(turn)
        if self.plan_type == PlanType.ACTION:
            targets = [plan.parameters]
        else:
            targets = [step.parameters for step in plan.steps]

        for parameters in targets:
            for key in list(parameters):
                if key.lower() == "input":
                    continue
                if key in variables:
                    parameters[key] = str(variables[key])

    @staticmethod
    def _extract_json_content(result: str) -> str | None:
        """JSON body of an OpenAPI plugin response, if ``result`` is one."""
        try:
            node = json.loads(result)
        except (json.JSONDecodeError, TypeError):
            logger.debug("Plan result is not an OpenAPI plugin response")
            return None
        if not isinstance(node, dict):
            return None
        content_type = str(node.get("contentType") or "")
        content = node.get("content")
        if content_type.lower().startswith("application/json") and content:
            return content if isinstance(content, str) else json.dumps(content)
        return None

    def _fit_json(self, content: str, token_limit: int, plan: Plan) -> str:
        """Keep as many leading items or properties of ``content`` as fit."""
        content = content.strip().replace("\r", "").replace("\n", "")
        if self._token_counter.count(content) < token_limit:
            return content

        try:
            document = json.loads(content)
        except json.JSONDecodeError:
            return self._token_counter.truncate(content, token_limit)

        descriptor = ""
        if isinstance(document, dict) and len(document) == 1:
            name, document = next(iter(document.items()))
            token_limit -= self._token_counter.count(name)
            descriptor = f"{name}: "

        items: list[Any] = []
        if isinstance(document, dict):
            pairs = document.items()
            for key, value in pairs:
                tokens = self._token_counter.count(json.dumps({key: value}))
                if token_limit - tokens <= 0:
                    break
                items.append({key: value})
                token_limit -= tokens
        elif isinstance(document, list):
            for item in document:
                tokens = self._token_counter.count(json.dumps(item))
                if token_limit - tokens <= 0:
                    break
                items.append(item)
                token_limit -= tokens

        if items:
            return f"{descriptor}{json.dumps(items)}"

        source = (
            "plan"
            if self.plan_type == PlanType.SEQUENTIAL or not plan.steps
            else plan.steps[-1].plugin_name or plan.steps[-1].name
        )
        return f"JSON response from {source} is too large to be consumed at this time."
