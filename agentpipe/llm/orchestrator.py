"""
Orchestrator: the per-turn state machine.

Data flow for one user turn:

    user message
        ↓
    ContextualAwareness   (AwaitingContext)       resolve references
        ↓
    IntentClassifier      (AwaitingIntent)        needs tools?
        ↓
    MainCaller            (AwaitingMainResponse)  answer or tool calls
        ↓  ↑
    ToolExecutor          (AwaitingToolExecution) tool calls run concurrently
        ↓  ↑
    RetryAnalyzer         (AwaitingRetryDecision) once per failed call
        ↓
    TurnResult + DebugTrace (Done)

Design decisions:
- Auxiliary stages degrade locally (see each stage). Only a MainCaller
  ProviderRequestError ends the turn early, and then with a specific apology
  chosen by error kind; raw provider text never reaches the user.
- Tool failures are folded back into the conversation as error text so the
  main model can explain them, after at most one analyzer-guided retry.
- Tool calls from one response run with asyncio.gather and their results are
  appended in the model's original call order, not completion order.
- A max_tool_rounds limit prevents runaway loops. When hit, MainCaller runs
  once more without tool definitions, forcing a text response.
- If the turn's task is canceled, the trace is finalized as Canceled and
  handed to the trace sink before the cancellation propagates.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from agentpipe.config.logging import turn_logging_context
from agentpipe.config.settings import DEFAULT_SYSTEM_TEMPLATE, PipelineSettings
from agentpipe.llm.capabilities import DEFAULT_TABLE, CapabilityTable
from agentpipe.llm.errors import CapabilityMismatchError, ErrorKind, ProviderRequestError
from agentpipe.llm.models import (
    ResolutionContext,
    ResolvedModel,
    ToolCallRequest,
    ToolResult,
    TurnState,
)
from agentpipe.llm.provider import ProviderClient
from agentpipe.llm.resolver import ModelResolver
from agentpipe.llm.retry import RetryPolicy
from agentpipe.llm.stages import (
    ContextualAwareness,
    IntentClassifier,
    MainCaller,
    RetryAnalyzer,
    StageResultCache,
)
from agentpipe.llm.trace import DebugTrace
from agentpipe.llm.turn import TurnContext, TurnResult

if TYPE_CHECKING:
    from agentpipe.tools.executor import ToolExecutor

logger = logging.getLogger(__name__)

# Original call plus one analyzer-guided retry
MAX_TOOL_ATTEMPTS = 2

NO_ANSWER_TEXT = "I wasn't able to put together an answer for that. Please try rephrasing."

TraceSink = Callable[[DebugTrace], Awaitable[None] | None]


def tool_failure_text(result: ToolResult) -> str:
    return f"Error: tool '{result.tool_name}' failed: {result.error_message}"


class Orchestrator:
    """
    Runs one user turn through the stage pipeline.

    Each call to handle_turn() is independent: it gets its own TurnContext and
    DebugTrace, and the only state shared between turns is the resolver cache.

    Args:
        resolver: Per-agent model resolver (shared by all stages)
        client: Provider client (shared by all stages)
        tool_executor: Executor for tool calls; None runs every turn without tools
        settings: Pipeline settings (tool rounds, defaults, system template)
        retry_policy: Supplies the tool-failure attempt budget
        table: Capability table for the tool-capability check
        trace_sink: Called with the finished trace of every Done or Canceled turn
    """

    def __init__(
        self,
        resolver: ModelResolver,
        client: ProviderClient,
        tool_executor: ToolExecutor | None = None,
        settings: PipelineSettings | None = None,
        retry_policy: RetryPolicy | None = None,
        table: CapabilityTable = DEFAULT_TABLE,
        trace_sink: TraceSink | None = None,
    ):
        settings = settings or PipelineSettings()
        self._tool_executor = tool_executor
        self._retry_policy = retry_policy or RetryPolicy()
        self._table = table
        self._trace_sink = trace_sink
        self._system_template = settings.system_template or DEFAULT_SYSTEM_TEMPLATE
        self._max_tool_rounds = settings.max_tool_rounds

        self.contextual_awareness = ContextualAwareness(
            resolver,
            client,
            table,
            history_window=settings.history_window,
            cache=StageResultCache(settings.context_cache_max_entries, settings.stage_cache_ttl_seconds),
        )
        self.intent_classifier = IntentClassifier(
            resolver,
            client,
            table,
            cache=StageResultCache(settings.intent_cache_max_entries, settings.stage_cache_ttl_seconds),
        )
        self.main_caller = MainCaller(
            resolver,
            client,
            table,
            temperature=settings.main_temperature,
            max_tokens=settings.main_max_tokens,
        )
        self.retry_analyzer = RetryAnalyzer(resolver, client, table)

    def cache_stats(self) -> dict[str, dict[str, float | int]]:
        """Result cache statistics of the auxiliary stages, by stage name."""
        return {
            self.contextual_awareness.name: self.contextual_awareness.cache.stats(),
            self.intent_classifier.name: self.intent_classifier.cache.stats(),
        }

    @property
    def max_tool_attempts(self) -> int:
        return min(self._retry_policy.max_attempts(ErrorKind.TOOL_FAILURE), MAX_TOOL_ATTEMPTS)

    def _build_system_prompt(self, turn: TurnContext) -> str:
        """
        Inject the contextual interpretation into the agent's system template.

        When there is no interpretation the section is omitted entirely.
        """
        context_block = ""
        if turn.interpretation is not None:
            context_block = f"## Conversation Context\n{turn.interpretation.as_system_context()}\n"
        return self._system_template.replace("{context_block}", context_block)

    def _build_messages(self, turn: TurnContext) -> list[dict[str, Any]]:
        return [
            {"role": "system", "content": self._build_system_prompt(turn)},
            *turn.history,
            {"role": "user", "content": turn.message},
        ]

    async def _get_tool_definitions(self) -> list[dict[str, Any]] | None:
        """
        Fetch tool schemas in LiteLLM's (OpenAI) tool format.

        Returns None when no executor is configured, no tools exist, or
        listing them failed.
        """
        if self._tool_executor is None:
            return None

        try:
            raw_tools = await self._tool_executor.integration.list_tools()
        except Exception as e:
            logger.warning(f"Could not list tools, continuing without them: {e}")
            return None

        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool.get("description", ""),
                    "parameters": tool.get("input_schema") or {"type": "object", "properties": {}},
                },
            }
            for tool in raw_tools
        ] or None

    def _ensure_tool_capable(self, resolved: ResolvedModel) -> ResolvedModel:
        """Swap a tool-incapable main model for its provider's reasoning fallback."""
        try:
            self._table.require_tools(resolved.model)
            return resolved
        except CapabilityMismatchError as e:
            fallback = self._table.get_reasoning_fallback(resolved.model)
            capabilities = self._table.lookup(fallback)
            logger.info(f"{e}; using {capabilities.provider}/{fallback} for this turn")
            return ResolvedModel(
                provider=capabilities.provider,
                model=fallback,
                context=ResolutionContext.MAIN,
                params=resolved.params,
            )

    async def _run_tool_call(self, turn: TurnContext, call: ToolCallRequest) -> ToolResult:
        """Execute one logical tool call with at most one analyzer-guided retry."""
        executor = self._tool_executor
        attempt = 1
        result = await executor.execute(call, turn.trace, attempt=attempt)

        while not result.success and attempt < self.max_tool_attempts:
            turn.trace.transition(TurnState.AWAITING_RETRY_DECISION)
            analysis = await self.retry_analyzer.run(turn, call, result)
            if not analysis.should_retry:
                logger.info(f"Not retrying '{call.tool_name}': {analysis.reasoning}")
                break

            logger.info(f"Retrying '{call.tool_name}' with corrected arguments: {analysis.reasoning}")
            call = call.model_copy(update={"arguments": analysis.corrected_arguments})
            attempt += 1
            turn.trace.transition(TurnState.AWAITING_TOOL_EXECUTION)
            result = await executor.execute(call, turn.trace, attempt=attempt)

        return result

    async def _execute_tool_calls(
        self,
        turn: TurnContext,
        calls: list[ToolCallRequest],
    ) -> list[ToolResult]:
        turn.trace.transition(TurnState.AWAITING_TOOL_EXECUTION)
        # gather returns results in argument order, i.e. the model's call order
        return list(await asyncio.gather(*(self._run_tool_call(turn, call) for call in calls)))

    async def _emit_trace(self, trace: DebugTrace) -> None:
        if self._trace_sink is None:
            return
        try:
            outcome = self._trace_sink(trace)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(f"Trace sink failed for turn {trace.turn_id}: {e}")

    async def handle_turn(
        self,
        agent_id: str,
        message: str,
        history: list[dict[str, Any]] | None = None,
        user_id: str | None = None,
    ) -> TurnResult:
        """
        Process one user message through the full pipeline.

        Args:
            agent_id: Agent answering the turn (selects models)
            message: The user's message (must be non-empty after stripping whitespace)
            history: Prior conversation as role/content dicts, oldest first
            user_id: User the turn runs for (selects API keys)

        Returns:
            TurnResult in the Done state with the final text and complete trace

        Raises:
            ValueError: If message is empty or whitespace-only
            asyncio.CancelledError: If the turn was canceled (trace is still emitted)
        """
        message = message.strip()
        if not message:
            raise ValueError("Message cannot be empty")

        trace = DebugTrace(agent_id=agent_id)
        turn = TurnContext(
            agent_id=agent_id,
            message=message,
            user_id=user_id,
            history=list(history or []),
            trace=trace,
        )
        with turn_logging_context(agent_id, trace.turn_id):
            logger.info(f"Turn {trace.turn_id} started for agent {agent_id}")
            try:
                result = await self._run(turn)
            except asyncio.CancelledError:
                trace.finish(TurnState.CANCELED)
                logger.info(f"Turn {trace.turn_id} canceled after {trace.total_duration_ms:.0f}ms")
                await self._emit_trace(trace)
                raise

            logger.info(
                f"Turn {trace.turn_id} done in {trace.total_duration_ms:.0f}ms "
                f"({len(trace.stages)} stages, {len(trace.tool_calls)} tool calls, "
                f"{trace.total_tokens} tokens)"
            )
            await self._emit_trace(trace)
        return result

    async def _run(self, turn: TurnContext) -> TurnResult:
        trace = turn.trace

        trace.transition(TurnState.AWAITING_CONTEXT)
        turn.interpretation = await self.contextual_awareness.run(turn)

        trace.transition(TurnState.AWAITING_INTENT)
        turn.intent = await self.intent_classifier.run(turn)

        trace.transition(TurnState.AWAITING_MAIN_RESPONSE)
        resolved = await self.main_caller.resolve(turn)
        tool_definitions = None
        if turn.intent.needs_tools and self._tool_executor is not None:
            tool_definitions = await self._get_tool_definitions()
            if tool_definitions:
                resolved = self._ensure_tool_capable(resolved)

        messages = self._build_messages(turn)
        tool_results: list[ToolResult] = []
        rounds_used = 0

        # --- Tool-use loop ---
        while True:
            offered_tools = tool_definitions if rounds_used < self._max_tool_rounds else None
            try:
                response = await self.main_caller.run(turn, messages, offered_tools, resolved)
            except ProviderRequestError as e:
                logger.error(f"Main response failed for turn {trace.turn_id}: {e}")
                trace.finish(TurnState.DONE)
                return TurnResult(
                    text=e.user_message,
                    state=TurnState.DONE,
                    model=resolved.litellm_model,
                    trace=trace,
                    tool_results=tool_results,
                    error_kind=e.kind,
                )

            if response.tool_calls and offered_tools:
                calls = [
                    call if call.call_id else call.model_copy(update={"call_id": f"call_{rounds_used}_{i}"})
                    for i, call in enumerate(response.tool_calls)
                ]
                finals = await self._execute_tool_calls(turn, calls)
                tool_results = list(trace.tool_calls)

                # Assistant's tool calls, then one tool message per call in call order
                messages.append({
                    "role": "assistant",
                    "content": response.text or None,
                    "tool_calls": [
                        {
                            "id": call.call_id,
                            "type": "function",
                            "function": {
                                "name": call.tool_name,
                                "arguments": json.dumps(call.arguments, default=str),
                            },
                        }
                        for call in calls
                    ],
                })
                for call, result in zip(calls, finals):
                    messages.append({
                        "role": "tool",
                        "tool_call_id": call.call_id,
                        "content": (result.output or "") if result.success else tool_failure_text(result),
                    })

                rounds_used += 1
                trace.transition(TurnState.AWAITING_MAIN_RESPONSE)
                continue

            trace.finish(TurnState.DONE)
            return TurnResult(
                text=response.text or NO_ANSWER_TEXT,
                state=TurnState.DONE,
                model=response.model,
                trace=trace,
                tool_results=tool_results,
            )
