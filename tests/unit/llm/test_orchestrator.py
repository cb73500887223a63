"""
Unit tests for the Orchestrator.

Tests cover:
- Stage order and state transitions
- Reasoning-model fallback when tools are needed
- Tool execution, analyzer-guided retry and its bound
- Call-order preservation for concurrent tool calls
- Tool round limiting
- Apology on main model failure
- Cancellation and the trace sink
"""

import asyncio
import json
import logging
from typing import Any

import pytest

from agentpipe.config.logging import TurnFilter
from agentpipe.config.settings import PipelineSettings, ResolverSettings
from agentpipe.llm.errors import ErrorKind, ProviderRequestError
from agentpipe.llm.models import (
    AgentModelPreference,
    ContextualInterpretation,
    ProviderResponse,
    TokenUsage,
    ToolCallRequest,
    TurnState,
)
from agentpipe.llm.orchestrator import NO_ANSWER_TEXT, Orchestrator
from agentpipe.llm.resolver import ModelResolver
from agentpipe.llm.stages.contextual_awareness import SYSTEM_PROMPT as CONTEXT_PROMPT
from agentpipe.llm.stages.retry_analyzer import SYSTEM_PROMPT as RETRY_PROMPT
from agentpipe.llm.trace import DebugTrace
from agentpipe.llm.turn import TurnContext
from agentpipe.stores import InMemoryPreferenceStore
from agentpipe.tools.base import IntegrationResult, IntegrationService
from agentpipe.tools.executor import ToolExecutor


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _text(text: str, model: str = "gpt-4o-2024-08-06") -> ProviderResponse:
    return ProviderResponse(
        content=text,
        model=model,
        finish_reason="stop",
        usage=TokenUsage(prompt_tokens=100, completion_tokens=50),
    )


def _tool_calls(*calls: tuple[str, str, dict]) -> ProviderResponse:
    """calls: (call_id, tool_name, arguments)."""
    return ProviderResponse(
        tool_calls=[
            ToolCallRequest(tool_name=name, arguments=arguments, call_id=call_id)
            for call_id, name, arguments in calls
        ],
        model="gpt-4o-2024-08-06",
        finish_reason="tool_calls",
        usage=TokenUsage(prompt_tokens=100, completion_tokens=30),
    )


INTERPRETATION = {
    "interpreted_meaning": "Send the invoice email to Jon",
    "user_intent": "send invoice",
    "confidence": "high",
}


class ScriptedClient:
    """
    Stand-in for ProviderClient that answers each stage from a script.

    Stages are told apart by their system prompt. Script items may be a
    ProviderResponse, a dict (returned as JSON content), an exception to
    raise, or an async callable.
    """

    def __init__(self, main=None, context=None, intent=None, retry=None):
        self.main = list(main or [])
        self.context = context if context is not None else INTERPRETATION
        self.intent = intent if intent is not None else {"needs_tools": True, "confidence": "high"}
        self.retry = list(retry or [])
        self.requests: list[tuple[str, Any]] = []

    def requests_for(self, stage: str) -> list:
        return [request for name, request in self.requests if name == stage]

    async def complete(self, request, provider, user_id=None):
        system = request.messages[0]["content"]
        if system == CONTEXT_PROMPT:
            stage, item = "context", self.context
        elif system.startswith("You decide whether"):
            stage, item = "intent", self.intent
        elif system == RETRY_PROMPT:
            stage, item = "retry", self.retry.pop(0)
        else:
            stage, item = "main", self.main.pop(0)
        self.requests.append((stage, request))

        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return await item()
        if isinstance(item, dict):
            return ProviderResponse(content=json.dumps(item), model="gpt-4o-mini")
        return item


class FakeIntegration(IntegrationService):
    """Integration with scripted tool handlers."""

    def __init__(self, handlers=None, list_error: Exception | None = None):
        self.handlers = handlers or {}
        self.list_error = list_error
        self.invocations: list[ToolCallRequest] = []
        self.list_calls = 0

    async def initialize(self):
        pass

    async def shutdown(self):
        pass

    async def list_tools(self):
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        return [
            {
                "name": name,
                "description": f"{name} tool",
                "input_schema": {"type": "object", "properties": {}},
            }
            for name in self.handlers
        ]

    async def invoke(self, request):
        self.invocations.append(request)
        return await self.handlers[request.tool_name](request.arguments)


async def _send_email(arguments: dict) -> IntegrationResult:
    if "to" not in arguments:
        return IntegrationResult(success=False, error="Missing required parameter: to")
    return IntegrationResult(success=True, payload={"status": "sent", "to": arguments["to"]})


def _orchestrator(client, integration=None, model="gpt-4o", provider="openai", **settings):
    store = InMemoryPreferenceStore([AgentModelPreference(agent_id="agent-1", provider=provider, model=model)])
    resolver = ModelResolver(store, ResolverSettings())
    executor = ToolExecutor(integration, timeout=5) if integration is not None else None
    trace_sink = settings.pop("trace_sink", None)
    return Orchestrator(
        resolver=resolver,
        client=client,
        tool_executor=executor,
        settings=PipelineSettings(**settings),
        trace_sink=trace_sink,
    )


# ---------------------------------------------------------------------------
# Test Classes
# ---------------------------------------------------------------------------

class TestPlainTurn:
    """Turns that need no tools."""

    @pytest.mark.asyncio
    async def test_stage_order_and_states(self):
        integration = FakeIntegration({"send_email": _send_email})
        client = ScriptedClient(main=[_text("Hi! How can I help?")], intent={"needs_tools": False})
        orchestrator = _orchestrator(client, integration)

        result = await orchestrator.handle_turn("agent-1", "  hello  ")

        assert result.text == "Hi! How can I help?"
        assert result.state is TurnState.DONE
        assert result.model == "gpt-4o-2024-08-06"
        assert result.trace.stage_names() == ["contextual_awareness", "intent_classifier", "main_caller"]
        assert result.trace.states == [
            TurnState.AWAITING_CONTEXT,
            TurnState.AWAITING_INTENT,
            TurnState.AWAITING_MAIN_RESPONSE,
            TurnState.DONE,
        ]
        assert result.trace.total_tokens == 150

    @pytest.mark.asyncio
    async def test_no_tools_needed_skips_tool_listing(self):
        integration = FakeIntegration({"send_email": _send_email})
        client = ScriptedClient(main=[_text("Hello")], intent={"needs_tools": False})

        await _orchestrator(client, integration).handle_turn("agent-1", "hello")

        assert integration.list_calls == 0
        assert client.requests_for("main")[0].tools is None

    @pytest.mark.asyncio
    async def test_message_is_stripped(self):
        client = ScriptedClient(main=[_text("ok")], intent={"needs_tools": False})

        await _orchestrator(client).handle_turn("agent-1", "  hello  ")

        assert client.requests_for("main")[0].messages[-1] == {"role": "user", "content": "hello"}

    @pytest.mark.parametrize("message", ["", "   ", "\n\t"])
    @pytest.mark.asyncio
    async def test_empty_message_rejected(self, message):
        client = ScriptedClient()
        with pytest.raises(ValueError):
            await _orchestrator(client).handle_turn("agent-1", message)
        assert client.requests == []

    @pytest.mark.asyncio
    async def test_history_and_context_in_main_messages(self):
        client = ScriptedClient(main=[_text("Sure")], intent={"needs_tools": False})
        history = [
            {"role": "user", "content": "Draft an invoice email for Jon"},
            {"role": "assistant", "content": "Here is the draft."},
        ]

        await _orchestrator(client).handle_turn("agent-1", "send it", history=history)

        messages = client.requests_for("main")[0].messages
        assert messages[0]["role"] == "system"
        assert "## Conversation Context" in messages[0]["content"]
        assert "Send the invoice email to Jon" in messages[0]["content"]
        assert messages[1:3] == history
        assert messages[-1] == {"role": "user", "content": "send it"}

    @pytest.mark.asyncio
    async def test_auxiliary_failures_do_not_fail_turn(self):
        error = ProviderRequestError("unavailable", kind=ErrorKind.UNAVAILABLE)
        client = ScriptedClient(main=[_text("Answer anyway")], context=error, intent=error)

        result = await _orchestrator(client).handle_turn("agent-1", "hello")

        assert result.text == "Answer anyway"
        assert result.error_kind is None
        assert [record.error for record in result.trace.stages[:2]] == ["unavailable", "unavailable"]

    @pytest.mark.asyncio
    async def test_empty_answer_replaced(self):
        client = ScriptedClient(main=[_text("")], intent={"needs_tools": False})
        result = await _orchestrator(client).handle_turn("agent-1", "hello")
        assert result.text == NO_ANSWER_TEXT


class TestStageCaching:
    """Repeated turns reuse the auxiliary stages' results."""

    @pytest.mark.asyncio
    async def test_repeated_turn_only_calls_main(self):
        client = ScriptedClient(main=[_text("Hi!"), _text("Hi again!")], intent={"needs_tools": False})
        orchestrator = _orchestrator(client)

        await orchestrator.handle_turn("agent-1", "hello")
        result = await orchestrator.handle_turn("agent-1", "Hello")

        assert result.text == "Hi again!"
        assert result.trace.stage_names() == ["main_caller"]
        assert len(client.requests_for("context")) == 1
        assert len(client.requests_for("intent")) == 1
        stats = orchestrator.cache_stats()
        assert stats["contextual_awareness"]["hits"] == 1
        assert stats["intent_classifier"]["hits"] == 1
        assert stats["intent_classifier"]["max_size"] == 1000
        assert stats["contextual_awareness"]["max_size"] == 500

    @pytest.mark.asyncio
    async def test_zero_ttl_disables_caching(self):
        client = ScriptedClient(main=[_text("Hi!"), _text("Hi again!")], intent={"needs_tools": False})
        orchestrator = _orchestrator(client, stage_cache_ttl_seconds=0)

        await orchestrator.handle_turn("agent-1", "hello")
        result = await orchestrator.handle_turn("agent-1", "hello")

        assert result.trace.stage_names() == ["contextual_awareness", "intent_classifier", "main_caller"]
        assert len(client.requests_for("context")) == 2


class TestReasoningFallback:
    """A tool-incapable main model is swapped when the turn needs tools."""

    @pytest.mark.asyncio
    async def test_o1_preview_swapped_for_gpt4o(self):
        integration = FakeIntegration({"send_email": _send_email})
        client = ScriptedClient(main=[_text("Which address should I use?")])
        orchestrator = _orchestrator(client, integration, model="o1-preview")

        result = await orchestrator.handle_turn("agent-1", "Email Jon the invoice")

        main_request = client.requests_for("main")[0]
        assert main_request.model == "openai/gpt-4o"
        assert main_request.tools[0]["function"]["name"] == "send_email"
        assert main_request.temperature == 0.7
        assert result.text == "Which address should I use?"

    @pytest.mark.asyncio
    async def test_fast_stages_use_fast_sibling(self):
        client = ScriptedClient(main=[_text("ok")])
        await _orchestrator(client, FakeIntegration({"send_email": _send_email}), model="o1-preview").handle_turn(
            "agent-1", "Email Jon the invoice"
        )
        assert client.requests_for("context")[0].model == "openai/gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_no_swap_without_tools(self):
        client = ScriptedClient(main=[_text("Thinking done")], intent={"needs_tools": False})

        await _orchestrator(client, FakeIntegration({"send_email": _send_email}), model="o1-preview").handle_turn(
            "agent-1", "Prove that sqrt(2) is irrational"
        )

        main_request = client.requests_for("main")[0]
        assert main_request.model == "openai/o1-preview"
        assert main_request.temperature is None
        assert main_request.max_completion_tokens == 1200

    @pytest.mark.asyncio
    async def test_no_swap_when_no_tools_exist(self):
        client = ScriptedClient(main=[_text("ok")])
        await _orchestrator(client, FakeIntegration({}), model="o1-preview").handle_turn("agent-1", "Email Jon")
        assert client.requests_for("main")[0].model == "openai/o1-preview"


class TestToolExecution:
    """Tool loop, analyzer-guided retry and ordering."""

    @pytest.mark.asyncio
    async def test_corrected_retry_succeeds(self):
        integration = FakeIntegration({"send_email": _send_email})
        client = ScriptedClient(
            main=[
                _tool_calls(("call_a", "send_email", {"recipient": "jon@example.com", "body": "Invoice"})),
                _text("Sent the invoice to Jon."),
            ],
            retry=[{
                "should_retry": True,
                "corrected_arguments": {"to": "jon@example.com", "body": "Invoice"},
                "reasoning": "The tool expects 'to'",
                "confidence": "high",
            }],
        )

        result = await _orchestrator(client, integration).handle_turn("agent-1", "Email Jon the invoice")

        assert result.text == "Sent the invoice to Jon."
        assert [(r.attempt, r.success) for r in result.tool_results] == [(1, False), (2, True)]
        assert result.tool_results[1].arguments == {"to": "jon@example.com", "body": "Invoice"}
        assert result.trace.stage_names() == [
            "contextual_awareness",
            "intent_classifier",
            "main_caller",
            "retry_analyzer",
            "main_caller",
        ]
        assert TurnState.AWAITING_RETRY_DECISION in result.trace.states

        final_messages = client.requests_for("main")[1].messages
        assistant, tool = final_messages[-2], final_messages[-1]
        assert assistant["tool_calls"][0]["id"] == "call_a"
        assert tool == {
            "role": "tool",
            "tool_call_id": "call_a",
            "content": json.dumps({"status": "sent", "to": "jon@example.com"}),
        }

    @pytest.mark.asyncio
    async def test_retry_is_bounded_to_two_executions(self):
        async def always_fails(arguments):
            return IntegrationResult(success=False, error="Missing required parameter: to")

        integration = FakeIntegration({"send_email": always_fails})
        corrected = {
            "should_retry": True,
            "corrected_arguments": {"to": "jon@example.com"},
            "confidence": "high",
        }
        client = ScriptedClient(
            main=[_tool_calls(("call_a", "send_email", {"recipient": "jon"})), _text("Sorry, that failed.")],
            retry=[corrected, corrected, corrected],
        )

        result = await _orchestrator(client, integration).handle_turn("agent-1", "Email Jon")

        assert len(integration.invocations) == 2
        assert len(client.requests_for("retry")) == 1
        assert [r.attempt for r in result.tool_results] == [1, 2]
        tool_message = client.requests_for("main")[1].messages[-1]
        assert tool_message["content"] == "Error: tool 'send_email' failed: Missing required parameter: to"

    @pytest.mark.asyncio
    async def test_terminal_verdict_folds_error_into_conversation(self):
        async def unauthorized(arguments):
            return IntegrationResult(success=False, error="401 Unauthorized")

        integration = FakeIntegration({"send_email": unauthorized})
        client = ScriptedClient(
            main=[_tool_calls(("call_a", "send_email", {"to": "jon"})), _text("Your email account needs reconnecting.")],
        )

        result = await _orchestrator(client, integration).handle_turn("agent-1", "Email Jon")

        assert len(integration.invocations) == 1
        assert client.requests_for("retry") == []
        assert result.text == "Your email account needs reconnecting."
        assert client.requests_for("main")[1].messages[-1]["content"].endswith("401 Unauthorized")

    @pytest.mark.asyncio
    async def test_tool_messages_follow_call_order(self):
        async def slow(arguments):
            await asyncio.sleep(0.05)
            return IntegrationResult(success=True, payload="slow result")

        async def fast(arguments):
            return IntegrationResult(success=True, payload="fast result")

        integration = FakeIntegration({"slow_lookup": slow, "fast_lookup": fast})
        client = ScriptedClient(
            main=[
                _tool_calls(("call_1", "slow_lookup", {}), ("call_2", "fast_lookup", {})),
                _text("Both done."),
            ],
        )

        result = await _orchestrator(client, integration).handle_turn("agent-1", "Look both up")

        tool_messages = [m for m in client.requests_for("main")[1].messages if m["role"] == "tool"]
        assert [m["tool_call_id"] for m in tool_messages] == ["call_1", "call_2"]
        assert [m["content"] for m in tool_messages] == ["slow result", "fast result"]
        # The trace records executions as they finish
        assert [r.tool_name for r in result.tool_results] == ["fast_lookup", "slow_lookup"]

    @pytest.mark.asyncio
    async def test_missing_call_ids_are_assigned(self):
        integration = FakeIntegration({"send_email": _send_email})
        client = ScriptedClient(main=[_tool_calls((None, "send_email", {"to": "jon"})), _text("Done")])

        await _orchestrator(client, integration).handle_turn("agent-1", "Email Jon")

        messages = client.requests_for("main")[1].messages
        assert messages[-2]["tool_calls"][0]["id"] == "call_0_0"
        assert messages[-1]["tool_call_id"] == "call_0_0"

    @pytest.mark.asyncio
    async def test_tool_rounds_limited(self):
        integration = FakeIntegration({"send_email": _send_email})
        client = ScriptedClient(
            main=[
                _tool_calls(("call_a", "send_email", {"to": "jon"})),
                _tool_calls(("call_b", "send_email", {"to": "jon"})),
            ],
        )

        result = await _orchestrator(client, integration, max_tool_rounds=1).handle_turn("agent-1", "Email Jon")

        main_requests = client.requests_for("main")
        assert len(main_requests) == 2
        assert main_requests[0].tools is not None
        assert main_requests[1].tools is None
        assert len(integration.invocations) == 1
        assert result.text == NO_ANSWER_TEXT

    @pytest.mark.asyncio
    async def test_tool_listing_failure_continues_without_tools(self):
        integration = FakeIntegration({"send_email": _send_email}, list_error=ConnectionError("server gone"))
        client = ScriptedClient(main=[_text("I can't send email right now.")])

        result = await _orchestrator(client, integration).handle_turn("agent-1", "Email Jon")

        assert client.requests_for("main")[0].tools is None
        assert result.text == "I can't send email right now."


class TestMainFailure:
    """A failed main call ends the turn with an apology."""

    @pytest.mark.asyncio
    async def test_apology_by_error_kind(self):
        error = ProviderRequestError("content_policy_violation: raw provider text", kind=ErrorKind.SAFETY)
        client = ScriptedClient(main=[error], intent={"needs_tools": False})

        result = await _orchestrator(client).handle_turn("agent-1", "hello")

        assert result.text == error.user_message
        assert "raw provider text" not in result.text
        assert result.error_kind is ErrorKind.SAFETY
        assert result.state is TurnState.DONE
        assert result.trace.state is TurnState.DONE
        assert result.model == "openai/gpt-4o"
        assert result.trace.stages[-1].error.startswith("content_policy_violation")

    @pytest.mark.asyncio
    async def test_rate_limit_and_safety_messages_differ(self):
        rate = ProviderRequestError("429", kind=ErrorKind.RATE_LIMIT)
        safety = ProviderRequestError("blocked", kind=ErrorKind.SAFETY)
        assert rate.user_message != safety.user_message


class TestCancellationAndSink:
    """Trace finalization and delivery."""

    @pytest.mark.asyncio
    async def test_sync_sink_receives_done_trace(self):
        traces = []
        client = ScriptedClient(main=[_text("ok")], intent={"needs_tools": False})
        orchestrator = _orchestrator(client, trace_sink=traces.append)

        result = await orchestrator.handle_turn("agent-1", "hello")

        assert traces == [result.trace]
        assert traces[0].state is TurnState.DONE
        assert traces[0].total_duration_ms is not None

    @pytest.mark.asyncio
    async def test_async_sink(self):
        traces = []

        async def sink(trace: DebugTrace):
            traces.append(trace.export())

        client = ScriptedClient(main=[_text("ok")], intent={"needs_tools": False})
        await _orchestrator(client, trace_sink=sink).handle_turn("agent-1", "hello")

        assert traces[0]["state"] == "done"
        assert traces[0]["agentId"] == "agent-1"

    @pytest.mark.asyncio
    async def test_failing_sink_is_logged(self, caplog):
        def sink(trace):
            raise RuntimeError("disk full")

        client = ScriptedClient(main=[_text("ok")], intent={"needs_tools": False})

        with caplog.at_level("ERROR"):
            result = await _orchestrator(client, trace_sink=sink).handle_turn("agent-1", "hello")

        assert result.text == "ok"
        assert "disk full" in caplog.text

    @pytest.mark.asyncio
    async def test_cancellation_emits_canceled_trace(self):
        traces = []
        started = asyncio.Event()

        async def never_answers():
            started.set()
            await asyncio.Event().wait()

        client = ScriptedClient(main=[never_answers], intent={"needs_tools": False})
        orchestrator = _orchestrator(client, trace_sink=traces.append)

        task = asyncio.create_task(orchestrator.handle_turn("agent-1", "hello"))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        trace = traces[0]
        assert trace.state is TurnState.CANCELED
        assert trace.states[-1] is TurnState.CANCELED
        assert TurnState.DONE not in trace.states
        assert trace.stages[-1].stage_name == "main_caller"
        assert trace.stages[-1].error == "cancelled"


class TurnCollector(logging.Handler):
    """Records the turn tag of every record it sees."""

    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.addFilter(TurnFilter())
        self.turns: list[tuple[str, str]] = []

    def emit(self, record):
        self.turns.append((record.turn, record.getMessage()))


class TestTurnLogging:
    """Records logged while a turn runs are tagged with it."""

    @pytest.mark.asyncio
    async def test_turn_records_tagged(self, caplog):
        client = ScriptedClient(main=[_text("Hi!")], intent={"needs_tools": False})
        collector = TurnCollector()
        llm_logger = logging.getLogger("agentpipe.llm")
        llm_logger.addHandler(collector)
        try:
            with caplog.at_level(logging.INFO, logger="agentpipe"):
                result = await _orchestrator(client).handle_turn("agent-1", "hello")
        finally:
            llm_logger.removeHandler(collector)

        tag = f"agent-1:{result.trace.turn_id[:8]}"
        started = [turn for turn, message in collector.turns if "started" in message]
        done = [turn for turn, message in collector.turns if " done in " in message]
        assert started == [tag]
        assert done == [tag]


class TestSystemPrompt:
    """System prompt construction."""

    def test_context_block_omitted_without_interpretation(self):
        orchestrator = _orchestrator(ScriptedClient(), system_template="Base.\n{context_block}End.")
        turn = TurnContext(agent_id="agent-1", message="hi", trace=DebugTrace())

        assert orchestrator._build_system_prompt(turn) == "Base.\nEnd."

    def test_context_block_injected(self):
        orchestrator = _orchestrator(ScriptedClient(), system_template="Base.\n{context_block}End.")
        turn = TurnContext(agent_id="agent-1", message="hi", trace=DebugTrace())
        turn.interpretation = ContextualInterpretation(original_message="hi", interpreted_meaning="A greeting")

        prompt = orchestrator._build_system_prompt(turn)

        assert prompt.startswith("Base.\n## Conversation Context\nCONTEXTUAL UNDERSTANDING:")
        assert prompt.endswith("End.")
