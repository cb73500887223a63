"""
Unit tests for the MainCaller stage.
"""

import pytest
from unittest.mock import AsyncMock

from agentpipe.llm.errors import ErrorKind, ProviderRequestError
from agentpipe.llm.models import (
    ProviderResponse,
    ResolutionContext,
    ResolvedModel,
    TokenUsage,
    ToolCallRequest,
)
from agentpipe.llm.stages.main_caller import MainCaller
from agentpipe.llm.trace import DebugTrace
from agentpipe.llm.turn import TurnContext

MESSAGES = [
    {"role": "system", "content": "You are helpful."},
    {"role": "user", "content": "Email Jon the invoice"},
]

TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "send_email",
            "description": "Send an email",
            "parameters": {"type": "object", "properties": {"to": {"type": "string"}}},
        },
    }
]


def _resolved(model="gpt-4o", provider="openai", params=None):
    return ResolvedModel(provider=provider, model=model, context=ResolutionContext.MAIN, params=params or {})


def _resolver(resolved=None):
    resolver = AsyncMock()
    resolver.get_agent_model.return_value = resolved or _resolved()
    return resolver


def _client(response=None, side_effect=None):
    client = AsyncMock()
    client.complete.return_value = response or ProviderResponse(
        content="Done.",
        model="gpt-4o-2024-08-06",
        usage=TokenUsage(prompt_tokens=300, completion_tokens=20),
    )
    if side_effect is not None:
        client.complete.side_effect = side_effect
    return client


def _turn():
    return TurnContext(agent_id="agent-1", message="Email Jon the invoice", trace=DebugTrace())


class TestMainCaller:
    """Main model invocation."""

    @pytest.mark.asyncio
    async def test_text_answer(self):
        stage = MainCaller(_resolver(), _client())

        response = await stage.run(_turn(), MESSAGES)

        assert response.text == "Done."
        assert response.tool_calls == []
        assert response.model == "gpt-4o-2024-08-06"
        assert response.usage.total_tokens == 320

    @pytest.mark.asyncio
    async def test_resolves_main_context(self):
        resolver = _resolver()
        stage = MainCaller(resolver, _client())

        await stage.run(_turn(), MESSAGES)

        resolver.get_agent_model.assert_awaited_once_with("agent-1", ResolutionContext.MAIN)

    @pytest.mark.asyncio
    async def test_explicit_resolved_model_skips_resolver(self):
        resolver = _resolver()
        client = _client()
        stage = MainCaller(resolver, client)

        await stage.run(_turn(), MESSAGES, resolved=_resolved(model="claude-sonnet-4-5", provider="anthropic"))

        resolver.get_agent_model.assert_not_called()
        assert client.complete.call_args.args[1] == "anthropic"

    @pytest.mark.asyncio
    async def test_defaults_and_tools(self):
        client = _client()
        stage = MainCaller(_resolver(), client, temperature=0.5, max_tokens=900)

        await stage.run(_turn(), MESSAGES, tools=TOOLS)

        request = client.complete.call_args.args[0]
        assert request.model == "openai/gpt-4o"
        assert request.temperature == 0.5
        assert request.max_tokens == 900
        assert request.tools == TOOLS
        assert request.tool_choice == "auto"

    @pytest.mark.asyncio
    async def test_agent_params_override_defaults(self):
        client = _client()
        resolver = _resolver(_resolved(params={"temperature": 0.2, "max_tokens": 800}))
        stage = MainCaller(resolver, client)

        await stage.run(_turn(), MESSAGES)

        request = client.complete.call_args.args[0]
        assert request.temperature == 0.2
        assert request.max_tokens == 800
        assert request.tools is None
        assert request.tool_choice is None

    @pytest.mark.asyncio
    async def test_invalid_agent_params_ignored(self):
        client = _client()
        stage = MainCaller(_resolver(_resolved(params={"temperature": 9})), client)

        await stage.run(_turn(), MESSAGES)

        assert client.complete.call_args.args[0].temperature == 0.7

    @pytest.mark.asyncio
    async def test_reasoning_model_request_adapted(self):
        client = _client()
        stage = MainCaller(_resolver(_resolved(model="o1-preview")), client)
        turn = _turn()

        await stage.run(turn, MESSAGES, tools=TOOLS)

        request = client.complete.call_args.args[0]
        assert request.tools is None
        assert request.temperature is None
        assert request.max_completion_tokens == 1200
        assert {w.field for w in turn.trace.stages[0].warnings} == {"tools", "tool_choice", "temperature"}

    @pytest.mark.asyncio
    async def test_tool_calls_returned(self):
        response = ProviderResponse(
            tool_calls=[ToolCallRequest(tool_name="send_email", arguments={"to": "jon@example.com"}, call_id="c1")],
        )
        stage = MainCaller(_resolver(), _client(response))

        result = await stage.run(_turn(), MESSAGES, tools=TOOLS)

        assert result.text == ""
        assert result.tool_calls[0].tool_name == "send_email"
        assert result.model == "openai/gpt-4o"

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self):
        error = ProviderRequestError("blocked", kind=ErrorKind.SAFETY)
        stage = MainCaller(_resolver(), _client(side_effect=error))
        turn = _turn()

        with pytest.raises(ProviderRequestError):
            await stage.run(turn, MESSAGES)

        assert turn.trace.stages[0].error == "blocked"
