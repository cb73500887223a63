"""
MainCaller stage: the agent's answer, or the tool calls it wants made.

Runs on the agent's exact main-context preference (or the tool-capable
fallback the Orchestrator chose). The agent's ``params`` override the default
temperature and token limit. Provider failures are not recovered here: a
ProviderRequestError ends the turn with an apology.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from agentpipe.llm.models import GenericChatRequest, MainResponse, ResolutionContext, ResolvedModel
from agentpipe.llm.stages.base import PipelineStage
from agentpipe.llm.turn import TurnContext

logger = logging.getLogger(__name__)


class MainCaller(PipelineStage):
    """
    Generates the user-visible response.

    Args:
        temperature: Default temperature when the agent sets none
        max_tokens: Default token limit when the agent sets none
    """

    name = "main_caller"
    context = ResolutionContext.MAIN

    def __init__(self, *args, temperature: float = 0.7, max_tokens: int = 1200, **kwargs):
        super().__init__(*args, **kwargs)
        self._temperature = temperature
        self._max_tokens = max_tokens

    async def resolve(self, turn: TurnContext) -> ResolvedModel:
        """Resolve the agent's main model (the Orchestrator may swap it for a fallback)."""
        return await self._resolve(turn)

    def _build_request(
        self,
        resolved: ResolvedModel,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
    ) -> GenericChatRequest:
        base: dict[str, Any] = {
            "messages": messages,
            "tools": tools or None,
            "tool_choice": "auto" if tools else None,
        }
        try:
            return GenericChatRequest(
                **base,
                temperature=resolved.params.get("temperature", self._temperature),
                max_tokens=resolved.params.get("max_tokens", self._max_tokens),
            )
        except ValidationError as e:
            logger.warning(f"Ignoring invalid agent params {resolved.params}: {e}")
            return GenericChatRequest(**base, temperature=self._temperature, max_tokens=self._max_tokens)

    async def run(
        self,
        turn: TurnContext,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        resolved: ResolvedModel | None = None,
    ) -> MainResponse:
        """
        Call the main model once.

        Args:
            turn: Current turn
            messages: Full conversation for this call (system prompt included)
            tools: Tool schemas in OpenAI function format, or None
            resolved: Model to use; resolved from the agent preference if omitted

        Raises:
            ProviderRequestError: If the provider call failed after retries
        """
        if resolved is None:
            resolved = await self._resolve(turn)
        response = await self._call(turn, resolved, self._build_request(resolved, messages, tools))
        return MainResponse(
            text=response.content or "",
            tool_calls=response.tool_calls,
            model=response.model or resolved.litellm_model,
            usage=response.usage,
        )
