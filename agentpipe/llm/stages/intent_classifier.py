"""
IntentClassifier stage: decide whether the turn needs tools.

When the answer is no, the Orchestrator skips fetching tool schemas and the
tool-capable model check, and MainCaller runs as a plain chat call.

A failed or unparseable classification defaults to needing tools: offering
tools the model does not use is harmless, while withholding them breaks
action requests.

Successful classifications are cached per agent, normalized message and
available tool names (five minutes by default). Fallbacks are never cached.
"""

from __future__ import annotations

import logging

from agentpipe.llm.errors import ProviderRequestError
from agentpipe.llm.models import GenericChatRequest, IntentClassification, ResolutionContext
from agentpipe.llm.stages.base import (
    JSON_MODE,
    PipelineStage,
    StageResultCache,
    normalize_message,
    parse_json_object,
)
from agentpipe.llm.turn import TurnContext

logger = logging.getLogger(__name__)

CACHE_MAX_ENTRIES = 1000
CACHE_TTL_SECONDS = 300.0

SYSTEM_PROMPT = """You decide whether answering the user's message requires calling an external tool.

Tools are needed when the user asks to perform an action (send, create, update, delete, schedule),
or to look up live data the assistant cannot know (accounts, inboxes, calendars, records).
Tools are not needed for greetings, general knowledge, explanations, or writing help.
{tool_line}
Respond with a JSON object:
{{
  "needs_tools": true | false,
  "confidence": "high" | "medium" | "low",
  "reasoning": "one short sentence",
  "suggested_tools": ["names of the tools likely needed"]
}}"""


class IntentClassifier(PipelineStage):
    """
    Second stage of every turn.

    Args:
        cache: Result cache; a 1000-entry, five-minute cache if omitted
    """

    name = "intent_classifier"
    context = ResolutionContext.FAST

    def __init__(self, *args, cache: StageResultCache | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.cache = cache or StageResultCache(CACHE_MAX_ENTRIES, CACHE_TTL_SECONDS)

    @staticmethod
    def _classified_text(turn: TurnContext) -> str:
        return turn.interpretation.interpreted_meaning if turn.interpretation else turn.message

    def _build_request(self, turn: TurnContext, tool_names: list[str]) -> GenericChatRequest:
        tool_line = f"\nAvailable tools: {', '.join(tool_names)}\n" if tool_names else ""
        system_prompt = SYSTEM_PROMPT.format(tool_line=tool_line)
        return GenericChatRequest(
            messages=[
                {"role": "system", "content": system_prompt},
                *turn.context_messages(),
                {"role": "user", "content": self._classified_text(turn)},
            ],
            temperature=0.3,
            max_tokens=150,
            response_format=JSON_MODE,
        )

    @staticmethod
    def fallback(reason: str) -> IntentClassification:
        return IntentClassification(
            needs_tools=True,
            confidence="low",
            reasoning=f"Classification unavailable ({reason}); assuming tools may be needed",
        )

    async def run(
        self,
        turn: TurnContext,
        tool_names: list[str] | None = None,
    ) -> IntentClassification:
        """
        Classify the turn's message.

        Args:
            turn: Current turn (interpretation should already be set)
            tool_names: Names of the tools the agent could use

        Returns:
            IntentClassification; the safe default on any provider or parse failure
        """
        tool_names = tool_names or []
        key = (turn.agent_id, normalize_message(self._classified_text(turn)), tuple(sorted(tool_names)))
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Intent classification cache hit for agent '{turn.agent_id}'")
            return cached.model_copy(deep=True)

        resolved = await self._resolve(turn)
        try:
            response = await self._call(turn, resolved, self._build_request(turn, tool_names))
            data = parse_json_object(response.content)
            if not isinstance(data.get("needs_tools"), bool):
                raise ValueError(f"needs_tools is not a boolean: {data.get('needs_tools')!r}")
            if isinstance(data.get("confidence"), str):
                data["confidence"] = data["confidence"].lower()
            intent = IntentClassification.model_validate(data)
        except (ProviderRequestError, ValueError) as e:
            logger.warning(f"Intent classification failed, defaulting to tools: {e}")
            return self.fallback(type(e).__name__)

        self.cache.put(key, intent.model_copy(deep=True))
        return intent
