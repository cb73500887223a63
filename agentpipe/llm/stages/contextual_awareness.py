"""
ContextualAwareness stage: resolve what the user actually means.

Short follow-ups like "send it to him too" only make sense against the
conversation. This stage asks a fast model to rewrite the message with pronouns
and ellipsis resolved, and the result is injected as a system message into
every later stage of the turn.

If the call or its JSON fails, the turn continues with the message taken
literally at low confidence.

Interpretations are cached per agent, normalized message and the last two
history messages (five minutes by default), so a repeated message in the same
conversation is not analyzed twice. Fallbacks are never cached.
"""

from __future__ import annotations

import logging

from agentpipe.llm.errors import ProviderRequestError
from agentpipe.llm.models import ContextualInterpretation, GenericChatRequest, ResolutionContext
from agentpipe.llm.stages.base import (
    JSON_MODE,
    PipelineStage,
    StageResultCache,
    normalize_message,
    parse_json_object,
)
from agentpipe.llm.turn import TurnContext

logger = logging.getLogger(__name__)

HISTORY_CHARS = 200
CACHE_MAX_ENTRIES = 500
CACHE_TTL_SECONDS = 300.0
# History messages, and characters of each, that distinguish cache keys
CACHE_HISTORY_MESSAGES = 2
CACHE_HISTORY_CHARS = 50

SYSTEM_PROMPT = """You analyze a user's latest message in the context of the conversation so far.

Resolve pronouns, references ("it", "that one", "the same as before") and ellipsis against the history.
Do not answer the message; only describe what it means.

Respond with a JSON object with exactly these keys:
{
  "interpreted_meaning": "the message rewritten so it stands on its own",
  "user_intent": "what the user wants to achieve, in a few words",
  "resolved_references": {"reference as written": "what it refers to"},
  "contextual_factors": ["facts from the history that matter for this message"],
  "confidence": "high" | "medium" | "low",
  "suggested_clarifications": ["questions to ask if the message is still ambiguous"]
}"""


class ContextualAwareness(PipelineStage):
    """
    First stage of every turn.

    Args:
        history_window: Number of recent messages to include
        cache: Result cache; a 500-entry, five-minute cache if omitted
    """

    name = "contextual_awareness"
    context = ResolutionContext.FAST

    def __init__(
        self,
        *args,
        history_window: int = 10,
        cache: StageResultCache | None = None,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self._history_window = history_window
        self.cache = cache or StageResultCache(CACHE_MAX_ENTRIES, CACHE_TTL_SECONDS)

    def _cache_key(self, turn: TurnContext) -> tuple:
        tail = turn.recent_history(
            min(self._history_window, CACHE_HISTORY_MESSAGES), max_chars=CACHE_HISTORY_CHARS
        )
        context = tuple((msg.get("role", "user"), msg["content"]) for msg in tail)
        return (turn.agent_id, normalize_message(turn.message), context)

    def _build_request(self, turn: TurnContext) -> GenericChatRequest:
        history = turn.recent_history(self._history_window, max_chars=HISTORY_CHARS)
        if history:
            history_text = "\n".join(f"{msg.get('role', 'user')}: {msg['content']}" for msg in history)
        else:
            history_text = "(no previous messages)"
        user_content = f"Conversation history:\n{history_text}\n\nLatest message:\n{turn.message}"
        return GenericChatRequest(
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": user_content},
            ],
            temperature=0.3,
            max_tokens=500,
            response_format=JSON_MODE,
        )

    @staticmethod
    def fallback(message: str) -> ContextualInterpretation:
        """Take the message literally."""
        return ContextualInterpretation(
            original_message=message,
            interpreted_meaning=message,
            confidence="low",
        )

    async def run(self, turn: TurnContext) -> ContextualInterpretation:
        """Interpret the turn's message. Never raises for provider or parse failures."""
        key = self._cache_key(turn)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Contextual analysis cache hit for agent '{turn.agent_id}'")
            return cached.model_copy(update={"original_message": turn.message}, deep=True)

        resolved = await self._resolve(turn)
        try:
            response = await self._call(turn, resolved, self._build_request(turn))
            data = parse_json_object(response.content)
            data["original_message"] = turn.message
            if isinstance(data.get("confidence"), str):
                data["confidence"] = data["confidence"].lower()
            if not data.get("interpreted_meaning"):
                data["interpreted_meaning"] = turn.message
            interpretation = ContextualInterpretation.model_validate(data)
        except (ProviderRequestError, ValueError) as e:
            logger.warning(f"Contextual analysis failed, using message as-is: {e}")
            return self.fallback(turn.message)

        self.cache.put(key, interpretation.model_copy(deep=True))
        return interpretation
