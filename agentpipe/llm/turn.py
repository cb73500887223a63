"""Per-turn working state passed between the Orchestrator and the stages."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from agentpipe.llm.errors import ErrorKind
from agentpipe.llm.models import (
    ContextualInterpretation,
    IntentClassification,
    ToolResult,
    TurnState,
)
from agentpipe.llm.trace import DebugTrace


class TurnContext(BaseModel):
    """
    Everything the stages of one turn need to know.

    ``history`` is the prior conversation as role/content dicts, oldest first.
    ``interpretation`` and ``intent`` are filled in by the first two stages.
    """

    agent_id: str
    message: str
    user_id: str | None = None
    history: list[dict[str, Any]] = Field(default_factory=list)
    trace: DebugTrace
    interpretation: ContextualInterpretation | None = None
    intent: IntentClassification | None = None

    def recent_history(self, window: int, max_chars: int | None = None) -> list[dict[str, Any]]:
        """Return the last ``window`` messages, each content truncated to ``max_chars``."""
        if window <= 0:
            return []
        recent = self.history[-window:]
        if max_chars is None:
            return list(recent)
        return [
            {**msg, "content": str(msg.get("content") or "")[:max_chars]}
            for msg in recent
        ]

    def context_messages(self) -> list[dict[str, Any]]:
        """Extra system messages every stage after ContextualAwareness receives."""
        if self.interpretation is None:
            return []
        return [{"role": "system", "content": self.interpretation.as_system_context()}]


class TurnResult(BaseModel):
    """
    Final outcome of a turn.

    Attributes:
        text: User-visible answer (an apology if the main model failed)
        state: Terminal state (always Done for a returned result)
        model: LiteLLM model string of the final MainCaller call
        trace: Complete debug trace
        tool_results: Every ToolExecutor invocation, in execution order
        error_kind: Set when the answer is an apology for a provider failure
    """

    text: str
    state: TurnState
    model: str | None = None
    trace: DebugTrace
    tool_results: list[ToolResult] = Field(default_factory=list)
    error_kind: ErrorKind | None = None
