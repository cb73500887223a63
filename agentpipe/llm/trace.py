"""
Debug trace recorder for one user turn.

The trace collects, in order, every stage record and every tool execution of
a turn, plus the state transitions the Orchestrator took. It is created by the
Orchestrator, filled in by the stages and the ToolExecutor, finalized exactly
once (Done or Canceled) and handed to the caller. It is never shared between
turns.

``export()`` produces the JSON shape used by trace viewers and persisted as
conversation metadata.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, PrivateAttr

from agentpipe.llm.models import PipelineStageRecord, TokenUsage, ToolResult, TurnState

logger = logging.getLogger(__name__)


class DebugTrace(BaseModel):
    """Ordered record of one turn's stages and tool calls."""

    turn_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    agent_id: str | None = None
    stages: list[PipelineStageRecord] = Field(default_factory=list)
    tool_calls: list[ToolResult] = Field(default_factory=list)
    states: list[TurnState] = Field(default_factory=list)
    state: TurnState | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    total_duration_ms: float | None = None

    _start: float = PrivateAttr(default_factory=time.perf_counter)

    def add_stage(self, record: PipelineStageRecord) -> None:
        self.stages.append(record)

    def add_tool_result(self, result: ToolResult) -> None:
        self.tool_calls.append(result)

    def transition(self, state: TurnState) -> None:
        """Record a state transition."""
        previous = self.states[-1].value if self.states else "start"
        self.states.append(state)
        self.state = state
        logger.debug(f"Turn {self.turn_id}: {previous} -> {state.value}")

    @property
    def finished(self) -> bool:
        return self.total_duration_ms is not None

    def finish(self, state: TurnState) -> None:
        """Enter a terminal state and stamp the turn's wall-clock duration."""
        if self.finished:
            return
        if state not in (TurnState.DONE, TurnState.CANCELED):
            raise ValueError(f"{state.value} is not a terminal state")
        self.transition(state)
        self.total_duration_ms = (time.perf_counter() - self._start) * 1000

    @property
    def token_usage(self) -> TokenUsage:
        total = TokenUsage()
        for record in self.stages:
            total = total + record.token_usage
        return total

    @property
    def total_tokens(self) -> int:
        return self.token_usage.total_tokens

    def stage_names(self) -> list[str]:
        return [record.stage_name for record in self.stages]

    def export(self) -> dict[str, Any]:
        """Return the JSON-serializable trace."""
        return {
            "turnId": self.turn_id,
            "agentId": self.agent_id,
            "state": self.state.value if self.state else None,
            "states": [state.value for state in self.states],
            "stages": [record.model_dump(mode="json") for record in self.stages],
            "toolCalls": [result.model_dump(mode="json") for result in self.tool_calls],
            "totalTokens": self.total_tokens,
            "totalDurationMs": self.total_duration_ms,
        }
