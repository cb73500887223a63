"""
Data models shared across the orchestration pipeline.

Request/response records flow through the pipeline like this:

    GenericChatRequest --adapt()--> ProviderRequest --ProviderClient--> ProviderResponse
                                          |                                  |
                                          +------> PipelineStageRecord <-----+

ToolCallRequest/ToolResult describe one tool invocation; a failed ToolResult is
the only input the RetryAnalyzer stage accepts.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


class ResolutionContext(str, Enum):
    """What a resolved model is going to be used for."""

    FAST = "fast"
    MAIN = "main"
    EMBEDDING = "embedding"


class TurnState(str, Enum):
    """States of the per-turn state machine."""

    AWAITING_CONTEXT = "awaiting_context"
    AWAITING_INTENT = "awaiting_intent"
    AWAITING_MAIN_RESPONSE = "awaiting_main_response"
    AWAITING_TOOL_EXECUTION = "awaiting_tool_execution"
    AWAITING_RETRY_DECISION = "awaiting_retry_decision"
    DONE = "done"
    CANCELED = "canceled"


class AgentModelPreference(BaseModel):
    """
    One agent's model settings, as stored by the agent-preferences collaborator.

    The pipeline only reads these; they change through explicit user settings.
    """

    agent_id: str = Field(min_length=1)
    provider: str = Field(min_length=1, description="Provider family, e.g. 'openai'")
    model: str = Field(min_length=1, description="Provider model identifier")
    params: dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form parameter bag, e.g. {'temperature': 0.2, 'max_tokens': 800}",
    )
    embedding_model: str | None = Field(None, description="Optional embedding model override")


class ResolvedModel(BaseModel):
    """Output of the ModelResolver: which provider/model to call for a context."""

    provider: str
    model: str
    context: ResolutionContext
    params: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @property
    def litellm_model(self) -> str:
        """Model string in LiteLLM's ``provider/model`` routing format."""
        if self.model.startswith(f"{self.provider}/"):
            return self.model
        return f"{self.provider}/{self.model}"


class TokenUsage(BaseModel):
    """Token counts reported by the provider for one call."""

    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)

    model_config = ConfigDict(frozen=True)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )


class GenericChatRequest(BaseModel):
    """
    Provider-independent chat request built by a pipeline stage.

    Example:
        >>> GenericChatRequest(
        ...     messages=[{"role": "user", "content": "hi"}],
        ...     temperature=0.7,
        ...     max_tokens=1200,
        ... )
    """

    messages: list[dict[str, Any]] = Field(min_length=1)
    tools: list[dict[str, Any]] | None = None
    tool_choice: str | dict[str, Any] | None = None
    temperature: float | None = Field(None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(None, gt=0)
    response_format: dict[str, Any] | None = None


class ProviderRequest(BaseModel):
    """
    A request that is legal for the matched model family.

    Exactly one token-limit field may be set; which one depends on the family.
    """

    model: str
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]] | None = None
    tool_choice: str | dict[str, Any] | None = None
    temperature: float | None = None
    response_format: dict[str, Any] | None = None
    max_tokens: int | None = None
    max_completion_tokens: int | None = None

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _single_token_limit(self) -> ProviderRequest:
        if self.max_tokens is not None and self.max_completion_tokens is not None:
            raise ValueError("Only one of max_tokens / max_completion_tokens may be set")
        return self

    @property
    def token_limit(self) -> int | None:
        return self.max_completion_tokens if self.max_completion_tokens is not None else self.max_tokens

    def payload(self) -> dict[str, Any]:
        """Keyword arguments for the provider call, with unset fields omitted."""
        return self.model_dump(exclude_none=True)


class AdapterWarning(BaseModel):
    """A field the adapter removed because the model family does not accept it."""

    model: str
    field: str
    reason: Literal["unsupported"] = "unsupported"

    model_config = ConfigDict(frozen=True)


class ToolCallRequest(BaseModel):
    """A tool invocation requested by the model."""

    tool_name: str = Field(min_length=1)
    provider: str | None = Field(None, description="Integration that owns the tool")
    arguments: dict[str, Any] = Field(default_factory=dict)
    call_id: str | None = Field(None, description="Provider's tool-call id")

    model_config = ConfigDict(frozen=True)


class ProviderResponse(BaseModel):
    """Normalized provider response."""

    content: str | None = None
    tool_calls: list[ToolCallRequest] = Field(default_factory=list)
    model: str | None = None
    finish_reason: str | None = None
    usage: TokenUsage = Field(default_factory=TokenUsage)


class ToolResult(BaseModel):
    """Outcome of one ToolExecutor invocation."""

    tool_name: str
    call_id: str | None = None
    arguments: dict[str, Any] = Field(default_factory=dict)
    success: bool
    output: str | None = None
    error_message: str | None = None
    duration_ms: float = Field(ge=0)
    attempt: int = Field(default=1, ge=1)

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _failure_has_message(self) -> ToolResult:
        if not self.success and not self.error_message:
            raise ValueError("A failed ToolResult needs an error_message")
        return self


class PipelineStageRecord(BaseModel):
    """One stage invocation as it appears in the debug trace."""

    stage_name: str
    provider: str
    model: str
    request: ProviderRequest
    response: ProviderResponse | None = None
    warnings: list[AdapterWarning] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    duration_ms: float = Field(ge=0)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    error: str | None = None

    model_config = ConfigDict(frozen=True)


# --- Stage results ---

Confidence = Literal["high", "medium", "low"]


class ContextualInterpretation(BaseModel):
    """What the user meant, with references resolved against the conversation."""

    original_message: str
    interpreted_meaning: str
    user_intent: str = ""
    resolved_references: dict[str, str] = Field(default_factory=dict)
    contextual_factors: list[str] = Field(default_factory=list)
    confidence: Confidence = "medium"
    suggested_clarifications: list[str] = Field(default_factory=list)

    def as_system_context(self) -> str:
        """Render as the extra system message injected into later stages."""
        lines = [
            "CONTEXTUAL UNDERSTANDING:",
            f"- Original message: {self.original_message}",
            f"- Interpreted meaning: {self.interpreted_meaning}",
        ]
        if self.user_intent:
            lines.append(f"- User intent: {self.user_intent}")
        if self.resolved_references:
            refs = ", ".join(f"'{k}' = {v}" for k, v in self.resolved_references.items())
            lines.append(f"- Resolved references: {refs}")
        if self.contextual_factors:
            lines.append(f"- Contextual factors: {'; '.join(self.contextual_factors)}")
        lines.append(f"- Confidence: {self.confidence}")
        return "\n".join(lines)


class IntentClassification(BaseModel):
    """Whether the turn needs tools."""

    needs_tools: bool
    confidence: Confidence = "medium"
    reasoning: str = ""
    suggested_tools: list[str] = Field(default_factory=list)


class MainResponse(BaseModel):
    """Text answer and/or tool calls from one MainCaller invocation."""

    text: str = ""
    tool_calls: list[ToolCallRequest] = Field(default_factory=list)
    model: str
    usage: TokenUsage = Field(default_factory=TokenUsage)


class RetryAnalysis(BaseModel):
    """Verdict on a failed tool call: corrected arguments, or give up."""

    should_retry: bool
    corrected_arguments: dict[str, Any] | None = None
    reasoning: str = ""
    confidence: Confidence = "low"

    @model_validator(mode="after")
    def _retry_has_arguments(self) -> RetryAnalysis:
        if self.should_retry and self.corrected_arguments is None:
            raise ValueError("A retry verdict needs corrected_arguments")
        return self
