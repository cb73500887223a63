"""
Exception hierarchy for the orchestration pipeline.

Exception Hierarchy:
    LLMError (base)
    ├── ProviderRequestError - provider rejected or failed the adapted request
    ├── ResolutionFailure - agent preference lookup failed (recovered locally)
    ├── ToolExecutionError - an integration failed to run a tool
    └── CapabilityMismatchError - selected model cannot satisfy a mid-turn requirement

Only ProviderRequestError raised by the MainCaller ever reaches the user, and
then only as the apology text from ``user_message``; provider error strings are
kept for logs and the debug trace.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Failure categories that drive retry decisions."""

    RATE_LIMIT = "rate_limit"
    QUOTA = "quota"
    TIMEOUT = "timeout"
    SAFETY = "safety"
    MALFORMED = "malformed"
    AUTH = "auth"
    UNAVAILABLE = "unavailable"
    TOOL_FAILURE = "tool_failure"
    UNKNOWN = "unknown"


_USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.RATE_LIMIT: (
        "I'm getting too many requests right now and couldn't finish your answer. "
        "Please try again in a minute."
    ),
    ErrorKind.QUOTA: (
        "The AI provider for this agent has run out of quota, so I couldn't answer. "
        "Please check the provider account or try again later."
    ),
    ErrorKind.TIMEOUT: (
        "The AI provider took too long to respond, so I stopped waiting. "
        "Please try again."
    ),
    ErrorKind.SAFETY: (
        "I can't help with that request because the provider's safety filter blocked it."
    ),
    ErrorKind.AUTH: (
        "I couldn't reach the AI provider because its credentials were rejected. "
        "Please check this agent's API key."
    ),
    ErrorKind.UNAVAILABLE: (
        "The AI provider is temporarily unavailable. Please try again shortly."
    ),
}

_DEFAULT_USER_MESSAGE = (
    "Sorry, something went wrong while generating a response. Please try again."
)


class LLMError(Exception):
    """
    Base exception for all pipeline errors.

    Args:
        message: Human-readable description (safe for logs, not shown to users)
        cause: The underlying exception, if any
    """

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class ProviderRequestError(LLMError):
    """
    Raised when a provider call fails after the retry policy gave up.

    Attributes:
        kind: Failure category (rate limit, safety block, malformed request, ...)
        model: LiteLLM model string the request was sent to
        attempts: Number of attempts made before giving up
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        model: str | None = None,
        attempts: int = 1,
        cause: BaseException | None = None,
    ):
        super().__init__(message, cause=cause)
        self.kind = kind
        self.model = model
        self.attempts = attempts

    @property
    def user_message(self) -> str:
        """A specific, user-safe explanation of the failure."""
        return _USER_MESSAGES.get(self.kind, _DEFAULT_USER_MESSAGE)


class ResolutionFailure(LLMError):
    """Raised when an agent's model preference cannot be loaded."""

    def __init__(self, agent_id: str, cause: BaseException | None = None):
        super().__init__(f"Could not load model preference for agent {agent_id!r}", cause=cause)
        self.agent_id = agent_id


class ToolExecutionError(LLMError):
    """
    Raised by an integration when a tool cannot be executed.

    The ToolExecutor converts this into a failed ToolResult; it never
    escapes a turn.
    """

    def __init__(self, tool_name: str, message: str, cause: BaseException | None = None):
        super().__init__(message, cause=cause)
        self.tool_name = tool_name


class CapabilityMismatchError(LLMError):
    """
    Raised when the selected model lacks a capability required mid-turn.

    Example:
        raise CapabilityMismatchError(model="o1-preview", requirement="tools")
    """

    def __init__(self, model: str, requirement: str):
        super().__init__(f"Model {model!r} does not support {requirement}")
        self.model = model
        self.requirement = requirement
