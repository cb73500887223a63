"""
Retry policy and provider error classification.

All retries in the pipeline go through one RetryPolicy, parameterized by error
kind. Rate-limit, quota and unavailable (5xx, connection) errors are retried
with exponential backoff; safety blocks, malformed requests, auth failures and
timeouts are not. Tool failures get two attempts in total: the original call
and one analyzer-guided retry, which the Orchestrator drives using
``max_attempts(ErrorKind.TOOL_FAILURE)``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from litellm.exceptions import (
    APIConnectionError,
    AuthenticationError,
    BadRequestError,
    ContentPolicyViolationError,
    InternalServerError,
    PermissionDeniedError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from agentpipe.config.settings import LLMSettings
from agentpipe.llm.errors import ErrorKind, ProviderRequestError, ToolExecutionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS: dict[ErrorKind, int] = {
    ErrorKind.RATE_LIMIT: 3,
    ErrorKind.QUOTA: 3,
    ErrorKind.UNAVAILABLE: 3,
    ErrorKind.TOOL_FAILURE: 2,
}


def _kind_from_status(status_code: int | None) -> ErrorKind:
    if status_code is None:
        return ErrorKind.UNKNOWN
    if status_code == 429:
        return ErrorKind.RATE_LIMIT
    if status_code in (401, 403):
        return ErrorKind.AUTH
    if status_code in (408, 504):
        return ErrorKind.TIMEOUT
    if status_code in (400, 404, 413, 422):
        return ErrorKind.MALFORMED
    if status_code >= 500:
        return ErrorKind.UNAVAILABLE
    return ErrorKind.UNKNOWN


def classify_provider_error(exc: BaseException) -> ErrorKind:
    """
    Map an exception raised by a provider call to an ErrorKind.

    LiteLLM normalizes every provider's errors to OpenAI-style exception
    classes; anything else is classified by its ``status_code`` if present.
    """
    if isinstance(exc, ProviderRequestError):
        return exc.kind
    if isinstance(exc, ToolExecutionError):
        return ErrorKind.TOOL_FAILURE
    if isinstance(exc, RateLimitError):
        return ErrorKind.QUOTA if "quota" in str(exc).lower() else ErrorKind.RATE_LIMIT
    # ContentPolicyViolationError is a BadRequestError; check it first
    if isinstance(exc, ContentPolicyViolationError):
        return ErrorKind.SAFETY
    if isinstance(exc, BadRequestError):
        return ErrorKind.MALFORMED
    # Timeout is an APIConnectionError; check it first
    if isinstance(exc, (Timeout, asyncio.TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, (AuthenticationError, PermissionDeniedError)):
        return ErrorKind.AUTH
    if isinstance(exc, (ServiceUnavailableError, APIConnectionError, InternalServerError)):
        return ErrorKind.UNAVAILABLE
    return _kind_from_status(getattr(exc, "status_code", None))


class RetryPolicy:
    """
    Attempt budgets and exponential backoff per error kind.

    Args:
        attempts: Total attempts per kind; kinds not listed get one attempt
        base_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound on any single delay
        sleep: Awaitable sleep function (injected by tests)

    Example::

        policy = RetryPolicy(base_delay=1.0, max_delay=30.0)
        response = await policy.run(lambda: acompletion(**payload))
    """

    def __init__(
        self,
        attempts: dict[ErrorKind, int] | None = None,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._attempts = {**DEFAULT_ATTEMPTS, **(attempts or {})}
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: LLMSettings,
        tool_max_attempts: int = 2,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> RetryPolicy:
        return cls(
            attempts={
                ErrorKind.RATE_LIMIT: settings.max_attempts,
                ErrorKind.QUOTA: settings.max_attempts,
                ErrorKind.UNAVAILABLE: settings.max_attempts,
                ErrorKind.TOOL_FAILURE: tool_max_attempts,
            },
            base_delay=settings.backoff_base,
            max_delay=settings.backoff_max,
            sleep=sleep,
        )

    def max_attempts(self, kind: ErrorKind) -> int:
        return self._attempts.get(kind, 1)

    def should_retry(self, kind: ErrorKind, attempt: int) -> bool:
        """Whether another attempt is allowed after ``attempt`` attempts failed with ``kind``."""
        return attempt < self.max_attempts(kind)

    def backoff(self, attempt: int) -> float:
        """Delay after the given failed attempt: base, 2*base, 4*base, ... capped at max."""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        classify: Callable[[BaseException], ErrorKind] = classify_provider_error,
    ) -> T:
        """
        Run an operation, retrying the error kinds that have a budget above one.

        The last exception is re-raised once the budget for its kind is spent.
        Cancellation is never retried.
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as e:
                kind = classify(e)
                if not self.should_retry(kind, attempt):
                    raise
                delay = self.backoff(attempt)
                logger.warning(
                    f"Retry {attempt}/{self.max_attempts(kind) - 1} after {kind.value} error "
                    f"(waiting {delay:.1f}s): {e}"
                )
                await self._sleep(delay)
                attempt += 1
