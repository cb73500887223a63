"""
Provider client: the single place that talks to LiteLLM.

Stages hand the client an already adapted ProviderRequest. The client looks up
the user's API key, sends the request through ``litellm.acompletion`` under a
per-call timeout and the shared RetryPolicy, and converts the raw response into
a ProviderResponse. Any failure that survives the retry policy is raised as a
ProviderRequestError carrying its ErrorKind; a response that cannot be parsed
is raised the same way as MALFORMED.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any

from litellm import acompletion

from agentpipe.llm.errors import ErrorKind, ProviderRequestError
from agentpipe.llm.models import ProviderRequest, ProviderResponse, TokenUsage, ToolCallRequest
from agentpipe.llm.retry import RetryPolicy, classify_provider_error

if TYPE_CHECKING:
    from agentpipe.stores import CredentialStore

logger = logging.getLogger(__name__)


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _int_or_zero(value: Any) -> int:
    return value if isinstance(value, int) else 0


def _parse_arguments(tool_name: str, raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        logger.warning(f"Tool '{tool_name}' arguments are not valid JSON: {raw!r}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def parse_response(response: Any) -> ProviderResponse:
    """
    Convert a LiteLLM ModelResponse into a ProviderResponse.

    LiteLLM uses the OpenAI response shape for every provider:
    ``response.choices[0].message`` holds ``content`` and ``tool_calls``,
    and ``response.usage`` holds the token counts.

    Raises:
        ValueError: If the response has no choices, no message, or a tool call without a name
    """
    choices = getattr(response, "choices", None)
    if not choices:
        raise ValueError("Response has no choices")
    choice = choices[0]
    message = getattr(choice, "message", None)
    if message is None:
        raise ValueError("Response choice has no message")

    tool_calls = []
    for tool_call in getattr(message, "tool_calls", None) or []:
        function = getattr(tool_call, "function", None)
        name = _str_or_none(getattr(function, "name", None))
        if not name:
            raise ValueError("Tool call has no function name")
        tool_calls.append(
            ToolCallRequest(
                tool_name=name,
                arguments=_parse_arguments(name, getattr(function, "arguments", None)),
                call_id=_str_or_none(getattr(tool_call, "id", None)),
            )
        )

    usage = getattr(response, "usage", None)
    return ProviderResponse(
        content=_str_or_none(getattr(message, "content", None)),
        tool_calls=tool_calls,
        model=_str_or_none(getattr(response, "model", None)),
        finish_reason=_str_or_none(getattr(choice, "finish_reason", None)),
        usage=TokenUsage(
            prompt_tokens=_int_or_zero(getattr(usage, "prompt_tokens", 0)),
            completion_tokens=_int_or_zero(getattr(usage, "completion_tokens", 0)),
        ),
    )


class ProviderClient:
    """
    Sends adapted requests to a provider through LiteLLM.

    Args:
        credentials: Store returning the user's key per provider
        retry_policy: Shared retry/backoff policy
        timeout: Timeout in seconds for one provider call (per attempt)
    """

    def __init__(
        self,
        credentials: CredentialStore,
        retry_policy: RetryPolicy | None = None,
        timeout: float = 60.0,
    ):
        self._credentials = credentials
        self._retry_policy = retry_policy or RetryPolicy()
        self._timeout = timeout

    async def complete(
        self,
        request: ProviderRequest,
        provider: str,
        user_id: str | None = None,
    ) -> ProviderResponse:
        """
        Send one request and return the normalized response.

        Args:
            request: Adapted request; ``request.model`` is the LiteLLM model string
            provider: Provider family used for the credential lookup
            user_id: User the turn runs for

        Raises:
            ProviderRequestError: If the key is missing, the call failed after retries,
                or the response could not be parsed
        """
        api_key = await self._credentials.get_api_key(user_id, provider)
        if not api_key:
            # Better error than a cryptic 401 from the provider
            raise ProviderRequestError(
                f"No API key configured for provider '{provider}'",
                kind=ErrorKind.AUTH,
                model=request.model,
                attempts=0,
            )

        call_kwargs = request.payload()
        call_kwargs["api_key"] = api_key
        attempts = 0

        async def attempt() -> Any:
            nonlocal attempts
            attempts += 1
            return await asyncio.wait_for(acompletion(**call_kwargs), timeout=self._timeout)

        try:
            response = await self._retry_policy.run(attempt, classify_provider_error)
        except Exception as e:
            kind = classify_provider_error(e)
            raise ProviderRequestError(
                f"LLM API call to {request.model} failed ({kind.value}): {e}",
                kind=kind,
                model=request.model,
                attempts=attempts,
                cause=e,
            ) from e

        try:
            return parse_response(response)
        except (ValueError, AttributeError, TypeError, IndexError, KeyError) as e:
            # pydantic's ValidationError is a ValueError
            raise ProviderRequestError(
                f"Malformed response from {request.model}: {e}",
                kind=ErrorKind.MALFORMED,
                model=request.model,
                attempts=attempts,
                cause=e,
            ) from e
