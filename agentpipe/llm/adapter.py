"""
Provider adapter: turn a generic chat request into one the model accepts.

``adapt()`` is a pure function of (request, model name, table). It drops every
field the matched family rejects, reports each drop as an AdapterWarning, and
emits the token limit under the family's parameter name. It never logs; the
stage layer logs the returned warnings.

Because it also accepts its own output, adapting twice is the same as adapting
once.
"""

from __future__ import annotations

from typing import Any, NamedTuple

from agentpipe.llm.capabilities import DEFAULT_TABLE, CapabilityTable, ModelCapabilities
from agentpipe.llm.models import AdapterWarning, GenericChatRequest, ProviderRequest


class AdaptedRequest(NamedTuple):
    request: ProviderRequest
    warnings: list[AdapterWarning]
    capabilities: ModelCapabilities


def _token_limit(request: GenericChatRequest | ProviderRequest) -> int | None:
    if isinstance(request, ProviderRequest):
        return request.token_limit
    return request.max_tokens


def adapt(
    request: GenericChatRequest | ProviderRequest,
    model_name: str,
    table: CapabilityTable = DEFAULT_TABLE,
) -> AdaptedRequest:
    """
    Adapt a request to the dialect of ``model_name``.

    Args:
        request: Generic request from a stage, or an already adapted request
        model_name: Model to adapt for (LiteLLM prefixes are allowed)
        table: Capability table to match against

    Returns:
        AdaptedRequest with the provider-legal request, one warning per
        dropped field, and the matched capabilities

    Example:
        >>> adapted = adapt(GenericChatRequest(messages=msgs, temperature=0.7), "o1-preview")
        >>> adapted.request.temperature is None
        True
        >>> [w.field for w in adapted.warnings]
        ['temperature']
    """
    caps = table.lookup(model_name)
    warnings: list[AdapterWarning] = []

    def drop(field: str) -> None:
        warnings.append(AdapterWarning(model=model_name, field=field))

    fields: dict[str, Any] = {"model": model_name, "messages": list(request.messages)}

    # An empty tools list means "no tools"; tool_choice is meaningless without tools
    if request.tools:
        if caps.supports_tools:
            fields["tools"] = list(request.tools)
            if request.tool_choice is not None:
                fields["tool_choice"] = request.tool_choice
        else:
            drop("tools")
            if request.tool_choice is not None:
                drop("tool_choice")

    if request.temperature is not None:
        if caps.supports_temperature:
            fields["temperature"] = request.temperature
        else:
            drop("temperature")

    if request.response_format is not None:
        if caps.supports_response_format:
            fields["response_format"] = request.response_format
        else:
            drop("response_format")

    limit = _token_limit(request)
    if limit is not None:
        fields[caps.token_limit_param] = limit

    return AdaptedRequest(ProviderRequest(**fields), warnings, caps)
