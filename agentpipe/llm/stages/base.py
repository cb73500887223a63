"""
Base class for pipeline stages.

A stage is one LLM invocation within a turn. Every stage follows the same
steps:

    1. resolve its model through the ModelResolver for its context
    2. build a GenericChatRequest
    3. adapt() it to the resolved model's dialect
    4. send it through the ProviderClient
    5. append a PipelineStageRecord to the turn's trace

Steps 3-5 live in ``_call`` so every stage records its request, response and
timing the same way, including when the call fails or the turn is canceled.

The two auxiliary stages that run on every turn memoize their parsed results
in a StageResultCache, so a repeated message skips the model call.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import UTC, datetime
from typing import Any, Callable, Hashable

from cachetools import TTLCache

from agentpipe.llm.adapter import adapt
from agentpipe.llm.capabilities import DEFAULT_TABLE, CapabilityTable
from agentpipe.llm.models import (
    GenericChatRequest,
    PipelineStageRecord,
    ProviderResponse,
    ResolutionContext,
    ResolvedModel,
    TokenUsage,
)
from agentpipe.llm.provider import ProviderClient
from agentpipe.llm.resolver import ModelResolver
from agentpipe.llm.turn import TurnContext

logger = logging.getLogger(__name__)

JSON_MODE = {"type": "json_object"}


def parse_json_object(content: str | None) -> dict[str, Any]:
    """
    Parse a JSON object from model output.

    Families without JSON mode sometimes wrap the object in prose or a code
    fence, so parsing starts at the first '{' and ends at the last '}'.

    Raises:
        ValueError: If no JSON object can be parsed
    """
    if not content:
        raise ValueError("Empty response content")
    start = content.find("{")
    end = content.rfind("}")
    if start == -1 or end < start:
        raise ValueError(f"No JSON object in response: {content[:100]!r}")
    data = json.loads(content[start:end + 1])
    if not isinstance(data, dict):
        raise ValueError("Response JSON is not an object")
    return data


def normalize_message(message: str) -> str:
    """Lowercase and collapse whitespace so trivially different messages share a cache key."""
    return " ".join(message.lower().split())


class StageResultCache:
    """
    Short-lived memo of a stage's parsed results.

    Backed by ``cachetools.TTLCache``: entries expire ``ttl_seconds`` after they
    were stored, and when the cache is full the least recently used entry is
    evicted. A zero size or TTL disables caching.

    Args:
        max_entries: Maximum number of cached results
        ttl_seconds: Lifetime of one entry
        clock: Monotonic clock in seconds (injected by tests)
    """

    def __init__(
        self,
        max_entries: int,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.enabled = max_entries > 0 and ttl_seconds > 0
        self._ttl = ttl_seconds
        self._cache: TTLCache = TTLCache(maxsize=max(max_entries, 1), ttl=ttl_seconds, timer=clock)
        self._max_entries = max_entries
        self._hits = 0
        self._misses = 0

    def get(self, key: Hashable) -> Any | None:
        if not self.enabled:
            return None
        value = self._cache.get(key)
        if value is None:
            self._misses += 1
        else:
            self._hits += 1
        return value

    def put(self, key: Hashable, value: Any) -> None:
        if self.enabled:
            self._cache[key] = value

    def stats(self) -> dict[str, float | int]:
        """Return cache size, bound, TTL and hit statistics."""
        self._cache.expire()
        lookups = self._hits + self._misses
        return {
            "size": len(self._cache),
            "max_size": self._max_entries,
            "ttl_seconds": self._ttl,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / lookups if lookups else 0.0,
        }


class PipelineStage:
    """
    Shared plumbing for the four pipeline stages.

    Subclasses set ``name`` and ``context`` and implement their own ``run``.

    Args:
        resolver: Model resolver shared by all stages
        client: Provider client shared by all stages
        table: Capability table used by the adapter
    """

    name: str = "stage"
    context: ResolutionContext = ResolutionContext.FAST

    def __init__(
        self,
        resolver: ModelResolver,
        client: ProviderClient,
        table: CapabilityTable = DEFAULT_TABLE,
    ):
        self._resolver = resolver
        self._client = client
        self._table = table

    async def _resolve(self, turn: TurnContext) -> ResolvedModel:
        return await self._resolver.get_agent_model(turn.agent_id, self.context)

    async def _call(
        self,
        turn: TurnContext,
        resolved: ResolvedModel,
        request: GenericChatRequest,
    ) -> ProviderResponse:
        """
        Adapt, send and record one request.

        The stage record is appended whether the call succeeds, fails or is
        canceled; ``error`` is set in the latter two cases.

        Raises:
            ProviderRequestError: If the provider call failed after retries
        """
        adapted = adapt(request, resolved.litellm_model, self._table)
        for warning in adapted.warnings:
            logger.info(
                f"[{self.name}] Dropped unsupported '{warning.field}' for {warning.model} "
                f"({adapted.capabilities.family} family)"
            )

        started_at = datetime.now(UTC)
        start = time.perf_counter()
        response: ProviderResponse | None = None
        error: str | None = None
        try:
            response = await self._client.complete(adapted.request, resolved.provider, turn.user_id)
            return response
        except asyncio.CancelledError:
            error = "cancelled"
            raise
        except Exception as e:
            error = str(e)
            raise
        finally:
            turn.trace.add_stage(
                PipelineStageRecord(
                    stage_name=self.name,
                    provider=resolved.provider,
                    model=resolved.model,
                    request=adapted.request,
                    response=response,
                    warnings=adapted.warnings,
                    started_at=started_at,
                    duration_ms=(time.perf_counter() - start) * 1000,
                    token_usage=response.usage if response is not None else TokenUsage(),
                    error=error,
                )
            )
