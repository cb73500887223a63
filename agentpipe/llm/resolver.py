"""
Per-agent model resolution with a short-lived cache.

Every stage asks the resolver which model to call for its context:

    fast       auxiliary stages (context, intent, retry analysis); slow
               flagship models are swapped for a fast sibling
    main       the agent's exact preference, including its params
    embedding  the agent's embedding override, else the provider default

Results are cached per (agent_id, context) for a fixed TTL. The cache is a
``cachetools.FIFOCache``: when it is full, the entry inserted longest ago is
evicted. Expiry is checked against an injected clock on every read so tests can
move time without sleeping.

A failing preference store never fails the turn. The resolver logs the failure
and answers with the system default, which is not cached so the next call
retries the store.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from cachetools import FIFOCache

from agentpipe.config.settings import ResolverSettings
from agentpipe.llm.capabilities import normalize_model_name
from agentpipe.llm.errors import ResolutionFailure
from agentpipe.llm.models import AgentModelPreference, ResolutionContext, ResolvedModel

if TYPE_CHECKING:
    from agentpipe.stores import PreferenceStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlowModelRule:
    """A slow model prefix, its fast sibling, and name markers that mean 'already fast'."""

    prefix: str
    fast_sibling: str
    fast_markers: tuple[str, ...] = ()

    def matches(self, model_name: str) -> bool:
        name = normalize_model_name(model_name)
        if not name.startswith(self.prefix):
            return False
        return not any(marker in name for marker in self.fast_markers)


SLOW_MODELS: tuple[SlowModelRule, ...] = (
    SlowModelRule("gpt-4o", "gpt-4o-mini", ("mini",)),
    SlowModelRule("gpt-4.1", "gpt-4.1-mini", ("mini", "nano")),
    SlowModelRule("gpt-4", "gpt-4o-mini"),
    SlowModelRule("gpt-5", "gpt-5-mini", ("mini", "nano")),
    SlowModelRule("o1", "gpt-4o-mini"),
    SlowModelRule("o3", "gpt-4o-mini"),
    SlowModelRule("o4", "gpt-4o-mini"),
    SlowModelRule("claude-", "claude-3-5-haiku-latest", ("haiku",)),
    SlowModelRule("gemini-", "gemini-2.0-flash", ("flash",)),
    SlowModelRule("deepseek-reasoner", "deepseek-chat"),
)

EMBEDDING_DEFAULTS: dict[str, str] = {
    "openai": "text-embedding-3-small",
    "gemini": "text-embedding-004",
}


def fast_sibling(model_name: str) -> str | None:
    """
    Return the fast sibling for a slow model, or None if the model is already fast.

    Example:
        >>> fast_sibling("gpt-4o")
        'gpt-4o-mini'
        >>> fast_sibling("gpt-4o-mini") is None
        True
    """
    name = normalize_model_name(model_name)
    # The longest matching prefix decides, so "gpt-4o-mini" never falls through to "gpt-4"
    for rule in sorted(SLOW_MODELS, key=lambda r: len(r.prefix), reverse=True):
        if name.startswith(rule.prefix):
            return rule.fast_sibling if rule.matches(name) else None
    return None


@dataclass
class CacheEntry:
    """
    One cached resolution.

    Attributes:
        value: The resolved model
        expires_at: Clock reading after which the entry is stale
    """

    value: ResolvedModel
    expires_at: float


class ModelResolver:
    """
    Resolves the concrete model an agent should use for a pipeline context.

    Args:
        store: Agent-preference collaborator
        settings: TTL, cache bound and system defaults
        clock: Monotonic clock in seconds (injected by tests)

    Example::

        resolver = ModelResolver(store, settings.resolver)
        resolved = await resolver.get_agent_model("agent-1", ResolutionContext.FAST)
        print(resolved.litellm_model)   # "openai/gpt-4o-mini"
    """

    def __init__(
        self,
        store: PreferenceStore,
        settings: ResolverSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._settings = settings or ResolverSettings()
        self._clock = clock
        self._ttl = self._settings.cache_ttl_seconds
        self._cache: FIFOCache = FIFOCache(maxsize=self._settings.cache_max_entries)
        self._hits = 0
        self._misses = 0

    @property
    def ttl(self) -> float:
        return self._ttl

    async def get_agent_model(
        self,
        agent_id: str,
        context: ResolutionContext | str,
    ) -> ResolvedModel:
        """
        Resolve the model for an agent and context. Never raises for store failures.

        Args:
            agent_id: Agent whose preference to use
            context: 'fast', 'main' or 'embedding'

        Returns:
            ResolvedModel for the context
        """
        context = ResolutionContext(context)
        key = (agent_id, context)

        entry: CacheEntry | None = self._cache.get(key)
        if entry is not None:
            if self._clock() < entry.expires_at:
                self._hits += 1
                return entry.value
            # Stale entries are dropped, never served
            del self._cache[key]

        self._misses += 1
        try:
            preference = await self._load_preference(agent_id)
        except ResolutionFailure as e:
            logger.warning(f"{e}; using system default for {context.value}: {e.cause}")
            return self._system_default(context)

        if preference is None:
            resolved = self._system_default(context)
        else:
            resolved = self._substitute(preference, context)

        self._cache[key] = CacheEntry(value=resolved, expires_at=self._clock() + self._ttl)
        return resolved

    async def _load_preference(self, agent_id: str) -> AgentModelPreference | None:
        try:
            return await self._store.get_preference(agent_id)
        except Exception as e:
            raise ResolutionFailure(agent_id, cause=e) from e

    def _substitute(
        self,
        preference: AgentModelPreference,
        context: ResolutionContext,
    ) -> ResolvedModel:
        """Apply context-specific substitution to an agent preference."""
        if context is ResolutionContext.MAIN:
            return ResolvedModel(
                provider=preference.provider,
                model=preference.model,
                context=context,
                params=dict(preference.params),
            )

        if context is ResolutionContext.FAST:
            sibling = fast_sibling(preference.model)
            if sibling is not None:
                logger.debug(
                    f"Agent {preference.agent_id}: {preference.model} is slow, "
                    f"using {sibling} for fast stages"
                )
            return ResolvedModel(
                provider=preference.provider,
                model=sibling or preference.model,
                context=context,
            )

        if preference.embedding_model:
            return ResolvedModel(
                provider=preference.provider,
                model=preference.embedding_model,
                context=context,
            )
        provider_default = EMBEDDING_DEFAULTS.get(preference.provider.lower())
        if provider_default is not None:
            return ResolvedModel(provider=preference.provider, model=provider_default, context=context)
        return self._system_default(context)

    def _system_default(self, context: ResolutionContext) -> ResolvedModel:
        models = {
            ResolutionContext.FAST: self._settings.default_fast_model,
            ResolutionContext.MAIN: self._settings.default_main_model,
            ResolutionContext.EMBEDDING: self._settings.default_embedding_model,
        }
        return ResolvedModel(
            provider=self._settings.default_provider,
            model=models[context],
            context=context,
        )

    def invalidate(self, agent_id: str) -> int:
        """
        Drop every cached context for an agent.

        Call this after the agent's model settings change.

        Returns:
            Number of entries removed
        """
        stale = [key for key in self._cache if key[0] == agent_id]
        for key in stale:
            del self._cache[key]
        return len(stale)

    def cache_stats(self) -> dict[str, float | int]:
        """Return cache size, bound, TTL and hit statistics."""
        lookups = self._hits + self._misses
        return {
            "size": len(self._cache),
            "max_size": int(self._cache.maxsize),
            "ttl_seconds": self._ttl,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / lookups if lookups else 0.0,
        }
