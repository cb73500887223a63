"""
Model capability table.

Every provider family accepts a slightly different request dialect: reasoning
models reject ``temperature``, some families reject ``tools`` or
``response_format``, and newer OpenAI models want ``max_completion_tokens``
instead of ``max_tokens``. LiteLLM forwards whatever it is given, so the
adapter consults this table before every call.

Lookup is by name prefix, most specific first. ``o1-preview`` and
``deepseek-reasoner`` are narrower than ``o1`` and ``deepseek-`` and must win
regardless of the order the families are declared in, so the table sorts all
patterns by length once, at construction.

Unknown models never raise; they match the ``legacy`` descriptor, which
assumes the most conservative dialect that still accepts a temperature.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from agentpipe.llm.errors import CapabilityMismatchError

TokenLimitParam = Literal["max_tokens", "max_completion_tokens"]


class ModelCapabilities(BaseModel):
    """What one model family accepts."""

    family: str
    provider: str
    patterns: tuple[str, ...] = Field(default=(), description="Lower-case model name prefixes")
    supports_tools: bool
    supports_temperature: bool
    supports_response_format: bool
    token_limit_param: TokenLimitParam = "max_tokens"

    model_config = ConfigDict(frozen=True)


LEGACY = ModelCapabilities(
    family="legacy",
    provider="openai",
    supports_tools=False,
    supports_temperature=True,
    supports_response_format=False,
    token_limit_param="max_tokens",
)

FAMILIES: tuple[ModelCapabilities, ...] = (
    ModelCapabilities(
        family="openai-reasoning-preview",
        provider="openai",
        patterns=("o1-preview", "o1-mini"),
        supports_tools=False,
        supports_temperature=False,
        supports_response_format=False,
        token_limit_param="max_completion_tokens",
    ),
    ModelCapabilities(
        family="openai-reasoning",
        provider="openai",
        patterns=("o1", "o3", "o4"),
        supports_tools=True,
        supports_temperature=False,
        supports_response_format=True,
        token_limit_param="max_completion_tokens",
    ),
    ModelCapabilities(
        family="gpt-5",
        provider="openai",
        patterns=("gpt-5",),
        supports_tools=True,
        supports_temperature=False,
        supports_response_format=True,
        token_limit_param="max_completion_tokens",
    ),
    ModelCapabilities(
        family="gpt",
        provider="openai",
        patterns=("gpt-4o", "gpt-4.1", "gpt-4", "gpt-3.5"),
        supports_tools=True,
        supports_temperature=True,
        supports_response_format=True,
    ),
    ModelCapabilities(
        family="claude",
        provider="anthropic",
        patterns=("claude-",),
        supports_tools=True,
        supports_temperature=True,
        supports_response_format=False,
    ),
    ModelCapabilities(
        family="gemini",
        provider="gemini",
        patterns=("gemini-",),
        supports_tools=True,
        supports_temperature=True,
        supports_response_format=True,
    ),
    ModelCapabilities(
        family="deepseek-reasoner",
        provider="deepseek",
        patterns=("deepseek-reasoner",),
        supports_tools=False,
        supports_temperature=False,
        supports_response_format=False,
    ),
    ModelCapabilities(
        family="deepseek",
        provider="deepseek",
        patterns=("deepseek-",),
        supports_tools=True,
        supports_temperature=True,
        supports_response_format=True,
    ),
)

# Best generally available tool-capable model per provider
REASONING_FALLBACKS: dict[str, str] = {
    "openai": "gpt-4o",
    "anthropic": "claude-sonnet-4-5",
    "gemini": "gemini-2.5-flash",
    "deepseek": "deepseek-chat",
}
DEFAULT_REASONING_FALLBACK = "gpt-4o"


def normalize_model_name(model_name: str) -> str:
    """
    Lower-case a model name and strip any LiteLLM routing prefix.

    Example:
        >>> normalize_model_name("OpenAI/o1-Preview")
        'o1-preview'
    """
    return model_name.strip().lower().rsplit("/", 1)[-1]


class CapabilityTable:
    """
    Immutable prefix table of model families.

    Args:
        families: Descriptors to match against
        fallback: Descriptor returned when no pattern matches
    """

    def __init__(
        self,
        families: tuple[ModelCapabilities, ...] = FAMILIES,
        fallback: ModelCapabilities = LEGACY,
    ):
        self._families = tuple(families)
        self._fallback = fallback
        pairs = [(pattern, desc) for desc in self._families for pattern in desc.patterns]
        # Longest pattern first so narrow families are never shadowed
        self._ordered: tuple[tuple[str, ModelCapabilities], ...] = tuple(
            sorted(pairs, key=lambda pair: len(pair[0]), reverse=True)
        )

    @property
    def families(self) -> tuple[ModelCapabilities, ...]:
        return self._families

    @property
    def fallback(self) -> ModelCapabilities:
        return self._fallback

    def lookup(self, model_name: str) -> ModelCapabilities:
        """Return the most specific descriptor for a model name."""
        name = normalize_model_name(model_name)
        for pattern, descriptor in self._ordered:
            if name.startswith(pattern):
                return descriptor
        return self._fallback

    def get_reasoning_fallback(self, model_name: str) -> str:
        """
        Return a tool-capable model from the same provider family.

        A model that already supports tools is returned unchanged.
        """
        descriptor = self.lookup(model_name)
        if descriptor.supports_tools:
            return model_name
        if descriptor is self._fallback:
            return DEFAULT_REASONING_FALLBACK
        return REASONING_FALLBACKS.get(descriptor.provider, DEFAULT_REASONING_FALLBACK)

    def require_tools(self, model_name: str) -> ModelCapabilities:
        """
        Check that a model can be sent tool schemas.

        Raises:
            CapabilityMismatchError: If the matched family does not support tools
        """
        descriptor = self.lookup(model_name)
        if not descriptor.supports_tools:
            raise CapabilityMismatchError(model=model_name, requirement="tools")
        return descriptor


DEFAULT_TABLE = CapabilityTable()


def get_capabilities(model_name: str) -> ModelCapabilities:
    return DEFAULT_TABLE.lookup(model_name)


def get_reasoning_fallback(model_name: str) -> str:
    return DEFAULT_TABLE.get_reasoning_fallback(model_name)


def require_tools(model_name: str) -> ModelCapabilities:
    return DEFAULT_TABLE.require_tools(model_name)
