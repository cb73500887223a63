"""
Application settings and configuration management.

Uses Pydantic Settings for validation and environment variable support.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SYSTEM_TEMPLATE = (
    "You are a helpful assistant working on behalf of the user.\n"
    "\n"
    "{context_block}"
    "\n"
    "When the user asks you to perform an action and a matching tool is available, "
    "call the tool instead of describing what you would do. If a tool fails, explain "
    "the failure plainly and suggest what the user can do next."
)


class LLMSettings(BaseSettings):
    """Provider API configuration shared by every pipeline stage."""

    api_key: str = Field(
        default="",
        description="Fallback API key used when no provider-specific key is set",
    )
    openai_api_key: str = Field(default="", description="API key for OpenAI models")
    anthropic_api_key: str = Field(default="", description="API key for Anthropic models")
    gemini_api_key: str = Field(default="", description="API key for Gemini models")
    deepseek_api_key: str = Field(default="", description="API key for DeepSeek models")
    request_timeout: float = Field(
        default=60.0, gt=0, description="Timeout in seconds for a single provider call"
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per provider call for rate-limit, quota and unavailable errors",
    )
    backoff_base: float = Field(
        default=1.0, ge=0, description="First backoff delay in seconds (doubles per attempt)"
    )
    backoff_max: float = Field(default=30.0, ge=0, description="Upper bound on a backoff delay")

    model_config = SettingsConfigDict(env_prefix="LLM_")

    def key_for(self, provider: str) -> str:
        """Return the configured key for a provider, or the generic fallback key."""
        specific = getattr(self, f"{provider.lower()}_api_key", "")
        return specific or self.api_key


class ResolverSettings(BaseSettings):
    """Per-agent model resolution and its cache."""

    cache_ttl_seconds: float = Field(
        default=60.0, gt=0, description="How long a resolved model stays cached"
    )
    cache_max_entries: int = Field(
        default=100,
        ge=1,
        description="Maximum cached (agent, context) pairs; oldest insert is evicted first",
    )
    default_provider: str = Field(default="openai", description="System default provider")
    default_main_model: str = Field(default="gpt-4o", description="Model for main responses")
    default_fast_model: str = Field(
        default="gpt-4o-mini", description="Model for auxiliary stages"
    )
    default_embedding_model: str = Field(
        default="text-embedding-3-small", description="Model for embeddings"
    )

    model_config = SettingsConfigDict(env_prefix="RESOLVER_")


class PipelineSettings(BaseSettings):
    """Turn pipeline behaviour."""

    max_tool_rounds: int = Field(
        default=5,
        ge=0,
        description="Safety limit on MainCaller rounds that may request tools",
    )
    tool_timeout: float = Field(
        default=30.0, gt=0, description="Timeout in seconds for one tool invocation"
    )
    tool_max_attempts: int = Field(
        default=2,
        ge=1,
        le=2,
        description="Executions per logical tool call (original + analyzer-guided retry)",
    )
    history_window: int = Field(
        default=10, ge=0, description="Recent messages passed to the auxiliary stages"
    )
    stage_cache_ttl_seconds: float = Field(
        default=300.0,
        ge=0,
        description="Lifetime of cached context and intent results (0 disables caching)",
    )
    context_cache_max_entries: int = Field(default=500, ge=0)
    intent_cache_max_entries: int = Field(default=1000, ge=0)
    main_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    main_max_tokens: int = Field(default=1200, gt=0)
    system_template: str = Field(
        default=DEFAULT_SYSTEM_TEMPLATE,
        description="Agent system prompt with a {context_block} placeholder",
    )

    model_config = SettingsConfigDict(env_prefix="PIPELINE_")


class ToolSettings(BaseSettings):
    """External tool configuration."""

    mcp_server_command: str | None = Field(
        default=None,
        description="Executable that starts an MCP server over stdio (e.g. 'node'). "
                    "If unset, the pipeline runs without tools.",
    )
    mcp_server_args: list[str] = Field(
        default_factory=list,
        description="Arguments for the MCP server command. "
                    "Set via TOOLS__MCP_SERVER_ARGS='[\"dist/index.js\"]'",
    )
    mcp_provider: str = Field(
        default="mcp", description="Provider name the MCP server's tools are registered under"
    )

    model_config = SettingsConfigDict(env_prefix="TOOL_")


class Settings(BaseSettings):
    """Main application settings."""

    # Environment
    environment: Literal["development", "production"] = Field(
        default="development", description="Deployment environment"
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    log_file: Path | None = Field(default=None, description="Log file path")

    # Agent preferences (JSON file keyed by agent id)
    preferences_file: Path | None = Field(
        default=None, description="JSON file with per-agent model preferences"
    )

    # Sub-configurations
    llm: LLMSettings = Field(default_factory=LLMSettings)
    resolver: ResolverSettings = Field(default_factory=ResolverSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    tools: ToolSettings = Field(default_factory=ToolSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def load_settings(env_file: str | Path | None = None) -> Settings:
    """
    Load settings from file and environment.

    Args:
        env_file: Path to .env file (optional)

    Returns:
        Loaded settings instance
    """
    global _settings
    if env_file:
        _settings = Settings(_env_file=env_file)
    else:
        _settings = Settings()
    return _settings
