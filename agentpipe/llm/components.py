"""
Pipeline component factory.

Centralises the construction of pipeline components from settings,
eliminating duplicated wiring across CLI commands, tests, and host
applications.
"""

from __future__ import annotations

import time
from typing import Callable

from agentpipe.config.settings import Settings
from agentpipe.llm.orchestrator import Orchestrator, TraceSink
from agentpipe.llm.provider import ProviderClient
from agentpipe.llm.resolver import ModelResolver
from agentpipe.llm.retry import RetryPolicy
from agentpipe.stores import (
    CredentialStore,
    InMemoryPreferenceStore,
    JsonPreferenceStore,
    PreferenceStore,
    SettingsCredentialStore,
)
from agentpipe.tools.base import IntegrationService
from agentpipe.tools.executor import ToolExecutor
from agentpipe.tools.mcp_integration import MCPIntegration
from agentpipe.tools.registry import IntegrationRegistry


class PipelineComponents:
    """
    Factory for building pipeline components from settings.

    Example::

        factory = PipelineComponents(settings)
        registry = factory.create_integration_registry()
        async with registry:
            orchestrator = factory.create_orchestrator(
                tool_executor=factory.create_tool_executor(registry),
            )
            result = await orchestrator.handle_turn("support-bot", "Email Jon the invoice")
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def create_preference_store(self) -> PreferenceStore:
        """JSON file store if a preferences file is configured, else an empty in-memory store."""
        if self.settings.preferences_file is not None:
            return JsonPreferenceStore(self.settings.preferences_file)
        return InMemoryPreferenceStore()

    def create_credential_store(self) -> CredentialStore:
        return SettingsCredentialStore(self.settings.llm)

    def create_resolver(
        self,
        store: PreferenceStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> ModelResolver:
        return ModelResolver(
            store=store or self.create_preference_store(),
            settings=self.settings.resolver,
            clock=clock,
        )

    def create_retry_policy(self) -> RetryPolicy:
        return RetryPolicy.from_settings(
            self.settings.llm,
            tool_max_attempts=self.settings.pipeline.tool_max_attempts,
        )

    def create_provider_client(
        self,
        credentials: CredentialStore | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> ProviderClient:
        return ProviderClient(
            credentials=credentials or self.create_credential_store(),
            retry_policy=retry_policy or self.create_retry_policy(),
            timeout=self.settings.llm.request_timeout,
        )

    def create_integration_registry(self) -> IntegrationRegistry:
        """Registry with the configured MCP server, if any (not yet initialized)."""
        registry = IntegrationRegistry()
        tools = self.settings.tools
        if tools.mcp_server_command:
            registry.register(
                tools.mcp_provider,
                MCPIntegration(
                    command=tools.mcp_server_command,
                    args=tools.mcp_server_args,
                    provider=tools.mcp_provider,
                ),
            )
        return registry

    def create_tool_executor(self, integration: IntegrationService) -> ToolExecutor:
        return ToolExecutor(integration, timeout=self.settings.pipeline.tool_timeout)

    def create_orchestrator(
        self,
        resolver: ModelResolver | None = None,
        client: ProviderClient | None = None,
        tool_executor: ToolExecutor | None = None,
        trace_sink: TraceSink | None = None,
    ) -> Orchestrator:
        """Create an Orchestrator; missing collaborators are built from settings."""
        retry_policy = self.create_retry_policy()
        return Orchestrator(
            resolver=resolver or self.create_resolver(),
            client=client or self.create_provider_client(retry_policy=retry_policy),
            tool_executor=tool_executor,
            settings=self.settings.pipeline,
            retry_policy=retry_policy,
            trace_sink=trace_sink,
        )
