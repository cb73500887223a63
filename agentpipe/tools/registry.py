"""
Integration registry: one IntegrationService in front of many.

Tool calls are routed by the request's ``provider`` when the model (or the
Orchestrator) set it, otherwise by which provider listed the tool.
"""

from typing import Any

from agentpipe.config.logging import get_logger
from agentpipe.llm.errors import ToolExecutionError
from agentpipe.llm.models import ToolCallRequest
from agentpipe.tools.base import IntegrationResult, IntegrationService

logger = get_logger(__name__)


class IntegrationRegistry(IntegrationService):
    """
    Routes tool calls to registered integrations.

    Example::

        registry = IntegrationRegistry()
        registry.register("mcp", MCPIntegration("node", ["dist/index.js"]))
        async with registry:
            tools = await registry.list_tools()
            result = await registry.invoke(ToolCallRequest(tool_name="send_email", arguments={...}))
    """

    def __init__(self):
        self._services: dict[str, IntegrationService] = {}
        self._tool_owners: dict[str, str] = {}

    def register(self, provider: str, service: IntegrationService) -> None:
        if provider in self._services:
            raise ValueError(f"Integration '{provider}' is already registered")
        self._services[provider] = service

    @property
    def providers(self) -> list[str]:
        return list(self._services)

    def provider_for(self, tool_name: str) -> str | None:
        return self._tool_owners.get(tool_name)

    async def initialize(self) -> None:
        for provider, service in self._services.items():
            await service.initialize()
            logger.debug(f"Integration '{provider}' initialized")

    async def shutdown(self) -> None:
        for service in reversed(list(self._services.values())):
            await service.shutdown()

    async def list_tools(self) -> list[dict[str, Any]]:
        """List each tool name once, tagged with its provider; the first registered provider wins."""
        tools: list[dict[str, Any]] = []
        owners: dict[str, str] = {}
        for provider, service in self._services.items():
            for tool in await service.list_tools():
                name = tool["name"]
                if name in owners:
                    logger.warning(
                        f"Tool '{name}' is listed by both '{owners[name]}' and '{provider}'; "
                        f"keeping the one from '{owners[name]}'"
                    )
                    continue
                owners[name] = provider
                tools.append({**tool, "provider": provider})
        self._tool_owners = owners
        return tools

    async def invoke(self, request: ToolCallRequest) -> IntegrationResult:
        provider = request.provider or self._tool_owners.get(request.tool_name)
        if provider is None and not self._tool_owners:
            await self.list_tools()
            provider = self._tool_owners.get(request.tool_name)
        if provider is None:
            raise ToolExecutionError(request.tool_name, f"Unknown tool '{request.tool_name}'")

        service = self._services.get(provider)
        if service is None:
            raise ToolExecutionError(request.tool_name, f"Unknown integration provider '{provider}'")
        return await service.invoke(request)
