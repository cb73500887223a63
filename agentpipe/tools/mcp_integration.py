"""
MCP-based integration service.

Runs any MCP server as a subprocess and exposes its tools to the pipeline.
"""

from typing import Any

from mcp import ClientSession
from mcp.client.stdio import StdioServerParameters, stdio_client

from agentpipe.config.logging import get_logger
from agentpipe.llm.errors import ToolExecutionError
from agentpipe.llm.models import ToolCallRequest
from agentpipe.tools.base import IntegrationResult, IntegrationService

logger = get_logger(__name__)


class MCPIntegration(IntegrationService):
    """
    Integration backed by an MCP server over stdio.

    Spawns the server as a subprocess and communicates via JSON-RPC.

    Args:
        command: Executable that starts the server (e.g. 'node', 'python')
        args: Arguments for the command (e.g. the server script path)
        provider: Name this integration's tools are registered under
        env: Extra environment for the subprocess
    """

    def __init__(
        self,
        command: str,
        args: list[str] | None = None,
        provider: str = "mcp",
        env: dict[str, str] | None = None,
    ):
        self.provider = provider
        self._command = command
        self._args = list(args or [])
        self._env = env
        self._initialized = False
        self._session = None
        self._read_stream = None
        self._write_stream = None
        self._stdio_context = None
        self._session_context = None

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Start the MCP server subprocess and perform the handshake."""
        if self._initialized:
            return

        server_params = StdioServerParameters(
            command=self._command,
            args=self._args,
            env=self._env,
        )

        # Start the subprocess and store the context manager for shutdown
        self._stdio_context = stdio_client(server_params)
        self._read_stream, self._write_stream = await self._stdio_context.__aenter__()

        self._session_context = ClientSession(self._read_stream, self._write_stream)
        self._session = await self._session_context.__aenter__()

        await self._session.initialize()

        self._initialized = True
        logger.info(f"MCP integration '{self.provider}' started: {self._command} {' '.join(self._args)}")

    async def shutdown(self) -> None:
        """Close the session and terminate the subprocess."""
        if not self._initialized:
            return

        if self._session_context is not None:
            await self._session_context.__aexit__(None, None, None)
            self._session_context = None
            self._session = None

        if self._stdio_context is not None:
            await self._stdio_context.__aexit__(None, None, None)
            self._stdio_context = None
            self._read_stream = None
            self._write_stream = None

        self._initialized = False

    async def invoke(self, request: ToolCallRequest) -> IntegrationResult:
        """Call a tool on the MCP server."""
        if not self._initialized:
            raise RuntimeError("MCP integration not initialized")

        try:
            result = await self._session.call_tool(request.tool_name, request.arguments)
        except Exception as e:
            raise ToolExecutionError(request.tool_name, f"MCP call failed: {e}", cause=e) from e

        # MCP returns content as a list of blocks; only text blocks carry output
        text_parts = [content.text for content in result.content if hasattr(content, "text")]
        text = " ".join(text_parts)

        if getattr(result, "isError", False):
            return IntegrationResult(success=False, error=text or "Tool reported an error")
        return IntegrationResult(success=True, payload=text)

    async def list_tools(self) -> list[dict[str, Any]]:
        """List available tools from the MCP server."""
        if not self._initialized:
            raise RuntimeError("MCP integration not initialized")

        result = await self._session.list_tools()
        return [
            {
                "name": tool.name,
                "description": tool.description or "",
                "input_schema": tool.inputSchema,
            }
            for tool in result.tools
        ]
