"""
Base classes for integration services.

An integration service executes named tools on behalf of the model: an MCP
server, a REST API, or any other backend. The pipeline treats it as a black
box that returns success plus a payload, or failure plus an error message.
"""

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

from agentpipe.llm.models import ToolCallRequest


class IntegrationResult(BaseModel):
    """Raw outcome reported by an integration."""

    success: bool
    payload: Any = Field(default=None, description="Tool output (text or JSON-like)")
    error: str | None = Field(default=None, description="Failure reason when success is False")


class IntegrationService(ABC):
    """
    Abstract base class for integration services.

    Implementations are async context managers: entering initializes the
    service (starting subprocesses, opening connections), exiting shuts it down.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """
        Initialize the integration.

        Raises:
            ConnectionError: If the backend cannot be reached
        """
        pass

    @abstractmethod
    async def shutdown(self) -> None:
        """Release connections and subprocesses."""
        pass

    @abstractmethod
    async def invoke(self, request: ToolCallRequest) -> IntegrationResult:
        """
        Execute a tool.

        Args:
            request: Tool name, owning provider and arguments

        Returns:
            IntegrationResult with the payload or the error reported by the backend

        Raises:
            ToolExecutionError: If the tool cannot be run at all
        """
        pass

    @abstractmethod
    async def list_tools(self) -> list[dict[str, Any]]:
        """
        List the tools this integration provides.

        Returns:
            Tool schemas with name, description and input schema.

        Example:
            [
                {
                    "name": "send_email",
                    "description": "Send an email",
                    "input_schema": {
                        "type": "object",
                        "properties": {
                            "to": {"type": "string", "description": "Recipient address"},
                            "subject": {"type": "string"},
                            "body": {"type": "string"}
                        },
                        "required": ["to", "body"]
                    }
                }
            ]
        """
        pass

    async def __aenter__(self):
        """Context manager entry - initialize the integration."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - shut the integration down."""
        await self.shutdown()
        return False
