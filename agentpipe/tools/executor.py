"""
Tool executor: runs one tool call and reports a ToolResult.

The executor never raises for a failed tool. Exceptions from the integration,
timeouts and integration-reported failures all become a ToolResult with
``success=False`` and an ``error_message``. Every invocation is appended to
the turn's DebugTrace whatever the outcome, including cancellation, which is
recorded and then re-raised.

Each invocation carries its own timeout, so one slow tool never cancels the
others running alongside it.
"""

import asyncio
import json
import time
from typing import Any

from agentpipe.config.logging import get_logger
from agentpipe.llm.models import ToolCallRequest, ToolResult
from agentpipe.llm.trace import DebugTrace
from agentpipe.tools.base import IntegrationService

logger = get_logger(__name__)


def _render_payload(payload: Any) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, default=str)


class ToolExecutor:
    """
    Executes tool calls against an integration service.

    Attributes:
        DEFAULT_TIMEOUT: Timeout for one tool invocation, in seconds

    Args:
        integration: Service that owns the tools (usually an IntegrationRegistry)
        timeout: Per-invocation timeout; DEFAULT_TIMEOUT if None
    """

    DEFAULT_TIMEOUT: float = 30.0

    def __init__(self, integration: IntegrationService, timeout: float | None = None):
        self._integration = integration
        self._timeout = timeout if timeout is not None else self.DEFAULT_TIMEOUT

    @property
    def integration(self) -> IntegrationService:
        return self._integration

    async def execute(
        self,
        request: ToolCallRequest,
        trace: DebugTrace | None = None,
        attempt: int = 1,
    ) -> ToolResult:
        """
        Execute one tool call.

        Args:
            request: Tool name, provider and arguments
            trace: Turn trace to append the result to
            attempt: 1 for the model's original call, 2 for the analyzer-guided retry

        Returns:
            ToolResult describing success or failure

        Raises:
            asyncio.CancelledError: If the turn is canceled mid-call (after recording it)
        """
        start = time.perf_counter()
        success = False
        output: str | None = None
        error_message: str | None = None

        try:
            outcome = await asyncio.wait_for(
                self._integration.invoke(request),
                timeout=self._timeout,
            )
            if outcome.success:
                success = True
                output = _render_payload(outcome.payload)
            else:
                error_message = outcome.error or "Tool reported failure without a reason"
        except asyncio.TimeoutError:
            error_message = f"Tool timed out after {self._timeout:g}s"
        except asyncio.CancelledError:
            error_message = "cancelled"
            raise
        except Exception as e:
            error_message = str(e) or type(e).__name__
        finally:
            result = ToolResult(
                tool_name=request.tool_name,
                call_id=request.call_id,
                arguments=request.arguments,
                success=success,
                output=output,
                error_message=error_message,
                duration_ms=(time.perf_counter() - start) * 1000,
                attempt=attempt,
            )
            if trace is not None:
                trace.add_tool_result(result)

        if success:
            logger.debug(f"Tool '{request.tool_name}' succeeded in {result.duration_ms:.0f}ms")
        else:
            logger.warning(f"Tool '{request.tool_name}' failed (attempt {attempt}): {error_message}")
        return result
