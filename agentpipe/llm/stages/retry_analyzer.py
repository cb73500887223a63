"""
RetryAnalyzer stage: diagnose a failed tool call and suggest corrected arguments.

Only failed ToolResults are accepted. The verdict is one of:

- retry with a corrected argument set (the Orchestrator re-executes once)
- terminal failure (the error is folded into the conversation instead)

Errors that no argument change can fix (expired or missing credentials,
forbidden actions) get a terminal verdict without calling a model. When the
model call or its output fails, a small table of common parameter-name mixups
is tried before giving up.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, NamedTuple

from agentpipe.llm.errors import ProviderRequestError
from agentpipe.llm.models import (
    GenericChatRequest,
    ResolutionContext,
    RetryAnalysis,
    ToolCallRequest,
    ToolResult,
)
from agentpipe.llm.stages.base import JSON_MODE, PipelineStage, parse_json_object
from agentpipe.llm.turn import TurnContext

logger = logging.getLogger(__name__)

NON_RETRYABLE_MARKERS = (
    "unauthorized",
    "forbidden",
    "authentication",
    "permission denied",
)


class ParameterAlias(NamedTuple):
    """A known parameter-name mixup for tools whose name contains ``tool_pattern``."""

    tool_pattern: str
    wrong: str
    expected: str


# Applied only when the error names the expected parameter
PARAMETER_ALIASES: tuple[ParameterAlias, ...] = (
    ParameterAlias("microsoft_outlook_find_emails", "instructions", "searchValue"),
    ParameterAlias("microsoft_outlook_find_emails", "query", "searchValue"),
    ParameterAlias("microsoft_outlook_find_emails", "search", "searchValue"),
    ParameterAlias("gmail_search_emails", "instructions", "query"),
    ParameterAlias("gmail_search_emails", "search", "query"),
    ParameterAlias("search_contacts", "instructions", "query"),
    ParameterAlias("search_contacts", "search", "query"),
    ParameterAlias("send_sms", "message", "message_text"),
    ParameterAlias("send_sms", "phone", "to"),
    ParameterAlias("web_search", "instructions", "query"),
    ParameterAlias("web_search", "search", "query"),
)

SYSTEM_PROMPT = """A tool call made by an AI assistant failed. Decide whether calling the same tool again
with corrected arguments is likely to succeed.

Retry only when the error points at the arguments: a wrong parameter name, a missing required field,
a badly formatted value. Do not retry for outages, expired credentials, missing permissions or
rate limits. Never invent data the user did not provide.

Respond with a JSON object:
{
  "should_retry": true | false,
  "corrected_arguments": { ...complete argument object for the retry... } | null,
  "reasoning": "one short sentence",
  "confidence": "high" | "medium" | "low"
}"""


def is_non_retryable(error_message: str) -> bool:
    error = error_message.lower()
    return any(marker in error for marker in NON_RETRYABLE_MARKERS)


def mentions_parameter(error_message: str, name: str) -> bool:
    """
    Whether the error names ``name`` as a parameter rather than as an ordinary word.

    Accepts a quoted name ('to', "to", `to`), a name after parameter/field/
    property/argument, or the name alone on a line as in pydantic's
    validation errors.
    """
    name = re.escape(name)
    pattern = (
        rf"['\"`]{name}['\"`]"
        rf"|\b(?:parameter|field|property|argument)s?:?\s+{name}\b"
        rf"|^\s*{name}\s*$"
    )
    return re.search(pattern, error_message, re.IGNORECASE | re.MULTILINE) is not None


def apply_parameter_aliases(
    tool_name: str,
    arguments: dict[str, Any],
    error_message: str,
) -> dict[str, Any] | None:
    """
    Rename arguments using the known mixups for this tool.

    Returns:
        Corrected arguments, or None if no alias applies

    Example:
        >>> apply_parameter_aliases("send_sms", {"phone": "555-0100"}, "missing required parameter 'to'")
        {'to': '555-0100'}
    """
    tool = tool_name.lower()
    corrected = dict(arguments)
    changed = False
    for alias in PARAMETER_ALIASES:
        if (
            alias.tool_pattern in tool
            and alias.wrong in corrected
            and alias.expected not in corrected
            and mentions_parameter(error_message, alias.expected)
        ):
            corrected[alias.expected] = corrected.pop(alias.wrong)
            changed = True
    return corrected if changed else None


class RetryAnalyzer(PipelineStage):
    """Runs once per failed tool execution."""

    name = "retry_analyzer"
    context = ResolutionContext.FAST

    def _build_request(
        self,
        turn: TurnContext,
        call: ToolCallRequest,
        result: ToolResult,
    ) -> GenericChatRequest:
        details = (
            f"Tool: {call.tool_name}\n"
            f"Arguments: {json.dumps(call.arguments, default=str)}\n"
            f"Error: {result.error_message}\n\n"
            f"User request: {turn.message}"
        )
        return GenericChatRequest(
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                *turn.context_messages(),
                {"role": "user", "content": details},
            ],
            temperature=0.2,
            max_tokens=400,
            response_format=JSON_MODE,
        )

    def _heuristic(self, call: ToolCallRequest, result: ToolResult) -> RetryAnalysis:
        corrected = apply_parameter_aliases(call.tool_name, call.arguments, result.error_message or "")
        if corrected is None:
            return RetryAnalysis(
                should_retry=False,
                reasoning="No model verdict and no known parameter fix",
            )
        renamed = sorted(set(call.arguments) - set(corrected))
        return RetryAnalysis(
            should_retry=True,
            corrected_arguments=corrected,
            reasoning=f"Renamed parameter(s) {', '.join(renamed)} to match the error",
            confidence="medium",
        )

    async def run(
        self,
        turn: TurnContext,
        call: ToolCallRequest,
        result: ToolResult,
    ) -> RetryAnalysis:
        """
        Analyze one failed tool call.

        Raises:
            ValueError: If ``result`` is not a failure
        """
        if result.success:
            raise ValueError("RetryAnalyzer only accepts failed tool results")

        error = result.error_message or ""
        if is_non_retryable(error):
            logger.info(f"Tool '{call.tool_name}' failed with a non-retryable error: {error}")
            return RetryAnalysis(
                should_retry=False,
                reasoning="Access or authentication error; changing arguments cannot fix it",
                confidence="high",
            )

        resolved = await self._resolve(turn)
        try:
            response = await self._call(turn, resolved, self._build_request(turn, call, result))
            data = parse_json_object(response.content)
            if isinstance(data.get("confidence"), str):
                data["confidence"] = data["confidence"].lower()
            analysis = RetryAnalysis.model_validate(data)
        except (ProviderRequestError, ValueError) as e:
            logger.warning(f"Retry analysis for '{call.tool_name}' failed, trying known fixes: {e}")
            return self._heuristic(call, result)

        if analysis.should_retry and analysis.corrected_arguments == call.arguments:
            return RetryAnalysis(
                should_retry=False,
                reasoning=f"Suggested arguments are unchanged ({analysis.reasoning})",
                confidence=analysis.confidence,
            )
        return analysis
