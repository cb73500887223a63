"""
LLM Orchestration Layer.

Turns one user message into a sequence of provider calls through LiteLLM:

    Orchestrator.handle_turn(agent_id, message)
        ContextualAwareness → IntentClassifier → MainCaller ⇄ ToolExecutor/RetryAnalyzer
                                        ↓
                               TurnResult + DebugTrace

Key responsibilities:
- Resolve the concrete model per agent and per stage (ModelResolver)
- Adapt every request to the model family's parameter dialect (adapt)
- Retry rate-limited calls with backoff and classify provider failures (RetryPolicy)
- Run requested tools, retrying a failed call once with corrected arguments
- Record every stage and tool call in a per-turn DebugTrace
"""

from agentpipe.llm.adapter import AdaptedRequest, adapt
from agentpipe.llm.capabilities import (
    DEFAULT_TABLE,
    CapabilityTable,
    ModelCapabilities,
    get_reasoning_fallback,
)
from agentpipe.llm.errors import (
    CapabilityMismatchError,
    ErrorKind,
    LLMError,
    ProviderRequestError,
    ResolutionFailure,
    ToolExecutionError,
)
from agentpipe.llm.models import (
    AgentModelPreference,
    GenericChatRequest,
    ProviderRequest,
    ResolutionContext,
    ResolvedModel,
    TokenUsage,
    ToolCallRequest,
    ToolResult,
    TurnState,
)
from agentpipe.llm.orchestrator import Orchestrator
from agentpipe.llm.resolver import ModelResolver
from agentpipe.llm.trace import DebugTrace
from agentpipe.llm.turn import TurnResult

__all__ = [
    "adapt",
    "AdaptedRequest",
    "AgentModelPreference",
    "CapabilityMismatchError",
    "CapabilityTable",
    "DEFAULT_TABLE",
    "DebugTrace",
    "ErrorKind",
    "GenericChatRequest",
    "get_reasoning_fallback",
    "LLMError",
    "ModelCapabilities",
    "ModelResolver",
    "Orchestrator",
    "ProviderRequest",
    "ProviderRequestError",
    "ResolutionContext",
    "ResolutionFailure",
    "ResolvedModel",
    "TokenUsage",
    "ToolCallRequest",
    "ToolExecutionError",
    "ToolResult",
    "TurnResult",
    "TurnState",
]
