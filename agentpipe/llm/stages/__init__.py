"""
Pipeline stages, in the order a turn runs them.

    ContextualAwareness  (fast)  resolve references in the user's message
    IntentClassifier     (fast)  decide whether tools are needed
    MainCaller           (main)  answer, or request tool calls
    RetryAnalyzer        (fast)  only after a failed tool call
"""

from agentpipe.llm.stages.base import PipelineStage, StageResultCache
from agentpipe.llm.stages.contextual_awareness import ContextualAwareness
from agentpipe.llm.stages.intent_classifier import IntentClassifier
from agentpipe.llm.stages.main_caller import MainCaller
from agentpipe.llm.stages.retry_analyzer import RetryAnalyzer

__all__ = [
    "PipelineStage",
    "StageResultCache",
    "ContextualAwareness",
    "IntentClassifier",
    "MainCaller",
    "RetryAnalyzer",
]
