"""
agentpipe - LLM orchestration pipeline and provider adapter layer.

This package turns one user turn into a sequence of calls to OpenAI-, Anthropic-,
Gemini- and DeepSeek-style models: it resolves the model per agent and stage,
adapts every request to the model family's parameter dialect, runs requested
tools with a bounded retry, and records a debug trace of the whole turn.
"""

__version__ = "0.1.0"
