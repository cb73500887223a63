"""
agentpipe CLI entry point.

Provides command-line access to the pipeline and its building blocks.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from agentpipe import __version__
from agentpipe.config.logging import get_logger, setup_logging
from agentpipe.config.settings import Settings, load_settings
from agentpipe.llm.adapter import adapt
from agentpipe.llm.capabilities import DEFAULT_TABLE
from agentpipe.llm.components import PipelineComponents
from agentpipe.llm.models import GenericChatRequest, ResolutionContext


def create_parser() -> argparse.ArgumentParser:
    """Create and configure argument parser."""
    parser = argparse.ArgumentParser(
        prog="agentpipe",
        description="LLM orchestration pipeline with per-model request adaptation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"agentpipe {__version__}",
    )

    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to .env file (default: .env in current directory)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override logging level from config",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Config command
    subparsers.add_parser(
        "config",
        help="Show current configuration",
    )

    # Models command
    subparsers.add_parser(
        "models",
        help="Show the model capability table",
    )

    # Adapt command
    adapt_parser = subparsers.add_parser(
        "adapt",
        help="Show how a request is adapted for a model (no API call)",
    )
    adapt_parser.add_argument(
        "model",
        help='Model name, e.g. "o1-preview" or "anthropic/claude-sonnet-4-5"',
    )
    adapt_parser.add_argument(
        "--tools",
        action="store_true",
        help="Include a sample tool definition",
    )
    adapt_parser.add_argument(
        "--temperature",
        type=float,
        default=None,
        help="Temperature to request (0.0-2.0)",
    )
    adapt_parser.add_argument(
        "--max-tokens",
        type=int,
        default=None,
        help="Token limit to request",
    )
    adapt_parser.add_argument(
        "--json-mode",
        action="store_true",
        help="Request a JSON object response format",
    )

    # Resolve command
    resolve_parser = subparsers.add_parser(
        "resolve",
        help="Resolve the model an agent uses for a context",
    )
    resolve_parser.add_argument(
        "agent_id",
        help="Agent id as it appears in the preferences file",
    )
    resolve_parser.add_argument(
        "--context",
        choices=[context.value for context in ResolutionContext],
        default=None,
        help="Resolution context (default: all three)",
    )

    # Chat command
    chat_parser = subparsers.add_parser(
        "chat",
        help="Run one turn through the full pipeline",
    )
    chat_parser.add_argument(
        "agent_id",
        help="Agent to answer as",
    )
    chat_parser.add_argument(
        "message",
        help='User message, e.g. "Email Jon the invoice"',
    )
    chat_parser.add_argument(
        "--user-id",
        default=None,
        help="User id passed to the credential store",
    )
    chat_parser.add_argument(
        "--trace-out",
        type=Path,
        default=None,
        help="Write the exported debug trace as JSON to this path",
    )

    return parser


def cmd_config(settings: Settings) -> int:
    """Show current configuration."""
    logger = get_logger(__name__)

    logger.info("\n=== agentpipe Configuration ===\n")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Log Level: {settings.log_level}")
    logger.info(f"Log File: {settings.log_file or 'None (console only)'}")
    logger.info(f"Preferences File: {settings.preferences_file or 'None (system defaults only)'}")
    logger.info(f"\nLLM API Key: {'Set' if settings.llm.api_key else 'Not set'}")
    for provider in ("openai", "anthropic", "gemini", "deepseek"):
        logger.info(f"  {provider} key: {'Set' if settings.llm.key_for(provider) else 'Not set'}")
    logger.info(f"Request Timeout: {settings.llm.request_timeout}s")
    logger.info(f"Max Attempts (rate limit/quota/unavailable): {settings.llm.max_attempts}")
    logger.info(f"\nDefault Provider: {settings.resolver.default_provider}")
    logger.info(f"Default Main Model: {settings.resolver.default_main_model}")
    logger.info(f"Default Fast Model: {settings.resolver.default_fast_model}")
    logger.info(f"Default Embedding Model: {settings.resolver.default_embedding_model}")
    logger.info(f"Resolver Cache: {settings.resolver.cache_max_entries} entries, "
                f"{settings.resolver.cache_ttl_seconds}s TTL")
    logger.info(f"\nMax Tool Rounds: {settings.pipeline.max_tool_rounds}")
    logger.info(f"Tool Timeout: {settings.pipeline.tool_timeout}s")
    logger.info(f"Tool Attempts: {settings.pipeline.tool_max_attempts}")
    logger.info(f"Stage Result Cache: {settings.pipeline.context_cache_max_entries} context / "
                f"{settings.pipeline.intent_cache_max_entries} intent entries, "
                f"{settings.pipeline.stage_cache_ttl_seconds}s TTL")
    logger.info(f"\nMCP Server: {settings.tools.mcp_server_command or 'None (no tools)'} "
                f"{' '.join(settings.tools.mcp_server_args)}")

    return 0


def cmd_models() -> int:
    """Print the capability table, one row per pattern."""
    print(f"{'pattern':<20} {'family':<26} {'provider':<10} tools  temp   json   token param")
    rows = [(pattern, desc) for desc in DEFAULT_TABLE.families for pattern in desc.patterns]
    rows.append(("(anything else)", DEFAULT_TABLE.fallback))
    for pattern, desc in rows:
        print(
            f"{pattern:<20} {desc.family:<26} {desc.provider:<10} "
            f"{'yes' if desc.supports_tools else 'no':<6} "
            f"{'yes' if desc.supports_temperature else 'no':<6} "
            f"{'yes' if desc.supports_response_format else 'no':<6} "
            f"{desc.token_limit_param}"
        )
    return 0


SAMPLE_TOOL = {
    "type": "function",
    "function": {
        "name": "send_email",
        "description": "Send an email",
        "parameters": {
            "type": "object",
            "properties": {"to": {"type": "string"}, "body": {"type": "string"}},
            "required": ["to", "body"],
        },
    },
}


def cmd_adapt(args) -> int:
    """Print the adapted request and the fields that were dropped."""
    try:
        request = GenericChatRequest(
            messages=[{"role": "user", "content": "Hello"}],
            tools=[SAMPLE_TOOL] if args.tools else None,
            temperature=args.temperature,
            max_tokens=args.max_tokens,
            response_format={"type": "json_object"} if args.json_mode else None,
        )
    except ValueError as e:
        print(f"Invalid request: {e}", file=sys.stderr)
        return 1
    adapted = adapt(request, args.model)

    print(f"Family: {adapted.capabilities.family} ({adapted.capabilities.provider})")
    print(json.dumps(adapted.request.payload(), indent=2))
    if adapted.warnings:
        print("\nDropped:")
        for warning in adapted.warnings:
            print(f"  {warning.field} ({warning.reason})")
    return 0


async def cmd_resolve(args, settings: Settings) -> int:
    """Resolve an agent's model for one or all contexts."""
    factory = PipelineComponents(settings)
    resolver = factory.create_resolver()

    contexts = [ResolutionContext(args.context)] if args.context else list(ResolutionContext)
    for context in contexts:
        resolved = await resolver.get_agent_model(args.agent_id, context)
        print(f"{context.value:<10} {resolved.litellm_model}")
    return 0


async def cmd_chat(args, settings: Settings) -> int:
    """
    Run one turn through the full pipeline.

    Tools come from the configured MCP server; without one, the turn runs
    as plain chat.
    """
    logger = get_logger(__name__)
    factory = PipelineComponents(settings)

    try:
        async with factory.create_integration_registry() as registry:
            tool_executor = factory.create_tool_executor(registry) if registry.providers else None
            orchestrator = factory.create_orchestrator(tool_executor=tool_executor)
            result = await orchestrator.handle_turn(
                agent_id=args.agent_id,
                message=args.message,
                user_id=args.user_id,
            )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        logger.error(f"Chat failed: {e}", exc_info=True)
        return 1

    trace = result.trace
    print(f"\n=== {args.agent_id} ({result.model}) ===")
    print(result.text)

    print("\n--- Trace ---")
    for record in trace.stages:
        status = f"error: {record.error}" if record.error else "ok"
        print(f"  {record.stage_name:<22} {record.model:<28} {record.duration_ms:>8.0f}ms  {status}")
    for tool_result in trace.tool_calls:
        status = "ok" if tool_result.success else f"failed: {tool_result.error_message}"
        print(f"  tool {tool_result.tool_name} (attempt {tool_result.attempt})  {status}")
    print(f"\nTokens: {trace.total_tokens}  Duration: {trace.total_duration_ms:.0f}ms")

    if args.trace_out:
        args.trace_out.parent.mkdir(parents=True, exist_ok=True)
        args.trace_out.write_text(json.dumps(trace.export(), indent=2))
        logger.info(f"Trace written to {args.trace_out}")

    return 1 if result.error_kind is not None else 0


def main() -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    # Load settings
    try:
        settings = load_settings(env_file=args.env_file)
    except Exception as e:
        print(f"Error loading settings: {e}", file=sys.stderr)
        return 1

    # Override log level if specified
    if args.log_level:
        settings.log_level = args.log_level

    setup_logging(settings)

    # Execute command
    if args.command == "config":
        return cmd_config(settings)
    elif args.command == "models":
        return cmd_models()
    elif args.command == "adapt":
        return cmd_adapt(args)
    elif args.command == "resolve":
        return asyncio.run(cmd_resolve(args, settings))
    elif args.command == "chat":
        return asyncio.run(cmd_chat(args, settings))
    else:
        # Default: show help
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
