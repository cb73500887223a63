"""
Tool Integration Layer.

Integration services (MCP servers and other backends) that execute the tools
the model requests, a registry that routes calls between them, and the
ToolExecutor that turns every invocation into a ToolResult.
"""
