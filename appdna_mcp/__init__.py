"""AppDNA user story MCP server."""

__version__ = "1.0.10"
