"""Process entry point.

Example:
    # Stdio mode, as launched by an MCP client
    python -m appdna_mcp --stdio

    # HTTP + WebSocket on a host/port pair
    MCP_PORT=3000 python -m appdna_mcp --transport http
"""
import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from .config import ServerConfig
from .server import MCPServer
from .tools import ToolRegistry, register_user_story_tools
from .utils.errors import ConfigError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="appdna-mcp",
        description="AppDNA user story MCP server",
        epilog="Flags override MCP_* environment variables.",
    )
    parser.add_argument(
        "--stdio",
        action="store_true",
        default=None,
        help="Serve over stdin/stdout (same as MCP_STDIO=1)",
    )
    parser.add_argument("--transport", choices=["stdio", "http"], default=None)
    parser.add_argument("--host", default=None, help="HTTP/WebSocket bind address")
    parser.add_argument("--port", type=int, default=None, help="HTTP/WebSocket port")
    parser.add_argument(
        "--call-timeout-ms",
        type=int,
        default=None,
        help="Execution budget per tool call in milliseconds",
    )
    parser.add_argument(
        "--require-initialize-first",
        action="store_true",
        default=None,
        help="Reject tool calls on a connection before initialize succeeds",
    )
    parser.add_argument("--log-level", default=None, help="Logging level (default: INFO)")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    # Logs go to stderr; in stdio mode stdout carries protocol bytes only
    log_level = (args.log_level or os.getenv("MCP_LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=log_level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = ServerConfig.from_env(
            transport="stdio" if args.stdio else args.transport,
            host=args.host,
            port=args.port,
            call_timeout_ms=args.call_timeout_ms,
            require_initialize_first=args.require_initialize_first,
            log_level=log_level,
        )
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)

    registry = ToolRegistry()
    register_user_story_tools(registry)
    server = MCPServer(config, registry)

    try:
        exit_code = asyncio.run(server.serve())
    except KeyboardInterrupt:
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
