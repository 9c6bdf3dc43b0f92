"""Custom exception classes for the MCP server."""
from typing import Any, Optional


class MCPError(Exception):
    """Base exception for MCP-related errors."""

    pass


class ConfigError(MCPError):
    """Invalid server configuration."""

    pass


class DuplicateToolError(MCPError):
    """A tool with the same name is already registered."""

    def __init__(self, name: str):
        super().__init__(f"Tool already registered: {name}")
        self.name = name


class ToolNotFoundError(MCPError):
    """No tool is registered under the requested name."""

    def __init__(self, name: str):
        super().__init__(f"Tool not found: {name}")
        self.name = name


class AlreadyRunningError(MCPError):
    """start() was called while the server was not stopped."""

    pass


class StartupError(MCPError):
    """The transport layer could not be brought up."""

    pass


class ProtocolError(MCPError):
    """Failure that is reported to the client as a JSON-RPC error object.

    Subclasses pin the JSON-RPC error code; ``data`` is passed through to
    ``error.data`` unchanged.
    """

    code = -32603

    def __init__(self, message: str, data: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.data = data


class ParseError(ProtocolError):
    """Message bytes are not a single JSON value."""

    code = -32700


class InvalidRequestError(ProtocolError):
    """Decoded value is not a structurally valid JSON-RPC message."""

    code = -32600


class MethodNotFoundError(ProtocolError):
    """Unknown method or unregistered tool."""

    code = -32601


class InvalidParamsError(ProtocolError):
    """Params do not match the tool's input schema."""

    code = -32602


class InternalError(ProtocolError):
    """Unexpected fault inside the engine itself."""

    code = -32603


class HandlerError(ProtocolError):
    """Tool logic reported a failure."""

    code = -32000


class CallTimeoutError(ProtocolError):
    """A dispatched call exceeded its execution budget."""

    code = -32000
