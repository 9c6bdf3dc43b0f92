"""JSON-RPC 2.0 implementation for MCP protocol."""
from .models import (
    JSONRPCRequest,
    JSONRPCNotification,
    JSONRPCResponse,
    JSONRPCError,
    ErrorCode,
)
from .error_mapper import to_jsonrpc_error
from .handler import JSONRPCHandler

__all__ = [
    "JSONRPCRequest",
    "JSONRPCNotification",
    "JSONRPCResponse",
    "JSONRPCError",
    "ErrorCode",
    "JSONRPCHandler",
    "to_jsonrpc_error",
]
