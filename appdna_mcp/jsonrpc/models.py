"""JSON-RPC 2.0 request/response models."""
from pydantic import BaseModel, ConfigDict, StrictFloat, StrictInt, StrictStr
from typing import Any, Dict, Optional, Union, Literal

RequestId = Union[StrictInt, StrictStr, StrictFloat]


class JSONRPCRequest(BaseModel):
    """JSON-RPC 2.0 request model."""

    model_config = ConfigDict(extra="ignore")

    jsonrpc: Literal["2.0"] = "2.0"
    method: StrictStr
    params: Optional[Dict[str, Any]] = None
    id: RequestId


class JSONRPCNotification(BaseModel):
    """JSON-RPC 2.0 notification model (no id, never answered)."""

    model_config = ConfigDict(extra="ignore")

    jsonrpc: Literal["2.0"] = "2.0"
    method: StrictStr
    params: Optional[Dict[str, Any]] = None

    def to_wire(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"jsonrpc": self.jsonrpc, "method": self.method}
        if self.params is not None:
            message["params"] = self.params
        return message


class JSONRPCError(BaseModel):
    """JSON-RPC 2.0 error model."""

    code: int
    message: str
    data: Optional[Any] = None


class JSONRPCResponse(BaseModel):
    """JSON-RPC 2.0 response model.

    Exactly one of ``result`` / ``error`` is emitted on the wire; ``id`` is
    always present and is ``null`` only when the request id could not be
    recovered.
    """

    jsonrpc: Literal["2.0"] = "2.0"
    id: Optional[RequestId]
    result: Optional[Any] = None
    error: Optional[JSONRPCError] = None

    def to_wire(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is not None:
            message["error"] = self.error.model_dump(exclude_none=True)
        else:
            message["result"] = self.result
        return message


class ErrorCode:
    """JSON-RPC 2.0 standard error codes and custom application codes."""

    # Standard JSON-RPC 2.0 error codes
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603

    # Handler-reported application errors and call timeouts
    SERVER_ERROR = -32000
