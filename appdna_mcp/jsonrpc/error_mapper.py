"""Translation of internal error kinds to JSON-RPC error objects."""
from .models import JSONRPCError, ErrorCode
from ..utils.errors import ProtocolError


def to_jsonrpc_error(error: BaseException) -> JSONRPCError:
    """Map an exception to the JSON-RPC error object sent to the client.

    Protocol errors keep their own code, message and data. Anything else is
    an unexpected engine fault and becomes INTERNAL_ERROR.
    """
    if isinstance(error, ProtocolError):
        return JSONRPCError(code=error.code, message=error.message, data=error.data)
    return JSONRPCError(
        code=ErrorCode.INTERNAL_ERROR,
        message="Internal error",
        data={"details": str(error)},
    )
