"""JSON-RPC 2.0 protocol engine."""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

from pydantic import ValidationError

from .error_mapper import to_jsonrpc_error
from .models import (
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
)
from ..capabilities import CapabilityNegotiator
from ..tools.registry import Tool, ToolFailure, ToolRegistry, ToolResult, ToolSuccess
from ..transports.connection import Connection
from ..utils.errors import (
    CallTimeoutError,
    HandlerError,
    InvalidParamsError,
    InvalidRequestError,
    MethodNotFoundError,
    ParseError,
    ProtocolError,
    ToolNotFoundError,
)
from ..utils.validation import validate_arguments

logger = logging.getLogger(__name__)

MethodHandler = Callable[[Dict[str, Any], Optional[Connection]], Awaitable[Any]]
Message = Union[JSONRPCRequest, JSONRPCNotification]


def _recover_id(message: Any) -> Optional[Union[str, int, float]]:
    """Best-effort id of a message that failed validation."""
    if isinstance(message, dict):
        request_id = message.get("id")
        if isinstance(request_id, (str, int, float)) and not isinstance(request_id, bool):
            return request_id
    return None


def _looks_like_response(message: Dict[str, Any]) -> bool:
    return "id" in message and ("result" in message or "error" in message)


def _consume_result(task: asyncio.Task) -> None:
    # Abandoned handler tasks (timed out, ignored cancellation) finish unobserved.
    if not task.cancelled() and task.exception() is not None:
        logger.debug(f"Abandoned tool call finished with error: {task.exception()}")


class JSONRPCHandler:
    """Parses, classifies and dispatches JSON-RPC 2.0 messages.

    Each message moves through Received -> Parsed -> Classified -> Dispatched
    -> Completed. Requests on one connection run concurrently and complete in
    any order; only the final write is serialized, by the Connection.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        negotiator: CapabilityNegotiator,
        call_timeout: Optional[float] = None,
        require_initialize_first: bool = False,
    ):
        self.registry = registry
        self.negotiator = negotiator
        self.call_timeout = call_timeout
        self.require_initialize_first = require_initialize_first
        self.methods: Dict[str, MethodHandler] = {}
        self.fault_handler: Optional[Callable[[BaseException], None]] = None
        self._register_builtin_methods()

    def register_method(self, method_name: str, handler: MethodHandler):
        """Register a JSON-RPC method handler.

        Args:
            method_name: Name of the JSON-RPC method (e.g., "tools/list")
            handler: Async callable taking (params, connection)
        """
        self.methods[method_name] = handler
        logger.info(f"Registered JSON-RPC method: {method_name}")

    def _register_builtin_methods(self):
        self.register_method("initialize", self._initialize)
        self.register_method("notifications/initialized", self._initialized)
        self.register_method("ping", self._ping)
        self.register_method("tools/list", self._tools_list)
        self.register_method("tools/call", self._tools_call)
        self.register_method("mcp/execute", self._mcp_execute)

    # Received -> Parsed

    @staticmethod
    def parse(raw: Union[str, bytes]) -> Any:
        """Decode one raw message into a JSON value.

        Raises:
            ParseError: not valid UTF-8 JSON.
        """
        try:
            if isinstance(raw, (bytes, bytearray)):
                raw = raw.decode("utf-8")
            return json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ParseError("Parse error", data={"error": str(e)}) from e

    # Parsed -> Classified

    @staticmethod
    def classify(message: Any) -> Optional[Message]:
        """Classify a decoded value as a request or notification.

        Returns None for a stray response, which the server drops.

        Raises:
            InvalidRequestError: the value is not a JSON-RPC 2.0 message.
        """
        if not isinstance(message, dict):
            raise InvalidRequestError("Invalid Request: expected a JSON object")
        if "method" not in message:
            if _looks_like_response(message):
                return None
            raise InvalidRequestError("Invalid Request: missing method")
        if message.get("jsonrpc") != "2.0":
            raise InvalidRequestError('Invalid Request: jsonrpc must be "2.0"')

        model = JSONRPCRequest if "id" in message else JSONRPCNotification
        try:
            return model.model_validate(message)
        except ValidationError as e:
            raise InvalidRequestError(
                "Invalid Request",
                data=[f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
            ) from e

    # Classified -> Dispatched

    async def receive(self, raw: Union[str, bytes], connection: Connection) -> Optional[asyncio.Task]:
        """Accept one framed message from a transport.

        Requests and notifications are scheduled as tasks tracked on the
        connection and the call returns without waiting for them, so the
        transport's read loop keeps accepting messages. Parse and
        classification failures are answered immediately.

        Returns:
            The scheduled task, or None if nothing was dispatched.
        """
        if not connection.accepting:
            logger.warning(f"Connection {connection.connection_id} is closing, dropping message")
            return None

        logger.debug(f"Received on {connection.transport}: {raw!r}")
        decoded: Any = None
        try:
            decoded = self.parse(raw)
            message = self.classify(decoded)
        except ProtocolError as e:
            logger.warning(f"Rejected message: {e.message}")
            await self.reject(connection, e, _recover_id(decoded))
            return None

        if message is None:
            logger.warning(f"Dropping unexpected response message with id {decoded.get('id')!r}")
            return None

        if isinstance(message, JSONRPCNotification):
            task = asyncio.ensure_future(self.handle_notification(message, connection))
            connection.track_notification(task)
            return task

        if connection.is_in_flight(message.id):
            logger.warning(f"Request id {message.id!r} already in flight, dropping duplicate")
            return None
        task = asyncio.ensure_future(self._run_request(message, connection))
        connection.track_request(message.id, task)
        return task

    async def handle_message(self, raw: Union[str, bytes], connection: Connection) -> None:
        """Accept one message and wait until it has been fully processed."""
        task = await self.receive(raw, connection)
        if task is not None:
            await task

    async def reject(
        self, connection: Connection, error: ProtocolError, request_id: Any = None
    ) -> None:
        """Answer a message that could not be dispatched."""
        await self._deliver(connection, self._error_response(request_id, error))

    async def _run_request(self, request: JSONRPCRequest, connection: Connection) -> None:
        try:
            response = await self.handle_request(request, connection)
            await self._deliver(connection, response)
        except asyncio.CancelledError:
            logger.info(f"Request {request.id!r} ({request.method}) cancelled")
            raise
        except Exception as e:
            logger.error(f"Fault while dispatching {request.method}: {e}", exc_info=True)
            if self.fault_handler is not None:
                self.fault_handler(e)

    async def handle_request(
        self,
        request: JSONRPCRequest,
        connection: Optional[Connection] = None
    ) -> JSONRPCResponse:
        """Handle a JSON-RPC 2.0 request.

        Every failure is recovered here and becomes the error of this one
        response; it never affects other requests.

        Returns:
            JSONRPCResponse with result or error
        """
        try:
            result = await self._call_method(request.method, request.params or {}, connection)
            return JSONRPCResponse(id=request.id, result=result)

        except ProtocolError as e:
            return self._error_response(request.id, e)
        except Exception as e:
            # Internal error
            logger.error(f"Internal error handling {request.method}: {e}", exc_info=True)
            return self._error_response(request.id, e)

    async def handle_notification(
        self,
        notification: JSONRPCNotification,
        connection: Optional[Connection] = None
    ) -> None:
        """Handle a notification; outcomes are logged, never transmitted."""
        try:
            await self._call_method(notification.method, notification.params or {}, connection)
        except ProtocolError as e:
            logger.warning(f"Notification {notification.method} failed: {e.message}")
        except Exception as e:
            logger.error(f"Internal error handling notification {notification.method}: {e}", exc_info=True)

    async def _call_method(
        self, method: str, params: Dict[str, Any], connection: Optional[Connection]
    ) -> Any:
        handler = self.methods.get(method)
        if handler is not None:
            return await handler(params, connection)
        if method in self.registry:
            return await self.call_tool(method, params, connection)
        raise MethodNotFoundError(f"Method not found: {method}")

    # Dispatched -> Completed

    async def call_tool(
        self, name: str, arguments: Any, connection: Optional[Connection] = None
    ) -> Any:
        """Look up, validate and invoke a tool; returns the handler's value.

        Raises:
            MethodNotFoundError, InvalidParamsError, HandlerError,
            CallTimeoutError, InvalidRequestError
        """
        if self.require_initialize_first and not (connection and connection.initialized):
            raise InvalidRequestError("Server not initialized: send initialize first")

        try:
            tool = self.registry.lookup(name)
        except ToolNotFoundError as e:
            raise MethodNotFoundError(str(e), data={"name": name}) from e

        if not isinstance(arguments, dict):
            raise InvalidParamsError("Tool arguments must be an object", data={"name": name})
        errors = validate_arguments(tool.input_schema, arguments)
        if errors:
            raise InvalidParamsError(
                f"Invalid params for tool {name}: {errors[0]['message']}",
                data={"name": name, "errors": errors},
            )

        outcome = await self._invoke(tool, arguments)
        if isinstance(outcome, ToolFailure):
            data: Dict[str, Any] = {"name": name, "error": outcome.message}
            if outcome.data is not None:
                data["details"] = outcome.data
            raise HandlerError(outcome.message, data=data)
        return outcome.value

    async def _invoke(self, tool: Tool, arguments: Dict[str, Any]) -> ToolResult:
        task = asyncio.ensure_future(tool.handler.invoke(arguments))
        try:
            done, _ = await asyncio.wait({task}, timeout=self.call_timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if not done:
            task.cancel()
            task.add_done_callback(_consume_result)
            timeout_ms = int(self.call_timeout * 1000)
            raise CallTimeoutError(
                f"Tool {tool.name} timed out after {timeout_ms} ms",
                data={"reason": "timeout", "timeoutMs": timeout_ms, "name": tool.name},
            )

        try:
            outcome = task.result()
        except asyncio.CancelledError:
            return ToolFailure(message=f"Tool {tool.name} was cancelled")
        except Exception as e:
            logger.warning(f"Tool {tool.name} raised: {e}")
            return ToolFailure(message=str(e))

        if isinstance(outcome, (ToolSuccess, ToolFailure)):
            return outcome
        return ToolSuccess(outcome)

    async def _deliver(self, connection: Connection, response: JSONRPCResponse) -> None:
        try:
            await connection.send(response.to_wire())
        except (TypeError, ValueError) as e:
            logger.error(f"Response for id {response.id!r} is not JSON-serializable: {e}")
            await connection.send(self._error_response(response.id, e).to_wire())

    @staticmethod
    def _error_response(request_id: Any, error: BaseException) -> JSONRPCResponse:
        return JSONRPCResponse(id=request_id, error=to_jsonrpc_error(error))

    # Built-in methods

    async def _initialize(self, params: Dict[str, Any], connection: Optional[Connection]):
        result = self.negotiator.negotiate(params)
        if connection is not None:
            connection.initialized = True
        return result

    async def _initialized(self, params: Dict[str, Any], connection: Optional[Connection]):
        logger.info("Client reported initialization complete")
        return None

    async def _ping(self, params: Dict[str, Any], connection: Optional[Connection]):
        return {}

    async def _tools_list(self, params: Dict[str, Any], connection: Optional[Connection]):
        return {"tools": self.registry.list_tools()}

    async def _tools_call(self, params: Dict[str, Any], connection: Optional[Connection]):
        name, arguments = self._tool_call_params(params)
        result = await self.call_tool(name, arguments, connection)
        return {
            "content": [{"type": "text", "text": json.dumps(result, indent=2, default=str)}],
            "structuredContent": result,
            "isError": False,
        }

    async def _mcp_execute(self, params: Dict[str, Any], connection: Optional[Connection]):
        name, arguments = self._tool_call_params(params)
        return await self.call_tool(name, arguments, connection)

    @staticmethod
    def _tool_call_params(params: Dict[str, Any]) -> Tuple[str, Any]:
        name = params.get("name")
        if not name or not isinstance(name, str):
            raise InvalidParamsError("Invalid params: Missing tool name")
        # 'arguments' is the MCP standard key, 'parameters' the legacy execute form
        arguments = params.get("arguments")
        if arguments is None:
            arguments = params.get("parameters")
        return name, {} if arguments is None else arguments
