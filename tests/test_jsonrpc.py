"""Unit tests for the JSON-RPC protocol engine."""
import asyncio
import json

import pytest

from appdna_mcp.capabilities import CapabilityNegotiator, ServerInfo
from appdna_mcp.jsonrpc.handler import JSONRPCHandler
from appdna_mcp.jsonrpc.models import JSONRPCRequest, JSONRPCNotification, ErrorCode
from appdna_mcp.tools.registry import ToolFailure, ToolRegistry
from appdna_mcp.transports.connection import Connection


class Capture:
    """Collects everything written to a Connection."""

    def __init__(self):
        self.messages = []

    async def __call__(self, data: str) -> None:
        self.messages.append(json.loads(data))


@pytest.fixture
def registry():
    registry = ToolRegistry()

    async def echo(text: str):
        return {"echo": text}

    registry.register_tool(
        name="echo",
        description="Echo the input",
        input_schema={
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
        handler=echo,
    )
    return registry


def make_handler(registry, **kwargs):
    negotiator = CapabilityNegotiator(
        registry,
        ServerInfo(name="test-server", version="0.0.1", description="Test server"),
        transports=["stdio"],
    )
    return JSONRPCHandler(registry, negotiator, **kwargs)


@pytest.fixture
def handler(registry):
    return make_handler(registry)


@pytest.fixture
def capture():
    return Capture()


@pytest.fixture
def connection(capture):
    return Connection(capture, transport="test")


@pytest.mark.asyncio
async def test_jsonrpc_method_not_found(handler):
    """Test that non-existent methods return METHOD_NOT_FOUND error."""
    request = JSONRPCRequest(method="nonexistent_method", params={}, id=1)

    response = await handler.handle_request(request)

    assert response.error is not None
    assert response.error.code == ErrorCode.METHOD_NOT_FOUND
    assert "nonexistent_method" in response.error.message
    assert response.result is None


@pytest.mark.asyncio
async def test_jsonrpc_successful_call(handler):
    """Test successful method execution."""
    async def test_method(params, connection):
        return {"result": "success", "input": params}

    handler.register_method("test", test_method)

    request = JSONRPCRequest(method="test", params={"key": "value"}, id=1)
    response = await handler.handle_request(request)

    assert response.error is None
    assert response.result == {"result": "success", "input": {"key": "value"}}
    assert response.id == 1


@pytest.mark.asyncio
async def test_jsonrpc_internal_error(handler):
    """Test that unexpected exceptions in a method return INTERNAL_ERROR."""
    async def crash_method(params, connection):
        raise RuntimeError("Something went wrong")

    handler.register_method("crash", crash_method)

    response = await handler.handle_request(JSONRPCRequest(method="crash", params={}, id=3))

    assert response.error is not None
    assert response.error.code == ErrorCode.INTERNAL_ERROR
    assert response.error.data == {"details": "Something went wrong"}


@pytest.mark.asyncio
async def test_jsonrpc_no_params(handler):
    """Test method call with no params (None)."""
    async def no_params_method(params, connection):
        assert params == {}
        return {"status": "ok"}

    handler.register_method("no_params", no_params_method)

    response = await handler.handle_request(JSONRPCRequest(method="no_params", params=None, id=4))

    assert response.error is None
    assert response.result == {"status": "ok"}


def test_error_codes():
    """Test that error codes are correctly defined."""
    assert ErrorCode.PARSE_ERROR == -32700
    assert ErrorCode.INVALID_REQUEST == -32600
    assert ErrorCode.METHOD_NOT_FOUND == -32601
    assert ErrorCode.INVALID_PARAMS == -32602
    assert ErrorCode.INTERNAL_ERROR == -32603
    assert ErrorCode.SERVER_ERROR == -32000


class TestClassification:
    """Parsed -> Classified."""

    def test_request_has_id(self):
        message = JSONRPCHandler.classify({"jsonrpc": "2.0", "id": 7, "method": "ping"})
        assert isinstance(message, JSONRPCRequest)
        assert message.id == 7

    def test_notification_has_no_id(self):
        message = JSONRPCHandler.classify({"jsonrpc": "2.0", "method": "ping"})
        assert isinstance(message, JSONRPCNotification)

    def test_stray_response_is_dropped(self):
        assert JSONRPCHandler.classify({"jsonrpc": "2.0", "id": 1, "result": {}}) is None

    @pytest.mark.parametrize("message", [
        {"jsonrpc": "2.0", "id": 1},
        {"jsonrpc": "1.0", "id": 1, "method": "ping"},
        {"id": 1, "method": "ping"},
        {"jsonrpc": "2.0", "id": True, "method": "ping"},
        {"jsonrpc": "2.0", "id": 1, "method": 5},
        [1, 2, 3],
        "ping",
    ])
    def test_invalid_requests(self, message):
        from appdna_mcp.utils.errors import InvalidRequestError

        with pytest.raises(InvalidRequestError):
            JSONRPCHandler.classify(message)


class TestReceive:
    """Full path from raw bytes to written response."""

    @pytest.mark.asyncio
    async def test_id_echoed_with_type(self, handler, connection, capture):
        await handler.handle_message('{"jsonrpc": "2.0", "id": "abc", "method": "ping"}', connection)
        await handler.handle_message('{"jsonrpc": "2.0", "id": 42, "method": "ping"}', connection)

        assert capture.messages[0]["id"] == "abc"
        assert capture.messages[1]["id"] == 42
        assert isinstance(capture.messages[1]["id"], int)
        assert capture.messages[0]["result"] == {}

    @pytest.mark.asyncio
    async def test_parse_error_then_continue(self, handler, connection, capture):
        await handler.handle_message(b'{"jsonrpc": "2.0", "id": 1, "method"', connection)
        await handler.handle_message(b'{"jsonrpc": "2.0", "id": 2, "method": "ping"}', connection)

        assert capture.messages[0]["error"]["code"] == ErrorCode.PARSE_ERROR
        assert capture.messages[0]["id"] is None
        assert capture.messages[1] == {"jsonrpc": "2.0", "id": 2, "result": {}}

    @pytest.mark.asyncio
    async def test_invalid_request_echoes_recoverable_id(self, handler, connection, capture):
        await handler.handle_message('{"jsonrpc": "2.0", "id": 9, "params": {}}', connection)

        assert capture.messages == [{
            "jsonrpc": "2.0",
            "id": 9,
            "error": {"code": ErrorCode.INVALID_REQUEST, "message": "Invalid Request: missing method"},
        }]

    @pytest.mark.asyncio
    async def test_notification_never_answered(self, handler, connection, capture):
        async def failing(params, connection):
            raise RuntimeError("boom")

        handler.register_method("notify/fail", failing)

        await handler.handle_message('{"jsonrpc": "2.0", "method": "notify/fail"}', connection)
        await handler.handle_message('{"jsonrpc": "2.0", "method": "unknown/method"}', connection)
        await handler.handle_message('{"jsonrpc": "2.0", "method": "notifications/initialized"}', connection)

        assert capture.messages == []

    @pytest.mark.asyncio
    async def test_stray_response_not_answered(self, handler, connection, capture):
        await handler.handle_message('{"jsonrpc": "2.0", "id": 3, "result": "late"}', connection)
        assert capture.messages == []

    @pytest.mark.asyncio
    async def test_unserializable_result_becomes_internal_error(self, handler, connection, capture):
        async def bad_result(params, connection):
            return {"value": object()}

        handler.register_method("bad", bad_result)
        await handler.handle_message('{"jsonrpc": "2.0", "id": 5, "method": "bad"}', connection)

        assert len(capture.messages) == 1
        assert capture.messages[0]["id"] == 5
        assert capture.messages[0]["error"]["code"] == ErrorCode.INTERNAL_ERROR

    @pytest.mark.asyncio
    async def test_closing_connection_drops_new_messages(self, handler, connection, capture):
        await connection.close()
        task = await handler.receive('{"jsonrpc": "2.0", "id": 1, "method": "ping"}', connection)

        assert task is None
        assert capture.messages == []


class TestToolDispatch:
    """Classified -> Dispatched -> Completed for tool invocations."""

    @pytest.mark.asyncio
    async def test_tools_call_envelope(self, handler):
        request = JSONRPCRequest(
            method="tools/call", params={"name": "echo", "arguments": {"text": "hi"}}, id=1
        )
        response = await handler.handle_request(request)

        assert response.error is None
        assert response.result["structuredContent"] == {"echo": "hi"}
        assert json.loads(response.result["content"][0]["text"]) == {"echo": "hi"}
        assert response.result["isError"] is False

    @pytest.mark.asyncio
    async def test_mcp_execute_returns_raw_result(self, handler):
        request = JSONRPCRequest(
            method="mcp/execute", params={"name": "echo", "parameters": {"text": "hi"}}, id=1
        )
        response = await handler.handle_request(request)

        assert response.result == {"echo": "hi"}

    @pytest.mark.asyncio
    async def test_per_tool_method_name(self, handler):
        response = await handler.handle_request(
            JSONRPCRequest(method="echo", params={"text": "direct"}, id="x")
        )
        assert response.id == "x"
        assert response.result == {"echo": "direct"}

    @pytest.mark.asyncio
    async def test_unknown_tool_is_method_not_found(self, handler):
        response = await handler.handle_request(
            JSONRPCRequest(method="tools/call", params={"name": "missing", "arguments": {}}, id=1)
        )
        assert response.error.code == ErrorCode.METHOD_NOT_FOUND
        assert response.error.data == {"name": "missing"}

    @pytest.mark.asyncio
    async def test_missing_required_field_is_invalid_params(self, handler):
        response = await handler.handle_request(
            JSONRPCRequest(method="tools/call", params={"name": "echo", "arguments": {}}, id=1)
        )
        assert response.error.code == ErrorCode.INVALID_PARAMS
        assert response.error.data["errors"][0]["message"] == "Required field 'text' is missing"

    @pytest.mark.asyncio
    async def test_wrong_type_is_invalid_params(self, handler):
        response = await handler.handle_request(
            JSONRPCRequest(method="echo", params={"text": 12}, id=1)
        )
        assert response.error.code == ErrorCode.INVALID_PARAMS
        assert response.error.data["errors"][0]["field"] == "text"

    @pytest.mark.asyncio
    async def test_missing_tool_name_is_invalid_params(self, handler):
        response = await handler.handle_request(
            JSONRPCRequest(method="tools/call", params={"arguments": {}}, id=1)
        )
        assert response.error.code == ErrorCode.INVALID_PARAMS

    @pytest.mark.asyncio
    async def test_handler_failure_message_verbatim(self, registry):
        async def reject(reason: str):
            return ToolFailure(message=f"rejected: {reason}")

        registry.register_tool(
            name="reject",
            description="Always fails",
            input_schema={"type": "object", "properties": {"reason": {"type": "string"}}},
            handler=reject,
        )
        handler = make_handler(registry)

        response = await handler.handle_request(
            JSONRPCRequest(method="reject", params={"reason": "nope"}, id=1)
        )
        assert response.error.code == ErrorCode.SERVER_ERROR
        assert response.error.message == "rejected: nope"
        assert response.error.data == {"name": "reject", "error": "rejected: nope"}

    @pytest.mark.asyncio
    async def test_handler_exception_is_handler_error(self, registry):
        async def explode():
            raise KeyError("story")

        registry.register_tool(
            name="explode", description="Raises", input_schema={"type": "object"}, handler=explode
        )
        handler = make_handler(registry)

        response = await handler.handle_request(JSONRPCRequest(method="explode", params={}, id=1))
        assert response.error.code == ErrorCode.SERVER_ERROR
        assert "story" in response.error.data["error"]

    @pytest.mark.asyncio
    async def test_require_initialize_first(self, registry, capture):
        handler = make_handler(registry, require_initialize_first=True)
        connection = Connection(capture, transport="test")

        await handler.handle_message(
            '{"jsonrpc": "2.0", "id": 1, "method": "echo", "params": {"text": "a"}}', connection
        )
        await handler.handle_message('{"jsonrpc": "2.0", "id": 2, "method": "initialize"}', connection)
        await handler.handle_message(
            '{"jsonrpc": "2.0", "id": 3, "method": "echo", "params": {"text": "b"}}', connection
        )

        assert capture.messages[0]["error"]["code"] == ErrorCode.INVALID_REQUEST
        assert "result" in capture.messages[1]
        assert capture.messages[2]["result"] == {"echo": "b"}


class TestConcurrency:
    """Requests on one connection run concurrently and complete out of order."""

    @pytest.fixture
    def slow_registry(self, registry):
        async def sleep_for(delay: float, label: str):
            await asyncio.sleep(delay)
            return label

        registry.register_tool(
            name="sleep_for",
            description="Sleep then return the label",
            input_schema={
                "type": "object",
                "properties": {"delay": {"type": "number"}, "label": {"type": "string"}},
                "required": ["delay", "label"],
            },
            handler=sleep_for,
        )
        return registry

    @pytest.mark.asyncio
    async def test_out_of_order_completion(self, slow_registry, connection, capture):
        handler = make_handler(slow_registry)

        first = await handler.receive(
            '{"jsonrpc": "2.0", "id": 5, "method": "sleep_for", "params": {"delay": 0.2, "label": "slow"}}',
            connection,
        )
        second = await handler.receive(
            '{"jsonrpc": "2.0", "id": 6, "method": "sleep_for", "params": {"delay": 0.01, "label": "fast"}}',
            connection,
        )
        await asyncio.gather(first, second)

        assert [m["id"] for m in capture.messages] == [6, 5]
        assert capture.messages[0]["result"] == "fast"
        assert capture.messages[1]["result"] == "slow"

    @pytest.mark.asyncio
    async def test_duplicate_in_flight_id_answered_once(self, slow_registry, connection, capture):
        handler = make_handler(slow_registry)
        raw = '{"jsonrpc": "2.0", "id": 1, "method": "sleep_for", "params": {"delay": 0.05, "label": "a"}}'

        task = await handler.receive(raw, connection)
        duplicate = await handler.receive(raw, connection)
        await task

        assert duplicate is None
        assert [m["id"] for m in capture.messages] == [1]

    @pytest.mark.asyncio
    async def test_timeout_only_affects_its_own_request(self, slow_registry, connection, capture):
        handler = make_handler(slow_registry, call_timeout=0.05)

        slow = await handler.receive(
            '{"jsonrpc": "2.0", "id": 1, "method": "sleep_for", "params": {"delay": 1, "label": "slow"}}',
            connection,
        )
        fast = await handler.receive(
            '{"jsonrpc": "2.0", "id": 2, "method": "sleep_for", "params": {"delay": 0, "label": "fast"}}',
            connection,
        )
        await asyncio.gather(slow, fast)

        by_id = {m["id"]: m for m in capture.messages}
        assert by_id[2]["result"] == "fast"
        assert by_id[1]["error"]["code"] == ErrorCode.SERVER_ERROR
        assert by_id[1]["error"]["data"]["reason"] == "timeout"
        assert by_id[1]["error"]["data"]["timeoutMs"] == 50

    @pytest.mark.asyncio
    async def test_close_cancels_in_flight(self, slow_registry, connection, capture):
        handler = make_handler(slow_registry)

        task = await handler.receive(
            '{"jsonrpc": "2.0", "id": 1, "method": "sleep_for", "params": {"delay": 5, "label": "never"}}',
            connection,
        )
        await asyncio.sleep(0)
        await connection.close(grace=0.05)
        await asyncio.wait({task}, timeout=1)

        assert task.cancelled()
        assert capture.messages == []
        assert connection.in_flight == {}

    @pytest.mark.asyncio
    async def test_close_grace_lets_call_finish(self, slow_registry, connection, capture):
        handler = make_handler(slow_registry)

        await handler.receive(
            '{"jsonrpc": "2.0", "id": 1, "method": "sleep_for", "params": {"delay": 0.02, "label": "done"}}',
            connection,
        )
        await connection.close(grace=1.0)

        assert capture.messages == [{"jsonrpc": "2.0", "id": 1, "result": "done"}]
