"""MCP HTTP transport: one message per POST, optional SSE push stream."""
import asyncio
import contextlib
import json
import logging
import socket
from typing import AsyncGenerator, Any, Dict, List, Optional, Tuple

import uvicorn
from fastapi import FastAPI, Request, Response
from sse_starlette.sse import EventSourceResponse
from starlette.datastructures import Headers
from starlette.middleware.cors import CORSMiddleware

from .connection import Connection
from .sessions import MCPSession, MCPSessionManager
from ..capabilities import MCP_PROTOCOL_VERSION
from ..jsonrpc.handler import JSONRPCHandler
from ..jsonrpc.models import ErrorCode
from ..utils.errors import StartupError

logger = logging.getLogger(__name__)

SSE_KEEPALIVE_SECONDS = 30.0

CORS_ALLOW_HEADERS = ["Content-Type", "Mcp-Session-Id", "Mcp-Protocol-Version", "Last-Event-Id"]
CORS_EXPOSE_HEADERS = ["Mcp-Session-Id", "Mcp-Protocol-Version"]


class MCPTransport:
    """Handles MCP Streamable HTTP transport.

    Every POST carries exactly one message and its HTTP response is the single
    reply. The Connection built for a POST lives only for that call; the
    session only remembers whether initialize has succeeded and buffers
    server-initiated notifications for GET /mcp.
    """

    name = "http"

    def __init__(self, handler: JSONRPCHandler, session_manager: Optional[MCPSessionManager] = None):
        self.handler = handler
        self.session_manager = session_manager or MCPSessionManager()

    async def dispatch(self, body: bytes, session: Optional[MCPSession] = None) -> Tuple[int, Optional[str]]:
        """Run one message through the engine.

        Returns:
            (HTTP status, response body); the body is None for notifications.
        """
        replies: List[str] = []

        async def capture(data: str) -> None:
            replies.append(data)

        connection = Connection(
            capture,
            transport=self.name,
            connection_id=session.session_id if session else None,
        )
        connection.initialized = bool(session and session.initialized)
        await self.handler.handle_message(body, connection)
        if session is not None and connection.initialized:
            session.initialized = True

        if not replies:
            return 202, None
        reply = replies[0]
        error = json.loads(reply).get("error") or {}
        status = 400 if error.get("code") == ErrorCode.PARSE_ERROR else 200
        return status, reply

    def _session_headers(self, session: MCPSession) -> Dict[str, str]:
        return {
            "Mcp-Session-Id": session.session_id,
            "Mcp-Protocol-Version": MCP_PROTOCOL_VERSION,
        }

    async def handle_post_request(self, request: Request) -> Response:
        """Handle POST /mcp.

        Creates a session on first contact (or for an unknown session id) and
        echoes it in the Mcp-Session-Id header.
        """
        protocol_version = request.headers.get("Mcp-Protocol-Version")
        if protocol_version and protocol_version != MCP_PROTOCOL_VERSION:
            logger.warning(f"Client protocol version mismatch: {protocol_version}")

        session_id = request.headers.get("Mcp-Session-Id")
        session = self.session_manager.get_session(session_id)
        if session is None:
            if session_id:
                logger.warning(f"Session not found: {session_id}, creating new one")
            session = self.session_manager.create_session()

        status, reply = await self.dispatch(await request.body(), session)
        headers = self._session_headers(session)
        if reply is None:
            return Response(status_code=status, headers=headers)
        return Response(content=reply, status_code=status, media_type="application/json", headers=headers)

    async def handle_execute_request(self, request: Request) -> Response:
        """Handle POST /mcp/execute.

        Older clients post ``{"id": ..., "params": {"name", "parameters"}}``
        without the JSON-RPC envelope; the missing fields are filled in.
        """
        body = await request.body()
        try:
            message = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError):
            message = None
        if isinstance(message, dict):
            message.setdefault("jsonrpc", "2.0")
            message.setdefault("method", "mcp/execute")
            body = json.dumps(message).encode("utf-8")
        return await self._legacy_response(body)

    async def handle_legacy_request(self, request: Request) -> Response:
        """Plain JSON-RPC POST without MCP session headers."""
        return await self._legacy_response(await request.body())

    async def _legacy_response(self, body: bytes) -> Response:
        status, reply = await self.dispatch(body)
        if reply is None:
            return Response(status_code=status)
        return Response(content=reply, status_code=status, media_type="application/json")

    async def handle_get_request(self, request: Request) -> Response:
        """Handle GET /mcp: open an SSE stream of server-initiated messages.

        Supports resumption via the Last-Event-Id header.
        """
        session_id = request.headers.get("Mcp-Session-Id")
        if not session_id:
            return Response(
                content=json.dumps({"error": "No session ID provided. Initialize first."}),
                status_code=400,
                media_type="application/json",
            )

        session = self.session_manager.get_session(session_id)
        if not session:
            return Response(
                content=json.dumps({"error": "Invalid session ID"}),
                status_code=404,
                media_type="application/json",
            )

        last_event_id = request.headers.get("Last-Event-Id")

        async def event_generator() -> AsyncGenerator[dict, None]:
            try:
                if last_event_id:
                    for event in session.events_after(last_event_id):
                        yield {"data": event.data, "event": event.event, "id": event.id}

                while True:
                    try:
                        event = await asyncio.wait_for(session.queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
                    except asyncio.TimeoutError:
                        yield {"comment": "keepalive"}
                        continue
                    yield {"data": event.data, "event": event.event, "id": event.id}
            except asyncio.CancelledError:
                logger.info(f"SSE stream cancelled for session {session_id}")
                raise

        return EventSourceResponse(event_generator(), headers=self._session_headers(session))

    async def handle_delete_request(self, request: Request) -> Response:
        """Handle DELETE /mcp: terminate a session."""
        session_id = request.headers.get("Mcp-Session-Id")
        if not session_id or not self.session_manager.delete_session(session_id):
            return Response(status_code=404)
        return Response(status_code=204)

    async def send_notification(
        self,
        session_id: str,
        method: str,
        params: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Queue a notification for a session's SSE stream."""
        session = self.session_manager.get_session(session_id)
        if not session:
            logger.warning(f"Cannot send notification: session {session_id} not found")
            return False
        await session.push(method, params)
        logger.debug(f"Queued notification for session {session_id}: {method}")
        return True

    def start_cleanup(self):
        """Start background cleanup of expired sessions."""
        self.session_manager.start_background_cleanup()

    def stop_cleanup(self):
        """Stop background cleanup."""
        self.session_manager.stop_background_cleanup()


class PreflightCORSMiddleware(CORSMiddleware):
    """CORS for browser clients; an accepted preflight is answered with 204."""

    def preflight_response(self, request_headers: Headers) -> Response:
        response = super().preflight_response(request_headers)
        if response.status_code != 200:
            return response
        headers = {
            key: value for key, value in response.headers.items()
            if key not in ("content-length", "content-type")
        }
        return Response(status_code=204, headers=headers)


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server whose shutdown is driven by the lifecycle, not by signals."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class HTTPServer:
    """Binds the ASGI app to a host/port pair and runs uvicorn in-process."""

    def __init__(
        self, app: FastAPI, host: str, port: int, log_level: str = "info", grace: float = 5.0
    ):
        self.app = app
        self.host = host
        self.port = port
        self.log_level = log_level
        self.grace = grace
        self._server: Optional[_EmbeddedServer] = None
        self._serve_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Bind the socket and wait until uvicorn is serving.

        Raises:
            StartupError: the address cannot be bound or uvicorn fails to start.
        """
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
        except OSError as e:
            sock.close()
            raise StartupError(f"Cannot bind {self.host}:{self.port}: {e}") from e
        self.port = sock.getsockname()[1]

        config = uvicorn.Config(
            self.app,
            log_level=self.log_level.lower(),
            lifespan="on",
            timeout_graceful_shutdown=max(1, int(self.grace)),
        )
        self._server = _EmbeddedServer(config)
        self._serve_task = asyncio.ensure_future(self._server.serve(sockets=[sock]))

        while not self._server.started:
            if self._serve_task.done():
                sock.close()
                raise StartupError(f"HTTP server failed to start on {self.host}:{self.port}")
            await asyncio.sleep(0.05)
        logger.info(f"MCP HTTP server running at http://{self.host}:{self.port}/")

    async def stop(self) -> None:
        """Stop accepting connections and give open requests the grace period."""
        if self._server is None or self._serve_task is None:
            return
        self._server.should_exit = True
        done, _ = await asyncio.wait({self._serve_task}, timeout=self.grace + 1.0)
        if not done:
            self._server.force_exit = True
            await asyncio.wait({self._serve_task}, timeout=1.0)
        self._server = None
        self._serve_task = None
        logger.info("MCP HTTP server stopped")
