"""Server lifecycle and the FastAPI app serving the HTTP and WebSocket bindings."""
import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, BinaryIO, Dict, Optional

from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import Response

from .capabilities import MCP_PROTOCOL_VERSION, CapabilityNegotiator, ServerInfo
from .config import ServerConfig
from .jsonrpc.handler import JSONRPCHandler
from .tools.registry import ToolRegistry
from .transports.http import (
    CORS_ALLOW_HEADERS,
    CORS_EXPOSE_HEADERS,
    HTTPServer,
    MCPTransport,
    PreflightCORSMiddleware,
)
from .transports.stdio import StdioTransport
from .transports.websocket import WebSocketTransport
from .utils.errors import AlreadyRunningError, MCPError, StartupError

logger = logging.getLogger(__name__)


class ServerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


TRANSITIONS = {
    ServerState.STOPPED: {ServerState.STARTING},
    ServerState.STARTING: {ServerState.RUNNING, ServerState.ERROR},
    ServerState.RUNNING: {ServerState.STOPPED, ServerState.ERROR},
    ServerState.ERROR: set(),
}


class MCPServer:
    """Owns the registry, the protocol engine and the transports of one process.

    ``stop()`` is the single shutdown entry point; signal handlers, stdin EOF
    and dispatch faults all end up calling it.
    """

    def __init__(
        self,
        config: ServerConfig,
        registry: Optional[ToolRegistry] = None,
        stdio_reader: Optional[asyncio.StreamReader] = None,
        stdio_output: Optional[BinaryIO] = None,
    ):
        self.config = config
        self.registry = registry if registry is not None else ToolRegistry()
        self.negotiator = CapabilityNegotiator(
            self.registry,
            ServerInfo(
                name=config.server_name,
                version=config.server_version,
                description=config.server_description,
            ),
            transports=config.transports,
            authentication=config.authentication,
        )
        self.handler = JSONRPCHandler(
            self.registry,
            self.negotiator,
            call_timeout=config.call_timeout,
            require_initialize_first=config.require_initialize_first,
        )
        self.handler.fault_handler = self._on_fault

        self.state = ServerState.STOPPED
        self.exit_code = 0
        self._fault: Optional[BaseException] = None
        self._stopping: Optional[asyncio.Task] = None
        self._stopped: Optional[asyncio.Event] = None
        self._stop_requested = False

        self.stdio_transport: Optional[StdioTransport] = None
        self.http_transport: Optional[MCPTransport] = None
        self.websocket_transport: Optional[WebSocketTransport] = None
        self.http_server: Optional[HTTPServer] = None
        self.app: Optional[FastAPI] = None

        if config.transport == "stdio":
            self.stdio_transport = StdioTransport(self.handler, stdio_reader, stdio_output)
        else:
            self.http_transport = MCPTransport(self.handler)
            self.websocket_transport = WebSocketTransport(self.handler)
            self.app = create_app(self)
            self.http_server = HTTPServer(
                self.app,
                config.host,
                config.port,
                log_level=config.log_level,
                grace=config.shutdown_grace_seconds,
            )

    def _transition(self, new_state: ServerState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise MCPError(f"Illegal state transition {self.state.value} -> {new_state.value}")
        logger.info(f"MCP server state: {self.state.value} -> {new_state.value}")
        self.state = new_state

    async def start(self) -> None:
        """Bind the configured transport and begin accepting messages.

        Raises:
            AlreadyRunningError: the server is not stopped.
            StartupError: the transport could not be brought up; the server
                is left in the ERROR state.
        """
        if self.state != ServerState.STOPPED:
            raise AlreadyRunningError(f"MCP server is {self.state.value}")

        self._transition(ServerState.STARTING)
        self._stopped = asyncio.Event()
        self._stopping = None
        self._fault = None
        self._stop_requested = False
        if not len(self.registry):
            logger.warning("Starting MCP server with no registered tools")

        try:
            if self.stdio_transport is not None:
                await self.stdio_transport.start()
            else:
                await self.http_server.start()
        except Exception as e:
            logger.error(f"Failed to start MCP server: {e}", exc_info=True)
            self.exit_code = 1
            self._transition(ServerState.ERROR)
            self._stopped.set()
            if isinstance(e, StartupError):
                raise
            raise StartupError(f"Failed to start MCP server: {e}") from e

        self._transition(ServerState.RUNNING)
        logger.info(f"MCP server running on {', '.join(self.config.transports)} with {len(self.registry)} tools")
        if self._stop_requested:
            logger.info("Stop requested during startup")
            self._begin_stop()

    async def stop(self) -> None:
        """Shut down gracefully; a no-op when already stopped.

        Transports stop accepting messages, in-flight calls get
        ``shutdown_grace_seconds`` to finish and are then cancelled.
        Called while starting, it waits for startup to finish and then
        shuts down.
        """
        if self.state == ServerState.STARTING:
            self._stop_requested = True
            await self._stopped.wait()
            return
        if self.state == ServerState.STOPPED or self._stopped is None:
            return
        await asyncio.shield(self._begin_stop())

    def _begin_stop(self) -> asyncio.Task:
        if self._stopping is None:
            self._stopping = asyncio.ensure_future(self._shutdown())
        return self._stopping

    def _request_stop(self) -> None:
        """Start shutdown from a callback that cannot await it."""
        if self.state == ServerState.STARTING:
            self._stop_requested = True
        elif self.state != ServerState.STOPPED and self._stopped is not None:
            self._begin_stop()

    async def _shutdown(self) -> None:
        logger.info("Shutting down MCP server...")
        grace = self.config.shutdown_grace_seconds
        try:
            if self.stdio_transport is not None:
                await self.stdio_transport.stop(grace)
            else:
                await asyncio.gather(self.websocket_transport.stop(grace), self.http_server.stop())
        except Exception as e:
            logger.error(f"Error while stopping transports: {e}", exc_info=True)
            self.exit_code = 1

        if self._fault is not None:
            if self.state != ServerState.ERROR:
                self._transition(ServerState.ERROR)
        elif self.state == ServerState.RUNNING:
            self._transition(ServerState.STOPPED)
        self._stopped.set()

    def _on_fault(self, error: BaseException) -> None:
        """Uncaught fault in the dispatch path: not recoverable for the process."""
        if self.state not in (ServerState.STARTING, ServerState.RUNNING) or self._fault is not None:
            return
        logger.critical(f"Unrecoverable fault, stopping MCP server: {error}")
        self._fault = error
        self.exit_code = 1
        self._request_stop()

    def install_signal_handlers(self) -> None:
        """Route SIGINT/SIGTERM to stop()."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Signal handler for {sig.name} not supported here")

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.warning(f"Received {sig.name}, initiating graceful shutdown...")
        self._request_stop()

    async def serve(self) -> int:
        """Start, run until a signal, stdin EOF or fault stops the server.

        Returns:
            Process exit code: 0 after a graceful shutdown, 1 after a startup
            failure or an unrecoverable fault.
        """
        try:
            await self.start()
        except MCPError as e:
            logger.error(f"MCP server did not start: {e}")
            return 1

        self.install_signal_handlers()
        try:
            waiters = [asyncio.ensure_future(self._stopped.wait())]
            if self.stdio_transport is not None:
                waiters.append(asyncio.ensure_future(self.stdio_transport.wait_closed()))
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            for waiter in waiters:
                waiter.cancel()

            if self.stdio_transport is not None and self.stdio_transport.failure is not None:
                self._on_fault(self.stdio_transport.failure)
            await self.stop()
        finally:
            self.remove_signal_handlers()
        return self.exit_code

    def health(self) -> Dict[str, Any]:
        return {
            "status": "healthy" if self.state == ServerState.RUNNING else self.state.value,
            "service": self.config.server_name,
            "version": self.config.server_version,
            "transport": self.config.transports,
            "protocol_version": MCP_PROTOCOL_VERSION,
            "state": self.state.value,
            "tools": len(self.registry),
        }


def create_app(server: MCPServer) -> FastAPI:
    """FastAPI app exposing the HTTP and WebSocket bindings of ``server``."""
    http = server.http_transport
    websocket_transport = server.websocket_transport

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        http.start_cleanup()
        logger.info("MCP session cleanup task started")
        yield
        http.stop_cleanup()

    app = FastAPI(
        title=server.config.server_name,
        description=server.config.server_description,
        version=server.config.server_version,
        lifespan=lifespan,
    )
    app.state.mcp_server = server
    app.add_middleware(
        PreflightCORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=CORS_ALLOW_HEADERS,
        expose_headers=CORS_EXPOSE_HEADERS,
    )

    # MCP Streamable HTTP endpoint
    @app.post("/mcp")
    async def mcp_post_endpoint(request: Request):
        return await http.handle_post_request(request)

    @app.get("/mcp")
    async def mcp_get_endpoint(request: Request):
        return await http.handle_get_request(request)

    @app.delete("/mcp")
    async def mcp_delete_endpoint(request: Request):
        return await http.handle_delete_request(request)

    # Plain JSON-RPC 2.0 endpoints (no MCP session headers)
    @app.post("/")
    @app.post("/rpc")
    @app.post("/jsonrpc")
    async def jsonrpc_endpoint(request: Request) -> Response:
        return await http.handle_legacy_request(request)

    @app.post("/mcp/execute")
    async def mcp_execute_endpoint(request: Request) -> Response:
        return await http.handle_execute_request(request)

    @app.get("/mcp/ready")
    async def mcp_ready_endpoint():
        return {
            "jsonrpc": "2.0",
            "method": "mcp/ready",
            "params": {"tools": server.registry.list_tools()},
        }

    @app.get("/health")
    async def health_check():
        return server.health()

    @app.websocket("/ws")
    async def mcp_websocket_endpoint(websocket: WebSocket):
        await websocket_transport.serve(websocket)

    return app
