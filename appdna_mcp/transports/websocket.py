"""WebSocket transport: one Connection per socket, one message per frame."""
import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

from .connection import Connection
from ..jsonrpc.handler import JSONRPCHandler

logger = logging.getLogger(__name__)


class WebSocketTransport:
    """Serves JSON-RPC over WebSocket sockets accepted by the HTTP app."""

    name = "websocket"

    def __init__(self, handler: JSONRPCHandler):
        self.handler = handler
        self.connections: Dict[str, Tuple[Connection, WebSocket]] = {}
        self.accepting = True

    async def serve(self, websocket: WebSocket) -> None:
        """Run the read loop for one socket until it disconnects."""
        if not self.accepting:
            await websocket.close(code=1013)
            return

        await websocket.accept()
        connection = Connection(websocket.send_text, transport=self.name)
        self.connections[connection.connection_id] = (connection, websocket)
        logger.info(f"WebSocket connection opened: {connection.connection_id}")

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                await self.handler.receive(raw, connection)
        except WebSocketDisconnect:
            pass
        finally:
            self.connections.pop(connection.connection_id, None)
            # Disconnect cancels whatever is still in flight
            await connection.close()
            logger.info(f"WebSocket connection closed: {connection.connection_id}")

    async def broadcast(self, method: str, params: Optional[Dict[str, Any]] = None) -> int:
        """Send a server-initiated notification to every open socket."""
        sent = 0
        for connection, _ in list(self.connections.values()):
            if await connection.notify(method, params):
                sent += 1
        return sent

    async def stop(self, grace: float = 0.0) -> None:
        """Refuse new sockets, drain open ones within ``grace`` and close them."""
        self.accepting = False
        await asyncio.gather(
            *(self._close(connection, websocket, grace) for connection, websocket in self.connections.values())
        )
        logger.info("WebSocket transport stopped")

    async def _close(self, connection: Connection, websocket: WebSocket, grace: float) -> None:
        await connection.close(grace)
        if websocket.application_state == WebSocketState.CONNECTED:
            try:
                await websocket.close(code=1001)
            except RuntimeError as e:
                logger.debug(f"WebSocket {connection.connection_id} already closing: {e}")
