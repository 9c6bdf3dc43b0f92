"""Per-session correlation and write-serialization context."""
import asyncio
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

logger = logging.getLogger(__name__)

Writer = Callable[[str], Awaitable[None]]


def request_key(request_id: Any) -> Tuple[str, Any]:
    """Key an id by type and value so that 1 and "1" stay distinct."""
    return (type(request_id).__name__, request_id)


class Connection:
    """One transport session.

    Tracks the requests in flight on this session and serializes outgoing
    writes so concurrent handlers completing out of order never interleave
    partial frames. ``writer`` receives one serialized message per call;
    framing (newline, websocket frame, HTTP body) is the transport's job.
    """

    def __init__(self, writer: Writer, transport: str, connection_id: Optional[str] = None):
        self.connection_id = connection_id or str(uuid.uuid4())
        self.transport = transport
        self.in_flight: Dict[Tuple[str, Any], asyncio.Task] = {}
        self.notifications: Set[asyncio.Task] = set()
        self.initialized = False
        self.accepting = True
        self.closed = False
        self._writer = writer
        self._write_lock = asyncio.Lock()

    def is_in_flight(self, request_id: Any) -> bool:
        return request_key(request_id) in self.in_flight

    def track_request(self, request_id: Any, task: asyncio.Task) -> None:
        key = request_key(request_id)
        self.in_flight[key] = task
        task.add_done_callback(lambda _: self.in_flight.pop(key, None))

    def track_notification(self, task: asyncio.Task) -> None:
        self.notifications.add(task)
        task.add_done_callback(self.notifications.discard)

    async def send(self, message: Dict[str, Any]) -> bool:
        """Serialize and write one message.

        Returns False if the connection is already closed.

        Raises:
            TypeError, ValueError: the message is not JSON-serializable;
                nothing has been written.
        """
        data = json.dumps(message, ensure_ascii=False, separators=(",", ":"))
        async with self._write_lock:
            if self.closed:
                logger.debug(f"Connection {self.connection_id} closed, dropping outgoing message")
                return False
            await self._writer(data)
        return True

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> bool:
        """Send a server-initiated notification."""
        return await self.send({"jsonrpc": "2.0", "method": method, "params": params or {}})

    async def close(self, grace: float = 0.0) -> None:
        """Stop accepting messages, give in-flight work ``grace`` seconds, then cancel it.

        Cancellation is cooperative: a handler that ignores it is left
        running, but its result is never written.
        """
        if self.closed:
            return
        self.accepting = False
        pending = list(self.in_flight.values()) + list(self.notifications)
        if pending and grace > 0:
            logger.info(
                f"Waiting up to {grace}s for {len(pending)} in-flight calls on {self.connection_id}"
            )
            await asyncio.wait(pending, timeout=grace)

        remaining = [task for task in pending if not task.done()]
        for task in remaining:
            task.cancel()
        if remaining:
            logger.warning(f"Cancelled {len(remaining)} in-flight calls on {self.connection_id}")
        self.closed = True
