"""MCP session management for the Streamable HTTP binding."""
import asyncio
import json
import uuid
import logging
from typing import Any, Dict, Optional, List
from dataclasses import dataclass, field
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)


@dataclass
class SSEEvent:
    """A message queued for the session's SSE stream."""
    id: str
    data: str
    event: str = "message"


@dataclass
class MCPSession:
    """HTTP client session identified by the Mcp-Session-Id header."""
    session_id: str
    initialized: bool = False
    created_at: datetime = field(default_factory=datetime.now)
    last_activity: datetime = field(default_factory=datetime.now)
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    history: List[SSEEvent] = field(default_factory=list)
    last_event_id: int = 0

    def touch(self):
        self.last_activity = datetime.now()

    async def push(self, method: str, params: Optional[Dict[str, Any]] = None) -> SSEEvent:
        """Queue a server-initiated notification for the SSE stream."""
        self.last_event_id += 1
        event = SSEEvent(
            id=str(self.last_event_id),
            data=json.dumps({"jsonrpc": "2.0", "method": method, "params": params or {}}),
        )
        self.history.append(event)
        await self.queue.put(event)
        self.touch()
        return event

    def events_after(self, last_event_id: str) -> List[SSEEvent]:
        """Events a resuming client missed."""
        try:
            last_id = int(last_event_id)
        except (TypeError, ValueError):
            return []
        return [event for event in self.history if int(event.id) > last_id]


class MCPSessionManager:
    """Creates, looks up and expires HTTP sessions."""

    def __init__(self, session_timeout_minutes: int = 30, cleanup_interval_seconds: float = 300):
        self.sessions: Dict[str, MCPSession] = {}
        self.session_timeout = timedelta(minutes=session_timeout_minutes)
        self.cleanup_interval = cleanup_interval_seconds
        self._cleanup_task: Optional[asyncio.Task] = None

    def create_session(self) -> MCPSession:
        session = MCPSession(session_id=str(uuid.uuid4()))
        self.sessions[session.session_id] = session
        logger.info(f"Created MCP session: {session.session_id}")
        return session

    def get_session(self, session_id: Optional[str]) -> Optional[MCPSession]:
        session = self.sessions.get(session_id) if session_id else None
        if session:
            session.touch()
        return session

    def delete_session(self, session_id: str) -> bool:
        if self.sessions.pop(session_id, None) is None:
            return False
        logger.info(f"Deleted MCP session: {session_id}")
        return True

    def cleanup_expired_sessions(self) -> int:
        """Remove sessions that have been inactive for too long."""
        now = datetime.now()
        expired = [
            sid for sid, session in self.sessions.items()
            if now - session.last_activity > self.session_timeout
        ]
        for session_id in expired:
            self.delete_session(session_id)
        if expired:
            logger.info(f"Cleaned up {len(expired)} expired sessions")
        return len(expired)

    async def _cleanup_loop(self):
        while True:
            await asyncio.sleep(self.cleanup_interval)
            self.cleanup_expired_sessions()

    def start_background_cleanup(self):
        if not self._cleanup_task:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    def stop_background_cleanup(self):
        if self._cleanup_task:
            self._cleanup_task.cancel()
            self._cleanup_task = None
