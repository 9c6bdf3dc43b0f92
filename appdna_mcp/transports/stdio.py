"""Stdio transport: newline-delimited JSON-RPC over stdin/stdout."""
import asyncio
import logging
import sys
from typing import BinaryIO, Optional

from .connection import Connection
from ..jsonrpc.handler import JSONRPCHandler
from ..utils.errors import ParseError

logger = logging.getLogger(__name__)

# Upper bound for one framed message
MAX_MESSAGE_BYTES = 16 * 1024 * 1024


class StdioTransport:
    """One Connection for the process lifetime.

    Messages are framed one per line. Standard output carries protocol bytes
    only; diagnostics go to standard error through logging.
    """

    name = "stdio"

    def __init__(
        self,
        handler: JSONRPCHandler,
        reader: Optional[asyncio.StreamReader] = None,
        output: Optional[BinaryIO] = None,
    ):
        self.handler = handler
        self.connection: Optional[Connection] = None
        self._reader = reader
        self._output = output
        self._read_task: Optional[asyncio.Task] = None

    async def start(self) -> Connection:
        """Open stdin/stdout, start the read loop and announce readiness."""
        if self._reader is None:
            self._reader = await self._open_stdin()
        if self._output is None:
            self._output = sys.stdout.buffer

        self.connection = Connection(self._write, transport=self.name, connection_id="stdio")
        self._read_task = asyncio.ensure_future(self._read_loop())

        tools = self.handler.registry.list_tools()
        await self.connection.notify("mcp/ready", {"tools": tools})
        logger.info(f"Stdio transport ready with {len(tools)} tools")
        return self.connection

    async def _open_stdin(self) -> asyncio.StreamReader:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=MAX_MESSAGE_BYTES)
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
        return reader

    async def _write(self, data: str) -> None:
        self._output.write(data.encode("utf-8") + b"\n")
        self._output.flush()

    async def _read_loop(self) -> None:
        while True:
            try:
                line = await self._reader.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                if e.partial.strip():
                    await self.handler.receive(e.partial, self.connection)
                logger.info("Stdin closed")
                return
            except asyncio.LimitOverrunError as e:
                logger.warning(f"Discarded message larger than {MAX_MESSAGE_BYTES} bytes")
                await self.handler.reject(
                    self.connection,
                    ParseError("Parse error", data={"error": "message too large"}),
                )
                if not await self._skip_line(e.consumed):
                    logger.info("Stdin closed")
                    return
                continue
            if not line.strip():
                continue
            await self.handler.receive(line, self.connection)

    async def _skip_line(self, consumed: int) -> bool:
        """Drop buffered bytes up to the end of the current line.

        Returns False if stdin closes before the line ends.
        """
        while True:
            try:
                await self._reader.readexactly(consumed)
                await self._reader.readuntil(b"\n")
                return True
            except asyncio.LimitOverrunError as e:
                consumed = e.consumed
            except asyncio.IncompleteReadError:
                return False

    @property
    def failure(self) -> Optional[BaseException]:
        """Exception that ended the read loop, if any."""
        if self._read_task is None or not self._read_task.done() or self._read_task.cancelled():
            return None
        return self._read_task.exception()

    async def wait_closed(self) -> None:
        """Wait until the client closes stdin."""
        if self._read_task is not None:
            await asyncio.wait({self._read_task})

    async def stop(self, grace: float = 0.0) -> None:
        """Stop reading, let in-flight calls finish within ``grace``, then cancel them."""
        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()
        if self.connection is not None:
            await self.connection.close(grace)
        logger.info("Stdio transport stopped")
