"""Byte transports that carry DevTools protocol messages to the browser."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from typing import Any, Protocol

import websockets

from .models import ConnectOptions

LOGGER = logging.getLogger(__name__)

# Messages on the debugging pipe are JSON documents terminated by a NUL byte.
PIPE_DELIMITER = b"\0"


class Transport(Protocol):
    async def send(self, message: str) -> None:
        """Deliver one serialized protocol message."""

    async def receive(self) -> str | None:
        """Return the next message, or ``None`` once the peer went away."""

    async def close(self) -> None:
        """Release the underlying channel."""


class PipeTransport:
    """Transport over the two inherited descriptors of ``--remote-debugging-pipe``.

    ``write_fd`` is the parent's end of the pipe the browser reads commands
    from; ``read_fd`` is the parent's end of the pipe it writes replies to.
    The transport owns both descriptors.
    """

    def __init__(self, write_fd: int, read_fd: int) -> None:
        self._write_fd = write_fd
        self._read_fd = read_fd
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_transport: asyncio.ReadTransport | None = None
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: str) -> None:
        if self._closed:
            raise ConnectionError("Pipe transport is closed")
        writer = await self._ensure_writer()
        writer.write(message.encode("utf-8") + PIPE_DELIMITER)
        await writer.drain()

    async def receive(self) -> str | None:
        if self._closed:
            return None
        reader = await self._ensure_reader()
        try:
            chunk = await reader.readuntil(PIPE_DELIMITER)
        except asyncio.IncompleteReadError:
            return None
        return chunk[:-1].decode("utf-8")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._writer is not None:
            self._writer.close()
            with contextlib.suppress(Exception):
                await self._writer.wait_closed()
        else:
            with contextlib.suppress(OSError):
                os.close(self._write_fd)
        if self._read_transport is not None:
            self._read_transport.close()
        else:
            with contextlib.suppress(OSError):
                os.close(self._read_fd)

    async def _ensure_writer(self) -> asyncio.StreamWriter:
        async with self._lock:
            if self._writer is None:
                loop = asyncio.get_running_loop()
                pipe = os.fdopen(self._write_fd, "wb", buffering=0)
                transport, protocol = await loop.connect_write_pipe(
                    lambda: asyncio.StreamReaderProtocol(asyncio.StreamReader()), pipe
                )
                self._writer = asyncio.StreamWriter(transport, protocol, None, loop)
            return self._writer

    async def _ensure_reader(self) -> asyncio.StreamReader:
        async with self._lock:
            if self._reader is None:
                loop = asyncio.get_running_loop()
                reader = asyncio.StreamReader(limit=2**26)
                pipe = os.fdopen(self._read_fd, "rb", buffering=0)
                transport, _ = await loop.connect_read_pipe(
                    lambda: asyncio.StreamReaderProtocol(reader), pipe
                )
                self._reader = reader
                self._read_transport = transport
            return self._reader


class WebSocketTransport:
    """Transport over the browser's DevTools WebSocket endpoint."""

    def __init__(self, connection: Any) -> None:
        self._connection = connection
        self._closed = False

    @classmethod
    async def connect(cls, endpoint: str, *, close_timeout: float = 1.0) -> WebSocketTransport:
        connection = await websockets.connect(
            endpoint,
            max_size=None,
            ping_interval=None,
            close_timeout=close_timeout,
        )
        return cls(connection)

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: str) -> None:
        await self._connection.send(message)

    async def receive(self) -> str | None:
        try:
            data = await self._connection.recv()
        except websockets.ConnectionClosed:
            return None
        if isinstance(data, bytes):
            return data.decode("utf-8")
        return data

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        with contextlib.suppress(Exception):
            await self._connection.close()


class Connection:
    """Minimal DevTools message sender layered over a :class:`Transport`.

    Replies are not correlated; callers that need them read :meth:`receive`.
    """

    def __init__(self, transport: Transport) -> None:
        self._transport = transport
        self._last_id = 0

    @property
    def transport(self) -> Transport:
        return self._transport

    async def send(self, method: str, params: dict[str, Any] | None = None) -> int:
        self._last_id += 1
        message: dict[str, Any] = {"id": self._last_id, "method": method}
        if params:
            message["params"] = params
        await self._transport.send(json.dumps(message))
        return self._last_id

    async def receive(self) -> dict[str, Any] | None:
        raw = await self._transport.receive()
        if raw is None:
            return None
        return json.loads(raw)

    async def close(self) -> None:
        await self._transport.close()


async def create_transport(options: ConnectOptions) -> Transport:
    """Return a transport for *options*.

    Pipe options hand back the launch-time transport itself; endpoint options
    open a fresh WebSocket connection.
    """

    if options.transport is not None:
        return options.transport
    assert options.browser_ws_endpoint is not None
    LOGGER.debug("Connecting to %s", options.browser_ws_endpoint)
    return await WebSocketTransport.connect(options.browser_ws_endpoint)


async def send_close_request(transport: Transport) -> None:
    """Ask the browser to shut down without waiting for its reply."""

    await Connection(transport).send("Browser.close")


__all__ = [
    "Connection",
    "PipeTransport",
    "Transport",
    "WebSocketTransport",
    "create_transport",
    "send_close_request",
]
