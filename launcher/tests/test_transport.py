from __future__ import annotations

import json
import os

import pytest
import websockets

from chromium_launcher.models import ConnectOptions
from chromium_launcher.transport import (
    Connection,
    PipeTransport,
    WebSocketTransport,
    create_transport,
    send_close_request,
)


class _Pipes:
    """Two pipe pairs; descriptors handed to a transport are released by it."""

    def __init__(self) -> None:
        self.command_read, self.command_write = os.pipe()
        self.reply_read, self.reply_write = os.pipe()
        self._owned = {self.command_read, self.command_write, self.reply_read, self.reply_write}

    def transport(self) -> PipeTransport:
        self._owned -= {self.command_write, self.reply_read}
        return PipeTransport(self.command_write, self.reply_read)

    def close_reply_writer(self) -> None:
        self._owned.discard(self.reply_write)
        os.close(self.reply_write)

    def close(self) -> None:
        for fd in self._owned:
            os.close(fd)


@pytest.fixture
def pipes():
    pair = _Pipes()
    yield pair
    pair.close()


@pytest.mark.anyio
async def test_pipe_transport_frames_messages_with_nul(pipes: _Pipes) -> None:
    transport = pipes.transport()

    await transport.send('{"id": 1}')
    assert os.read(pipes.command_read, 1024) == b'{"id": 1}\0'

    os.write(pipes.reply_write, b'{"id": 1, "result": {}}\0{"method": "Target.targetCreated"}\0')
    assert await transport.receive() == '{"id": 1, "result": {}}'
    assert await transport.receive() == '{"method": "Target.targetCreated"}'

    pipes.close_reply_writer()
    assert await transport.receive() is None
    await transport.close()
    await transport.close()
    assert transport.closed


@pytest.mark.anyio
async def test_unused_pipe_transport_closes_descriptors(pipes: _Pipes) -> None:
    transport = pipes.transport()
    await transport.close()
    with pytest.raises(OSError):
        os.fstat(pipes.command_write)
    with pytest.raises(OSError):
        os.fstat(pipes.reply_read)
    with pytest.raises(ConnectionError):
        await transport.send("{}")
    assert await transport.receive() is None


@pytest.mark.anyio
async def test_connection_numbers_requests(pipes: _Pipes) -> None:
    connection = Connection(pipes.transport())
    assert await connection.send("Browser.getVersion") == 1
    assert await connection.send("Target.setDiscoverTargets", {"discover": True}) == 2
    frames = os.read(pipes.command_read, 4096).split(b"\0")[:-1]
    assert [json.loads(frame) for frame in frames] == [
        {"id": 1, "method": "Browser.getVersion"},
        {"id": 2, "method": "Target.setDiscoverTargets", "params": {"discover": True}},
    ]
    await connection.close()


@pytest.mark.anyio
async def test_pipe_options_reuse_the_launch_transport(pipes: _Pipes) -> None:
    transport = pipes.transport()
    assert await create_transport(ConnectOptions.for_transport(transport)) is transport
    await transport.close()


@pytest.mark.anyio
async def test_websocket_transport_sends_close_request() -> None:
    received: list[dict] = []

    async def handler(connection) -> None:
        async for message in connection:
            received.append(json.loads(message))
            await connection.send(json.dumps({"id": received[-1]["id"], "result": {}}))

    async with websockets.serve(handler, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        options = ConnectOptions.for_endpoint(f"ws://127.0.0.1:{port}/devtools/browser/test")
        transport = await create_transport(options)
        assert isinstance(transport, WebSocketTransport)
        await send_close_request(transport)
        reply = await Connection(transport).receive()
        await transport.close()
        await transport.close()

    assert received == [{"id": 1, "method": "Browser.close"}]
    assert reply == {"id": 1, "result": {}}
