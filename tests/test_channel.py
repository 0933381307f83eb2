"""Tests for the client signaling channel."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import orjson
import pytest
import pytest_asyncio
from aiohttp import WSMsgType, web
from fakes import until

from aiosfu.client import SignalingChannel
from aiosfu.exceptions import ChannelFailureError
from aiosfu.models.consumer import ConsumeMessage, ConsumePayload
from aiosfu.models.core import ErrorMessage
from aiosfu.models.transport import CreateWebRtcTransportMessage
from aiosfu.models.types import ServerMessage


class RecordingServer:
    """WebSocket endpoint recording every frame it receives."""

    def __init__(self) -> None:
        self.received: list[dict[str, Any]] = []
        self.sockets: list[web.WebSocketResponse] = []

    async def handler(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        _ = await ws.prepare(request)
        self.sockets.append(ws)
        async for msg in ws:
            if msg.type is WSMsgType.TEXT:
                self.received.append(orjson.loads(msg.data))
        return ws

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/ws", self.handler)
        return app


@pytest.fixture
def recorder() -> RecordingServer:
    return RecordingServer()


@pytest_asyncio.fixture
async def channel(recorder: RecordingServer, aiohttp_server) -> AsyncIterator[SignalingChannel]:
    server = await aiohttp_server(recorder.app())
    channel = SignalingChannel(str(server.make_url("/ws")), reconnect_delay=0.01)
    yield channel
    await channel.disconnect()


def _consume(stream_id: str) -> ConsumeMessage:
    return ConsumeMessage(payload=ConsumePayload(stream_id))


@pytest.mark.asyncio
async def test_messages_queued_before_open_are_sent_in_order(
    channel: SignalingChannel, recorder: RecordingServer
) -> None:
    channel.send(CreateWebRtcTransportMessage())
    channel.send(_consume("jazz"))
    channel.send(_consume("news"))
    assert len(channel.pending_messages) == 3

    await until(lambda: len(recorder.received) == 3)

    assert recorder.received == [
        {"action": "createWebRtcTransport"},
        {"action": "consume", "payload": {"streamId": "jazz"}},
        {"action": "consume", "payload": {"streamId": "news"}},
    ]
    assert channel.pending_messages == []


@pytest.mark.asyncio
async def test_concurrent_connects_share_future(
    channel: SignalingChannel, recorder: RecordingServer
) -> None:
    first = channel.connect()
    second = channel.connect()
    assert first is second
    assert channel.connecting

    await asyncio.wait_for(first, timeout=5)

    assert channel.connected
    assert len(recorder.sockets) == 1
    # Already open, resolves right away
    assert channel.connect().done()


@pytest.mark.asyncio
async def test_listeners_receive_decoded_messages(
    channel: SignalingChannel, recorder: RecordingServer
) -> None:
    received: list[ServerMessage] = []

    def broken(message: ServerMessage) -> None:
        raise RuntimeError("listener bug")

    channel.add_message_listener(broken)
    remove = channel.add_message_listener(received.append)
    await asyncio.wait_for(channel.connect(), timeout=5)
    server_ws = recorder.sockets[0]

    await server_ws.send_str("{garbage")
    await server_ws.send_str('{"action": "dance"}')
    await server_ws.send_str(ErrorMessage(payload="Stream radio1 not found").to_json())
    await until(lambda: len(received) == 1)

    assert received == [ErrorMessage(payload="Stream radio1 not found")]
    assert channel.connected

    remove()
    await server_ws.send_str(ErrorMessage(payload="again").to_json())
    await asyncio.sleep(0.05)
    assert len(received) == 1


@pytest.mark.asyncio
async def test_reconnects_after_server_drop(
    channel: SignalingChannel, recorder: RecordingServer
) -> None:
    await asyncio.wait_for(channel.connect(), timeout=5)

    await recorder.sockets[0].close()
    await until(lambda: len(recorder.sockets) == 2)
    channel.send(_consume("jazz"))
    await until(lambda: len(recorder.received) == 1)

    assert recorder.sockets[0].closed
    assert recorder.received == [{"action": "consume", "payload": {"streamId": "jazz"}}]
    assert channel.reconnect_attempts == 0


@pytest.mark.asyncio
async def test_messages_sent_while_dropped_keep_order(
    recorder: RecordingServer, aiohttp_server
) -> None:
    server = await aiohttp_server(recorder.app())
    channel = SignalingChannel(str(server.make_url("/ws")), reconnect_delay=0.3)
    await asyncio.wait_for(channel.connect(), timeout=5)

    await recorder.sockets[0].close()
    await until(lambda: not channel.connected)
    channel.send(CreateWebRtcTransportMessage())
    channel.send(_consume("jazz"))
    assert len(channel.pending_messages) == 2
    assert len(recorder.sockets) == 1

    await until(lambda: len(recorder.received) == 2)

    assert len(recorder.sockets) == 2
    assert recorder.received == [
        {"action": "createWebRtcTransport"},
        {"action": "consume", "payload": {"streamId": "jazz"}},
    ]
    assert channel.pending_messages == []
    await channel.disconnect()


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts(unused_tcp_port: int) -> None:
    channel = SignalingChannel(f"ws://127.0.0.1:{unused_tcp_port}/ws", reconnect_delay=0.01)

    with pytest.raises(ChannelFailureError, match="disconnected permanently"):
        await asyncio.wait_for(channel.connect(), timeout=5)

    assert channel.reconnect_attempts == 5
    assert not channel.connecting

    # Only queued from now on
    channel.send(_consume("jazz"))
    assert not channel.connecting
    assert channel.pending_messages == [_consume("jazz")]

    # A manual reconnect starts over
    future = channel.reconnect()
    assert channel.connecting
    with pytest.raises(ChannelFailureError):
        await asyncio.wait_for(future, timeout=5)
    assert channel.reconnect_attempts == 5
    await channel.disconnect()


@pytest.mark.asyncio
async def test_disconnect_stops_reconnecting(
    channel: SignalingChannel, recorder: RecordingServer
) -> None:
    await asyncio.wait_for(channel.connect(), timeout=5)
    channel.send(_consume("jazz"))
    await until(lambda: len(recorder.received) == 1)

    await channel.disconnect()
    assert not channel.connected

    channel.send(_consume("news"))
    await asyncio.sleep(0.05)

    assert not channel.connecting
    assert len(recorder.sockets) == 1
    assert channel.pending_messages == [_consume("news")]
