"""Tests for the websocket signaling channel."""
from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

import pytest

from signalroom.schemas.signaling import JoinRoomMessage, RoomInfoEvent
from signalroom.services import signaling_client

_CLOSED = object()


class DummyWebSocket:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed = False
        self._messages: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True

    def __aiter__(self) -> "DummyWebSocket":
        return self

    async def __anext__(self) -> str | bytes:
        item = await self._messages.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def queue_message(self, payload) -> None:
        await self._messages.put(payload if isinstance(payload, (str, bytes)) else json.dumps(payload))

    async def hang_up(self) -> None:
        await self._messages.put(_CLOSED)


def _patch_connect(monkeypatch, ws: DummyWebSocket) -> list[tuple]:
    calls: list[tuple] = []

    async def connect(*args, **kwargs):
        calls.append((args, kwargs))
        return ws

    monkeypatch.setattr(signaling_client, "websockets", SimpleNamespace(connect=connect))
    return calls


@pytest.mark.asyncio
async def test_open_failure_is_reported_as_unavailable(monkeypatch):
    async def refuse(*args, **kwargs):
        raise ConnectionRefusedError("nobody home")

    monkeypatch.setattr(signaling_client, "websockets", SimpleNamespace(connect=refuse))
    channel = signaling_client.WebSocketSignalingChannel("ws://127.0.0.1:9/api/signaling")

    with pytest.raises(signaling_client.SignalingUnavailableError):
        await channel.open(lambda message: None, lambda error: None)

    with pytest.raises(signaling_client.SignalingUnavailableError):
        await channel.send(JoinRoomMessage(room_id="4821"))


@pytest.mark.asyncio
async def test_channel_sends_json_and_parses_server_events(monkeypatch):
    ws = DummyWebSocket()
    calls = _patch_connect(monkeypatch, ws)
    received: list = []
    closed: list = []
    arrived = asyncio.Event()

    def on_message(message) -> None:
        received.append(message)
        arrived.set()

    channel = signaling_client.WebSocketSignalingChannel("ws://coordinator/api/signaling", open_timeout=3)
    await channel.open(on_message, closed.append)

    assert calls[0][0] == ("ws://coordinator/api/signaling",)
    assert calls[0][1] == {"open_timeout": 3}
    assert channel.is_open

    await channel.send(JoinRoomMessage(room_id="4821"))
    assert json.loads(ws.sent[0]) == {"type": "join-room", "room_id": "4821"}

    await ws.queue_message("{broken")
    await ws.queue_message({"type": "mystery"})
    await ws.queue_message({"type": "room-info", "count": 1, "is_initiator": True})
    await asyncio.wait_for(arrived.wait(), timeout=1)

    assert len(received) == 1
    assert isinstance(received[0], RoomInfoEvent)
    assert received[0].is_initiator is True

    await channel.close()
    assert ws.closed
    assert closed == []
    assert not channel.is_open


@pytest.mark.asyncio
async def test_server_hang_up_notifies_closed_handler(monkeypatch):
    ws = DummyWebSocket()
    _patch_connect(monkeypatch, ws)
    lost = asyncio.Event()
    errors: list = []

    def on_closed(error) -> None:
        errors.append(error)
        lost.set()

    channel = signaling_client.WebSocketSignalingChannel("ws://coordinator/api/signaling")
    await channel.open(lambda message: None, on_closed)
    await ws.hang_up()
    await asyncio.wait_for(lost.wait(), timeout=1)

    assert errors == [None]
    await channel.close()
