"""Tests for the room coordinator and websocket endpoint."""
from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from signalroom.main import app
from signalroom.services.signaling import RoomCoordinator, SignalingConnection


class DummyConnection:
    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        self.messages: list[dict] = []

    async def send(self, message: dict) -> None:
        self.messages.append(message)

    def types(self) -> list[str]:
        return [message["type"] for message in self.messages]


def _member(connection_id: str) -> tuple[DummyConnection, SignalingConnection]:
    dummy = DummyConnection(connection_id)
    return dummy, SignalingConnection(connection_id, dummy.send)


@pytest.mark.asyncio
async def test_first_arrival_becomes_initiator_and_room_ready_fires():
    coordinator = RoomCoordinator()
    conn_a, member_a = _member("a")
    conn_b, member_b = _member("b")

    result = await coordinator.join("4821", member_a)
    assert result.is_initiator is True
    assert result.count == 1
    assert conn_a.messages == [{"type": "room-info", "count": 1, "is_initiator": True}]

    result = await coordinator.join("4821", member_b)
    assert result.is_initiator is False
    assert conn_b.messages == [
        {"type": "room-info", "count": 2, "is_initiator": False},
        {"type": "room-ready", "room_id": "4821"},
    ]
    assert conn_a.messages[1:] == [
        {"type": "joined", "member_id": "b"},
        {"type": "room-ready", "room_id": "4821"},
    ]
    assert coordinator.initiator_of("4821") == "a"


@pytest.mark.asyncio
async def test_relay_forwards_to_other_member_only():
    coordinator = RoomCoordinator()
    conn_a, member_a = _member("a")
    conn_b, member_b = _member("b")
    await coordinator.join("room-1", member_a)
    await coordinator.join("room-1", member_b)
    conn_a.messages.clear()
    conn_b.messages.clear()

    delivered = await coordinator.relay("offer", {"type": "offer", "sdp": "v=0"}, "room-1", "a")

    assert delivered == 1
    assert conn_b.messages == [{"type": "offer", "sdp": {"type": "offer", "sdp": "v=0"}, "from": "a"}]
    assert conn_a.messages == []

    await coordinator.relay("candidate", {"candidate": "candidate:1 1 udp 1 10.0.0.1 9 typ host"}, "room-1", "b")
    assert conn_a.messages[-1]["type"] == "candidate"
    assert conn_a.messages[-1]["from"] == "b"


@pytest.mark.asyncio
async def test_relay_from_non_member_or_to_empty_room_is_dropped():
    coordinator = RoomCoordinator()
    conn_a, member_a = _member("a")
    await coordinator.join("room-1", member_a)
    conn_a.messages.clear()

    assert await coordinator.relay("answer", {"sdp": "x"}, "room-1", "intruder") == 0
    assert await coordinator.relay("answer", {"sdp": "x"}, "room-1", "a") == 0
    assert await coordinator.relay("answer", {"sdp": "x"}, "missing", "a") == 0
    assert conn_a.messages == []


@pytest.mark.asyncio
async def test_leave_notifies_remaining_and_destroys_empty_room():
    coordinator = RoomCoordinator(initiator_policy="retain")
    conn_a, member_a = _member("a")
    conn_b, member_b = _member("b")
    await coordinator.join("room-1", member_a)
    await coordinator.join("room-1", member_b)
    conn_b.messages.clear()

    assert await coordinator.leave("room-1", "a") is True
    assert conn_b.messages == [{"type": "left", "member_id": "a"}]
    assert coordinator.members("room-1") == ["b"]

    assert await coordinator.leave("room-1", "a") is False

    await coordinator.leave("room-1", "b")
    assert coordinator.room_count == 0
    assert coordinator.room_of("b") is None

    conn_c, member_c = _member("c")
    result = await coordinator.join("room-1", member_c)
    assert result.is_initiator is True
    assert coordinator.initiator_of("room-1") == "c"


@pytest.mark.asyncio
async def test_joining_another_room_leaves_the_previous_one():
    coordinator = RoomCoordinator()
    conn_a, member_a = _member("a")
    conn_b, member_b = _member("b")
    await coordinator.join("room-1", member_a)
    await coordinator.join("room-1", member_b)
    conn_a.messages.clear()
    conn_b.messages.clear()

    result = await coordinator.join("room-2", member_b)

    assert result.is_initiator is True
    assert coordinator.room_of("b") == "room-2"
    assert coordinator.members("room-1") == ["a"]
    assert conn_a.messages == [{"type": "left", "member_id": "b"}]
    assert conn_b.messages == [{"type": "room-info", "count": 1, "is_initiator": True}]


@pytest.mark.asyncio
async def test_disconnect_removes_membership():
    coordinator = RoomCoordinator()
    conn_a, member_a = _member("a")
    conn_b, member_b = _member("b")
    await coordinator.join("room-1", member_a)
    await coordinator.join("room-1", member_b)
    conn_a.messages.clear()

    await coordinator.disconnect("b")
    await coordinator.disconnect("b")

    assert conn_a.messages == [{"type": "left", "member_id": "b"}]
    assert coordinator.members("room-1") == ["a"]

    await coordinator.disconnect("a")
    assert coordinator.room_count == 0


@pytest.mark.asyncio
async def test_capacity_refuses_third_member_without_moving_it():
    coordinator = RoomCoordinator(capacity=2)
    _, member_a = _member("a")
    _, member_b = _member("b")
    conn_c, member_c = _member("c")
    await coordinator.join("room-1", member_a)
    await coordinator.join("room-1", member_b)
    await coordinator.join("room-2", member_c)
    conn_c.messages.clear()

    result = await coordinator.join("room-1", member_c)

    assert result.admitted is False
    assert conn_c.messages == [{"type": "room-full", "room_id": "room-1", "capacity": 2}]
    assert coordinator.room_of("c") == "room-2"
    assert coordinator.members("room-1") == ["a", "b"]


@pytest.mark.asyncio
async def test_unbounded_rooms_when_capacity_disabled():
    coordinator = RoomCoordinator(capacity=0)
    connections = [_member(name) for name in ("a", "b", "c")]
    for _, member in connections:
        result = await coordinator.join("mesh", member)
        assert result.admitted is True

    assert coordinator.members("mesh") == ["a", "b", "c"]
    assert coordinator.initiator_of("mesh") == "a"
    # room-ready only fires on the transition to two members.
    assert connections[2][0].types() == ["room-info"]


@pytest.mark.asyncio
async def test_promote_policy_reassigns_initiator_when_it_leaves():
    coordinator = RoomCoordinator(initiator_policy="promote")
    _, member_a = _member("a")
    conn_b, member_b = _member("b")
    conn_c, member_c = _member("c")
    await coordinator.join("room-1", member_a)
    await coordinator.join("room-1", member_b)
    conn_b.messages.clear()

    await coordinator.leave("room-1", "a")

    assert coordinator.initiator_of("room-1") == "b"
    assert conn_b.messages == [
        {"type": "left", "member_id": "a"},
        {"type": "room-info", "count": 1, "is_initiator": True},
    ]

    result = await coordinator.join("room-1", member_c)
    assert result.is_initiator is False
    assert conn_b.messages[-2:] == [
        {"type": "joined", "member_id": "c"},
        {"type": "room-ready", "room_id": "room-1"},
    ]


@pytest.mark.asyncio
async def test_retain_policy_keeps_original_roles():
    coordinator = RoomCoordinator(initiator_policy="retain")
    _, member_a = _member("a")
    conn_b, member_b = _member("b")
    await coordinator.join("room-1", member_a)
    await coordinator.join("room-1", member_b)
    conn_b.messages.clear()

    await coordinator.leave("room-1", "a")

    assert coordinator.initiator_of("room-1") is None
    assert conn_b.messages == [{"type": "left", "member_id": "a"}]


@pytest.mark.asyncio
async def test_concurrent_joins_to_empty_room_yield_single_initiator():
    coordinator = RoomCoordinator()
    members = [_member(f"m{index}") for index in range(2)]

    results = await asyncio.gather(*(coordinator.join("race", member) for _, member in members))

    assert sorted(result.is_initiator for result in results) == [False, True]
    assert sorted(result.count for result in results) == [1, 2]


@pytest.mark.asyncio
async def test_failed_send_does_not_block_other_members():
    coordinator = RoomCoordinator()
    conn_a, member_a = _member("a")

    async def broken_send(message: dict) -> None:
        raise RuntimeError("socket gone")

    await coordinator.join("room-1", member_a)
    await coordinator.join("room-1", SignalingConnection("b", broken_send))

    assert conn_a.types()[-2:] == ["joined", "room-ready"]


@pytest.mark.asyncio
async def test_join_requires_room_id():
    coordinator = RoomCoordinator()
    _, member_a = _member("a")

    with pytest.raises(ValueError):
        await coordinator.join("", member_a)


def test_signaling_websocket_pairs_and_relays(monkeypatch):
    monkeypatch.setattr("signalroom.routers.signaling.coordinator", RoomCoordinator())

    with TestClient(app) as client:
        with client.websocket_connect("/api/signaling") as ws_a:
            ws_a.send_json({"type": "join-room", "room_id": "4821"})
            assert ws_a.receive_json() == {"type": "room-info", "count": 1, "is_initiator": True}

            with client.websocket_connect("/api/signaling") as ws_b:
                ws_b.send_json({"type": "join-room", "room_id": "4821"})
                assert ws_b.receive_json() == {"type": "room-info", "count": 2, "is_initiator": False}
                assert ws_b.receive_json() == {"type": "room-ready", "room_id": "4821"}

                notice = ws_a.receive_json()
                assert notice["type"] == "joined"
                member_b = notice["member_id"]
                assert ws_a.receive_json() == {"type": "room-ready", "room_id": "4821"}

                ws_b.send_json({"type": "offer", "sdp": {"type": "offer", "sdp": "hello"}, "room_id": "4821"})
                forwarded = ws_a.receive_json()
                assert forwarded == {"type": "offer", "sdp": {"type": "offer", "sdp": "hello"}, "from": member_b}

            left_notice = ws_a.receive_json()
            assert left_notice == {"type": "left", "member_id": member_b}


def test_signaling_websocket_rejects_unknown_frames(monkeypatch):
    monkeypatch.setattr("signalroom.routers.signaling.coordinator", RoomCoordinator())

    with TestClient(app) as client:
        with client.websocket_connect("/api/signaling") as ws:
            ws.send_json({"type": "shout", "room_id": "4821"})
            assert ws.receive_json() == {"type": "error", "reason": "invalid-shout"}

            ws.send_json({"type": "join-room", "room_id": ""})
            assert ws.receive_json() == {"type": "error", "reason": "invalid-join-room"}

            ws.send_json(["not", "an", "object"])
            assert ws.receive_json() == {"type": "error", "reason": "invalid-frame"}

            ws.send_text("{not json")
            assert ws.receive_json() == {"type": "error", "reason": "invalid-json"}

            ws.send_json({"type": "join-room", "room_id": "4821"})
            assert ws.receive_json()["type"] == "room-info"
