"""In-memory room coordinator for WebRTC signaling."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel

from ..core.config import settings
from ..schemas.signaling import (
    JoinedEvent,
    LeftEvent,
    RelayKind,
    RoomFullEvent,
    RoomInfoEvent,
    RoomReadyEvent,
    dump_message,
    relay_event,
)

SendCallable = Callable[[dict], Awaitable[None]]
InitiatorPolicy = Literal["promote", "retain"]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SignalingConnection:
    """Connection wrapper for signaling participants."""

    connection_id: str
    send: SendCallable


@dataclass(slots=True)
class JoinResult:
    room_id: str
    count: int
    is_initiator: bool
    admitted: bool = True


Outbox = List[Tuple[SignalingConnection, BaseModel]]


class RoomCoordinator:
    """Pair members into rooms, assign negotiation roles and relay payloads.

    Every membership change runs under one lock so the member count used for
    ``is_initiator`` and ``room-ready`` is never observed half-updated.
    Notifications are collected while the lock is held and sent after it is
    released, so a slow member cannot stall the room table.
    """

    def __init__(self, capacity: int = 2, initiator_policy: InitiatorPolicy = "promote") -> None:
        self._capacity = capacity
        self._initiator_policy = initiator_policy
        # Insertion order doubles as arrival order.
        self._rooms: Dict[str, Dict[str, SignalingConnection]] = {}
        self._membership: Dict[str, str] = {}
        self._initiators: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def room_count(self) -> int:
        return len(self._rooms)

    def members(self, room_id: str) -> list[str]:
        return list(self._rooms.get(room_id, {}))

    def room_of(self, connection_id: str) -> Optional[str]:
        return self._membership.get(connection_id)

    def initiator_of(self, room_id: str) -> Optional[str]:
        return self._initiators.get(room_id)

    async def join(self, room_id: str, connection: SignalingConnection) -> JoinResult:
        """Move a connection into ``room_id`` and notify everyone affected."""

        if not room_id:
            raise ValueError("room_id must be non-empty")

        outbox: Outbox = []
        async with self._lock:
            participants = self._rooms.get(room_id, {})
            occupied = len(participants) - (1 if connection.connection_id in participants else 0)
            if self._capacity and occupied >= self._capacity:
                logger.info(
                    "Refusing %s: room %s is full (%d/%d)",
                    connection.connection_id,
                    room_id,
                    occupied,
                    self._capacity,
                )
                outbox.append((connection, RoomFullEvent(room_id=room_id, capacity=self._capacity)))
                result = JoinResult(room_id=room_id, count=occupied, is_initiator=False, admitted=False)
            else:
                previous = self._membership.get(connection.connection_id)
                if previous is not None:
                    self._remove_locked(previous, connection.connection_id, outbox)

                participants = self._rooms.setdefault(room_id, {})
                is_initiator = not participants
                participants[connection.connection_id] = connection
                self._membership[connection.connection_id] = room_id
                if is_initiator:
                    self._initiators[room_id] = connection.connection_id

                count = len(participants)
                logger.info(
                    "%s joined room %s (%d members, initiator: %s)",
                    connection.connection_id,
                    room_id,
                    count,
                    is_initiator,
                )

                outbox.append((connection, RoomInfoEvent(count=count, is_initiator=is_initiator)))
                joined = JoinedEvent(member_id=connection.connection_id)
                outbox.extend((other, joined) for other in participants.values() if other is not connection)
                if count == 2:
                    ready = RoomReadyEvent(room_id=room_id)
                    outbox.extend((member, ready) for member in participants.values())
                result = JoinResult(room_id=room_id, count=count, is_initiator=is_initiator)

        await self._deliver(outbox)
        return result

    async def leave(self, room_id: str, connection_id: str) -> bool:
        """Remove a connection from the room, cleaning up empty rooms."""

        outbox: Outbox = []
        async with self._lock:
            removed = self._remove_locked(room_id, connection_id, outbox)

        await self._deliver(outbox)
        return removed

    async def disconnect(self, connection_id: str) -> None:
        """Drop every membership held by a closed connection."""

        outbox: Outbox = []
        async with self._lock:
            room_id = self._membership.get(connection_id)
            if room_id is not None:
                self._remove_locked(room_id, connection_id, outbox)

        await self._deliver(outbox)

    async def relay(self, kind: RelayKind, payload: dict[str, Any], room_id: str, sender_id: str) -> int:
        """Forward a payload to all other members of the sender's room."""

        async with self._lock:
            participants = self._rooms.get(room_id, {})
            if sender_id not in participants:
                logger.debug("Dropping %s from %s: not a member of room %s", kind, sender_id, room_id)
                return 0
            recipients = [connection for connection in participants.values() if connection.connection_id != sender_id]

        if not recipients:
            return 0

        event = relay_event(kind, payload, sender_id)
        logger.debug("Relaying %s from %s to %d member(s) in room %s", kind, sender_id, len(recipients), room_id)
        await self._deliver([(connection, event) for connection in recipients])
        return len(recipients)

    def _remove_locked(self, room_id: str, connection_id: str, outbox: Outbox) -> bool:
        participants = self._rooms.get(room_id)
        if not participants or connection_id not in participants:
            return False

        participants.pop(connection_id)
        if self._membership.get(connection_id) == room_id:
            self._membership.pop(connection_id)
        logger.info("%s left room %s (%d members)", connection_id, room_id, len(participants))

        if not participants:
            self._rooms.pop(room_id, None)
            self._initiators.pop(room_id, None)
            return True

        left = LeftEvent(member_id=connection_id)
        outbox.extend((member, left) for member in participants.values())

        if self._initiators.get(room_id) == connection_id:
            self._initiators.pop(room_id)
            if self._initiator_policy == "promote":
                successor = next(iter(participants.values()))
                self._initiators[room_id] = successor.connection_id
                logger.info("Promoted %s to initiator of room %s", successor.connection_id, room_id)
                outbox.append((successor, RoomInfoEvent(count=len(participants), is_initiator=True)))
        return True

    async def _deliver(self, outbox: Outbox) -> None:
        for connection, event in outbox:
            try:
                await connection.send(dump_message(event))
            except Exception as exc:  # noqa: BLE001 - one dead socket must not starve the room
                logger.warning("Failed sending %s to %s: %s", event.type, connection.connection_id, exc)


coordinator = RoomCoordinator(capacity=settings.room_capacity, initiator_policy=settings.initiator_policy)
