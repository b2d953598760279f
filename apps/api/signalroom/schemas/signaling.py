"""Data contracts for the signaling WebSocket."""
from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

RoomId = Annotated[str, Field(min_length=1, description="Opaque room identifier")]


class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# Client -> server


class JoinRoomMessage(_Message):
    type: Literal["join-room"] = "join-room"
    room_id: RoomId


class LeaveRoomMessage(_Message):
    type: Literal["leave-room"] = "leave-room"
    room_id: RoomId


class OfferMessage(_Message):
    type: Literal["offer"] = "offer"
    sdp: dict[str, Any] = Field(..., description="Opaque session description")
    room_id: RoomId


class AnswerMessage(_Message):
    type: Literal["answer"] = "answer"
    sdp: dict[str, Any] = Field(..., description="Opaque session description")
    room_id: RoomId


class CandidateMessage(_Message):
    type: Literal["candidate"] = "candidate"
    candidate: dict[str, Any] = Field(..., description="Opaque network path descriptor")
    room_id: RoomId


ClientMessage = Annotated[
    Union[JoinRoomMessage, LeaveRoomMessage, OfferMessage, AnswerMessage, CandidateMessage],
    Field(discriminator="type"),
]


# Server -> client


class RoomInfoEvent(_Message):
    type: Literal["room-info"] = "room-info"
    count: int = Field(..., ge=0)
    is_initiator: bool


class JoinedEvent(_Message):
    type: Literal["joined"] = "joined"
    member_id: str


class LeftEvent(_Message):
    type: Literal["left"] = "left"
    member_id: str


class RoomReadyEvent(_Message):
    type: Literal["room-ready"] = "room-ready"
    room_id: str


class RoomFullEvent(_Message):
    type: Literal["room-full"] = "room-full"
    room_id: str
    capacity: int


class OfferRelayEvent(_Message):
    type: Literal["offer"] = "offer"
    sdp: dict[str, Any]
    from_: str = Field(..., alias="from")


class AnswerRelayEvent(_Message):
    type: Literal["answer"] = "answer"
    sdp: dict[str, Any]
    from_: str = Field(..., alias="from")


class CandidateRelayEvent(_Message):
    type: Literal["candidate"] = "candidate"
    candidate: dict[str, Any]
    from_: str = Field(..., alias="from")


class ErrorEvent(_Message):
    type: Literal["error"] = "error"
    reason: str


ServerMessage = Annotated[
    Union[
        RoomInfoEvent,
        JoinedEvent,
        LeftEvent,
        RoomReadyEvent,
        RoomFullEvent,
        OfferRelayEvent,
        AnswerRelayEvent,
        CandidateRelayEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]

RelayKind = Literal["offer", "answer", "candidate"]

_client_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)
_server_adapter: TypeAdapter[ServerMessage] = TypeAdapter(ServerMessage)


def parse_client_message(data: Any) -> ClientMessage:
    """Validate an inbound frame from a member; raises ``ValidationError``."""

    return _client_adapter.validate_python(data)


def parse_server_message(data: Any) -> ServerMessage:
    """Validate a frame received from the coordinator; raises ``ValidationError``."""

    return _server_adapter.validate_python(data)


def dump_message(message: BaseModel) -> dict[str, Any]:
    """Return a JSON-ready dict using wire field names."""

    return message.model_dump(mode="json", by_alias=True)


def relay_event(kind: RelayKind, payload: dict[str, Any], sender_id: str) -> BaseModel:
    """Build the event forwarded to the other members for a relayed payload."""

    if kind == "offer":
        return OfferRelayEvent(sdp=payload, from_=sender_id)
    if kind == "answer":
        return AnswerRelayEvent(sdp=payload, from_=sender_id)
    if kind == "candidate":
        return CandidateRelayEvent(candidate=payload, from_=sender_id)
    raise ValueError(f"Unsupported relay kind: {kind}")
