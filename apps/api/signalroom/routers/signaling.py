"""Signaling WebSocket endpoint."""
from __future__ import annotations

import logging
from uuid import uuid4

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from ..schemas.signaling import (
    AnswerMessage,
    CandidateMessage,
    ErrorEvent,
    JoinRoomMessage,
    LeaveRoomMessage,
    OfferMessage,
    dump_message,
    parse_client_message,
)
from ..services.signaling import SignalingConnection, coordinator

router = APIRouter()

logger = logging.getLogger(__name__)


@router.websocket("/signaling")
async def signaling_endpoint(websocket: WebSocket) -> None:
    """Room membership and SDP/candidate relay for one member connection."""

    member_id = uuid4().hex
    await websocket.accept()
    logger.info("Member connected: %s", member_id)

    connection = SignalingConnection(connection_id=member_id, send=websocket.send_json)

    try:
        while True:
            try:
                frame = await websocket.receive_json()
            except ValueError:
                await websocket.send_json(dump_message(ErrorEvent(reason="invalid-json")))
                continue
            try:
                message = parse_client_message(frame)
            except ValidationError as exc:
                logger.warning("Rejected frame from %s: %s", member_id, exc.errors(include_url=False))
                await websocket.send_json(dump_message(ErrorEvent(reason=_describe(frame))))
                continue

            if isinstance(message, JoinRoomMessage):
                await coordinator.join(message.room_id, connection)
            elif isinstance(message, LeaveRoomMessage):
                await coordinator.leave(message.room_id, member_id)
            elif isinstance(message, (OfferMessage, AnswerMessage)):
                await coordinator.relay(message.type, message.sdp, message.room_id, member_id)
            elif isinstance(message, CandidateMessage):
                await coordinator.relay("candidate", message.candidate, message.room_id, member_id)
    except WebSocketDisconnect:
        pass
    finally:
        await coordinator.disconnect(member_id)
        logger.info("Member disconnected: %s", member_id)


def _describe(frame: object) -> str:
    if not isinstance(frame, dict):
        return "invalid-frame"
    kind = frame.get("type")
    if not isinstance(kind, str) or not kind:
        return "missing-type"
    return f"invalid-{kind}"
