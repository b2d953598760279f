"""Chat envelope carried over the auxiliary data channel."""
from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone

CHAT_TYPE = "chat"


class Direction(str, enum.Enum):
    SENT = "sent"
    RECEIVED = "received"


@dataclass(slots=True)
class ChatEntry:
    text: str
    direction: Direction
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def encode_chat(text: str) -> str:
    return json.dumps({"type": CHAT_TYPE, "content": text})


def decode_inbound(raw: str | bytes) -> str:
    """Return the chat text of an envelope, or the raw payload as text."""

    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    try:
        payload = json.loads(text)
    except ValueError:
        return text

    if isinstance(payload, dict) and payload.get("type") == CHAT_TYPE and isinstance(payload.get("content"), str):
        return payload["content"]
    return text
