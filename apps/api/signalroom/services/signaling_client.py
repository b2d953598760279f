"""WebSocket client side of the signaling protocol."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import Any, Optional

import websockets
from pydantic import BaseModel, ValidationError
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from ..core.config import settings
from ..schemas.signaling import dump_message, parse_server_message
from .peer import ClosedHandler, MessageHandler

logger = logging.getLogger(__name__)


class SignalingUnavailableError(RuntimeError):
    """Raised when the coordinator cannot be reached."""


class WebSocketSignalingChannel:
    """Persistent member connection to the room coordinator."""

    def __init__(self, url: str | None = None, *, open_timeout: float | None = None) -> None:
        self._url = url or settings.signaling_url
        self._open_timeout = open_timeout or settings.signaling_open_timeout
        self._ws: Any = None
        self._on_message: Optional[MessageHandler] = None
        self._on_closed: Optional[ClosedHandler] = None
        self._receive_task: asyncio.Task[None] | None = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closing

    async def open(self, on_message: MessageHandler, on_closed: ClosedHandler) -> None:
        self._on_message = on_message
        self._on_closed = on_closed
        try:
            self._ws = await websockets.connect(self._url, open_timeout=self._open_timeout)
        except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI) as exc:
            raise SignalingUnavailableError(f"Cannot reach coordinator at {self._url}: {exc}") from exc

        logger.info("Signaling connected: %s", self._url)
        self._receive_task = asyncio.create_task(self._receive_loop())

    async def send(self, message: BaseModel) -> None:
        if self._ws is None:
            raise SignalingUnavailableError("Signaling channel is not open")
        await self._ws.send(json.dumps(dump_message(message)))

    async def close(self) -> None:
        self._closing = True
        if self._receive_task:
            self._receive_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._receive_task
            self._receive_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None

    async def _receive_loop(self) -> None:
        error: BaseException | None = None
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    continue
                try:
                    message = parse_server_message(json.loads(raw))
                except (ValueError, ValidationError) as exc:
                    logger.warning("Ignoring malformed signaling frame: %s", exc)
                    continue
                if self._on_message:
                    self._on_message(message)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as exc:
            error = exc

        if not self._closing:
            logger.warning("Signaling connection lost: %s", error or "closed by server")
            if self._on_closed:
                self._on_closed(error)
