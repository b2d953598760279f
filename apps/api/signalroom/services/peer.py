"""Contracts for the collaborators the negotiation engine drives.

The engine never touches a real peer connection, capture device or socket
directly. It talks to these protocols, which are implemented by
:mod:`signalroom.services.rtc` (aiortc), by
:mod:`signalroom.services.signaling_client` (websockets) and by the dummies in
the test suite.
"""
from __future__ import annotations

import enum
from typing import Any, Callable, Optional, Protocol, Sequence

Description = dict[str, Any]
Candidate = dict[str, Any]


class CallMode(str, enum.Enum):
    VIDEO = "video"
    AUDIO = "audio"
    DATA = "data"
    ALL = "all"

    @property
    def wants_video(self) -> bool:
        return self in (CallMode.VIDEO, CallMode.ALL)

    @property
    def wants_audio(self) -> bool:
        return self is not CallMode.DATA

    @property
    def wants_data_channel(self) -> bool:
        return self in (CallMode.DATA, CallMode.ALL)


class DuplicateCandidateError(RuntimeError):
    """Raised by a transport when a candidate has already been applied."""


class DataChannel(Protocol):
    label: str

    @property
    def ready_state(self) -> str:
        """One of ``connecting``, ``open``, ``closing`` or ``closed``."""

    def bind(
        self,
        on_open: Callable[[], None],
        on_message: Callable[[str], None],
        on_close: Callable[[], None],
    ) -> None:
        ...

    def send(self, data: str) -> None:
        ...

    def close(self) -> None:
        ...


class LocalTrack(Protocol):
    kind: str
    enabled: bool

    def stop(self) -> None:
        ...


class PeerEvents(Protocol):
    """Callbacks a transport fires; all are synchronous and non-blocking."""

    def candidate_discovered(self, candidate: Candidate) -> None:
        ...

    def path_state_changed(self, state: str) -> None:
        ...

    def data_channel_opened(self, channel: DataChannel) -> None:
        ...

    def track_received(self, track: Any) -> None:
        ...


class PeerTransport(Protocol):
    async def create_offer(self) -> Description:
        ...

    async def create_answer(self) -> Description:
        ...

    async def set_local_description(self, description: Description) -> Description:
        """Apply ``description`` and return the effective local description."""

    async def set_remote_description(self, description: Description) -> None:
        ...

    async def add_candidate(self, candidate: Candidate) -> None:
        ...

    def create_data_channel(self, label: str, ordered: bool = True) -> DataChannel:
        ...

    def add_track(self, track: LocalTrack) -> None:
        ...

    async def restart_path(self) -> None:
        ...

    async def close(self) -> None:
        ...


TransportFactory = Callable[[PeerEvents], PeerTransport]


class CaptureDevice(Protocol):
    async def acquire(self, mode: CallMode) -> Sequence[LocalTrack]:
        ...


class NoCapture:
    """Capture layer for peers that only exchange data."""

    async def acquire(self, mode: CallMode) -> Sequence[LocalTrack]:
        return ()


MessageHandler = Callable[[Any], None]
ClosedHandler = Callable[[Optional[BaseException]], None]


class SignalingChannel(Protocol):
    async def open(self, on_message: MessageHandler, on_closed: ClosedHandler) -> None:
        ...

    async def send(self, message: Any) -> None:
        ...

    async def close(self) -> None:
        ...


SignalingFactory = Callable[[], SignalingChannel]
