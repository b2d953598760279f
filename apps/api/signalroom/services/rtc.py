"""Peer transport backed by aiortc.

aiortc gathers every local candidate while the local description is applied
and embeds them in the SDP, so this transport never trickles candidates of
its own; it still applies the candidates a browser peer trickles to it.

aiortc also has no ICE restart. ``restart_path`` only logs, and the
initiator's follow-up offer reuses the existing ICE credentials, so it
renegotiates the session but does not restart the path. A path that stays
``failed`` ends the call in ``error``; recover with ``end()`` and a new
``start()``.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Set

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from ..core.config import Settings, settings
from .peer import Candidate, DataChannel, Description, DuplicateCandidateError, LocalTrack, PeerEvents

logger = logging.getLogger(__name__)


def build_configuration(config: Settings | None = None) -> RTCConfiguration:
    """Return the ICE server list: public STUN plus TURN when configured."""

    config = config or settings
    ice_servers = [RTCIceServer(urls=url) for url in config.stun_urls]
    if config.has_turn_server:
        ice_servers.append(
            RTCIceServer(urls=config.turn_url, username=config.turn_username, credential=config.turn_credential)
        )
    return RTCConfiguration(iceServers=ice_servers)


class AiortcDataChannel:
    """Adapt an ``RTCDataChannel`` to the engine's channel contract."""

    def __init__(self, channel: Any) -> None:
        self._channel = channel
        self.label: str = channel.label

    @property
    def ready_state(self) -> str:
        return self._channel.readyState

    def bind(
        self,
        on_open: Callable[[], None],
        on_message: Callable[[str], None],
        on_close: Callable[[], None],
    ) -> None:
        self._channel.on("open", on_open)
        self._channel.on("message", on_message)
        self._channel.on("close", on_close)
        if self._channel.readyState == "open":
            on_open()

    def send(self, data: str) -> None:
        self._channel.send(data)

    def close(self) -> None:
        self._channel.close()


class AiortcTransport:
    """``PeerTransport`` over one ``RTCPeerConnection``."""

    def __init__(self, events: PeerEvents, configuration: RTCConfiguration | None = None) -> None:
        self._events = events
        self._pc = RTCPeerConnection(configuration=configuration or build_configuration())
        self._applied: Set[str] = set()

        @self._pc.on("connectionstatechange")
        async def on_connection_state_change() -> None:
            logger.debug("Connection state changed: %s", self._pc.connectionState)
            self._events.path_state_changed(self._pc.connectionState)

        @self._pc.on("datachannel")
        def on_datachannel(channel: Any) -> None:
            self._events.data_channel_opened(AiortcDataChannel(channel))

        @self._pc.on("track")
        def on_track(track: Any) -> None:
            self._events.track_received(track)

    @property
    def peer_connection(self) -> RTCPeerConnection:
        return self._pc

    async def create_offer(self) -> Description:
        offer = await self._pc.createOffer()
        return {"type": offer.type, "sdp": offer.sdp}

    async def create_answer(self) -> Description:
        answer = await self._pc.createAnswer()
        return {"type": answer.type, "sdp": answer.sdp}

    async def set_local_description(self, description: Description) -> Description:
        await self._pc.setLocalDescription(RTCSessionDescription(sdp=description["sdp"], type=description["type"]))
        local = self._pc.localDescription
        return {"type": local.type, "sdp": local.sdp}

    async def set_remote_description(self, description: Description) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description["sdp"], type=description["type"]))

    async def add_candidate(self, candidate: Candidate) -> None:
        line = (candidate.get("candidate") or "").strip()
        if not line:
            logger.debug("Ignoring end-of-candidates marker")
            return
        if line in self._applied:
            raise DuplicateCandidateError(line)

        parsed = candidate_from_sdp(line.split(":", 1)[1] if line.startswith("candidate:") else line)
        parsed.sdpMid = candidate.get("sdpMid")
        parsed.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self._pc.addIceCandidate(parsed)
        self._applied.add(line)

    def create_data_channel(self, label: str, ordered: bool = True) -> DataChannel:
        return AiortcDataChannel(self._pc.createDataChannel(label, ordered=ordered))

    def add_track(self, track: LocalTrack) -> None:
        self._pc.addTrack(track)

    async def restart_path(self) -> None:
        # No restartIce() in aiortc, and a re-offer keeps the ICE credentials.
        logger.warning("aiortc cannot restart ICE; path keeps its current credentials")

    async def close(self) -> None:
        await self._pc.close()


def transport_factory(configuration: RTCConfiguration | None = None) -> Callable[[PeerEvents], AiortcTransport]:
    """Return a factory the negotiation engine calls once per link."""

    resolved = configuration or build_configuration()

    def _factory(events: PeerEvents) -> AiortcTransport:
        return AiortcTransport(events, resolved)

    return _factory
