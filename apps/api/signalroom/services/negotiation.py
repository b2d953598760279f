"""Client-side offer/answer negotiation for one call at a time.

``NegotiationEngine`` is an actor: signaling messages, transport callbacks and
the start command are queued on a single inbox and handled one after another
by a worker task, each handler running to completion before the next event is
taken. Two counters keep late results out of the current call:

* the *epoch* is bumped by every :meth:`NegotiationEngine.end`; inbox entries
  carry the epoch they were posted under and are dropped once it moves on;
* the *link* numbers transport sessions inside a call, so callbacks from a
  transport that was replaced after a peer left are ignored.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Union

from ..core.config import settings
from ..schemas.signaling import (
    AnswerMessage,
    AnswerRelayEvent,
    CandidateMessage,
    CandidateRelayEvent,
    ErrorEvent,
    JoinedEvent,
    JoinRoomMessage,
    LeaveRoomMessage,
    LeftEvent,
    OfferMessage,
    OfferRelayEvent,
    RoomFullEvent,
    RoomInfoEvent,
    RoomReadyEvent,
)
from .datachannel import ChatEntry, Direction, decode_inbound, encode_chat
from .peer import (
    CallMode,
    Candidate,
    CaptureDevice,
    DataChannel,
    DuplicateCandidateError,
    LocalTrack,
    NoCapture,
    PeerTransport,
    SignalingChannel,
    SignalingFactory,
    TransportFactory,
)
from .signaling_client import SignalingUnavailableError

logger = logging.getLogger(__name__)


class CallStatus(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    WAITING = "waiting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


CONNECTED_PATH_STATES = frozenset({"connected", "completed"})

StatusListener = Callable[[CallStatus], None]


@dataclass(slots=True)
class _StartCall:
    future: asyncio.Future


@dataclass(slots=True)
class _SignalReceived:
    message: Any


@dataclass(slots=True)
class _SignalingLost:
    error: Optional[BaseException]


@dataclass(slots=True)
class _CandidateDiscovered:
    link: int
    candidate: Candidate


@dataclass(slots=True)
class _PathStateChanged:
    link: int
    state: str


@dataclass(slots=True)
class _DataChannelOpened:
    link: int
    channel: DataChannel


@dataclass(slots=True)
class _ChannelMessage:
    link: int
    raw: Union[str, bytes]


@dataclass(slots=True)
class _TrackReceived:
    link: int
    track: Any


_LinkEvent = Union[_CandidateDiscovered, _PathStateChanged, _DataChannelOpened, _ChannelMessage, _TrackReceived]
_Event = Union[_StartCall, _SignalReceived, _SignalingLost, _LinkEvent]


@dataclass
class NegotiationSession:
    """Mutable state of one call attempt; owned by the engine's worker."""

    room_id: str
    mode: CallMode
    is_initiator: bool = False
    peer_count: int = 0
    has_remote_description: bool = False
    queued_candidates: List[Candidate] = field(default_factory=list)
    local_tracks: List[LocalTrack] = field(default_factory=list)
    remote_tracks: List[Any] = field(default_factory=list)
    transport: Optional[PeerTransport] = None
    data_channel: Optional[DataChannel] = None
    signaling: Optional[SignalingChannel] = None
    link: int = 0
    restart_attempted: bool = False


class _LinkEvents:
    """Transport callbacks bound to one link of one call."""

    def __init__(self, engine: "NegotiationEngine", epoch: int, link: int) -> None:
        self._engine = engine
        self._epoch = epoch
        self._link = link

    def candidate_discovered(self, candidate: Candidate) -> None:
        self._engine._post(_CandidateDiscovered(self._link, candidate), self._epoch)

    def path_state_changed(self, state: str) -> None:
        self._engine._post(_PathStateChanged(self._link, state), self._epoch)

    def data_channel_opened(self, channel: DataChannel) -> None:
        self._engine._post(_DataChannelOpened(self._link, channel), self._epoch)

    def track_received(self, track: Any) -> None:
        self._engine._post(_TrackReceived(self._link, track), self._epoch)


class NegotiationEngine:
    """Drive the offer/answer/candidate exchange for a two-party room."""

    def __init__(
        self,
        transport_factory: TransportFactory,
        signaling_factory: SignalingFactory,
        capture: CaptureDevice | None = None,
        *,
        data_channel_label: str | None = None,
    ) -> None:
        self._transport_factory = transport_factory
        self._signaling_factory = signaling_factory
        self._capture = capture or NoCapture()
        self._data_channel_label = data_channel_label or settings.data_channel_label
        self._status = CallStatus.IDLE
        self._session: Optional[NegotiationSession] = None
        self._messages: List[ChatEntry] = []
        self._listeners: List[StatusListener] = []
        self._epoch = 0
        self._inbox: asyncio.Queue[tuple[int, _Event]] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None

    async def __aenter__(self) -> "NegotiationEngine":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    @property
    def status(self) -> CallStatus:
        return self._status

    @property
    def is_call_active(self) -> bool:
        return self._session is not None

    @property
    def room_id(self) -> Optional[str]:
        return self._session.room_id if self._session else None

    @property
    def peer_count(self) -> int:
        return self._session.peer_count if self._session else 0

    @property
    def is_initiator(self) -> bool:
        return self._session.is_initiator if self._session else False

    @property
    def messages(self) -> list[ChatEntry]:
        return list(self._messages)

    @property
    def remote_tracks(self) -> list[Any]:
        return list(self._session.remote_tracks) if self._session else []

    @property
    def session(self) -> Optional[NegotiationSession]:
        return self._session

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    async def start(self, room_id: str, mode: CallMode | str = CallMode.VIDEO) -> None:
        """Acquire local media, build the transport and join ``room_id``."""

        if not room_id:
            raise ValueError("room_id must be non-empty")
        call_mode = CallMode(mode)

        if self._session is not None:
            await self.end()

        self._ensure_worker()
        self._session = NegotiationSession(room_id=room_id, mode=call_mode)
        self._set_status(CallStatus.CONNECTING)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._post(_StartCall(future))
        await future

    async def end(self) -> None:
        """Tear the call down; safe to call from any state and more than once."""

        session, self._session = self._session, None
        if session is None:
            return

        self._epoch += 1
        logger.info("Ending call in room %s", session.room_id)

        for track in session.local_tracks:
            try:
                track.stop()
            except Exception as exc:  # noqa: BLE001 - teardown keeps going
                logger.warning("Failed stopping %s track: %s", getattr(track, "kind", "?"), exc)
        session.local_tracks.clear()

        await self._close_link(session)

        signaling, session.signaling = session.signaling, None
        if signaling is not None:
            try:
                await signaling.send(LeaveRoomMessage(room_id=session.room_id))
            except Exception as exc:  # noqa: BLE001 - coordinator also cleans up on disconnect
                logger.debug("Could not announce leave for room %s: %s", session.room_id, exc)
            try:
                await signaling.close()
            except Exception as exc:  # noqa: BLE001 - teardown keeps going
                logger.warning("Failed closing signaling channel: %s", exc)

        session.queued_candidates.clear()
        self._messages.clear()
        self._set_status(CallStatus.IDLE)

    async def aclose(self) -> None:
        """End any call and stop the worker task."""

        await self.end()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    async def wait_idle(self) -> None:
        """Wait until every queued event has been handled."""

        await self._inbox.join()

    def track_enabled(self, kind: str) -> Optional[bool]:
        """Enabled flag of the first local track of ``kind``, or ``None``."""

        if self._session is None:
            return None
        for track in self._session.local_tracks:
            if track.kind == kind:
                return track.enabled
        return None

    def toggle_local_track(self, kind: str) -> Optional[bool]:
        """Flip the first local track of ``kind``; returns its new state."""

        if self._session is None:
            return None
        for track in self._session.local_tracks:
            if track.kind == kind:
                track.enabled = not track.enabled
                logger.info("Local %s track %s", kind, "enabled" if track.enabled else "muted")
                return track.enabled
        return None

    def send(self, text: str) -> bool:
        """Record ``text`` in the log and deliver it if the data channel is open."""

        self._messages.append(ChatEntry(text=text, direction=Direction.SENT))
        channel = self._session.data_channel if self._session else None
        if channel is None or channel.ready_state != "open":
            logger.debug("Data channel not open; message kept locally only")
            return False
        channel.send(encode_chat(text))
        return True

    # Worker

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    def _post(self, event: _Event, epoch: int | None = None) -> None:
        self._inbox.put_nowait((self._epoch if epoch is None else epoch, event))

    async def _run(self) -> None:
        while True:
            epoch, event = await self._inbox.get()
            try:
                session = self._session
                if epoch != self._epoch or session is None:
                    logger.debug("Dropping stale %s", type(event).__name__)
                else:
                    await self._dispatch(session, epoch, event)
            except Exception:
                if epoch == self._epoch and self._session is not None:
                    logger.exception("Negotiation step %s failed", type(event).__name__)
                    self._set_status(CallStatus.ERROR)
                else:
                    logger.debug("Stale %s failed after call ended", type(event).__name__, exc_info=True)
            finally:
                if isinstance(event, _StartCall) and not event.future.done():
                    event.future.set_result(None)
                self._inbox.task_done()

    async def _dispatch(self, session: NegotiationSession, epoch: int, event: _Event) -> None:
        if isinstance(event, _StartCall):
            await self._handle_start(session, epoch)
        elif isinstance(event, _SignalReceived):
            await self._handle_signal(session, epoch, event.message)
        elif isinstance(event, _SignalingLost):
            self._handle_signaling_lost(event.error)
        elif event.link != session.link:
            logger.debug("Ignoring %s from retired link %d", type(event).__name__, event.link)
        elif isinstance(event, _CandidateDiscovered):
            await self._send_signal(session, CandidateMessage(candidate=event.candidate, room_id=session.room_id))
        elif isinstance(event, _PathStateChanged):
            await self._handle_path_state(session, epoch, event.state)
        elif isinstance(event, _DataChannelOpened):
            logger.info("Data channel received: %s", event.channel.label)
            self._attach_channel(session, event.channel)
        elif isinstance(event, _ChannelMessage):
            self._messages.append(ChatEntry(text=decode_inbound(event.raw), direction=Direction.RECEIVED))
        elif isinstance(event, _TrackReceived):
            logger.info("Remote %s track received", getattr(event.track, "kind", "unknown"))
            session.remote_tracks.append(event.track)

    def _stale(self, epoch: int, session: NegotiationSession, transport: Optional[PeerTransport] = None) -> bool:
        if epoch != self._epoch or self._session is not session:
            return True
        return transport is not None and session.transport is not transport

    # Call setup

    async def _handle_start(self, session: NegotiationSession, epoch: int) -> None:
        try:
            tracks = list(await self._capture.acquire(session.mode))
        except Exception as exc:  # noqa: BLE001 - a call without local media is still valid
            logger.warning("Local capture unavailable, continuing without it: %s", exc)
            tracks = []

        if self._stale(epoch, session):
            for track in tracks:
                track.stop()
            return
        session.local_tracks = tracks

        self._open_link(session, epoch)

        signaling = self._signaling_factory()
        session.signaling = signaling
        try:
            await signaling.open(
                lambda message: self._post(_SignalReceived(message), epoch),
                lambda error: self._post(_SignalingLost(error), epoch),
            )
        except SignalingUnavailableError as exc:
            if not self._stale(epoch, session):
                logger.error("Signaling unavailable: %s", exc)
                self._set_status(CallStatus.ERROR)
            return

        if self._stale(epoch, session):
            await signaling.close()
            return

        await signaling.send(JoinRoomMessage(room_id=session.room_id))
        if self._stale(epoch, session):
            return
        self._set_status(CallStatus.WAITING)

    def _open_link(self, session: NegotiationSession, epoch: int) -> None:
        session.link += 1
        transport = self._transport_factory(_LinkEvents(self, epoch, session.link))
        for track in session.local_tracks:
            transport.add_track(track)
        session.transport = transport
        session.has_remote_description = False
        session.queued_candidates.clear()
        session.restart_attempted = False
        logger.debug("Opened transport link %d for room %s", session.link, session.room_id)

    async def _close_link(self, session: NegotiationSession) -> None:
        channel, session.data_channel = session.data_channel, None
        if channel is not None:
            try:
                channel.close()
            except Exception as exc:  # noqa: BLE001 - teardown keeps going
                logger.warning("Failed closing data channel: %s", exc)

        transport, session.transport = session.transport, None
        if transport is not None:
            try:
                await transport.close()
            except Exception as exc:  # noqa: BLE001 - teardown keeps going
                logger.warning("Failed closing transport: %s", exc)

        session.remote_tracks.clear()

    def _attach_channel(self, session: NegotiationSession, channel: DataChannel) -> None:
        session.data_channel = channel
        link, epoch = session.link, self._epoch
        channel.bind(
            on_open=lambda: logger.info("Data channel %s open", channel.label),
            on_message=lambda raw: self._post(_ChannelMessage(link, raw), epoch),
            on_close=lambda: logger.info("Data channel %s closed", channel.label),
        )

    # Signaling

    async def _handle_signal(self, session: NegotiationSession, epoch: int, message: Any) -> None:
        if isinstance(message, RoomInfoEvent):
            session.is_initiator = message.is_initiator
            session.peer_count = max(0, message.count - 1)
            logger.info(
                "Room %s: %d member(s), initiator: %s", session.room_id, message.count, message.is_initiator
            )
        elif isinstance(message, JoinedEvent):
            session.peer_count += 1
            logger.info("Peer %s joined room %s", message.member_id, session.room_id)
            if self._status is CallStatus.ERROR:
                logger.info("Call is in error; not offering until it is restarted")
            elif session.is_initiator:
                await self._send_offer(session, epoch)
            else:
                logger.debug("Responder waiting for offer")
        elif isinstance(message, LeftEvent):
            session.peer_count = max(0, session.peer_count - 1)
            logger.info("Peer %s left room %s", message.member_id, session.room_id)
            if self._status is CallStatus.ERROR:
                return
            await self._close_link(session)
            if self._stale(epoch, session):
                return
            self._open_link(session, epoch)
            self._set_status(CallStatus.WAITING)
        elif isinstance(message, RoomReadyEvent):
            logger.info("Room %s ready: both parties present", message.room_id)
        elif isinstance(message, RoomFullEvent):
            logger.error("Room %s is full (capacity %d)", message.room_id, message.capacity)
            self._set_status(CallStatus.ERROR)
        elif isinstance(message, OfferRelayEvent):
            await self._accept_offer(session, epoch, message.sdp)
        elif isinstance(message, AnswerRelayEvent):
            await self._accept_answer(session, epoch, message.sdp)
        elif isinstance(message, CandidateRelayEvent):
            await self._receive_candidate(session, message.candidate)
        elif isinstance(message, ErrorEvent):
            logger.warning("Coordinator rejected a frame: %s", message.reason)

    def _handle_signaling_lost(self, error: Optional[BaseException]) -> None:
        if self._status in (CallStatus.CONNECTING, CallStatus.WAITING):
            logger.error("Signaling lost before the peer connected: %s", error)
            self._set_status(CallStatus.ERROR)
        else:
            logger.warning("Signaling lost while %s; media path is unaffected", self._status.value)

    async def _send_signal(self, session: NegotiationSession, message: Any) -> None:
        if session.signaling is None:
            logger.debug("No signaling channel; dropping %s", message.type)
            return
        try:
            await session.signaling.send(message)
        except Exception as exc:  # noqa: BLE001 - loss is reported through the closed callback
            logger.warning("Failed sending %s: %s", message.type, exc)

    # Offer / answer

    async def _send_offer(self, session: NegotiationSession, epoch: int) -> None:
        transport = session.transport
        if transport is None:
            logger.error("No transport to create an offer with")
            return

        if session.mode.wants_data_channel and session.data_channel is None:
            channel = transport.create_data_channel(self._data_channel_label, ordered=True)
            self._attach_channel(session, channel)

        logger.info("Creating offer as initiator for room %s", session.room_id)
        offer = await transport.create_offer()
        if self._stale(epoch, session, transport):
            return
        local = await transport.set_local_description(offer)
        if self._stale(epoch, session, transport):
            return
        await self._send_signal(session, OfferMessage(sdp=local, room_id=session.room_id))

    async def _accept_offer(self, session: NegotiationSession, epoch: int, description: dict) -> None:
        transport = session.transport
        if transport is None:
            logger.error("Received offer without a transport")
            return

        await transport.set_remote_description(description)
        if self._stale(epoch, session, transport):
            return
        session.has_remote_description = True
        await self._flush_candidates(session, epoch, transport)

        answer = await transport.create_answer()
        if self._stale(epoch, session, transport):
            return
        local = await transport.set_local_description(answer)
        if self._stale(epoch, session, transport):
            return
        logger.info("Sending answer for room %s", session.room_id)
        await self._send_signal(session, AnswerMessage(sdp=local, room_id=session.room_id))

    async def _accept_answer(self, session: NegotiationSession, epoch: int, description: dict) -> None:
        transport = session.transport
        if transport is None:
            logger.error("Received answer without a transport")
            return

        await transport.set_remote_description(description)
        if self._stale(epoch, session, transport):
            return
        session.has_remote_description = True
        await self._flush_candidates(session, epoch, transport)
        logger.info("Signaling complete for room %s, waiting for path", session.room_id)

    # Candidates

    async def _receive_candidate(self, session: NegotiationSession, candidate: Candidate) -> None:
        if session.has_remote_description and session.transport is not None:
            await self._apply_candidate(session.transport, candidate)
        else:
            session.queued_candidates.append(candidate)
            logger.debug("Queued candidate (%d pending)", len(session.queued_candidates))

    async def _flush_candidates(self, session: NegotiationSession, epoch: int, transport: PeerTransport) -> None:
        pending, session.queued_candidates = session.queued_candidates, []
        if pending:
            logger.info("Applying %d queued candidate(s)", len(pending))
        for candidate in pending:
            if self._stale(epoch, session, transport):
                return
            await self._apply_candidate(transport, candidate)

    async def _apply_candidate(self, transport: PeerTransport, candidate: Candidate) -> None:
        try:
            await transport.add_candidate(candidate)
        except DuplicateCandidateError:
            logger.debug("Candidate already applied, ignoring")
        except Exception as exc:  # noqa: BLE001 - one bad candidate does not end the call
            logger.warning("Candidate rejected by transport: %s", exc)

    # Path state

    async def _handle_path_state(self, session: NegotiationSession, epoch: int, state: str) -> None:
        logger.info("Path state for room %s: %s", session.room_id, state)
        # Only end() or a new start() leaves the error state.
        if self._status is CallStatus.ERROR:
            return
        if state in CONNECTED_PATH_STATES:
            session.restart_attempted = False
            self._set_status(CallStatus.CONNECTED)
        elif state == "disconnected":
            self._set_status(CallStatus.DISCONNECTED)
            if not session.restart_attempted:
                await self._restart_path(session, epoch)
        elif state == "failed":
            if session.restart_attempted:
                logger.error("Path failed after restart in room %s", session.room_id)
                self._set_status(CallStatus.ERROR)
            else:
                self._set_status(CallStatus.DISCONNECTED)
                await self._restart_path(session, epoch)

    async def _restart_path(self, session: NegotiationSession, epoch: int) -> None:
        transport = session.transport
        if transport is None:
            return
        session.restart_attempted = True
        logger.warning("Requesting path restart for room %s", session.room_id)
        await transport.restart_path()
        if self._stale(epoch, session, transport):
            return
        if session.is_initiator and session.peer_count > 0:
            await self._send_offer(session, epoch)

    def _set_status(self, status: CallStatus) -> None:
        if status is self._status:
            return
        logger.info("Status %s -> %s", self._status.value, status.value)
        self._status = status
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as exc:  # noqa: BLE001 - a broken listener must not stall negotiation
                logger.error("Status listener failed: %s", exc)
