"""Connection-establishment state machine for one participant.

States::

    idle -> awaiting-peer -> initiating | answering -> connected | failed -> closed

The machine owns the participant's RTCPeerConnection and negotiation role.
Inbound signaling messages are handed to ``handle_message``; outbound ones go
through the ``signaling`` object's ``send(msg_type, **fields)`` coroutine.

Negotiation operations and candidate applications are serialized by one
asyncio lock (FIFO), so candidates are applied in the order they were received.
Candidates that arrive before the remote description is applied are kept in a
CandidateBuffer and drained right after the description is set. The
"remote description applied" flag is raised only once the buffer is empty, in
the same critical section, so a candidate can never be both buffered and
applied, or skipped.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from aiortc import RTCSessionDescription

from duo_rtc.client.candidate_buffer import CandidateBuffer
from duo_rtc.exceptions import ProtocolError
from duo_rtc.ice_servers import create_peer_connection
from duo_rtc.protocol import (
    MSG_ANSWER,
    MSG_CANDIDATE,
    MSG_OFFER,
    MSG_PEER_LEFT,
    MSG_READY,
    MSG_START_SESSION,
    candidate_from_payload,
    candidate_to_payload,
    description_to_payload,
)

logger = logging.getLogger(__name__)

DATA_CHANNEL_LABEL = "chat"


class ConnectionState(Enum):
    IDLE = "idle"
    AWAITING_PEER = "awaiting-peer"
    INITIATING = "initiating"
    ANSWERING = "answering"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


TERMINAL_STATES = frozenset({ConnectionState.FAILED, ConnectionState.CLOSED})
NEGOTIATING_STATES = frozenset({ConnectionState.INITIATING, ConnectionState.ANSWERING})


class Role(Enum):
    INITIATOR = "initiator"
    ANSWERER = "answerer"


@dataclass
class InboundStream:
    """Tracks received from the remote peer.

    Attributes:
        tracks: Inbound media tracks.
        source: ``track-event`` when assembled from track events,
            ``receivers`` when built from the connection's receivers.
    """

    tracks: List[Any] = field(default_factory=list)
    source: str = "track-event"

    def add(self, track) -> None:
        if track not in self.tracks:
            self.tracks.append(track)


class ConnectionStateMachine:
    """Drives one participant through offer/answer and candidate exchange.

    Args:
        participant_id: Id assigned by the signaling server.
        signaling: Object with ``async send(msg_type, **fields)``.
        ice_servers: ICE server descriptors for the peer connection.
        pc_factory: ``pc_factory(ice_servers)`` returning an RTCPeerConnection.
        media: Optional LocalMedia whose tracks are sent to the peer.
        negotiation_timeout: Seconds allowed between start-session and
            connected before failing. None disables the deadline.
        on_state_change: Optional ``callback(old_state, new_state)``.
        on_remote_stream: Optional callback (sync or async) receiving the
            InboundStream once connected.
    """

    def __init__(
        self,
        participant_id: str,
        signaling,
        ice_servers: Optional[List[Dict[str, Any]]] = None,
        pc_factory: Callable = create_peer_connection,
        media=None,
        negotiation_timeout: Optional[float] = 30.0,
        on_state_change: Optional[Callable] = None,
        on_remote_stream: Optional[Callable] = None,
    ):
        self.participant_id = participant_id
        self.signaling = signaling
        self.ice_servers = ice_servers or []
        self.pc_factory = pc_factory
        self.media = media
        self.negotiation_timeout = negotiation_timeout
        self.on_state_change = on_state_change
        self.on_remote_stream = on_remote_stream

        self.state = ConnectionState.IDLE
        self.role: Optional[Role] = None
        self.session_id: Optional[str] = None
        self.peer_id: Optional[str] = None
        self.pc = None
        self.data_channel = None
        self.remote_stream: Optional[InboundStream] = None
        self.failure_reason: Optional[str] = None

        self.candidates = CandidateBuffer()
        self.applied_candidates = 0
        self.guard_violations = 0

        self.terminal = asyncio.Event()
        self._lock = asyncio.Lock()
        self._remote_description_applied = False
        self._remote_stream_delivered = False
        self._local_tracks: List[Any] = []
        self._deadline_task: Optional[asyncio.Task] = None

    @property
    def remote_description_applied(self) -> bool:
        return self._remote_description_applied

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    # ===== Local actions =====

    async def start(self) -> None:
        """Acquire local media and signal readiness (idle -> awaiting-peer)."""
        if self.state is not ConnectionState.IDLE:
            self._guard_violation(f"start ignored in state {self.state.value}")
            return

        if self.media is not None:
            self._local_tracks = list(self.media.open())
        self._set_state(ConnectionState.AWAITING_PEER)
        await self.signaling.send(MSG_READY)

    async def close(self) -> None:
        """Tear down the connection (any state -> closed)."""
        if self.state is ConnectionState.CLOSED:
            return

        self._cancel_deadline()
        dropped = self.candidates.clear()
        if dropped:
            logger.debug(f"Discarded {dropped} unapplied candidate(s)")

        if self.pc is not None:
            await self.pc.close()
        if self.media is not None:
            self.media.stop()

        self._set_state(ConnectionState.CLOSED)

    async def send_candidate(self, candidate) -> None:
        """Send a locally gathered candidate to the peer."""
        if candidate is None or self.is_terminal:
            return
        await self.signaling.send(MSG_CANDIDATE, payload=candidate_to_payload(candidate))

    # ===== Inbound signaling =====

    async def handle_message(self, data: Dict[str, Any]) -> bool:
        """Dispatch a decoded signaling message.

        Returns:
            True if the message type belongs to the negotiation protocol.
        """
        msg_type = data.get("type")

        if msg_type == MSG_START_SESSION:
            await self.on_start_session(
                data.get("initiator"),
                session_id=data.get("session_id"),
                participants=data.get("participants"),
            )
        elif msg_type == MSG_OFFER:
            await self.on_offer(data.get("payload"), data.get("from"))
        elif msg_type == MSG_ANSWER:
            await self.on_answer(data.get("payload"), data.get("from"))
        elif msg_type == MSG_CANDIDATE:
            await self.on_candidate(data.get("payload"), data.get("from"))
        elif msg_type == MSG_PEER_LEFT:
            await self.on_peer_left(data.get("participant"))
        else:
            return False
        return True

    async def on_start_session(
        self,
        initiator: str,
        session_id: Optional[str] = None,
        participants: Optional[List[str]] = None,
    ) -> None:
        """Take the initiator or answerer role and start negotiating."""
        offer_payload = None

        async with self._lock:
            if self.state is not ConnectionState.AWAITING_PEER:
                self._guard_violation(f"start-session ignored in state {self.state.value}")
                return

            self.session_id = session_id
            if participants:
                others = [p for p in participants if p != self.participant_id]
                self.peer_id = others[0] if others else None
            self.candidates.peer_id = self.peer_id

            self._create_peer_connection()

            if initiator == self.participant_id:
                self.role = Role.INITIATOR
                self._set_state(ConnectionState.INITIATING)
                self._start_deadline()

                self.data_channel = self.pc.createDataChannel(DATA_CHANNEL_LABEL)
                self._setup_channel_handlers(self.data_channel)

                try:
                    offer = await self.pc.createOffer()
                    await self.pc.setLocalDescription(offer)
                except Exception as e:
                    logger.error(f"Failed to create offer: {e}")
                    await self._fail(f"offer creation failed: {e}")
                    return

                if self.state is ConnectionState.INITIATING:
                    offer_payload = description_to_payload(self.pc.localDescription)
            else:
                self.role = Role.ANSWERER
                self._set_state(ConnectionState.ANSWERING)
                self._start_deadline()
                logger.info(f"Waiting for offer from {initiator}")

        if offer_payload is not None:
            await self.signaling.send(MSG_OFFER, payload=offer_payload)
            logger.info(f"Sent offer to {self.peer_id or 'peer'}")

    async def on_offer(self, payload, sender: Optional[str] = None) -> None:
        """Apply a remote offer and answer it (answering role only)."""
        answer_payload = None

        async with self._lock:
            if not self._accepts(MSG_OFFER, sender):
                return
            if self.state is not ConnectionState.ANSWERING or self.role is Role.INITIATOR:
                self._guard_violation(
                    f"offer from {sender} ignored in state {self.state.value}"
                )
                return
            if self._remote_description_applied:
                self._guard_violation(f"duplicate offer from {sender} ignored")
                return
            if not self._is_description(payload):
                self._guard_violation(f"malformed offer from {sender} ignored")
                return

            logger.info(f"Received offer from {sender}")
            try:
                await self.pc.setRemoteDescription(
                    RTCSessionDescription(sdp=payload["sdp"], type="offer")
                )
                await self._drain_candidates()
                answer = await self.pc.createAnswer()
                await self.pc.setLocalDescription(answer)
            except Exception as e:
                logger.error(f"Failed to answer offer: {e}")
                await self._fail(f"answer creation failed: {e}")
                return

            if self.state is ConnectionState.ANSWERING:
                answer_payload = description_to_payload(self.pc.localDescription)

        if answer_payload is not None:
            await self.signaling.send(MSG_ANSWER, payload=answer_payload)
            logger.info(f"Sent answer to {sender}")

    async def on_answer(self, payload, sender: Optional[str] = None) -> None:
        """Apply the remote answer (initiator with a pending local offer only)."""
        async with self._lock:
            if not self._accepts(MSG_ANSWER, sender):
                return

            signaling_state = getattr(self.pc, "signalingState", None)
            if self.role is not Role.INITIATOR or signaling_state != "have-local-offer":
                self._guard_violation(
                    f"answer from {sender} discarded (role={self.role and self.role.value}, "
                    f"signaling={signaling_state})"
                )
                return
            if not self._is_description(payload):
                self._guard_violation(f"malformed answer from {sender} ignored")
                return

            logger.info(f"Received answer from {sender}")
            try:
                await self.pc.setRemoteDescription(
                    RTCSessionDescription(sdp=payload["sdp"], type="answer")
                )
                await self._drain_candidates()
            except Exception as e:
                logger.error(f"Failed to apply answer: {e}")
                await self._fail(f"answer rejected: {e}")

    async def on_candidate(self, payload, sender: Optional[str] = None) -> None:
        """Apply a remote candidate now, or buffer it until the remote description is set."""
        async with self._lock:
            if self.state is ConnectionState.IDLE:
                logger.debug(f"Candidate from {sender} ignored before start")
                return
            if not self._accepts(MSG_CANDIDATE, sender):
                return

            if self._remote_description_applied:
                await self._apply_candidate(payload)
            else:
                self.candidates.append(payload)

    async def on_peer_left(self, participant: Optional[str] = None) -> None:
        if self.peer_id is not None and participant not in (None, self.peer_id):
            logger.debug(f"Ignoring peer-left for {participant}")
            return
        logger.info(f"Peer {participant or self.peer_id} left the session")
        await self.close()

    # ===== Peer connection events =====

    def _create_peer_connection(self) -> None:
        self.pc = self.pc_factory(self.ice_servers)
        for track in self._local_tracks:
            self.pc.addTrack(track)

        self.pc.on("track", self._on_track)
        self.pc.on("datachannel", self._on_datachannel)
        self.pc.on("connectionstatechange", self._on_connection_state_change)
        # aiortc bundles its own candidates into the SDP; only browser-style
        # connections trickle them through this event.
        self.pc.on("icecandidate", self.send_candidate)

    def _setup_channel_handlers(self, channel) -> None:
        @channel.on("open")
        def on_open():
            logger.info(f"DataChannel {channel.label} is open")

        @channel.on("close")
        def on_close():
            logger.info(f"DataChannel {channel.label} closed")

    def _on_datachannel(self, channel) -> None:
        logger.info(f"DataChannel received: {channel.label}")
        self.data_channel = channel
        self._setup_channel_handlers(channel)

    def _on_track(self, track) -> None:
        logger.info(f"Received {track.kind} track")
        if self.remote_stream is None:
            self.remote_stream = InboundStream(source="track-event")
        self.remote_stream.add(track)

    async def _on_connection_state_change(self) -> None:
        pc = self.pc
        if pc is None:
            return
        state = pc.connectionState
        logger.info(f"Connection state: {state}")

        if state == "connected":
            await self._enter_connected()
        elif state == "failed":
            await self._fail("no viable connectivity path")

    async def _enter_connected(self) -> None:
        if self.state not in NEGOTIATING_STATES:
            return

        self._cancel_deadline()
        self._set_state(ConnectionState.CONNECTED)

        # The track event can lose the race with the connected transition.
        if self.remote_stream is None:
            tracks = [r.track for r in self.pc.getReceivers() if r.track is not None]
            self.remote_stream = InboundStream(tracks=tracks, source="receivers")
            logger.info(f"Attached inbound stream from {len(tracks)} receiver track(s)")

        await self._deliver_remote_stream()

    async def _deliver_remote_stream(self) -> None:
        if self._remote_stream_delivered or self.on_remote_stream is None:
            return
        self._remote_stream_delivered = True
        result = self.on_remote_stream(self.remote_stream)
        if inspect.isawaitable(result):
            await result

    # ===== Internals =====

    async def _drain_candidates(self) -> None:
        await self.candidates.drain(self._apply_candidate)
        self._remote_description_applied = True

    async def _apply_candidate(self, payload) -> None:
        try:
            candidate = candidate_from_payload(payload)
        except ProtocolError as e:
            logger.warning(f"Skipping candidate: {e}")
            return

        if candidate is None:
            logger.debug("Received end-of-candidates marker")
            return

        try:
            await self.pc.addIceCandidate(candidate)
            self.applied_candidates += 1
        except Exception as e:
            logger.error(f"Failed to add ICE candidate: {e}")

    def _accepts(self, msg_type: str, sender: Optional[str]) -> bool:
        if self.is_terminal:
            logger.debug(f"{msg_type} from {sender} ignored in state {self.state.value}")
            return False
        if self.peer_id is not None and sender is not None and sender != self.peer_id:
            self._guard_violation(f"{msg_type} from non-peer {sender} ignored")
            return False
        return True

    @staticmethod
    def _is_description(payload) -> bool:
        return isinstance(payload, dict) and isinstance(payload.get("sdp"), str)

    def _guard_violation(self, reason: str) -> None:
        self.guard_violations += 1
        logger.warning(f"Guard violation: {reason}")

    async def _fail(self, reason: str) -> None:
        if self.is_terminal:
            return
        self.failure_reason = reason
        logger.error(f"Negotiation failed: {reason}")
        self._cancel_deadline()
        self._set_state(ConnectionState.FAILED)
        if self.pc is not None:
            await self.pc.close()

    def _start_deadline(self) -> None:
        if not self.negotiation_timeout:
            return
        self._deadline_task = asyncio.ensure_future(self._deadline(self.negotiation_timeout))

    async def _deadline(self, timeout: float) -> None:
        await asyncio.sleep(timeout)
        if self.state in NEGOTIATING_STATES:
            await self._fail(f"not connected within {timeout:g}s")

    def _cancel_deadline(self) -> None:
        task = self._deadline_task
        self._deadline_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _set_state(self, new_state: ConnectionState) -> None:
        old_state = self.state
        if old_state is new_state:
            return
        self.state = new_state
        logger.info(f"[{self.participant_id}] {old_state.value} -> {new_state.value}")
        if new_state in TERMINAL_STATES:
            self.terminal.set()
        if self.on_state_change is not None:
            self.on_state_change(old_state, new_state)
