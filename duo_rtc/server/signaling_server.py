"""WebSocket signaling server that pairs two participants.

This server handles participant registration, readiness, initiator election
and negotiation message forwarding. All registry and session state is mutated
from the event loop through ``InitiatorElector``, which holds the registry
lock for each ready/leave transition.

Usage:
    duo-rtc server [--host HOST] [--port PORT]
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from duo_rtc.exceptions import ProtocolError, UnknownParticipantError
from duo_rtc.protocol import (
    MSG_CONNECTED_COUNT,
    MSG_ERROR,
    MSG_PEER_LEFT,
    MSG_READY,
    MSG_READY_COUNT,
    MSG_REGISTERED,
    MSG_START_SESSION,
    NEGOTIATION_TYPES,
    format_message,
    parse_message,
)
from duo_rtc.server.elector import InitiatorElector, Session
from duo_rtc.server.registry import ParticipantRegistry
from duo_rtc.server.relay import NegotiationRelay

logger = logging.getLogger(__name__)


class SignalingServer:
    """Signaling front end for the registry, elector and relay.

    Connections only need an async ``send(str)`` method and async iteration
    over incoming frames, which is what ``websockets`` server connections
    provide.

    Args:
        host: Interface to bind.
        port: Port to listen on.
        ice_servers: ICE server descriptors announced to participants.
        registry: Optional pre-built registry (tests inject id factories).
        elector: Optional pre-built elector sharing ``registry``.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 8080,
        ice_servers: Optional[List[Dict[str, Any]]] = None,
        registry: Optional[ParticipantRegistry] = None,
        elector: Optional[InitiatorElector] = None,
    ):
        self.host = host
        self.port = port
        self.ice_servers = ice_servers or []
        self.registry = registry or ParticipantRegistry()
        self.elector = elector or InitiatorElector(self.registry)
        self.relay = NegotiationRelay(self.elector, self.send_to)
        self.connections: Dict[str, Any] = {}
        self._stop: Optional[asyncio.Event] = None

    async def handler(self, websocket) -> None:
        """Handle one participant connection for its whole lifetime."""
        participant_id = await self.register(websocket)
        try:
            async for message in websocket:
                await self.handle_message(participant_id, message)
        except ConnectionClosed:
            logger.info(f"Connection closed: {participant_id}")
        finally:
            await self.unregister(participant_id)

    async def register(self, websocket) -> str:
        """Register a new connection and announce the new counts."""
        participant_id = self.registry.connect()
        self.connections[participant_id] = websocket

        await self._safe_send(
            websocket,
            format_message(
                MSG_REGISTERED,
                participant_id=participant_id,
                ice_servers=self.ice_servers,
            ),
        )
        await self.broadcast_counts()
        return participant_id

    async def unregister(self, participant_id: str) -> None:
        """Remove a participant, closing its session if it had one."""
        self.connections.pop(participant_id, None)
        removed, session, remaining = self.elector.leave(participant_id)
        if not removed:
            return

        if session is not None and remaining is not None:
            await self.send_to(remaining, format_message(MSG_PEER_LEFT, participant=participant_id))
        await self.broadcast_counts()

        pending = self.elector.elect()
        if pending is not None:
            await self.start_session(pending)

    async def handle_message(self, participant_id: str, raw) -> None:
        """Dispatch one frame from a participant."""
        try:
            data = parse_message(raw)
        except ProtocolError as e:
            logger.warning(f"Rejected frame from {participant_id}: {e}")
            await self.send_to(participant_id, format_message(MSG_ERROR, reason=str(e)))
            return

        msg_type = data["type"]

        if msg_type == MSG_READY:
            await self.handle_ready(participant_id)

        elif msg_type in NEGOTIATION_TYPES:
            try:
                await self.relay.forward(participant_id, data)
            except ProtocolError as e:
                logger.warning(f"Rejected {msg_type} from {participant_id}: {e}")
                await self.send_to(participant_id, format_message(MSG_ERROR, reason=str(e)))

        else:
            logger.warning(f"Unknown message type from {participant_id}: {msg_type}")
            await self.send_to(
                participant_id,
                format_message(MSG_ERROR, reason=f"Unknown message type: {msg_type}"),
            )

    async def handle_ready(self, participant_id: str) -> None:
        try:
            changed, session = self.elector.ready(participant_id)
        except UnknownParticipantError as e:
            logger.warning(str(e))
            return

        if not changed:
            return

        await self.broadcast_counts()
        if session is not None:
            await self.start_session(session)

    async def start_session(self, session: Session) -> None:
        """Notify both session members that negotiation can start."""
        message = format_message(
            MSG_START_SESSION,
            initiator=session.initiator,
            session_id=session.session_id,
            participants=session.participants,
        )
        for participant_id in session.participants:
            await self.send_to(participant_id, message)

    async def broadcast_counts(self) -> None:
        """Send connected-count and ready-count to every participant."""
        connected = format_message(MSG_CONNECTED_COUNT, count=self.registry.connected_count)
        ready = format_message(MSG_READY_COUNT, count=self.registry.ready_count)
        for websocket in list(self.connections.values()):
            await self._safe_send(websocket, connected)
            await self._safe_send(websocket, ready)

    async def send_to(self, participant_id: str, message: str) -> bool:
        """Send a frame to one participant.

        Returns:
            True if the participant is connected and the frame was written.
        """
        websocket = self.connections.get(participant_id)
        if websocket is None:
            logger.warning(f"Target participant not found: {participant_id}")
            return False
        return await self._safe_send(websocket, message)

    @staticmethod
    async def _safe_send(websocket, message: str) -> bool:
        try:
            await websocket.send(message)
            return True
        except ConnectionClosed:
            logger.debug("Send on closed connection skipped")
            return False

    async def serve(self) -> None:
        """Start the signaling server and run until stop() is called."""
        self._stop = asyncio.Event()
        async with websockets.serve(self.handler, self.host, self.port):
            logger.info(f"Signaling server running on ws://{self.host}:{self.port}")
            await self._stop.wait()
        logger.info("Signaling server stopped")

    def stop(self) -> None:
        if self._stop is not None:
            self._stop.set()
