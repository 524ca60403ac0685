"""Participant client: signaling transport around the connection state machine.

The client:
- Connects to the signaling server and waits for its participant id
- Resolves ICE servers (credential endpoint, server announcement, defaults)
- Starts the ConnectionStateMachine, which signals readiness
- Routes every signaling frame to the machine until the session ends
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from duo_rtc.client.connection import ConnectionState, ConnectionStateMachine
from duo_rtc.client.media import LocalMedia, RemoteSink
from duo_rtc.config import get_config
from duo_rtc.exceptions import ProtocolError, RegistrationError
from duo_rtc.ice_servers import resolve_ice_servers
from duo_rtc.protocol import (
    MSG_CONNECTED_COUNT,
    MSG_ERROR,
    MSG_READY_COUNT,
    MSG_REGISTERED,
    format_message,
    parse_message,
)

logger = logging.getLogger(__name__)

REGISTRATION_TIMEOUT = 10.0


class PeerClient:
    """One participant of a two-party session."""

    def __init__(
        self,
        signaling_url: Optional[str] = None,
        ice_servers_url: Optional[str] = None,
        media_source: Optional[str] = None,
        media_format: Optional[str] = None,
        record_path: Optional[str] = None,
        negotiation_timeout: Optional[float] = None,
    ):
        """Initialize the peer client.

        Args:
            signaling_url: Signaling server websocket URL. Defaults to config.
            ice_servers_url: Optional credential endpoint. Defaults to config.
            media_source: Optional MediaPlayer source for outgoing media.
            media_format: Optional FFmpeg format for ``media_source``.
            record_path: Optional file to record the inbound stream to.
            negotiation_timeout: Seconds allowed to reach connected. Defaults to config.
        """
        config = get_config()
        self.signaling_url = signaling_url or config.get_websocket_url()
        self.ice_servers_url = ice_servers_url or config.ice_servers_url
        self.negotiation_timeout = (
            negotiation_timeout if negotiation_timeout is not None else config.negotiation_timeout
        )
        self.credential_timeout = config.credential_timeout

        self.media = LocalMedia(source=media_source, media_format=media_format)
        self.sink = RemoteSink(record_path)

        # Connection state
        self.websocket = None
        self.participant_id: Optional[str] = None
        self.machine: Optional[ConnectionStateMachine] = None
        self.outcome: Optional[ConnectionState] = None

        # Counts announced by the server (informational only)
        self.connected_count = 0
        self.ready_count = 0

    async def send(self, msg_type: str, **fields) -> None:
        """Send a signaling message to the server."""
        await self.websocket.send(format_message(msg_type, **fields))

    async def run(self) -> Optional[ConnectionState]:
        """Run until the session reaches a terminal state or signaling closes.

        Returns:
            The machine state when the session ended (before local cleanup).
        """
        try:
            async with websockets.connect(self.signaling_url) as websocket:
                self.websocket = websocket
                logger.info(f"Connected to signaling server {self.signaling_url}")

                registered = await self._wait_for_registration()
                self.participant_id = registered["participant_id"]
                logger.info(f"Registered as {self.participant_id}")

                ice_servers = await asyncio.to_thread(
                    resolve_ice_servers,
                    self.ice_servers_url,
                    registered.get("ice_servers"),
                    self.credential_timeout,
                )

                self.machine = ConnectionStateMachine(
                    participant_id=self.participant_id,
                    signaling=self,
                    ice_servers=ice_servers,
                    media=self.media,
                    negotiation_timeout=self.negotiation_timeout,
                    on_remote_stream=self.sink.attach,
                )
                await self.machine.start()

                await self._run_message_loop()
        finally:
            await self._cleanup()

        return self.outcome

    async def _wait_for_registration(self) -> Dict[str, Any]:
        try:
            response = await asyncio.wait_for(self.websocket.recv(), timeout=REGISTRATION_TIMEOUT)
        except asyncio.TimeoutError as e:
            raise RegistrationError("Signaling server did not register this participant") from e

        try:
            data = parse_message(response)
        except ProtocolError as e:
            raise RegistrationError(f"Invalid registration response: {e}") from e

        if data["type"] != MSG_REGISTERED or not data.get("participant_id"):
            raise RegistrationError(f"Registration failed: {data}")
        return data

    async def _run_message_loop(self) -> None:
        """Route signaling frames to the machine until it is terminal."""
        try:
            while not self.machine.is_terminal:
                try:
                    message = await asyncio.wait_for(self.websocket.recv(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue

                try:
                    data = parse_message(message)
                except ProtocolError as e:
                    logger.error(f"Skipping signaling frame: {e}")
                    continue

                await self.handle_message(data)

        except ConnectionClosed:
            logger.warning("Signaling connection closed")

        self.outcome = self.machine.state
        if self.machine.state is ConnectionState.FAILED:
            logger.error(f"Session failed: {self.machine.failure_reason}")
        else:
            logger.info(f"Session ended in state {self.machine.state.value}")

    async def handle_message(self, data: Dict[str, Any]) -> None:
        msg_type = data["type"]

        if msg_type == MSG_CONNECTED_COUNT:
            self.connected_count = data.get("count", 0)
            logger.info(f"Connected participants: {self.connected_count}")

        elif msg_type == MSG_READY_COUNT:
            self.ready_count = data.get("count", 0)
            logger.info(f"Ready participants: {self.ready_count}")

        elif msg_type == MSG_ERROR:
            logger.warning(f"Signaling server rejected a message: {data.get('reason')}")

        elif not await self.machine.handle_message(data):
            logger.debug(f"Unhandled message type: {msg_type} {json.dumps(data)[:80]}")

    async def _cleanup(self) -> None:
        if self.machine is not None:
            await self.machine.close()
        await self.sink.stop()
        logger.info("Peer client cleaned up")


async def run_peer_client(**kwargs) -> Optional[ConnectionState]:
    """Create a PeerClient with the given options and run it."""
    client = PeerClient(**kwargs)
    return await client.run()
