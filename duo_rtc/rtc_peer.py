"""Entry point for a duo-rtc participant."""

import asyncio
import logging

from duo_rtc.client.peer_client import run_peer_client


def run_peer(
    signaling_url: str = None,
    ice_servers_url: str = None,
    media_source: str = None,
    media_format: str = None,
    record_path: str = None,
    negotiation_timeout: float = None,
):
    """Run one participant until its session ends.

    Args:
        signaling_url: Signaling server websocket URL (config default if None).
        ice_servers_url: Credential endpoint for TURN servers (config default if None).
        media_source: MediaPlayer source for outgoing media; synthetic tracks if None.
        media_format: FFmpeg input format for ``media_source``.
        record_path: File to record the inbound stream to; discarded if None.
        negotiation_timeout: Seconds allowed to reach connected (config default if None).

    Returns:
        The ConnectionState the session ended in, or None if interrupted
        before a session was set up.
    """
    try:
        return asyncio.run(
            run_peer_client(
                signaling_url=signaling_url,
                ice_servers_url=ice_servers_url,
                media_source=media_source,
                media_format=media_format,
                record_path=record_path,
                negotiation_timeout=negotiation_timeout,
            )
        )
    except KeyboardInterrupt:
        logging.info("Peer interrupted by user. Shutting down...")
        return None
