"""Entry point for the duo-rtc signaling server."""

import asyncio
import logging

from duo_rtc.config import get_config
from duo_rtc.server.signaling_server import SignalingServer


def run_signaling_server(host=None, port=None):
    """Create a SignalingServer and run it until interrupted.

    Args:
        host: Interface to bind. CLI option overrides config file.
        port: Port to listen on. CLI option overrides config file.
    """
    config = get_config()

    ice_servers = [server.to_dict() for server in config.server_ice_servers]
    if ice_servers:
        logging.info(f"Announcing {len(ice_servers)} ICE server(s) to participants")

    server = SignalingServer(
        host=host or config.host,
        port=port or config.port,
        ice_servers=ice_servers,
    )

    try:
        asyncio.run(server.serve())
    except KeyboardInterrupt:
        logging.info("Server stopped")
