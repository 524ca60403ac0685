"""Unified CLI for duo-rtc using Click."""

import json
import logging
import sys

import click
from loguru import logger

from duo_rtc.rtc_peer import run_peer
from duo_rtc.rtc_server import run_signaling_server


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose):
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)


# =============================================================================
# Server
# =============================================================================


@cli.command()
@click.option("--host", type=str, default=None, help="Interface to bind. Overrides config file value.")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on. Overrides config file value.")
def server(host, port):
    """Run the signaling server.

    The server pairs the first two participants that signal readiness,
    elects the earliest one as initiator and relays offers, answers and
    candidates between them.

    Examples:

        duo-rtc server

        duo-rtc server --host 0.0.0.0 --port 9000
    """
    run_signaling_server(host=host, port=port)


# =============================================================================
# Peer
# =============================================================================


@cli.command()
@click.option(
    "--server",
    "-s",
    "signaling_url",
    type=str,
    default=None,
    help="Signaling server URL (e.g. ws://localhost:8080). Overrides config file value.",
)
@click.option(
    "--ice-servers-url",
    type=str,
    default=None,
    help="HTTP endpoint returning TURN credentials. Overrides config file value.",
)
@click.option(
    "--media-source",
    "-m",
    type=str,
    default=None,
    help="File, device or URL to send (FFmpeg syntax). Synthetic tracks if omitted.",
)
@click.option(
    "--media-format",
    type=str,
    default=None,
    help="FFmpeg input format for --media-source (e.g. v4l2, avfoundation).",
)
@click.option(
    "--record",
    "record_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Record the remote stream to this file.",
)
@click.option(
    "--timeout",
    "negotiation_timeout",
    type=float,
    default=None,
    help="Seconds allowed to reach a connected state. Overrides config file value.",
)
def peer(signaling_url, ice_servers_url, media_source, media_format, record_path, negotiation_timeout):
    """Join the signaling server as a participant.

    Waits for a second participant, negotiates a direct connection and runs
    until the session ends (peer left, connection failed or Ctrl+C).

    Examples:

        duo-rtc peer --server ws://localhost:8080

        duo-rtc peer -m /dev/video0 --media-format v4l2 --record remote.mp4
    """
    from duo_rtc.client.connection import ConnectionState

    outcome = run_peer(
        signaling_url=signaling_url,
        ice_servers_url=ice_servers_url,
        media_source=media_source,
        media_format=media_format,
        record_path=record_path,
        negotiation_timeout=negotiation_timeout,
    )
    if outcome is ConnectionState.FAILED:
        logger.error("Connection failed")
        sys.exit(1)


# =============================================================================
# Diagnostics
# =============================================================================


@cli.command(name="ice-servers")
@click.option("--url", type=str, default=None, help="Credential endpoint. Overrides config file value.")
def ice_servers(url):
    """Show the ICE servers a peer would use.

    Fetches TURN credentials from the configured endpoint, falling back to
    the default STUN servers when the fetch fails.
    """
    from duo_rtc.config import get_config
    from duo_rtc.ice_servers import resolve_ice_servers

    config = get_config()
    servers = resolve_ice_servers(
        url or config.ice_servers_url,
        announced=[s.to_dict() for s in config.server_ice_servers],
        timeout=config.credential_timeout,
    )

    for server_entry in servers:
        urls = server_entry["urls"]
        urls = ", ".join(urls) if isinstance(urls, list) else urls
        suffix = " (with credentials)" if server_entry.get("username") else ""
        click.echo(f"{urls}{suffix}")


@cli.command(name="config")
def show_config():
    """Print the resolved configuration as JSON."""
    from duo_rtc.config import get_config

    click.echo(json.dumps(get_config().as_dict(), indent=2))


if __name__ == "__main__":
    cli()
