"""ICE server resolution for duo-rtc peers.

Peers configure their RTCPeerConnection with STUN/TURN servers before the
negotiation starts. Short-lived TURN credentials come from an external HTTP
endpoint (for example a small service wrapping a provider's token API) that
returns one of:

- ``{"iceServers": [...]}``      (browser RTCConfiguration shape)
- ``{"ice_servers": [...]}``     (provider token shape)
- ``[...]``                      (bare list)

Each descriptor carries ``urls`` (or legacy ``url``) and optionally
``username`` / ``credential``.

A failed fetch never blocks negotiation: the peer falls back to the servers
announced by the signaling server, and then to a public STUN-only set.
"""

from typing import Any, Dict, List, Optional

import requests
from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection
from loguru import logger

from duo_rtc.config import IceServerConfig
from duo_rtc.exceptions import CredentialFetchError

DEFAULT_ICE_SERVERS: List[Dict[str, Any]] = [
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:stun1.l.google.com:19302"},
]


def normalize_ice_servers(entries) -> List[Dict[str, Any]]:
    """Normalize descriptors into RTCIceServer keyword dictionaries.

    Invalid entries are skipped with a warning.

    Args:
        entries: Iterable of descriptor dictionaries.

    Returns:
        List of dictionaries with ``urls`` and optional ``username``/``credential``.
    """
    servers = []
    for entry in entries or []:
        if not isinstance(entry, dict):
            logger.warning(f"Skipping invalid ICE server descriptor: {entry!r}")
            continue
        try:
            servers.append(IceServerConfig.from_dict(entry).to_dict())
        except ValueError as e:
            logger.warning(f"Skipping invalid ICE server descriptor: {e}")
    return servers


def fetch_ice_servers(url: str, timeout: float = 5.0) -> List[Dict[str, Any]]:
    """Fetch ICE server descriptors from an HTTP endpoint.

    Args:
        url: Credential endpoint URL.
        timeout: Request timeout in seconds.

    Returns:
        Normalized descriptor list (may be empty).

    Raises:
        CredentialFetchError: On network errors, non-200 responses or
            malformed bodies.
    """
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise CredentialFetchError(f"Request to {url} failed: {e}") from e

    if response.status_code != 200:
        raise CredentialFetchError(
            f"Credential endpoint returned HTTP {response.status_code}: {response.text[:200]}"
        )

    try:
        data = response.json()
    except ValueError as e:
        raise CredentialFetchError(f"Credential endpoint returned invalid JSON: {e}") from e

    if isinstance(data, dict):
        entries = data.get("iceServers", data.get("ice_servers"))
    else:
        entries = data

    if not isinstance(entries, list):
        raise CredentialFetchError("Credential response has no ICE server list")

    return normalize_ice_servers(entries)


def resolve_ice_servers(
    url: Optional[str] = None,
    announced: Optional[List[Dict[str, Any]]] = None,
    timeout: float = 5.0,
) -> List[Dict[str, Any]]:
    """Resolve the ICE servers a peer should use.

    Resolution order:
    1. Servers fetched from ``url`` (if configured and the fetch succeeds)
    2. Servers announced by the signaling server at registration
    3. DEFAULT_ICE_SERVERS (STUN only, no relay)

    Args:
        url: Optional credential endpoint.
        announced: Servers received in the ``registered`` message.
        timeout: Credential request timeout in seconds.

    Returns:
        Non-empty list of normalized descriptors.
    """
    if url:
        try:
            servers = fetch_ice_servers(url, timeout=timeout)
            if servers:
                logger.info(f"Fetched {len(servers)} ICE server(s) from {url}")
                return servers
            logger.warning(f"Credential endpoint {url} returned no ICE servers")
        except CredentialFetchError as e:
            logger.warning(f"Failed to fetch ICE servers, continuing without relay: {e}")

    servers = normalize_ice_servers(announced)
    if servers:
        logger.info(f"Using {len(servers)} ICE server(s) from signaling server")
        return servers

    logger.info("Using default STUN servers")
    return [dict(server) for server in DEFAULT_ICE_SERVERS]


def create_peer_connection(ice_servers: List[Dict[str, Any]]) -> RTCPeerConnection:
    """Create an RTCPeerConnection configured with the given ICE servers.

    Args:
        ice_servers: Normalized descriptors from resolve_ice_servers.

    Returns:
        RTCPeerConnection configured with the ICE servers.
    """
    if ice_servers:
        ice_server_objects = [RTCIceServer(**server) for server in ice_servers]
        config = RTCConfiguration(iceServers=ice_server_objects)
        logger.info(f"Creating RTCPeerConnection with {len(ice_server_objects)} ICE server(s)")
        return RTCPeerConnection(configuration=config)

    logger.warning("No ICE servers configured, using default RTCPeerConnection")
    return RTCPeerConnection()
