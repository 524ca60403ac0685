"""Signaling protocol definitions for duo-rtc.

This module defines the messages exchanged between participants and the
signaling server over the websocket connection.

Wire Format
-----------

Every websocket text frame carries exactly one JSON object. The ``type`` field
selects the message kind; the remaining fields depend on the kind.

Message Types
-------------

### Server → Participant

**registered**
    Sent once, right after the websocket is accepted.
    Fields: ``participant_id`` (str), ``ice_servers`` (list)
    Example: {"type": "registered", "participant_id": "4f1c9a0b2d3e", "ice_servers": []}

**connected-count** / **ready-count**
    Sent to every participant after each registry mutation.
    Fields: ``count`` (int)
    Example: {"type": "ready-count", "count": 2}

**start-session**
    Sent to both members of a newly formed session.
    Fields: ``initiator`` (str), ``session_id`` (str), ``participants`` (list)
    Example: {"type": "start-session", "initiator": "a1", "session_id": "s-1",
              "participants": ["a1", "b1"]}

**offer** / **answer** / **candidate**
    Relayed negotiation message from the session peer.
    Fields: ``payload`` (object, opaque to the server), ``from`` (str)
    Example: {"type": "offer", "payload": {"sdp": "v=0...", "type": "offer"},
              "from": "a1"}

**peer-left**
    The session peer disconnected; the session is closed.
    Fields: ``participant`` (str)

**error**
    A frame from the participant was rejected.
    Fields: ``reason`` (str)

### Participant → Server

**ready**
    Local media is acquired and the participant wants to be paired.

**offer** / **answer** / **candidate**
    Negotiation message for the session peer.
    Fields: ``payload`` (object)

Disconnection is implicit: closing the websocket.

Message Flow
------------

1. A → Server: ready            (Server → all: ready-count 1)
2. B → Server: ready            (Server → all: ready-count 2)
3. Server → A, B: start-session {initiator: A}
4. A → Server: offer            Server → B: offer {from: A}
5. B → Server: answer           Server → A: answer {from: B}
6. A ⇄ Server ⇄ B: candidate    (any time after step 3, any interleaving)
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from aiortc import RTCIceCandidate
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from duo_rtc.exceptions import ProtocolError

# Server → participant
MSG_REGISTERED = "registered"
MSG_CONNECTED_COUNT = "connected-count"
MSG_READY_COUNT = "ready-count"
MSG_START_SESSION = "start-session"
MSG_PEER_LEFT = "peer-left"
MSG_ERROR = "error"

# Participant → server
MSG_READY = "ready"

# Both directions (relayed)
MSG_OFFER = "offer"
MSG_ANSWER = "answer"
MSG_CANDIDATE = "candidate"

NEGOTIATION_TYPES = (MSG_OFFER, MSG_ANSWER, MSG_CANDIDATE)

CANDIDATE_PREFIX = "candidate:"


def format_message(msg_type: str, **fields) -> str:
    """Format a signaling message as a JSON frame.

    Args:
        msg_type: The message type constant (e.g., MSG_OFFER).
        **fields: Message fields. ``from_`` is written as ``from``.

    Returns:
        JSON-encoded message string.

    Examples:
        >>> format_message(MSG_READY_COUNT, count=2)
        '{"type": "ready-count", "count": 2}'

        >>> format_message(MSG_READY)
        '{"type": "ready"}'
    """
    message = {"type": msg_type}
    for key, value in fields.items():
        message["from" if key == "from_" else key] = value
    return json.dumps(message)


def parse_message(raw) -> Dict[str, Any]:
    """Parse a signaling frame into a message dictionary.

    Args:
        raw: The websocket frame (str or bytes).

    Returns:
        The decoded message. Always contains a string ``type``.

    Raises:
        ProtocolError: If the frame is not a JSON object with a ``type``.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Frame is not valid UTF-8: {e}") from e

    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Invalid JSON frame: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError("Frame must be a JSON object")

    msg_type = data.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise ProtocolError("Frame is missing a message type")

    return data


@dataclass
class NegotiationMessage:
    """An offer, answer or candidate travelling between the two participants.

    Attributes:
        kind: One of MSG_OFFER, MSG_ANSWER, MSG_CANDIDATE.
        payload: Opaque negotiation blob. Never inspected by the server.
        sender: Participant id of the originator.
    """

    kind: str
    payload: Any = field(default_factory=dict)
    sender: Optional[str] = None

    def __post_init__(self):
        if self.kind not in NEGOTIATION_TYPES:
            raise ProtocolError(f"Not a negotiation message type: {self.kind}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any], sender: Optional[str] = None) -> "NegotiationMessage":
        """Build a message from a decoded frame.

        Args:
            data: Decoded frame from parse_message.
            sender: Overrides the ``from`` field (the server stamps the sender).

        Returns:
            NegotiationMessage instance.

        Raises:
            ProtocolError: If the frame has no payload.
        """
        if "payload" not in data:
            raise ProtocolError(f"{data.get('type')} message is missing its payload")
        return cls(
            kind=data.get("type"),
            payload=data["payload"],
            sender=sender if sender is not None else data.get("from"),
        )

    def to_wire(self) -> str:
        """Encode as a relayed frame (with ``from``)."""
        return format_message(self.kind, payload=self.payload, from_=self.sender)


def description_to_payload(description) -> Dict[str, str]:
    """Convert an RTCSessionDescription into a wire payload."""
    return {"sdp": description.sdp, "type": description.type}


def candidate_from_payload(payload: Dict[str, Any]) -> Optional[RTCIceCandidate]:
    """Convert a wire candidate payload into an aiortc candidate.

    The payload uses the browser ``RTCIceCandidateInit`` shape:
    ``{"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}``.

    Returns:
        RTCIceCandidate, or None for an end-of-candidates marker.

    Raises:
        ProtocolError: If the candidate line cannot be parsed.
    """
    if not isinstance(payload, dict):
        raise ProtocolError("Candidate payload must be an object")

    line = payload.get("candidate") or ""
    if not line:
        return None
    if line.startswith(CANDIDATE_PREFIX):
        line = line[len(CANDIDATE_PREFIX):]

    try:
        candidate = candidate_from_sdp(line)
    except (AssertionError, ValueError, IndexError) as e:
        # aiortc asserts on short candidate lines
        raise ProtocolError(f"Invalid candidate line: {payload.get('candidate')!r}") from e

    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


def candidate_to_payload(candidate: RTCIceCandidate) -> Dict[str, Any]:
    """Convert an aiortc candidate into a wire payload."""
    return {
        "candidate": CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }
