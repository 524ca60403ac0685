"""Server side of duo-rtc: registry, initiator election, relay and signaling."""

from duo_rtc.server.elector import InitiatorElector, Session, SessionState
from duo_rtc.server.registry import ParticipantRegistry
from duo_rtc.server.relay import NegotiationRelay
from duo_rtc.server.signaling_server import SignalingServer

__all__ = [
    "InitiatorElector",
    "NegotiationRelay",
    "ParticipantRegistry",
    "Session",
    "SessionState",
    "SignalingServer",
]
