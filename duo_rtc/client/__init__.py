"""Client side of duo-rtc: the connection state machine and its transport."""

from duo_rtc.client.candidate_buffer import CandidateBuffer
from duo_rtc.client.connection import (
    ConnectionState,
    ConnectionStateMachine,
    InboundStream,
    Role,
)

__all__ = [
    "CandidateBuffer",
    "ConnectionState",
    "ConnectionStateMachine",
    "InboundStream",
    "Role",
]
