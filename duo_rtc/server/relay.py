"""Negotiation relay.

Forwards offer/answer/candidate messages from a participant to the other
member of its session, stamped with the sender id. Payloads are never
inspected. Nothing is buffered: a message from a participant without an open
session is dropped.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from duo_rtc.protocol import NegotiationMessage
from duo_rtc.server.elector import InitiatorElector

logger = logging.getLogger(__name__)

Deliver = Callable[[str, str], Awaitable[bool]]


class NegotiationRelay:
    """Routes negotiation messages by session membership.

    Args:
        elector: Source of session membership.
        deliver: Coroutine ``deliver(participant_id, frame) -> bool`` that
            writes a frame to a participant's connection.
    """

    def __init__(self, elector: InitiatorElector, deliver: Deliver):
        self.elector = elector
        self._deliver = deliver
        self.forwarded = 0
        self.dropped = 0

    def target_for(self, sender_id: str) -> Optional[str]:
        """Return the participant a sender's messages go to, if any."""
        session = self.elector.session_of(sender_id)
        if session is None:
            return None
        return session.peer_of(sender_id)

    async def forward(self, sender_id: str, data: Dict[str, Any]) -> bool:
        """Forward a decoded negotiation frame to the sender's session peer.

        Args:
            sender_id: Participant the frame came from.
            data: Decoded frame (type, payload).

        Returns:
            True if the frame was handed to the peer's connection.

        Raises:
            ProtocolError: If the frame is not a valid negotiation message.
        """
        message = NegotiationMessage.from_dict(data, sender=sender_id)

        target = self.target_for(sender_id)
        if target is None:
            self.dropped += 1
            logger.warning(
                f"Dropping {message.kind} from {sender_id}: not in an open session"
            )
            return False

        delivered = await self._deliver(target, message.to_wire())
        if delivered:
            self.forwarded += 1
            logger.info(f"Forwarded {message.kind} from {sender_id} to {target}")
        else:
            self.dropped += 1
            logger.warning(f"Could not deliver {message.kind} from {sender_id} to {target}")
        return delivered
