"""Participant registry for the duo-rtc signaling server.

Tracks which participants are connected and which of them have signaled
readiness. Readiness arrival order is preserved because the initiator election
depends on it.

All mutations go through a single re-entrant lock. The elector takes the same
lock so that a ``ready`` mutation and the pairing decision that follows it form
one critical section.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from duo_rtc.exceptions import UnknownParticipantError

logger = logging.getLogger(__name__)


def default_participant_id() -> str:
    """Generate a fresh opaque participant id."""
    return uuid.uuid4().hex[:12]


@dataclass
class Participant:
    """A connected participant.

    Attributes:
        participant_id: Opaque id assigned at connect time.
        connected_at: Unix timestamp of the connection.
        ready_at: Unix timestamp of the latest ``ready`` signal, if ready.
    """

    participant_id: str
    connected_at: float = field(default_factory=time.time)
    ready_at: Optional[float] = None


class ParticipantRegistry:
    """Connected and ready participant sets.

    Args:
        id_factory: Callable producing candidate ids. Collisions with any id
            issued earlier in the process lifetime are regenerated.
    """

    def __init__(self, id_factory: Optional[Callable[[], str]] = None):
        self.lock = threading.RLock()
        self._id_factory = id_factory or default_participant_id
        self._participants: Dict[str, Participant] = {}
        # Insertion order is readiness arrival order.
        self._ready: Dict[str, float] = {}
        self._issued: Set[str] = set()

    def connect(self) -> str:
        """Register a new connection.

        Returns:
            The new participant id, never reused while the process runs.
        """
        with self.lock:
            participant_id = self._id_factory()
            while participant_id in self._issued:
                logger.debug(f"Participant id collision on {participant_id}, regenerating")
                participant_id = self._id_factory()

            self._issued.add(participant_id)
            self._participants[participant_id] = Participant(participant_id)
            logger.info(
                f"Participant connected: {participant_id} (total: {len(self._participants)})"
            )
            return participant_id

    def disconnect(self, participant_id: str) -> bool:
        """Remove a participant from the connected and ready sets.

        Idempotent: disconnecting an unknown or already removed id is a no-op.

        Returns:
            True if the participant was removed by this call.
        """
        with self.lock:
            if participant_id not in self._participants:
                return False
            del self._participants[participant_id]
            self._ready.pop(participant_id, None)
            logger.info(
                f"Participant disconnected: {participant_id} "
                f"(remaining: {len(self._participants)}, ready: {len(self._ready)})"
            )
            return True

    def set_ready(self, participant_id: str) -> bool:
        """Mark a participant as ready.

        Idempotent: signaling readiness twice has no additional effect.

        Returns:
            True if the participant became ready with this call.

        Raises:
            UnknownParticipantError: If the participant is not connected.
        """
        with self.lock:
            participant = self._participants.get(participant_id)
            if participant is None:
                raise UnknownParticipantError(participant_id)
            if participant_id in self._ready:
                logger.debug(f"Participant {participant_id} already ready")
                return False

            participant.ready_at = time.time()
            self._ready[participant_id] = participant.ready_at
            logger.info(
                f"Participant ready: {participant_id} (total ready: {len(self._ready)})"
            )
            return True

    def release(self, participant_id: str) -> bool:
        """Clear a participant's readiness without disconnecting it.

        Returns:
            True if the participant was ready.
        """
        with self.lock:
            if participant_id not in self._ready:
                return False
            del self._ready[participant_id]
            participant = self._participants.get(participant_id)
            if participant is not None:
                participant.ready_at = None
            logger.info(f"Participant released: {participant_id}")
            return True

    def is_connected(self, participant_id: str) -> bool:
        with self.lock:
            return participant_id in self._participants

    def is_ready(self, participant_id: str) -> bool:
        with self.lock:
            return participant_id in self._ready

    def connected_ids(self) -> List[str]:
        """Connected participant ids in connection order."""
        with self.lock:
            return list(self._participants)

    def ready_ids(self) -> List[str]:
        """Ready participant ids in readiness arrival order."""
        with self.lock:
            return list(self._ready)

    @property
    def connected_count(self) -> int:
        with self.lock:
            return len(self._participants)

    @property
    def ready_count(self) -> int:
        with self.lock:
            return len(self._ready)
