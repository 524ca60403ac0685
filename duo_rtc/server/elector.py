"""Initiator election and session lifecycle.

When the ready set holds exactly two participants and neither is part of a
session, they are paired into a new Session. The participant whose ``ready``
arrived first becomes the initiator (creates the offer); the other one answers.

Once the ready set grows past two, no pairing action is taken. Participants
that become ready while a session is open are not notified; they wait until a
teardown shrinks the ready set back to two unpaired members.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from duo_rtc.server.registry import ParticipantRegistry

logger = logging.getLogger(__name__)


class SessionState(Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class Session:
    """A pairing of exactly two participants.

    Attributes:
        session_id: Opaque session id.
        initiator: Participant that creates the offer.
        answerer: Participant that answers it.
        state: OPEN until one member leaves.
        created_at: Unix timestamp of the election.
        closed_at: Unix timestamp of the teardown, if closed.
    """

    session_id: str
    initiator: str
    answerer: str
    state: SessionState = SessionState.OPEN
    created_at: float = field(default_factory=time.time)
    closed_at: Optional[float] = None

    @property
    def participants(self) -> List[str]:
        return [self.initiator, self.answerer]

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    def peer_of(self, participant_id: str) -> Optional[str]:
        """Return the other member of the session, or None for non-members."""
        if participant_id == self.initiator:
            return self.answerer
        if participant_id == self.answerer:
            return self.initiator
        return None

    def close(self) -> None:
        if self.is_open:
            self.state = SessionState.CLOSED
            self.closed_at = time.time()


def default_session_id() -> str:
    return f"session-{uuid.uuid4().hex[:8]}"


class InitiatorElector:
    """Pairs ready participants into sessions.

    Args:
        registry: The participant registry. Its lock guards session state too.
        session_id_factory: Callable producing session ids.
    """

    def __init__(
        self,
        registry: ParticipantRegistry,
        session_id_factory: Optional[Callable[[], str]] = None,
    ):
        self.registry = registry
        self._session_id_factory = session_id_factory or default_session_id
        self._sessions: Dict[str, Session] = {}
        self._by_participant: Dict[str, Session] = {}

    def ready(self, participant_id: str) -> Tuple[bool, Optional[Session]]:
        """Mark a participant ready and run the election.

        The readiness mutation and the pool-size check run in one critical
        section, so two concurrent ``ready`` signals cannot both observe a pool
        of one.

        Returns:
            Tuple of (readiness changed, newly created session or None).

        Raises:
            UnknownParticipantError: If the participant is not connected.
        """
        with self.registry.lock:
            changed = self.registry.set_ready(participant_id)
            if not changed:
                return False, None
            return True, self._elect()

    def elect(self) -> Optional[Session]:
        """Run the election without a new ``ready`` signal.

        Called after a teardown, which can leave exactly two unpaired
        participants in the ready set.
        """
        with self.registry.lock:
            return self._elect()

    def _elect(self) -> Optional[Session]:
        ready = self.registry.ready_ids()
        pool = self.unpaired_ready()

        if len(ready) == 2 and pool == ready:
            initiator, answerer = pool
            session = Session(
                session_id=self._session_id_factory(),
                initiator=initiator,
                answerer=answerer,
            )
            self._sessions[session.session_id] = session
            self._by_participant[initiator] = session
            self._by_participant[answerer] = session
            logger.info(f"Two participants ready - starting {session.session_id}")
            logger.info(f"   Initiator: {initiator}")
            logger.info(f"   Answerer: {answerer}")
            return session

        if len(ready) > 2:
            logger.warning(
                f"{len(ready)} participants ready - sessions pair exactly two, "
                "no pairing action taken"
            )
        else:
            logger.info(f"{len(pool)} participant(s) waiting for a peer")
        return None

    def unpaired_ready(self) -> List[str]:
        """Ready participants not in an open session, in readiness order."""
        with self.registry.lock:
            return [
                pid for pid in self.registry.ready_ids() if pid not in self._by_participant
            ]

    def leave(self, participant_id: str) -> Tuple[bool, Optional[Session], Optional[str]]:
        """Disconnect a participant and tear down its session.

        The remaining session member is released back to the unpaired pool: it
        stays connected but must signal ``ready`` again to be paired. Because
        the survivor leaves the ready set too, tearing down a session lowers
        the ready count by two.

        Returns:
            Tuple of (participant removed, closed session or None,
            remaining member or None).
        """
        with self.registry.lock:
            session = self._by_participant.pop(participant_id, None)
            remaining = None
            if session is not None:
                session.close()
                remaining = session.peer_of(participant_id)
                self._by_participant.pop(remaining, None)
                self._sessions.pop(session.session_id, None)
                self.registry.release(remaining)
                logger.info(
                    f"{session.session_id} closed: {participant_id} left, "
                    f"{remaining} released"
                )

            removed = self.registry.disconnect(participant_id)
            return removed, session, remaining

    def session_of(self, participant_id: str) -> Optional[Session]:
        """Return the open session a participant belongs to."""
        with self.registry.lock:
            return self._by_participant.get(participant_id)

    @property
    def active_sessions(self) -> List[Session]:
        with self.registry.lock:
            return list(self._sessions.values())
