"""Exception types for duo-rtc."""


class DuoRTCError(Exception):
    """Base class for all duo-rtc errors."""


class ProtocolError(DuoRTCError):
    """A signaling frame could not be decoded or is missing required fields."""


class UnknownParticipantError(DuoRTCError):
    """An operation referenced a participant id that is not connected."""

    def __init__(self, participant_id: str):
        super().__init__(f"Unknown participant: {participant_id}")
        self.participant_id = participant_id


class RegistrationError(DuoRTCError):
    """The signaling server did not acknowledge the connection."""


class CredentialFetchError(DuoRTCError):
    """ICE server credentials could not be fetched or parsed."""
