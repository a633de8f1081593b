class MatchmakingError(Exception):
    """Base class for lobby errors"""


class ConfigurationError(MatchmakingError):
    """Unknown option or a value that cannot be coerced"""


class ConnectionFailure(MatchmakingError):
    """Joining a discovered host did not work"""

    def __init__(self, address: str, reason: str = ""):
        self.address = address
        self.reason = reason
        message = f"Could not connect to {address}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class UnknownParticipantError(MatchmakingError, KeyError):
    """Readiness change for a participant that is not in the room"""

    def __init__(self, participant_id: str):
        self.participant_id = participant_id
        super().__init__(participant_id)

    def __str__(self):
        return f"Unknown participant: {self.participant_id}"
