from dataclasses import dataclass
from typing import Dict, List, Tuple

from errors import UnknownParticipantError


@dataclass
class Participant:
    id: str
    ready: bool = False
    connected: bool = True


class ReadyRegistry:
    """Readiness bookkeeping for the participants of one room.

    Plain data: nothing here evaluates the quorum, callers re-evaluate
    after every mutation. Disconnected participants are removed, so the
    number of entries is always the number of connected participants.
    """

    def __init__(self):
        self._participants: Dict[str, Participant] = {}

    def upsert_participant(self, participant_id: str) -> Participant:
        """Add a participant, or return the existing entry unchanged"""
        participant = self._participants.get(participant_id)
        if participant is None:
            participant = Participant(id=participant_id)
            self._participants[participant_id] = participant
        return participant

    def remove_participant(self, participant_id: str) -> bool:
        """Remove a participant, return True if it was present"""
        return self._participants.pop(participant_id, None) is not None

    def set_ready(self, participant_id: str, ready: bool) -> bool:
        """Set the ready flag, return True if it changed"""
        participant = self._participants.get(participant_id)
        if participant is None:
            raise UnknownParticipantError(participant_id)
        changed = participant.ready != ready
        participant.ready = ready
        return changed

    def is_ready(self, participant_id: str) -> bool:
        participant = self._participants.get(participant_id)
        if participant is None:
            raise UnknownParticipantError(participant_id)
        return participant.ready

    def snapshot(self) -> Tuple[int, int]:
        """Return (ready_count, total_connected)"""
        ready_count = sum(1 for p in self._participants.values() if p.ready)
        return ready_count, len(self._participants)

    def participant_ids(self) -> List[str]:
        return list(self._participants)

    def clear(self):
        self._participants.clear()

    def __contains__(self, participant_id) -> bool:
        return participant_id in self._participants

    def __len__(self) -> int:
        return len(self._participants)
