from dataclasses import dataclass
from enum import Enum


class QuorumStatus(Enum):
    NOT_ENOUGH = "NOT_ENOUGH"
    ENOUGH = "ENOUGH"
    ENOUGH_BUT_NOT_ALL = "ENOUGH_BUT_NOT_ALL"


@dataclass(frozen=True)
class QuorumResult:
    status: QuorumStatus
    ready_count: int
    total_connected: int
    required: int  # value shown to observers

    @property
    def satisfied(self) -> bool:
        return self.status is QuorumStatus.ENOUGH


def evaluate(ready_count: int, total_connected: int,
             required_count: int, require_all: bool) -> QuorumResult:
    """Decide whether the ready players are enough to start a match.

    Pure function of its arguments. Only ENOUGH lets a countdown start or
    keep running. The raw threshold is always ``required_count``; with
    ``require_all`` every connected participant must also be ready.
    """
    if total_connected == 0:
        # Keep a stable target on screen while the room is empty
        return QuorumResult(QuorumStatus.NOT_ENOUGH, ready_count, 0, required_count)

    required = total_connected if require_all else required_count
    required = max(0, min(required, max(total_connected, required_count)))

    enough_ready = ready_count >= required_count
    everyone_ready = ready_count == total_connected

    if not enough_ready:
        status = QuorumStatus.NOT_ENOUGH
    elif require_all and not everyone_ready:
        status = QuorumStatus.ENOUGH_BUT_NOT_ALL
    else:
        status = QuorumStatus.ENOUGH
    return QuorumResult(status, ready_count, total_connected, required)
