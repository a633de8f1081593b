import logging
from enum import Enum
from functools import partial
from typing import Callable, Optional

from config import MatchmakingConfig
from countdown import CountdownSequencer
from errors import UnknownParticipantError
from events import EventBus, EventType, StatusEvent
from quorum import QuorumResult, evaluate
from registry import ReadyRegistry

logger = logging.getLogger(__name__)


class RoomState(Enum):
    EMPTY = "EMPTY"
    FORMING = "FORMING"
    QUORATE = "QUORATE"
    MATCH_STARTED = "MATCH_STARTED"


class RoomCoordinator:
    """Host-side lobby: readiness, quorum and the match start countdown.

    Every input event (connect, disconnect, ready change, explicit
    reevaluate) runs the same re-evaluation, which always publishes a
    QUEUE_STATUS event and then starts, keeps or cancels the countdown.
    A running countdown is never restarted by readiness churn. All calls
    must come from the scheduler's thread.
    """

    def __init__(self, config: MatchmakingConfig, scheduler,
                 events: Optional[EventBus] = None,
                 is_alive: Optional[Callable[[str], bool]] = None):
        self.config = config.normalized()
        self.events = events if events is not None else EventBus()
        self.registry = ReadyRegistry()
        self.state = RoomState.EMPTY
        self._scheduler = scheduler
        self._is_alive = is_alive
        self._countdown: Optional[CountdownSequencer] = None
        self._evaluation_count = 0

    @property
    def countdown_running(self) -> bool:
        return self._countdown is not None and self._countdown.running

    # -------------------- Input events -------------------- #

    def on_participant_connected(self, participant_id: str) -> bool:
        """Register a participant, return False if the room refuses it"""
        if participant_id not in self.registry:
            if self.state is RoomState.MATCH_STARTED:
                logger.warning("Rejecting %s: match already started", participant_id)
                return False
            if len(self.registry) >= self.config.max_participants:
                logger.warning("Rejecting %s: room is full (%d)",
                               participant_id, self.config.max_participants)
                return False
        self.registry.upsert_participant(participant_id)
        logger.info("Participant connected: %s", participant_id)
        self.reevaluate()
        return True

    def on_participant_disconnected(self, participant_id: str):
        if self.registry.remove_participant(participant_id):
            logger.info("Participant disconnected: %s", participant_id)
        else:
            logger.debug("Disconnect for unknown participant %s", participant_id)
        self.reevaluate()

    def on_ready_changed(self, participant_id: str, ready: bool) -> bool:
        """Apply a participant's own ready request, return False if unknown"""
        try:
            changed = self.registry.set_ready(participant_id, ready)
        except UnknownParticipantError as e:
            logger.warning("Ignoring ready change: %s", e)
            return False
        if changed:
            self.events.publish(StatusEvent(EventType.READY_STATE_CHANGED,
                                            participant_id=participant_id, ready=ready))
        self.reevaluate()
        return True

    def toggle_ready(self, participant_id: str) -> bool:
        try:
            current = self.registry.is_ready(participant_id)
        except UnknownParticipantError as e:
            logger.warning("Ignoring ready toggle: %s", e)
            return False
        return self.on_ready_changed(participant_id, not current)

    def reevaluate(self) -> QuorumResult:
        self._prune_dead()
        result = self._evaluate()
        self._evaluation_count += 1
        logger.debug("Evaluation #%d - ready=%d, total=%d, required=%d, status=%s",
                     self._evaluation_count, result.ready_count, result.total_connected,
                     result.required, result.status.value)

        self.events.publish(StatusEvent(EventType.QUEUE_STATUS,
                                        ready_count=result.ready_count,
                                        required=result.required))

        if result.total_connected == 0:
            self._cancel_countdown()
            self.state = RoomState.EMPTY
            return result

        if self.state is RoomState.MATCH_STARTED:
            return result

        if result.satisfied:
            if self._countdown is None:
                self._start_countdown()
            else:
                logger.debug("Countdown already running")
        else:
            self._cancel_countdown()
            self.state = RoomState.FORMING
        return result

    def status(self) -> QuorumResult:
        """Current quorum result, without publishing or acting on it"""
        return self._evaluate()

    def shutdown(self):
        """Stop hosting: cancel the countdown and forget every participant"""
        logger.info("Room shutting down")
        self._cancel_countdown()
        self.registry.clear()
        self.state = RoomState.EMPTY

    # -------------------- Internals -------------------- #

    def _evaluate(self) -> QuorumResult:
        ready_count, total = self.registry.snapshot()
        return evaluate(ready_count, total,
                        self.config.players_per_match, self.config.require_all_ready)

    def _prune_dead(self) -> int:
        if self._is_alive is None:
            return 0
        dead = [pid for pid in self.registry.participant_ids() if not self._is_alive(pid)]
        for pid in dead:
            logger.info("Dropping participant %s: connection is gone", pid)
            self.registry.remove_participant(pid)
        return len(dead)

    def _start_countdown(self):
        countdown = CountdownSequencer(self._scheduler)
        self._countdown = countdown
        self.state = RoomState.QUORATE
        logger.info("Quorum reached, match starts in %ss", self.config.match_start_delay)
        countdown.start(self.config.match_start_delay,
                        on_tick=partial(self._on_tick, countdown),
                        on_commit=partial(self._on_commit, countdown),
                        on_cancel=partial(self._on_cancelled, countdown))

    def _cancel_countdown(self):
        countdown = self._countdown
        if countdown is None:
            return
        countdown.cancel()
        self._countdown = None

    def _on_tick(self, countdown: CountdownSequencer, seconds: int):
        if countdown is not self._countdown:
            logger.debug("Stale countdown tick discarded")
            return
        if self._prune_dead():
            self.reevaluate()
            if not countdown.running:
                return
        self.events.publish(StatusEvent(EventType.COUNTDOWN_TICK, seconds=seconds))

    def _on_commit(self, countdown: CountdownSequencer):
        if countdown is not self._countdown:
            logger.debug("Stale countdown commit discarded")
            return
        self._countdown = None

        # A tick interval may have passed since the last check
        self._prune_dead()
        result = self._evaluate()
        if result.satisfied:
            logger.info("Requirements still met, starting match (%d/%d ready)",
                        result.ready_count, result.total_connected)
            self.state = RoomState.MATCH_STARTED
            self.events.publish(StatusEvent(EventType.MATCH_START,
                                            ready_count=result.ready_count,
                                            required=result.required))
        else:
            logger.warning("Requirements failed during countdown, aborting")
            self.events.publish(StatusEvent(EventType.COUNTDOWN_CANCELLED))
            self.state = RoomState.FORMING
            self.reevaluate()

    def _on_cancelled(self, countdown: CountdownSequencer):
        if countdown is not self._countdown:
            logger.debug("Stale countdown cancel discarded")
            return
        logger.info("Countdown cancelled, quorum lost")
        self.events.publish(StatusEvent(EventType.COUNTDOWN_CANCELLED))
