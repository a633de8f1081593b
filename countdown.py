import logging
import math
from enum import Enum
from typing import Callable, Optional

from scheduler import TimerHandle

logger = logging.getLogger(__name__)


class CountdownState(Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    COMMITTED = "COMMITTED"
    CANCELLED = "CANCELLED"


def _noop(*args):
    pass


class CountdownSequencer:
    """Single-shot, cancellable countdown with one-second resolution.

    start() ticks ceil(duration), ..., 1, 0 one second apart (the first
    tick fires immediately), then calls on_commit once. It does not look
    at quorum state; the owner cancels it when the quorum is lost.

    Callbacks never run after cancel(): the pending timer is cancelled and
    every tick also checks the generation it was scheduled under.
    """

    def __init__(self, scheduler):
        self._scheduler = scheduler
        self.state = CountdownState.IDLE
        self.remaining: Optional[int] = None
        self._generation = 0
        self._handle: Optional[TimerHandle] = None
        self._on_tick: Callable[[int], None] = _noop
        self._on_commit: Callable[[], None] = _noop
        self._on_cancel: Callable[[], None] = _noop

    @property
    def running(self) -> bool:
        return self.state is CountdownState.RUNNING

    def start(self, duration: float,
              on_tick: Callable[[int], None],
              on_commit: Callable[[], None],
              on_cancel: Callable[[], None]):
        if self.state is not CountdownState.IDLE:
            raise RuntimeError(f"Countdown already used (state={self.state.value})")
        self._on_tick = on_tick
        self._on_commit = on_commit
        self._on_cancel = on_cancel
        self.state = CountdownState.RUNNING
        self._generation += 1
        seconds = math.ceil(max(0.0, duration))
        logger.debug("Countdown started at %ss", seconds)
        self._step(seconds, self._generation)

    def cancel(self) -> bool:
        """Stop before reaching zero, return True if this call cancelled it"""
        if self.state is not CountdownState.RUNNING:
            return False
        self.state = CountdownState.CANCELLED
        self._generation += 1
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        logger.debug("Countdown cancelled at %ss", self.remaining)
        self._on_cancel()
        return True

    def _step(self, seconds: int, generation: int):
        self._handle = None
        if self.state is not CountdownState.RUNNING or generation != self._generation:
            logger.debug("Discarding stale countdown tick (%ss)", seconds)
            return

        self.remaining = seconds
        self._on_tick(seconds)
        if self.state is not CountdownState.RUNNING:
            return  # cancelled from inside on_tick

        if seconds <= 0:
            self.state = CountdownState.COMMITTED
            logger.debug("Countdown committed")
            self._on_commit()
            return

        self._handle = self._scheduler.call_later(1.0, self._step, seconds - 1, generation)
