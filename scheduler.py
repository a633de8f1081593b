import heapq
import itertools
import logging
import queue
import threading
import time
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class TimerHandle:
    """A scheduled callback that can be cancelled until it runs"""

    def __init__(self, when: float, callback: Callable, args: tuple):
        self.when = when
        self.cancelled = False
        self._callback = callback
        self._args = args

    def cancel(self):
        self.cancelled = True

    def _run(self):
        if self.cancelled:
            return
        self.cancelled = True  # single shot
        try:
            self._callback(*self._args)
        except Exception:
            logger.exception("Scheduled callback %r failed", self._callback)


class ManualScheduler:
    """Logical clock that only moves when advance() is called.

    Callbacks due at the same time run in the order they were scheduled.
    Callbacks scheduled while advancing run in the same advance() if they
    fall due before its end.
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._heap: List[Tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable, *args) -> TimerHandle:
        handle = TimerHandle(self._now + max(0.0, delay), callback, args)
        heapq.heappush(self._heap, (handle.when, next(self._seq), handle))
        return handle

    def call_soon(self, callback: Callable, *args) -> TimerHandle:
        return self.call_later(0.0, callback, *args)

    def advance(self, seconds: float = 0.0):
        target = self._now + seconds
        while self._heap and self._heap[0][0] <= target:
            when, _, handle = heapq.heappop(self._heap)
            self._now = max(self._now, when)
            handle._run()
        self._now = target

    def pending(self) -> int:
        """Number of callbacks still waiting to run"""
        return sum(1 for _, _, h in self._heap if not h.cancelled)


class ThreadedScheduler:
    """Single worker thread that runs every callback in due-time order.

    call_soon()/call_later() may be used from any thread; this is the queue
    network threads use to hand events to the coordinators, so coordinator
    state is only ever touched from the worker thread.
    """

    def __init__(self, name: str = "matchmaking-loop"):
        self.name = name
        self._inbox: "queue.Queue[Optional[TimerHandle]]" = queue.Queue()
        self._heap: List[Tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()
        self._running = False
        self._thread: Optional[threading.Thread] = None

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable, *args) -> TimerHandle:
        handle = TimerHandle(self.now() + max(0.0, delay), callback, args)
        self._inbox.put(handle)
        return handle

    def call_soon(self, callback: Callable, *args) -> TimerHandle:
        return self.call_later(0.0, callback, *args)

    def in_loop_thread(self) -> bool:
        return self._thread is not None and threading.current_thread() is self._thread

    def start(self):
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._run_loop, name=self.name, daemon=True)
        self._thread.start()
        logger.debug("Scheduler %s started", self.name)

    def stop(self, timeout: float = 1.0):
        if not self._running:
            return
        self._running = False
        self._inbox.put(None)  # wake the worker
        if self._thread and not self.in_loop_thread():
            self._thread.join(timeout=timeout)
        logger.debug("Scheduler %s stopped", self.name)

    def join(self, timeout: Optional[float] = None):
        """Wait for the worker thread to finish"""
        if self._thread and not self.in_loop_thread():
            self._thread.join(timeout=timeout)

    def _run_loop(self):
        while self._running:
            timeout = None
            if self._heap:
                timeout = max(0.0, self._heap[0][0] - self.now())
            try:
                item = self._inbox.get(timeout=timeout)
                self._push(item)
                while True:
                    self._push(self._inbox.get_nowait())
            except queue.Empty:
                pass

            now = self.now()
            while self._running and self._heap and self._heap[0][0] <= now:
                _, _, handle = heapq.heappop(self._heap)
                handle._run()

    def _push(self, handle: Optional[TimerHandle]):
        if handle is None or handle.cancelled:
            return
        heapq.heappush(self._heap, (handle.when, next(self._seq), handle))
