import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class EventType(Enum):
    SEARCH_STARTED = "SEARCH_STARTED"
    CONNECTING = "CONNECTING"
    JOINED = "JOINED"
    HOSTING_STARTED = "HOSTING_STARTED"
    CANCELLED = "CANCELLED"
    QUEUE_STATUS = "QUEUE_STATUS"
    READY_STATE_CHANGED = "READY_STATE_CHANGED"
    COUNTDOWN_TICK = "COUNTDOWN_TICK"
    COUNTDOWN_CANCELLED = "COUNTDOWN_CANCELLED"
    MATCH_START = "MATCH_START"


@dataclass(frozen=True)
class StatusEvent:
    type: EventType
    ready_count: Optional[int] = None
    required: Optional[int] = None
    seconds: Optional[int] = None
    participant_id: Optional[str] = None
    ready: Optional[bool] = None
    host: Optional[str] = None


Observer = Callable[[StatusEvent], None]


class EventBus:
    """Observer list owned by one coordinator.

    Events are delivered synchronously, in the order they were published,
    to every observer subscribed at publish time.
    """

    def __init__(self):
        self._observers: List[Observer] = []

    def subscribe(self, observer: Observer) -> Observer:
        if observer not in self._observers:
            self._observers.append(observer)
        return observer

    def unsubscribe(self, observer: Observer):
        if observer in self._observers:
            self._observers.remove(observer)

    def clear(self):
        self._observers.clear()

    def publish(self, event: StatusEvent):
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                logger.exception("Observer %r failed on %s", observer, event.type.value)

    def __len__(self):
        return len(self._observers)
