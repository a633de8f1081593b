import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Callable, Optional

from config import MatchmakingConfig
from errors import ConnectionFailure
from events import EventBus, EventType, StatusEvent
from scheduler import TimerHandle

logger = logging.getLogger(__name__)


def generate_server_id() -> int:
    """Random nonzero 63-bit id used to recognise our own advertisements"""
    value = secrets.randbits(63)
    return value if value != 0 else 1


_process_server_id: Optional[int] = None


def process_server_id() -> int:
    """The server id of this process, generated on first use"""
    global _process_server_id
    if _process_server_id is None:
        _process_server_id = generate_server_id()
    return _process_server_id


@dataclass(frozen=True)
class HostDescriptor:
    address: str
    name: str
    server_id: int


@dataclass
class DiscoverySession:
    generation: int
    server_id: int
    search_deadline: float
    found_host: Optional[HostDescriptor] = None
    deadline_passed: bool = False


class DiscoveryState(Enum):
    IDLE = "IDLE"
    SEARCHING = "SEARCHING"
    CONNECTING = "CONNECTING"
    JOINED = "JOINED"
    TIMED_OUT = "TIMED_OUT"
    SELF_HOSTING = "SELF_HOSTING"


class MatchTransport:
    """What the discovery coordinator needs from the network layer.

    Handlers registered here may be called from any thread; the
    coordinator re-posts them onto its scheduler. Passing None removes
    a handler.
    """

    def on_discovery_response(self, handler: Optional[Callable[[HostDescriptor], None]]):
        raise NotImplementedError

    def on_connection_state(self, handler: Optional[Callable[[bool, str], None]]):
        """handler(True, "") once joined, handler(False, reason) on rejection or loss"""
        raise NotImplementedError

    def start_listening(self):
        raise NotImplementedError

    def stop_listening(self):
        raise NotImplementedError

    def broadcast_discovery_request(self):
        raise NotImplementedError

    def connect(self, address: str) -> bool:
        """Start joining a host; False or ConnectionFailure if it fails right away"""
        raise NotImplementedError

    def disconnect(self):
        raise NotImplementedError

    def start_as_host(self):
        raise NotImplementedError

    def stop_host(self):
        raise NotImplementedError

    def start_advertising(self, server_id: int, server_name: str):
        raise NotImplementedError

    def stop_advertising(self):
        raise NotImplementedError

    def is_host(self) -> bool:
        raise NotImplementedError

    def is_client(self) -> bool:
        raise NotImplementedError

    def is_connected(self) -> bool:
        raise NotImplementedError

    def local_address(self) -> str:
        """Room locator other peers would use to join us when we host"""
        raise NotImplementedError


class DiscoveryCoordinator:
    """Find a host on the LAN within a time window, or become the host.

    IDLE -> SEARCHING -> CONNECTING -> JOINED
                      -> TIMED_OUT -> SELF_HOSTING

    Only one session is active at a time. Two peers that time out
    together both self-promote; that split is left to the caller, which
    can compare HostDescriptor.server_id values.
    """

    def __init__(self, config: MatchmakingConfig, transport: MatchTransport, scheduler,
                 events: Optional[EventBus] = None, server_id: Optional[int] = None):
        self.config = config.normalized()
        self.transport = transport
        self.events = events if events is not None else EventBus()
        self.server_id = server_id if server_id is not None else process_server_id()
        self.state = DiscoveryState.IDLE
        self.session: Optional[DiscoverySession] = None
        self.host: Optional[HostDescriptor] = None
        self._scheduler = scheduler
        self._generation = 0
        self._deadline_handle: Optional[TimerHandle] = None
        self._broadcast_handle: Optional[TimerHandle] = None
        self._connect_timeout_handle: Optional[TimerHandle] = None

    # -------------------- Public API -------------------- #

    def begin(self) -> bool:
        """Start matchmaking, return False if a session or role already exists"""
        if self.state in (DiscoveryState.SEARCHING, DiscoveryState.CONNECTING):
            logger.debug("Matchmaking already in progress (%s)", self.state.value)
            return False
        if (self.state is not DiscoveryState.IDLE
                or self.transport.is_host() or self.transport.is_connected()):
            logger.warning("Role conflict: cannot search while %s", self._role_name())
            return False

        self._generation += 1
        generation = self._generation
        window = self.config.discovery_window
        self.session = DiscoverySession(generation=generation,
                                        server_id=self.server_id,
                                        search_deadline=self._scheduler.now() + window)
        self.host = None
        self.transport.on_discovery_response(partial(self._post, self._handle_response, generation))
        self.transport.on_connection_state(partial(self._post, self._handle_connection_state, generation))

        logger.info("Searching for a host for %.1fs (server id %x)", window, self.server_id)
        self.state = DiscoveryState.SEARCHING
        self.events.publish(StatusEvent(EventType.SEARCH_STARTED))
        self._deadline_handle = self._scheduler.call_later(window, self._on_deadline, generation)
        self._start_search(generation)
        return True

    def cancel(self) -> bool:
        """Undo whatever the session did and go back to IDLE; no-op when idle"""
        if self.state is DiscoveryState.IDLE:
            return False

        previous = self.state
        self._generation += 1  # invalidates callbacks already queued
        self._cancel_timers()
        self._stop_search()
        if previous in (DiscoveryState.CONNECTING, DiscoveryState.JOINED):
            self.transport.disconnect()
        elif previous is DiscoveryState.SELF_HOSTING:
            self.transport.stop_advertising()
            self.transport.stop_host()
        self.transport.on_discovery_response(None)
        self.transport.on_connection_state(None)

        self.state = DiscoveryState.IDLE
        self.session = None
        self.host = None
        logger.info("Matchmaking cancelled (was %s)", previous.value)
        self.events.publish(StatusEvent(EventType.CANCELLED))
        return True

    # -------------------- Callback plumbing -------------------- #

    def _post(self, handler: Callable, generation: int, *args):
        self._scheduler.call_soon(self._deliver, handler, generation, args)

    def _deliver(self, handler: Callable, generation: int, args: tuple):
        if generation != self._generation:
            logger.debug("Stale callback %s discarded", getattr(handler, "__name__", handler))
            return
        handler(*args)

    # -------------------- Searching -------------------- #

    def _start_search(self, generation: int):
        try:
            self.transport.start_listening()
        except ConnectionFailure as e:
            # No responses can arrive, so the deadline decides
            logger.warning("Could not listen for hosts: %s", e)
        self._broadcast(generation)

    def _broadcast(self, generation: int):
        self._broadcast_handle = None
        if generation != self._generation or self.state is not DiscoveryState.SEARCHING:
            return
        try:
            self.transport.broadcast_discovery_request()
        except ConnectionFailure as e:
            logger.warning("Discovery broadcast failed: %s", e)
        self._broadcast_handle = self._scheduler.call_later(
            self.config.broadcast_interval, self._broadcast, generation)

    def _stop_search(self):
        if self._broadcast_handle is not None:
            self._broadcast_handle.cancel()
            self._broadcast_handle = None
        self.transport.stop_listening()

    def _handle_response(self, host: HostDescriptor):
        if self.state is not DiscoveryState.SEARCHING:
            logger.debug("Ignoring response from %s while %s", host.address, self.state.value)
            return
        if host.server_id == self.server_id:
            logger.debug("Ignoring our own advertisement")
            return

        logger.info("Found host '%s' at %s", host.name, host.address)
        self.session.found_host = host
        self._stop_search()
        self.state = DiscoveryState.CONNECTING
        self.events.publish(StatusEvent(EventType.CONNECTING, host=host.address))

        try:
            started = self.transport.connect(host.address)
            reason = "" if started else "connect refused"
        except ConnectionFailure as e:
            started, reason = False, str(e)
        if not started:
            self._connection_failed(reason)
            return
        self._connect_timeout_handle = self._scheduler.call_later(
            self.config.connect_timeout, self._on_connect_timeout, self._generation)

    # -------------------- Connecting -------------------- #

    def _handle_connection_state(self, connected: bool, reason: str = ""):
        if self.state is DiscoveryState.CONNECTING:
            if connected:
                self._joined()
            else:
                self._connection_failed(reason)
        elif self.state is DiscoveryState.JOINED and not connected:
            logger.warning("Lost connection to host: %s", reason or "disconnected")
            self.cancel()
        else:
            logger.debug("Ignoring connection state %s while %s", connected, self.state.value)

    def _joined(self):
        self._cancel_timers()
        self.host = self.session.found_host
        self.session = None
        self.state = DiscoveryState.JOINED
        logger.info("Joined host at %s", self.host.address)
        self.events.publish(StatusEvent(EventType.JOINED, host=self.host.address))

    def _on_connect_timeout(self, generation: int):
        self._connect_timeout_handle = None
        if generation != self._generation or self.state is not DiscoveryState.CONNECTING:
            return
        self._connection_failed(f"no answer within {self.config.connect_timeout}s")

    def _connection_failed(self, reason: str):
        host = self.session.found_host
        logger.warning("Connection failure (%s): %s", host.address if host else "?", reason)
        if self._connect_timeout_handle is not None:
            self._connect_timeout_handle.cancel()
            self._connect_timeout_handle = None
        self.transport.disconnect()
        self.session.found_host = None

        if self.config.restart_deadline_on_failure:
            self._restart_deadline()
        elif self.session.deadline_passed:
            self._self_promote()
            return

        self.state = DiscoveryState.SEARCHING
        self.events.publish(StatusEvent(EventType.SEARCH_STARTED))
        self._start_search(self._generation)

    def _restart_deadline(self):
        if self._deadline_handle is not None:
            self._deadline_handle.cancel()
        window = self.config.discovery_window
        self.session.search_deadline = self._scheduler.now() + window
        self.session.deadline_passed = False
        self._deadline_handle = self._scheduler.call_later(window, self._on_deadline, self._generation)
        logger.debug("Search window restarted (%.1fs)", window)

    # -------------------- Self-promotion -------------------- #

    def _on_deadline(self, generation: int):
        self._deadline_handle = None
        if generation != self._generation or self.session is None:
            logger.debug("Stale search deadline discarded")
            return
        self.session.deadline_passed = True
        if self.state is DiscoveryState.SEARCHING:
            self._self_promote()
        else:
            logger.debug("Search window over while %s; waiting for the attempt", self.state.value)

    def _self_promote(self):
        self.state = DiscoveryState.TIMED_OUT
        logger.info("No host found, hosting a new match as '%s'", self.config.server_name)
        self._cancel_timers()
        self._stop_search()  # never search and advertise at once
        try:
            self.transport.start_as_host()
            self.transport.start_advertising(self.server_id, self.config.server_name)
        except ConnectionFailure as e:
            logger.error("Could not start hosting: %s", e)
            self.state = DiscoveryState.SELF_HOSTING  # so cancel() tears the host down
            self.cancel()
            return
        self.session = None
        self.host = HostDescriptor(address=self.transport.local_address(),
                                   name=self.config.server_name, server_id=self.server_id)
        self.state = DiscoveryState.SELF_HOSTING
        self.events.publish(StatusEvent(EventType.HOSTING_STARTED))

    # -------------------- Helpers -------------------- #

    def _cancel_timers(self):
        for name in ("_deadline_handle", "_broadcast_handle", "_connect_timeout_handle"):
            handle = getattr(self, name)
            if handle is not None:
                handle.cancel()
                setattr(self, name, None)

    def _role_name(self) -> str:
        if self.state is DiscoveryState.SELF_HOSTING or self.transport.is_host():
            return "hosting"
        return "connected to a host"
