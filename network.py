import json
import logging
import queue
import socket
import threading
import time
from enum import Enum
from typing import Callable, Dict, Optional, Set, Tuple
from urllib.parse import urlsplit

import zmq

from config import MatchmakingConfig
from discovery import HostDescriptor, MatchTransport
from errors import ConnectionFailure
from events import EventBus, EventType, StatusEvent
from room import RoomCoordinator

logger = logging.getLogger(__name__)


class MessageType(Enum):
    DISCOVERY_REQUEST = "DISCOVERY_REQUEST"
    DISCOVERY_RESPONSE = "DISCOVERY_RESPONSE"
    JOIN = "JOIN"
    JOIN_OK = "JOIN_OK"
    JOIN_REJECTED = "JOIN_REJECTED"
    LEAVE = "LEAVE"
    HEARTBEAT = "HEARTBEAT"
    READY_TOGGLE = "READY_TOGGLE"
    READY_STATE_CHANGED = "READY_STATE_CHANGED"
    QUEUE_STATUS = "QUEUE_STATUS"
    COUNTDOWN_TICK = "COUNTDOWN_TICK"
    COUNTDOWN_CANCELLED = "COUNTDOWN_CANCELLED"
    MATCH_START = "MATCH_START"


# Room events the host forwards to every joined client
RELAYED_EVENTS = {
    EventType.QUEUE_STATUS: MessageType.QUEUE_STATUS,
    EventType.READY_STATE_CHANGED: MessageType.READY_STATE_CHANGED,
    EventType.COUNTDOWN_TICK: MessageType.COUNTDOWN_TICK,
    EventType.COUNTDOWN_CANCELLED: MessageType.COUNTDOWN_CANCELLED,
    EventType.MATCH_START: MessageType.MATCH_START,
}
RELAYED_MESSAGES = {m: e for e, m in RELAYED_EVENTS.items()}


def encode(message_type: MessageType, **data) -> bytes:
    return json.dumps({"type": message_type.value, "data": data}).encode("utf-8")


def decode(raw: bytes) -> Tuple[Optional[MessageType], dict]:
    """Parse a wire message; unknown or malformed input gives (None, {})"""
    try:
        message = json.loads(raw.decode("utf-8"))
        message_type = MessageType(message.get("type"))
    except (ValueError, AttributeError):
        return None, {}
    data = message.get("data")
    return message_type, data if isinstance(data, dict) else {}


def event_to_message(event: StatusEvent) -> Optional[bytes]:
    message_type = RELAYED_EVENTS.get(event.type)
    if message_type is None:
        return None
    data = {
        "readyCount": event.ready_count,
        "required": event.required,
        "seconds": event.seconds,
        "participantId": event.participant_id,
        "ready": event.ready,
    }
    return encode(message_type, **{k: v for k, v in data.items() if v is not None})


def message_to_event(message_type: MessageType, data: dict) -> Optional[StatusEvent]:
    event_type = RELAYED_MESSAGES.get(message_type)
    if event_type is None:
        return None
    return StatusEvent(event_type,
                       ready_count=data.get("readyCount"),
                       required=data.get("required"),
                       seconds=data.get("seconds"),
                       participant_id=data.get("participantId"),
                       ready=data.get("ready"))


def get_local_ip() -> str:
    """Get the local IP address"""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
    except OSError:
        return "127.0.0.1"


def rewrite_host(uri: str, host: str, default_port: int) -> str:
    """Replace the host part of a room locator with the address we heard it from"""
    parts = urlsplit(uri)
    try:
        port = parts.port or default_port
    except ValueError:
        port = default_port
    return f"{parts.scheme or 'tcp'}://{host}:{port}"


def parse_discovery_response(data: dict, sender_ip: str, default_port: int) -> Optional[HostDescriptor]:
    try:
        server_id = int(data["serverId"])
        uri = str(data["uri"])
    except (KeyError, TypeError, ValueError):
        return None
    return HostDescriptor(address=rewrite_host(uri, sender_ip, default_port),
                          name=str(data.get("serverName", "")),
                          server_id=server_id)


class LanDiscovery:
    """UDP broadcast discovery: search for hosts, or answer searches as host.

    The two modes share the discovery channel and never run together;
    starting one stops the other first.
    """

    def __init__(self, config: MatchmakingConfig):
        self.discovery_port = config.discovery_port
        self.room_port = config.room_port
        self.local_ip = get_local_ip()
        self._response_handler: Optional[Callable[[HostDescriptor], None]] = None

        self._searching = False
        self._search_sock: Optional[socket.socket] = None
        self._search_thread: Optional[threading.Thread] = None

        self._advertising = False
        self._advert: Optional[Tuple[int, str]] = None
        self._advert_sock: Optional[socket.socket] = None
        self._advert_thread: Optional[threading.Thread] = None

    @property
    def searching(self) -> bool:
        return self._searching

    @property
    def advertising(self) -> bool:
        return self._advertising

    def on_response(self, handler: Optional[Callable[[HostDescriptor], None]]):
        self._response_handler = handler

    # -------------------- Searching -------------------- #

    def start_listening(self):
        if self._searching:
            return
        self.stop_advertising()
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.settimeout(0.5)
            sock.bind(("", 0))
        except OSError as e:
            raise ConnectionFailure("udp discovery", str(e)) from e
        self._search_sock = sock
        self._searching = True
        self._search_thread = threading.Thread(target=self._listen_loop, args=(sock,), daemon=True)
        self._search_thread.start()
        logger.debug("Listening for discovery responses on port %d", sock.getsockname()[1])

    def broadcast_request(self):
        sock = self._search_sock
        if not self._searching or sock is None:
            return
        request = encode(MessageType.DISCOVERY_REQUEST)
        # Broadcast to subnet, and to localhost for hosts on this machine
        for target in (("<broadcast>", self.discovery_port), ("127.0.0.1", self.discovery_port)):
            try:
                sock.sendto(request, target)
            except OSError as e:
                logger.debug("Discovery broadcast to %s failed: %s", target[0], e)

    def stop_listening(self):
        if not self._searching:
            return
        self._searching = False
        if self._search_thread and self._search_thread is not threading.current_thread():
            self._search_thread.join(timeout=1.0)
        if self._search_sock:
            self._search_sock.close()
        self._search_sock = None
        self._search_thread = None

    def _listen_loop(self, sock: socket.socket):
        while self._searching:
            try:
                data, addr = sock.recvfrom(4096)
            except socket.timeout:
                continue
            except OSError:
                break
            message_type, payload = decode(data)
            if message_type is not MessageType.DISCOVERY_RESPONSE:
                continue
            host = parse_discovery_response(payload, addr[0], self.room_port)
            handler = self._response_handler
            if host is None:
                logger.debug("Malformed discovery response from %s", addr[0])
            elif handler is not None and self._searching:
                handler(host)

    # -------------------- Advertising -------------------- #

    def start_advertising(self, server_id: int, server_name: str):
        self.stop_listening()
        self._advert = (server_id, server_name)
        if self._advertising:
            return
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.settimeout(0.5)
            sock.bind(("", self.discovery_port))
        except OSError as e:
            raise ConnectionFailure(f"udp port {self.discovery_port}", str(e)) from e
        self._advert_sock = sock
        self._advertising = True
        self._advert_thread = threading.Thread(target=self._advertise_loop, args=(sock,), daemon=True)
        self._advert_thread.start()
        logger.info("Advertising '%s' on %s:%d", server_name, self.local_ip, self.discovery_port)

    def stop_advertising(self):
        if not self._advertising:
            return
        self._advertising = False
        if self._advert_thread and self._advert_thread is not threading.current_thread():
            self._advert_thread.join(timeout=1.0)
        if self._advert_sock:
            self._advert_sock.close()
        self._advert_sock = None
        self._advert_thread = None
        logger.info("Stopped advertising")

    def _advertise_loop(self, sock: socket.socket):
        while self._advertising:
            try:
                data, addr = sock.recvfrom(4096)
            except socket.timeout:
                continue
            except OSError:
                break
            message_type, _ = decode(data)
            if message_type is not MessageType.DISCOVERY_REQUEST or self._advert is None:
                continue
            server_id, server_name = self._advert
            response = encode(MessageType.DISCOVERY_RESPONSE,
                              serverId=server_id,
                              uri=f"tcp://{self.local_ip}:{self.room_port}",
                              serverName=server_name)
            try:
                sock.sendto(response, addr)
            except OSError as e:
                logger.debug("Discovery response to %s failed: %s", addr[0], e)


class RoomServer:
    """Host end of the room channel (ZeroMQ ROUTER).

    The socket is only used by the network thread. Incoming requests are
    handed to the room coordinator through the scheduler; outgoing
    messages are queued in an outbox the network thread drains.
    """

    def __init__(self, config: MatchmakingConfig, room: RoomCoordinator, scheduler,
                 local_id: str, context: Optional[zmq.Context] = None):
        self.config = config
        self.room = room
        self.local_id = local_id
        self._scheduler = scheduler
        self._context = context or zmq.Context.instance()
        self._socket = None
        self._thread: Optional[threading.Thread] = None
        self._outbox: "queue.Queue[Tuple[str, bytes]]" = queue.Queue()
        self._members: Set[str] = set()
        self._last_seen: Dict[str, float] = {}
        self._lock = threading.RLock()
        self.running = False

    def start(self):
        address = f"tcp://*:{self.config.room_port}"
        sock = self._context.socket(zmq.ROUTER)
        sock.setsockopt(zmq.LINGER, 200)
        try:
            sock.bind(address)
        except zmq.ZMQError as e:
            sock.close()
            raise ConnectionFailure(address, str(e)) from e
        self._socket = sock
        self.room.events.subscribe(self._relay)
        self.running = True
        self._thread = threading.Thread(target=self._network_loop, daemon=True)
        self._thread.start()
        logger.info("Room channel bound to %s", address)

    def stop(self):
        if not self.running:
            return
        self.room.events.unsubscribe(self._relay)
        self.running = False
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=1.0)
        self._flush_outbox()
        self._socket.close()
        self._socket = None
        with self._lock:
            self._members.clear()
            self._last_seen.clear()
        logger.info("Room channel closed")

    def is_alive(self, participant_id: str) -> bool:
        if participant_id == self.local_id:
            return True
        with self._lock:
            last_seen = self._last_seen.get(participant_id)
        if last_seen is None:
            return False
        return time.monotonic() - last_seen <= self.config.heartbeat_timeout

    def members(self) -> Set[str]:
        with self._lock:
            return set(self._members)

    # Runs on the scheduler thread
    def _relay(self, event: StatusEvent):
        message = event_to_message(event)
        if message is None:
            return
        for participant_id in self.members():
            self._outbox.put((participant_id, message))

    def _admit(self, participant_id: str):
        if participant_id == self.local_id:
            logger.warning("Rejecting JOIN that claims the host's own id")
            self._outbox.put((participant_id, encode(MessageType.JOIN_REJECTED,
                                                     reason="identity in use")))
            return
        # Membership must exist before the room checks liveness
        with self._lock:
            already_member = participant_id in self._members
            self._members.add(participant_id)
            self._last_seen[participant_id] = time.monotonic()
        if self.room.on_participant_connected(participant_id):
            status = self.room.status()
            self._outbox.put((participant_id, encode(MessageType.JOIN_OK)))
            self._outbox.put((participant_id, encode(MessageType.QUEUE_STATUS,
                                                     readyCount=status.ready_count,
                                                     required=status.required)))
        else:
            if not already_member:
                with self._lock:
                    self._members.discard(participant_id)
                    self._last_seen.pop(participant_id, None)
            self._outbox.put((participant_id, encode(MessageType.JOIN_REJECTED,
                                                     reason="room is full or already playing")))

    # Network thread
    def _network_loop(self):
        poller = zmq.Poller()
        poller.register(self._socket, zmq.POLLIN)
        last_heartbeat = 0.0
        while self.running:
            try:
                if dict(poller.poll(10)).get(self._socket):
                    self._receive_all()
                self._flush_outbox()
            except zmq.ZMQError as e:
                if self.running:
                    logger.error("Room channel error: %s", e)
                    time.sleep(0.1)
                continue

            now = time.monotonic()
            if now - last_heartbeat >= self.config.heartbeat_interval:
                last_heartbeat = now
                heartbeat = encode(MessageType.HEARTBEAT)
                for participant_id in self.members():
                    self._outbox.put((participant_id, heartbeat))
            self._check_timeouts(now)

    def _receive_all(self):
        while True:
            try:
                frames = self._socket.recv_multipart(zmq.NOBLOCK)
            except zmq.Again:
                return
            if len(frames) < 2:
                continue
            self._handle(frames[0].decode("utf-8", "replace"), frames[-1])

    def _handle(self, participant_id: str, raw: bytes):
        message_type, data = decode(raw)
        if message_type is None:
            logger.debug("Dropping malformed message from %s", participant_id)
            return

        with self._lock:
            is_member = participant_id in self._members
            if is_member:
                self._last_seen[participant_id] = time.monotonic()

        if message_type is MessageType.JOIN:
            self._scheduler.call_soon(self._admit, participant_id)
        elif message_type is MessageType.LEAVE:
            self._drop(participant_id)
        elif message_type is MessageType.READY_TOGGLE and is_member:
            ready = data.get("ready")
            if ready is None:
                self._scheduler.call_soon(self.room.toggle_ready, participant_id)
            else:
                self._scheduler.call_soon(self.room.on_ready_changed, participant_id, bool(ready))

    def _drop(self, participant_id: str):
        with self._lock:
            was_member = participant_id in self._members
            self._members.discard(participant_id)
            self._last_seen.pop(participant_id, None)
        if was_member:
            self._scheduler.call_soon(self.room.on_participant_disconnected, participant_id)

    def _check_timeouts(self, now: float):
        with self._lock:
            expired = [pid for pid, seen in self._last_seen.items()
                       if now - seen > self.config.heartbeat_timeout]
        for participant_id in expired:
            logger.info("Participant %s timed out", participant_id)
            self._drop(participant_id)

    def _flush_outbox(self):
        while True:
            try:
                participant_id, message = self._outbox.get_nowait()
            except queue.Empty:
                return
            try:
                self._socket.send_multipart([participant_id.encode(), message], zmq.NOBLOCK)
            except zmq.Again:
                logger.debug("Send to %s would block, dropped", participant_id)


class RoomClient:
    """Joined-client end of the room channel (ZeroMQ DEALER)"""

    def __init__(self, config: MatchmakingConfig, scheduler, events: EventBus,
                 identity: str, context: Optional[zmq.Context] = None):
        self.config = config
        self.identity = identity
        self.events = events
        self.joined = False
        self.running = False
        self._scheduler = scheduler
        self._context = context or zmq.Context.instance()
        self._socket = None
        self._thread: Optional[threading.Thread] = None
        self._outbox: "queue.Queue[bytes]" = queue.Queue()
        self._on_state: Optional[Callable[[bool, str], None]] = None
        self._last_heard = 0.0

    def connect(self, address: str, on_state: Callable[[bool, str], None]):
        sock = self._context.socket(zmq.DEALER)
        sock.setsockopt(zmq.IDENTITY, self.identity.encode())
        sock.setsockopt(zmq.LINGER, 200)
        try:
            sock.connect(address)
        except zmq.ZMQError as e:
            sock.close()
            raise ConnectionFailure(address, str(e)) from e
        self._socket = sock
        self._on_state = on_state
        self._last_heard = time.monotonic()
        self._outbox.put(encode(MessageType.JOIN))
        self.running = True
        self._thread = threading.Thread(target=self._network_loop, daemon=True)
        self._thread.start()
        logger.info("Connecting to host at %s", address)

    def set_ready(self, ready: Optional[bool] = None):
        """Ask the host to set (or with None, flip) our ready flag"""
        if ready is None:
            self._outbox.put(encode(MessageType.READY_TOGGLE))
        else:
            self._outbox.put(encode(MessageType.READY_TOGGLE, ready=ready))

    def close(self):
        self._on_state = None
        if self._socket is None:
            return
        self.running = False
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=1.0)
        if self.joined:
            try:
                self._socket.send(encode(MessageType.LEAVE), zmq.NOBLOCK)
            except zmq.ZMQError:
                pass  # host is gone anyway
        self._socket.close()
        self._socket = None
        self.joined = False

    def _report(self, connected: bool, reason: str = ""):
        handler = self._on_state
        if handler is not None:
            handler(connected, reason)

    def _network_loop(self):
        poller = zmq.Poller()
        poller.register(self._socket, zmq.POLLIN)
        last_heartbeat = 0.0
        while self.running:
            try:
                if dict(poller.poll(10)).get(self._socket):
                    self._receive_all()
                self._flush_outbox()
            except zmq.ZMQError as e:
                if self.running:
                    logger.error("Room client error: %s", e)
                    time.sleep(0.1)
                continue

            now = time.monotonic()
            if self.joined and now - last_heartbeat >= self.config.heartbeat_interval:
                last_heartbeat = now
                self._outbox.put(encode(MessageType.HEARTBEAT))
            self._check_host(now)

    def _check_host(self, now: float) -> bool:
        """Give up on a joined host that has been silent too long"""
        if not self.joined or now - self._last_heard <= self.config.heartbeat_timeout:
            return True
        logger.warning("Host heartbeat missed")
        self.running = False
        self.joined = False
        self._report(False, "host stopped responding")
        return False

    def _receive_all(self):
        while self.running:
            try:
                raw = self._socket.recv(zmq.NOBLOCK)
            except zmq.Again:
                return
            self._last_heard = time.monotonic()
            self._handle(raw)

    def _handle(self, raw: bytes):
        message_type, data = decode(raw)
        if message_type is MessageType.JOIN_OK:
            self.joined = True
            self._report(True)
        elif message_type is MessageType.JOIN_REJECTED:
            self.running = False
            self._report(False, data.get("reason", "rejected by host"))
        elif message_type is not None and self.joined:
            event = message_to_event(message_type, data)
            if event is not None:
                self._scheduler.call_soon(self.events.publish, event)

    def _flush_outbox(self):
        while True:
            try:
                message = self._outbox.get_nowait()
            except queue.Empty:
                return
            try:
                self._socket.send(message, zmq.NOBLOCK)
            except zmq.Again:
                logger.debug("Send to host would block, dropped")


class LanTransport(MatchTransport):
    """MatchTransport over UDP broadcast discovery and a ZeroMQ room channel"""

    def __init__(self, config: MatchmakingConfig, scheduler, events: EventBus, server_id: int):
        self.config = config.normalized()
        self.events = events
        self.server_id = server_id
        self.local_id = f"{server_id:016x}"
        self.discovery = LanDiscovery(self.config)
        self.room: Optional[RoomCoordinator] = None
        self.server: Optional[RoomServer] = None
        self.client: Optional[RoomClient] = None
        self._scheduler = scheduler
        self._connection_handler: Optional[Callable[[bool, str], None]] = None

    def on_discovery_response(self, handler):
        self.discovery.on_response(handler)

    def on_connection_state(self, handler):
        self._connection_handler = handler

    def start_listening(self):
        self.discovery.start_listening()

    def stop_listening(self):
        self.discovery.stop_listening()

    def broadcast_discovery_request(self):
        self.discovery.broadcast_request()

    def connect(self, address: str) -> bool:
        self.disconnect()
        client = RoomClient(self.config, self._scheduler, self.events, self.local_id)
        client.connect(address, self._report_connection)
        self.client = client
        return True

    def disconnect(self):
        if self.client is not None:
            self.client.close()
            self.client = None

    def start_as_host(self):
        self.room = RoomCoordinator(self.config, self._scheduler, events=self.events,
                                    is_alive=self._is_alive)
        self.server = RoomServer(self.config, self.room, self._scheduler, self.local_id)
        try:
            self.server.start()
        except ConnectionFailure:
            self.server = None
            self.room = None
            raise
        # The host plays too, once hosting has been announced
        self._scheduler.call_soon(self._join_own_room, self.room)

    def stop_host(self):
        if self.room is not None:
            self.room.shutdown()
        if self.server is not None:
            self.server.stop()
        self.room = None
        self.server = None

    def start_advertising(self, server_id: int, server_name: str):
        self.discovery.start_advertising(server_id, server_name)

    def stop_advertising(self):
        self.discovery.stop_advertising()

    def is_host(self) -> bool:
        return self.server is not None

    def is_client(self) -> bool:
        return self.client is not None

    def is_connected(self) -> bool:
        return self.client is not None and self.client.joined

    def toggle_ready(self) -> bool:
        """Flip the local participant's ready flag (scheduler thread only)"""
        if self.room is not None:
            return self.room.toggle_ready(self.local_id)
        if self.client is not None and self.client.joined:
            self.client.set_ready()
            return True
        logger.info("Not in a room yet, ready toggle ignored")
        return False

    def close(self):
        self.disconnect()
        self.stop_advertising()
        self.stop_host()
        self.stop_listening()

    def local_address(self) -> str:
        return f"tcp://{self.discovery.local_ip}:{self.config.room_port}"

    def _join_own_room(self, room: RoomCoordinator):
        if room is self.room:
            room.on_participant_connected(self.local_id)

    def _is_alive(self, participant_id: str) -> bool:
        return self.server is not None and self.server.is_alive(participant_id)

    def _report_connection(self, connected: bool, reason: str):
        handler = self._connection_handler
        if handler is not None:
            handler(connected, reason)
