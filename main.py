#!/usr/bin/env python3
"""
LAN Quick Match - Main Entry Point

Finds a match on the local network without a dedicated server. On start
the lobby broadcasts a discovery request and joins the first host that
answers. If nobody answers within the discovery window, this machine
becomes the host and advertises the match itself.

Usage:
    python main.py [--players N] [--require-all] [--delay SECONDS]

Requirements:
    pip install pyzmq

Commands (type and press Enter):
    r: toggle ready
    s: search for a match again
    c: cancel matchmaking
    q: quit

The host starts the match once enough players are ready and the
countdown runs out without anyone un-readying.
"""

import argparse
import logging
import sys

from config import DISCOVERY_PORT, ROOM_PORT, MatchmakingConfig
from discovery import DiscoveryCoordinator, process_server_id
from events import EventBus, EventType, StatusEvent
from network import LanTransport
from scheduler import ThreadedScheduler

logger = logging.getLogger(__name__)


class ConsoleStatus:
    """Prints lobby status events for a terminal user"""

    def __init__(self, local_id: str, out=None):
        self.local_id = local_id
        self.out = out or sys.stdout

    def __call__(self, event: StatusEvent):
        line = self.describe(event)
        if line:
            print(line, file=self.out, flush=True)

    def describe(self, event: StatusEvent) -> str:
        if event.type is EventType.SEARCH_STARTED:
            return "Looking for another player..."
        if event.type is EventType.CONNECTING:
            return f"Joining a match at {event.host}..."
        if event.type is EventType.JOINED:
            return "Joined! Type 'r' when you are ready."
        if event.type is EventType.HOSTING_STARTED:
            return "Hosting a lobby... Type 'r' when you are ready."
        if event.type is EventType.CANCELLED:
            return "Matchmaking cancelled. Type 's' to search again."
        if event.type is EventType.QUEUE_STATUS:
            return f"Waiting for players ({event.ready_count}/{event.required})"
        if event.type is EventType.READY_STATE_CHANGED:
            who = "You are" if event.participant_id == self.local_id else "A player is"
            return f"{who} {'ready' if event.ready else 'not ready'}"
        if event.type is EventType.COUNTDOWN_TICK:
            return f"Match starting in {event.seconds}" if event.seconds else ""
        if event.type is EventType.COUNTDOWN_CANCELLED:
            return "Countdown cancelled"
        if event.type is EventType.MATCH_START:
            return "Match found! Loading..."
        return ""


def build_config(args) -> MatchmakingConfig:
    return MatchmakingConfig(
        players_per_match=args.players,
        require_all_ready=args.require_all,
        match_start_delay=args.delay,
        discovery_window=args.discovery_window,
        server_name=args.name,
        max_participants=args.max_players,
        restart_deadline_on_failure=args.restart_window,
        discovery_port=args.discovery_port,
        room_port=args.port,
    ).normalized()


def main():
    parser = argparse.ArgumentParser(description='LAN Quick Match lobby')
    parser.add_argument('--debug', action='store_true',
                        help='Enable debug output')
    parser.add_argument('--players', type=int, default=2,
                        help='Ready players needed to start a match (default: 2)')
    parser.add_argument('--require-all', action='store_true',
                        help='Every connected player must be ready')
    parser.add_argument('--delay', type=float, default=3.0,
                        help='Countdown before the match starts, in seconds (default: 3)')
    parser.add_argument('--discovery-window', type=float, default=3.0,
                        help='Seconds to search before hosting (default: 3)')
    parser.add_argument('--restart-window', action='store_true',
                        help='Restart the search window after a failed join')
    parser.add_argument('--max-players', type=int, default=8,
                        help='Largest room this host accepts (default: 8)')
    parser.add_argument('--name', type=str, default='Museum Match',
                        help='Match name advertised when hosting')
    parser.add_argument('--port', type=int, default=ROOM_PORT,
                        help=f'Room port (default: {ROOM_PORT})')
    parser.add_argument('--discovery-port', type=int, default=DISCOVERY_PORT,
                        help=f'Discovery port (default: {DISCOVERY_PORT})')

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )

    config = build_config(args)
    server_id = process_server_id()

    print("=" * 60)
    print("  LAN QUICK MATCH")
    print("=" * 60)
    print("Searching the local network for a host. If none answers,")
    print("this machine hosts the match and others join it.")
    print()
    print(f"Players per match: {config.players_per_match}"
          f"{' (all must be ready)' if config.require_all_ready else ''}")
    print("Commands: r = ready, s = search, c = cancel, q = quit")
    print("=" * 60)

    scheduler = ThreadedScheduler()
    events = EventBus()
    transport = LanTransport(config, scheduler, events, server_id)
    coordinator = DiscoveryCoordinator(config, transport, scheduler, events=events,
                                       server_id=server_id)
    status = events.subscribe(ConsoleStatus(transport.local_id))

    scheduler.start()
    scheduler.call_soon(coordinator.begin)

    try:
        for line in sys.stdin:
            command = line.strip().lower()
            if command == 'r':
                scheduler.call_soon(transport.toggle_ready)
            elif command == 's':
                scheduler.call_soon(coordinator.begin)
            elif command == 'c':
                scheduler.call_soon(coordinator.cancel)
            elif command == 'q':
                break
            elif command:
                print("Commands: r = ready, s = search, c = cancel, q = quit")
    except KeyboardInterrupt:
        print()

    print("Shutting down...")
    scheduler.call_soon(coordinator.cancel)
    scheduler.call_soon(transport.close)
    scheduler.call_soon(scheduler.stop)
    scheduler.join(timeout=3.0)
    events.unsubscribe(status)
    print("Goodbye!")


if __name__ == "__main__":
    main()
