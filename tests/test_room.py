import random
import unittest
from unittest import mock

import room
from config import MatchmakingConfig
from countdown import CountdownSequencer
from events import EventBus, EventType
from quorum import QuorumStatus, evaluate
from room import RoomCoordinator, RoomState
from scheduler import ManualScheduler


class RoomTestCase(unittest.TestCase):
    def setUp(self):
        self.scheduler = ManualScheduler()
        self.events = []
        self.bus = EventBus()
        self.bus.subscribe(self.events.append)

    def make_room(self, is_alive=None, **options):
        options.setdefault("players_per_match", 2)
        options.setdefault("match_start_delay", 3.0)
        return RoomCoordinator(MatchmakingConfig(**options), self.scheduler,
                               events=self.bus, is_alive=is_alive)

    def of_type(self, event_type):
        return [e for e in self.events if e.type is event_type]

    def ticks(self):
        return [e.seconds for e in self.of_type(EventType.COUNTDOWN_TICK)]


class TestRoomCountdown(RoomTestCase):
    def test_two_ready_players_start_after_full_countdown(self):
        lobby = self.make_room()
        lobby.on_participant_connected("a")
        lobby.on_participant_connected("b")
        lobby.on_ready_changed("a", True)
        lobby.on_ready_changed("b", True)

        self.assertTrue(lobby.countdown_running)
        self.assertIs(lobby.state, RoomState.QUORATE)
        self.assertEqual(self.ticks(), [3])

        self.scheduler.advance(3)
        self.assertEqual(self.ticks(), [3, 2, 1, 0])
        starts = self.of_type(EventType.MATCH_START)
        self.assertEqual(len(starts), 1)
        self.assertEqual(starts[0].ready_count, 2)
        self.assertIs(lobby.state, RoomState.MATCH_STARTED)

        # Nothing else fires afterwards
        self.scheduler.advance(10)
        self.assertEqual(len(self.of_type(EventType.MATCH_START)), 1)

    def test_unready_mid_countdown_cancels(self):
        lobby = self.make_room()
        for pid in ("a", "b"):
            lobby.on_participant_connected(pid)
            lobby.on_ready_changed(pid, True)
        self.scheduler.advance(1)
        self.assertEqual(self.ticks(), [3, 2])

        lobby.on_ready_changed("b", False)
        self.assertEqual(len(self.of_type(EventType.COUNTDOWN_CANCELLED)), 1)
        self.assertFalse(lobby.countdown_running)
        self.assertIs(lobby.state, RoomState.FORMING)

        self.scheduler.advance(10)
        self.assertEqual(self.ticks(), [3, 2])
        self.assertEqual(self.of_type(EventType.MATCH_START), [])

    def test_ready_again_starts_a_fresh_countdown(self):
        lobby = self.make_room()
        for pid in ("a", "b"):
            lobby.on_participant_connected(pid)
            lobby.on_ready_changed(pid, True)
        lobby.on_ready_changed("b", False)
        self.scheduler.advance(1)
        lobby.on_ready_changed("b", True)
        self.assertEqual(self.ticks(), [3, 3])
        self.scheduler.advance(3)
        self.assertEqual(len(self.of_type(EventType.MATCH_START)), 1)

    def test_late_joiner_does_not_restart_countdown(self):
        lobby = self.make_room()
        for pid in ("a", "b"):
            lobby.on_participant_connected(pid)
            lobby.on_ready_changed(pid, True)
        running = lobby._countdown
        self.scheduler.advance(1)

        lobby.on_participant_connected("c")
        self.assertIs(lobby._countdown, running)
        self.scheduler.advance(2)
        self.assertEqual(self.ticks(), [3, 2, 1, 0])
        self.assertEqual(len(self.of_type(EventType.MATCH_START)), 1)

    def test_zero_delay_starts_immediately(self):
        lobby = self.make_room(match_start_delay=0)
        for pid in ("a", "b"):
            lobby.on_participant_connected(pid)
            lobby.on_ready_changed(pid, True)
        self.assertEqual(self.ticks(), [0])
        self.assertEqual(len(self.of_type(EventType.MATCH_START)), 1)
        self.assertIs(lobby.state, RoomState.MATCH_STARTED)

    def test_disconnect_of_ready_player_cancels(self):
        lobby = self.make_room()
        for pid in ("a", "b"):
            lobby.on_participant_connected(pid)
            lobby.on_ready_changed(pid, True)
        lobby.on_participant_disconnected("a")
        self.assertFalse(lobby.countdown_running)
        self.assertEqual(len(self.of_type(EventType.COUNTDOWN_CANCELLED)), 1)
        self.scheduler.advance(5)
        self.assertEqual(self.of_type(EventType.MATCH_START), [])

    def test_shutdown_cancels_countdown(self):
        lobby = self.make_room()
        for pid in ("a", "b"):
            lobby.on_participant_connected(pid)
            lobby.on_ready_changed(pid, True)
        lobby.shutdown()
        self.assertIs(lobby.state, RoomState.EMPTY)
        self.assertEqual(len(lobby.registry), 0)
        self.assertEqual(len(self.of_type(EventType.COUNTDOWN_CANCELLED)), 1)
        self.scheduler.advance(5)
        self.assertEqual(self.of_type(EventType.MATCH_START), [])


class TestRoomQuorum(RoomTestCase):
    def test_require_all_reports_enough_but_not_all(self):
        lobby = self.make_room(require_all_ready=True)
        for pid in ("a", "b", "c"):
            lobby.on_participant_connected(pid)
        lobby.on_ready_changed("a", True)
        lobby.on_ready_changed("b", True)

        result = lobby.status()
        self.assertIs(result.status, QuorumStatus.ENOUGH_BUT_NOT_ALL)
        self.assertEqual(result.required, 3)
        self.assertFalse(lobby.countdown_running)
        last = self.of_type(EventType.QUEUE_STATUS)[-1]
        self.assertEqual((last.ready_count, last.required), (2, 3))

        lobby.on_ready_changed("c", True)
        self.assertTrue(lobby.countdown_running)

    def test_queue_status_published_for_every_input(self):
        lobby = self.make_room()
        lobby.on_participant_connected("a")
        lobby.on_participant_connected("b")
        lobby.on_ready_changed("a", True)
        lobby.on_ready_changed("a", True)  # no change, still re-evaluated
        lobby.reevaluate()

        statuses = [(e.ready_count, e.required) for e in self.of_type(EventType.QUEUE_STATUS)]
        self.assertEqual(statuses, [(0, 2), (0, 2), (1, 2), (1, 2), (1, 2)])
        self.assertEqual(len(self.of_type(EventType.READY_STATE_CHANGED)), 1)

    def test_last_participant_leaving_empties_room(self):
        lobby = self.make_room()
        lobby.on_participant_connected("a")
        lobby.on_participant_disconnected("a")
        self.assertIs(lobby.state, RoomState.EMPTY)
        last = self.of_type(EventType.QUEUE_STATUS)[-1]
        self.assertEqual((last.ready_count, last.required), (0, 2))

    def test_unknown_ready_change_is_ignored(self):
        lobby = self.make_room()
        lobby.on_participant_connected("a")
        self.assertFalse(lobby.on_ready_changed("ghost", True))
        self.assertFalse(lobby.toggle_ready("ghost"))
        self.assertNotIn("ghost", lobby.registry)

    def test_toggle_ready(self):
        lobby = self.make_room()
        lobby.on_participant_connected("a")
        self.assertTrue(lobby.toggle_ready("a"))
        self.assertTrue(lobby.registry.is_ready("a"))
        lobby.toggle_ready("a")
        self.assertFalse(lobby.registry.is_ready("a"))

    def test_full_room_rejects_newcomers(self):
        lobby = self.make_room(max_participants=2)
        self.assertTrue(lobby.on_participant_connected("a"))
        self.assertTrue(lobby.on_participant_connected("b"))
        self.assertFalse(lobby.on_participant_connected("c"))
        self.assertTrue(lobby.on_participant_connected("a"))
        self.assertEqual(len(lobby.registry), 2)

    def test_no_joins_after_match_start(self):
        lobby = self.make_room(match_start_delay=0)
        for pid in ("a", "b"):
            lobby.on_participant_connected(pid)
            lobby.on_ready_changed(pid, True)
        self.assertFalse(lobby.on_participant_connected("late"))

    def test_threshold_is_clamped(self):
        lobby = self.make_room(players_per_match=0)
        self.assertEqual(lobby.config.players_per_match, 1)
        lobby.on_participant_connected("a")
        lobby.on_ready_changed("a", True)
        self.assertTrue(lobby.countdown_running)


class TestRoomLiveness(RoomTestCase):
    def test_dropped_connection_cancels_on_next_tick(self):
        alive = {"a", "b"}
        lobby = self.make_room(is_alive=lambda pid: pid in alive)
        for pid in ("a", "b"):
            lobby.on_participant_connected(pid)
            lobby.on_ready_changed(pid, True)

        alive.discard("b")
        self.scheduler.advance(1)
        self.assertFalse(lobby.countdown_running)
        self.assertNotIn("b", lobby.registry)
        self.assertEqual(self.ticks(), [3])
        self.scheduler.advance(5)
        self.assertEqual(self.of_type(EventType.MATCH_START), [])

    def test_commit_rechecks_requirements(self):
        dropped = []
        lobby = self.make_room(is_alive=lambda pid: pid not in dropped)

        def drop_on_last_tick(event):
            if event.type is EventType.COUNTDOWN_TICK and event.seconds == 0:
                dropped.append("b")

        self.bus.subscribe(drop_on_last_tick)
        for pid in ("a", "b"):
            lobby.on_participant_connected(pid)
            lobby.on_ready_changed(pid, True)
        self.scheduler.advance(3)

        self.assertEqual(self.of_type(EventType.MATCH_START), [])
        self.assertEqual(len(self.of_type(EventType.COUNTDOWN_CANCELLED)), 1)
        self.assertIs(lobby.state, RoomState.FORMING)
        self.assertFalse(lobby.countdown_running)


class TestRoomProperties(RoomTestCase):
    def test_at_most_one_countdown_and_no_premature_start(self):
        created = []

        def tracking_sequencer(scheduler):
            sequencer = CountdownSequencer(scheduler)
            created.append(sequencer)
            return sequencer

        rng = random.Random(7)
        with mock.patch.object(room, "CountdownSequencer", tracking_sequencer):
            for _ in range(20):
                self.events.clear()
                lobby = self.make_room(players_per_match=rng.randint(1, 3),
                                       require_all_ready=rng.random() < 0.5)

                def check_start(event, lobby=lobby):
                    if event.type is EventType.MATCH_START:
                        self.assertTrue(lobby.status().satisfied)

                self.bus.subscribe(check_start)
                for _ in range(40):
                    pid = rng.choice("abcd")
                    action = rng.randrange(4)
                    if action == 0:
                        lobby.on_participant_connected(pid)
                    elif action == 1:
                        lobby.on_participant_disconnected(pid)
                    elif action == 2:
                        lobby.on_ready_changed(pid, rng.random() < 0.7)
                    else:
                        self.scheduler.advance(rng.choice([0.5, 1.0, 2.0]))
                    self.assertLessEqual(sum(1 for c in created if c.running), 1)
                    ready_count, total = lobby.registry.snapshot()
                    self.assertEqual(lobby.status(),
                                     evaluate(ready_count, total, lobby.config.players_per_match,
                                              lobby.config.require_all_ready))
                lobby.shutdown()
                self.bus.unsubscribe(check_start)


if __name__ == "__main__":
    unittest.main()
