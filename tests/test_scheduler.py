import threading
import unittest

from scheduler import ManualScheduler, ThreadedScheduler


class TestManualScheduler(unittest.TestCase):
    def setUp(self):
        self.scheduler = ManualScheduler()
        self.calls = []

    def test_runs_in_due_order_then_fifo(self):
        self.scheduler.call_later(2, self.calls.append, "late")
        self.scheduler.call_soon(self.calls.append, "first")
        self.scheduler.call_soon(self.calls.append, "second")
        self.scheduler.advance(0)
        self.assertEqual(self.calls, ["first", "second"])
        self.scheduler.advance(2)
        self.assertEqual(self.calls, ["first", "second", "late"])
        self.assertEqual(self.scheduler.now(), 2)

    def test_cancelled_handle_never_runs(self):
        handle = self.scheduler.call_later(1, self.calls.append, "x")
        handle.cancel()
        self.scheduler.advance(5)
        self.assertEqual(self.calls, [])
        self.assertEqual(self.scheduler.pending(), 0)

    def test_callbacks_scheduled_during_advance_run_when_due(self):
        def chain():
            self.calls.append(self.scheduler.now())
            if len(self.calls) < 3:
                self.scheduler.call_later(1, chain)

        self.scheduler.call_soon(chain)
        self.scheduler.advance(10)
        self.assertEqual(self.calls, [0, 1, 2])

    def test_not_due_yet(self):
        self.scheduler.call_later(1.5, self.calls.append, "x")
        self.scheduler.advance(1)
        self.assertEqual(self.calls, [])
        self.assertEqual(self.scheduler.pending(), 1)


class TestThreadedScheduler(unittest.TestCase):
    def test_runs_posted_callbacks_on_worker_thread(self):
        scheduler = ThreadedScheduler(name="test-loop")
        done = threading.Event()
        seen = []

        def record(value):
            seen.append((value, scheduler.in_loop_thread()))
            if value == "b":
                done.set()

        scheduler.start()
        try:
            scheduler.call_later(0.05, record, "b")
            scheduler.call_soon(record, "a")
            self.assertTrue(done.wait(2.0))
        finally:
            scheduler.stop()
        self.assertEqual(seen, [("a", True), ("b", True)])


if __name__ == "__main__":
    unittest.main()
