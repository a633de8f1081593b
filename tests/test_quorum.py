import unittest

from quorum import QuorumStatus, evaluate


class TestEvaluate(unittest.TestCase):
    def test_empty_room_reports_configured_target(self):
        result = evaluate(0, 0, 3, require_all=True)
        self.assertIs(result.status, QuorumStatus.NOT_ENOUGH)
        self.assertEqual(result.required, 3)

    def test_not_enough_ready(self):
        result = evaluate(1, 3, 2, require_all=False)
        self.assertIs(result.status, QuorumStatus.NOT_ENOUGH)
        self.assertEqual(result.required, 2)
        self.assertFalse(result.satisfied)

    def test_threshold_met_without_unanimity(self):
        result = evaluate(2, 3, 2, require_all=False)
        self.assertIs(result.status, QuorumStatus.ENOUGH)
        self.assertTrue(result.satisfied)

    def test_require_all_waits_for_everyone(self):
        result = evaluate(2, 3, 2, require_all=True)
        self.assertIs(result.status, QuorumStatus.ENOUGH_BUT_NOT_ALL)
        self.assertEqual(result.required, 3)

        result = evaluate(3, 3, 2, require_all=True)
        self.assertIs(result.status, QuorumStatus.ENOUGH)

    def test_require_all_still_needs_raw_threshold(self):
        # One player alone and ready is unanimous but below the threshold
        result = evaluate(1, 1, 2, require_all=True)
        self.assertIs(result.status, QuorumStatus.NOT_ENOUGH)
        self.assertEqual(result.required, 1)

    def test_required_shown_uses_threshold_when_room_is_small(self):
        result = evaluate(0, 1, 4, require_all=False)
        self.assertEqual(result.required, 4)

    def test_same_inputs_same_answer(self):
        self.assertEqual(evaluate(2, 2, 2, False), evaluate(2, 2, 2, False))


if __name__ == "__main__":
    unittest.main()
