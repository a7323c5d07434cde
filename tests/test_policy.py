import unittest

from hostmend.lib.policy import Action, MonitorState, PatternState, ThresholdRule, decide


class DecideTest(unittest.TestCase):
    def setUp(self) -> None:
        self.rule = ThresholdRule("disk", reclaim_at=80.0, escalate_at=98.0, reclaim_cooldown=12)

    def run_ticks(self, utilizations, rule=None):
        rule = rule or self.rule
        state = MonitorState()
        actions = []
        for value in utilizations:
            state.tick()
            action = decide(value, rule, state)
            state.record(action)
            actions.append(action)
        return actions

    def test_below_reclaim_never_acts(self):
        actions = self.run_ticks([0.0, 12.5, 50.0, 79.99] * 10)
        self.assertTrue(all(action is Action.NONE for action in actions))

    def test_first_breach_reclaims(self):
        state = MonitorState()
        self.assertIs(decide(80.0, self.rule, state), Action.RECLAIM)

    def test_reclaim_rate_limited_by_cooldown(self):
        actions = self.run_ticks([85.0] * 36)
        reclaim_ticks = [i for i, action in enumerate(actions) if action is Action.RECLAIM]
        self.assertEqual(reclaim_ticks, [0, 12, 24])

    def test_cooldown_keeps_counting_below_threshold(self):
        actions = self.run_ticks([85.0] + [10.0] * 11 + [85.0])
        self.assertIs(actions[0], Action.RECLAIM)
        self.assertIs(actions[-1], Action.RECLAIM)

    def test_escalate_beats_reclaim(self):
        state = MonitorState()
        self.assertIs(decide(99.0, self.rule, state), Action.ESCALATE)

    def test_escalation_once_per_process(self):
        actions = self.run_ticks([99.0, 99.5, 100.0, 50.0, 99.0])
        self.assertEqual(actions.count(Action.ESCALATE), 1)
        self.assertEqual(actions[1:], [Action.NONE] * 4)

    def test_escalation_disabled(self):
        rule = ThresholdRule("docker", reclaim_at=80.0, escalate_at=None)
        actions = self.run_ticks([100.0], rule=rule)
        self.assertEqual(actions, [Action.RECLAIM])


class PatternStateTest(unittest.TestCase):
    def test_one_escalation_per_episode(self):
        state = PatternState()
        seen = [False, True, True, True, False, True, True]
        actions = [state.decide(value) for value in seen]
        self.assertEqual(
            actions,
            [
                Action.NONE,
                Action.ESCALATE,
                Action.NONE,
                Action.NONE,
                Action.NONE,
                Action.ESCALATE,
                Action.NONE,
            ],
        )


if __name__ == "__main__":
    unittest.main()
