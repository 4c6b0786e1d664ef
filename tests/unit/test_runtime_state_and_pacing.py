import random
import sys
from dataclasses import replace
from pathlib import Path
import unittest

sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from survivor_agent.application.config import PacingConfig, Range
from survivor_agent.application.services.pacing import PacingScheduler
from survivor_agent.application.services.runtime_state import (
    MARKET_BLOCKER,
    PacingState,
    RunnerRuntimeState,
    randomness_backoff_delay,
)


class RuntimeStateTests(unittest.TestCase):
    def test_action_count_blocker_lifts_once_the_count_advances(self) -> None:
        runtime = RunnerRuntimeState.fresh(now=0.0)
        runtime.block_for_action_count(MARKET_BLOCKER, 7)
        self.assertTrue(runtime.blocked(MARKET_BLOCKER, 7, now=1e9))
        self.assertFalse(runtime.blocked(MARKET_BLOCKER, 8, now=0.0))
        self.assertFalse(runtime.blocked("stats", 7, now=0.0))

    def test_repeated_blocks_at_one_count_accumulate_attempts(self) -> None:
        runtime = RunnerRuntimeState.fresh(now=0.0)
        runtime.block_for_action_count(MARKET_BLOCKER, 3)
        blocker = runtime.block_for_action_count(MARKET_BLOCKER, 3)
        self.assertEqual(2, blocker.attempts)
        self.assertEqual(1, runtime.block_for_action_count(MARKET_BLOCKER, 4).attempts)

    def test_randomness_failures_outside_the_window_are_forgotten(self) -> None:
        runtime = RunnerRuntimeState.fresh(now=0.0)
        self.assertEqual(1, runtime.note_randomness_failure(0.0, window_s=10.0))
        self.assertEqual(2, runtime.note_randomness_failure(5.0, window_s=10.0))
        self.assertEqual(2, runtime.note_randomness_failure(12.0, window_s=10.0))

    def test_backoff_is_non_decreasing_and_capped(self) -> None:
        delays = [randomness_backoff_delay(attempt, 2.0, 60.0) for attempt in range(1, 80)]
        self.assertEqual(2.0, delays[0])
        self.assertEqual(4.0, delays[1])
        self.assertEqual(delays, sorted(delays))
        self.assertEqual(60.0, max(delays))

    def test_settlement_expectation(self) -> None:
        runtime = RunnerRuntimeState.fresh(now=10.0)
        settlement = runtime.expect_settlement(5, 11.0, ("fp",))
        self.assertEqual(5, settlement.expected_action_count)
        self.assertIs(settlement, runtime.settlement)
        runtime.clear_settlement()
        self.assertIsNone(runtime.settlement)


class PacingSchedulerTests(unittest.TestCase):
    def _scheduler(self, **overrides) -> PacingScheduler:
        config = replace(PacingConfig(enabled=True), **overrides)
        return PacingScheduler(config, random.Random(7))

    def test_disabled_pacing_has_no_delays_or_breaks(self) -> None:
        scheduler = PacingScheduler(PacingConfig(enabled=False), random.Random(1))
        state = PacingState()
        self.assertEqual(0.0, scheduler.think_delay_s())
        scheduler.note_event(state, "market")
        self.assertEqual(0.0, scheduler.take_dwell_s(state, in_combat=False))
        self.assertIsNone(scheduler.due_break(state, now=1e9, in_combat=False))

    def test_think_delay_is_sampled_from_the_window(self) -> None:
        scheduler = self._scheduler()
        for _ in range(20):
            self.assertTrue(0.4 <= scheduler.think_delay_s() <= 1.8)

    def test_dwell_is_deferred_while_in_combat(self) -> None:
        scheduler = self._scheduler(level_up_dwell_s=Range(3, 3))
        state = PacingState()
        scheduler.note_event(state, "level_up")
        scheduler.note_event(state, "unknown")
        self.assertEqual(0.0, scheduler.take_dwell_s(state, in_combat=True))
        self.assertEqual(3.0, scheduler.take_dwell_s(state, in_combat=False))
        self.assertEqual(0.0, scheduler.take_dwell_s(state, in_combat=False))

    def test_short_break_waits_for_combat_to_end(self) -> None:
        scheduler = self._scheduler(short_break_every_actions=Range(2, 2), short_break_s=Range(30, 30))
        state = PacingState()
        scheduler.schedule(state, now=0.0)
        scheduler.record_write(state, 1.0)
        scheduler.record_write(state, 2.0)
        self.assertIsNone(scheduler.due_break(state, now=3.0, in_combat=True))
        pause = scheduler.due_break(state, now=4.0, in_combat=False)
        self.assertEqual("short_break", pause.kind)
        self.assertEqual(30.0, pause.seconds)
        self.assertEqual(0, state.actions_since_break)

    def test_long_sleep_comes_due_by_wall_clock(self) -> None:
        scheduler = self._scheduler(long_sleep_every_s=Range(100, 100), long_sleep_s=Range(50, 50))
        state = PacingState()
        self.assertIsNone(scheduler.due_break(state, now=0.0, in_combat=False))
        pause = scheduler.due_break(state, now=100.0, in_combat=False)
        self.assertEqual("long_sleep", pause.kind)
        self.assertEqual(250.0, state.next_long_sleep_at)

    def test_rate_limit_applies_even_when_pacing_is_disabled(self) -> None:
        scheduler = PacingScheduler(PacingConfig(enabled=False, max_writes_per_minute=2), random.Random(0))
        state = PacingState()
        scheduler.record_write(state, 0.0)
        self.assertEqual(0.0, scheduler.rate_limit_wait_s(state, 1.0))
        scheduler.record_write(state, 10.0)
        self.assertEqual(50.0, scheduler.rate_limit_wait_s(state, 10.0))
        self.assertEqual(0.0, scheduler.rate_limit_wait_s(state, 60.0))


if __name__ == "__main__":
    unittest.main()
