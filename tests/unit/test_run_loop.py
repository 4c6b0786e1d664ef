import sys
import threading
from dataclasses import replace
from pathlib import Path
import unittest

sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from snapshot_fixtures import make_snapshot
from survivor_agent.application.config import PacingConfig, Range, RecoveryConfig, RunnerConfig
from survivor_agent.application.services.run_loop import RunLoop, StepOutcome
from survivor_agent.application.services.runtime_state import EQUIP_BLOCKER
from survivor_agent.domain.errors import TransientReadError
from survivor_agent.domain.gateways import Observer, Reader, TransactionReceipt, TransactionStatus
from survivor_agent.domain.models.session import SessionRecord
from survivor_agent.infrastructure.inmemory.simulated_world import SimulatedWorld


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start
        self.slept = []

    def time(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        self.now += seconds


class RecordingObserver(Observer):
    def __init__(self) -> None:
        self.events = []
        self.milestones = []

    def log(self, level, event, data=None):
        self.events.append((event, dict(data or {})))

    def milestone(self, name, data=None):
        self.milestones.append((name, dict(data or {})))

    def named(self, event):
        return [data for name, data in self.events if name == event]


class MemorySessionStore:
    def __init__(self) -> None:
        self.saved = []

    def save(self, session: SessionRecord) -> None:
        self.saved.append(session)


class FlakyReader(Reader):
    def __init__(self, inner: Reader, failures: int) -> None:
        self.inner = inner
        self.failures = failures

    def get_world_state(self, adventurer_id):
        if self.failures > 0:
            self.failures -= 1
            raise TransientReadError("bridge unavailable")
        return self.inner.get_world_state(adventurer_id)

    def get_transaction_status(self, handle):
        return self.inner.get_transaction_status(handle)


class PendingReceiptReader(Reader):
    """Serves world state but never sees a transaction reach a final status."""

    def __init__(self, inner: Reader) -> None:
        self.inner = inner

    def get_world_state(self, adventurer_id):
        return self.inner.get_world_state(adventurer_id)

    def get_transaction_status(self, handle):
        return TransactionReceipt(TransactionStatus.PENDING)


def _recovery(**overrides) -> RecoveryConfig:
    return replace(RecoveryConfig(), **overrides)


class RunLoopTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.observer = RecordingObserver()
        self.session_store = MemorySessionStore()
        self.factory_calls = []

    def make_loop(self, world, *, config=None, reader=None, stop_event=None, identity_provider=None) -> RunLoop:
        def handles_factory(session):
            self.factory_calls.append(session)
            return (reader or world), world

        return RunLoop(
            config or RunnerConfig(),
            session=SessionRecord(address="0xsim", adventurer_id=1),
            handles_factory=handles_factory,
            item_catalog=world,
            observer=self.observer,
            identity_provider=identity_provider,
            session_store=self.session_store,
            clock=self.clock.time,
            sleeper=self.clock.sleep,
            stop_event=stop_event,
        )

    def entrypoints(self, world):
        return [call[0] for call in world.calls]

    def step_until(self, loop, wanted, limit=30):
        outcomes = []
        for _ in range(limit):
            outcome = loop.step()
            outcomes.append(outcome)
            if outcome is wanted:
                return outcomes
        self.fail(f"{wanted} not reached: {outcomes}")


class SettlementTests(RunLoopTestCase):
    def test_no_write_is_sent_while_the_previous_one_is_unsettled(self) -> None:
        world = SimulatedWorld(seed=1, settle_delay_reads=2)
        world.create_adventurer()
        loop = self.make_loop(world)

        self.assertIs(StepOutcome.ACTED, loop.step())
        self.assertEqual(["start_game"], self.entrypoints(world))
        self.assertIs(StepOutcome.AWAITING_SETTLEMENT, loop.step())
        self.assertIs(StepOutcome.AWAITING_SETTLEMENT, loop.step())
        self.assertEqual(["start_game"], self.entrypoints(world))

        self.assertIs(StepOutcome.ACTED, loop.step())
        self.assertEqual(2, len(world.calls))
        self.assertEqual(1, self.observer.named("action_submitted")[0]["expected_action_count"])
        self.assertEqual(1, self.observer.named("action")[0]["adventurer_level"])

    def test_settlement_timeout_clears_the_expectation_and_resyncs(self) -> None:
        world = SimulatedWorld(seed=1, settle_delay_reads=1_000)
        world.create_adventurer()
        config = RunnerConfig(recovery=_recovery(settlement_timeout_s=5.0, settlement_poll_s=1.0))
        loop = self.make_loop(world, config=config)

        loop.step()
        outcomes = self.step_until(loop, StepOutcome.SETTLEMENT_TIMEOUT)
        self.assertTrue(all(outcome is StepOutcome.AWAITING_SETTLEMENT for outcome in outcomes[:-1]))
        self.assertIsNone(loop.runtime.settlement)
        self.assertEqual(1, world.resync_count)
        self.assertEqual(1, len(self.observer.named("settlement_timeout")))
        self.assertEqual(["start_game"], self.entrypoints(world))

    def test_waiting_on_settlement_is_not_a_stall(self) -> None:
        world = SimulatedWorld(seed=1, settle_delay_reads=1_000)
        world.create_adventurer()
        recovery = _recovery(stale_progress_s=5.0, settlement_timeout_s=50.0, settlement_poll_s=1.0)
        loop = self.make_loop(world, config=RunnerConfig(recovery=recovery))

        self.assertIs(StepOutcome.ACTED, loop.step())
        outcomes = self.step_until(loop, StepOutcome.SETTLEMENT_TIMEOUT, limit=60)
        self.assertNotIn(StepOutcome.STALLED, outcomes)
        self.assertGreater(outcomes.count(StepOutcome.AWAITING_SETTLEMENT), 40)
        self.assertEqual(1, world.resync_count)

    def test_unconfirmed_write_is_awaited_before_deciding_again(self) -> None:
        world = SimulatedWorld(seed=3, settle_delay_reads=1_000)
        world.put_snapshot(1, make_snapshot(health=100, xp=16))
        recovery = _recovery(confirm_timeout_s=3.0, confirm_poll_s=1.0)
        loop = self.make_loop(world, config=RunnerConfig(recovery=recovery), reader=PendingReceiptReader(world))

        self.assertIs(StepOutcome.WRITE_FAILED, loop.step())
        self.assertEqual(1, len(self.observer.named("confirm_timeout")))
        self.assertEqual(1, loop.runtime.settlement.expected_action_count)
        self.assertIs(StepOutcome.AWAITING_SETTLEMENT, loop.step())
        self.assertEqual(["explore"], self.entrypoints(world))

    def test_rebootstrap_keeps_the_pending_settlement_and_write_budget(self) -> None:
        world = SimulatedWorld(seed=3, settle_delay_reads=1_000)
        world.put_snapshot(1, make_snapshot(health=100, xp=16))
        recovery = _recovery(confirm_timeout_s=3.0, confirm_poll_s=1.0, max_consecutive_failures=1)
        loop = self.make_loop(world, config=RunnerConfig(recovery=recovery), reader=PendingReceiptReader(world))

        self.assertIs(StepOutcome.REBOOTSTRAPPED, loop.step())
        self.assertEqual(2, len(self.factory_calls))
        self.assertEqual(1, loop.runtime.settlement.expected_action_count)
        self.assertEqual(1, len(loop.runtime.pacing.write_timestamps))
        self.assertIs(StepOutcome.AWAITING_SETTLEMENT, loop.step())
        self.assertEqual(["explore"], self.entrypoints(world))


class RandomnessRecoveryTests(RunLoopTestCase):
    def test_pending_randomness_backs_off_with_growing_delays(self) -> None:
        world = SimulatedWorld(seed=2)
        world.put_snapshot(1, make_snapshot(health=100, xp=16))
        world.fail_next("explore", "VRF request not fulfilled", times=3)
        loop = self.make_loop(world)

        outcomes = self.step_until(loop, StepOutcome.ACTED)
        delays = [data["delay_s"] for data in self.observer.named("randomness_pending")]
        self.assertEqual([2.0, 4.0, 8.0], delays)
        self.assertEqual(4, self.entrypoints(world).count("explore"))
        self.assertIn(StepOutcome.RANDOMNESS_WAIT, outcomes)
        self.assertEqual(0, loop.runtime.consecutive_failures)

    def test_repeated_failures_open_the_circuit(self) -> None:
        world = SimulatedWorld(seed=2)
        world.put_snapshot(1, make_snapshot(health=100, xp=16))
        world.fail_next("explore", "VRF request not fulfilled", times=10)
        config = RunnerConfig(
            recovery=_recovery(vrf_circuit_attempts=3, vrf_circuit_cooldown_s=100.0, vrf_resync_interval_s=30.0)
        )
        loop = self.make_loop(world, config=config)

        self.step_until(loop, StepOutcome.RANDOMNESS_CIRCUIT)
        self.assertEqual(3, len(world.calls))
        self.assertEqual(1, world.resync_count)

        self.assertIs(StepOutcome.RANDOMNESS_CIRCUIT, loop.step())
        self.assertIs(StepOutcome.RANDOMNESS_CIRCUIT, loop.step())
        self.assertEqual(3, len(world.calls))
        self.assertEqual(2, world.resync_count)


class WriteErrorTests(RunLoopTestCase):
    def test_closed_market_is_skipped_until_the_action_count_moves(self) -> None:
        world = SimulatedWorld(seed=4)
        world.put_snapshot(1, make_snapshot(health=30, xp=16, gold=100, market=[20]))
        world.fail_next("buy_items", "Market is closed")
        loop = self.make_loop(world)

        self.assertIs(StepOutcome.WRITE_BLOCKED, loop.step())
        self.assertIs(StepOutcome.ACTED, loop.step())
        self.assertEqual(["buy_items", "explore"], self.entrypoints(world))

    def test_not_in_battle_triggers_a_resync_without_counting_a_failure(self) -> None:
        world = SimulatedWorld(seed=4)
        world.put_snapshot(1, make_snapshot(health=100, xp=16, beast={"id": 21, "health": 8, "level": 1}))
        world.fail_next("attack", "Not in battle")
        loop = self.make_loop(world)

        self.assertIs(StepOutcome.WRITE_BLOCKED, loop.step())
        self.assertEqual(1, world.resync_count)
        self.assertEqual(0, loop.runtime.consecutive_failures)

    def test_consecutive_failures_rebuild_the_handles(self) -> None:
        world = SimulatedWorld(seed=4)
        world.put_snapshot(1, make_snapshot(health=100, xp=16))
        world.fail_next("explore", "something odd happened", times=3)
        loop = self.make_loop(world, config=RunnerConfig(recovery=_recovery(max_consecutive_failures=3)))

        outcomes = [loop.step() for _ in range(3)]
        self.assertEqual([StepOutcome.WRITE_FAILED, StepOutcome.WRITE_FAILED, StepOutcome.REBOOTSTRAPPED], outcomes)
        self.assertEqual(2, len(self.factory_calls))
        self.assertEqual(0, loop.runtime.consecutive_failures)

    def test_hung_submission_times_out_and_waits_for_settlement(self) -> None:
        world = SimulatedWorld(seed=5)
        world.put_snapshot(1, make_snapshot(health=100, xp=16))
        release = threading.Event()
        world.hang_next("explore", release)
        loop = self.make_loop(world, config=RunnerConfig(recovery=_recovery(submit_timeout_s=0.05)))

        self.assertIs(StepOutcome.SUBMIT_TIMEOUT, loop.step())
        self.assertEqual(1, loop.runtime.settlement.expected_action_count)
        self.assertEqual(1, world.resync_count)

        release.set()
        waiter = threading.Event()
        for _ in range(500):
            if world.actual_state(1)["adventurer"]["action_count"] == 1:
                break
            waiter.wait(0.01)
        self.assertIs(StepOutcome.ACTED, loop.step())
        self.assertEqual(2, len(world.calls))
        loop.close()


class LifecycleTests(RunLoopTestCase):
    def test_death_rotates_to_a_fresh_adventurer(self) -> None:
        world = SimulatedWorld(seed=6)
        world.put_snapshot(1, make_snapshot(health=0, xp=30, action_count=40))
        loop = self.make_loop(world, identity_provider=world)

        self.assertIs(StepOutcome.ROTATED, loop.step())
        self.assertEqual(2, loop.adventurer_id)
        self.assertEqual(2, self.session_store.saved[-1].adventurer_id)
        self.assertEqual(5, self.observer.named("adventurer_dead")[0]["adventurer_level"])
        names = [name for name, _ in self.observer.milestones]
        self.assertIn("death", names)
        self.assertIn("identity_rotated", names)

        self.assertIs(StepOutcome.ACTED, loop.step())
        self.assertEqual(("start_game", 2), world.calls[-1][:2])

    def test_death_halts_the_identity_without_auto_recovery(self) -> None:
        world = SimulatedWorld(seed=6)
        world.put_snapshot(1, make_snapshot(health=0, xp=30))
        config = RunnerConfig(recovery=_recovery(auto_recover_death=False))
        loop = self.make_loop(world, config=config, identity_provider=world)

        self.assertIs(StepOutcome.HALTED, loop.run(max_iterations=5))
        self.assertEqual([], world.calls)
        self.assertEqual(1, [name for name, _ in self.observer.milestones].count("death"))

    def test_unconfigured_session_acquires_an_adventurer(self) -> None:
        world = SimulatedWorld(seed=6)
        loop = RunLoop(
            RunnerConfig(),
            session=SessionRecord(address="0xsim"),
            handles_factory=lambda session: (world, world),
            item_catalog=world,
            observer=self.observer,
            identity_provider=world,
            clock=self.clock.time,
            sleeper=self.clock.sleep,
        )
        loop.run(max_iterations=1)
        self.assertEqual(1, loop.adventurer_id)
        self.assertEqual(["start_game"], self.entrypoints(world))

    def test_stop_event_ends_the_run(self) -> None:
        world = SimulatedWorld(seed=6)
        world.put_snapshot(1, make_snapshot(health=100))
        stop = threading.Event()
        stop.set()
        loop = self.make_loop(world, stop_event=stop)
        self.assertIs(StepOutcome.STOPPED, loop.run())
        self.assertEqual([], world.calls)

    def test_stale_progress_triggers_a_resync(self) -> None:
        world = SimulatedWorld(seed=7)
        world.put_snapshot(1, make_snapshot(health=100, xp=16))
        loop = self.make_loop(world, config=RunnerConfig(recovery=_recovery(stale_progress_s=10.0)))
        self.clock.now += 11
        self.assertIs(StepOutcome.STALLED, loop.step())
        self.assertEqual(1, world.resync_count)
        self.assertEqual([], world.calls)


class ReadAndPacingTests(RunLoopTestCase):
    def test_transient_reads_are_retried(self) -> None:
        world = SimulatedWorld(seed=8)
        world.put_snapshot(1, make_snapshot(health=100, xp=16))
        loop = self.make_loop(world, reader=FlakyReader(world, failures=2))
        self.assertIs(StepOutcome.ACTED, loop.step())
        self.assertEqual(2, len(self.observer.named("read_retry")))

    def test_exhausted_reads_skip_the_iteration(self) -> None:
        world = SimulatedWorld(seed=8)
        world.put_snapshot(1, make_snapshot(health=100, xp=16))
        loop = self.make_loop(world, reader=FlakyReader(world, failures=5))
        self.assertIs(StepOutcome.READ_FAILED, loop.step())
        self.assertEqual([], world.calls)

    def test_equip_is_not_repeated_at_the_same_action_count(self) -> None:
        world = SimulatedWorld(seed=9)
        world.put_snapshot(1, make_snapshot(health=100, xp=16, bag=[(21, 0)]))
        loop = self.make_loop(world)
        loop.runtime.block_for_action_count(EQUIP_BLOCKER, 0)
        self.assertIs(StepOutcome.ACTED, loop.step())
        self.assertEqual(["explore"], self.entrypoints(world))

    def test_successful_equip_blocks_equip_for_that_action_count(self) -> None:
        world = SimulatedWorld(seed=9)
        world.put_snapshot(1, make_snapshot(health=100, xp=16, bag=[(21, 0)]))
        loop = self.make_loop(world)
        self.assertIs(StepOutcome.ACTED, loop.step())
        self.assertEqual(["equip"], self.entrypoints(world))
        self.assertTrue(loop.runtime.blocked(EQUIP_BLOCKER, 0, self.clock.now))

    def test_short_break_is_taken_between_writes(self) -> None:
        world = SimulatedWorld(seed=10)
        world.put_snapshot(1, make_snapshot(health=100, xp=16, stat_upgrades=2))
        pacing = PacingConfig(
            enabled=True,
            think_delay_ms=Range(0, 0),
            short_break_every_actions=Range(1, 1),
            short_break_s=Range(5, 5),
        )
        loop = self.make_loop(world, config=RunnerConfig(pacing=pacing))

        self.assertIs(StepOutcome.ACTED, loop.step())
        before = self.clock.now
        self.assertIs(StepOutcome.BREAK, loop.step())
        self.assertEqual(5.0, self.clock.now - before)
        self.assertEqual(["select_stat_upgrades"], self.entrypoints(world))

    def test_long_break_does_not_count_as_stalled_progress(self) -> None:
        world = SimulatedWorld(seed=10)
        world.put_snapshot(1, make_snapshot(health=100, xp=16, stat_upgrades=2))
        pacing = PacingConfig(
            enabled=True,
            think_delay_ms=Range(0, 0),
            short_break_every_actions=Range(1, 1),
            short_break_s=Range(700, 700),
        )
        loop = self.make_loop(world, config=RunnerConfig(pacing=pacing))

        outcomes = [loop.step() for _ in range(3)]
        self.assertEqual([StepOutcome.ACTED, StepOutcome.BREAK, StepOutcome.ACTED], outcomes)
        self.assertEqual(0, world.resync_count)
        self.assertEqual(["select_stat_upgrades", "explore"], self.entrypoints(world))


if __name__ == "__main__":
    unittest.main()
