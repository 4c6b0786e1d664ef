from __future__ import annotations

import dataclasses
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from enum import Enum
from typing import Callable, Dict, Mapping, Optional, Tuple

from survivor_agent.application.config import RunnerConfig
from survivor_agent.application.services.decision_engine import decide
from survivor_agent.application.services.pacing import PacingScheduler
from survivor_agent.application.services.progress_tracker import ProgressTracker
from survivor_agent.application.services.runtime_state import (
    EQUIP_BLOCKER,
    MARKET_BLOCKER,
    RANDOMNESS_BLOCKER,
    STATS_BLOCKER,
    Blocker,
    RunnerRuntimeState,
    randomness_backoff_delay,
)
from survivor_agent.application.services.salt_policy import identity_rng, salt_for_action
from survivor_agent.application.services.state_deriver import derive_state
from survivor_agent.domain.errors import ConfigError, TransientReadError, WriteError, WriteErrorKind
from survivor_agent.domain.events import LevelUp
from survivor_agent.domain.gateways import (
    IdentityProvider,
    ItemCatalog,
    Observer,
    RandomnessSalt,
    Reader,
    SettlementHandle,
    TransactionReceipt,
    TransactionStatus,
    Writer,
)
from survivor_agent.domain.models.action import Action, ActionType
from survivor_agent.domain.models.derived_state import DerivedState
from survivor_agent.domain.models.item import ItemMeta
from survivor_agent.domain.models.session import SessionRecord


HandlesFactory = Callable[[SessionRecord], Tuple[Reader, Writer]]


class StepOutcome(str, Enum):
    ACTED = "acted"
    IDLE = "idle"
    READ_FAILED = "read_failed"
    AWAITING_SETTLEMENT = "awaiting_settlement"
    SETTLEMENT_TIMEOUT = "settlement_timeout"
    DEAD = "dead"
    ROTATED = "rotated"
    HALTED = "halted"
    RANDOMNESS_CIRCUIT = "randomness_circuit"
    RANDOMNESS_WAIT = "randomness_wait"
    BREAK = "break"
    STALLED = "stalled"
    SUBMIT_TIMEOUT = "submit_timeout"
    WRITE_BLOCKED = "write_blocked"
    WRITE_FAILED = "write_failed"
    REBOOTSTRAPPED = "rebootstrapped"
    STOPPED = "stopped"


class _SubmitTimeout(Exception):
    pass


def state_fingerprint(state: DerivedState) -> Tuple:
    return (
        state.action_count,
        state.xp,
        state.hp,
        state.gold,
        state.stat_upgrades,
        state.beast.health,
        tuple(item.id for item in state.bag_items),
        tuple(state.equipment.item_ids()),
        state.market,
    )


class RunLoop:
    """Read, decide, act and wait for settlement, one write at a time, for a single identity.

    ``step`` runs exactly one iteration and reports what it did; ``run`` repeats it until
    the stop event is set, the identity halts, or ``max_iterations`` is reached. Time is
    read through ``clock`` and every wait goes through ``sleeper`` in chunks so a stop
    request is honoured within one chunk.
    """

    def __init__(
        self,
        config: RunnerConfig,
        *,
        session: SessionRecord,
        handles_factory: HandlesFactory,
        item_catalog: ItemCatalog,
        observer: Observer,
        identity_provider: Optional[IdentityProvider] = None,
        session_store=None,
        progress_tracker: Optional[ProgressTracker] = None,
        clock: Callable[[], float] = time.time,
        sleeper: Callable[[float], None] = time.sleep,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        self.config = config
        self.policy = config.policy
        self.recovery = config.recovery
        self.session = session
        self.handles_factory = handles_factory
        self.item_catalog = item_catalog
        self.observer = observer
        self.identity_provider = identity_provider
        self.session_store = session_store
        self.tracker = progress_tracker or ProgressTracker(observer, target_level=config.policy.target_level)
        self.clock = clock
        self.sleeper = sleeper
        self.stop_event = stop_event or threading.Event()
        self._logger = logging.getLogger(__name__)

        self.reader, self.writer = handles_factory(session)
        self.runtime = RunnerRuntimeState.fresh(clock())
        self.pacing = PacingScheduler(config.pacing, self._pacing_rng())
        self._executor: Optional[ThreadPoolExecutor] = None
        self._last_market_note: Optional[Tuple[int, int]] = None

    @property
    def adventurer_id(self) -> Optional[int]:
        return self.session.adventurer_id

    def _pacing_rng(self):
        return identity_rng(
            "pacing",
            self.session.adventurer_id or 0,
            deterministic=self.config.pacing.deterministic_jitter,
        )

    def _log(self, level: str, event: str, /, **data) -> None:
        self.observer.log(level, event, {"adventurer_id": self.adventurer_id, **data})

    def sleep(self, seconds: float) -> None:
        remaining = max(0.0, float(seconds))
        chunk = max(0.01, float(self.recovery.sleep_chunk_s))
        while remaining > 0 and not self.stop_event.is_set():
            interval = min(chunk, remaining)
            self.sleeper(interval)
            remaining -= interval

    def start(self) -> None:
        """Make sure the session names an adventurer, acquiring one when it does not."""

        if self.session.adventurer_id:
            self.tracker.start_run(self.session.adventurer_id, self.clock())
            return
        if self.config.adventurer_id:
            self._adopt(int(self.config.adventurer_id), reason="configured", previous=None)
            return
        if self.identity_provider is None:
            raise RuntimeError("Session has no adventurer id and no identity provider is configured")
        adventurer_id = self.identity_provider.acquire_adventurer(self.session)
        self._adopt(adventurer_id, reason="bootstrap", previous=None)

    def _adopt(self, adventurer_id: int, *, reason: str, previous: Optional[int]) -> None:
        now = self.clock()
        self.session = self.session.with_adventurer(adventurer_id)
        if self.session_store is not None:
            self.session_store.save(self.session)
        self._reset_runtime(now)
        self.pacing.rng = self._pacing_rng()
        self.tracker.record_rotation(previous, adventurer_id, reason, now)
        self._log("info", "identity_adopted", previous_adventurer_id=previous, reason=reason)

    def _reset_runtime(self, now: float, *, keep_settlement: bool = False) -> None:
        previous = self.runtime
        self.runtime = RunnerRuntimeState.fresh(now)
        self.runtime.last_death_ts = previous.last_death_ts
        self.runtime.last_death_adventurer = previous.last_death_adventurer
        # The per-minute write budget belongs to the signer, not to one identity.
        self.runtime.pacing.write_timestamps = previous.pacing.write_timestamps
        if keep_settlement:
            self.runtime.settlement = previous.settlement

    def run(self, max_iterations: Optional[int] = None) -> StepOutcome:
        outcome = StepOutcome.IDLE
        iterations = 0
        try:
            self.start()
            while not self.stop_event.is_set():
                if max_iterations is not None and iterations >= max_iterations:
                    break
                iterations += 1
                outcome = self._guarded_step()
                if outcome is StepOutcome.HALTED:
                    break
            if self.stop_event.is_set():
                outcome = StepOutcome.STOPPED
        finally:
            self.close()
        return outcome

    def _guarded_step(self) -> StepOutcome:
        try:
            return self.step()
        except ConfigError:
            raise
        except Exception as exc:
            self._logger.exception("Run loop iteration failed", extra={"adventurer_id": self.adventurer_id})
            self._log("error", "step_failed", error=str(exc), error_type=type(exc).__name__)
            return self._count_failure(self.clock())

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        self.writer.close()

    # Reads

    def read_state(self) -> Optional[Tuple[DerivedState, Dict[int, ItemMeta]]]:
        attempts = max(1, int(self.recovery.read_retries))
        adventurer_id = int(self.adventurer_id or 0)
        for attempt in range(1, attempts + 1):
            try:
                snapshot = self.reader.get_world_state(adventurer_id)
                state = derive_state(
                    adventurer_id,
                    snapshot,
                    hp_base=self.policy.hp_base,
                    hp_per_vitality=self.policy.hp_per_vitality,
                )
                wanted = [item.id for item in state.bag_items] + state.equipment.item_ids() + list(state.market)
                return state, self.item_catalog.get_many(wanted)
            except TransientReadError as exc:
                self._log("warn", "read_retry", attempt=attempt, attempts=attempts, error=str(exc))
                if attempt < attempts:
                    self.sleep(self.recovery.read_backoff_s * attempt)
        return None

    # Iteration

    def step(self) -> StepOutcome:
        if self.stop_event.is_set():
            return StepOutcome.STOPPED

        observed = self.read_state()
        now = self.clock()
        if observed is None:
            self.sleep(self.recovery.idle_poll_s)
            return StepOutcome.READ_FAILED
        state, item_meta = observed

        self._observe_progress(state, now)

        outcome = self._settlement_guard(state, now)
        if outcome is not None:
            return outcome

        if state.terminated:
            return self._handle_death(state, now)

        if self.runtime.randomness_circuit_open(now):
            if now - self.runtime.last_randomness_resync_ts >= self.recovery.vrf_resync_interval_s:
                self.runtime.last_randomness_resync_ts = now
                self._log("info", "randomness_circuit_resync", action_count=state.action_count)
                self.writer.resync()
            self.sleep(min(self.recovery.vrf_resync_interval_s, self.runtime.randomness_circuit_until - now))
            return StepOutcome.RANDOMNESS_CIRCUIT

        randomness = self.runtime.blockers.get(RANDOMNESS_BLOCKER)
        if randomness is not None and randomness.active(state.action_count, now):
            self.sleep(randomness.blocked_until_ts - now)
            return StepOutcome.RANDOMNESS_WAIT

        pause = self.pacing.due_break(self.runtime.pacing, now, state.in_combat)
        if pause is not None:
            self._log("info", "pacing_break", kind=pause.kind, seconds=round(pause.seconds, 1))
            self.sleep(pause.seconds)
            # Voluntary pauses are not a lack of progress.
            self.runtime.last_progress_ts = max(self.runtime.last_progress_ts, self.clock())
            return StepOutcome.BREAK

        stalled_for = now - self.runtime.last_progress_ts
        if stalled_for > self.recovery.stale_progress_s:
            self._log("warn", "stale_progress", action_count=state.action_count, stalled_s=round(stalled_for, 1))
            self.writer.resync()
            self.runtime.last_progress_ts = now
            return StepOutcome.STALLED

        return self._act(state, item_meta, now)

    def _observe_progress(self, state: DerivedState, now: float) -> None:
        events = self.tracker.observe(state, now)
        if self.tracker.progressed(events):
            self.runtime.last_progress_ts = now
            if self.runtime.randomness_circuit_until > 0:
                self._log("info", "randomness_circuit_closed", action_count=state.action_count)
            self.runtime.randomness_circuit_until = 0.0
            self.runtime.randomness_failures.clear()
        if any(isinstance(event, LevelUp) for event in events):
            self.pacing.note_event(self.runtime.pacing, "level_up")
        if state.hp > 0 and state.hp_pct < self.config.pacing.near_death_hp_pct:
            self.pacing.note_event(self.runtime.pacing, "near_death")
        market_key = (state.adventurer_id, state.action_count)
        if state.market_open and self._last_market_note != market_key:
            self._last_market_note = market_key
            self.pacing.note_event(self.runtime.pacing, "market")

    def _settlement_guard(self, state: DerivedState, now: float) -> Optional[StepOutcome]:
        settlement = self.runtime.settlement
        if settlement is None:
            return None
        if state.action_count >= settlement.expected_action_count or state_fingerprint(state) != settlement.fingerprint:
            self.runtime.clear_settlement()
            self.runtime.last_progress_ts = max(self.runtime.last_progress_ts, now)
            return None
        waited = now - settlement.started_at
        if waited > self.recovery.settlement_timeout_s:
            self._log(
                "warn",
                "settlement_timeout",
                expected_action_count=settlement.expected_action_count,
                action_count=state.action_count,
                waited_s=round(waited, 1),
            )
            self.runtime.clear_settlement()
            self.runtime.last_progress_ts = now
            self.writer.resync()
            return StepOutcome.SETTLEMENT_TIMEOUT
        self.sleep(self.recovery.settlement_poll_s)
        return StepOutcome.AWAITING_SETTLEMENT

    def _handle_death(self, state: DerivedState, now: float) -> StepOutcome:
        runtime = self.runtime
        if runtime.last_death_adventurer == state.adventurer_id and now - runtime.last_death_ts < self.recovery.death_cooldown_s:
            self.sleep(self.recovery.idle_poll_s)
            return StepOutcome.DEAD
        if runtime.last_death_adventurer != state.adventurer_id:
            self._log("warn", "adventurer_dead", adventurer_level=state.level, xp=state.xp, action_count=state.action_count)
            self.tracker.record_death(state, now)
        runtime.last_death_adventurer = state.adventurer_id
        runtime.last_death_ts = now

        if not self.recovery.auto_recover_death or self.identity_provider is None:
            self._log("error", "identity_halted", reason="adventurer dead and auto recovery disabled")
            return StepOutcome.HALTED
        try:
            fresh_id = self.identity_provider.acquire_adventurer(self.session)
        except Exception as exc:
            self._logger.exception("Identity rotation failed", extra={"adventurer_id": state.adventurer_id})
            self._log("error", "identity_rotation_failed", error=str(exc))
            return StepOutcome.DEAD
        self._adopt(fresh_id, reason="death", previous=state.adventurer_id)
        return StepOutcome.ROTATED

    # Acting

    def _choose(self, state: DerivedState, item_meta: Mapping[int, ItemMeta], now: float) -> Action:
        runtime = self.runtime
        count = state.action_count
        consider_equip = not runtime.blocked(EQUIP_BLOCKER, count, now)
        view = state
        if view.market_open and runtime.blocked(MARKET_BLOCKER, count, now):
            view = dataclasses.replace(view, market=())
        if view.stat_upgrades > 0 and runtime.blocked(STATS_BLOCKER, count, now):
            view = dataclasses.replace(view, stat_upgrades=0)
        return decide(view, self.policy, item_meta, consider_equip=consider_equip)

    def _act(self, state: DerivedState, item_meta: Mapping[int, ItemMeta], now: float) -> StepOutcome:
        action = self._choose(state, item_meta, now)
        if not action.is_write:
            self._log("info", "idle", **action.as_log())
            self.sleep(self.recovery.idle_poll_s)
            return StepOutcome.IDLE

        delay = self.pacing.think_delay_s() + self.pacing.take_dwell_s(self.runtime.pacing, state.in_combat)
        if delay > 0:
            self.sleep(delay)
        throttle = self.pacing.rate_limit_wait_s(self.runtime.pacing, self.clock())
        if throttle > 0:
            self._log("info", "rate_limited", wait_s=round(throttle, 2))
            self.sleep(throttle)
        if self.stop_event.is_set():
            return StepOutcome.STOPPED

        salt = salt_for_action(action, state)
        fingerprint = state_fingerprint(state)
        started = self.clock()
        self._log("info", "action", action_count=state.action_count, hp=state.hp, adventurer_level=state.level, **action.as_log())
        try:
            handle = self._submit(action, state, salt)
            self.pacing.record_write(self.runtime.pacing, self.clock())
            receipt = self._confirm(handle)
            if receipt is not None and receipt.status is TransactionStatus.REVERTED:
                raise WriteError(receipt.kind, receipt.reason or "transaction reverted", entrypoint=handle.entrypoint)
        except _SubmitTimeout:
            return self._expect_after_timeout(state, fingerprint, started, "submit")
        except WriteError as exc:
            return self._handle_write_error(exc, state, action, fingerprint)

        if receipt is None and handle.observable:
            self._log(
                "error",
                "confirm_timeout",
                entrypoint=handle.entrypoint,
                tx_hash=handle.tx_hash,
                action_count=state.action_count,
            )
            # Outcome unknown: wait for the chain before deciding again.
            self.runtime.expect_settlement(state.action_count + 1, self.clock(), fingerprint)
            return self._count_failure(self.clock())

        settlement = self.runtime.expect_settlement(state.action_count + 1, self.clock(), fingerprint)
        settlement.confirmed = receipt is not None
        self.runtime.consecutive_failures = 0
        if action.type is ActionType.EQUIP:
            self.runtime.block_for_action_count(EQUIP_BLOCKER, state.action_count)
        self._log(
            "info",
            "action_submitted",
            action=action.type.value,
            entrypoint=handle.entrypoint,
            tx_hash=handle.tx_hash,
            expected_action_count=settlement.expected_action_count,
            elapsed_s=round(self.clock() - started, 3),
        )
        return StepOutcome.ACTED

    def _dispatch(self, action: Action, adventurer_id: int, salt: Optional[RandomnessSalt]) -> SettlementHandle:
        payload = action.payload
        writer = self.writer
        if action.type is ActionType.START_GAME:
            return writer.start_game(adventurer_id, int(payload.get("weapon_id", self.policy.starting_weapon_id)), salt)
        if action.type is ActionType.EXPLORE:
            return writer.explore(adventurer_id, bool(payload.get("till_beast", False)), salt)
        if action.type is ActionType.ATTACK:
            return writer.attack(adventurer_id, False, salt)
        if action.type is ActionType.FLEE:
            return writer.flee(adventurer_id, False, salt)
        if action.type is ActionType.BUY_POTIONS:
            return writer.buy_potions(adventurer_id, int(payload.get("count", 0)))
        if action.type is ActionType.BUY_ITEMS:
            return writer.buy_items(adventurer_id, int(payload.get("potions", 0)), list(payload.get("items", [])))
        if action.type is ActionType.EQUIP:
            return writer.equip(adventurer_id, [int(item) for item in payload.get("items", [])], salt)
        if action.type is ActionType.SELECT_STATS:
            return writer.select_stat_upgrades(adventurer_id, dict(payload.get("stats", {})))
        raise ValueError(f"Action {action.type.value} is not a write")

    def _submit(self, action: Action, state: DerivedState, salt: Optional[RandomnessSalt]) -> SettlementHandle:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="survivor-submit")
        future = self._executor.submit(self._dispatch, action, state.adventurer_id, salt)
        try:
            return future.result(timeout=self.recovery.submit_timeout_s)
        except FutureTimeoutError as exc:
            # The hung submission keeps its worker; the next write gets a fresh one.
            self._executor.shutdown(wait=False)
            self._executor = None
            raise _SubmitTimeout() from exc

    def _confirm(self, handle: SettlementHandle) -> Optional[TransactionReceipt]:
        if not handle.observable:
            return None
        deadline = self.clock() + self.recovery.confirm_timeout_s
        while not self.stop_event.is_set():
            try:
                receipt = self.reader.get_transaction_status(handle)
            except TransientReadError as exc:
                self._log("warn", "confirm_poll_failed", tx_hash=handle.tx_hash, error=str(exc))
                receipt = None
            if receipt is not None and receipt.status.terminal:
                return receipt
            if self.clock() >= deadline:
                return None
            self.sleep(self.recovery.confirm_poll_s)
        return None

    # Recovery

    def _expect_after_timeout(self, state: DerivedState, fingerprint: Tuple, started: float, source: str) -> StepOutcome:
        now = self.clock()
        self._log(
            "warn",
            "write_timeout",
            source=source,
            action_count=state.action_count,
            elapsed_s=round(now - started, 3),
        )
        self.runtime.expect_settlement(state.action_count + 1, now, fingerprint)
        self.writer.resync()
        return StepOutcome.SUBMIT_TIMEOUT

    def _handle_write_error(self, exc: WriteError, state: DerivedState, action: Action, fingerprint: Tuple) -> StepOutcome:
        now = self.clock()
        count = state.action_count
        kind = exc.kind
        context = {"action": action.type.value, "action_count": count, "kind": kind.value, "error": exc.text}

        if kind is WriteErrorKind.RANDOMNESS_PENDING:
            return self._randomness_backoff(count, now, context)

        if kind is WriteErrorKind.MARKET_CLOSED:
            blocker = self.runtime.block_for_action_count(MARKET_BLOCKER, count)
            self._log("warn", "market_blocked", attempt=blocker.attempts, **context)
            return StepOutcome.WRITE_BLOCKED

        if kind is WriteErrorKind.STATS_UNAVAILABLE:
            blocker = self.runtime.block_for_action_count(STATS_BLOCKER, count)
            self._log("warn", "stats_blocked", attempt=blocker.attempts, **context)
            return StepOutcome.WRITE_BLOCKED

        if kind is WriteErrorKind.NOT_IN_BATTLE:
            self._log("warn", "desync_resync", **context)
            self.writer.resync()
            if action.type is ActionType.EQUIP:
                self.runtime.block_for_action_count(EQUIP_BLOCKER, count)
            return StepOutcome.WRITE_BLOCKED

        if kind is WriteErrorKind.SUBMIT_TIMEOUT:
            return self._expect_after_timeout(state, fingerprint, now, "writer")

        self._log("error", "write_failed", **context)
        if action.type is ActionType.EQUIP:
            self.runtime.block_for_action_count(EQUIP_BLOCKER, count)
        return self._count_failure(now)

    def _randomness_backoff(self, count: int, now: float, context: dict) -> StepOutcome:
        runtime = self.runtime
        recovery = self.recovery
        blocker = runtime.blockers.get(RANDOMNESS_BLOCKER)
        if blocker is None or blocker.blocked_until_action_count != count:
            blocker = Blocker(blocked_until_action_count=count, first_seen_ts=now)
            runtime.blockers[RANDOMNESS_BLOCKER] = blocker
        blocker.attempts += 1
        delay = randomness_backoff_delay(blocker.attempts, recovery.vrf_base_delay_s, recovery.vrf_max_delay_s)
        blocker.blocked_until_ts = now + delay
        recent = runtime.note_randomness_failure(now, recovery.vrf_circuit_window_s)
        self._log(
            "warn",
            "randomness_pending",
            attempt=blocker.attempts,
            delay_s=round(delay, 3),
            waited_s=round(now - blocker.first_seen_ts, 1),
            **context,
        )
        if recent >= recovery.vrf_circuit_attempts:
            runtime.randomness_circuit_until = now + recovery.vrf_circuit_cooldown_s
            runtime.last_randomness_resync_ts = now
            runtime.randomness_failures.clear()
            self._log("error", "randomness_circuit_open", failures=recent, cooldown_s=recovery.vrf_circuit_cooldown_s, **context)
            self.writer.resync()
            return StepOutcome.RANDOMNESS_CIRCUIT
        return StepOutcome.RANDOMNESS_WAIT

    def _count_failure(self, now: float) -> StepOutcome:
        self.runtime.consecutive_failures += 1
        failures = self.runtime.consecutive_failures
        if failures < self.recovery.max_consecutive_failures:
            return StepOutcome.WRITE_FAILED
        self.rebootstrap(reason=f"{failures} consecutive failures")
        return StepOutcome.REBOOTSTRAPPED

    def rebootstrap(self, *, reason: str) -> None:
        """Rebuild reader/writer handles and start from clean runtime state."""

        self._log("warn", "rebootstrap", reason=reason)
        try:
            self.writer.close()
        except Exception:
            self._logger.exception("Closing writer during rebootstrap failed")
        self.reader, self.writer = self.handles_factory(self.session)
        self._reset_runtime(self.clock(), keep_settlement=True)
