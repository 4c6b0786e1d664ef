from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional, Tuple


MARKET_BLOCKER = "market"
STATS_BLOCKER = "stats"
EQUIP_BLOCKER = "equip"
RANDOMNESS_BLOCKER = "randomness"


@dataclass
class Blocker:
    blocked_until_action_count: Optional[int] = None
    blocked_until_ts: float = 0.0
    attempts: int = 0
    first_seen_ts: float = 0.0

    def active(self, action_count: int, now: float) -> bool:
        if self.blocked_until_action_count is not None and action_count > self.blocked_until_action_count:
            return False
        return now < self.blocked_until_ts


@dataclass
class PacingState:
    actions_since_break: int = 0
    next_break_after: Optional[int] = None
    next_long_sleep_at: Optional[float] = None
    pending_dwell_s: float = 0.0
    write_timestamps: Deque[float] = field(default_factory=deque)


@dataclass
class Settlement:
    expected_action_count: int
    started_at: float
    fingerprint: Tuple
    confirmed: bool = False


@dataclass
class RunnerRuntimeState:
    """Mutable bookkeeping for one identity's loop. Never shared between loops."""

    last_progress_ts: float = 0.0
    blockers: Dict[str, Blocker] = field(default_factory=dict)
    settlement: Optional[Settlement] = None
    consecutive_failures: int = 0
    randomness_circuit_until: float = 0.0
    last_randomness_resync_ts: float = 0.0
    last_death_ts: float = -math.inf
    last_death_adventurer: Optional[int] = None
    randomness_failures: Deque[float] = field(default_factory=deque)
    pacing: PacingState = field(default_factory=PacingState)

    @classmethod
    def fresh(cls, now: float) -> "RunnerRuntimeState":
        return cls(last_progress_ts=now)

    def blocked(self, name: str, action_count: int, now: float) -> bool:
        blocker = self.blockers.get(name)
        return blocker is not None and blocker.active(action_count, now)

    def block_for_action_count(self, name: str, action_count: int) -> Blocker:
        blocker = self.blockers.get(name)
        if blocker is None or blocker.blocked_until_action_count != action_count:
            blocker = Blocker(blocked_until_action_count=action_count)
            self.blockers[name] = blocker
        blocker.blocked_until_ts = math.inf
        blocker.attempts += 1
        return blocker

    def clear_action_blockers(self) -> None:
        self.blockers.clear()

    def expect_settlement(self, action_count: int, now: float, fingerprint: Tuple) -> Settlement:
        self.settlement = Settlement(expected_action_count=action_count, started_at=now, fingerprint=fingerprint)
        return self.settlement

    def clear_settlement(self) -> None:
        self.settlement = None

    def randomness_circuit_open(self, now: float) -> bool:
        return now < self.randomness_circuit_until

    def note_randomness_failure(self, now: float, window_s: float) -> int:
        """Record one pending-randomness failure; returns how many fall inside the window."""

        self.randomness_failures.append(now)
        while self.randomness_failures and now - self.randomness_failures[0] > window_s:
            self.randomness_failures.popleft()
        return len(self.randomness_failures)


def randomness_backoff_delay(attempt: int, base_s: float, cap_s: float) -> float:
    """Exponential delay for the nth consecutive pending-randomness failure, capped."""

    exponent = max(0, int(attempt) - 1)
    if exponent > 62:
        return float(cap_s)
    return float(min(cap_s, base_s * (2**exponent)))
