from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Optional

from survivor_agent.application.config import PacingConfig, Range
from survivor_agent.application.services.runtime_state import PacingState


RATE_WINDOW_S = 60.0

DWELL_EVENTS = ("near_death", "market", "level_up")


@dataclass(frozen=True)
class Break:
    kind: str
    seconds: float


class PacingScheduler:
    """Human-like timing around the decision loop.

    Delays never interrupt a fight: a break that comes due mid-combat stays due and
    is taken at the first out-of-combat iteration. The write rate limiter applies
    whether or not the rest of the pacing is enabled.
    """

    def __init__(self, config: PacingConfig, rng: random.Random) -> None:
        self.config = config
        self.rng = rng

    def sample(self, window: Range) -> float:
        if window.max <= window.min:
            return float(window.min)
        return self.rng.uniform(window.min, window.max)

    def think_delay_s(self) -> float:
        if not self.config.enabled:
            return 0.0
        return self.sample(self.config.think_delay_ms) / 1000.0

    def note_event(self, state: PacingState, kind: str) -> None:
        if not self.config.enabled or kind not in DWELL_EVENTS:
            return
        window = getattr(self.config, f"{kind}_dwell_s")
        state.pending_dwell_s = max(state.pending_dwell_s, self.sample(window))

    def take_dwell_s(self, state: PacingState, in_combat: bool) -> float:
        if in_combat or state.pending_dwell_s <= 0:
            return 0.0
        dwell = state.pending_dwell_s
        state.pending_dwell_s = 0.0
        return dwell

    def schedule(self, state: PacingState, now: float) -> None:
        if state.next_break_after is None:
            state.next_break_after = int(round(self.sample(self.config.short_break_every_actions)))
        if state.next_long_sleep_at is None:
            state.next_long_sleep_at = now + self.sample(self.config.long_sleep_every_s)

    def due_break(self, state: PacingState, now: float, in_combat: bool) -> Optional[Break]:
        if not self.config.enabled:
            return None
        self.schedule(state, now)
        if in_combat:
            return None
        if now >= float(state.next_long_sleep_at):
            state.next_long_sleep_at = None
            state.actions_since_break = 0
            state.next_break_after = None
            seconds = self.sample(self.config.long_sleep_s)
            self.schedule(state, now + seconds)
            return Break("long_sleep", seconds)
        if state.actions_since_break >= int(state.next_break_after):
            state.actions_since_break = 0
            state.next_break_after = None
            self.schedule(state, now)
            return Break("short_break", self.sample(self.config.short_break_s))
        return None

    def record_write(self, state: PacingState, now: float) -> None:
        state.actions_since_break += 1
        state.write_timestamps.append(now)
        self._trim(state, now)

    def rate_limit_wait_s(self, state: PacingState, now: float) -> float:
        self._trim(state, now)
        limit = max(1, self.config.max_writes_per_minute)
        if len(state.write_timestamps) < limit:
            return 0.0
        oldest = state.write_timestamps[len(state.write_timestamps) - limit]
        return max(0.0, oldest + RATE_WINDOW_S - now)

    @staticmethod
    def _trim(state: PacingState, now: float) -> None:
        while state.write_timestamps and now - state.write_timestamps[0] >= RATE_WINDOW_S:
            state.write_timestamps.popleft()
