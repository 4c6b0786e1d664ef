from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from survivor_agent.domain.events import (
    ActionCountAdvanced,
    AdventurerDied,
    IdentityRotated,
    LevelUp,
    NewBest,
    NewMaxLevel,
    TargetLevelReached,
    XpGained,
    milestone_data,
    milestone_name,
)
from survivor_agent.domain.gateways import Observer
from survivor_agent.domain.models.derived_state import DerivedState


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class ProgressTracker:
    """Milestone bookkeeping for the adventurer currently being played.

    ``observe`` reports whether xp or the action count moved forward, which is the
    loop's definition of progress for stall detection.
    """

    def __init__(self, observer: Observer, *, target_level: int, progress_store=None) -> None:
        self.observer = observer
        self.target_level = int(target_level)
        self.progress_store = progress_store
        self._logger = logging.getLogger(__name__)
        self.start_run(None, 0.0)

    def start_run(self, adventurer_id: Optional[int], now: float) -> None:
        self.adventurer_id = adventurer_id
        self.started_at = now
        self.last_xp: Optional[int] = None
        self.last_action_count: Optional[int] = None
        self.last_level: Optional[int] = None
        self.max_level = 0
        self.max_xp = 0
        self.target_announced = False

    def _emit(self, event: object) -> None:
        self.observer.milestone(milestone_name(event), milestone_data(event))

    def observe(self, state: DerivedState, now: float) -> List[object]:
        if self.adventurer_id != state.adventurer_id:
            self.start_run(state.adventurer_id, now)

        events: List[object] = []
        if self.last_xp is not None and state.xp > self.last_xp:
            events.append(XpGained(state.adventurer_id, state.xp, state.hp))
        if self.last_action_count is not None and state.action_count > self.last_action_count:
            events.append(ActionCountAdvanced(state.adventurer_id, state.action_count))
        if self.last_level is not None and state.level > self.last_level and state.xp > 0:
            events.append(LevelUp(state.adventurer_id, self.last_level, state.level))
        if state.xp > 0 and state.level > self.max_level:
            if self.max_level > 0:
                events.append(NewMaxLevel(state.adventurer_id, state.level))
            self.max_level = state.level
        if state.level >= self.target_level and not self.target_announced and state.xp > 0:
            self.target_announced = True
            events.append(TargetLevelReached(state.adventurer_id, state.level, self.target_level))

        self.last_xp = state.xp if self.last_xp is None else max(self.last_xp, state.xp)
        self.last_action_count = (
            state.action_count if self.last_action_count is None else max(self.last_action_count, state.action_count)
        )
        self.last_level = state.level if self.last_level is None else max(self.last_level, state.level)
        self.max_xp = max(self.max_xp, state.xp)

        if events and self.progress_store is not None and state.xp > 0:
            sample = {
                "ts": _iso(now),
                "adventurer_id": state.adventurer_id,
                "level": state.level,
                "xp": state.xp,
                "action_count": state.action_count,
            }
            if self.progress_store.maybe_update_best(sample):
                events.append(NewBest(state.adventurer_id, state.level, state.xp, state.action_count))
                self._save_store()

        for event in events:
            self._emit(event)
        return events

    @staticmethod
    def progressed(events: List[object]) -> bool:
        return any(isinstance(event, (XpGained, ActionCountAdvanced)) for event in events)

    def record_death(self, state: DerivedState, now: float) -> None:
        self._emit(AdventurerDied(state.adventurer_id, state.level, state.xp, state.action_count))
        if self.progress_store is None:
            return
        self.progress_store.append_run(
            {
                "adventurer_id": state.adventurer_id,
                "started_at": _iso(self.started_at),
                "ended_at": _iso(now),
                "duration_s": round(max(0.0, now - self.started_at), 3),
                "end_level": state.level,
                "end_xp": state.xp,
                "end_action_count": state.action_count,
                "max_level": max(self.max_level, state.level),
                "max_xp": max(self.max_xp, state.xp),
            }
        )
        self._save_store()

    def record_rotation(self, previous_id: Optional[int], adventurer_id: int, reason: str, now: float) -> None:
        self._emit(IdentityRotated(previous_id, adventurer_id, reason))
        self.start_run(adventurer_id, now)

    def _save_store(self) -> None:
        try:
            self.progress_store.save()
        except OSError:
            self._logger.exception("Progress store write failed")
