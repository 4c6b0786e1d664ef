from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


class ActionType(str, Enum):
    START_GAME = "startGame"
    EXPLORE = "explore"
    ATTACK = "attack"
    FLEE = "flee"
    BUY_POTIONS = "buyPotions"
    BUY_ITEMS = "buyItems"
    EQUIP = "equip"
    SELECT_STATS = "selectStats"
    WAIT = "wait"


WRITE_ACTIONS = frozenset(action for action in ActionType if action is not ActionType.WAIT)


@dataclass(frozen=True)
class Action:
    type: ActionType
    reason: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not str(self.reason or "").strip():
            raise ValueError("Action.reason is required")

    @property
    def is_write(self) -> bool:
        return self.type in WRITE_ACTIONS

    def as_log(self) -> dict[str, Any]:
        return {"action": self.type.value, "reason": self.reason, "payload": dict(self.payload)}
