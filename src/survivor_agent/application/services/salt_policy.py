from __future__ import annotations

import hashlib
import json
import random
from typing import Any, Mapping, Optional

from survivor_agent.domain.gateways import RandomnessSalt
from survivor_agent.domain.models.action import Action, ActionType
from survivor_agent.domain.models.derived_state import DerivedState


def derive_seed(namespace: str, context: Mapping[str, Any]) -> int:
    """Stable 32-bit seed for ``namespace``; key order inside ``context`` does not matter."""

    canonical = json.dumps(
        [namespace, context], sort_keys=True, separators=(",", ":"), default=str, allow_nan=False
    )
    return int.from_bytes(hashlib.sha256(canonical.encode("utf-8")).digest()[:4], "big")


def identity_rng(namespace: str, adventurer_id: int, *, deterministic: bool = True) -> random.Random:
    if not deterministic:
        return random.Random()
    return random.Random(derive_seed(namespace, {"adventurer_id": int(adventurer_id)}))


def explore_salt(adventurer_id: int, xp: int) -> RandomnessSalt:
    return RandomnessSalt(kind="explore", inputs=(int(xp), int(adventurer_id)))


def battle_salt(adventurer_id: int, xp: int, action_count: int) -> RandomnessSalt:
    # The salt targets the action count the battle action will settle at.
    return RandomnessSalt(kind="battle", inputs=(int(xp), int(adventurer_id), int(action_count) + 1))


def salt_for_action(action: Action, state: DerivedState) -> Optional[RandomnessSalt]:
    if action.type is ActionType.EXPLORE:
        return explore_salt(state.adventurer_id, state.xp)
    if action.type in (ActionType.ATTACK, ActionType.FLEE):
        return battle_salt(state.adventurer_id, state.xp, state.action_count)
    if action.type is ActionType.EQUIP and action.payload.get("in_combat"):
        return battle_salt(state.adventurer_id, state.xp, state.action_count)
    return None
