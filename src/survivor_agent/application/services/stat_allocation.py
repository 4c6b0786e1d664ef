from __future__ import annotations

import math
from typing import Dict, List, Tuple

from survivor_agent.application.config import Policy
from survivor_agent.application.services.game_rules import charisma_for_floor_potion_price
from survivor_agent.domain.models.derived_state import STAT_NAMES, DerivedState


# Luck only grows through jewelry; points routed to it go to vitality instead.
_UNALLOCATABLE = {"luck": "vitality"}


def stat_targets(level: int, policy: Policy) -> List[Tuple[str, int]]:
    """Ordered (stat, target) pairs the allocator fills greedily."""

    level = max(1, int(level))
    mind = policy.mid_game_mind_multiplier if level >= policy.mid_game_level else 1.0
    return [
        ("charisma", charisma_for_floor_potion_price(level)),
        ("dexterity", math.ceil(level * policy.dex_target_ratio)),
        ("vitality", math.ceil(level * policy.vit_target_ratio)),
        ("charisma", math.ceil(level * policy.cha_target_ratio)),
        ("strength", math.ceil(level * policy.str_target_ratio)),
        ("intelligence", math.ceil(level * policy.int_target_ratio * mind)),
        ("wisdom", math.ceil(level * policy.wis_target_ratio * mind)),
    ]


def pick_stats(state: DerivedState, policy: Policy) -> Dict[str, int]:
    allocated = {name: 0 for name in STAT_NAMES}
    targets = stat_targets(state.level, policy)
    order = policy.stat_upgrade_priority

    for spent in range(max(0, state.stat_upgrades)):
        chosen = None
        for name, target in targets:
            if state.stats.get(name) + allocated[name] < target:
                chosen = name
                break
        if chosen is None:
            fallback = order[spent % len(order)]
            chosen = _UNALLOCATABLE.get(fallback, fallback)
        allocated[chosen] += 1
    return allocated
