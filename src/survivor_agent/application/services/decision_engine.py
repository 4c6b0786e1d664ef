from __future__ import annotations

from typing import Mapping

from survivor_agent.application.config import Policy
from survivor_agent.application.services.combat_estimator import best_loadout_swap, estimate
from survivor_agent.application.services.equipment_scoring import choose_equip_items
from survivor_agent.application.services.market_planner import plan_market
from survivor_agent.application.services.stat_allocation import pick_stats
from survivor_agent.domain.models.action import Action, ActionType
from survivor_agent.domain.models.derived_state import DerivedState
from survivor_agent.domain.models.item import ItemMeta


def _combat_action(state: DerivedState, policy: Policy, item_meta: Mapping[int, ItemMeta], consider_equip: bool) -> Action:
    odds = estimate(state, item_meta)
    beast = state.beast
    summary = {
        "beast_level": beast.level,
        "beast_health": beast.health,
        "hit_damage": odds.hit_damage,
        "incoming_per_hit": round(odds.incoming_per_hit, 2),
        "turns_to_kill": odds.turns_to_kill,
        "expected_fight_damage": round(odds.expected_fight_damage, 2),
        "flee_chance": round(state.flee_chance, 3),
    }

    level_cap = max(1, state.level) * policy.max_beast_level_ratio
    if beast.level > level_cap and state.hp_pct < policy.near_full_hp_pct:
        return Action(ActionType.FLEE, f"beast level {beast.level} too high for level {state.level}", summary)

    if odds.turns_to_kill >= policy.slow_fight_turns and state.flee_chance >= policy.slow_fight_min_flee_chance:
        return Action(ActionType.FLEE, f"slow fight ({odds.turns_to_kill} turns) with flee chance {state.flee_chance:.2f}", summary)

    if (
        odds.expected_fight_damage > policy.fight_damage_hp_fraction * state.hp
        and state.flee_chance >= policy.danger_min_flee_chance
        and odds.expected_flee_damage(state.flee_chance) < odds.expected_fight_damage
    ):
        return Action(
            ActionType.FLEE,
            f"expected fight damage {odds.expected_fight_damage:.0f} exceeds {policy.fight_damage_hp_fraction:.0%} of hp {state.hp}",
            summary,
        )

    if state.hp_pct < policy.flee_below_hp_pct:
        critical = state.hp_pct < policy.flee_below_hp_pct * policy.critical_hp_factor
        if state.flee_chance >= policy.min_flee_chance or critical:
            return Action(ActionType.FLEE, f"hp {state.hp_pct:.2f} below flee threshold", summary)

    if consider_equip:
        swap = best_loadout_swap(state, item_meta, min_gain=policy.combat_equip_min_gain)
        if swap is not None:
            return Action(
                ActionType.EQUIP,
                f"mid-combat swap of {swap.slot} cuts expected damage by {swap.gain:.0%}",
                {"items": [swap.item.id], "in_combat": True},
            )

    return Action(ActionType.ATTACK, "combat attack", summary)


def decide(
    state: DerivedState,
    policy: Policy,
    item_meta: Mapping[int, ItemMeta],
    *,
    consider_equip: bool = True,
) -> Action:
    """Pick the next action. Pure: identical inputs always give an identical Action."""

    if state.not_started:
        return Action(ActionType.START_GAME, "adventurer not started", {"weapon_id": policy.starting_weapon_id})

    if state.terminated:
        return Action(ActionType.WAIT, f"adventurer {state.adventurer_id} is dead (xp {state.xp})")

    if state.in_combat:
        return _combat_action(state, policy, item_meta, consider_equip)

    if state.stat_upgrades > 0:
        return Action(
            ActionType.SELECT_STATS,
            f"stat upgrades available: {state.stat_upgrades}",
            {"stats": pick_stats(state, policy)},
        )

    purchase = plan_market(state, item_meta, policy)
    if purchase is not None:
        return purchase

    if consider_equip and state.bag_items:
        choices = choose_equip_items(state, item_meta, policy)
        if choices:
            return Action(
                ActionType.EQUIP,
                "; ".join(choice.reason for choice in choices),
                {"items": [choice.item_id for choice in choices], "in_combat": False},
            )

    till_beast = state.hp_pct >= policy.explore_till_beast_pct and state.level < policy.till_beast_max_level
    return Action(ActionType.EXPLORE, "advance dungeon", {"till_beast": till_beast})
