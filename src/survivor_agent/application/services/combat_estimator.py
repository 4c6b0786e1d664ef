"""Local approximation of the contract's combat math.

Every number produced here is a planning heuristic. Settlement on chain is
authoritative; the estimator only has to rank options the same way the contract would.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Mapping, Optional

from survivor_agent.application.services import game_rules
from survivor_agent.domain.models.derived_state import ARMOR_SLOTS, DerivedState, Equipment, ItemRef
from survivor_agent.domain.models.item import ItemMeta, ItemSlot, ItemType


ItemMetaMap = Mapping[int, ItemMeta]

_SWAPPABLE_SLOTS = ("weapon",) + ARMOR_SLOTS


@dataclass(frozen=True)
class CombatEstimate:
    hit_damage: int
    incoming_per_hit: float
    max_incoming_hit: int
    turns_to_kill: int
    expected_fight_damage: float

    def expected_flee_damage(self, flee_chance: float) -> float:
        if flee_chance <= 0:
            return math.inf
        return self.incoming_per_hit * (1.0 / flee_chance - 1.0)


@dataclass(frozen=True)
class LoadoutSwap:
    item: ItemRef
    slot: str
    estimate: CombatEstimate
    expected_damage: float
    gain: float


def _meta_for(item: Optional[ItemRef], item_meta: ItemMetaMap) -> Optional[ItemMeta]:
    if item is None:
        return None
    return item_meta.get(item.id)


def estimated_hit_damage(state: DerivedState, item_meta: ItemMetaMap, equipment: Equipment | None = None) -> int:
    equipment = equipment or state.equipment
    weapon = equipment.weapon
    meta = _meta_for(weapon, item_meta)
    if weapon is None or meta is None:
        return game_rules.MIN_DAMAGE_TO_BEAST

    _, beast_armor_type = game_rules.beast_types(state.beast.id)
    beast_armor = game_rules.beast_power(state.beast.id, state.beast.level)
    base = game_rules.item_power(meta.tier, weapon.xp)
    elemental = game_rules.elemental_multiplier(meta.item_type, beast_armor_type)
    strength_factor = 1.0 + game_rules.STRENGTH_DAMAGE_BONUS_PER_POINT * state.stats.strength
    crit_factor = 1.0 + game_rules.critical_chance(state.stats.luck) * game_rules.CRITICAL_HIT_BONUS
    raw = base * elemental * strength_factor * crit_factor
    return max(game_rules.MIN_DAMAGE_TO_BEAST, int(raw - beast_armor))


def _neck_bonus(equipment: Equipment, item_meta: ItemMetaMap, armor_type: ItemType) -> float:
    neck = equipment.neck
    if neck is None:
        return 0.0
    if game_rules.NECK_ARMOR_AFFINITY.get(neck.id) is not armor_type:
        return 0.0
    return game_rules.greatness(neck.xp) * game_rules.NECK_ARMOR_BONUS_PER_GREATNESS


def _slot_damage(state: DerivedState, item_meta: ItemMetaMap, equipment: Equipment, slot: str) -> int:
    attack_type, _ = game_rules.beast_types(state.beast.id)
    power = game_rules.beast_power(state.beast.id, state.beast.level)
    armor = equipment.slot(slot)
    meta = _meta_for(armor, item_meta)
    if armor is None or meta is None:
        raw = power * game_rules.elemental_multiplier(attack_type, None)
        return max(game_rules.MIN_DAMAGE_FROM_BEAST, int(raw))
    armor_value = game_rules.item_power(meta.tier, armor.xp) * (1.0 + _neck_bonus(equipment, item_meta, meta.item_type))
    raw = power * game_rules.elemental_multiplier(attack_type, meta.item_type) - armor_value
    return max(game_rules.MIN_DAMAGE_FROM_BEAST, int(raw))


def estimated_incoming_per_hit(state: DerivedState, item_meta: ItemMetaMap, equipment: Equipment | None = None) -> float:
    equipment = equipment or state.equipment
    per_slot = [_slot_damage(state, item_meta, equipment, slot) for slot in ARMOR_SLOTS]
    return sum(per_slot) / len(per_slot)


def estimate(state: DerivedState, item_meta: ItemMetaMap, equipment: Equipment | None = None) -> CombatEstimate:
    equipment = equipment or state.equipment
    hit = estimated_hit_damage(state, item_meta, equipment)
    incoming = estimated_incoming_per_hit(state, item_meta, equipment)
    max_hit = max(_slot_damage(state, item_meta, equipment, slot) for slot in ARMOR_SLOTS)
    turns = max(1, math.ceil(state.beast.health / max(1, hit)))
    return CombatEstimate(
        hit_damage=hit,
        incoming_per_hit=incoming,
        max_incoming_hit=max_hit,
        turns_to_kill=turns,
        expected_fight_damage=incoming * (turns - 1),
    )


def best_loadout_swap(
    state: DerivedState,
    item_meta: ItemMetaMap,
    *,
    min_gain: float,
) -> Optional[LoadoutSwap]:
    """Find the single bag item whose swap most reduces expected damage taken.

    Equipping mid-combat gives the beast a free attack, so the candidate's expected
    damage is charged one extra hit relative to simply fighting on.
    """

    current = estimate(state, item_meta)
    if current.expected_fight_damage <= 0:
        return None

    best: Optional[LoadoutSwap] = None
    for item in state.bag_items:
        meta = item_meta.get(item.id)
        if meta is None or meta.slot_name not in _SWAPPABLE_SLOTS:
            continue
        if meta.slot is ItemSlot.WEAPON and not meta.item_type.is_weapon:
            continue
        candidate_equipment = replace(state.equipment, **{meta.slot_name: item})
        candidate = estimate(state, item_meta, candidate_equipment)
        if candidate.max_incoming_hit >= state.hp:
            continue
        expected = candidate.incoming_per_hit * candidate.turns_to_kill
        gain = (current.expected_fight_damage - expected) / current.expected_fight_damage
        if gain < min_gain:
            continue
        if best is None or expected < best.expected_damage:
            best = LoadoutSwap(item=item, slot=meta.slot_name, estimate=candidate, expected_damage=expected, gain=gain)
    return best
