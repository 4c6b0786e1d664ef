from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from survivor_agent.application.config import Policy
from survivor_agent.application.services import game_rules
from survivor_agent.domain.models.derived_state import ARMOR_SLOTS, DerivedState, Equipment, ItemRef
from survivor_agent.domain.models.item import ItemMeta, ItemSlot, ItemType


ItemMetaMap = Mapping[int, ItemMeta]


@dataclass(frozen=True)
class EquipChoice:
    item_id: int
    slot: str
    reason: str


def dominant_armor_type(equipment: Equipment, item_meta: ItemMetaMap) -> Optional[ItemType]:
    counts: Counter = Counter()
    first_seen: Dict[ItemType, int] = {}
    for index, slot in enumerate(ARMOR_SLOTS):
        item = equipment.slot(slot)
        meta = item_meta.get(item.id) if item is not None else None
        if meta is None or not meta.item_type.is_armor:
            continue
        counts[meta.item_type] += 1
        first_seen.setdefault(meta.item_type, index)
    if not counts:
        return None
    return max(counts, key=lambda armor_type: (counts[armor_type], -first_seen[armor_type]))


def horizon_bias(level: int, policy: Policy) -> float:
    horizon = max(1, policy.potential_horizon_level)
    return policy.potential_bias * min(1.0, max(1, level) / horizon)


def item_score(item: ItemRef, meta: ItemMeta) -> float:
    return float(game_rules.greatness(item.xp) * game_rules.tier_multiplier(meta.tier))


def potential_score(item: ItemRef, meta: ItemMeta, level: int, policy: Policy) -> float:
    current = game_rules.greatness(item.xp)
    headroom = game_rules.MAX_GREATNESS - current
    return game_rules.tier_multiplier(meta.tier) * (current + horizon_bias(level, policy) * headroom)


def ring_score(item: ItemRef, policy: Policy) -> float:
    # Ring greatness is added to luck, which drives critical hits.
    bonus = policy.preferred_ring_bonus if item.id == policy.preferred_ring_id else 0.0
    return game_rules.greatness(item.xp) + bonus


def neck_score(item: ItemRef, equipment: Equipment, item_meta: ItemMetaMap, level: int, policy: Policy) -> float:
    affinity = game_rules.NECK_ARMOR_AFFINITY.get(item.id)
    matching = 0
    for slot in ARMOR_SLOTS:
        armor = equipment.slot(slot)
        meta = item_meta.get(armor.id) if armor is not None else None
        if meta is not None and meta.item_type is affinity:
            matching += 1
    current = game_rules.greatness(item.xp)
    growth = current + horizon_bias(level, policy) * (game_rules.MAX_GREATNESS - current)
    return (1 + matching) * growth


def score_for_slot(item: ItemRef, meta: ItemMeta, state: DerivedState, item_meta: ItemMetaMap, policy: Policy) -> float:
    if meta.slot is ItemSlot.RING:
        return ring_score(item, policy)
    if meta.slot is ItemSlot.NECK:
        return neck_score(item, state.equipment, item_meta, state.level, policy)
    return item_score(item, meta)


def choose_equip_items(state: DerivedState, item_meta: ItemMetaMap, policy: Policy) -> List[EquipChoice]:
    best_by_slot: Dict[str, tuple[ItemRef, ItemMeta, float]] = {}
    for item in state.bag_items:
        meta = item_meta.get(item.id)
        if meta is None or meta.slot is ItemSlot.NONE:
            continue
        score = score_for_slot(item, meta, state, item_meta, policy)
        current = best_by_slot.get(meta.slot_name)
        if current is None or score > current[2]:
            best_by_slot[meta.slot_name] = (item, meta, score)

    choices: List[EquipChoice] = []
    threshold = 1.0 + policy.equip_upgrade_threshold
    for slot, (item, meta, score) in best_by_slot.items():
        equipped = state.equipment.slot(slot)
        equipped_meta = item_meta.get(equipped.id) if equipped is not None else None
        if equipped is None or equipped_meta is None:
            choices.append(EquipChoice(item.id, slot, f"fill empty {slot}"))
            continue

        equipped_score = score_for_slot(equipped, equipped_meta, state, item_meta, policy)
        if score > equipped_score * threshold:
            choices.append(EquipChoice(item.id, slot, f"{slot} score {score:.1f} > {equipped_score:.1f}"))
            continue

        if slot in ARMOR_SLOTS and meta.tier < equipped_meta.tier:
            floor = equipped_score * (1.0 - policy.armor_downgrade_tolerance)
            candidate_potential = potential_score(item, meta, state.level, policy)
            equipped_potential = potential_score(equipped, equipped_meta, state.level, policy)
            if score >= floor and candidate_potential > equipped_potential:
                choices.append(
                    EquipChoice(
                        item.id,
                        slot,
                        f"{slot} tier {meta.tier} over {equipped_meta.tier} (potential {candidate_potential:.1f})",
                    )
                )
    return choices
