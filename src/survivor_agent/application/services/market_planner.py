from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Mapping, Optional

from survivor_agent.application.config import Policy
from survivor_agent.application.services import game_rules
from survivor_agent.application.services.equipment_scoring import dominant_armor_type, ring_score
from survivor_agent.domain.models.action import Action, ActionType
from survivor_agent.domain.models.derived_state import ARMOR_SLOTS, DerivedState, ItemRef
from survivor_agent.domain.models.item import ItemMeta, ItemSlot


ItemMetaMap = Mapping[int, ItemMeta]


@dataclass(frozen=True)
class MarketOffer:
    meta: ItemMeta
    price: int

    @property
    def id(self) -> int:
        return self.meta.id


def gold_reserve(state: DerivedState, policy: Policy) -> int:
    unit = game_rules.potion_price(state.level, state.stats.charisma)
    return max(policy.min_gold_reserve, policy.reserve_potions * unit)


def potion_heal_target(state: DerivedState, policy: Policy) -> float:
    target = policy.buy_potion_if_below_pct
    if game_rules.potion_price(state.level, state.stats.charisma) <= 1:
        target = max(target, policy.cheap_potion_heal_target_pct)
    return target


def potions_to_buy(state: DerivedState, policy: Policy) -> int:
    target = potion_heal_target(state, policy)
    if state.max_hp <= 0 or state.hp_pct >= target:
        return 0
    unit = game_rules.potion_price(state.level, state.stats.charisma)
    heal = game_rules.POTION_HEAL_AMOUNT
    needed = math.ceil((target * state.max_hp - state.hp) / heal)
    without_overshoot = (state.max_hp - state.hp) // heal
    affordable = state.gold // unit
    return max(0, min(needed, without_overshoot, affordable))


def _offers(state: DerivedState, item_meta: ItemMetaMap, budget: int) -> List[MarketOffer]:
    offers = []
    for item_id in state.market:
        meta = item_meta.get(item_id)
        if meta is None or meta.slot is ItemSlot.NONE:
            continue
        price = game_rules.item_price(meta.tier, state.stats.charisma)
        if price <= budget:
            offers.append(MarketOffer(meta=meta, price=price))
    return offers


def _buy(offer: MarketOffer, reason: str) -> Action:
    return Action(
        ActionType.BUY_ITEMS,
        f"{reason} (price {offer.price})",
        {"items": [{"item_id": offer.id, "equip": True}], "potions": 0, "price": offer.price},
    )


def _equipped_power(item: Optional[ItemRef], item_meta: ItemMetaMap) -> int:
    if item is None:
        return 0
    meta = item_meta.get(item.id)
    if meta is None:
        return 0
    return game_rules.item_power(meta.tier, item.xp)


def _early_weapon(state: DerivedState, offers: List[MarketOffer], item_meta: ItemMetaMap, policy: Policy) -> Optional[Action]:
    if state.level > policy.early_weapon_upgrade_max_level:
        return None
    weapon = state.equipment.weapon
    if weapon is not None and weapon.id != policy.starting_weapon_id:
        return None
    current_power = _equipped_power(weapon, item_meta)
    weapons = [
        offer
        for offer in offers
        if offer.meta.slot is ItemSlot.WEAPON
        and game_rules.tier_multiplier(offer.meta.tier) > current_power * (1.0 + policy.market_upgrade_margin)
    ]
    if not weapons:
        return None
    best = min(weapons, key=lambda offer: (offer.meta.tier, offer.price, offer.id))
    return _buy(best, f"early weapon upgrade to tier {best.meta.tier}")


def _fill_armor(state: DerivedState, offers: List[MarketOffer]) -> Optional[Action]:
    empty = [slot for slot in ARMOR_SLOTS if state.equipment.slot(slot) is None]
    candidates = [offer for offer in offers if offer.meta.slot_name in empty]
    if not candidates:
        return None
    if len(empty) > 1:
        pick = min(candidates, key=lambda offer: (offer.price, offer.meta.tier, offer.id))
        return _buy(pick, f"cover empty {pick.meta.slot_name} ({len(empty)} armor slots empty)")
    pick = min(candidates, key=lambda offer: (offer.meta.tier, offer.price, offer.id))
    return _buy(pick, f"fill last empty armor slot {pick.meta.slot_name}")


def _jewelry(state: DerivedState, offers: List[MarketOffer], item_meta: ItemMetaMap, policy: Policy) -> Optional[Action]:
    if state.equipment.ring is None:
        rings = [offer for offer in offers if offer.meta.slot is ItemSlot.RING]
        if rings:
            pick = max(rings, key=lambda offer: (ring_score(ItemRef(offer.id), policy), -offer.meta.tier, -offer.price))
            return _buy(pick, f"acquire ring {pick.id}")
    if state.equipment.neck is None:
        dominant = dominant_armor_type(state.equipment, item_meta)
        necks = [
            offer
            for offer in offers
            if offer.meta.slot is ItemSlot.NECK and dominant is not None
            and game_rules.NECK_ARMOR_AFFINITY.get(offer.id) is dominant
        ]
        if necks:
            pick = min(necks, key=lambda offer: (offer.price, offer.id))
            return _buy(pick, f"acquire neck matching {dominant.value} armor")
    return None


def _upgrades(state: DerivedState, offers: List[MarketOffer], item_meta: ItemMetaMap, policy: Policy) -> Optional[Action]:
    best: Optional[tuple[float, MarketOffer, int]] = None
    for offer in offers:
        equipped = state.equipment.slot(offer.meta.slot_name)
        if equipped is None:
            continue
        current_power = _equipped_power(equipped, item_meta)
        candidate_power = game_rules.item_power(offer.meta.tier, 0)
        if candidate_power <= current_power * (1.0 + policy.market_upgrade_margin):
            continue
        gain = candidate_power - current_power
        if best is None or gain > best[0]:
            best = (gain, offer, current_power)
    if best is None:
        return None
    _, offer, current_power = best
    return _buy(offer, f"upgrade {offer.meta.slot_name} power {current_power} -> {game_rules.item_power(offer.meta.tier, 0)}")


def plan_market(state: DerivedState, item_meta: ItemMetaMap, policy: Policy) -> Optional[Action]:
    """Pick at most one purchase for the open market, or None to move on."""

    if not state.market_open:
        return None

    count = potions_to_buy(state, policy)
    if count > 0:
        unit = game_rules.potion_price(state.level, state.stats.charisma)
        return Action(
            ActionType.BUY_POTIONS,
            f"hp {state.hp_pct:.2f} below heal target {potion_heal_target(state, policy):.2f}",
            {"count": count, "unit_price": unit},
        )

    budget = state.gold - gold_reserve(state, policy)
    if budget <= 0:
        return None
    offers = _offers(state, item_meta, budget)
    if not offers:
        return None

    for planner in (
        lambda: _early_weapon(state, offers, item_meta, policy),
        lambda: _fill_armor(state, offers),
        lambda: _jewelry(state, offers, item_meta, policy),
        lambda: _upgrades(state, offers, item_meta, policy),
    ):
        action = planner()
        if action is not None:
            return action
    return None
