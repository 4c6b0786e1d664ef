from __future__ import annotations

import math

from survivor_agent.domain.models.item import ItemType


MAX_GREATNESS = 20

MIN_DAMAGE_TO_BEAST = 4
MIN_DAMAGE_FROM_BEAST = 2

STRENGTH_DAMAGE_BONUS_PER_POINT = 0.10
CRITICAL_HIT_BONUS = 1.0

STRONG_MULTIPLIER = 1.5
FAIR_MULTIPLIER = 1.0
WEAK_MULTIPLIER = 0.5

POTION_HEAL_AMOUNT = 10
ITEM_BASE_PRICE = 4

NECK_ARMOR_BONUS_PER_GREATNESS = 0.03
BEAST_TYPE_SIZE = 25
BEAST_TIER_SIZE = 5

_TIER_MULTIPLIERS = {1: 5, 2: 4, 3: 3, 4: 2, 5: 1}

# weapon type -> armor type -> multiplier
_EFFECTIVENESS = {
    ItemType.MAGIC: {ItemType.METAL: STRONG_MULTIPLIER, ItemType.CLOTH: FAIR_MULTIPLIER, ItemType.HIDE: WEAK_MULTIPLIER},
    ItemType.BLADE: {ItemType.CLOTH: STRONG_MULTIPLIER, ItemType.HIDE: FAIR_MULTIPLIER, ItemType.METAL: WEAK_MULTIPLIER},
    ItemType.BLUDGEON: {ItemType.HIDE: STRONG_MULTIPLIER, ItemType.METAL: FAIR_MULTIPLIER, ItemType.CLOTH: WEAK_MULTIPLIER},
}

# neck item id -> armor type it reinforces
NECK_ARMOR_AFFINITY = {
    1: ItemType.HIDE,   # pendant
    2: ItemType.METAL,  # necklace
    3: ItemType.CLOTH,  # amulet
}

_BEAST_FAMILIES = (
    (ItemType.MAGIC, ItemType.CLOTH),
    (ItemType.BLADE, ItemType.HIDE),
    (ItemType.BLUDGEON, ItemType.METAL),
)


def level_from_xp(xp: int) -> int:
    safe_xp = max(0, int(xp))
    return max(1, math.isqrt(safe_xp))


def greatness(item_xp: int) -> int:
    safe_xp = max(0, int(item_xp))
    return max(1, min(MAX_GREATNESS, math.isqrt(safe_xp)))


def tier_multiplier(tier: int) -> int:
    return _TIER_MULTIPLIERS.get(int(tier or 0), 0)


def item_power(tier: int, item_xp: int) -> int:
    return tier_multiplier(tier) * greatness(item_xp)


def elemental_multiplier(attack_type: ItemType, armor_type: ItemType | None) -> float:
    if armor_type is None or armor_type is ItemType.NONE:
        return STRONG_MULTIPLIER
    return _EFFECTIVENESS.get(attack_type, {}).get(armor_type, FAIR_MULTIPLIER)


def beast_tier(beast_id: int) -> int:
    if beast_id <= 0:
        return 5
    return ((int(beast_id) - 1) % BEAST_TYPE_SIZE) // BEAST_TIER_SIZE + 1


def beast_types(beast_id: int) -> tuple[ItemType, ItemType]:
    """Return (attack type, armor type) for a beast id."""

    if beast_id <= 0:
        return _BEAST_FAMILIES[0]
    family = min(len(_BEAST_FAMILIES) - 1, (int(beast_id) - 1) // BEAST_TYPE_SIZE)
    return _BEAST_FAMILIES[family]


def beast_power(beast_id: int, beast_level: int) -> int:
    return tier_multiplier(beast_tier(beast_id)) * max(1, int(beast_level))


def ratio_chance(stat_value: int, level: int) -> float:
    return max(0.0, min(1.0, int(stat_value) / max(1, int(level))))


def critical_chance(luck: int) -> float:
    return max(0.0, min(1.0, int(luck) / 100.0))


def potion_price(level: int, charisma: int) -> int:
    return max(1, int(level) - 2 * int(charisma))


def item_price(tier: int, charisma: int) -> int:
    base = ITEM_BASE_PRICE * max(1, 6 - int(tier or 5))
    return max(1, base - int(charisma))


def charisma_for_floor_potion_price(level: int) -> int:
    return max(0, math.ceil((int(level) - 1) / 2))
