from __future__ import annotations

from typing import Any, Mapping

from survivor_agent.application.services.game_rules import level_from_xp, ratio_chance
from survivor_agent.application.services.snapshot_parsing import (
    as_mapping,
    parse_bag,
    parse_item,
    parse_market,
    to_bool,
    to_int,
)
from survivor_agent.domain.models.derived_state import (
    EQUIPMENT_SLOTS,
    STAT_NAMES,
    BeastState,
    DerivedState,
    Equipment,
    Stats,
)


def derive_state(
    adventurer_id: int,
    snapshot: Mapping[str, Any],
    *,
    hp_base: int,
    hp_per_vitality: int,
) -> DerivedState:
    """Turn a raw world snapshot into a DerivedState. Pure and deterministic."""

    snapshot = as_mapping(snapshot)
    adventurer = as_mapping(snapshot.get("adventurer"))
    raw_stats = as_mapping(adventurer.get("stats"))
    stats = Stats(**{name: max(0, to_int(raw_stats.get(name))) for name in STAT_NAMES})

    hp = max(0, to_int(adventurer.get("health")))
    max_hp = max(0, int(hp_base) + int(hp_per_vitality) * stats.vitality)
    hp_pct = hp / max_hp if max_hp > 0 else 1.0
    xp = max(0, to_int(adventurer.get("xp")))
    level = level_from_xp(xp)

    raw_beast = as_mapping(snapshot.get("beast"))
    beast = BeastState(
        id=max(0, to_int(raw_beast.get("id"))),
        health=max(0, to_int(raw_beast.get("health"))),
        level=max(0, to_int(raw_beast.get("level"))),
        is_collectable=to_bool(raw_beast.get("is_collectable")),
    )

    raw_equipment = as_mapping(adventurer.get("equipment"))
    equipment = Equipment(**{slot: parse_item(raw_equipment.get(slot)) for slot in EQUIPMENT_SLOTS})

    return DerivedState(
        adventurer_id=int(adventurer_id),
        hp=hp,
        max_hp=max_hp,
        hp_pct=max(0.0, min(1.0, hp_pct)),
        xp=xp,
        level=level,
        gold=max(0, to_int(adventurer.get("gold"))),
        action_count=max(0, to_int(adventurer.get("action_count"))),
        stat_upgrades=max(0, to_int(adventurer.get("stat_upgrades_available"))),
        stats=stats,
        beast=beast,
        flee_chance=ratio_chance(stats.dexterity, level),
        avoid_obstacle_chance=ratio_chance(stats.intelligence, level),
        avoid_ambush_chance=ratio_chance(stats.wisdom, level),
        bag_items=parse_bag(snapshot.get("bag")),
        equipment=equipment,
        market=parse_market(snapshot.get("market")),
    )
