from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Optional, Tuple


STAT_NAMES: Tuple[str, ...] = (
    "strength",
    "dexterity",
    "vitality",
    "intelligence",
    "wisdom",
    "charisma",
    "luck",
)

EQUIPMENT_SLOTS: Tuple[str, ...] = ("weapon", "chest", "head", "waist", "foot", "hand", "neck", "ring")
ARMOR_SLOTS: Tuple[str, ...] = ("chest", "head", "waist", "foot", "hand")


@dataclass(frozen=True)
class ItemRef:
    id: int
    xp: int = 0


@dataclass(frozen=True)
class Stats:
    strength: int = 0
    dexterity: int = 0
    vitality: int = 0
    intelligence: int = 0
    wisdom: int = 0
    charisma: int = 0
    luck: int = 0

    def get(self, name: str) -> int:
        return int(getattr(self, name, 0) or 0)

    def as_dict(self) -> dict[str, int]:
        return {name: self.get(name) for name in STAT_NAMES}


@dataclass(frozen=True)
class BeastState:
    id: int = 0
    health: int = 0
    level: int = 0
    is_collectable: bool = False


@dataclass(frozen=True)
class Equipment:
    weapon: Optional[ItemRef] = None
    chest: Optional[ItemRef] = None
    head: Optional[ItemRef] = None
    waist: Optional[ItemRef] = None
    foot: Optional[ItemRef] = None
    hand: Optional[ItemRef] = None
    neck: Optional[ItemRef] = None
    ring: Optional[ItemRef] = None

    def slot(self, name: str) -> Optional[ItemRef]:
        if name not in EQUIPMENT_SLOTS:
            return None
        return getattr(self, name)

    def items(self) -> Iterator[tuple[str, Optional[ItemRef]]]:
        for name in EQUIPMENT_SLOTS:
            yield name, getattr(self, name)

    def item_ids(self) -> list[int]:
        return [item.id for _, item in self.items() if item is not None]


@dataclass(frozen=True)
class DerivedState:
    """Game-meaningful view of one adventurer, rebuilt from scratch on every read."""

    adventurer_id: int
    hp: int
    max_hp: int
    hp_pct: float
    xp: int
    level: int
    gold: int
    action_count: int
    stat_upgrades: int
    stats: Stats = field(default_factory=Stats)
    beast: BeastState = field(default_factory=BeastState)
    flee_chance: float = 0.0
    avoid_obstacle_chance: float = 0.0
    avoid_ambush_chance: float = 0.0
    bag_items: Tuple[ItemRef, ...] = ()
    equipment: Equipment = field(default_factory=Equipment)
    market: Tuple[int, ...] = ()

    @property
    def in_combat(self) -> bool:
        return self.beast.health > 0

    @property
    def not_started(self) -> bool:
        return self.hp <= 0 and self.xp <= 0

    @property
    def terminated(self) -> bool:
        return self.hp <= 0 and self.xp > 0

    @property
    def market_open(self) -> bool:
        return len(self.market) > 0
