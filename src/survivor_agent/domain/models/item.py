from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ItemSlot(str, Enum):
    NONE = "none"
    WEAPON = "weapon"
    CHEST = "chest"
    HEAD = "head"
    WAIST = "waist"
    FOOT = "foot"
    HAND = "hand"
    NECK = "neck"
    RING = "ring"

    @classmethod
    def normalize(cls, value: object) -> "ItemSlot":
        key = str(value or "").strip().lower()
        for member in cls:
            if member.value == key:
                return member
        return cls.NONE


class ItemType(str, Enum):
    NONE = "none"
    MAGIC = "magic"
    BLADE = "blade"
    BLUDGEON = "bludgeon"
    CLOTH = "cloth"
    HIDE = "hide"
    METAL = "metal"
    NECKLACE = "necklace"
    RING = "ring"

    @classmethod
    def normalize(cls, value: object) -> "ItemType":
        key = str(value or "").strip().lower()
        for member in cls:
            if member.value == key:
                return member
        return cls.NONE

    @property
    def is_weapon(self) -> bool:
        return self in {ItemType.MAGIC, ItemType.BLADE, ItemType.BLUDGEON}

    @property
    def is_armor(self) -> bool:
        return self in {ItemType.CLOTH, ItemType.HIDE, ItemType.METAL}


@dataclass(frozen=True)
class ItemMeta:
    """Immutable catalog entry for one item id. Tier 1 is the strongest, 5 the weakest."""

    id: int
    tier: int
    slot: ItemSlot
    item_type: ItemType

    @property
    def slot_name(self) -> str:
        return self.slot.value
