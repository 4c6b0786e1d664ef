"""Decoding helpers for raw chain values.

The chain client hands back the same logical value in several encodings: native
integers, ``0x`` hex strings, decimal strings, and Cairo enums/booleans shaped as
``{"True": ...}``, ``{"variant": {"X": {}, "Y": None}}`` or ``{"activeVariant": "X"}``.
Every decoder here degrades to a neutral value instead of raising.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from survivor_agent.domain.models.derived_state import ItemRef
from survivor_agent.domain.models.item import ItemMeta, ItemSlot, ItemType


_TRUE_STRINGS = {"1", "true", "yes", "0x1"}
_FALSE_STRINGS = {"", "0", "false", "no", "0x0", "none"}


def to_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return 0
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0
        try:
            if text.lower().startswith(("0x", "-0x")):
                return int(text, 16)
            return int(text)
        except ValueError:
            try:
                return to_int(float(text))
            except ValueError:
                return 0
    if isinstance(value, Mapping):
        for key in ("value", "low"):
            if key in value:
                return to_int(value[key])
    return 0


def enum_key(value: Any) -> str:
    """Return the active variant name of a Cairo enum, or ``"None"``."""

    if value is None:
        return "None"
    if isinstance(value, str):
        return value.strip() or "None"
    if isinstance(value, Mapping):
        variant = value.get("variant")
        if isinstance(variant, Mapping):
            for key, payload in variant.items():
                if payload is not None:
                    return str(key)
        active = value.get("activeVariant")
        if isinstance(active, str) and active.strip():
            return active.strip()
        for key in value.keys():
            return str(key)
    return "None"


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        return to_int(text) != 0
    if isinstance(value, Mapping):
        if "True" in value and "False" not in value:
            return True
        if "False" in value and "True" not in value:
            return False
        return enum_key(value).strip().lower() == "true"
    return bool(value)


def parse_item(raw: Any) -> Optional[ItemRef]:
    if not isinstance(raw, Mapping):
        return None
    item_id = to_int(raw.get("id"))
    if item_id <= 0:
        return None
    return ItemRef(id=item_id, xp=max(0, to_int(raw.get("xp"))))


def parse_bag(raw: Any) -> tuple[ItemRef, ...]:
    """Bags arrive as ``{"item_1": {...}, ..., "mutated": bool}`` or as a plain list."""

    if isinstance(raw, Mapping):
        keys = sorted((key for key in raw if str(key).startswith("item_")), key=lambda key: to_int(str(key)[5:]))
        candidates = [raw[key] for key in keys]
    elif isinstance(raw, (list, tuple)):
        candidates = list(raw)
    else:
        return ()
    items = [parse_item(candidate) for candidate in candidates]
    return tuple(item for item in items if item is not None)


def parse_market(raw: Any) -> tuple[int, ...]:
    if not isinstance(raw, (list, tuple)):
        return ()
    ids = (to_int(value) for value in raw)
    return tuple(value for value in ids if value > 0)


def as_mapping(raw: Any) -> Mapping[str, Any]:
    return raw if isinstance(raw, Mapping) else {}


def parse_tier(value: Any) -> int:
    """Tiers come back as ``3``, ``"0x3"``, ``"T3"`` or an enum ``{"T3": ()}``; 5 when unknown."""

    if isinstance(value, (Mapping, str)):
        key = enum_key(value).strip().upper()
        if key.startswith("T") and key[1:].isdigit():
            tier = int(key[1:])
        else:
            tier = to_int(value)
    else:
        tier = to_int(value)
    return tier if 1 <= tier <= 5 else 5


def parse_item_meta(item_id: int, raw: Any) -> Optional[ItemMeta]:
    payload = as_mapping(raw)
    if not payload or int(item_id) <= 0:
        return None
    return ItemMeta(
        id=int(item_id),
        tier=parse_tier(payload.get("tier")),
        slot=ItemSlot.normalize(enum_key(payload.get("slot"))),
        item_type=ItemType.normalize(enum_key(payload.get("type", payload.get("item_type")))),
    )
