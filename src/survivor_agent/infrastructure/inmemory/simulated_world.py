import copy
import random
import threading
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional

from survivor_agent.application.services import game_rules
from survivor_agent.domain.errors import WriteError, WriteErrorKind
from survivor_agent.domain.gateways import (
    IdentityProvider,
    ItemCatalog,
    RandomnessSalt,
    RawSnapshot,
    Reader,
    SettlementHandle,
    TransactionReceipt,
    TransactionStatus,
    Writer,
)
from survivor_agent.domain.models.derived_state import ARMOR_SLOTS, STAT_NAMES
from survivor_agent.domain.models.item import ItemMeta, ItemSlot, ItemType
from survivor_agent.domain.models.session import SessionRecord
from survivor_agent.infrastructure.error_classification import classify_error_text


CATALOG_SIZE = 101
STARTING_GOLD = 40
STARTING_HEALTH = 100
HEALTH_PER_VITALITY = 15
MARKET_SIZE = 12

_GEAR_SLOTS = (ItemSlot.WEAPON, ItemSlot.CHEST, ItemSlot.HEAD, ItemSlot.WAIST, ItemSlot.FOOT, ItemSlot.HAND)
_GEAR_FAMILIES = (
    (ItemType.MAGIC, ItemType.CLOTH),
    (ItemType.BLADE, ItemType.HIDE),
    (ItemType.BLUDGEON, ItemType.METAL),
)


def catalog_entry(item_id: int) -> Optional[ItemMeta]:
    """Deterministic stand-in for the on-chain item table."""

    item_id = int(item_id)
    if item_id < 1 or item_id > CATALOG_SIZE:
        return None
    if item_id <= 3:
        return ItemMeta(id=item_id, tier=1, slot=ItemSlot.NECK, item_type=ItemType.NECKLACE)
    if item_id <= 8:
        return ItemMeta(id=item_id, tier=1 + (item_id - 4) % 3, slot=ItemSlot.RING, item_type=ItemType.RING)
    offset = (item_id - 9) % 31
    weapon_type, armor_type = _GEAR_FAMILIES[min(2, (item_id - 9) // 31)]
    slot = _GEAR_SLOTS[(offset - 3) % len(_GEAR_SLOTS)]
    tier = 5 - (offset // len(_GEAR_SLOTS)) % 5
    item_type = weapon_type if slot is ItemSlot.WEAPON else armor_type
    return ItemMeta(id=item_id, tier=tier, slot=slot, item_type=item_type)


def _blank_adventurer() -> Dict[str, Any]:
    return {
        "adventurer": {
            "health": 0,
            "xp": 0,
            "gold": 0,
            "action_count": 0,
            "stat_upgrades_available": 0,
            "stats": {name: 0 for name in STAT_NAMES},
            "equipment": {},
        },
        "beast": {"id": 0, "health": 0, "level": 0, "is_collectable": False},
        "bag": [],
        "market": [],
    }


class SimulatedWorld(Reader, Writer, ItemCatalog, IdentityProvider):
    """In-process game world for dry runs and tests.

    The rules are a coarse model of the real contract, good enough to exercise every
    branch of the agent. Extra knobs:

    - ``fail_next(entrypoint, text, times)`` queues verbatim error texts for a write.
    - ``randomness_pending_rate`` makes randomness-dependent writes fail as not fulfilled.
    - ``settle_delay_reads`` keeps reads on the pre-write snapshot for that many reads.
    - ``hang_next(entrypoint, event)`` blocks a write until the event is set.
    """

    def __init__(
        self,
        *,
        seed: int = 0,
        randomness_pending_rate: float = 0.0,
        settle_delay_reads: int = 0,
    ) -> None:
        self.rng = random.Random(seed)
        self.randomness_pending_rate = float(randomness_pending_rate)
        self.settle_delay_reads = max(0, int(settle_delay_reads))
        self._lock = threading.RLock()
        self._actual: Dict[int, Dict[str, Any]] = {}
        self._visible: Dict[int, Dict[str, Any]] = {}
        self._lag: Dict[int, int] = defaultdict(int)
        self._failures: Dict[str, Deque[str]] = defaultdict(deque)
        self._hangs: Dict[str, threading.Event] = {}
        self._transactions: Dict[str, TransactionReceipt] = {}
        self._next_adventurer_id = 1
        self._tx_counter = 0
        self.calls: List[tuple] = []
        self.resync_count = 0

    # Setup helpers

    def create_adventurer(self, snapshot: Optional[Dict[str, Any]] = None) -> int:
        with self._lock:
            adventurer_id = self._next_adventurer_id
            self._next_adventurer_id += 1
            self._actual[adventurer_id] = copy.deepcopy(snapshot) if snapshot else _blank_adventurer()
            self._visible[adventurer_id] = copy.deepcopy(self._actual[adventurer_id])
            return adventurer_id

    def put_snapshot(self, adventurer_id: int, snapshot: Dict[str, Any]) -> None:
        with self._lock:
            self._actual[int(adventurer_id)] = copy.deepcopy(snapshot)
            self._visible[int(adventurer_id)] = copy.deepcopy(snapshot)
            self._lag[int(adventurer_id)] = 0
            self._next_adventurer_id = max(self._next_adventurer_id, int(adventurer_id) + 1)

    def fail_next(self, entrypoint: str, text: str, times: int = 1) -> None:
        for _ in range(max(1, int(times))):
            self._failures[entrypoint].append(text)

    def hang_next(self, entrypoint: str, release: threading.Event) -> None:
        self._hangs[entrypoint] = release

    def actual_state(self, adventurer_id: int) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._actual[int(adventurer_id)])

    # Reader

    def get_world_state(self, adventurer_id: int) -> RawSnapshot:
        with self._lock:
            key = int(adventurer_id)
            if key not in self._actual:
                return _blank_adventurer()
            if self._lag[key] > 0:
                self._lag[key] -= 1
            else:
                self._visible[key] = copy.deepcopy(self._actual[key])
            return copy.deepcopy(self._visible[key])

    def get_transaction_status(self, handle: SettlementHandle) -> TransactionReceipt:
        if not handle.observable:
            return TransactionReceipt(TransactionStatus.UNKNOWN)
        return self._transactions.get(str(handle.tx_hash), TransactionReceipt(TransactionStatus.UNKNOWN))

    # ItemCatalog

    def get(self, item_id: int) -> Optional[ItemMeta]:
        return catalog_entry(item_id)

    # IdentityProvider

    def acquire_adventurer(self, session: SessionRecord) -> int:
        return self.create_adventurer()

    # Writer

    def resync(self) -> None:
        self.resync_count += 1

    def _transaction(self, entrypoint: str, adventurer_id: int, salt: Optional[RandomnessSalt], apply) -> SettlementHandle:
        self.calls.append((entrypoint, int(adventurer_id), salt))
        release = self._hangs.pop(entrypoint, None)
        if release is not None:
            release.wait()
        queued = self._failures.get(entrypoint)
        if queued:
            text = queued.popleft()
            raise WriteError(classify_error_text(text), text, entrypoint=entrypoint)
        if salt is not None and self.randomness_pending_rate > 0 and self.rng.random() < self.randomness_pending_rate:
            raise WriteError(WriteErrorKind.RANDOMNESS_PENDING, "VRF request not fulfilled", entrypoint=entrypoint)

        with self._lock:
            key = int(adventurer_id)
            if key not in self._actual:
                raise WriteError(WriteErrorKind.REVERTED, f"adventurer {key} does not exist", entrypoint=entrypoint)
            working = copy.deepcopy(self._actual[key])
            apply(working)
            working["adventurer"]["action_count"] += 1
            self._actual[key] = working
            self._lag[key] = self.settle_delay_reads
            self._tx_counter += 1
            tx_hash = f"0x{self._tx_counter:064x}"
            self._transactions[tx_hash] = TransactionReceipt(TransactionStatus.SUCCEEDED)
        return SettlementHandle(entrypoint=entrypoint, tx_hash=tx_hash)

    def start_game(self, adventurer_id: int, weapon_id: int, salt: Optional[RandomnessSalt] = None) -> SettlementHandle:
        def apply(world: Dict[str, Any]) -> None:
            adventurer = world["adventurer"]
            if adventurer["health"] > 0 or adventurer["xp"] > 0:
                self._reject("start_game", "game already started")
            adventurer["health"] = STARTING_HEALTH
            adventurer["gold"] = STARTING_GOLD
            adventurer["equipment"] = {"weapon": {"id": int(weapon_id), "xp": 0}}
            world["beast"] = {"id": self.rng.randint(1, 75), "health": 3, "level": 1, "is_collectable": False}

        return self._transaction("start_game", adventurer_id, salt, apply)

    def explore(self, adventurer_id: int, till_beast: bool, salt: Optional[RandomnessSalt] = None) -> SettlementHandle:
        def apply(world: Dict[str, Any]) -> None:
            self._require_alive(world, "explore")
            if world["beast"]["health"] > 0:
                self._reject("explore", "action not allowed while in battle")
            world["market"] = []
            for _ in range(10):
                if self._explore_once(world) or not till_beast or world["adventurer"]["health"] <= 0:
                    break

        return self._transaction("explore", adventurer_id, salt, apply)

    def attack(self, adventurer_id: int, to_the_death: bool, salt: Optional[RandomnessSalt] = None) -> SettlementHandle:
        def apply(world: Dict[str, Any]) -> None:
            self._require_battle(world, "attack")
            while True:
                self._strike(world)
                if world["beast"]["health"] <= 0:
                    self._beast_slain(world)
                    return
                self._beast_hits(world)
                if not to_the_death or world["adventurer"]["health"] <= 0:
                    return

        return self._transaction("attack", adventurer_id, salt, apply)

    def flee(self, adventurer_id: int, to_the_death: bool, salt: Optional[RandomnessSalt] = None) -> SettlementHandle:
        def apply(world: Dict[str, Any]) -> None:
            self._require_battle(world, "flee")
            adventurer = world["adventurer"]
            while True:
                level = game_rules.level_from_xp(adventurer["xp"])
                if self.rng.random() < game_rules.ratio_chance(adventurer["stats"]["dexterity"], level):
                    world["beast"] = {"id": 0, "health": 0, "level": 0, "is_collectable": False}
                    return
                self._beast_hits(world)
                if not to_the_death or adventurer["health"] <= 0:
                    return

        return self._transaction("flee", adventurer_id, salt, apply)

    def buy_items(self, adventurer_id: int, potions: int, items: List[Dict[str, Any]]) -> SettlementHandle:
        def apply(world: Dict[str, Any]) -> None:
            self._require_alive(world, "buy_items")
            if not world["market"] or world["beast"]["health"] > 0:
                self._reject("buy_items", "Market is closed")
            adventurer = world["adventurer"]
            level = game_rules.level_from_xp(adventurer["xp"])
            charisma = adventurer["stats"]["charisma"]
            cost = int(potions) * game_rules.potion_price(level, charisma)
            for item in items:
                meta = catalog_entry(int(item["item_id"]))
                if meta is None or meta.id not in world["market"]:
                    self._reject("buy_items", f"item {item['item_id']} not in market")
                cost += game_rules.item_price(meta.tier, charisma)
            if cost > adventurer["gold"]:
                self._reject("buy_items", "not enough gold")
            adventurer["gold"] -= cost
            max_hp = STARTING_HEALTH + HEALTH_PER_VITALITY * adventurer["stats"]["vitality"]
            adventurer["health"] = min(max_hp, adventurer["health"] + int(potions) * game_rules.POTION_HEAL_AMOUNT)
            for item in items:
                item_id = int(item["item_id"])
                world["market"].remove(item_id)
                if item.get("equip"):
                    self._equip_item(world, {"id": item_id, "xp": 0})
                else:
                    world["bag"].append({"id": item_id, "xp": 0})

        return self._transaction("buy_items", adventurer_id, None, apply)

    def equip(self, adventurer_id: int, items: List[int], salt: Optional[RandomnessSalt] = None) -> SettlementHandle:
        def apply(world: Dict[str, Any]) -> None:
            self._require_alive(world, "equip")
            for item_id in items:
                match = next((entry for entry in world["bag"] if entry["id"] == int(item_id)), None)
                if match is None:
                    self._reject("equip", f"item {item_id} not in bag")
                world["bag"].remove(match)
                self._equip_item(world, match)
            if world["beast"]["health"] > 0:
                self._beast_hits(world)

        return self._transaction("equip", adventurer_id, salt, apply)

    def select_stat_upgrades(self, adventurer_id: int, stats: Dict[str, int]) -> SettlementHandle:
        def apply(world: Dict[str, Any]) -> None:
            self._require_alive(world, "select_stat_upgrades")
            adventurer = world["adventurer"]
            requested = {name: max(0, int(value)) for name, value in stats.items() if name in STAT_NAMES}
            total = sum(requested.values())
            if adventurer["stat_upgrades_available"] <= 0 or total == 0:
                self._reject("select_stat_upgrades", "no stat upgrades available")
            if total > adventurer["stat_upgrades_available"]:
                self._reject("select_stat_upgrades", "insufficient stat upgrades")
            for name, value in requested.items():
                adventurer["stats"][name] += value
            adventurer["health"] += HEALTH_PER_VITALITY * requested.get("vitality", 0)
            adventurer["stat_upgrades_available"] -= total

        return self._transaction("select_stat_upgrades", adventurer_id, None, apply)

    # Rules

    @staticmethod
    def _reject(entrypoint: str, text: str) -> None:
        raise WriteError(classify_error_text(text), text, entrypoint=entrypoint)

    def _require_alive(self, world: Dict[str, Any], entrypoint: str) -> None:
        if world["adventurer"]["health"] <= 0:
            self._reject(entrypoint, "adventurer is dead" if world["adventurer"]["xp"] > 0 else "game not started")

    def _require_battle(self, world: Dict[str, Any], entrypoint: str) -> None:
        self._require_alive(world, entrypoint)
        if world["beast"]["health"] <= 0:
            self._reject(entrypoint, "Not in battle")

    def _explore_once(self, world: Dict[str, Any]) -> bool:
        adventurer = world["adventurer"]
        level = game_rules.level_from_xp(adventurer["xp"])
        roll = self.rng.random()
        if roll < 0.5:
            beast_level = max(1, level + self.rng.randint(-2, 3))
            world["beast"] = {
                "id": self.rng.randint(1, 75),
                "health": 5 + beast_level * 4,
                "level": beast_level,
                "is_collectable": False,
            }
            avoid = game_rules.ratio_chance(adventurer["stats"]["wisdom"], level)
            if self.rng.random() >= avoid:
                self._beast_hits(world)
            return True
        if roll < 0.75:
            avoid = game_rules.ratio_chance(adventurer["stats"]["intelligence"], level)
            if self.rng.random() >= avoid:
                adventurer["health"] = max(0, adventurer["health"] - self.rng.randint(2, 2 + level * 2))
            adventurer["xp"] += 1
            return False
        if self.rng.random() < 0.5:
            adventurer["gold"] += self.rng.randint(1, 5 + level)
        else:
            max_hp = STARTING_HEALTH + HEALTH_PER_VITALITY * adventurer["stats"]["vitality"]
            adventurer["health"] = min(max_hp, adventurer["health"] + self.rng.randint(2, 10))
        adventurer["xp"] += 1
        return False

    def _strike(self, world: Dict[str, Any]) -> None:
        adventurer = world["adventurer"]
        beast = world["beast"]
        weapon = adventurer["equipment"].get("weapon")
        meta = catalog_entry(weapon["id"]) if weapon else None
        if meta is None:
            damage = game_rules.MIN_DAMAGE_TO_BEAST
        else:
            _, armor_type = game_rules.beast_types(beast["id"])
            raw = game_rules.item_power(meta.tier, weapon["xp"]) * game_rules.elemental_multiplier(meta.item_type, armor_type)
            raw *= 1.0 + game_rules.STRENGTH_DAMAGE_BONUS_PER_POINT * adventurer["stats"]["strength"]
            if self.rng.random() < game_rules.critical_chance(adventurer["stats"]["luck"]):
                raw *= 1.0 + game_rules.CRITICAL_HIT_BONUS
            damage = max(game_rules.MIN_DAMAGE_TO_BEAST, int(raw - game_rules.beast_power(beast["id"], beast["level"])))
        beast["health"] = max(0, beast["health"] - damage)
        if weapon:
            weapon["xp"] += 1

    def _beast_hits(self, world: Dict[str, Any]) -> None:
        adventurer = world["adventurer"]
        beast = world["beast"]
        slot = self.rng.choice(ARMOR_SLOTS)
        armor = adventurer["equipment"].get(slot)
        meta = catalog_entry(armor["id"]) if armor else None
        attack_type, _ = game_rules.beast_types(beast["id"])
        power = game_rules.beast_power(beast["id"], beast["level"])
        if meta is None:
            raw = power * game_rules.elemental_multiplier(attack_type, None)
        else:
            raw = power * game_rules.elemental_multiplier(attack_type, meta.item_type)
            raw -= game_rules.item_power(meta.tier, armor["xp"])
            armor["xp"] += 1
        damage = max(game_rules.MIN_DAMAGE_FROM_BEAST, int(raw))
        adventurer["health"] = max(0, adventurer["health"] - damage)

    def _beast_slain(self, world: Dict[str, Any]) -> None:
        adventurer = world["adventurer"]
        beast = world["beast"]
        before = game_rules.level_from_xp(adventurer["xp"])
        tier_mult = game_rules.tier_multiplier(game_rules.beast_tier(beast["id"]))
        adventurer["xp"] += max(1, tier_mult * beast["level"] // 2)
        adventurer["gold"] += max(1, beast["level"] // 2 + 1)
        world["beast"] = {"id": 0, "health": 0, "level": 0, "is_collectable": False}
        after = game_rules.level_from_xp(adventurer["xp"])
        if adventurer["xp"] > 0 and after > before:
            adventurer["stat_upgrades_available"] += after - before
            world["market"] = sorted(self.rng.sample(range(1, CATALOG_SIZE + 1), MARKET_SIZE))

    def _equip_item(self, world: Dict[str, Any], item: Dict[str, Any]) -> None:
        meta = catalog_entry(item["id"])
        if meta is None or meta.slot is ItemSlot.NONE:
            world["bag"].append(item)
            return
        equipment = world["adventurer"]["equipment"]
        previous = equipment.get(meta.slot_name)
        equipment[meta.slot_name] = {"id": item["id"], "xp": item.get("xp", 0)}
        if previous:
            world["bag"].append(previous)
