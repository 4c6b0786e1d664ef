from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from survivor_agent.domain.errors import WriteErrorKind
from survivor_agent.domain.models.item import ItemMeta
from survivor_agent.domain.models.session import SessionRecord


RawSnapshot = Mapping[str, Any]


@dataclass(frozen=True)
class RandomnessSalt:
    """Inputs the signer hashes into the salt of a randomness request."""

    kind: str
    inputs: Tuple[int, ...]


@dataclass(frozen=True)
class SettlementHandle:
    entrypoint: str
    tx_hash: Optional[str] = None

    @property
    def observable(self) -> bool:
        return bool(self.tx_hash)


class TransactionStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    REVERTED = "reverted"
    UNKNOWN = "unknown"

    @property
    def terminal(self) -> bool:
        return self in {TransactionStatus.SUCCEEDED, TransactionStatus.REVERTED}


@dataclass(frozen=True)
class TransactionReceipt:
    status: TransactionStatus
    reason: str = ""
    kind: WriteErrorKind = WriteErrorKind.UNCLASSIFIED


class Reader(ABC):
    @abstractmethod
    def get_world_state(self, adventurer_id: int) -> RawSnapshot:
        """Return the raw snapshot; raise TransientReadError on network failures."""
        raise NotImplementedError

    @abstractmethod
    def get_transaction_status(self, handle: SettlementHandle) -> TransactionReceipt:
        raise NotImplementedError


class Writer(ABC):
    """One call is one transaction attempt. Failures raise WriteError with a classified kind."""

    @abstractmethod
    def start_game(self, adventurer_id: int, weapon_id: int, salt: Optional[RandomnessSalt] = None) -> SettlementHandle:
        raise NotImplementedError

    @abstractmethod
    def explore(self, adventurer_id: int, till_beast: bool, salt: Optional[RandomnessSalt] = None) -> SettlementHandle:
        raise NotImplementedError

    @abstractmethod
    def attack(self, adventurer_id: int, to_the_death: bool, salt: Optional[RandomnessSalt] = None) -> SettlementHandle:
        raise NotImplementedError

    @abstractmethod
    def flee(self, adventurer_id: int, to_the_death: bool, salt: Optional[RandomnessSalt] = None) -> SettlementHandle:
        raise NotImplementedError

    @abstractmethod
    def buy_items(self, adventurer_id: int, potions: int, items: List[Dict[str, Any]]) -> SettlementHandle:
        raise NotImplementedError

    def buy_potions(self, adventurer_id: int, count: int) -> SettlementHandle:
        return self.buy_items(adventurer_id, count, [])

    @abstractmethod
    def equip(self, adventurer_id: int, items: List[int], salt: Optional[RandomnessSalt] = None) -> SettlementHandle:
        raise NotImplementedError

    @abstractmethod
    def select_stat_upgrades(self, adventurer_id: int, stats: Dict[str, int]) -> SettlementHandle:
        raise NotImplementedError

    def resync(self) -> None:
        """Lightweight resync of the execution layer; a no-op unless the signer keeps UI state."""
        return None

    def close(self) -> None:
        return None


class ItemCatalog(ABC):
    @abstractmethod
    def get(self, item_id: int) -> Optional[ItemMeta]:
        raise NotImplementedError

    def get_many(self, item_ids: Iterable[int]) -> Dict[int, ItemMeta]:
        found: Dict[int, ItemMeta] = {}
        for item_id in sorted({int(value) for value in item_ids if int(value) > 0}):
            meta = self.get(item_id)
            if meta is not None:
                found[meta.id] = meta
        return found


class Observer(ABC):
    @abstractmethod
    def log(self, level: str, event: str, data: Optional[Mapping[str, Any]] = None) -> None:
        raise NotImplementedError

    @abstractmethod
    def milestone(self, name: str, data: Optional[Mapping[str, Any]] = None) -> None:
        raise NotImplementedError


class IdentityProvider(ABC):
    @abstractmethod
    def acquire_adventurer(self, session: SessionRecord) -> int:
        """Obtain a fresh, not-yet-started adventurer id for the session's account."""
        raise NotImplementedError
