import threading
from typing import Dict, Iterable, Optional

from survivor_agent.domain.gateways import ItemCatalog
from survivor_agent.domain.models.item import ItemMeta


class CachingItemCatalog(ItemCatalog):
    """Process-lifetime cache in front of another catalog. Entries never change once minted."""

    def __init__(self, inner: ItemCatalog) -> None:
        self.inner = inner
        self._entries: Dict[int, ItemMeta] = {}
        self._lock = threading.Lock()

    def get(self, item_id: int) -> Optional[ItemMeta]:
        key = int(item_id)
        with self._lock:
            cached = self._entries.get(key)
        if cached is not None:
            return cached
        meta = self.inner.get(key)
        if meta is not None:
            with self._lock:
                self._entries[key] = meta
        return meta

    def get_many(self, item_ids: Iterable[int]) -> Dict[int, ItemMeta]:
        wanted = sorted({int(value) for value in item_ids if int(value) > 0})
        with self._lock:
            missing = [item_id for item_id in wanted if item_id not in self._entries]
        if missing:
            fetched = self.inner.get_many(missing)
            with self._lock:
                self._entries.update(fetched)
        with self._lock:
            return {item_id: self._entries[item_id] for item_id in wanted if item_id in self._entries}
