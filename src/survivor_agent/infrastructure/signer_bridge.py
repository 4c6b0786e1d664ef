"""HTTP adapters for the delegated-signer bridge.

The bridge is a separate process that owns the signing key (or the browser session of
a third-party signer) and exposes a small JSON API:

- ``GET  /game-state/{adventurer_id}`` raw world snapshot
- ``GET  /tx/{hash}`` transaction status
- ``GET  /items/{item_id}`` item catalog entry
- ``POST /execute`` one game transaction: ``{entrypoint, calldata, vrf_salt}``
- ``POST /resync`` reload the signer's UI/account state
- ``POST /adventurers`` mint a fresh adventurer for an account
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from survivor_agent.application.config import BridgeConfig
from survivor_agent.application.services.snapshot_parsing import parse_item_meta, to_int
from survivor_agent.domain.errors import TransientReadError, WriteError, WriteErrorKind
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
from survivor_agent.domain.models.item import ItemMeta
from survivor_agent.domain.models.session import SessionRecord
from survivor_agent.infrastructure.error_classification import classify_error_text
from survivor_agent.infrastructure.resilient_http import (
    CircuitOpenError,
    get_json_with_retry,
    is_transient_http_error,
    post_json,
)


logger = logging.getLogger(__name__)

_STATUS_ALIASES = {
    "succeeded": TransactionStatus.SUCCEEDED,
    "success": TransactionStatus.SUCCEEDED,
    "accepted_on_l2": TransactionStatus.SUCCEEDED,
    "accepted_on_l1": TransactionStatus.SUCCEEDED,
    "reverted": TransactionStatus.REVERTED,
    "rejected": TransactionStatus.REVERTED,
    "pending": TransactionStatus.PENDING,
    "received": TransactionStatus.PENDING,
    "not_received": TransactionStatus.PENDING,
}


class BridgeClient:
    """Thin synchronous client for the signer bridge (shared by the adapters below)."""

    def __init__(self, config: BridgeConfig, http_client: httpx.Client | None = None) -> None:
        self._retries = config.retries
        self._backoff_seconds = config.backoff_s
        self.client = http_client or httpx.Client(base_url=config.url, timeout=config.timeout_s)

    def get(self, path: str) -> dict:
        try:
            return get_json_with_retry(
                self.client,
                path,
                retries=self._retries,
                backoff_seconds=self._backoff_seconds,
            )
        except Exception as exc:
            if is_transient_http_error(exc):
                raise TransientReadError(f"GET {path} failed: {exc}") from exc
            raise

    def post(self, path: str, payload: Any) -> dict:
        return post_json(self.client, path, payload)

    def close(self) -> None:
        self.client.close()


def _salt_payload(salt: Optional[RandomnessSalt]) -> Optional[dict]:
    if salt is None:
        return None
    return {"kind": salt.kind, "inputs": [int(value) for value in salt.inputs]}


def _error_text(payload: dict) -> str:
    error = payload.get("error")
    if isinstance(error, dict):
        parts = [str(error.get(key) or "") for key in ("message", "text", "json")]
        return " ".join(part for part in parts if part).strip()
    return str(error or "")


class BridgeReader(Reader):
    def __init__(self, bridge: BridgeClient) -> None:
        self.bridge = bridge

    def get_world_state(self, adventurer_id: int) -> RawSnapshot:
        return self.bridge.get(f"/game-state/{int(adventurer_id)}")

    def get_transaction_status(self, handle: SettlementHandle) -> TransactionReceipt:
        if not handle.observable:
            return TransactionReceipt(TransactionStatus.UNKNOWN)
        payload = self.bridge.get(f"/tx/{handle.tx_hash}")
        raw_status = str(payload.get("execution_status") or payload.get("status") or "").strip().lower()
        status = _STATUS_ALIASES.get(raw_status, TransactionStatus.UNKNOWN)
        reason = str(payload.get("revert_reason") or "")
        kind = classify_error_text(reason) if status is TransactionStatus.REVERTED else WriteErrorKind.UNCLASSIFIED
        if status is TransactionStatus.REVERTED and kind is WriteErrorKind.UNCLASSIFIED:
            kind = WriteErrorKind.REVERTED
        return TransactionReceipt(status=status, reason=reason, kind=kind)


class BridgeWriter(Writer):
    """Submits one game transaction per call through ``POST /execute``."""

    def __init__(self, bridge: BridgeClient) -> None:
        self.bridge = bridge

    def _execute(self, entrypoint: str, calldata: List[Any], salt: Optional[RandomnessSalt] = None) -> SettlementHandle:
        body = {"entrypoint": entrypoint, "calldata": calldata, "vrf_salt": _salt_payload(salt)}
        try:
            payload = self.bridge.post("/execute", body)
        except httpx.TimeoutException as exc:
            raise WriteError(WriteErrorKind.SUBMIT_TIMEOUT, str(exc) or "bridge timeout", entrypoint=entrypoint) from exc
        except httpx.HTTPStatusError as exc:
            text = exc.response.text
            raise WriteError(classify_error_text(text), text, entrypoint=entrypoint) from exc
        except (httpx.HTTPError, CircuitOpenError) as exc:
            raise WriteError(WriteErrorKind.UNCLASSIFIED, str(exc), entrypoint=entrypoint) from exc

        if payload.get("ok", True) is False or payload.get("error"):
            text = _error_text(payload) or "unknown error"
            raise WriteError(classify_error_text(text), text, entrypoint=entrypoint)
        tx_hash = payload.get("transaction_hash") or payload.get("transactionHash")
        return SettlementHandle(entrypoint=entrypoint, tx_hash=str(tx_hash) if tx_hash else None)

    def start_game(self, adventurer_id: int, weapon_id: int, salt: Optional[RandomnessSalt] = None) -> SettlementHandle:
        return self._execute("start_game", [int(adventurer_id), int(weapon_id)], salt)

    def explore(self, adventurer_id: int, till_beast: bool, salt: Optional[RandomnessSalt] = None) -> SettlementHandle:
        return self._execute("explore", [int(adventurer_id), bool(till_beast)], salt)

    def attack(self, adventurer_id: int, to_the_death: bool, salt: Optional[RandomnessSalt] = None) -> SettlementHandle:
        return self._execute("attack", [int(adventurer_id), bool(to_the_death)], salt)

    def flee(self, adventurer_id: int, to_the_death: bool, salt: Optional[RandomnessSalt] = None) -> SettlementHandle:
        return self._execute("flee", [int(adventurer_id), bool(to_the_death)], salt)

    def buy_items(self, adventurer_id: int, potions: int, items: List[Dict[str, Any]]) -> SettlementHandle:
        normalized = [{"item_id": int(item["item_id"]), "equip": bool(item.get("equip", False))} for item in items]
        return self._execute("buy_items", [int(adventurer_id), int(potions), normalized])

    def equip(self, adventurer_id: int, items: List[int], salt: Optional[RandomnessSalt] = None) -> SettlementHandle:
        return self._execute("equip", [int(adventurer_id), [int(item) for item in items]], salt)

    def select_stat_upgrades(self, adventurer_id: int, stats: Dict[str, int]) -> SettlementHandle:
        return self._execute("select_stat_upgrades", [int(adventurer_id), {k: int(v) for k, v in stats.items()}])

    def resync(self) -> None:
        try:
            self.bridge.post("/resync", {})
        except (httpx.HTTPError, CircuitOpenError) as exc:
            logger.warning("Bridge resync failed: %s", exc)

    def close(self) -> None:
        self.bridge.close()


class BridgeItemCatalog(ItemCatalog):
    def __init__(self, bridge: BridgeClient) -> None:
        self.bridge = bridge

    def get(self, item_id: int) -> Optional[ItemMeta]:
        return parse_item_meta(item_id, self.bridge.get(f"/items/{int(item_id)}"))


class BridgeIdentityProvider(IdentityProvider):
    def __init__(self, bridge: BridgeClient) -> None:
        self.bridge = bridge

    def acquire_adventurer(self, session: SessionRecord) -> int:
        payload = self.bridge.post("/adventurers", {"address": session.address})
        adventurer_id = to_int(payload.get("adventurer_id", payload.get("adventurerId")))
        if adventurer_id <= 0:
            raise RuntimeError(f"Bridge returned no adventurer id for {session.address}: {payload!r}")
        return adventurer_id
