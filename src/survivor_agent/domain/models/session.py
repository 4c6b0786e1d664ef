from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class SessionRecord:
    address: str
    adventurer_id: Optional[int] = None
    private_key: Optional[str] = None
    entry_point: Optional[str] = None
    created_at: Optional[str] = None

    def with_adventurer(self, adventurer_id: int, *, entry_point: Optional[str] = None) -> "SessionRecord":
        return SessionRecord(
            address=self.address,
            adventurer_id=int(adventurer_id),
            private_key=self.private_key,
            entry_point=entry_point if entry_point is not None else self.entry_point,
            created_at=self.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        return {key: value for key, value in payload.items() if value is not None}

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> Optional["SessionRecord"]:
        address = str(payload.get("address") or "").strip()
        if not address:
            return None
        raw_id = payload.get("adventurer_id", payload.get("adventurerId"))
        try:
            adventurer_id = int(raw_id) if raw_id not in (None, "") else None
        except (TypeError, ValueError):
            adventurer_id = None
        return cls(
            address=address,
            adventurer_id=adventurer_id if adventurer_id and adventurer_id > 0 else None,
            private_key=payload.get("private_key") or payload.get("privateKey") or None,
            entry_point=payload.get("entry_point") or payload.get("playUrl") or None,
            created_at=payload.get("created_at") or payload.get("createdAt") or None,
        )
