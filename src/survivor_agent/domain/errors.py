from __future__ import annotations

from enum import Enum


class WriteErrorKind(str, Enum):
    RANDOMNESS_PENDING = "randomness_pending"
    MARKET_CLOSED = "market_closed"
    NOT_IN_BATTLE = "not_in_battle"
    STATS_UNAVAILABLE = "stats_unavailable"
    SUBMIT_TIMEOUT = "submit_timeout"
    REVERTED = "reverted"
    UNCLASSIFIED = "unclassified"


class WriteError(RuntimeError):
    """A game transaction was rejected; ``text`` keeps the substrate's message verbatim."""

    def __init__(self, kind: WriteErrorKind, text: str, *, entrypoint: str | None = None) -> None:
        super().__init__(f"{entrypoint or 'write'} failed ({kind.value}): {text}")
        self.kind = kind
        self.text = text
        self.entrypoint = entrypoint


class TransientReadError(RuntimeError):
    pass


class ConfigError(ValueError):
    pass
