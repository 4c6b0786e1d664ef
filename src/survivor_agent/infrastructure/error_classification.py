from survivor_agent.domain.errors import WriteErrorKind


# Checked in order; the first marker found in the lowercased text wins.
_MARKERS: tuple[tuple[WriteErrorKind, tuple[str, ...]], ...] = (
    (
        WriteErrorKind.RANDOMNESS_PENDING,
        ("not fulfilled", "vrf", "randomness", "seed not set", "waiting for random"),
    ),
    (WriteErrorKind.MARKET_CLOSED, ("market is closed", "market closed")),
    (WriteErrorKind.NOT_IN_BATTLE, ("not in battle", "not in combat", "no beast")),
    (
        WriteErrorKind.STATS_UNAVAILABLE,
        ("stat upgrade", "no stat", "stats not available", "insufficient stat"),
    ),
    (WriteErrorKind.SUBMIT_TIMEOUT, ("timed out", "timeout")),
    (WriteErrorKind.REVERTED, ("reverted", "execution failed", "rejected")),
)


def classify_error_text(text: str | None) -> WriteErrorKind:
    normalized = str(text or "").strip().lower()
    if not normalized:
        return WriteErrorKind.UNCLASSIFIED
    for kind, markers in _MARKERS:
        if any(marker in normalized for marker in markers):
            return kind
    return WriteErrorKind.UNCLASSIFIED
