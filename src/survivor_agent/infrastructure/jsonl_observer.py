import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from survivor_agent.domain.gateways import Observer


_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class JsonlObserver(Observer):
    """Append-only JSON-lines sink for loop events and milestones.

    Every record is mirrored to the ``survivor_agent.events`` logger. A failing sink is
    logged and isolated; the caller never sees the error.
    """

    def __init__(
        self,
        events_path: str | Path | None,
        milestones_path: str | Path | None,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.events_path = Path(events_path) if events_path else None
        self.milestones_path = Path(milestones_path) if milestones_path else None
        self._clock = clock
        self._lock = threading.Lock()
        self._logger = logging.getLogger(__name__)
        self._events_logger = logging.getLogger("survivor_agent.events")

    def _timestamp(self) -> str:
        if self._clock is None:
            return datetime.now(timezone.utc).isoformat()
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat()

    def log(self, level: str, event: str, data: Optional[Mapping[str, Any]] = None) -> None:
        record = {"ts": self._timestamp(), "level": str(level), "event": event, **dict(data or {})}
        self._events_logger.log(_LEVELS.get(str(level).lower(), logging.INFO), event, extra={"event_data": record})
        self._append(self.events_path, record)

    def milestone(self, name: str, data: Optional[Mapping[str, Any]] = None) -> None:
        record = {"ts": self._timestamp(), "milestone": name, **dict(data or {})}
        self._events_logger.info("milestone %s", name, extra={"event_data": record})
        self._append(self.milestones_path, record)

    def _append(self, path: Optional[Path], record: dict) -> None:
        if path is None:
            return
        try:
            line = json.dumps(record, ensure_ascii=False, default=str)
            with self._lock:
                path.parent.mkdir(parents=True, exist_ok=True)
                with path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
        except (OSError, TypeError, ValueError):
            self._logger.exception("Observer sink failed and was isolated", extra={"sink": str(path)})

