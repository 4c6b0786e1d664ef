from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from survivor_agent.infrastructure.json_files import read_json_object, write_json_atomic


PROGRESS_VERSION = 1
MAX_RUNS = 120


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class JsonProgressStore:
    """Best snapshot seen so far plus the most recent finished runs."""

    def __init__(self, path: str | Path, *, target_level: int, max_runs: int = MAX_RUNS) -> None:
        self.path = Path(path)
        self.max_runs = max(1, int(max_runs))
        self.state: dict[str, Any] = self._load(int(target_level))

    def _load(self, target_level: int) -> dict[str, Any]:
        base = {
            "version": PROGRESS_VERSION,
            "target_level": target_level,
            "updated_at": _now_iso(),
            "best": None,
            "runs": [],
        }
        payload = read_json_object(self.path)
        if payload is None or payload.get("version") != PROGRESS_VERSION:
            return base
        best = payload.get("best")
        runs = payload.get("runs")
        base["best"] = best if isinstance(best, dict) else None
        base["runs"] = list(runs) if isinstance(runs, list) else []
        if isinstance(payload.get("updated_at"), str):
            base["updated_at"] = payload["updated_at"]
        return base

    @property
    def best(self) -> dict[str, Any] | None:
        return self.state["best"]

    @property
    def runs(self) -> list[dict[str, Any]]:
        return self.state["runs"]

    def maybe_update_best(self, sample: dict[str, Any]) -> bool:
        current = self.state["best"]
        if current is not None:
            rank = (sample["level"], sample["xp"], sample["action_count"])
            best_rank = (current.get("level", 0), current.get("xp", 0), current.get("action_count", 0))
            if rank <= best_rank:
                return False
        self.state["best"] = dict(sample)
        return True

    def append_run(self, run: dict[str, Any]) -> None:
        runs = self.state["runs"]
        runs.append(dict(run))
        if len(runs) > self.max_runs:
            del runs[: len(runs) - self.max_runs]

    def save(self) -> None:
        self.state["updated_at"] = _now_iso()
        write_json_atomic(self.path, self.state)
