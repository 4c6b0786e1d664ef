import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
UNIT = ROOT / "tests" / "unit"
for path in (SRC, UNIT):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))


@pytest.fixture(autouse=True)
def disable_sleep(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("time.sleep", lambda *_args, **_kwargs: None)


@pytest.fixture(autouse=True)
def isolate_survivor_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("SURVIVOR_CONFIG", "SURVIVOR_BACKEND", "SURVIVOR_ADVENTURER_ID", "SURVIVOR_DATA_DIR", "SURVIVOR_SESSION_FILE"):
        monkeypatch.delenv(name, raising=False)
