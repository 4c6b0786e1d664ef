from __future__ import annotations

import dataclasses
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Tuple

from survivor_agent.domain.errors import ConfigError
from survivor_agent.domain.models.derived_state import STAT_NAMES


DEFAULT_CONFIG_PATH = Path("config/default.json")
LOCAL_CONFIG_PATH = Path("config/local.json")
BACKENDS = ("simulated", "bridge")


@dataclass(frozen=True)
class Range:
    min: float
    max: float

    @classmethod
    def of(cls, value: Any) -> "Range":
        if isinstance(value, Range):
            return value
        if isinstance(value, Mapping):
            return cls(float(value.get("min", 0)), float(value.get("max", value.get("min", 0))))
        if isinstance(value, (list, tuple)) and len(value) == 2:
            return cls(float(value[0]), float(value[1]))
        raise ConfigError(f"Expected a {{min, max}} range, got {value!r}")


@dataclass(frozen=True)
class Policy:
    hp_base: int = 100
    hp_per_vitality: int = 15

    flee_below_hp_pct: float = 0.35
    min_flee_chance: float = 0.75
    critical_hp_factor: float = 0.7
    near_full_hp_pct: float = 0.9
    max_beast_level_ratio: float = 1.6
    slow_fight_turns: int = 7
    slow_fight_min_flee_chance: float = 0.55
    fight_damage_hp_fraction: float = 0.8
    danger_min_flee_chance: float = 0.45
    combat_equip_min_gain: float = 0.2

    buy_potion_if_below_pct: float = 0.7
    cheap_potion_heal_target_pct: float = 0.95
    explore_till_beast_pct: float = 0.85
    till_beast_max_level: int = 15

    equip_upgrade_threshold: float = 0.12
    armor_downgrade_tolerance: float = 0.1
    potential_bias: float = 0.5
    potential_horizon_level: int = 20

    dex_target_ratio: float = 1.0
    vit_target_ratio: float = 0.7
    cha_target_ratio: float = 0.0
    str_target_ratio: float = 0.6
    int_target_ratio: float = 0.5
    wis_target_ratio: float = 0.4
    mid_game_level: int = 10
    mid_game_mind_multiplier: float = 1.5
    stat_upgrade_priority: Tuple[str, ...] = ("vitality", "strength", "dexterity")

    starting_weapon_id: int = 12
    early_weapon_upgrade_max_level: int = 5
    market_upgrade_margin: float = 0.25
    min_gold_reserve: int = 5
    reserve_potions: int = 2
    preferred_ring_id: int = 7
    preferred_ring_bonus: float = 3.0
    target_level: int = 50


@dataclass(frozen=True)
class RecoveryConfig:
    read_retries: int = 3
    read_backoff_s: float = 0.2
    submit_timeout_s: float = 45.0
    confirm_timeout_s: float = 120.0
    confirm_poll_s: float = 1.5
    settlement_timeout_s: float = 90.0
    settlement_poll_s: float = 1.0
    stale_progress_s: float = 600.0
    vrf_base_delay_s: float = 2.0
    vrf_max_delay_s: float = 60.0
    vrf_circuit_attempts: int = 20
    vrf_circuit_window_s: float = 600.0
    vrf_circuit_cooldown_s: float = 1800.0
    vrf_resync_interval_s: float = 60.0
    max_consecutive_failures: int = 5
    death_cooldown_s: float = 5.0
    auto_recover_death: bool = True
    idle_poll_s: float = 0.5
    sleep_chunk_s: float = 1.0


@dataclass(frozen=True)
class PacingConfig:
    enabled: bool = False
    think_delay_ms: Range = Range(400, 1800)
    near_death_dwell_s: Range = Range(5, 20)
    market_dwell_s: Range = Range(2, 8)
    level_up_dwell_s: Range = Range(3, 10)
    short_break_every_actions: Range = Range(40, 90)
    short_break_s: Range = Range(30, 180)
    long_sleep_every_s: Range = Range(3 * 3600, 6 * 3600)
    long_sleep_s: Range = Range(1800, 5400)
    near_death_hp_pct: float = 0.2
    deterministic_jitter: bool = True
    max_writes_per_minute: int = 20


@dataclass(frozen=True)
class BridgeConfig:
    url: str = "http://127.0.0.1:8787"
    timeout_s: float = 30.0
    retries: int = 2
    backoff_s: float = 0.2


@dataclass(frozen=True)
class StorageConfig:
    data_dir: str = "./data"
    session_file: str = "./data/session.json"
    events_file: str = "./data/events.jsonl"
    milestones_file: str = "./data/milestones.jsonl"
    progress_file: str = "./data/progress.json"


@dataclass(frozen=True)
class RunnerConfig:
    backend: str = "simulated"
    adventurer_id: int = 0
    policy: Policy = field(default_factory=Policy)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    pacing: PacingConfig = field(default_factory=PacingConfig)
    bridge: BridgeConfig = field(default_factory=BridgeConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


def _is_truthy(value: str | None, *, default: str) -> bool:
    normalized = str(value if value is not None else default).strip().lower()
    return normalized in {"1", "true", "yes"}


def deep_merge(base: Any, override: Any) -> Any:
    if not isinstance(base, Mapping) or not isinstance(override, Mapping):
        return override if override is not None else base
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _coerce(field_type: Any, value: Any, path: str) -> Any:
    type_name = field_type if isinstance(field_type, str) else getattr(field_type, "__name__", str(field_type))
    try:
        if type_name == "Range":
            return Range.of(value)
        if type_name == "bool":
            if isinstance(value, str):
                return _is_truthy(value, default="0")
            return bool(value)
        if type_name == "int":
            return int(value)
        if type_name == "float":
            return float(value)
        if type_name == "str":
            return str(value)
        if type_name.startswith("Tuple"):
            return tuple(str(item) for item in value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{path}: invalid value {value!r} ({exc})") from exc
    return value


def _build(cls: type, payload: Mapping[str, Any], path: str) -> Any:
    if not isinstance(payload, Mapping):
        raise ConfigError(f"{path or 'config'}: expected an object")
    known = {item.name: item for item in dataclasses.fields(cls)}
    unknown = sorted(set(payload) - set(known))
    if unknown:
        raise ConfigError(f"{path or 'config'}: unknown keys {', '.join(unknown)}")
    kwargs: dict[str, Any] = {}
    for name, value in payload.items():
        item = known[name]
        nested = _NESTED.get(name) if cls is RunnerConfig else None
        child_path = f"{path}.{name}" if path else name
        kwargs[name] = _build(nested, value, child_path) if nested else _coerce(item.type, value, child_path)
    return cls(**kwargs)


_NESTED = {
    "policy": Policy,
    "recovery": RecoveryConfig,
    "pacing": PacingConfig,
    "bridge": BridgeConfig,
    "storage": StorageConfig,
}


def _check_fraction(errors: list[str], path: str, value: float) -> None:
    if not 0.0 <= float(value) <= 1.0:
        errors.append(f"{path}: must be within [0, 1], got {value}")


def validate_config(config: RunnerConfig) -> RunnerConfig:
    errors: list[str] = []
    if config.backend not in BACKENDS:
        errors.append(f"backend: expected one of {', '.join(BACKENDS)}, got {config.backend!r}")

    policy = config.policy
    for name in (
        "flee_below_hp_pct",
        "min_flee_chance",
        "critical_hp_factor",
        "near_full_hp_pct",
        "slow_fight_min_flee_chance",
        "danger_min_flee_chance",
        "buy_potion_if_below_pct",
        "cheap_potion_heal_target_pct",
        "explore_till_beast_pct",
        "equip_upgrade_threshold",
        "armor_downgrade_tolerance",
        "potential_bias",
    ):
        _check_fraction(errors, f"policy.{name}", getattr(policy, name))
    if policy.hp_base <= 0 or policy.hp_per_vitality <= 0:
        errors.append("policy.hp_base and policy.hp_per_vitality must be positive")
    if policy.slow_fight_turns < 2:
        errors.append("policy.slow_fight_turns must be at least 2")
    bad_stats = [name for name in policy.stat_upgrade_priority if name not in STAT_NAMES]
    if bad_stats or not policy.stat_upgrade_priority:
        errors.append(f"policy.stat_upgrade_priority: unknown or empty stats {bad_stats}")

    recovery = config.recovery
    for name in (
        "submit_timeout_s",
        "confirm_timeout_s",
        "confirm_poll_s",
        "settlement_timeout_s",
        "settlement_poll_s",
        "stale_progress_s",
        "vrf_base_delay_s",
        "vrf_max_delay_s",
        "vrf_circuit_window_s",
        "vrf_circuit_cooldown_s",
        "sleep_chunk_s",
    ):
        if float(getattr(recovery, name)) <= 0:
            errors.append(f"recovery.{name} must be positive")
    if recovery.vrf_max_delay_s < recovery.vrf_base_delay_s:
        errors.append("recovery.vrf_max_delay_s must be >= recovery.vrf_base_delay_s")
    if recovery.max_consecutive_failures < 1 or recovery.vrf_circuit_attempts < 1:
        errors.append("recovery.max_consecutive_failures and recovery.vrf_circuit_attempts must be >= 1")

    pacing = config.pacing
    for item in dataclasses.fields(pacing):
        value = getattr(pacing, item.name)
        if isinstance(value, Range) and (value.min < 0 or value.max < value.min):
            errors.append(f"pacing.{item.name}: expected 0 <= min <= max, got {value.min}..{value.max}")
    if pacing.max_writes_per_minute < 1:
        errors.append("pacing.max_writes_per_minute must be >= 1")

    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return config


def _read_json(path: Path) -> Mapping[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Unable to read config file {path}: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return payload


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if environ.get("SURVIVOR_BACKEND"):
        overrides["backend"] = environ["SURVIVOR_BACKEND"].strip().lower()
    if environ.get("SURVIVOR_ADVENTURER_ID"):
        overrides["adventurer_id"] = environ["SURVIVOR_ADVENTURER_ID"].strip()
    if environ.get("SURVIVOR_BRIDGE_URL"):
        overrides.setdefault("bridge", {})["url"] = environ["SURVIVOR_BRIDGE_URL"].strip()
    if environ.get("SURVIVOR_AUTO_RECOVER_DEATH") is not None:
        overrides.setdefault("recovery", {})["auto_recover_death"] = _is_truthy(
            environ.get("SURVIVOR_AUTO_RECOVER_DEATH"), default="1"
        )
    data_dir = environ.get("SURVIVOR_DATA_DIR")
    if data_dir:
        root = data_dir.rstrip("/")
        overrides["storage"] = {
            "data_dir": root,
            "session_file": f"{root}/session.json",
            "events_file": f"{root}/events.jsonl",
            "milestones_file": f"{root}/milestones.jsonl",
            "progress_file": f"{root}/progress.json",
        }
    if environ.get("SURVIVOR_SESSION_FILE"):
        overrides.setdefault("storage", {})["session_file"] = environ["SURVIVOR_SESSION_FILE"].strip()
    return overrides


def load_config(path: str | Path | None = None, *, environ: Mapping[str, str] | None = None) -> RunnerConfig:
    env = os.environ if environ is None else environ
    explicit = path or env.get("SURVIVOR_CONFIG")
    config_path = Path(explicit) if explicit else DEFAULT_CONFIG_PATH

    payload: Any = {}
    if config_path.exists():
        payload = _read_json(config_path)
    elif explicit:
        raise ConfigError(f"Config file not found: {config_path}")

    if config_path.resolve() != LOCAL_CONFIG_PATH.resolve() and LOCAL_CONFIG_PATH.exists():
        payload = deep_merge(payload, _read_json(LOCAL_CONFIG_PATH))
    payload = deep_merge(payload, _env_overrides(env))
    return validate_config(_build(RunnerConfig, payload, ""))
