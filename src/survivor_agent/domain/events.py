from dataclasses import asdict, dataclass


@dataclass
class XpGained:
    adventurer_id: int
    xp: int
    hp: int


@dataclass
class ActionCountAdvanced:
    adventurer_id: int
    action_count: int


@dataclass
class LevelUp:
    adventurer_id: int
    from_level: int
    to_level: int


@dataclass
class NewMaxLevel:
    adventurer_id: int
    level: int


@dataclass
class TargetLevelReached:
    adventurer_id: int
    level: int
    target_level: int


@dataclass
class AdventurerDied:
    adventurer_id: int
    level: int
    xp: int
    action_count: int


@dataclass
class NewBest:
    adventurer_id: int
    level: int
    xp: int
    action_count: int


@dataclass
class IdentityRotated:
    previous_adventurer_id: int | None
    adventurer_id: int
    reason: str


MILESTONE_NAMES = {
    XpGained: "xp_gain",
    ActionCountAdvanced: "action_count",
    LevelUp: "level_up",
    NewMaxLevel: "new_max_level",
    TargetLevelReached: "target_level_reached",
    AdventurerDied: "death",
    NewBest: "new_best",
    IdentityRotated: "identity_rotated",
}


def milestone_name(event: object) -> str:
    return MILESTONE_NAMES.get(type(event), type(event).__name__)


def milestone_data(event: object) -> dict:
    return asdict(event)
