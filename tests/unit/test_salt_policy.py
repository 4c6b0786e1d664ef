import sys
from pathlib import Path
import unittest

sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from snapshot_fixtures import make_state
from survivor_agent.application.services.salt_policy import derive_seed, identity_rng, salt_for_action
from survivor_agent.domain.models.action import Action, ActionType


class SeedDerivationTests(unittest.TestCase):
    def test_context_key_order_does_not_change_seed(self) -> None:
        context_a = {"a": 1, "b": {"x": 2, "y": 3}}
        context_b = {"b": {"y": 3, "x": 2}, "a": 1}
        self.assertEqual(derive_seed("pacing", context_a), derive_seed("pacing", context_b))

    def test_namespace_changes_seed(self) -> None:
        context = {"adventurer_id": 10}
        self.assertNotEqual(derive_seed("pacing", context), derive_seed("market", context))

    def test_non_finite_float_in_context_raises(self) -> None:
        with self.assertRaises(ValueError):
            derive_seed("pacing", {"jitter": float("nan")})

    def test_identity_rng_is_reproducible_per_adventurer(self) -> None:
        first = identity_rng("pacing", 42)
        second = identity_rng("pacing", 42)
        self.assertEqual([first.random() for _ in range(3)], [second.random() for _ in range(3)])
        other = identity_rng("pacing", 43)
        self.assertNotEqual(identity_rng("pacing", 42).random(), other.random())


class SaltForActionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.state = make_state(adventurer_id=9, xp=30, action_count=14)

    def test_explore_salt_uses_xp_and_identity(self) -> None:
        salt = salt_for_action(Action(ActionType.EXPLORE, "go", {"till_beast": True}), self.state)
        self.assertEqual("explore", salt.kind)
        self.assertEqual((30, 9), salt.inputs)

    def test_battle_salt_targets_the_next_action_count(self) -> None:
        for action_type in (ActionType.ATTACK, ActionType.FLEE):
            salt = salt_for_action(Action(action_type, "fight"), self.state)
            self.assertEqual("battle", salt.kind)
            self.assertEqual((30, 9, 15), salt.inputs)

    def test_only_combat_equips_request_randomness(self) -> None:
        in_combat = Action(ActionType.EQUIP, "swap", {"items": [13], "in_combat": True})
        out_of_combat = Action(ActionType.EQUIP, "tidy", {"items": [13], "in_combat": False})
        self.assertEqual("battle", salt_for_action(in_combat, self.state).kind)
        self.assertIsNone(salt_for_action(out_of_combat, self.state))
        self.assertIsNone(salt_for_action(Action(ActionType.BUY_POTIONS, "heal", {"count": 1}), self.state))
        self.assertIsNone(salt_for_action(Action(ActionType.SELECT_STATS, "level"), self.state))


if __name__ == "__main__":
    unittest.main()
