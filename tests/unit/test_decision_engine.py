import sys
from dataclasses import replace
from pathlib import Path
import unittest

sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from snapshot_fixtures import CATALOG, make_state
from survivor_agent.application.config import Policy
from survivor_agent.application.services.decision_engine import decide
from survivor_agent.domain.models.action import ActionType


POLICY = Policy()


class LifecycleDecisionTests(unittest.TestCase):
    def test_unstarted_adventurer_starts_the_game(self) -> None:
        for snapshot in ({"health": 0, "xp": 0}, {"health": 0, "xp": 0, "gold": 50, "market": [20]}):
            action = decide(make_state(**snapshot), POLICY, CATALOG)
            self.assertIs(ActionType.START_GAME, action.type)
            self.assertEqual({"weapon_id": 12}, action.payload)

    def test_terminated_adventurer_waits(self) -> None:
        for xp in (1, 50, 900):
            action = decide(make_state(health=0, xp=xp, beast={"id": 3, "health": 20, "level": 4}), POLICY, CATALOG)
            self.assertIs(ActionType.WAIT, action.type)
            self.assertTrue(action.reason)

    def test_decide_is_idempotent(self) -> None:
        state = make_state(health=55, xp=64, gold=40, market=[20, 22, 13], bag=[(21, 0)], stats={"dexterity": 3})
        first = decide(state, POLICY, CATALOG)
        second = decide(state, POLICY, CATALOG)
        self.assertEqual(first, second)


class CombatDecisionTests(unittest.TestCase):
    def _danger_state(self, dexterity: int):
        # Level 10, unarmored, full hp against a level 10 tier-1 beast: 75 damage per hit over 5 turns.
        return make_state(
            health=100,
            xp=100,
            stats={"dexterity": dexterity},
            beast={"id": 1, "health": 20, "level": 10},
        )

    def test_heavy_expected_damage_with_fair_flee_chance_flees(self) -> None:
        action = decide(self._danger_state(dexterity=5), POLICY, CATALOG)
        self.assertIs(ActionType.FLEE, action.type)
        self.assertGreater(action.payload["expected_fight_damage"], 0.8 * 100)

    def test_same_damage_profile_with_poor_flee_chance_attacks(self) -> None:
        action = decide(self._danger_state(dexterity=4), POLICY, CATALOG)
        self.assertIs(ActionType.ATTACK, action.type)

    def test_low_hp_with_good_flee_chance_flees(self) -> None:
        policy = replace(POLICY, flee_below_hp_pct=0.5, min_flee_chance=0.6)
        state = make_state(health=40, xp=50, stats={"dexterity": 10}, beast={"health": 30, "level": 3})
        self.assertEqual(100, state.max_hp)
        self.assertEqual(7, state.level)
        self.assertEqual(1.0, state.flee_chance)
        self.assertIs(ActionType.FLEE, decide(state, policy, CATALOG).type)

    def test_overlevelled_beast_is_fled_unless_hp_is_near_full(self) -> None:
        hurt = make_state(health=80, xp=4, beast={"id": 21, "health": 8, "level": 5})
        self.assertIs(ActionType.FLEE, decide(hurt, POLICY, CATALOG).type)
        fresh = make_state(health=100, xp=4, beast={"id": 21, "health": 8, "level": 5})
        self.assertIs(ActionType.ATTACK, decide(fresh, POLICY, CATALOG).type)

    def test_critical_hp_flees_even_with_poor_odds(self) -> None:
        critical = make_state(health=10, xp=100, beast={"id": 21, "health": 4, "level": 1})
        self.assertIs(ActionType.FLEE, decide(critical, POLICY, CATALOG).type)
        low = make_state(health=30, xp=100, beast={"id": 21, "health": 4, "level": 1})
        self.assertIs(ActionType.ATTACK, decide(low, POLICY, CATALOG).type)

    def test_slow_fight_flees_only_at_the_turn_and_chance_thresholds(self) -> None:
        # Unarmed against a level 1 tier-5 beast: 4 damage per hit, 2 damage taken per hit.
        def state(beast_health, dexterity):
            return make_state(health=100, xp=100, stats={"dexterity": dexterity}, beast={"id": 21, "health": beast_health, "level": 1})

        self.assertIs(ActionType.FLEE, decide(state(28, 6), POLICY, CATALOG).type)
        self.assertIs(ActionType.ATTACK, decide(state(24, 6), POLICY, CATALOG).type)
        self.assertIs(ActionType.ATTACK, decide(state(28, 5), POLICY, CATALOG).type)

    def test_heavy_hits_in_a_short_fight_are_taken_when_fleeing_costs_as_much(self) -> None:
        # 75 damage per hit at 80 hp with a coin-flip escape.
        def state(beast_health):
            return make_state(health=80, xp=100, stats={"dexterity": 5}, beast={"id": 1, "health": beast_health, "level": 10})

        short = decide(state(8), POLICY, CATALOG)
        self.assertIs(ActionType.ATTACK, short.type)
        self.assertEqual(2, short.payload["turns_to_kill"])
        self.assertIs(ActionType.FLEE, decide(state(12), POLICY, CATALOG).type)

    def test_mid_combat_weapon_swap_when_it_shortens_the_fight(self) -> None:
        state = make_state(
            health=100,
            xp=100,
            equipment={"weapon": (12, 0)},
            bag=[(13, 400)],
            beast={"id": 21, "health": 40, "level": 2},
        )
        action = decide(state, POLICY, CATALOG)
        self.assertIs(ActionType.EQUIP, action.type)
        self.assertEqual({"items": [13], "in_combat": True}, action.payload)

        self.assertIs(ActionType.ATTACK, decide(state, POLICY, CATALOG, consider_equip=False).type)


class OutOfCombatDecisionTests(unittest.TestCase):
    def test_fresh_adventurer_explores_until_beast(self) -> None:
        action = decide(make_state(health=100, xp=0), POLICY, CATALOG)
        self.assertIs(ActionType.EXPLORE, action.type)
        self.assertTrue(action.payload["till_beast"])

    def test_till_beast_requires_high_hp_and_early_level(self) -> None:
        hurt = decide(make_state(health=80, xp=0), POLICY, CATALOG)
        self.assertFalse(hurt.payload["till_beast"])
        late = decide(make_state(health=100, xp=400), POLICY, CATALOG)
        self.assertIs(ActionType.EXPLORE, late.type)
        self.assertFalse(late.payload["till_beast"])

    def test_unspent_points_are_allocated_before_shopping(self) -> None:
        state = make_state(health=50, xp=0, stat_upgrades=2, gold=100, market=[20])
        action = decide(state, POLICY, CATALOG)
        self.assertIs(ActionType.SELECT_STATS, action.type)
        stats = action.payload["stats"]
        self.assertEqual(2, sum(stats.values()))
        self.assertEqual(1, stats["dexterity"])
        self.assertEqual(1, stats["vitality"])

    def test_potions_are_bought_when_hurt(self) -> None:
        state = make_state(health=30, xp=16, gold=100, market=[20])
        action = decide(state, POLICY, CATALOG)
        self.assertIs(ActionType.BUY_POTIONS, action.type)
        self.assertEqual({"count": 4, "unit_price": 4}, action.payload)

    def test_empty_armor_slots_are_covered_cheapest_first(self) -> None:
        state = make_state(health=100, xp=16, gold=100, equipment={"weapon": (12, 0)}, market=[21, 22, 20])
        action = decide(state, POLICY, CATALOG)
        self.assertIs(ActionType.BUY_ITEMS, action.type)
        self.assertEqual([{"item_id": 20, "equip": True}], action.payload["items"])

    def test_early_weapon_upgrade_comes_before_armor(self) -> None:
        state = make_state(health=100, xp=16, gold=100, equipment={"weapon": (12, 0)}, market=[14, 13, 20])
        action = decide(state, POLICY, CATALOG)
        self.assertIs(ActionType.BUY_ITEMS, action.type)
        self.assertEqual(13, action.payload["items"][0]["item_id"])

    def test_gold_reserve_is_withheld(self) -> None:
        state = make_state(health=100, xp=16, gold=8, equipment={"weapon": (12, 0)}, market=[20])
        self.assertIs(ActionType.EXPLORE, decide(state, POLICY, CATALOG).type)

    def test_better_bag_item_is_equipped(self) -> None:
        state = make_state(health=100, xp=16, equipment={"weapon": (12, 0), "chest": (20, 0)}, bag=[(21, 0), (7, 0)])
        action = decide(state, POLICY, CATALOG)
        self.assertIs(ActionType.EQUIP, action.type)
        self.assertEqual(sorted([21, 7]), sorted(action.payload["items"]))
        self.assertFalse(action.payload["in_combat"])

    def test_equip_is_skipped_when_not_considered(self) -> None:
        state = make_state(health=100, xp=16, equipment={"weapon": (12, 0), "chest": (20, 0)}, bag=[(21, 0)])
        self.assertIs(ActionType.EXPLORE, decide(state, POLICY, CATALOG, consider_equip=False).type)


if __name__ == "__main__":
    unittest.main()
