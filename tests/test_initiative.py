from __future__ import annotations

import random

from narrator_engine.core.initiative import (
    Combatant,
    adversaries,
    advance_turn,
    describe_order,
    dex_modifier,
    estimate_adversary_modifier,
    number_duplicates,
    roll_initiative,
)
from narrator_engine.core.types import CombatState, TurnOrderEntry


class LoadedDice(random.Random):
    """Returns scripted d20 rolls in order, then a fixed tie-break key."""

    def __init__(self, rolls):
        super().__init__(0)
        self._rolls = list(rolls)

    def randint(self, a, b):
        return self._rolls.pop(0)


def test_duplicate_enemies_are_numbered():
    assert number_duplicates(["Goblin", "Goblin", "Wolf"]) == ["Goblin 1", "Goblin 2", "Wolf"]
    foes = adversaries(["Goblin", " goblin ", "", "Ogre"])
    assert [foe.name for foe in foes] == ["Goblin 1", "goblin 2", "Ogre"]
    assert [foe.modifier for foe in foes] == [2, 2, -1]
    assert all(foe.type == "adversary" for foe in foes)


def test_modifiers():
    assert dex_modifier(16) == 3
    assert dex_modifier(8) == -1
    assert dex_modifier(None) == 0
    assert estimate_adversary_modifier("Shadow Assassin") == 4
    assert estimate_adversary_modifier("Bandit Captain") == 1
    assert estimate_adversary_modifier("Mimic") == 1


def test_every_combatant_gets_exactly_one_entry():
    party = [Combatant("Aria", "participant", 3), Combatant("Lyra", "companion", 2)]
    state = roll_initiative(party + adversaries(["Goblin", "Goblin"]), random.Random(7))

    assert len(state.turn_order) == 4
    assert sorted(entry.name for entry in state.turn_order) == ["Aria", "Goblin 1", "Goblin 2", "Lyra"]
    assert state.current_turn == 0
    assert state.round == 1
    for entry in state.turn_order:
        assert 1 <= entry.roll <= 20
        assert entry.total == entry.roll + entry.modifier


def test_order_is_total_then_modifier_descending():
    combatants = [
        Combatant("Low", "adversary", 0),
        Combatant("Tied slow", "adversary", 1),
        Combatant("Tied fast", "participant", 4),
        Combatant("High", "companion", 0),
    ]
    # totals: 5, 15, 15, 19
    state = roll_initiative(combatants, LoadedDice([5, 14, 11, 19]))
    assert [entry.name for entry in state.turn_order] == ["High", "Tied fast", "Tied slow", "Low"]


def test_advance_turn_wraps_and_counts_rounds():
    state = CombatState(
        turn_order=[
            TurnOrderEntry("Aria", "participant", 10, 3, 13),
            TurnOrderEntry("Goblin", "adversary", 8, 2, 10),
        ]
    )
    state = advance_turn(state)
    assert state.current_actor.name == "Goblin"
    assert state.round == 1
    state = advance_turn(state)
    assert state.current_actor.name == "Aria"
    assert state.round == 2

    empty = CombatState(turn_order=[])
    assert advance_turn(empty) is empty
    assert empty.current_actor is None


def test_state_round_trips_through_session_json():
    state = roll_initiative([Combatant("Aria", "participant", 3), Combatant("Wolf", "adversary", 3)], random.Random(1))
    restored = CombatState.from_dict(state.as_dict())
    assert restored == state
    assert describe_order(state).startswith("1. ")


def test_callers_advance_stored_combat_with_package_helper():
    from narrator_engine import core

    stored = roll_initiative([Combatant("Aria", "participant", 3), Combatant("Wolf", "adversary", 3)], random.Random(1))
    state = CombatState.from_dict(stored.as_dict())
    first = state.current_actor.name

    state = core.advance_turn(core.advance_turn(state))

    assert state.current_actor.name == first
    assert state.round == 2
    assert stored.round == 1
