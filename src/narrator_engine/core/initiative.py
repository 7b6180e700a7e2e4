from __future__ import annotations

import random
from collections import Counter
from dataclasses import dataclass, replace
from typing import Optional, Sequence

from .types import CombatState, TurnOrderEntry

# Keyword -> initiative modifier for adversaries without a stat block.
ADVERSARY_DEX_MODIFIERS: tuple[tuple[tuple[str, ...], int], ...] = (
    (("rogue", "assassin", "thief"), 4),
    (("wolf", "panther", "hawk"), 3),
    (("goblin", "kobold", "sprite"), 2),
    (("bandit", "cultist", "guard", "soldier", "skeleton", "orc"), 1),
    (("zombie", "ogre", "troll", "golem", "giant"), -1),
)
DEFAULT_ADVERSARY_MODIFIER = 1


@dataclass(frozen=True)
class Combatant:
    name: str
    type: str
    modifier: int


def dex_modifier(dexterity: Optional[int]) -> int:
    try:
        return (int(dexterity) - 10) // 2
    except (TypeError, ValueError):
        return 0


def estimate_adversary_modifier(name: Optional[str]) -> int:
    lowered = (name or "").strip().lower()
    if not lowered:
        return DEFAULT_ADVERSARY_MODIFIER
    for keywords, modifier in ADVERSARY_DEX_MODIFIERS:
        if any(keyword in lowered for keyword in keywords):
            return modifier
    return DEFAULT_ADVERSARY_MODIFIER


def number_duplicates(names: Sequence[str]) -> list[str]:
    """``["Goblin", "Goblin", "Ogre"]`` -> ``["Goblin 1", "Goblin 2", "Ogre"]``."""
    counts = Counter(name.lower() for name in names)
    seen: Counter[str] = Counter()
    out = []
    for name in names:
        key = name.lower()
        if counts[key] > 1:
            seen[key] += 1
            out.append(f"{name} {seen[key]}")
        else:
            out.append(name)
    return out


def adversaries(names: Sequence[str]) -> list[Combatant]:
    cleaned = [name.strip() for name in names if name and name.strip()]
    return [
        Combatant(name=label, type="adversary", modifier=estimate_adversary_modifier(base))
        for base, label in zip(cleaned, number_duplicates(cleaned))
    ]


def roll_initiative(combatants: Sequence[Combatant], rng: random.Random | None = None) -> CombatState:
    """Roll d20 + modifier for each combatant and order the encounter.

    Ordering is total descending, then modifier descending, then a uniform
    random key drawn per entry so any remaining tie is a fair coin flip.
    """
    rng = rng or random.Random()
    keyed: list[tuple[int, int, float, TurnOrderEntry]] = []
    for combatant in combatants:
        roll = rng.randint(1, 20)
        entry = TurnOrderEntry(
            name=combatant.name,
            type=combatant.type,
            roll=roll,
            modifier=combatant.modifier,
            total=roll + combatant.modifier,
        )
        keyed.append((-entry.total, -entry.modifier, rng.random(), entry))
    keyed.sort(key=lambda item: item[:3])
    return CombatState(turn_order=[item[3] for item in keyed], current_turn=0, round=1)


def advance_turn(state: CombatState) -> CombatState:
    """Move to the next actor, wrapping into a new round.

    The engine never advances combat itself; callers use this with
    ``CombatState.from_dict`` on the stored state to track whose turn it is.
    """
    if not state.turn_order:
        return state
    next_turn = state.current_turn + 1
    if next_turn >= len(state.turn_order):
        return replace(state, current_turn=0, round=state.round + 1)
    return replace(state, current_turn=next_turn)


def describe_order(state: CombatState) -> str:
    lines = [
        f"{index + 1}. {entry.name} ({entry.type}) - {entry.total} ({entry.roll}{entry.modifier:+d})"
        for index, entry in enumerate(state.turn_order)
    ]
    return "\n".join(lines)
