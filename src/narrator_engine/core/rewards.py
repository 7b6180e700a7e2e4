from __future__ import annotations

import math
import random
import re
from typing import Optional

from .catalog import generate_loot
from .currency import Currency
from .normalize import clamp_score
from .types import ActivityScores, RewardBreakdown, SessionAnalysis, SessionRewards

XP_WEIGHTS = {
    "combat": 0.25,
    "exploration": 0.15,
    "quests": 0.30,
    "discovery": 0.15,
    "social": 0.05,
}
RISK_GOLD_MULTIPLIERS = {"low": 0.5, "medium": 1.0, "high": 1.8}
MEANINGFUL_ACTIVITY_THRESHOLD = 2
DAYS_PER_YEAR = 365
DEFAULT_SUMMARY = "The adventure concluded."
EMPTY_SESSION_SUMMARY = "The adventure ended before it truly began."

_XP_BY_LEVEL = ((2, 75), (4, 150), (6, 300), (8, 500), (10, 750), (12, 1000), (14, 1500), (16, 2000), (18, 3000))
_GOLD_CP_BY_LEVEL = ((3, 50), (7, 100), (10, 500), (13, 5000), (16, 25000))


def base_xp_for_level(level: int) -> int:
    for ceiling, xp in _XP_BY_LEVEL:
        if level <= ceiling:
            return xp
    return 4000


def base_gold_cp_for_level(level: int) -> int:
    for ceiling, copper in _GOLD_CP_BY_LEVEL:
        if level <= ceiling:
            return copper
    return 100000


def time_multiplier(hours: float) -> float:
    return min(2.0, max(0.5, float(hours))) / 2


def danger_level(danger: int) -> str:
    if danger >= 7:
        return "high"
    if danger >= 4:
        return "medium"
    return "low"


def is_meaningful(scores: ActivityScores) -> bool:
    return scores.total_activity >= MEANINGFUL_ACTIVITY_THRESHOLD


def zero_rewards() -> SessionRewards:
    return SessionRewards(xp=0, gold={"gp": 0, "sp": 0, "cp": 0}, loot=None, breakdown=None)


def calculate_rewards(
    level: int,
    hours: float,
    scores: ActivityScores,
    rng: Optional[random.Random] = None,
) -> SessionRewards:
    if not is_meaningful(scores):
        return zero_rewards()
    rng = rng or random.Random()

    base_xp = base_xp_for_level(level)
    multiplier = time_multiplier(hours)
    category_xp = {
        name: math.floor(base_xp * weight * getattr(scores, name) / 10)
        for name, weight in XP_WEIGHTS.items()
    }
    subtotal = sum(category_xp.values())
    danger_xp = math.floor(subtotal * scores.danger / 10 * 0.30)
    total_xp = math.floor((subtotal + danger_xp) * multiplier)

    risk = danger_level(scores.danger)
    gold_cp = math.floor(
        base_gold_cp_for_level(level) * RISK_GOLD_MULTIPLIERS[risk] * multiplier * scores.quests / 10
    )

    loot = None
    loot_chance = (scores.combat + scores.exploration + scores.danger) / 30
    if loot_chance > 0.2 and rng.random() < loot_chance * 0.4:
        loot = generate_loot(level, risk, rng) or generate_loot(level, "high", rng)

    return SessionRewards(
        xp=total_xp,
        gold=Currency.from_copper(gold_cp).to_dict(),
        loot=loot,
        breakdown=RewardBreakdown(
            base_xp=base_xp,
            category_xp=category_xp,
            subtotal=subtotal,
            danger_xp=danger_xp,
            time_multiplier=multiplier,
        ),
    )


def hp_change(max_hp: int, current_hp: int, scores: ActivityScores) -> int:
    change = 0
    if scores.combat > 3:
        damage_risk = (scores.combat + scores.danger) / 2
        max_damage = math.floor(max_hp * 0.4)
        change = -math.floor(max_damage * (damage_risk / 10) * 0.5)
    if scores.quests >= 5 and scores.combat <= 2 and scores.danger <= 3:
        change = math.floor(max(0, max_hp - current_hp) * 0.25)
    return change


def days_elapsed(scores: ActivityScores) -> int:
    activity = (scores.combat + scores.exploration + scores.quests + scores.social) / 40
    return max(1, math.ceil(activity * 3))


def advance_date(day: int, year: int, days: int) -> tuple[int, int]:
    day = max(1, int(day)) + max(0, int(days))
    while day > DAYS_PER_YEAR:
        day -= DAYS_PER_YEAR
        year += 1
    return day, year


def _line_value(lines: list[str], prefix: str) -> Optional[str]:
    for line in lines:
        stripped = line.strip()
        if stripped.upper().startswith(prefix):
            return stripped[len(prefix):].strip()
    return None


def _score(lines: list[str], prefix: str) -> int:
    value = _line_value(lines, prefix)
    if value is None:
        return 0
    match = re.search(r"\d+", value)
    return clamp_score(match.group(0)) if match else 0


def _is_none(value: str) -> bool:
    return value.strip().lower() in ("", "none", "[none]", "[]", "n/a")


def _items(value: Optional[str]) -> list[str]:
    if value is None or _is_none(value):
        return []
    inner = value.strip()
    if inner.startswith("[") and inner.endswith("]"):
        inner = inner[1:-1]
    return [item.strip() for item in inner.split(",") if item.strip() and not _is_none(item)]


def _gold(value: Optional[str]) -> dict[str, int]:
    spent = {"gp": 0, "sp": 0, "cp": 0}
    if value is None or _is_none(value):
        return spent
    for denomination in spent:
        match = re.search(rf"(\d+)\s*{denomination}", value, re.IGNORECASE)
        if match:
            spent[denomination] = int(match.group(1))
    return spent


def parse_analysis(text: str) -> SessionAnalysis:
    """Parse the ``SUMMARY:`` / ``COMBAT:`` / ... line format of an end-of-session analysis."""
    lines = (text or "").splitlines()
    summary = _line_value(lines, "SUMMARY:") or DEFAULT_SUMMARY
    scores = ActivityScores(
        combat=_score(lines, "COMBAT:"),
        exploration=_score(lines, "EXPLORATION:"),
        quests=_score(lines, "QUESTS:"),
        discovery=_score(lines, "DISCOVERY:"),
        social=_score(lines, "SOCIAL:"),
        danger=_score(lines, "DANGER:"),
    )
    return SessionAnalysis(
        summary=summary,
        scores=scores,
        items_consumed=_items(_line_value(lines, "ITEMS_CONSUMED:")),
        items_gained=_items(_line_value(lines, "ITEMS_GAINED:")),
        gold_spent=_gold(_line_value(lines, "GOLD_SPENT:")),
    )
