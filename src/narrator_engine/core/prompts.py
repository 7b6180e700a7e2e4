from __future__ import annotations

from typing import Any

from .currency import Currency

MARKER_INSTRUCTIONS = """\
You may embed the following private markers in your narration. The player never sees them.
Use double quotes around values. Place each marker on its own line after the prose it belongs to.

[MERCHANT_SHOP: Merchant="Name" Type="general|blacksmith|alchemist|magic|jeweler|tanner|tailor" Location="Where"]
  when the player starts browsing a shop.
[MERCHANT_REFER: From="Current merchant" To="Other merchant" Item="Item name"]
  when a merchant sends the player elsewhere for an item.
[ADD_ITEM: Name="Item" Price_GP=15 Quality="standard|fine|superior|masterwork" Category="weapon" Description="..."]
  when a merchant offers a specific item that is not on the stock list.
[LOOT_DROP: Item="Item name" Source="where it came from"]
  when the player actually obtains an item.
[COMBAT_START: Enemies="Goblin, Goblin, Wolf"]
  when a fight begins. Initiative will be rolled for you.
[COMBAT_END]
  when the fight is over.
[NPC_WANTS_TO_JOIN: Name="Name" Race="Race" Gender="Gender" Occupation="Job" Personality="Traits" Reason="Why"]
  when a character asks to travel with the party. Never add them to the party yourself.
"""

NARRATOR_RULES = """\
You are the narrator of a tabletop role-playing adventure.
Write in second person. Never speak or act for the player character.
Keep each response to a few paragraphs and end at a point where the player can act.
Do not add notes, commentary or out-of-character explanations.
"""

ANALYSIS_PROMPT = """\
The session is ending. Analyze what the party actually accomplished.

Score each category from 0 to 10 based on what really happened:
COMBAT (fighting), EXPLORATION (travel and discovery of places), QUESTS (objectives completed),
DISCOVERY (secrets and information), SOCIAL (relationships and alliances), DANGER (risk faced).

The character's current inventory is: {inventory}
The character's current gold: {gold}

Answer exactly in this format:
SUMMARY: [3-4 sentences on what happened and the current situation]
COMBAT: [0-10]
EXPLORATION: [0-10]
QUESTS: [0-10]
DISCOVERY: [0-10]
SOCIAL: [0-10]
DANGER: [0-10]
ITEMS_CONSUMED: [item x quantity, ...] or [none]
GOLD_SPENT: [X gp, Y sp, Z cp] or [none]
ITEMS_GAINED: [item, ...] or [none]"""

RECAP_PROMPT = (
    "The player is returning to a paused adventure. Write a brief \"Previously on...\" style "
    "recap (2-3 sentences max) summarizing what has happened so far. Write in past tense. "
    "Be dramatic but concise. Do not include any meta-commentary."
)

DEFAULT_OPENING = (
    "Begin the adventure. Set the opening scene around {name} in a few vivid paragraphs, "
    "then stop and let the player decide what to do."
)


def build_system_context(
    character: Any,
    companions: list[str] | None = None,
    second_character: Any | None = None,
    campaign: Any | None = None,
    extra: str | None = None,
) -> str:
    parts = [NARRATOR_RULES]
    if campaign is not None:
        parts.append(f"Campaign: {campaign.name}. {campaign.description or ''}".strip())
    parts.append(
        f"Player character: {character.name}, level {character.level}"
        + (f" {character.race}" if character.race else "")
        + (f" {character.class_name}" if character.class_name else "")
        + f" ({character.current_hp}/{character.max_hp} HP)."
    )
    if second_character is not None:
        parts.append(f"Second player character: {second_character.name}, level {second_character.level}.")
    if companions:
        names = ", ".join(companions)
        parts.append(f"Travelling companions: {names}.")
    if extra:
        parts.append(extra.strip())
    parts.append(MARKER_INSTRUCTIONS)
    return "\n\n".join(part for part in parts if part)


def opening_prompt(character_name: str) -> str:
    return DEFAULT_OPENING.format(name=character_name)


def analysis_prompt(inventory: str, gold: str) -> str:
    return ANALYSIS_PROMPT.format(inventory=inventory or "empty", gold=gold)


def merchant_stock_note(name: str, merchant_type: str, location: str, lines: list[dict[str, Any]]) -> str:
    header = f"[Merchant stock] {name} ({merchant_type}, {location}) currently sells ONLY:"
    if not lines:
        return header + "\n- nothing (the shelves are bare)"
    rows = []
    for line in lines:
        price = Currency.from_copper(int(line.get("price_cp", 0)))
        rows.append(f"- {line['name']} x{int(line.get('quantity', 1))}: {price}")
    return "\n".join([header, *rows, "Only offer items on this list unless you add one with ADD_ITEM."])


def combat_order_note(order_text: str) -> str:
    return "[Initiative] Combat has begun. Turn order, which you must follow:\n" + order_text
