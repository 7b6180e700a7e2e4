"""Scanner and parser for the bracketed directive tags embedded in narration.

Grammar::

    tag    := "[" NAME "]" | "[" NAME ":" field* "]"
    field  := KEY ws* "=" ws* value
    value  := '"' [^"]* '"' | "'" [^']* "'" | bare
    bare   := [^\\s\\]]+

Only tag names in ``TAGS`` are treated as directives. Any other bracketed text
is left in place, and so is anything that does not scan cleanly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from .types import (
    CombatEndDirective,
    CombatStartDirective,
    Directive,
    ItemGrantDirective,
    LootDropDirective,
    MarkerRejection,
    MerchantOpenDirective,
    MerchantReferralDirective,
    ParsedMarkers,
    RecruitmentDirective,
)

logger = logging.getLogger(__name__)

APPLICATION_ORDER = (
    "recruitment",
    "item_grant",
    "merchant_open",
    "merchant_referral",
    "loot_drop",
    "combat_start",
    "combat_end",
)


class MarkerFieldError(ValueError):
    pass


@dataclass
class RawTag:
    name: str
    fields: dict[str, str]
    start: int
    end: int
    bare: bool


def _is_name_char(ch: str) -> bool:
    return ch.isalnum() or ch == "_"


def _skip_space(text: str, pos: int) -> int:
    while pos < len(text) and text[pos].isspace():
        pos += 1
    return pos


def _read_fields(text: str, pos: int) -> Optional[tuple[dict[str, str], int]]:
    fields: dict[str, str] = {}
    length = len(text)
    while True:
        pos = _skip_space(text, pos)
        while pos < length and text[pos] == ",":
            pos = _skip_space(text, pos + 1)
        if pos >= length:
            return None
        if text[pos] == "]":
            return fields, pos + 1

        key_start = pos
        while pos < length and _is_name_char(text[pos]):
            pos += 1
        if pos == key_start:
            return None
        key = text[key_start:pos].lower()

        pos = _skip_space(text, pos)
        if pos >= length or text[pos] != "=":
            return None
        pos = _skip_space(text, pos + 1)
        if pos >= length:
            return None

        quote = text[pos]
        if quote in ("\"", "'"):
            close = text.find(quote, pos + 1)
            if close < 0:
                return None
            value = text[pos + 1:close]
            pos = close + 1
        else:
            value_start = pos
            while pos < length and not text[pos].isspace() and text[pos] != "]":
                pos += 1
            value = text[value_start:pos].rstrip(",")
        fields[key] = value.strip()


def _read_tag(text: str, start: int, names: frozenset[str]) -> Optional[RawTag]:
    pos = start + 1
    length = len(text)
    name_start = pos
    while pos < length and _is_name_char(text[pos]):
        pos += 1
    name = text[name_start:pos].upper()
    if name not in names:
        return None
    pos = _skip_space(text, pos)
    if pos >= length:
        return None
    if text[pos] == "]":
        return RawTag(name=name, fields={}, start=start, end=pos + 1, bare=True)
    if text[pos] != ":":
        return None
    parsed = _read_fields(text, pos + 1)
    if parsed is None:
        return None
    fields, end = parsed
    return RawTag(name=name, fields=fields, start=start, end=end, bare=False)


def iter_tags(text: str, names: frozenset[str] | None = None) -> Iterator[RawTag]:
    names = names if names is not None else frozenset(TAGS)
    pos = 0
    while True:
        start = text.find("[", pos)
        if start < 0:
            return
        tag = _read_tag(text, start, names)
        if tag is None:
            pos = start + 1
            continue
        yield tag
        pos = tag.end


def _required(fields: dict[str, str], key: str) -> str:
    value = (fields.get(key) or "").strip()
    if not value:
        raise MarkerFieldError(f"missing {key}")
    return value


def _optional(fields: dict[str, str], key: str, default: Optional[str] = None) -> Optional[str]:
    value = (fields.get(key) or "").strip()
    return value or default


def _as_float(raw: Optional[str], default: float = 0.0) -> float:
    if raw is None:
        return default
    try:
        return max(0.0, float(raw.replace(",", "").lower().removesuffix("gp").strip()))
    except ValueError:
        return default


def _as_quantity(raw: Optional[str]) -> int:
    if raw is None:
        return 1
    try:
        return max(1, int(raw))
    except ValueError:
        return 1


def _merchant_shop(fields: dict[str, str]) -> Directive:
    return MerchantOpenDirective(
        merchant=_required(fields, "merchant"),
        merchant_type=(_optional(fields, "type", "general") or "general").lower(),
        location=_optional(fields, "location", "Unknown shop") or "Unknown shop",
    )


def _merchant_refer(fields: dict[str, str]) -> Directive:
    return MerchantReferralDirective(
        to_merchant=_required(fields, "to"),
        item=_required(fields, "item"),
        from_merchant=_optional(fields, "from"),
    )


def _add_item(fields: dict[str, str]) -> Directive:
    return ItemGrantDirective(
        name=_required(fields, "name"),
        price_gp=_as_float(_optional(fields, "price_gp")),
        quality=(_optional(fields, "quality", "standard") or "standard").lower(),
        category=_optional(fields, "category", "adventuring_gear") or "adventuring_gear",
        description=_optional(fields, "description", "") or "",
        merchant=_optional(fields, "merchant"),
        quantity=_as_quantity(_optional(fields, "quantity")),
    )


def _loot_drop(fields: dict[str, str]) -> Directive:
    return LootDropDirective(
        item=_required(fields, "item"),
        source=_optional(fields, "source", "found") or "found",
        quantity=_as_quantity(_optional(fields, "quantity")),
    )


def _combat_start(fields: dict[str, str]) -> Directive:
    raw = fields.get("enemies") or ""
    return CombatStartDirective(enemies=[name.strip() for name in raw.split(",") if name.strip()])


def _combat_end(_fields: dict[str, str]) -> Directive:
    return CombatEndDirective()


def _npc_join(fields: dict[str, str]) -> Directive:
    race = _optional(fields, "race")
    occupation = _optional(fields, "occupation")
    return RecruitmentDirective(
        name=_required(fields, "name"),
        race=race or "Human",
        gender=_optional(fields, "gender"),
        occupation=occupation,
        personality=_optional(fields, "personality"),
        reason=_optional(fields, "reason"),
        full_attributes=bool(race and occupation),
    )


TAGS: dict[str, Callable[[dict[str, str]], Directive]] = {
    "MERCHANT_SHOP": _merchant_shop,
    "MERCHANT_REFER": _merchant_refer,
    "ADD_ITEM": _add_item,
    "LOOT_DROP": _loot_drop,
    "COMBAT_START": _combat_start,
    "COMBAT_END": _combat_end,
    "NPC_WANTS_TO_JOIN": _npc_join,
}
_TAG_NAMES = frozenset(TAGS)


def _strip_pass(text: str) -> tuple[str, bool]:
    pieces: list[str] = []
    cursor = 0
    changed = False
    for tag in iter_tags(text, _TAG_NAMES):
        pieces.append(text[cursor:tag.start])
        cursor = _skip_space(text, tag.end)
        changed = True
    pieces.append(text[cursor:])
    return "".join(pieces), changed


def clean_text(text: str) -> str:
    """Remove every recognised tag and its trailing whitespace; idempotent."""
    current = text or ""
    changed = True
    while changed:
        current, changed = _strip_pass(current)
    return current.strip()


def parse(text: str) -> ParsedMarkers:
    """Scan ``text`` once, returning typed directives in text order plus the cleaned narrative."""
    text = text or ""
    directives: list[Directive] = []
    rejected: list[MarkerRejection] = []
    for tag in iter_tags(text, _TAG_NAMES):
        raw = text[tag.start:tag.end]
        try:
            directives.append(TAGS[tag.name](tag.fields))
        except MarkerFieldError as exc:
            logger.debug("Rejected %s marker: %s (%s)", tag.name, exc, raw)
            rejected.append(MarkerRejection(tag=tag.name, reason=str(exc), raw=raw))
    if directives:
        logger.debug("Parsed %d marker(s): %s", len(directives), [d.kind for d in directives])
    return ParsedMarkers(clean_text=clean_text(text), directives=directives, rejected=rejected)


def in_application_order(directives: list[Directive]) -> list[Directive]:
    """Stable sort by applier order; directives of one kind keep text order."""
    rank = {kind: index for index, kind in enumerate(APPLICATION_ORDER)}
    return sorted(directives, key=lambda d: rank[d.kind])
