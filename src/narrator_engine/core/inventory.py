from __future__ import annotations

import re
from typing import Any

from .normalize import parse_json_list

_QUANTITY_SUFFIX = re.compile(r"^(?P<name>.+?)\s*[x×]\s*(?P<qty>\d+)\s*$", re.IGNORECASE)


def load_lines(inventory_json: str | None) -> list[dict[str, Any]]:
    lines = []
    for raw in parse_json_list(inventory_json):
        if isinstance(raw, str):
            raw = {"name": raw, "quantity": 1}
        if not isinstance(raw, dict):
            continue
        name = str(raw.get("name") or "").strip()
        if not name:
            continue
        line = dict(raw)
        line["name"] = name
        try:
            line["quantity"] = max(0, int(raw.get("quantity", 1)))
        except (TypeError, ValueError):
            line["quantity"] = 1
        if line["quantity"] > 0:
            lines.append(line)
    return lines


def find_line(lines: list[dict[str, Any]], name: str, partial: bool = False) -> dict[str, Any] | None:
    needle = (name or "").strip().lower()
    if not needle:
        return None
    for line in lines:
        if line["name"].lower() == needle:
            return line
    if not partial:
        return None
    for line in lines:
        key = line["name"].lower()
        if needle in key or key in needle:
            return line
    return None


def near_matches(lines: list[dict[str, Any]], name: str) -> list[str]:
    needle = (name or "").strip().lower()
    if not needle:
        return []
    return [line["name"] for line in lines if needle in line["name"].lower() or line["name"].lower() in needle]


def add_line(lines: list[dict[str, Any]], entry: dict[str, Any], quantity: int | None = None) -> dict[str, Any]:
    """Merge ``entry`` into ``lines`` by case-insensitive name; returns the resulting line."""
    qty = int(quantity if quantity is not None else entry.get("quantity", 1))
    if qty <= 0:
        raise ValueError("quantity must be positive")
    existing = find_line(lines, entry["name"])
    if existing is not None:
        existing["quantity"] = int(existing.get("quantity", 0)) + qty
        for key, value in entry.items():
            if key not in ("name", "quantity") and key not in existing and value not in (None, ""):
                existing[key] = value
        return existing
    line = dict(entry)
    line["quantity"] = qty
    lines.append(line)
    return line


def remove_quantity(
    lines: list[dict[str, Any]],
    name: str,
    quantity: int = 1,
    partial: bool = False,
) -> dict[str, Any] | None:
    """Decrement a line, dropping it at zero. Returns the line touched or ``None``."""
    line = find_line(lines, name, partial=partial)
    if line is None:
        return None
    line["quantity"] = int(line.get("quantity", 0)) - max(1, quantity)
    if line["quantity"] <= 0:
        lines.remove(line)
    return line


def parse_item_quantity(text: str) -> tuple[str, int]:
    """``"Torch x 3"`` -> ``("Torch", 3)``; a bare name counts once."""
    text = (text or "").strip()
    match = _QUANTITY_SUFFIX.match(text)
    if match:
        return match.group("name").strip(), max(1, int(match.group("qty")))
    return text, 1


def describe(lines: list[dict[str, Any]]) -> str:
    parts = []
    for line in lines:
        qty = int(line.get("quantity", 1))
        parts.append(line["name"] if qty == 1 else f"{line['name']} x{qty}")
    return ", ".join(parts)
