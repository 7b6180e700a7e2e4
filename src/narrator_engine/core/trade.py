from __future__ import annotations

import logging
from typing import Any, Callable

from ..persistence.interfaces import UnitOfWork
from .catalog import buyback_price_cp, lookup_item
from .currency import purse_of, store_purse
from .errors import InsufficientFundsError, ItemNotAvailableError, NotFoundError, PreconditionError
from .inventory import add_line, find_line, load_lines, near_matches, remove_quantity
from .normalize import dump_json
from .types import TradeResult


def sell_price_cp(line: dict[str, Any]) -> int:
    """Per-unit price a merchant pays for an inventory line."""
    if lookup_item(line["name"]) is None:
        listed = int(line.get("price_cp") or 0)
        if listed > 0:
            return max(1, listed // 2)
    return buyback_price_cp(line["name"])


def _traded_entry(line: dict[str, Any], price_cp: int) -> dict[str, Any]:
    entry = {key: value for key, value in line.items() if key != "quantity"}
    entry["price_cp"] = price_cp
    return entry


class TradeService:
    """Buying from and selling to merchant stock; copper moves between purses exactly."""

    def __init__(self, uow_factory: Callable[[], UnitOfWork], logger: logging.Logger | None = None):
        self._uow_factory = uow_factory
        self._logger = logger or logging.getLogger(__name__)

    def buy_item(self, merchant_id: str, character_id: str, item_name: str, quantity: int = 1) -> TradeResult:
        if quantity < 1:
            raise PreconditionError("quantity must be at least 1")
        with self._uow_factory() as uow:
            merchant, character = self._load(uow, merchant_id, character_id)
            stock = load_lines(merchant.inventory_json)
            line = find_line(stock, item_name)
            if line is None:
                raise ItemNotAvailableError(item_name, merchant.merchant_name, near_matches(stock, item_name))
            if int(line["quantity"]) < quantity:
                raise ItemNotAvailableError(item_name, merchant.merchant_name)

            unit_price = int(line.get("price_cp") or 0)
            total = unit_price * quantity
            store_purse(character, purse_of(character).spend(total, owner=character.name))
            merchant.purse_cp = int(merchant.purse_cp or 0) + total

            entry = _traded_entry(line, unit_price)
            remove_quantity(stock, line["name"], quantity)
            merchant.inventory_json = dump_json(stock)
            owned = load_lines(character.inventory_json)
            add_line(owned, entry, quantity)
            character.inventory_json = dump_json(owned)

            result = TradeResult(
                item=entry["name"],
                quantity=quantity,
                price_cp=total,
                character_gold=purse_of(character).to_dict(),
                merchant_purse_cp=merchant.purse_cp,
            )
            uow.commit()

        self._logger.info("%s bought %s x%s from %s for %s cp", character_id, result.item, quantity, merchant_id, total)
        return result

    def sell_item(self, merchant_id: str, character_id: str, item_name: str, quantity: int = 1) -> TradeResult:
        if quantity < 1:
            raise PreconditionError("quantity must be at least 1")
        with self._uow_factory() as uow:
            merchant, character = self._load(uow, merchant_id, character_id)
            owned = load_lines(character.inventory_json)
            line = find_line(owned, item_name)
            if line is None:
                raise ItemNotAvailableError(item_name, character.name, near_matches(owned, item_name))
            if int(line["quantity"]) < quantity:
                raise ItemNotAvailableError(item_name, character.name)

            total = sell_price_cp(line) * quantity
            purse = int(merchant.purse_cp or 0)
            if total > purse:
                raise InsufficientFundsError(total, purse, owner=merchant.merchant_name)
            merchant.purse_cp = purse - total
            store_purse(character, purse_of(character).earn(total))

            known = lookup_item(line["name"])
            resale = int(line.get("price_cp") or 0) or (known.price_cp if known else total // quantity * 2)
            entry = _traded_entry(line, resale)
            remove_quantity(owned, line["name"], quantity)
            character.inventory_json = dump_json(owned)
            stock = load_lines(merchant.inventory_json)
            add_line(stock, entry, quantity)
            merchant.inventory_json = dump_json(stock)

            result = TradeResult(
                item=entry["name"],
                quantity=quantity,
                price_cp=total,
                character_gold=purse_of(character).to_dict(),
                merchant_purse_cp=merchant.purse_cp,
            )
            uow.commit()

        self._logger.info("%s sold %s x%s to %s for %s cp", character_id, result.item, quantity, merchant_id, total)
        return result

    def _load(self, uow: Any, merchant_id: str, character_id: str) -> tuple[Any, Any]:
        merchant = uow.merchants.get(merchant_id)
        if merchant is None:
            raise NotFoundError("merchant", merchant_id)
        character = uow.characters.get(character_id)
        if character is None:
            raise NotFoundError("character", character_id)
        if merchant.campaign_id and character.campaign_id and merchant.campaign_id != character.campaign_id:
            raise PreconditionError(f"{merchant.merchant_name} does not trade in this campaign")
        return merchant, character
