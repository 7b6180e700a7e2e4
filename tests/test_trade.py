from __future__ import annotations

import json

import pytest

from narrator_engine.core.errors import InsufficientFundsError, ItemNotAvailableError, NotFoundError
from narrator_engine.core.trade import TradeService, sell_price_cp
from narrator_engine.persistence.sqlalchemy.models import Character, MerchantStock


@pytest.fixture()
def seed_merchant(session_factory, seed_party):
    with session_factory() as session:
        session.add(
            MerchantStock(
                id="merchant-1",
                campaign_id="campaign-1",
                merchant_name="Old Marta",
                merchant_name_normalized="old marta",
                merchant_type="general",
                location="Dock Ward",
                inventory_json=json.dumps(
                    [
                        {"name": "Torch", "quantity": 10, "price_cp": 1},
                        {"name": "Healer's Kit", "quantity": 1, "price_cp": 500},
                        {"name": "Potion of Healing", "quantity": 2, "price_cp": 5000},
                    ]
                ),
                purse_cp=2000,
            )
        )
        session.commit()
    return {"merchant_id": "merchant-1", **seed_party}


def _state(session_factory):
    with session_factory() as session:
        hero = session.get(Character, "char-1")
        merchant = session.get(MerchantStock, "merchant-1")
        purse = hero.gold_gp * 100 + hero.gold_sp * 10 + hero.gold_cp
        owned = {line["name"]: line for line in json.loads(hero.inventory_json)}
        stock = {line["name"]: line for line in json.loads(merchant.inventory_json)}
        return purse, merchant.purse_cp, owned, stock


def test_buy_moves_item_and_exact_copper(session_factory, uow_factory, seed_merchant):
    trade = TradeService(uow_factory)

    result = trade.buy_item("merchant-1", "char-1", "healer's kit")

    assert result.item == "Healer's Kit"
    assert result.price_cp == 500
    assert result.character_gold == {"gp": 5, "sp": 0, "cp": 0}
    assert result.merchant_purse_cp == 2500
    purse, merchant_purse, owned, stock = _state(session_factory)
    assert purse + merchant_purse == 1000 + 2000
    assert owned["Healer's Kit"]["quantity"] == 1
    assert owned["Healer's Kit"]["price_cp"] == 500
    assert "Healer's Kit" not in stock


def test_buy_merges_with_existing_lines(session_factory, uow_factory, seed_merchant):
    trade = TradeService(uow_factory)
    trade.buy_item("merchant-1", "char-1", "Torch", quantity=4)

    purse, merchant_purse, owned, stock = _state(session_factory)
    assert owned["Torch"]["quantity"] == 7
    assert stock["Torch"]["quantity"] == 6
    assert (purse, merchant_purse) == (996, 2004)


def test_buy_failures_leave_state_untouched(session_factory, uow_factory, seed_merchant):
    trade = TradeService(uow_factory)
    before = _state(session_factory)

    with pytest.raises(InsufficientFundsError) as excinfo:
        trade.buy_item("merchant-1", "char-1", "Potion of Healing")
    assert excinfo.value.needed_cp == 5000
    with pytest.raises(ItemNotAvailableError):
        trade.buy_item("merchant-1", "char-1", "Longsword")
    with pytest.raises(ItemNotAvailableError):
        trade.buy_item("merchant-1", "char-1", "Torch", quantity=11)
    with pytest.raises(NotFoundError):
        trade.buy_item("merchant-404", "char-1", "Torch")

    assert _state(session_factory) == before


def test_sell_pays_half_catalog_value(session_factory, uow_factory, seed_merchant):
    trade = TradeService(uow_factory)

    result = trade.sell_item("merchant-1", "char-1", "Rope (50 ft)")

    # unknown to the catalog and never priced: flat 1 gp
    assert result.price_cp == 100
    purse, merchant_purse, owned, stock = _state(session_factory)
    assert (purse, merchant_purse) == (1100, 1900)
    assert "Rope (50 ft)" not in owned
    assert stock["Rope (50 ft)"]["quantity"] == 1


def test_sell_price_rules():
    assert sell_price_cp({"name": "Potion of Healing", "quantity": 1}) == 2500
    assert sell_price_cp({"name": "Torch", "quantity": 1}) == 1
    assert sell_price_cp({"name": "Moonsteel Blade", "quantity": 1, "price_cp": 6825}) == 3412
    assert sell_price_cp({"name": "Odd Pebble", "quantity": 1}) == 100


def test_sell_fails_when_merchant_cannot_pay(session_factory, uow_factory, seed_merchant):
    with session_factory() as session:
        session.get(MerchantStock, "merchant-1").purse_cp = 50
        session.commit()
    trade = TradeService(uow_factory)

    with pytest.raises(InsufficientFundsError) as excinfo:
        trade.sell_item("merchant-1", "char-1", "Rope (50 ft)")
    assert excinfo.value.owner == "Old Marta"
    with pytest.raises(ItemNotAvailableError):
        trade.sell_item("merchant-1", "char-1", "Torch", quantity=5)


def test_partial_names_do_not_trade_and_suggest_lines(session_factory, uow_factory, seed_merchant):
    trade = TradeService(uow_factory)
    before = _state(session_factory)

    with pytest.raises(ItemNotAvailableError) as excinfo:
        trade.sell_item("merchant-1", "char-1", "Rope")
    assert excinfo.value.candidates == ["Rope (50 ft)"]
    assert "did you mean: Rope (50 ft)" in str(excinfo.value)

    with pytest.raises(ItemNotAvailableError) as excinfo:
        trade.buy_item("merchant-1", "char-1", "Healer")
    assert excinfo.value.candidates == ["Healer's Kit"]

    with pytest.raises(ItemNotAvailableError) as excinfo:
        trade.buy_item("merchant-1", "char-1", "Longsword")
    assert excinfo.value.candidates == []

    assert _state(session_factory) == before
