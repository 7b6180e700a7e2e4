from __future__ import annotations

import asyncio
import json

from narrator_engine.core.engine import SessionEngine
from narrator_engine.core.types import StartSessionInput
from narrator_engine.persistence.sqlalchemy import open_database, unit_of_work_factory
from narrator_engine.persistence.sqlalchemy.models import Campaign, Character
from narrator_engine.providers import ProviderGateway


class DemoProvider:
    name = "demo"

    def __init__(self):
        self._replies = [
            "Rain hammers the cobbles of the Dock Ward as you step off the ferry.",
            "Old Marta squints at you over a counter crowded with lanterns.\n"
            '[MERCHANT_SHOP: Merchant="Old Marta" Type="general" Location="Dock Ward"]',
            "Behind the crates you find a waterlogged satchel.\n"
            '[LOOT_DROP: Item="Waterlogged Satchel" Source="crates"]',
            "SUMMARY: Aria arrived in the Dock Ward, browsed Old Marta's shop and found a satchel.\n"
            "COMBAT: 0\nEXPLORATION: 4\nQUESTS: 2\nDISCOVERY: 3\nSOCIAL: 3\nDANGER: 1\n"
            "ITEMS_CONSUMED: [none]\nGOLD_SPENT: [none]\nITEMS_GAINED: [Waterlogged Satchel]",
        ]

    async def is_available(self) -> bool:
        return True

    async def generate(self, system_context, messages) -> str:
        return self._replies.pop(0)


def make_uow_factory():
    session_factory = open_database("sqlite+pysqlite:///:memory:")

    with session_factory() as session:
        session.add(Campaign(id="campaign-1", name="Waterdeep", description="A city of splendors."))
        session.add(
            Character(
                id="char-1",
                campaign_id="campaign-1",
                name="Aria",
                race="Elf",
                class_name="Rogue",
                level=3,
                current_hp=20,
                max_hp=24,
                dexterity=16,
                gold_gp=25,
            )
        )
        session.commit()

    return unit_of_work_factory(session_factory), session_factory


async def main() -> None:
    uow_factory, session_factory = make_uow_factory()
    engine = SessionEngine(uow_factory=uow_factory, gateway=ProviderGateway([DemoProvider()]))

    started = await engine.start_session(StartSessionInput(character_id="char-1"))
    session_id = started.session.id
    print("opening:", started.narrative)

    shop = await engine.post_action(session_id, "I duck into the nearest shop")
    print("narrative:", shop.narrative)
    for merchant in shop.effects.merchants:
        print(f"{merchant.name} stocks {len(merchant.inventory)} lines")

    found = await engine.post_action(session_id, "I search behind the crates")
    print("loot:", found.effects.loot)

    ended = await engine.end_session(session_id)
    print("summary:", ended.summary)
    print("rewards:", ended.rewards.as_dict())

    claim = engine.claim_rewards(session_id)
    print("claimed xp:", claim.xp_awarded, "gold now:", claim.new_gold)

    with session_factory() as session:
        character = session.get(Character, "char-1")
        print("inventory:", json.loads(character.inventory_json))


if __name__ == "__main__":
    asyncio.run(main())
