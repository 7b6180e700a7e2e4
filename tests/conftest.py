from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from narrator_engine.persistence.sqlalchemy import open_database, unit_of_work_factory
from narrator_engine.persistence.sqlalchemy.models import Campaign, Character, Companion, Npc


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 1, 18, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture()
def session_factory():
    return open_database("sqlite+pysqlite:///:memory:")


@pytest.fixture()
def uow_factory(session_factory):
    return unit_of_work_factory(session_factory)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def seed_party(session_factory):
    with session_factory() as session:
        campaign = Campaign(id="campaign-1", name="Sword Coast", description="", setting="Forgotten Realms")
        hero = Character(
            id="char-1",
            campaign_id=campaign.id,
            name="Aria",
            race="Elf",
            class_name="Rogue",
            level=3,
            experience=900,
            current_hp=20,
            max_hp=24,
            dexterity=16,
            gold_gp=10,
            gold_sp=0,
            gold_cp=0,
            inventory_json='[{"name": "Torch", "quantity": 3}, {"name": "Rope (50 ft)", "quantity": 1}]',
            game_day=100,
            game_year=1492,
        )
        friend = Character(
            id="char-2",
            campaign_id=campaign.id,
            name="Borin",
            race="Dwarf",
            class_name="Cleric",
            level=3,
            current_hp=30,
            max_hp=30,
            dexterity=10,
        )
        ranger = Npc(
            id="npc-1",
            campaign_id=campaign.id,
            name="Lyra Swiftwind",
            nickname="Lyra",
            race="Half-Elf",
            occupation="Ranger",
            dexterity=14,
            recruitable=True,
        )
        smith = Npc(
            id="npc-2",
            campaign_id=campaign.id,
            name="Garrick Stonehand",
            nickname="Garrick",
            race="Dwarf",
            occupation="Blacksmith",
            dexterity=8,
            recruitable=True,
        )
        companion = Companion(
            id="comp-1",
            npc_id=ranger.id,
            recruited_by_character_id=hero.id,
            progression_type="class_based",
            companion_class="Ranger",
            dexterity=14,
        )
        session.add(campaign)
        session.add_all([hero, friend, ranger, smith])
        session.flush()
        session.add(companion)
        session.commit()
    return {
        "campaign_id": "campaign-1",
        "character_id": "char-1",
        "second_character_id": "char-2",
        "companion_npc_id": "npc-1",
        "recruit_npc_id": "npc-2",
    }
