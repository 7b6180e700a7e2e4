from __future__ import annotations

import asyncio
import json
import random
from datetime import timedelta

import pytest
from sqlalchemy import select

from narrator_engine.core.engine import SessionEngine
from narrator_engine.core.errors import (
    GenerationError,
    GenerationTimeoutError,
    InvalidSessionState,
    NotFoundError,
    PreconditionError,
    RewardsAlreadyClaimedError,
    SessionBusyError,
    SessionConflictError,
)
from narrator_engine.core.rewards import DEFAULT_SUMMARY, EMPTY_SESSION_SUMMARY
from narrator_engine.core.types import GenerationResult, StartSessionInput
from narrator_engine.persistence.sqlalchemy.models import (
    Character,
    Companion,
    GameSession,
    MerchantStock,
    Npc,
    OutboxEvent,
    SessionLease,
    SessionParticipant,
    Turn,
)


ANALYSIS = """SUMMARY: Aria cleared the bandit camp and returned the relic to the temple.
COMBAT: 1
EXPLORATION: 2
QUESTS: 10
DISCOVERY: 4
SOCIAL: 6
DANGER: 3
ITEMS_CONSUMED: [Torch x 2]
GOLD_SPENT: [none]
ITEMS_GAINED: [none]"""


class ScriptedGateway:
    def __init__(self, *replies, provider="stub"):
        self.replies = list(replies)
        self.provider = provider
        self.calls = []
        self.before_reply = None

    async def invoke(self, system_context, transcript, new_turn_text, preferred=None):
        self.calls.append(
            {
                "system_context": system_context,
                "transcript": list(transcript),
                "text": new_turn_text,
                "preferred": preferred,
            }
        )
        if self.before_reply is not None:
            self.before_reply(len(self.calls))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return GenerationResult(text=reply, provider=self.provider)


class SlowGateway:
    async def invoke(self, system_context, transcript, new_turn_text, preferred=None):
        await asyncio.sleep(5)
        return GenerationResult(text="too late", provider="stub")


def _engine(uow_factory, gateway, clock, **kwargs):
    return SessionEngine(
        uow_factory=uow_factory,
        gateway=gateway,
        clock=clock,
        rng_factory=lambda: random.Random(3),
        **kwargs,
    )


def _start(engine, character_id="char-1", **kwargs):
    return asyncio.run(engine.start_session(StartSessionInput(character_id=character_id, **kwargs)))


def _post(engine, session_id, action):
    return asyncio.run(engine.post_action(session_id, action))


def _bump_row_version(uow_factory, session_id):
    with uow_factory() as uow:
        game_session = uow.sessions.get(session_id)
        assert uow.sessions.cas_apply_update(session_id, game_session.row_version, {})
        uow.commit()


def _inventory(session_factory, character_id="char-1"):
    with session_factory() as session:
        character = session.get(Character, character_id)
        return {line["name"]: line["quantity"] for line in json.loads(character.inventory_json)}


def _events(session_factory, event_type):
    with session_factory() as session:
        stmt = select(OutboxEvent).where(OutboxEvent.event_type == event_type)
        return session.execute(stmt).scalars().all()


def test_start_session_records_opening_turns(uow_factory, seed_party, clock):
    gateway = ScriptedGateway("You arrive at the gates of Waterdeep as the rain begins.")
    engine = _engine(uow_factory, gateway, clock)

    result = _start(engine, title="Rainy Arrival")

    assert result.narrative == "You arrive at the gates of Waterdeep as the rain begins."
    assert result.provider == "stub"
    assert result.session.status == "active"
    assert result.session.title == "Rainy Arrival"
    assert result.session.campaign_id == "campaign-1"
    assert result.session.game_start == {"day": 100, "year": 1492}
    assert [(t.role, t.synthetic) for t in result.session.turns] == [("system", True), ("generator", False)]

    call = gateway.calls[0]
    assert call["transcript"] == []
    assert "Aria" in call["text"]
    assert "Sword Coast" in call["system_context"]
    assert "Lyra Swiftwind" in call["system_context"]
    assert "[LOOT_DROP" in call["system_context"]


def test_second_open_session_is_a_conflict(uow_factory, seed_party, clock):
    gateway = ScriptedGateway("Opening one.", "Opening two.")
    engine = _engine(uow_factory, gateway, clock)

    first = _start(engine, second_character_id="char-2")
    with pytest.raises(SessionConflictError) as excinfo:
        _start(engine)
    assert excinfo.value.reason == "open_session_exists"
    assert excinfo.value.existing_session_id == first.session.id

    with pytest.raises(SessionConflictError) as excinfo:
        _start(engine, character_id="char-2")
    assert excinfo.value.existing_session_id == first.session.id
    assert len(gateway.calls) == 1


def _reserve(uow, character_id, second_character_id=None, now=None):
    return uow.sessions.reserve(
        character_id=character_id,
        second_character_id=second_character_id,
        campaign_id="campaign-1",
        title="Racing start",
        provider_preference=None,
        system_context="",
        started_at=now,
        game_start_day=100,
        game_start_year=1492,
        state_json="{}",
    )


def test_second_seat_blocks_a_concurrent_reservation(session_factory, uow_factory, seed_party, clock):
    with uow_factory() as uow:
        first = _reserve(uow, "char-1", "char-2", now=clock.now)
        assert first is not None
        first_id = first.id
        uow.commit()

    with uow_factory() as uow:
        assert _reserve(uow, "char-2", now=clock.now) is None
        assert uow.sessions.find_open_for_character("char-2").id == first_id
        uow.commit()

    with session_factory() as session:
        sessions = session.execute(select(GameSession)).scalars().all()
        assert [row.id for row in sessions] == [first_id]
        seats = session.execute(select(SessionParticipant)).scalars().all()
        assert sorted((seat.character_id, seat.seat) for seat in seats) == [("char-1", "primary"), ("char-2", "second")]


def test_ended_session_frees_both_seats(session_factory, uow_factory, seed_party, clock):
    gateway = ScriptedGateway("Opening one.", "Opening two.")
    engine = _engine(uow_factory, gateway, clock)
    first = _start(engine, second_character_id="char-2")

    asyncio.run(engine.end_session(first.session.id))
    second = _start(engine, character_id="char-2")

    assert second.session.id != first.session.id
    with session_factory() as session:
        stmt = select(SessionParticipant).where(SessionParticipant.session_id == first.session.id)
        assert session.execute(stmt).scalars().all() == []


def test_start_rejects_bad_participants(uow_factory, seed_party, clock):
    engine = _engine(uow_factory, ScriptedGateway(), clock)
    with pytest.raises(PreconditionError):
        _start(engine, second_character_id="char-1")
    with pytest.raises(NotFoundError):
        _start(engine, character_id="ghost")


def test_failed_opening_discards_the_reservation(session_factory, uow_factory, seed_party, clock):
    gateway = ScriptedGateway(GenerationError("all providers down"), "Second try works.")
    engine = _engine(uow_factory, gateway, clock)

    with pytest.raises(GenerationError):
        _start(engine)

    with session_factory() as session:
        assert session.execute(select(GameSession)).scalars().all() == []
        assert session.execute(select(SessionLease)).scalars().all() == []

    assert _start(engine).narrative == "Second try works."


def test_activity_checker_blocks_start(uow_factory, seed_party, clock):
    class BusyCrafting:
        def find_conflicting_activity(self, character_id):
            return "craft-42" if character_id == "char-1" else None

    engine = _engine(uow_factory, ScriptedGateway(), clock, activity_checker=BusyCrafting())
    with pytest.raises(SessionConflictError) as excinfo:
        _start(engine)
    assert excinfo.value.reason == "conflicting_activity"
    assert excinfo.value.existing_session_id == "craft-42"


def test_loot_drop_grants_exactly_one_item_and_is_hidden(session_factory, uow_factory, seed_party, clock):
    gateway = ScriptedGateway(
        "The tomb is silent.",
        'Beneath the dust you find a silver locket.\n[LOOT_DROP: Item="Silver Locket" Source="sarcophagus"]',
        "You pocket it and move on.",
    )
    engine = _engine(uow_factory, gateway, clock)
    session_id = _start(engine).session.id

    result = _post(engine, session_id, "I search the sarcophagus")

    assert result.narrative == "Beneath the dust you find a silver locket."
    assert result.effects.loot == [{"item": "Silver Locket", "quantity": 1, "source": "sarcophagus"}]
    assert _inventory(session_factory)["Silver Locket"] == 1

    _post(engine, session_id, "I leave the tomb")
    assert _inventory(session_factory)["Silver Locket"] == 1
    assert all("LOOT_DROP" not in entry["content"] for entry in gateway.calls[2]["transcript"])

    with session_factory() as session:
        generator = session.execute(
            select(Turn).where(Turn.session_id == session_id).where(Turn.seq == result.turn_seq)
        ).scalar_one()
        assert generator.content == result.narrative
        assert "LOOT_DROP" in json.loads(generator.meta_json)["raw"]


def test_empty_action_is_rejected(uow_factory, seed_party, clock):
    engine = _engine(uow_factory, ScriptedGateway("Opening."), clock)
    session_id = _start(engine).session.id
    with pytest.raises(PreconditionError):
        _post(engine, session_id, "   ")


def test_merchant_shop_stocks_store_and_injects_stock_note(session_factory, uow_factory, seed_party, clock):
    gateway = ScriptedGateway(
        "Market day in Waterdeep.",
        'Hilda looks up from her anvil.\n'
        '[MERCHANT_SHOP: Merchant="Hilda Ironfist" Type="blacksmith" Location="The Anvil"]',
        'She pulls a blade from under the counter.\n'
        '[ADD_ITEM: Name="Moonsteel Blade" Price_GP=45.5 Quality="fine" Category="weapon"]',
    )
    engine = _engine(uow_factory, gateway, clock)
    session_id = _start(engine).session.id

    opened = _post(engine, session_id, "I walk into the smithy")

    merchant = opened.effects.merchants[0]
    assert merchant.name == "Hilda Ironfist"
    assert merchant.merchant_type == "blacksmith"
    assert merchant.created is True
    assert merchant.purse_cp == 50000
    assert len(merchant.inventory) >= 10

    view = engine.get_session(session_id)
    assert view.active_merchant == "Hilda Ironfist"
    note = view.turns[-1]
    assert note.role == "system"
    assert note.synthetic is True
    assert note.content.startswith("[Merchant stock] Hilda Ironfist (blacksmith, The Anvil)")

    granted = _post(engine, session_id, "Do you have anything special?")
    assert granted.effects.items_granted == [
        {"item": "Moonsteel Blade", "quantity": 1, "price_cp": 6825, "recipient": "Hilda Ironfist"}
    ]
    with session_factory() as session:
        rows = session.execute(select(MerchantStock)).scalars().all()
        assert len(rows) == 1
        stock = {line["name"]: line for line in json.loads(rows[0].inventory_json)}
        assert stock["Moonsteel Blade"]["quality"] == "Fine"
    assert "Moonsteel Blade" not in _inventory(session_factory)


def test_item_grant_in_opening_turn_creates_merchant_as_described(session_factory, uow_factory, seed_party, clock):
    gateway = ScriptedGateway(
        "Market day in Waterdeep.",
        'Hilda looks up from her anvil.\n'
        '[MERCHANT_SHOP: Merchant="Hilda Ironfist" Type="blacksmith" Location="The Anvil"]\n'
        '[ADD_ITEM: Name="Moonsteel Blade" Price_GP=45.5 Quality="fine" Category="weapon"]',
    )
    engine = _engine(uow_factory, gateway, clock)
    session_id = _start(engine).session.id

    result = _post(engine, session_id, "I walk into the smithy")

    merchant = result.effects.merchants[0]
    assert (merchant.merchant_type, merchant.location, merchant.created) == ("blacksmith", "The Anvil", True)
    assert result.effects.items_granted[0]["recipient"] == "Hilda Ironfist"
    assert any(line["name"] == "Moonsteel Blade" for line in merchant.inventory)
    note = engine.get_session(session_id).turns[-1]
    assert note.content.startswith("[Merchant stock] Hilda Ironfist (blacksmith, The Anvil)")
    assert "Moonsteel Blade" in note.content
    with session_factory() as session:
        rows = session.execute(select(MerchantStock)).scalars().all()
        assert [(row.merchant_type, row.location) for row in rows] == [("blacksmith", "The Anvil")]


def test_merchant_referrals_stock_the_target_merchant(session_factory, uow_factory, seed_party, clock):
    gateway = ScriptedGateway(
        "Market day in Waterdeep.",
        'Hilda shakes her head.\n[MERCHANT_REFER: From="Hilda" To="Old Marta" Item="Zephyr Shard"]',
        'Marta nods.\n[MERCHANT_REFER: To="old marta" Item="Zephyr Shard (polished)"]',
        'Try the temple.\n[MERCHANT_REFER: To="Brother Aldous" Item="Potion of Healing"]',
    )
    engine = _engine(uow_factory, gateway, clock)
    session_id = _start(engine).session.id

    first = _post(engine, session_id, "Where can I find a zephyr shard?")
    referral = first.effects.referrals[0]
    assert referral["from"] == "Hilda"
    assert referral["to"] == "Old Marta"
    assert referral["added"] is True

    second = _post(engine, session_id, "Is it polished?")
    assert second.effects.referrals[0]["added"] is False
    assert second.effects.referrals[0]["merchant_id"] == referral["merchant_id"]

    _post(engine, session_id, "Who sells potions?")

    with session_factory() as session:
        marta = session.get(MerchantStock, referral["merchant_id"])
        assert marta.merchant_type == "general"
        shards = [line for line in json.loads(marta.inventory_json) if line["name"].startswith("Zephyr Shard")]
        assert len(shards) == 1
        assert shards[0]["quantity"] == 1
        assert shards[0]["price_cp"] == 1000

        stmt = select(MerchantStock).where(MerchantStock.merchant_name == "Brother Aldous")
        aldous = session.execute(stmt).scalar_one()
        assert aldous.merchant_type == "alchemist"
        assert any("potion of healing" in line["name"].lower() for line in json.loads(aldous.inventory_json))


def test_combat_start_rolls_initiative_for_party_and_enemies(uow_factory, seed_party, clock):
    gateway = ScriptedGateway(
        "The road is quiet.",
        'Goblins burst from the brush!\n[COMBAT_START: Enemies="Goblin, Goblin"]',
        "The last goblin falls. [COMBAT_END]",
    )
    engine = _engine(uow_factory, gateway, clock)
    session_id = _start(engine, second_character_id="char-2").session.id

    started = _post(engine, session_id, "I draw my rapier")

    order = started.effects.combat.turn_order
    assert sorted(entry.name for entry in order) == ["Aria", "Borin", "Goblin 1", "Goblin 2", "Lyra Swiftwind"]
    types = {entry.name: entry.type for entry in order}
    assert types["Aria"] == "participant"
    assert types["Lyra Swiftwind"] == "companion"
    assert types["Goblin 1"] == "adversary"
    totals = [(entry.total, entry.modifier) for entry in order]
    assert totals == sorted(totals, reverse=True)

    view = engine.get_session(session_id)
    assert view.combat == started.effects.combat
    assert view.turns[-1].content.startswith("[Initiative]")

    ended = _post(engine, session_id, "I strike")
    assert ended.effects.combat_ended is True
    assert ended.narrative == "The last goblin falls."
    note = gateway.calls[2]["transcript"][-1]
    assert note["role"] == "system"
    assert "Goblin 2" in note["content"]


def test_recruitment_offer_then_confirmation(session_factory, uow_factory, seed_party, clock):
    gateway = ScriptedGateway(
        "Opening.",
        '[NPC_WANTS_TO_JOIN: Name="Garrick" Reason="owes you a debt"]\n'
        '[NPC_WANTS_TO_JOIN: Name="Lyra"]\n'
        '[NPC_WANTS_TO_JOIN: Name="Sela" Race="Tiefling" Occupation="Bard" Gender="female"]\n'
        '[NPC_WANTS_TO_JOIN: Name="Nobody"]\n'
        "Garrick sets down his hammer.",
    )
    engine = _engine(uow_factory, gateway, clock)
    session_id = _start(engine).session.id

    result = _post(engine, session_id, "Will you come with us?")

    assert result.narrative == "Garrick sets down his hammer."
    offers = {offer.name: offer for offer in result.effects.recruitment}
    assert set(offers) == {"Garrick Stonehand", "Sela", "Nobody"}
    assert offers["Garrick Stonehand"].status == "pending"
    assert offers["Garrick Stonehand"].npc_id == "npc-2"
    assert offers["Sela"].created is True
    assert offers["Nobody"].status == "npc_not_found"

    joined = engine.confirm_recruitment(session_id, "npc-2", progression_type="class_based", companion_class="Fighter")
    assert joined.name == "Garrick Stonehand"
    assert joined.progression_type == "class_based"

    with pytest.raises(PreconditionError):
        engine.confirm_recruitment(session_id, "npc-2")
    with pytest.raises(PreconditionError):
        engine.confirm_recruitment(session_id, "npc-1")

    with session_factory() as session:
        companion = session.execute(select(Companion).where(Companion.npc_id == "npc-2")).scalar_one()
        assert companion.recruited_by_character_id == "char-1"
        assert companion.recruited_session_id == session_id
        assert companion.dexterity == 8
        sela = session.execute(select(Npc).where(Npc.name == "Sela")).scalar_one()
        assert sela.race == "Tiefling"
        assert sela.recruitable is True
    assert len(_events(session_factory, "companion_recruited")) == 1


def test_end_session_scores_rewards_and_claim_applies_them_once(session_factory, uow_factory, seed_party, clock):
    gateway = ScriptedGateway("Opening.", "Steel rings in the bandit camp.", ANALYSIS)
    engine = _engine(uow_factory, gateway, clock)
    session_id = _start(engine).session.id
    _post(engine, session_id, "I storm the camp")
    clock.advance(hours=2)

    ended = asyncio.run(engine.end_session(session_id))

    assert "Torch x3" in gateway.calls[-1]["text"]
    assert "10 gp" in gateway.calls[-1]["text"]
    assert ended.summary.startswith("Aria cleared the bandit camp")
    assert ended.rewards.xp == 70
    assert ended.rewards.gold == {"gp": 0, "sp": 2, "cp": 5}
    assert ended.rewards.loot is None
    assert ended.hp_change == 1
    assert ended.days_elapsed == 2
    assert ended.analysis.items_consumed == ["Torch x 2"]
    assert ended.session.status == "completed"
    assert ended.session.game_end == {"day": 102, "year": 1492}
    assert ended.session.ended_at == clock.now

    with pytest.raises(InvalidSessionState):
        _post(engine, session_id, "One more thing")

    claim = engine.claim_rewards(session_id)
    assert claim.xp_awarded == 70
    assert claim.new_experience == 970
    assert claim.new_gold == {"gp": 10, "sp": 2, "cp": 5}
    assert claim.new_hp == 21
    assert claim.companions_awarded == ["Lyra Swiftwind"]

    with pytest.raises(RewardsAlreadyClaimedError):
        engine.claim_rewards(session_id)

    with session_factory() as session:
        hero = session.get(Character, "char-1")
        assert hero.experience == 970
        assert (hero.gold_gp, hero.gold_sp, hero.gold_cp) == (10, 2, 5)
        assert (hero.game_day, hero.game_year) == (102, 1492)
        assert session.get(Companion, "comp-1").experience == 70
    assert len(_events(session_factory, "session_completed")) == 1
    assert len(_events(session_factory, "rewards_claimed")) == 1


def test_claim_applies_loot_and_clamps_hp(session_factory, uow_factory, seed_party, clock):
    with session_factory() as session:
        session.add(
            GameSession(
                id="done-1",
                character_id="char-1",
                campaign_id="campaign-1",
                status="completed",
                rewards_json='{"xp": 100, "gold": {"gp": 5, "sp": 0, "cp": 0}, "loot": "Potion of Healing"}',
                hp_change=-50,
                ended_at=clock.now,
            )
        )
        session.commit()
    engine = _engine(uow_factory, ScriptedGateway(), clock)

    claim = engine.claim_rewards("done-1")

    assert claim.xp_awarded == 100
    assert claim.gold_awarded == {"gp": 5, "sp": 0, "cp": 0}
    assert claim.new_gold == {"gp": 15, "sp": 0, "cp": 0}
    assert claim.new_hp == 1
    assert _inventory(session_factory)["Potion of Healing"] == 1


def test_wrap_up_inventory_changes_apply_once(session_factory, uow_factory, seed_party, clock):
    gateway = ScriptedGateway("Opening.", "You camp for the night.", ANALYSIS)
    engine = _engine(uow_factory, gateway, clock)
    session_id = _start(engine).session.id
    _post(engine, session_id, "I make camp")
    asyncio.run(engine.end_session(session_id))

    result = engine.apply_inventory_changes(
        session_id,
        consumed=["Torch x 2", "Lantern"],
        gained=["Silver Locket"],
        gold_spent={"gp": 2, "sp": 5},
    )

    assert result.removed == ["Torch x2"]
    assert result.not_found == ["Lantern"]
    assert result.added == ["Silver Locket"]
    assert result.gold_spent_cp == 250
    assert result.new_gold == {"gp": 7, "sp": 5, "cp": 0}
    inventory = _inventory(session_factory)
    assert inventory["Torch"] == 1
    assert inventory["Silver Locket"] == 1

    with pytest.raises(PreconditionError):
        engine.apply_inventory_changes(session_id, consumed=["Torch"])


def test_ending_without_player_actions_skips_analysis(uow_factory, seed_party, clock):
    gateway = ScriptedGateway("Opening.")
    engine = _engine(uow_factory, gateway, clock)
    session_id = _start(engine).session.id

    ended = asyncio.run(engine.end_session(session_id))

    assert len(gateway.calls) == 1
    assert ended.summary == EMPTY_SESSION_SUMMARY
    assert ended.rewards.xp == 0
    assert ended.days_elapsed == 0
    assert ended.analysis is None
    assert ended.session.game_end == {"day": 100, "year": 1492}


def test_analysis_failure_uses_default_summary(session_factory, uow_factory, seed_party, clock):
    gateway = ScriptedGateway("Opening.", "You wander.", GenerationError("provider gave up"))
    engine = _engine(uow_factory, gateway, clock)
    session_id = _start(engine).session.id
    _post(engine, session_id, "I wander")

    ended = asyncio.run(engine.end_session(session_id))

    assert ended.summary == DEFAULT_SUMMARY
    assert ended.rewards.xp == 0
    assert ended.session.status == "completed"
    failures = _events(session_factory, "analysis_failed")
    assert len(failures) == 1
    assert "provider gave up" in json.loads(failures[0].payload_json)["error"]


def test_unclaimed_rewards_block_the_next_session(uow_factory, seed_party, clock):
    gateway = ScriptedGateway("Opening.", "Next opening.")
    engine = _engine(uow_factory, gateway, clock)
    session_id = _start(engine).session.id
    asyncio.run(engine.end_session(session_id))

    assert engine.get_active_session("char-1").id == session_id
    with pytest.raises(SessionConflictError) as excinfo:
        _start(engine)
    assert excinfo.value.reason == "unclaimed_rewards"

    engine.claim_rewards(session_id)
    assert engine.get_active_session("char-1") is None
    assert _start(engine).narrative == "Next opening."


def test_pause_and_resume_with_recap(uow_factory, seed_party, clock):
    gateway = ScriptedGateway(
        "Opening.",
        "The caravan rolls on.",
        "Previously, Aria joined a caravan bound for Baldur's Gate. [COMBAT_END]",
    )
    engine = _engine(uow_factory, gateway, clock)
    session_id = _start(engine).session.id
    _post(engine, session_id, "I ride with the caravan")

    paused = engine.pause_session(session_id)
    assert paused.status == "paused"
    with pytest.raises(InvalidSessionState):
        _post(engine, session_id, "I keep riding")
    with pytest.raises(InvalidSessionState):
        engine.pause_session(session_id)

    resumed = asyncio.run(engine.resume_session(session_id))
    assert resumed.status == "active"
    assert resumed.recap == "Previously, Aria joined a caravan bound for Baldur's Gate."
    assert len(gateway.calls) == 3

    engine.pause_session(session_id)
    again = asyncio.run(engine.resume_session(session_id))
    assert again.recap == resumed.recap
    assert len(gateway.calls) == 3


def test_resume_short_session_or_failed_recap_still_resumes(uow_factory, seed_party, clock):
    gateway = ScriptedGateway("Opening.", "You wait.", GenerationError("offline"))
    engine = _engine(uow_factory, gateway, clock)
    session_id = _start(engine).session.id

    engine.pause_session(session_id)
    assert asyncio.run(engine.resume_session(session_id)).recap is None
    assert len(gateway.calls) == 1

    _post(engine, session_id, "I wait")
    engine.pause_session(session_id)
    resumed = asyncio.run(engine.resume_session(session_id))
    assert resumed.status == "active"
    assert resumed.recap is None


def test_abort_deletes_the_session(session_factory, uow_factory, seed_party, clock):
    gateway = ScriptedGateway("Opening.", "You hesitate.", "A fresh start.")
    engine = _engine(uow_factory, gateway, clock)
    session_id = _start(engine).session.id
    _post(engine, session_id, "I hesitate")

    engine.abort_session(session_id)

    with pytest.raises(NotFoundError):
        engine.get_session(session_id)
    with session_factory() as session:
        assert session.execute(select(Turn).where(Turn.session_id == session_id)).scalars().all() == []
    assert len(_events(session_factory, "session_aborted")) == 1
    assert _start(engine).narrative == "A fresh start."


def test_busy_lease_rejects_concurrent_request_until_it_expires(uow_factory, seed_party, clock):
    gateway = ScriptedGateway("Opening.", "You press on.")
    engine = _engine(uow_factory, gateway, clock, lease_ttl_seconds=90)
    session_id = _start(engine).session.id

    with uow_factory() as uow:
        assert uow.leases.acquire_or_steal(
            session_id, "other-worker", now=clock.now, expires_at=clock.now + timedelta(seconds=90)
        )
        uow.commit()

    with pytest.raises(SessionBusyError):
        _post(engine, session_id, "I press on")
    with pytest.raises(SessionBusyError):
        engine.pause_session(session_id)
    assert len(gateway.calls) == 1

    clock.advance(seconds=91)
    assert _post(engine, session_id, "I press on").narrative == "You press on."


def test_cas_conflict_rolls_back_all_writes(session_factory, uow_factory, seed_party, clock):
    gateway = ScriptedGateway(
        "Opening.",
        'You find a gem. [LOOT_DROP: Item="Ruby"]',
        "Calm returns.",
    )
    engine = _engine(uow_factory, gateway, clock, max_conflict_retries=0)
    session_id = _start(engine).session.id
    gateway.before_reply = lambda _n: _bump_row_version(uow_factory, session_id)

    with pytest.raises(SessionConflictError) as excinfo:
        _post(engine, session_id, "I dig")
    assert excinfo.value.reason == "stale_claim_or_row_version"

    with session_factory() as session:
        assert len(session.execute(select(Turn).where(Turn.session_id == session_id)).scalars().all()) == 2
        assert session.execute(select(SessionLease)).scalars().all() == []
    assert "Ruby" not in _inventory(session_factory)
    assert _events(session_factory, "directive_failed") == []

    gateway.before_reply = None
    assert _post(engine, session_id, "I wait").narrative == "Calm returns."


def test_single_auto_retry_after_conflict(session_factory, uow_factory, seed_party, clock):
    gateway = ScriptedGateway("Opening.", "First draft.", "Second draft.")
    engine = _engine(uow_factory, gateway, clock, max_conflict_retries=1)
    session_id = _start(engine).session.id

    def bump_once(call_number):
        if call_number == 2:
            _bump_row_version(uow_factory, session_id)

    gateway.before_reply = bump_once
    result = _post(engine, session_id, "I look around")

    assert result.narrative == "Second draft."
    with session_factory() as session:
        participant_turns = session.execute(
            select(Turn).where(Turn.session_id == session_id).where(Turn.role == "participant")
        ).scalars().all()
        assert [turn.content for turn in participant_turns] == ["I look around"]


def test_failed_directive_is_isolated_and_recorded(session_factory, uow_factory, seed_party, clock):
    with session_factory() as session:
        session.add(Character(id="char-9", name="Wanderer", level=2, dexterity=12))
        session.commit()
    gateway = ScriptedGateway(
        "Opening.",
        'A peddler waves. [MERCHANT_SHOP: Merchant="Tobin"]\n[LOOT_DROP: Item="Copper Key"]\n[LOOT_DROP: Source="x"]',
    )
    engine = _engine(uow_factory, gateway, clock)
    session_id = _start(engine, character_id="char-9").session.id

    result = _post(engine, session_id, "I wave back")

    assert result.narrative == "A peddler waves."
    assert result.effects.loot == [{"item": "Copper Key", "quantity": 1, "source": "found"}]
    assert "merchant_open: merchant 'Tobin' needs a campaign" in result.effects.warnings
    assert "LOOT_DROP: missing item" in result.effects.warnings
    assert _inventory(session_factory, "char-9") == {"Copper Key": 1}
    assert engine.get_session(session_id).active_merchant is None

    failed = _events(session_factory, "directive_failed")
    assert len(failed) == 1
    assert json.loads(failed[0].payload_json)["kind"] == "merchant_open"
    assert len(_events(session_factory, "directive_rejected")) == 1


def test_generation_timeout_releases_the_lease(session_factory, uow_factory, seed_party, clock):
    engine = _engine(uow_factory, ScriptedGateway("Opening."), clock)
    session_id = _start(engine).session.id

    slow = _engine(uow_factory, SlowGateway(), clock, generation_timeout_seconds=0.05)
    with pytest.raises(GenerationTimeoutError):
        _post(slow, session_id, "I wait for an answer")

    with session_factory() as session:
        assert session.execute(select(SessionLease)).scalars().all() == []
        assert len(session.execute(select(Turn).where(Turn.session_id == session_id)).scalars().all()) == 2
