from __future__ import annotations

from datetime import datetime
from typing import Protocol


class CampaignRepo(Protocol):
    def get(self, campaign_id: str): ...


class CharacterRepo(Protocol):
    def get(self, character_id: str): ...


class NpcRepo(Protocol):
    def get(self, npc_id: str): ...
    def search_recruitable(self, name: str, campaign_id: str | None = None) -> list: ...
    def create(
        self,
        name: str,
        campaign_id: str | None = None,
        race: str = "Human",
        gender: str | None = None,
        occupation: str | None = None,
        personality: str | None = None,
        recruitable: bool = True,
    ): ...


class CompanionRepo(Protocol):
    def list_active_for_character(self, character_id: str) -> list: ...
    def get_active_for_npc(self, npc_id: str): ...
    def create(
        self,
        npc_id: str,
        character_id: str,
        progression_type: str = "npc_stats",
        companion_class: str | None = None,
        dexterity: int = 10,
        session_id: str | None = None,
    ): ...


class MerchantRepo(Protocol):
    def get(self, merchant_id: str): ...
    def get_by_name(self, campaign_id: str, name_normalized: str): ...
    def list_by_campaign(self, campaign_id: str) -> list: ...
    def create(
        self,
        campaign_id: str,
        merchant_name: str,
        merchant_name_normalized: str,
        merchant_type: str,
        location: str,
        prosperity: str,
        inventory_json: str,
        purse_cp: int,
    ): ...


class GameSessionRepo(Protocol):
    def get(self, session_id: str): ...
    def find_open_for_character(self, character_id: str): ...
    def find_unclaimed_for_character(self, character_id: str): ...
    def reserve(self, **values: object): ...
    def release_participants(self, session_id: str) -> int: ...
    def cas_apply_update(self, session_id: str, expected_row_version: int, values: dict[str, object]) -> bool: ...
    def mark_rewards_claimed(self, session_id: str) -> bool: ...
    def delete(self, session_id: str) -> int: ...


class TurnRepo(Protocol):
    def add(self, session_id: str, role: str, content: str, meta_json: str = "{}"): ...
    def recent(self, session_id: str, limit: int) -> list: ...
    def list_for_session(self, session_id: str) -> list: ...
    def count(self, session_id: str, role: str | None = None) -> int: ...


class SessionLeaseRepo(Protocol):
    def acquire_or_steal(
        self,
        session_id: str,
        claim_token: str,
        now: datetime,
        expires_at: datetime,
    ) -> bool: ...
    def validate_token(self, session_id: str, claim_token: str, now: datetime) -> bool: ...
    def release(self, session_id: str, claim_token: str) -> int: ...


class OutboxRepo(Protocol):
    def add(
        self,
        session_id: str | None,
        event_type: str,
        idempotency_key: str,
        payload_json: str,
        character_id: str | None = None,
    ) -> None: ...


class UnitOfWork(Protocol):
    campaigns: CampaignRepo
    characters: CharacterRepo
    npcs: NpcRepo
    companions: CompanionRepo
    merchants: MerchantRepo
    sessions: GameSessionRepo
    turns: TurnRepo
    leases: SessionLeaseRepo
    outbox: OutboxRepo

    def savepoint(self): ...
    def commit(self) -> None: ...
    def rollback(self) -> None: ...

    def __enter__(self) -> "UnitOfWork": ...
    def __exit__(self, exc_type, exc, tb) -> None: ...
