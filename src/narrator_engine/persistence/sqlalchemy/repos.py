from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import (
    Campaign,
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


def _is_constraint_violation(exc: IntegrityError, *needles: str) -> bool:
    message = str(exc).lower()
    return any(needle in message for needle in needles)


class CampaignRepo:
    def __init__(self, session: Session):
        self.session = session

    def get(self, campaign_id: str) -> Campaign | None:
        return self.session.get(Campaign, campaign_id)


class CharacterRepo:
    def __init__(self, session: Session):
        self.session = session

    def get(self, character_id: str) -> Character | None:
        return self.session.get(Character, character_id)


class NpcRepo:
    def __init__(self, session: Session):
        self.session = session

    def get(self, npc_id: str) -> Npc | None:
        return self.session.get(Npc, npc_id)

    def search_recruitable(self, name: str, campaign_id: str | None = None) -> list[Npc]:
        """Recruitable NPCs whose name or nickname matches, exact matches first."""
        needle = (name or "").strip().lower()
        if not needle:
            return []
        pattern = f"%{needle}%"
        stmt = (
            select(Npc)
            .where(Npc.recruitable.is_(True))
            .where(
                or_(
                    func.lower(Npc.name).like(pattern),
                    func.lower(func.coalesce(Npc.nickname, "")).like(pattern),
                )
            )
        )
        if campaign_id is not None:
            stmt = stmt.where(or_(Npc.campaign_id == campaign_id, Npc.campaign_id.is_(None)))
        rows = list(self.session.execute(stmt).scalars().all())

        def rank(npc: Npc) -> tuple[int, str]:
            exact = npc.name.lower() == needle or (npc.nickname or "").lower() == needle
            return (0 if exact else 1, npc.name.lower())

        rows.sort(key=rank)
        return rows

    def create(
        self,
        name: str,
        campaign_id: str | None = None,
        race: str = "Human",
        gender: str | None = None,
        occupation: str | None = None,
        personality: str | None = None,
        recruitable: bool = True,
    ) -> Npc:
        row = Npc(
            name=name,
            campaign_id=campaign_id,
            race=race,
            gender=gender,
            occupation=occupation,
            personality=personality,
            recruitable=recruitable,
        )
        self.session.add(row)
        self.session.flush()
        return row


class CompanionRepo:
    def __init__(self, session: Session):
        self.session = session

    def list_active_for_character(self, character_id: str) -> list[Companion]:
        stmt = (
            select(Companion)
            .where(Companion.recruited_by_character_id == character_id)
            .where(Companion.status == "active")
            .order_by(Companion.created_at.asc())
        )
        return list(self.session.execute(stmt).scalars().all())

    def get_active_for_npc(self, npc_id: str) -> Companion | None:
        stmt = (
            select(Companion)
            .where(Companion.npc_id == npc_id)
            .where(Companion.status == "active")
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def create(
        self,
        npc_id: str,
        character_id: str,
        progression_type: str = "npc_stats",
        companion_class: str | None = None,
        dexterity: int = 10,
        session_id: str | None = None,
    ) -> Companion:
        row = Companion(
            npc_id=npc_id,
            recruited_by_character_id=character_id,
            progression_type=progression_type,
            companion_class=companion_class,
            dexterity=dexterity,
            recruited_session_id=session_id,
        )
        self.session.add(row)
        self.session.flush()
        return row


class MerchantRepo:
    def __init__(self, session: Session):
        self.session = session

    def get_by_name(self, campaign_id: str, name_normalized: str) -> MerchantStock | None:
        """Exact normalized match first, then the first partial match either way round."""
        stmt = (
            select(MerchantStock)
            .where(MerchantStock.campaign_id == campaign_id)
            .where(MerchantStock.merchant_name_normalized == name_normalized)
            .limit(1)
        )
        row = self.session.execute(stmt).scalar_one_or_none()
        if row is not None or not name_normalized:
            return row
        for candidate in self.list_by_campaign(campaign_id):
            key = candidate.merchant_name_normalized
            if name_normalized in key or key in name_normalized:
                return candidate
        return None

    def list_by_campaign(self, campaign_id: str) -> list[MerchantStock]:
        stmt = (
            select(MerchantStock)
            .where(MerchantStock.campaign_id == campaign_id)
            .order_by(MerchantStock.merchant_name_normalized.asc())
        )
        return list(self.session.execute(stmt).scalars().all())

    def get(self, merchant_id: str) -> MerchantStock | None:
        return self.session.get(MerchantStock, merchant_id)

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
    ) -> MerchantStock:
        row = MerchantStock(
            campaign_id=campaign_id,
            merchant_name=merchant_name,
            merchant_name_normalized=merchant_name_normalized,
            merchant_type=merchant_type,
            location=location,
            prosperity=prosperity,
            inventory_json=inventory_json,
            purse_cp=purse_cp,
        )
        self.session.add(row)
        self.session.flush()
        return row


class GameSessionRepo:
    OPEN = ("active", "paused")

    def __init__(self, session: Session):
        self.session = session

    def get(self, session_id: str) -> GameSession | None:
        return self.session.get(GameSession, session_id)

    def find_open_for_character(self, character_id: str) -> GameSession | None:
        stmt = (
            select(GameSession)
            .where(
                or_(
                    GameSession.character_id == character_id,
                    GameSession.second_character_id == character_id,
                )
            )
            .where(GameSession.status.in_(self.OPEN))
            .order_by(GameSession.started_at.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalars().first()

    def find_unclaimed_for_character(self, character_id: str) -> GameSession | None:
        stmt = (
            select(GameSession)
            .where(GameSession.character_id == character_id)
            .where(GameSession.status == "completed")
            .where(GameSession.rewards_claimed.is_(False))
            .order_by(GameSession.ended_at.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalars().first()

    def reserve(self, **values: object) -> GameSession | None:
        """Insert an active session and seat its participants.

        Returns ``None`` when any participant is already seated in an open session.
        """
        try:
            with self.session.begin_nested():
                row = GameSession(status="active", **values)
                self.session.add(row)
                self.session.flush()
                self.session.add(SessionParticipant(session_id=row.id, character_id=row.character_id, seat="primary"))
                if row.second_character_id:
                    self.session.add(
                        SessionParticipant(session_id=row.id, character_id=row.second_character_id, seat="second")
                    )
                self.session.flush()
                return row
        except IntegrityError as exc:
            if _is_constraint_violation(
                exc,
                "uq_nar_session_one_open_per_character",
                "nar_sessions.character_id",
                "uq_nar_participant_character",
                "nar_session_participants.character_id",
            ):
                return None
            raise

    def release_participants(self, session_id: str) -> int:
        stmt = delete(SessionParticipant).where(SessionParticipant.session_id == session_id)
        return self.session.execute(stmt).rowcount or 0

    def cas_apply_update(
        self,
        session_id: str,
        expected_row_version: int,
        values: dict[str, object],
    ) -> bool:
        update_values = dict(values)
        update_values["row_version"] = GameSession.row_version + 1
        update_values["updated_at"] = datetime.utcnow()
        stmt = (
            update(GameSession)
            .where(GameSession.id == session_id)
            .where(GameSession.row_version == expected_row_version)
            .values(**update_values)
            # Loaded rows are read back in the same unit of work.
            .execution_options(synchronize_session="evaluate")
        )
        result = self.session.execute(stmt)
        return result.rowcount == 1

    def mark_rewards_claimed(self, session_id: str) -> bool:
        stmt = (
            update(GameSession)
            .where(GameSession.id == session_id)
            .where(GameSession.status == "completed")
            .where(GameSession.rewards_claimed.is_(False))
            .values(
                rewards_claimed=True,
                row_version=GameSession.row_version + 1,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return (self.session.execute(stmt).rowcount or 0) == 1

    def delete(self, session_id: str) -> int:
        self.release_participants(session_id)
        self.session.execute(delete(Turn).where(Turn.session_id == session_id))
        self.session.execute(delete(SessionLease).where(SessionLease.session_id == session_id))
        stmt = delete(GameSession).where(GameSession.id == session_id)
        return self.session.execute(stmt).rowcount or 0


class TurnRepo:
    def __init__(self, session: Session):
        self.session = session

    def next_seq(self, session_id: str) -> int:
        stmt = select(func.max(Turn.seq)).where(Turn.session_id == session_id)
        current = self.session.execute(stmt).scalar_one_or_none()
        return int(current or 0) + 1

    def add(
        self,
        session_id: str,
        role: str,
        content: str,
        meta_json: str = "{}",
    ) -> Turn:
        row = Turn(
            session_id=session_id,
            seq=self.next_seq(session_id),
            role=role,
            content=content,
            meta_json=meta_json,
        )
        self.session.add(row)
        self.session.flush()
        return row

    def recent(self, session_id: str, limit: int) -> list[Turn]:
        stmt = (
            select(Turn)
            .where(Turn.session_id == session_id)
            .order_by(Turn.seq.desc())
            .limit(limit)
        )
        rows = list(self.session.execute(stmt).scalars().all())
        rows.reverse()
        return rows

    def list_for_session(self, session_id: str) -> list[Turn]:
        stmt = select(Turn).where(Turn.session_id == session_id).order_by(Turn.seq.asc())
        return list(self.session.execute(stmt).scalars().all())

    def count(self, session_id: str, role: str | None = None) -> int:
        stmt = select(func.count(Turn.id)).where(Turn.session_id == session_id)
        if role is not None:
            stmt = stmt.where(Turn.role == role)
        return int(self.session.execute(stmt).scalar_one())


class SessionLeaseRepo:
    def __init__(self, session: Session):
        self.session = session

    def acquire_or_steal(
        self,
        session_id: str,
        claim_token: str,
        now: datetime,
        expires_at: datetime,
    ) -> bool:
        try:
            with self.session.begin_nested():
                row = SessionLease(
                    session_id=session_id,
                    claim_token=claim_token,
                    claimed_at=now,
                    heartbeat_at=now,
                    expires_at=expires_at,
                )
                self.session.add(row)
                self.session.flush()
                return True
        except IntegrityError as exc:
            if not _is_constraint_violation(exc, "uq_nar_lease_session", "nar_session_leases.session_id"):
                raise

        stmt = (
            update(SessionLease)
            .where(SessionLease.session_id == session_id)
            .where(SessionLease.expires_at < now)
            .values(
                claim_token=claim_token,
                claimed_at=now,
                heartbeat_at=now,
                expires_at=expires_at,
            )
        )
        return (self.session.execute(stmt).rowcount or 0) == 1

    def validate_token(self, session_id: str, claim_token: str, now: datetime) -> bool:
        stmt = (
            select(SessionLease)
            .where(SessionLease.session_id == session_id)
            .where(SessionLease.claim_token == claim_token)
            .limit(1)
        )
        row = self.session.execute(stmt).scalar_one_or_none()
        if row is None:
            return False
        return row.expires_at >= now

    def release(self, session_id: str, claim_token: str) -> int:
        stmt = (
            delete(SessionLease)
            .where(SessionLease.session_id == session_id)
            .where(SessionLease.claim_token == claim_token)
        )
        return self.session.execute(stmt).rowcount or 0


class OutboxRepo:
    def __init__(self, session: Session):
        self.session = session

    def add(
        self,
        session_id: str | None,
        event_type: str,
        idempotency_key: str,
        payload_json: str,
        character_id: str | None = None,
    ) -> None:
        scope = session_id or "__none__"
        try:
            with self.session.begin_nested():
                row = OutboxEvent(
                    session_id=session_id,
                    session_scope=scope,
                    character_id=character_id,
                    event_type=event_type,
                    idempotency_key=idempotency_key,
                    payload_json=payload_json,
                )
                self.session.add(row)
                self.session.flush()
        except IntegrityError as exc:
            if _is_constraint_violation(
                exc,
                "uq_nar_outbox_session_event_key",
                "nar_outbox_events.session_scope, nar_outbox_events.event_type, nar_outbox_events.idempotency_key",
            ):
                return
            raise

    def list_for_session(self, session_id: str, event_type: str | None = None) -> list[OutboxEvent]:
        stmt = select(OutboxEvent).where(OutboxEvent.session_scope == session_id)
        if event_type is not None:
            stmt = stmt.where(OutboxEvent.event_type == event_type)
        return list(self.session.execute(stmt.order_by(OutboxEvent.created_at.asc())).scalars().all())
