from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


TurnIDType = BigInteger().with_variant(Integer, "sqlite")

OPEN_SESSION_WHERE = "status IN ('active','paused')"


class Campaign(TimestampMixin, Base):
    __tablename__ = "nar_campaigns"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    setting: Mapped[str | None] = mapped_column(String(128), nullable=True)


class Character(TimestampMixin, Base):
    __tablename__ = "nar_characters"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    campaign_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("nar_campaigns.id"), nullable=True)

    name: Mapped[str] = mapped_column(String(128), nullable=False)
    nickname: Mapped[str | None] = mapped_column(String(64), nullable=True)
    race: Mapped[str | None] = mapped_column(String(64), nullable=True)
    class_name: Mapped[str | None] = mapped_column(String(64), nullable=True)

    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    experience: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_hp: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    max_hp: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    dexterity: Mapped[int] = mapped_column(Integer, nullable=False, default=10)

    gold_gp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    gold_sp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    gold_cp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    inventory_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")

    game_day: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    game_year: Mapped[int] = mapped_column(Integer, nullable=False, default=1492)

    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class Npc(TimestampMixin, Base):
    __tablename__ = "nar_npcs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    campaign_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("nar_campaigns.id"), nullable=True)

    name: Mapped[str] = mapped_column(String(128), nullable=False)
    nickname: Mapped[str | None] = mapped_column(String(64), nullable=True)
    race: Mapped[str] = mapped_column(String(64), nullable=False, default="Human")
    gender: Mapped[str | None] = mapped_column(String(32), nullable=True)
    occupation: Mapped[str | None] = mapped_column(String(128), nullable=True)
    personality: Mapped[str | None] = mapped_column(Text, nullable=True)
    dexterity: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    recruitable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    metadata_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")


class Companion(TimestampMixin, Base):
    __tablename__ = "nar_companions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    npc_id: Mapped[str] = mapped_column(String(36), ForeignKey("nar_npcs.id"), nullable=False)
    recruited_by_character_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("nar_characters.id"), nullable=False
    )

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    progression_type: Mapped[str] = mapped_column(String(16), nullable=False, default="npc_stats")
    companion_class: Mapped[str | None] = mapped_column(String(64), nullable=True)
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    experience: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    dexterity: Mapped[int] = mapped_column(Integer, nullable=False, default=10)

    gold_gp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    gold_sp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    gold_cp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    inventory_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")

    recruited_session_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('active','dismissed','deceased')", name="companion_status_valid"),
        CheckConstraint("progression_type IN ('npc_stats','class_based')", name="companion_progression_valid"),
    )


Index(
    "uq_nar_companion_one_active_per_npc",
    Companion.npc_id,
    unique=True,
    sqlite_where=text("status = 'active'"),
    postgresql_where=text("status = 'active'"),
)
Index("ix_nar_companion_character_status", Companion.recruited_by_character_id, Companion.status)


class MerchantStock(TimestampMixin, Base):
    __tablename__ = "nar_merchant_stock"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    campaign_id: Mapped[str] = mapped_column(String(36), ForeignKey("nar_campaigns.id"), nullable=False)

    merchant_name: Mapped[str] = mapped_column(String(128), nullable=False)
    merchant_name_normalized: Mapped[str] = mapped_column(String(128), nullable=False)
    merchant_type: Mapped[str] = mapped_column(String(32), nullable=False, default="general")
    location: Mapped[str] = mapped_column(String(128), nullable=False, default="Unknown shop")
    prosperity: Mapped[str] = mapped_column(String(16), nullable=False, default="comfortable")

    inventory_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    purse_cp: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("campaign_id", "merchant_name_normalized", name="uq_nar_merchant_campaign_name_norm"),
    )


class GameSession(TimestampMixin, Base):
    __tablename__ = "nar_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    character_id: Mapped[str] = mapped_column(String(36), ForeignKey("nar_characters.id"), nullable=False)
    second_character_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("nar_characters.id"), nullable=True
    )
    campaign_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("nar_campaigns.id"), nullable=True)

    title: Mapped[str] = mapped_column(String(200), nullable=False, default="Untitled adventure")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    provider_preference: Mapped[str | None] = mapped_column(String(32), nullable=True)
    last_provider: Mapped[str | None] = mapped_column(String(32), nullable=True)

    system_context: Mapped[str] = mapped_column(Text, nullable=False, default="")
    recap: Mapped[str | None] = mapped_column(Text, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    rewards_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    analysis_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    hp_change: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rewards_claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    game_start_day: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    game_start_year: Mapped[int] = mapped_column(Integer, nullable=False, default=1492)
    game_end_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    game_end_year: Mapped[int | None] = mapped_column(Integer, nullable=True)

    state_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint("status IN ('active','paused','completed')", name="session_status_valid"),
    )


Index(
    "uq_nar_session_one_open_per_character",
    GameSession.character_id,
    unique=True,
    sqlite_where=text(OPEN_SESSION_WHERE),
    postgresql_where=text(OPEN_SESSION_WHERE),
)
Index("ix_nar_session_character_status", GameSession.character_id, GameSession.status)


class SessionParticipant(Base):
    """A character seated in an open session; rows are removed when the session closes."""

    __tablename__ = "nar_session_participants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("nar_sessions.id", ondelete="CASCADE"), nullable=False
    )
    character_id: Mapped[str] = mapped_column(String(36), ForeignKey("nar_characters.id"), nullable=False)
    seat: Mapped[str] = mapped_column(String(16), nullable=False, default="primary")

    __table_args__ = (
        UniqueConstraint("character_id", name="uq_nar_participant_character"),
        CheckConstraint("seat IN ('primary','second')", name="participant_seat_valid"),
    )


class Turn(Base):
    __tablename__ = "nar_turns"

    id: Mapped[int] = mapped_column(TurnIDType, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("nar_sessions.id", ondelete="CASCADE"), nullable=False
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)

    role: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    meta_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("session_id", "seq", name="uq_nar_turn_session_seq"),
        CheckConstraint("role IN ('system','participant','generator')", name="turn_role_valid"),
    )


class SessionLease(Base):
    __tablename__ = "nar_session_leases"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("nar_sessions.id", ondelete="CASCADE"), nullable=False
    )
    claim_token: Mapped[str] = mapped_column(String(64), nullable=False)
    claimed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    heartbeat_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("session_id", name="uq_nar_lease_session"),
    )


Index("ix_nar_lease_expiry", SessionLease.expires_at)


class OutboxEvent(TimestampMixin, Base):
    __tablename__ = "nar_outbox_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    # Sessions can be hard-deleted; events keep the id as plain text.
    session_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    session_scope: Mapped[str] = mapped_column(String(36), nullable=False, default="__none__")
    character_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(200), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "session_scope",
            "event_type",
            "idempotency_key",
            name="uq_nar_outbox_session_event_key",
        ),
    )


Index("ix_nar_outbox_status_next_created", OutboxEvent.status, OutboxEvent.next_attempt_at, OutboxEvent.created_at)
