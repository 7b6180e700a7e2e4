from __future__ import annotations

from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ...core.errors import PersistenceError
from .repos import (
    CampaignRepo,
    CharacterRepo,
    CompanionRepo,
    GameSessionRepo,
    MerchantRepo,
    NpcRepo,
    OutboxRepo,
    SessionLeaseRepo,
    TurnRepo,
)


class SQLAlchemyUnitOfWork:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory
        self.session: Session | None = None

    def __enter__(self) -> "SQLAlchemyUnitOfWork":
        self.session = self._session_factory()
        self.campaigns = CampaignRepo(self.session)
        self.characters = CharacterRepo(self.session)
        self.npcs = NpcRepo(self.session)
        self.companions = CompanionRepo(self.session)
        self.merchants = MerchantRepo(self.session)
        self.sessions = GameSessionRepo(self.session)
        self.turns = TurnRepo(self.session)
        self.leases = SessionLeaseRepo(self.session)
        self.outbox = OutboxRepo(self.session)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.session is None:
            return
        if exc_type is not None:
            self.rollback()
        self.session.close()

    def savepoint(self):
        assert self.session is not None
        return self.session.begin_nested()

    def commit(self) -> None:
        assert self.session is not None
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceError(str(exc)) from exc

    def rollback(self) -> None:
        assert self.session is not None
        self.session.rollback()


def unit_of_work_factory(session_factory: sessionmaker[Session]) -> Callable[[], SQLAlchemyUnitOfWork]:
    def _factory() -> SQLAlchemyUnitOfWork:
        return SQLAlchemyUnitOfWork(session_factory)

    return _factory
