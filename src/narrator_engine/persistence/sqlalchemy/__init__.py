from .base import Base
from .db import build_engine, build_session_factory, create_schema, open_database
from .uow import SQLAlchemyUnitOfWork, unit_of_work_factory

__all__ = [
    "Base",
    "SQLAlchemyUnitOfWork",
    "build_engine",
    "build_session_factory",
    "create_schema",
    "open_database",
    "unit_of_work_factory",
]
