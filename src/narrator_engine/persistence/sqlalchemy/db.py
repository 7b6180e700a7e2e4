from __future__ import annotations

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .base import Base

SQLITE_BUSY_TIMEOUT_MS = 5000


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _is_memory(url: str) -> bool:
    return _is_sqlite(url) and (":memory:" in url or url.rstrip("/").endswith("sqlite:"))


def build_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine for ``url``.

    In-memory SQLite shares one connection across threads so the HTTP worker
    pool and the test client see the same schema. File-backed SQLite runs in
    WAL mode with a busy timeout, since lease and CAS writes from concurrent
    requests contend for the same file.
    """
    if _is_memory(url):
        engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    elif _is_sqlite(url):
        engine = create_engine(url, echo=echo, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(url, echo=echo, pool_pre_ping=True)

    if _is_sqlite(url):
        file_backed = not _is_memory(url)

        @event.listens_for(engine, "connect")
        def _configure_sqlite(dbapi_connection, _connection_record):
            # pysqlite's implicit BEGIN breaks SAVEPOINT; BEGIN is emitted below.
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            if file_backed:
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _emit_begin(conn):
            conn.exec_driver_sql("BEGIN")

    return engine


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    # Views are built from rows after commit, so attributes must stay loaded.
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def create_schema(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def open_database(url: str, echo: bool = False) -> sessionmaker[Session]:
    """Engine, schema and session factory in one step."""
    engine = build_engine(url, echo=echo)
    create_schema(engine)
    return build_session_factory(engine)
