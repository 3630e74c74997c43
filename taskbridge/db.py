from __future__ import annotations

from functools import lru_cache

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import get_settings


class Base(DeclarativeBase):
    pass


def _sqlite_url(db_path: str) -> str:
    if db_path.startswith("sqlite:"):
        return db_path
    return f"sqlite:///{db_path}"


def make_engine(db_path: str) -> Engine:
    engine = create_engine(
        _sqlite_url(db_path),
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        # The sweep and the gateway write concurrently; wait instead of failing.
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    return engine


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return make_engine(get_settings().database.path)


@lru_cache(maxsize=1)
def _session_factory() -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())


def SessionLocal() -> Session:
    return _session_factory()()


def init_db(engine: Engine | None = None) -> None:
    # Table classes register on Base.metadata at import.
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
