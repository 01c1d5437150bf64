from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

load_dotenv()

# SQLite file in the project root unless CLINIC_DATABASE_URL says otherwise
DB_PATH = Path(__file__).resolve().parents[1] / "clinic_booking.sqlite"
DATABASE_URL = os.getenv("CLINIC_DATABASE_URL", f"sqlite:///{DB_PATH}")
SQL_ECHO = os.getenv("CLINIC_SQL_ECHO", "0").strip().lower() in {"1", "true", "yes"}


def _build_engine(url: str) -> Engine:
    kwargs: dict = {"echo": SQL_ECHO, "future": True}
    if url.startswith("sqlite") and (":memory:" in url or url.rstrip("/") == "sqlite:"):
        # one shared connection, otherwise every session sees an empty database
        kwargs["connect_args"] = {"check_same_thread": False}
        kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


@event.listens_for(Engine, "connect")
def _sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # SQLite ignores ON DELETE / ON UPDATE without this pragma
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


engine = _build_engine(DATABASE_URL)

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    future=True,
    expire_on_commit=False
)


class Base(DeclarativeBase):
    """Base ORM for every clinic table."""
    pass


def configure_engine(url: str) -> Engine:
    """Point the module engine and the session factory at another database."""
    global engine
    old = engine
    engine = _build_engine(url)
    SessionLocal.configure(bind=engine)
    old.dispose()
    return engine


def get_engine() -> Engine:
    return engine


@contextmanager
def db_session() -> Iterator[Session]:
    """
    Context manager for a unit of work:
    - commit when the block succeeds
    - rollback on any exception, which is re-raised
    - close always
    """
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
