"""Database session configuration."""

from __future__ import annotations

from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from tally_stage.core.settings import settings


class Base(DeclarativeBase):
    """Declarative base shared by all ORM models."""


# Ensure model modules are imported so that metadata is populated when create_all runs.
import tally_stage.models  # noqa: E402,F401

SQLITE_BUSY_TIMEOUT_SECONDS = 30


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    # SQLite ignores ON DELETE CASCADE unless this pragma is set per connection.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _reset_sqlite_busy_timeout(dbapi_connection: Any, connection_record: Any) -> None:
    # A transaction may have shortened the lock wait to fit its deadline.
    if dbapi_connection is None:
        return
    cursor = dbapi_connection.cursor()
    cursor.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_SECONDS * 1000}")
    cursor.close()


def build_engine(
    url: str,
    *,
    isolation_level: str | None = None,
    echo: bool = False,
) -> Engine:
    """Create an engine for the record store.

    SQLite URLs get a generous busy timeout so that concurrent writers queue on
    the database lock instead of failing, and in-memory databases share one
    connection across threads.
    """
    kwargs: dict[str, Any] = {"echo": echo}
    if isolation_level:
        kwargs["isolation_level"] = isolation_level

    is_sqlite = url.startswith("sqlite")
    if is_sqlite:
        kwargs["connect_args"] = {
            "check_same_thread": False,
            "timeout": SQLITE_BUSY_TIMEOUT_SECONDS,
        }
        if url in {"sqlite://", "sqlite:///:memory:"}:
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True

    new_engine = create_engine(url, **kwargs)
    if is_sqlite:
        event.listen(new_engine, "connect", _enable_sqlite_foreign_keys)
        event.listen(new_engine, "checkin", _reset_sqlite_busy_timeout)
    return new_engine


def build_session_factory(bind: Engine) -> sessionmaker[Session]:
    """Return a session factory bound to ``bind``."""
    return sessionmaker(bind=bind, autocommit=False, autoflush=False, expire_on_commit=False)


engine = build_engine(
    settings.effective_database_url,
    isolation_level=settings.record_store_isolation_level,
    echo=settings.sql_debug,
)

SessionLocal = build_session_factory(engine)


def create_tables(bind: Engine | None = None) -> None:
    """Create all database tables."""
    Base.metadata.create_all(bind=bind or engine)


def drop_tables(bind: Engine | None = None) -> None:
    """Drop all database tables."""
    Base.metadata.drop_all(bind=bind or engine)
