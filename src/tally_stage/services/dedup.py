"""Dedup locks for effectively-once change-event processing.

``acquire_once(event_id)`` returns True exactly once per event id. The database
variant runs inside the listener's transaction, so the processed marker and
the aggregate adjustment commit or roll back together. The Redis and
in-memory variants mark the event immediately and are only as strong as the
process that follows them.
"""

from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Final, Protocol, runtime_checkable

import redis
from sqlalchemy import insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from tally_stage.core.settings import settings
from tally_stage.models import ProcessedEvent

logger = logging.getLogger(__name__)

_KEY_PREFIX: Final[str] = "tally:event"


@runtime_checkable
class DedupLock(Protocol):
    """Insert-if-absent guard keyed by change-event id."""

    def acquire_once(self, event_id: str) -> bool:
        """Return True if this call is the first to claim ``event_id``."""
        ...


class DatabaseDedupLock:
    """Persisted set of processed event ids, bound to one session."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def acquire_once(self, event_id: str) -> bool:
        dialect = self.session.get_bind().dialect.name
        if dialect == "sqlite":
            stmt = sqlite_insert(ProcessedEvent).values(event_id=event_id)
            stmt = stmt.on_conflict_do_nothing(index_elements=["event_id"])
        elif dialect == "postgresql":
            stmt = pg_insert(ProcessedEvent).values(event_id=event_id)
            stmt = stmt.on_conflict_do_nothing(index_elements=["event_id"])
        else:
            # The primary key still rejects a concurrent duplicate at flush time.
            exists = self.session.execute(
                select(ProcessedEvent.event_id).where(ProcessedEvent.event_id == event_id)
            ).first()
            if exists is not None:
                return False
            stmt = insert(ProcessedEvent).values(event_id=event_id)
        result = self.session.execute(stmt)
        return bool(result.rowcount)


class RedisDedupLock:
    """``SET NX`` with a TTL in a shared Redis instance."""

    def __init__(self, client: Any | None = None, *, ttl_seconds: int | None = None) -> None:
        self._redis = client if client is not None else redis.from_url(settings.redis_url)
        self.ttl_seconds = settings.dedup_ttl_seconds if ttl_seconds is None else ttl_seconds

    def acquire_once(self, event_id: str) -> bool:
        acquired = self._redis.set(f"{_KEY_PREFIX}:{event_id}", "1", nx=True, ex=self.ttl_seconds)
        return bool(acquired)

    def release(self, event_id: str) -> None:
        """Forget ``event_id`` so a failed application can be retried."""
        self._redis.delete(f"{_KEY_PREFIX}:{event_id}")


class InMemoryDedupLock:
    """Process-local set of processed ids, for tests and single-process demos."""

    def __init__(self) -> None:
        self._seen: set[str] = set()
        self._lock = Lock()

    def acquire_once(self, event_id: str) -> bool:
        with self._lock:
            if event_id in self._seen:
                return False
            self._seen.add(event_id)
            return True

    def release(self, event_id: str) -> None:
        """Forget ``event_id`` so a failed application can be retried."""
        with self._lock:
            self._seen.discard(event_id)


_MEMORY_LOCK = InMemoryDedupLock()
_REDIS_LOCKS: dict[str, RedisDedupLock] = {}


def get_dedup_lock(session: Session, backend: str | None = None) -> DedupLock:
    """Return the configured dedup lock for a listener transaction."""
    backend = backend or settings.dedup_backend
    if backend == "database":
        return DatabaseDedupLock(session)
    if backend == "redis":
        if settings.redis_url not in _REDIS_LOCKS:
            _REDIS_LOCKS[settings.redis_url] = RedisDedupLock()
        return _REDIS_LOCKS[settings.redis_url]
    if backend == "memory":
        return _MEMORY_LOCK
    raise ValueError(f"Unknown dedup backend '{backend}'")
