"""Data access for detail records (posts, likes, comments).

Every insert and delete also appends a :class:`ChangeEvent` in the same
transaction, which is what the change feed replays. Bulk deletes and database
cascades bypass that log: they model the second code paths that
silently skip counter bookkeeping.
"""
from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import delete, func, inspect, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from tally_stage.core.errors import (
    DetailNotFound,
    DetailWriteFailure,
    TallyError,
    TransactionAbort,
)
from tally_stage.db.session import Base
from tally_stage.models import ChangeEvent, PostLike
from tally_stage.models.change_event import CHANGE_OP_DELETE, CHANGE_OP_INSERT
from tally_stage.services.counters import get_detail_model, owner_ids

__all__ = ["DetailRecord", "RecordStore", "UnitOfWork"]

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Detail kinds whose natural key makes inserts idempotent.
_NATURAL_KEYS: dict[type[Base], tuple[str, ...]] = {
    PostLike: ("user_id", "post_id"),
}


@dataclass(frozen=True)
class DetailRecord:
    """Detached snapshot of a detail row."""

    kind: str
    id: int
    owners: dict[str, int]
    created_at: datetime | None = None
    # False when an insert-if-absent found an existing row.
    created: bool = True


@dataclass
class UnitOfWork:
    """Session plus deadline handed to a transactional callable."""

    session: Session
    deadline: float | None = None
    started: float = field(default_factory=time.monotonic)

    def time_left(self) -> float | None:
        """Return seconds until the deadline, or None when unbounded."""
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def ensure_time_left(self) -> None:
        """Raise TimeoutError once the deadline has passed."""
        remaining = self.time_left()
        if remaining is not None and remaining <= 0:
            elapsed = time.monotonic() - self.started
            raise TimeoutError(f"transaction exceeded its deadline after {elapsed:.3f}s")


class RecordStore:
    """Authoritative store for detail records."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        record_changes: bool = True,
    ) -> None:
        """Initialize the store.

        Args:
            session_factory: Factory for sessions on the record store database.
            record_changes: Append change events for the change feed.
        """
        self._session_factory = session_factory
        self._record_changes = record_changes

    @property
    def session_factory(self) -> sessionmaker[Session]:
        return self._session_factory

    @contextmanager
    def session_scope(self, session: Session | None = None) -> Iterator[Session]:
        """Yield ``session`` unchanged, or a fresh one committed on exit."""
        if session is not None:
            yield session
            return

        own = self._session_factory()
        try:
            yield own
            own.commit()
        except BaseException:
            own.rollback()
            raise
        finally:
            own.close()

    def create_detail(
        self,
        kind: str,
        payload: Mapping[str, Any] | BaseModel,
        *,
        session: Session | None = None,
    ) -> DetailRecord:
        """Persist a detail record and its change event.

        Likes are insert-if-absent: liking the same post twice returns the
        existing row with ``created=False`` and writes no change event.

        Raises:
            DetailWriteFailure: If the row cannot be persisted (unknown owner,
                constraint violation, driver error).
        """
        model = get_detail_model(kind)
        values = self._clean_payload(model, payload)

        try:
            with self.session_scope(session) as db:
                existing = self._find_by_natural_key(db, model, values)
                if existing is not None:
                    return self._snapshot(kind, existing, created=False)

                row = model(**values)
                db.add(row)
                db.flush()
                self._append_change(db, model, CHANGE_OP_INSERT, row)
                return self._snapshot(kind, row)
        except IntegrityError as exc:
            raise DetailWriteFailure(kind, str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            raise DetailWriteFailure(kind, str(exc)) from exc

    def get_detail(
        self, kind: str, record_id: int, *, session: Session | None = None
    ) -> DetailRecord | None:
        """Return a detail record by identifier."""
        model = get_detail_model(kind)
        with self.session_scope(session) as db:
            row = db.get(model, record_id)
            return None if row is None else self._snapshot(kind, row)

    def delete_detail(
        self, kind: str, record_id: int, *, session: Session | None = None
    ) -> DetailRecord:
        """Delete a detail record and log the deletion.

        Raises:
            DetailNotFound: If no such record exists.
            DetailWriteFailure: On driver errors.
        """
        model = get_detail_model(kind)
        try:
            with self.session_scope(session) as db:
                row = db.get(model, record_id)
                if row is None:
                    raise DetailNotFound(kind, record_id)
                snapshot = self._snapshot(kind, row)
                self._append_change(db, model, CHANGE_OP_DELETE, row)
                db.delete(row)
                db.flush()
                return snapshot
        except SQLAlchemyError as exc:
            raise DetailWriteFailure(kind, str(exc)) from exc

    def count_where(
        self,
        kind: str,
        owner_column: str,
        owner_id: int,
        *,
        session: Session | None = None,
    ) -> int:
        """Return the number of ``kind`` records owned by ``owner_id``."""
        model = get_detail_model(kind)
        stmt = select(func.count()).select_from(model).where(
            getattr(model, owner_column) == owner_id
        )
        with self.session_scope(session) as db:
            return int(db.execute(stmt).scalar_one())

    def bulk_delete_where(self, kind: str, owner_column: str, owner_id: int) -> int:
        """Delete matching records with a single statement.

        Emits no change events and touches no aggregates, like a manual
        cleanup script or a second code path would.
        """
        model = get_detail_model(kind)
        stmt = delete(model).where(getattr(model, owner_column) == owner_id)
        with self.session_scope() as db:
            result = db.execute(stmt, execution_options={"synchronize_session": False})
            removed = int(result.rowcount or 0)
        logger.warning(
            "Bulk-deleted %d %s record(s) for %s=%s outside the mutation pipeline",
            removed,
            kind,
            owner_column,
            owner_id,
        )
        return removed

    def within_transaction(
        self,
        fn: Callable[[UnitOfWork], T],
        *,
        timeout: float | None = None,
    ) -> T:
        """Run ``fn`` atomically: commit if it returns, roll back otherwise.

        Raises:
            DetailWriteFailure: Re-raised after rollback when the write was
                rejected before the deadline.
            TransactionAbort: Any other failure, including the deadline passing
                before commit. Nothing was persisted.
        """
        deadline = time.monotonic() + timeout if timeout else None
        session = self._session_factory()
        uow = UnitOfWork(session=session, deadline=deadline)
        try:
            self._bound_lock_wait(uow)
            result = fn(uow)
            uow.ensure_time_left()
            session.commit()
            return result
        except DetailWriteFailure as exc:
            session.rollback()
            remaining = uow.time_left()
            if remaining is not None and remaining <= 0:
                # Most likely a lock wait cut short by the deadline.
                logger.warning("Transaction rolled back at its deadline: %s", exc)
                raise TransactionAbort(f"transaction rolled back: {exc}") from exc
            raise
        except (TallyError, SQLAlchemyError, TimeoutError) as exc:
            session.rollback()
            logger.warning("Transaction rolled back: %s", exc)
            raise TransactionAbort(f"transaction rolled back: {exc}") from exc
        finally:
            session.close()

    # --- helpers -------------------------------------------------------------------

    @staticmethod
    def _bound_lock_wait(uow: UnitOfWork) -> None:
        """Cap SQLite's lock wait at the time left before the deadline."""
        remaining = uow.time_left()
        if remaining is None or uow.session.get_bind().dialect.name != "sqlite":
            return
        millis = max(1, math.ceil(remaining * 1000))
        uow.session.connection().exec_driver_sql(f"PRAGMA busy_timeout = {millis}")

    @staticmethod
    def _clean_payload(model: type[Base], payload: Mapping[str, Any] | BaseModel) -> dict[str, Any]:
        data = payload.model_dump() if isinstance(payload, BaseModel) else dict(payload)
        columns = {attr.key for attr in inspect(model).column_attrs}
        unknown = set(data) - columns
        if unknown:
            raise DetailWriteFailure(model.__tablename__, f"unknown fields {sorted(unknown)}")
        data.pop("id", None)
        return data

    @staticmethod
    def _find_by_natural_key(db: Session, model: type[Base], values: dict[str, Any]) -> Any:
        key = _NATURAL_KEYS.get(model)
        if key is None or any(values.get(column) is None for column in key):
            return None
        stmt = select(model).filter_by(**{column: values[column] for column in key})
        return db.execute(stmt).scalars().first()

    def _append_change(self, db: Session, model: type[Base], operation: str, row: Any) -> None:
        if not self._record_changes:
            return
        db.add(
            ChangeEvent(
                event_id=uuid4().hex,
                collection=model.__tablename__,
                operation=operation,
                record_id=row.id,
                owners=owner_ids(model, row),
            )
        )

    @staticmethod
    def _snapshot(kind: str, row: Any, *, created: bool = True) -> DetailRecord:
        return DetailRecord(
            kind=kind,
            id=int(row.id),
            owners=owner_ids(type(row), row),
            created_at=getattr(row, "created_at", None),
            created=created,
        )
