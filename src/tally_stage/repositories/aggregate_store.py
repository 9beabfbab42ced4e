"""Data access for denormalized aggregate fields."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from tally_stage.core.errors import AggregateOwnerMissing, AggregateWriteFailure
from tally_stage.services.counters import CounterSpec, get_counter

__all__ = ["AggregateStore", "PendingAdjustment"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingAdjustment:
    """An increment or decrement waiting to be written.

    ``baseline`` is the value read up front in read-modify-write mode; it is
    None when the store increments atomically.
    """

    spec: CounterSpec
    owner_id: int
    delta: int
    baseline: int | None = None


class AggregateStore:
    """Reads and adjusts aggregate columns on entities.

    With ``atomic=True`` every adjustment is a single
    ``UPDATE ... SET f = f + :delta``. With ``atomic=False`` the store reads
    the current value first and writes ``baseline + delta`` later, which loses
    updates when two writers interleave.
    """

    def __init__(self, session_factory: sessionmaker[Session], *, atomic: bool = True) -> None:
        self._session_factory = session_factory
        self.atomic = atomic

    def read(self, counter: str, owner_id: int, *, session: Session | None = None) -> int | None:
        """Return the stored aggregate, or None if the entity does not exist."""
        spec = get_counter(counter)
        stmt = select(spec.aggregate_attr).where(spec.entity.id == owner_id)
        if session is not None:
            value = session.execute(stmt).scalar_one_or_none()
        else:
            with self._session_factory() as db:
                value = db.execute(stmt).scalar_one_or_none()
        return None if value is None else int(value)

    def prepare(
        self,
        counter: str,
        owner_id: int,
        delta: int,
        *,
        session: Session | None = None,
    ) -> PendingAdjustment:
        """Plan an adjustment, reading the baseline in read-modify-write mode."""
        spec = get_counter(counter)
        if self.atomic:
            return PendingAdjustment(spec=spec, owner_id=owner_id, delta=delta)
        try:
            baseline = self.read(counter, owner_id, session=session)
        except SQLAlchemyError as exc:
            raise AggregateWriteFailure(counter, owner_id, str(exc)) from exc
        if baseline is None:
            raise AggregateOwnerMissing(counter, owner_id)
        return PendingAdjustment(spec=spec, owner_id=owner_id, delta=delta, baseline=baseline)

    def apply(self, adjustment: PendingAdjustment, *, session: Session | None = None) -> None:
        """Write a prepared adjustment.

        Raises:
            AggregateWriteFailure: If the entity is missing or the update fails.
        """
        spec = adjustment.spec
        if adjustment.baseline is None:
            new_value = spec.aggregate_attr + adjustment.delta
        else:
            new_value = adjustment.baseline + adjustment.delta
        stmt = (
            update(spec.entity)
            .where(spec.entity.id == adjustment.owner_id)
            .values({spec.field: new_value})
            .execution_options(synchronize_session=False)
        )
        try:
            if session is not None:
                rowcount = session.execute(stmt).rowcount
            else:
                with self._session_factory() as db:
                    rowcount = db.execute(stmt).rowcount
                    db.commit()
        except SQLAlchemyError as exc:
            raise AggregateWriteFailure(spec.name, adjustment.owner_id, str(exc)) from exc

        if not rowcount:
            raise AggregateOwnerMissing(spec.name, adjustment.owner_id)
        logger.debug(
            "Adjusted %s[%s] by %+d", spec.name, adjustment.owner_id, adjustment.delta
        )

    def adjust(
        self,
        counter: str,
        owner_id: int,
        delta: int,
        *,
        session: Session | None = None,
    ) -> None:
        """Prepare and apply in one call."""
        self.apply(self.prepare(counter, owner_id, delta, session=session), session=session)

    def write(
        self, counter: str, owner_id: int, value: int, *, session: Session | None = None
    ) -> None:
        """Overwrite an aggregate with an absolute value."""
        spec = get_counter(counter)
        stmt = (
            update(spec.entity)
            .where(spec.entity.id == owner_id)
            .values({spec.field: value})
            .execution_options(synchronize_session=False)
        )
        try:
            if session is not None:
                session.execute(stmt)
            else:
                with self._session_factory() as db:
                    db.execute(stmt)
                    db.commit()
        except SQLAlchemyError as exc:
            raise AggregateWriteFailure(counter, owner_id, str(exc)) from exc

    def recount(self, counter: str, owner_id: int, *, session: Session | None = None) -> int | None:
        """Set an aggregate to the live count of its detail rows.

        The count is a correlated subquery evaluated by the UPDATE itself, so a
        detail row committed after the caller last looked is still included.
        Returns the new value, or None if the entity does not exist.
        """
        spec = get_counter(counter)
        live_count = (
            select(func.count())
            .select_from(spec.detail)
            .where(spec.owner_attr == spec.entity.id)
            .scalar_subquery()
        )
        stmt = (
            update(spec.entity)
            .where(spec.entity.id == owner_id)
            .values({spec.field: live_count})
            .execution_options(synchronize_session=False)
        )
        try:
            if session is not None:
                session.execute(stmt)
                return self.read(counter, owner_id, session=session)
            with self._session_factory() as db:
                db.execute(stmt)
                value = self.read(counter, owner_id, session=db)
                db.commit()
            return value
        except SQLAlchemyError as exc:
            raise AggregateWriteFailure(counter, owner_id, str(exc)) from exc
