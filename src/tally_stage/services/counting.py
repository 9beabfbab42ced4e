"""Counts computed from the detail records at query time."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import UniqueConstraint, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from tally_stage.core.errors import TallyError
from tally_stage.services.counters import CounterSpec, get_counter

logger = logging.getLogger(__name__)


class OnDemandCounter:
    """``SELECT COUNT(*)`` over the detail table, filtered by owner.

    Always equal to the true count at the instant of the query, because there
    is nothing materialized to fall out of sync. The price is paid on every
    read: an index lookup when the owner column is indexed, a scan of the
    detail table otherwise.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def count(self, counter: str, owner_id: int, *, session: Session | None = None) -> int:
        spec = get_counter(counter)
        stmt = select(func.count()).select_from(spec.detail).where(spec.owner_attr == owner_id)
        return int(self._scalar(stmt, session))

    def count_many(
        self,
        counter: str,
        owner_ids: Iterable[int] | None = None,
        *,
        session: Session | None = None,
    ) -> dict[int, int]:
        """Return true counts for many owners in one grouped query.

        Every owner that exists on the entity table is present in the result,
        including owners with zero detail records. With ``owner_ids=None`` all
        entities are counted.
        """
        spec = get_counter(counter)
        entity_ids = select(spec.entity.id)
        grouped = select(spec.owner_attr, func.count()).group_by(spec.owner_attr)
        if owner_ids is not None:
            wanted = list(owner_ids)
            if not wanted:
                return {}
            entity_ids = entity_ids.where(spec.entity.id.in_(wanted))
            grouped = grouped.where(spec.owner_attr.in_(wanted))

        def run(db: Session) -> dict[int, int]:
            counts = {int(owner): 0 for owner in db.execute(entity_ids).scalars()}
            for owner, total in db.execute(grouped):
                if owner in counts:
                    counts[int(owner)] = int(total)
            return counts

        try:
            if session is not None:
                return run(session)
            with self._session_factory() as db:
                return run(db)
        except SQLAlchemyError as exc:
            raise TallyError(f"count query for {counter} failed: {exc}") from exc

    @staticmethod
    def has_owner_index(counter: str) -> bool:
        """Return True if an index or unique key leads with the owner column."""
        spec = get_counter(counter)
        table = spec.detail.__table__
        for index in table.indexes:
            columns = list(index.columns)
            if columns and columns[0].name == spec.owner_column:
                return True
        for constraint in table.constraints:
            if isinstance(constraint, UniqueConstraint):
                columns = list(constraint.columns)
                if columns and columns[0].name == spec.owner_column:
                    return True
        return False

    @classmethod
    def cost_hint(cls, counter: str) -> str:
        """Describe how expensive a single ``count`` is for ``counter``."""
        spec = get_counter(counter)
        if cls.has_owner_index(counter):
            return f"index range scan on {_describe(spec)}: O(log n + matching rows)"
        return f"full scan of {spec.detail.__tablename__}: O(table rows)"

    def _scalar(self, stmt, session: Session | None) -> int:
        try:
            if session is not None:
                return session.execute(stmt).scalar_one()
            with self._session_factory() as db:
                return db.execute(stmt).scalar_one()
        except SQLAlchemyError as exc:
            raise TallyError(f"count query failed: {exc}") from exc


def _describe(spec: CounterSpec) -> str:
    return f"{spec.detail.__tablename__}.{spec.owner_column}"
