"""Change feed over the record store's change log.

Consumers read events in ``seq`` order after a checkpoint. Delivery is
at-least-once: a consumer that crashes between applying a batch and saving
its checkpoint sees the batch again. Pruning old events bounds the log but
means a consumer resuming too far back cannot be served; that gap is reported
as :class:`ChangeFeedGap` and the missing events are gone for good.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from tally_stage.core.errors import ChangeFeedGap
from tally_stage.core.settings import settings
from tally_stage.models import ChangeEvent, FeedRetention, ProcessedEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeedEvent:
    """Detached copy of a change event as delivered to consumers."""

    seq: int
    event_id: str
    collection: str
    operation: str
    record_id: int
    owners: dict[str, int]
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: ChangeEvent) -> FeedEvent:
        return cls(
            seq=int(row.seq),
            event_id=row.event_id,
            collection=row.collection,
            operation=row.operation,
            record_id=int(row.record_id),
            owners={key: int(value) for key, value in (row.owners or {}).items()},
            created_at=row.created_at,
        )


class ChangeFeed:
    """Pull-based reader for the ``change_event`` table."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        batch_size: int | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.batch_size = batch_size or settings.change_feed_batch_size
        self.poll_interval = (
            settings.change_feed_poll_interval_seconds if poll_interval is None else poll_interval
        )

    def read(
        self,
        collection: str,
        after_seq: int = 0,
        limit: int | None = None,
        *,
        strict: bool = True,
    ) -> list[FeedEvent]:
        """Return up to ``limit`` events with ``seq > after_seq``.

        Raises:
            ChangeFeedGap: When ``strict`` and events after ``after_seq`` were
                pruned before being read.
        """
        with self._session_factory() as db:
            if strict:
                self._check_gap(db, collection, after_seq)
            stmt = (
                select(ChangeEvent)
                .where(ChangeEvent.collection == collection, ChangeEvent.seq > after_seq)
                .order_by(ChangeEvent.seq)
                .limit(limit or self.batch_size)
            )
            return [FeedEvent.from_row(row) for row in db.execute(stmt).scalars()]

    def subscribe(
        self,
        collection: str,
        *,
        after_seq: int = 0,
        stop: threading.Event | None = None,
    ) -> Iterator[FeedEvent]:
        """Yield events forever, polling when caught up.

        Restartable: pass the last applied ``seq`` as ``after_seq``. The
        generator only ends when ``stop`` is set.
        """
        stop = stop or threading.Event()
        position = after_seq
        while not stop.is_set():
            batch = self.read(collection, position)
            if not batch:
                stop.wait(self.poll_interval)
                continue
            for event in batch:
                position = event.seq
                yield event
                if stop.is_set():
                    return

    def oldest_seq(self, collection: str) -> int | None:
        """Return the smallest retained ``seq`` for ``collection``."""
        with self._session_factory() as db:
            return db.execute(
                select(func.min(ChangeEvent.seq)).where(ChangeEvent.collection == collection)
            ).scalar_one_or_none()

    def latest_seq(self, collection: str) -> int:
        """Return the highest ``seq`` ever written for ``collection`` (0 if none)."""
        with self._session_factory() as db:
            value = db.execute(
                select(func.max(ChangeEvent.seq)).where(ChangeEvent.collection == collection)
            ).scalar_one_or_none()
        return int(value or 0)

    def prune(self, collection: str, keep_last: int) -> int:
        """Drop all but the newest ``keep_last`` events of ``collection``."""
        with self._session_factory() as db:
            cutoff = db.execute(
                select(ChangeEvent.seq)
                .where(ChangeEvent.collection == collection)
                .order_by(ChangeEvent.seq.desc())
                .offset(keep_last)
                .limit(1)
            ).scalar_one_or_none()
            if cutoff is None:
                return 0
            # Remember the high-water mark so gap detection survives an empty log.
            self._remember_pruned(db, collection, cutoff)
            # Dedup claims for pruned events can never be redelivered.
            db.execute(
                delete(ProcessedEvent).where(
                    ProcessedEvent.event_id.in_(
                        select(ChangeEvent.event_id).where(
                            ChangeEvent.collection == collection, ChangeEvent.seq <= cutoff
                        )
                    )
                )
            )
            result = db.execute(
                delete(ChangeEvent).where(
                    ChangeEvent.collection == collection, ChangeEvent.seq <= cutoff
                )
            )
            db.commit()
            removed = int(result.rowcount or 0)
        if removed:
            logger.info(
                "Pruned %d change event(s) from %s up to seq %d", removed, collection, cutoff
            )
        return removed

    def enforce_retention(self, collections: list[str]) -> int:
        """Apply ``change_feed_retention_events`` to each collection."""
        keep = settings.change_feed_retention_events
        if keep is None:
            return 0
        return sum(self.prune(collection, keep) for collection in collections)

    # --- helpers -------------------------------------------------------------------

    @staticmethod
    def _remember_pruned(db: Session, collection: str, cutoff: int) -> None:
        watermark = db.get(FeedRetention, collection)
        if watermark is None:
            db.add(FeedRetention(collection=collection, pruned_through_seq=int(cutoff)))
        else:
            watermark.pruned_through_seq = max(watermark.pruned_through_seq, int(cutoff))

    @staticmethod
    def _check_gap(db: Session, collection: str, after_seq: int) -> None:
        watermark = db.get(FeedRetention, collection)
        pruned_through = watermark.pruned_through_seq if watermark is not None else 0
        oldest, latest = db.execute(
            select(func.min(ChangeEvent.seq), func.max(ChangeEvent.seq)).where(
                ChangeEvent.collection == collection
            )
        ).one()
        horizon = max(int(latest or 0), pruned_through)
        if after_seq > horizon:
            # The consumer is ahead of anything this log ever wrote: the log was reset.
            raise ChangeFeedGap(collection, after_seq, int(oldest or horizon + 1))
        if after_seq >= pruned_through:
            return
        raise ChangeFeedGap(collection, after_seq, int(oldest or pruned_through + 1))
