"""Background application of change-feed events to aggregate fields.

This module provides the ChangeFeedListener, which turns detail inserts and
deletes into counter adjustments, and the ChangeFeedWorker that polls the
feed in the background. Every event is claimed through a dedup lock before it
is applied, so redelivered events are absorbed instead of counted twice.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from tally_stage.core.errors import AggregateOwnerMissing, ChangeFeedGap, DuplicateEvent, TallyError
from tally_stage.core.settings import settings
from tally_stage.models import FeedCheckpoint
from tally_stage.models.change_event import CHANGE_OP_DELETE, CHANGE_OP_INSERT
from tally_stage.repositories.aggregate_store import AggregateStore
from tally_stage.services.change_feed import ChangeFeed, FeedEvent
from tally_stage.services.counters import (
    DETAIL_KINDS,
    counters_for_detail,
    get_detail_model,
    kind_for_collection,
)
from tally_stage.services.dedup import DedupLock, get_dedup_lock

logger = logging.getLogger(__name__)

_DELTAS = {CHANGE_OP_INSERT: 1, CHANGE_OP_DELETE: -1}


@dataclass
class ListenerStats:
    """Running totals for one listener instance."""

    applied: int = 0
    duplicates: int = 0
    ignored: int = 0
    gaps: int = 0
    missing_owners: int = 0


class ChangeFeedListener:
    """Applies change events to aggregates, at most once per event id."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        feed: ChangeFeed | None = None,
        *,
        consumer: str | None = None,
        collections: Iterable[str] | None = None,
        dedup_backend: str | None = None,
        dedup_lock: DedupLock | None = None,
    ) -> None:
        """Initialize the listener.

        Args:
            session_factory: Factory for sessions on the aggregate database.
            feed: Change feed to poll. Defaults to one over ``session_factory``.
            consumer: Checkpoint name; defaults to ``change_feed_consumer_name``.
            collections: Tables to follow; defaults to every detail table.
            dedup_backend: ``database``, ``redis`` or ``memory``.
            dedup_lock: Explicit lock instance, overriding ``dedup_backend``.
        """
        self._session_factory = session_factory
        self.feed = feed or ChangeFeed(session_factory)
        self.consumer = consumer or settings.change_feed_consumer_name
        self.collections = list(
            collections or (model.__tablename__ for model in DETAIL_KINDS.values())
        )
        self.dedup_backend = dedup_backend or settings.dedup_backend
        self._dedup_lock = dedup_lock
        # The listener is the only writer of aggregates under this strategy.
        self.aggregates = AggregateStore(session_factory, atomic=True)
        self.stats = ListenerStats()

    def handle(self, event: FeedEvent) -> bool:
        """Apply one event. Returns False when it was already processed."""
        delta = _DELTAS.get(event.operation)
        if delta is None:
            self.stats.ignored += 1
            logger.debug("Ignoring %s event %s", event.operation, event.event_id)
            return False

        with self._session_factory() as db:
            lock = self._dedup_lock or get_dedup_lock(db, self.dedup_backend)
            try:
                if not lock.acquire_once(event.event_id):
                    raise DuplicateEvent(event.event_id)
                self._apply(db, event, delta)
                db.commit()
            except DuplicateEvent:
                db.rollback()
                self.stats.duplicates += 1
                logger.debug("Skipping duplicate change event %s", event.event_id)
                return False
            except (TallyError, SQLAlchemyError):
                db.rollback()
                release = getattr(lock, "release", None)
                if release is not None:
                    release(event.event_id)
                raise

        self.stats.applied += 1
        return True

    def consume(self, events: Iterable[FeedEvent]) -> int:
        """Apply ``events`` in the order given, returning how many took effect."""
        return sum(1 for event in events if self.handle(event))

    def poll_once(self) -> int:
        """Read one batch per collection, apply it and advance checkpoints."""
        processed = 0
        for collection in self.collections:
            after = self.load_checkpoint(collection)
            try:
                batch = self.feed.read(collection, after)
            except ChangeFeedGap as gap:
                self.stats.gaps += 1
                logger.error(
                    "Change feed gap on %s: resuming at seq %d, events after %d were lost",
                    gap.collection,
                    gap.oldest_seq,
                    gap.after_seq,
                )
                after = gap.oldest_seq - 1
                self.save_checkpoint(collection, after)
                batch = self.feed.read(collection, after, strict=False)

            for event in batch:
                self.handle(event)
                processed += 1
            if batch:
                self.save_checkpoint(collection, batch[-1].seq)
        return processed

    def drain(self, max_rounds: int = 1000) -> int:
        """Poll until every collection is caught up."""
        total = 0
        for _ in range(max_rounds):
            processed = self.poll_once()
            if not processed:
                break
            total += processed
        return total

    def load_checkpoint(self, collection: str) -> int:
        with self._session_factory() as db:
            row = db.get(FeedCheckpoint, (self.consumer, collection))
            return 0 if row is None else int(row.last_seq)

    def save_checkpoint(self, collection: str, seq: int) -> None:
        with self._session_factory() as db:
            row = db.get(FeedCheckpoint, (self.consumer, collection))
            if row is None:
                db.add(FeedCheckpoint(consumer=self.consumer, collection=collection, last_seq=seq))
            else:
                row.last_seq = seq
            db.commit()

    def _apply(self, db: Session, event: FeedEvent, delta: int) -> None:
        detail = get_detail_model(kind_for_collection(event.collection))
        for spec in counters_for_detail(detail):
            owner_id = event.owners.get(spec.owner_column)
            if owner_id is None:
                continue
            try:
                self.aggregates.adjust(spec.name, owner_id, delta, session=db)
            except AggregateOwnerMissing:
                # The owner was deleted after the event was written.
                self.stats.missing_owners += 1
                logger.warning(
                    "Dropping %+d for %s[%s]: owner no longer exists",
                    delta,
                    spec.name,
                    owner_id,
                )


class ChangeFeedWorker:
    """Periodically drains the change feed into aggregates."""

    def __init__(self, listener: ChangeFeedListener) -> None:
        self.listener = listener
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background polling loop."""
        if not self.running:
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the background polling loop."""
        if self._task is None:
            return

        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        interval = max(0.05, float(self.listener.feed.poll_interval))

        while not self._stopping.is_set():
            try:
                await asyncio.to_thread(
                    self.listener.feed.enforce_retention, self.listener.collections
                )
                processed = await asyncio.to_thread(self.listener.poll_once)
            except TallyError as e:
                logger.warning("ChangeFeedWorker encountered TallyError: %s", e)
                await self._sleep(min(interval * 4, 30.0))
                continue
            except SQLAlchemyError as e:
                logger.error("ChangeFeedWorker encountered database error: %s", e, exc_info=True)
                await self._sleep(min(interval * 4, 30.0))
                continue

            if not processed:
                await self._sleep(interval)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except TimeoutError:
            pass
