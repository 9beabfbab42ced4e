"""Drift detection and repair for denormalized aggregates.

The reconciler compares every stored aggregate with the on-demand count and
optionally recounts the stored value in place. It is the only way to recover from
drift caused by lost events, bypass deletes or crashed dual-writes.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from tally_stage.core.errors import DriftDetected, TallyError
from tally_stage.core.settings import settings
from tally_stage.db.time import utcnow
from tally_stage.models import ReconciliationRun
from tally_stage.repositories.aggregate_store import AggregateStore
from tally_stage.services.counters import COUNTERS, get_counter
from tally_stage.services.counting import OnDemandCounter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DriftMismatch:
    """One aggregate whose stored value disagrees with the true count."""

    counter: str
    owner_id: int
    stored: int
    actual: int

    @property
    def delta(self) -> int:
        return self.actual - self.stored


@dataclass
class ReconciliationReport:
    """Outcome of a single scan."""

    started_at: datetime
    finished_at: datetime | None = None
    repair: bool = False
    counters: list[str] = field(default_factory=list)
    entities_checked: int = 0
    mismatches: list[DriftMismatch] = field(default_factory=list)
    corrected: list[DriftMismatch] = field(default_factory=list)
    run_id: int | None = None

    @property
    def mismatch_count(self) -> int:
        return len(self.mismatches)

    @property
    def clean(self) -> bool:
        return not self.mismatches

    def raise_for_drift(self) -> None:
        """Raise DriftDetected if the scan found any mismatch."""
        if self.mismatches:
            raise DriftDetected(self.mismatches)


class Reconciler:
    """Scans registered counters against the detail records."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory
        self.counter = OnDemandCounter(session_factory)
        self.aggregates = AggregateStore(session_factory)

    def scan(
        self,
        counters: Iterable[str] | None = None,
        *,
        repair: bool = False,
    ) -> ReconciliationReport:
        """Compare stored aggregates with true counts.

        Args:
            counters: Counter names to check; all registered counters if None.
            repair: Recount each mismatched aggregate from its detail rows.

        Returns:
            The report, which is also persisted as a ReconciliationRun.
        """
        names = list(counters) if counters is not None else list(COUNTERS)
        report = ReconciliationReport(started_at=utcnow(), repair=repair, counters=names)

        with self._session_factory() as db:
            try:
                for name in names:
                    self._scan_counter(db, name, report, repair=repair)
                report.finished_at = utcnow()
                report.run_id = self._record_run(db, report)
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise TallyError(f"reconciliation failed: {exc}") from exc

        if report.mismatches:
            logger.error(
                "Reconciliation found %d drifted aggregate(s) across %d entities%s",
                report.mismatch_count,
                report.entities_checked,
                "; repaired" if repair else "",
            )
        else:
            logger.info("Reconciliation clean across %d entities", report.entities_checked)
        return report

    def _scan_counter(
        self, db: Session, name: str, report: ReconciliationReport, *, repair: bool
    ) -> None:
        spec = get_counter(name)
        actual = self.counter.count_many(name, session=db)
        stored_rows = db.execute(select(spec.entity.id, spec.aggregate_attr)).all()
        for owner_id, stored in stored_rows:
            report.entities_checked += 1
            true_count = actual.get(int(owner_id), 0)
            if int(stored) == true_count:
                continue
            mismatch = DriftMismatch(name, int(owner_id), int(stored), true_count)
            report.mismatches.append(mismatch)
            logger.warning(
                "Drift on %s[%s]: stored=%d actual=%d",
                name,
                owner_id,
                mismatch.stored,
                mismatch.actual,
            )
            if repair:
                self._repair(db, mismatch, report)

    def _repair(self, db: Session, mismatch: DriftMismatch, report: ReconciliationReport) -> None:
        repaired = self.aggregates.recount(mismatch.counter, mismatch.owner_id, session=db)
        if repaired is None:
            return
        if repaired != mismatch.actual:
            logger.info(
                "Detail rows for %s[%s] changed during the scan: repaired to %d, not %d",
                mismatch.counter,
                mismatch.owner_id,
                repaired,
                mismatch.actual,
            )
        report.corrected.append(replace(mismatch, actual=repaired))

    @staticmethod
    def _record_run(db: Session, report: ReconciliationReport) -> int:
        run = ReconciliationRun(
            started_at=report.started_at,
            finished_at=report.finished_at,
            repair=report.repair,
            entities_checked=report.entities_checked,
            mismatch_count=report.mismatch_count,
            mismatches=[asdict(m) for m in report.mismatches],
            corrected=[asdict(m) for m in report.corrected],
        )
        db.add(run)
        db.flush()
        return int(run.id)


class ReconcileWorker:
    """Runs :meth:`Reconciler.scan` on a fixed interval."""

    def __init__(
        self,
        reconciler: Reconciler,
        *,
        interval: float | None = None,
        repair: bool | None = None,
    ) -> None:
        self.reconciler = reconciler
        self.interval = settings.reconcile_interval_seconds if interval is None else interval
        self.repair = settings.reconcile_repair if repair is None else repair
        self.last_report: ReconciliationReport | None = None
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    async def start(self) -> None:
        """Start the periodic scan; a non-positive interval disables it."""
        if self.interval <= 0:
            return

        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the periodic scan."""
        if self._task is None:
            return

        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                self.last_report = await asyncio.to_thread(
                    self.reconciler.scan, repair=self.repair
                )
            except TallyError as e:
                logger.warning("ReconcileWorker encountered TallyError: %s", e)

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except TimeoutError:
                continue
