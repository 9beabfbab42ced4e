"""Mutation pipelines: the ways a detail write can keep aggregates in step.

Four strategies share one interface:

- ``UnprotectedPipeline`` writes the detail and the aggregates as independent
  commits. A fault between them leaves permanent drift while the caller still
  sees success.
- ``TransactionalPipeline`` groups both writes in one transaction with a
  deadline and bounded retries. Partial failure is gone, but racing writers
  (without atomic increments), retries after a lost acknowledgement and bypass
  deletes still drift.
- ``EventDrivenPipeline`` writes only the detail; a change-feed listener
  applies the aggregate later.
- ``OnDemandPipeline`` writes only the detail; counts are computed at read time.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel

from tally_stage.core.errors import (
    AggregateWriteFailure,
    CommitAcknowledgementLost,
    DetailWriteFailure,
    InjectedFault,
    TransactionAbort,
)
from tally_stage.core.settings import settings
from tally_stage.repositories.aggregate_store import AggregateStore, PendingAdjustment
from tally_stage.repositories.record_store import DetailRecord, RecordStore, UnitOfWork
from tally_stage.services.counters import counters_for_detail, get_detail_model, owner_ids
from tally_stage.services.faults import (
    AFTER_AGGREGATE_WRITE,
    AFTER_COMMIT,
    AFTER_DETAIL_WRITE,
    BEFORE_AGGREGATE_WRITE,
    RACE_WINDOW,
    FaultInjector,
)

logger = logging.getLogger(__name__)

Strategy = Literal["unprotected", "transactional", "event", "on_demand"]
Action = Literal["create", "delete"]


class MutationState(str, Enum):
    """Lifecycle of one detail mutation attempt."""

    PENDING = "pending"
    DETAIL_COMMITTED = "detail_committed"
    DETAIL_FAILED = "detail_failed"
    AGGREGATE_APPLIED = "aggregate_applied"
    AGGREGATE_FAILED = "aggregate_failed"
    # Aggregate left to the change-feed listener.
    AGGREGATE_DEFERRED = "aggregate_deferred"
    # No aggregate exists; reads count on demand.
    NOT_MATERIALIZED = "not_materialized"


_TRANSITIONS: dict[MutationState, frozenset[MutationState]] = {
    MutationState.PENDING: frozenset(
        {MutationState.DETAIL_COMMITTED, MutationState.DETAIL_FAILED}
    ),
    MutationState.DETAIL_COMMITTED: frozenset(
        {
            MutationState.AGGREGATE_APPLIED,
            MutationState.AGGREGATE_FAILED,
            MutationState.AGGREGATE_DEFERRED,
            MutationState.NOT_MATERIALIZED,
        }
    ),
    # An operator retry can complete a failed aggregate step.
    MutationState.AGGREGATE_FAILED: frozenset({MutationState.AGGREGATE_APPLIED}),
}


@dataclass
class MutationAttempt:
    """Outcome of one pipeline invocation."""

    kind: str
    action: Action
    strategy: Strategy
    state: MutationState = MutationState.PENDING
    record: DetailRecord | None = None
    applied: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    error: BaseException | None = None
    attempts: int = 0
    attempt_id: str = field(default_factory=lambda: uuid4().hex)
    history: list[MutationState] = field(default_factory=lambda: [MutationState.PENDING])

    def advance(self, state: MutationState) -> None:
        """Move to ``state``; raises ValueError on an illegal transition."""
        if state not in _TRANSITIONS.get(self.state, frozenset()):
            raise ValueError(f"Illegal transition {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    @property
    def succeeded(self) -> bool:
        """True when the caller would be told the action worked."""
        return MutationState.DETAIL_COMMITTED in self.history

    @property
    def double_counted(self) -> bool:
        """True when a create found an existing row but still moved aggregates."""
        return (
            self.action == "create"
            and self.record is not None
            and not self.record.created
            and bool(self.applied)
        )

    @property
    def consistent(self) -> bool:
        """True only for fully consistent terminal states."""
        if self.double_counted:
            return False
        return self.state in {MutationState.AGGREGATE_APPLIED, MutationState.NOT_MATERIALIZED}

    @property
    def drifted(self) -> bool:
        """True when aggregates no longer match the detail records.

        Either the detail committed without its aggregate adjustment, or an
        existing row was counted again.
        """
        return self.state is MutationState.AGGREGATE_FAILED or self.double_counted


class MutationPipeline:
    """Shared plumbing for all strategies."""

    strategy: Strategy

    def __init__(
        self,
        records: RecordStore,
        aggregates: AggregateStore | None = None,
        *,
        faults: FaultInjector | None = None,
    ) -> None:
        self.records = records
        self.aggregates = aggregates or AggregateStore(
            records.session_factory, atomic=settings.atomic_increments
        )
        self.faults = faults or FaultInjector()

    def create(self, kind: str, payload: Mapping[str, Any] | BaseModel) -> MutationAttempt:
        """Create a detail record of ``kind``."""
        raise NotImplementedError

    def delete(self, kind: str, record_id: int) -> MutationAttempt:
        """Delete a detail record of ``kind``."""
        raise NotImplementedError

    # --- helpers -------------------------------------------------------------------

    def _new_attempt(self, kind: str, action: Action) -> MutationAttempt:
        return MutationAttempt(kind=kind, action=action, strategy=self.strategy)

    @staticmethod
    def _payload_owners(kind: str, payload: Mapping[str, Any] | BaseModel) -> dict[str, int]:
        data = payload.model_dump() if isinstance(payload, BaseModel) else dict(payload)
        return owner_ids(get_detail_model(kind), data)

    def _prepare(
        self, kind: str, owners: Mapping[str, int], delta: int, *, session: Any = None
    ) -> list[PendingAdjustment]:
        adjustments = []
        for spec in counters_for_detail(get_detail_model(kind)):
            owner = owners.get(spec.owner_column)
            if owner is None:
                continue
            adjustments.append(self.aggregates.prepare(spec.name, owner, delta, session=session))
        return adjustments

    def _apply(
        self,
        attempt: MutationAttempt,
        adjustments: list[PendingAdjustment],
        *,
        session: Any = None,
        uow: UnitOfWork | None = None,
    ) -> None:
        if uow is not None:
            session = uow.session
        for adjustment in adjustments:
            if uow is not None:
                # A write blocked on a database lock must not outlive the deadline.
                uow.ensure_time_left()
            context = {
                "counter": adjustment.spec.name,
                "owner_id": adjustment.owner_id,
                "attempt_id": attempt.attempt_id,
            }
            self.faults.fire(BEFORE_AGGREGATE_WRITE, **context)
            self.aggregates.apply(adjustment, session=session)
            attempt.applied.append(adjustment.spec.name)
            self.faults.fire(AFTER_AGGREGATE_WRITE, **context)

    @staticmethod
    def _report_double_count(attempt: MutationAttempt) -> None:
        if attempt.double_counted:
            logger.error(
                "Aggregate drift after %s %s id=%s: row already existed, counted again in %s",
                attempt.action,
                attempt.kind,
                attempt.record.id if attempt.record else None,
                attempt.applied,
            )


class UnprotectedPipeline(MutationPipeline):
    """Detail write and aggregate writes as independent, non-atomic steps."""

    strategy: Strategy = "unprotected"

    def create(self, kind: str, payload: Mapping[str, Any] | BaseModel) -> MutationAttempt:
        attempt = self._new_attempt(kind, "create")
        owners = self._payload_owners(kind, payload)
        adjustments = self._prepare(kind, owners, +1)
        self.faults.fire(RACE_WINDOW, attempt_id=attempt.attempt_id, kind=kind)

        attempt.attempts = 1
        try:
            attempt.record = self.records.create_detail(kind, payload)
        except DetailWriteFailure as exc:
            attempt.error = exc
            attempt.advance(MutationState.DETAIL_FAILED)
            logger.error("Detail write failed for %s: %s", kind, exc)
            raise
        attempt.advance(MutationState.DETAIL_COMMITTED)
        self._finish(attempt, adjustments)
        return attempt

    def delete(self, kind: str, record_id: int) -> MutationAttempt:
        attempt = self._new_attempt(kind, "delete")
        existing = self.records.get_detail(kind, record_id)
        adjustments = self._prepare(kind, existing.owners, -1) if existing else []
        self.faults.fire(RACE_WINDOW, attempt_id=attempt.attempt_id, kind=kind)

        attempt.attempts = 1
        try:
            attempt.record = self.records.delete_detail(kind, record_id)
        except DetailWriteFailure as exc:
            attempt.error = exc
            attempt.advance(MutationState.DETAIL_FAILED)
            logger.error("Detail delete failed for %s %s: %s", kind, record_id, exc)
            raise
        attempt.advance(MutationState.DETAIL_COMMITTED)
        self._finish(attempt, adjustments)
        return attempt

    def retry_aggregate(self, attempt: MutationAttempt) -> MutationAttempt:
        """Re-apply the aggregate step of a drifted attempt, as an operator would.

        Re-applies every counter of the attempt, including ones that may have
        committed before the failure was observed.
        """
        if attempt.record is None or attempt.state is not MutationState.AGGREGATE_FAILED:
            raise ValueError("Only attempts in aggregate_failed can be retried")
        delta = +1 if attempt.action == "create" else -1
        adjustments = self._prepare(attempt.kind, attempt.record.owners, delta)
        attempt.applied.clear()
        attempt.failed.clear()
        attempt.attempts += 1
        self._finish(attempt, adjustments)
        return attempt

    def _finish(self, attempt: MutationAttempt, adjustments: list[PendingAdjustment]) -> None:
        try:
            self.faults.fire(AFTER_DETAIL_WRITE, attempt_id=attempt.attempt_id, kind=attempt.kind)
            self._apply(attempt, adjustments)
        except (AggregateWriteFailure, InjectedFault) as exc:
            attempt.error = exc
            attempt.failed = [
                a.spec.name for a in adjustments if a.spec.name not in attempt.applied
            ]
            if attempt.state is not MutationState.AGGREGATE_FAILED:
                attempt.advance(MutationState.AGGREGATE_FAILED)
            # The caller is told the action succeeded; the log is the only signal.
            logger.error(
                "Aggregate drift after %s %s id=%s: applied=%s failed=%s error=%s",
                attempt.action,
                attempt.kind,
                attempt.record.id if attempt.record else None,
                attempt.applied,
                attempt.failed,
                exc,
            )
            return
        attempt.advance(MutationState.AGGREGATE_APPLIED)
        self._report_double_count(attempt)


class TransactionalPipeline(MutationPipeline):
    """Detail and aggregate writes grouped in one all-or-nothing unit."""

    strategy: Strategy = "transactional"

    def __init__(
        self,
        records: RecordStore,
        aggregates: AggregateStore | None = None,
        *,
        faults: FaultInjector | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff: float | None = None,
    ) -> None:
        super().__init__(records, aggregates, faults=faults)
        self.timeout = settings.transaction_timeout_seconds if timeout is None else timeout
        self.max_retries = settings.transaction_max_retries if max_retries is None else max_retries
        self.backoff = settings.transaction_retry_backoff_seconds if backoff is None else backoff

    def create(self, kind: str, payload: Mapping[str, Any] | BaseModel) -> MutationAttempt:
        attempt = self._new_attempt(kind, "create")
        owners = self._payload_owners(kind, payload)

        def unit(uow: UnitOfWork) -> DetailRecord:
            adjustments = self._prepare(kind, owners, +1, session=uow.session)
            self.faults.fire(RACE_WINDOW, attempt_id=attempt.attempt_id, kind=kind)
            record = self.records.create_detail(kind, payload, session=uow.session)
            uow.ensure_time_left()
            self.faults.fire(AFTER_DETAIL_WRITE, attempt_id=attempt.attempt_id, kind=kind)
            # Increments unconditionally, even when the like already existed.
            self._apply(attempt, adjustments, uow=uow)
            return record

        return self._run(attempt, unit)

    def delete(self, kind: str, record_id: int) -> MutationAttempt:
        attempt = self._new_attempt(kind, "delete")

        def unit(uow: UnitOfWork) -> DetailRecord:
            existing = self.records.get_detail(kind, record_id, session=uow.session)
            adjustments = (
                self._prepare(kind, existing.owners, -1, session=uow.session) if existing else []
            )
            self.faults.fire(RACE_WINDOW, attempt_id=attempt.attempt_id, kind=kind)
            record = self.records.delete_detail(kind, record_id, session=uow.session)
            uow.ensure_time_left()
            self.faults.fire(AFTER_DETAIL_WRITE, attempt_id=attempt.attempt_id, kind=kind)
            self._apply(attempt, adjustments, uow=uow)
            return record

        return self._run(attempt, unit)

    def _run(self, attempt: MutationAttempt, unit: Any) -> MutationAttempt:
        while True:
            attempt.attempts += 1
            attempt.applied.clear()
            try:
                record = self.records.within_transaction(unit, timeout=self.timeout)
                break
            except DetailWriteFailure as exc:
                attempt.error = exc
                attempt.advance(MutationState.DETAIL_FAILED)
                raise
            except TransactionAbort as exc:
                attempt.error = exc
                if attempt.attempts > self.max_retries:
                    attempt.advance(MutationState.DETAIL_FAILED)
                    logger.warning(
                        "Giving up on %s %s after %d attempt(s): %s",
                        attempt.action,
                        attempt.kind,
                        attempt.attempts,
                        exc,
                    )
                    raise
                logger.info(
                    "Retrying %s %s (attempt %d): %s",
                    attempt.action,
                    attempt.kind,
                    attempt.attempts + 1,
                    exc,
                )
                time.sleep(self.backoff * attempt.attempts)

        attempt.error = None
        attempt.record = record
        attempt.advance(MutationState.DETAIL_COMMITTED)
        attempt.advance(MutationState.AGGREGATE_APPLIED)
        self._report_double_count(attempt)
        try:
            self.faults.fire(AFTER_COMMIT, attempt_id=attempt.attempt_id, kind=attempt.kind)
        except InjectedFault as exc:
            # Committed, but the caller cannot know that.
            raise CommitAcknowledgementLost(
                f"outcome of {attempt.action} {attempt.kind} unknown: {exc}"
            ) from exc
        return attempt


class _DetailOnlyPipeline(MutationPipeline):
    """Writes the detail record and nothing else."""

    terminal_state: MutationState

    def create(self, kind: str, payload: Mapping[str, Any] | BaseModel) -> MutationAttempt:
        attempt = self._new_attempt(kind, "create")
        return self._write(attempt, lambda: self.records.create_detail(kind, payload))

    def delete(self, kind: str, record_id: int) -> MutationAttempt:
        attempt = self._new_attempt(kind, "delete")
        return self._write(attempt, lambda: self.records.delete_detail(kind, record_id))

    def _write(
        self, attempt: MutationAttempt, write: Callable[[], DetailRecord]
    ) -> MutationAttempt:
        attempt.attempts = 1
        try:
            attempt.record = write()
        except DetailWriteFailure as exc:
            attempt.error = exc
            attempt.advance(MutationState.DETAIL_FAILED)
            raise
        attempt.advance(MutationState.DETAIL_COMMITTED)
        attempt.advance(self.terminal_state)
        return attempt


class EventDrivenPipeline(_DetailOnlyPipeline):
    """Detail writes only; the change-feed listener maintains aggregates."""

    strategy: Strategy = "event"
    terminal_state = MutationState.AGGREGATE_DEFERRED


class OnDemandPipeline(_DetailOnlyPipeline):
    """Detail writes only; nothing is materialized."""

    strategy: Strategy = "on_demand"
    terminal_state = MutationState.NOT_MATERIALIZED


_PIPELINES: dict[str, type[MutationPipeline]] = {
    "unprotected": UnprotectedPipeline,
    "transactional": TransactionalPipeline,
    "event": EventDrivenPipeline,
    "on_demand": OnDemandPipeline,
}


def build_pipeline(
    strategy: str,
    records: RecordStore,
    aggregates: AggregateStore | None = None,
    *,
    faults: FaultInjector | None = None,
) -> MutationPipeline:
    """Return the pipeline implementing ``strategy``."""
    try:
        pipeline_cls = _PIPELINES[strategy]
    except KeyError:
        raise ValueError(f"Unknown counter strategy '{strategy}'") from None
    return pipeline_cls(records, aggregates, faults=faults)
