"""Exception hierarchy for counter maintenance.

Raw SQLAlchemy errors are wrapped at the repository boundary so that callers
only ever handle the kinds below.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tally_stage.services.reconciler import DriftMismatch


class TallyError(RuntimeError):
    """Base exception for all counter maintenance failures."""


class UnknownCounterError(TallyError):
    """Raised when a counter name is not registered."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown counter: '{name}'")


class UnknownDetailKind(TallyError):
    """Raised when a detail kind has no registered model."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        super().__init__(f"Unknown detail kind: '{kind}'")


class DetailWriteFailure(TallyError):
    """The record store rejected or could not persist a detail record."""

    def __init__(self, kind: str, detail: str) -> None:
        self.kind = kind
        super().__init__(f"Detail write for '{kind}' failed: {detail}")


class DetailNotFound(DetailWriteFailure):
    """The detail record to delete does not exist."""

    def __init__(self, kind: str, record_id: int) -> None:
        self.record_id = record_id
        super().__init__(kind, f"record {record_id} not found")


class AggregateWriteFailure(TallyError):
    """An aggregate increment or decrement failed or timed out."""

    def __init__(self, counter: str, owner_id: int, detail: str) -> None:
        self.counter = counter
        self.owner_id = owner_id
        super().__init__(f"Aggregate write for {counter}[{owner_id}] failed: {detail}")


class AggregateOwnerMissing(AggregateWriteFailure):
    """The entity carrying the aggregate no longer exists."""

    def __init__(self, counter: str, owner_id: int) -> None:
        super().__init__(counter, owner_id, "owning entity not found")


class TransactionAbort(TallyError):
    """An atomic unit failed and both sides were rolled back.

    Leaves no partial state, so the caller may retry the whole action.
    """


class CommitAcknowledgementLost(TallyError):
    """The commit may have succeeded but the caller never saw the outcome."""


class DuplicateEvent(TallyError):
    """A change event was already applied.

    Raised and absorbed inside the listener; never surfaced to callers.
    """

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"Change event {event_id} already processed")


class ChangeFeedGap(TallyError):
    """The change feed no longer holds events a consumer has not applied."""

    def __init__(self, collection: str, after_seq: int, oldest_seq: int) -> None:
        self.collection = collection
        self.after_seq = after_seq
        self.oldest_seq = oldest_seq
        super().__init__(
            f"Change feed '{collection}' resumed after seq {after_seq} "
            f"but oldest retained event is {oldest_seq}"
        )


class DriftDetected(TallyError):
    """Stored aggregates disagree with the true count."""

    def __init__(self, mismatches: Sequence[DriftMismatch]) -> None:
        self.mismatches = list(mismatches)
        preview = ", ".join(
            f"{m.counter}[{m.owner_id}] stored={m.stored} actual={m.actual}"
            for m in self.mismatches[:5]
        )
        super().__init__(f"{len(self.mismatches)} drifted aggregate(s): {preview}")


class InjectedFault(TallyError):
    """Failure raised by an armed fault point."""

    def __init__(self, point: str) -> None:
        self.point = point
        super().__init__(f"Injected fault at '{point}'")
