# src/tally_stage/schemas/reconcile.py
"""Schemas for the drift detector."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from tally_stage.services.reconciler import DriftMismatch, ReconciliationReport


class ReconcileRequest(BaseModel):
    """Which counters to scan and whether to repair them."""

    counters: list[str] | None = Field(None, description="Counter names; all when omitted")
    repair: bool = False


class DriftMismatchResponse(BaseModel):
    counter: str
    owner_id: int
    stored: int
    actual: int

    @classmethod
    def from_mismatch(cls, mismatch: DriftMismatch) -> DriftMismatchResponse:
        return cls(
            counter=mismatch.counter,
            owner_id=mismatch.owner_id,
            stored=mismatch.stored,
            actual=mismatch.actual,
        )


class ReconciliationResponse(BaseModel):
    """Report returned by ``POST /reconcile``."""

    run_id: int | None
    started_at: datetime
    finished_at: datetime | None
    repair: bool
    entities_checked: int
    mismatch_count: int
    mismatches: list[DriftMismatchResponse]
    corrected: list[DriftMismatchResponse]

    @classmethod
    def from_report(cls, report: ReconciliationReport) -> ReconciliationResponse:
        return cls(
            run_id=report.run_id,
            started_at=report.started_at,
            finished_at=report.finished_at,
            repair=report.repair,
            entities_checked=report.entities_checked,
            mismatch_count=report.mismatch_count,
            mismatches=[DriftMismatchResponse.from_mismatch(m) for m in report.mismatches],
            corrected=[DriftMismatchResponse.from_mismatch(m) for m in report.corrected],
        )
