# src/tally_stage/models/reconciliation.py
"""Audit trail of drift-detector runs."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Integer
from sqlalchemy.orm import Mapped, mapped_column

from tally_stage.db.session import Base
from tally_stage.db.time import utcnow


class ReconciliationRun(Base):
    """Summary of one reconciliation pass over the registered counters."""

    __tablename__ = "reconciliation_run"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    repair: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    entities_checked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    mismatch_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # List of {"counter", "owner_id", "stored", "actual"} entries.
    mismatches: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    corrected: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
