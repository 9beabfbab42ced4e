"""System endpoints for the counter harness."""

from __future__ import annotations

from fastapi import APIRouter

from tally_stage.core.settings import settings
from tally_stage.services.counters import COUNTERS
from tally_stage.services.counting import OnDemandCounter
from tally_stage.services.faults import FAULT_POINTS

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/config")
async def get_public_config() -> dict[str, object]:
    """Return a sanitized snapshot of runtime configuration.

    Excludes connection strings. Surfaces the isolation and retention
    assumptions the active strategy runs under.
    """
    return {
        "app": {
            "name": settings.app_name,
            "version": settings.app_version,
            "debug": settings.debug,
        },
        "counters": {
            "strategy": settings.counter_strategy,
            "atomic_increments": settings.atomic_increments,
            "registered": {
                name: {
                    "entity": spec.entity.__tablename__,
                    "field": spec.field,
                    "detail": spec.detail.__tablename__,
                    "owner_column": spec.owner_column,
                    "cost_hint": OnDemandCounter.cost_hint(name),
                }
                for name, spec in COUNTERS.items()
            },
        },
        "transactions": {
            "isolation_level": settings.record_store_isolation_level,
            "timeout_seconds": settings.transaction_timeout_seconds,
            "max_retries": settings.transaction_max_retries,
        },
        "change_feed": {
            "poll_interval_seconds": settings.change_feed_poll_interval_seconds,
            "batch_size": settings.change_feed_batch_size,
            "retention_events": settings.change_feed_retention_events,
            "may_drop_events": settings.change_feed_may_drop_events,
            "dedup_backend": settings.dedup_backend,
        },
        "reconcile": {
            "interval_seconds": settings.reconcile_interval_seconds,
            "repair": settings.reconcile_repair,
        },
        "fault_points": sorted(FAULT_POINTS),
    }
