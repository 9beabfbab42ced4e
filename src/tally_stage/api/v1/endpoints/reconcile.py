# src/tally_stage/api/v1/endpoints/reconcile.py
"""On-demand drift detection and repair."""

from fastapi import APIRouter

from tally_stage.api.v1.dependencies import ReconcilerDep, raise_http_error
from tally_stage.core.errors import TallyError
from tally_stage.schemas.reconcile import ReconcileRequest, ReconciliationResponse

router = APIRouter(prefix="/reconcile", tags=["reconcile"])


@router.post("", response_model=ReconciliationResponse)
def reconcile(
    reconciler: ReconcilerDep, reconcile_data: ReconcileRequest | None = None
) -> ReconciliationResponse:
    """Scan stored aggregates; drift is reported in the body, not as an error."""
    reconcile_data = reconcile_data or ReconcileRequest()
    try:
        report = reconciler.scan(reconcile_data.counters, repair=reconcile_data.repair)
    except TallyError as exc:
        raise_http_error(exc)
    return ReconciliationResponse.from_report(report)
