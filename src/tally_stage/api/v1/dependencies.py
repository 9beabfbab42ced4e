"""Shared API dependencies for the counter harness."""

from collections.abc import Generator
from typing import Annotated, NoReturn

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session, sessionmaker

from tally_stage.core.errors import (
    CommitAcknowledgementLost,
    DetailNotFound,
    DetailWriteFailure,
    TallyError,
    TransactionAbort,
    UnknownCounterError,
    UnknownDetailKind,
)
from tally_stage.core.settings import settings
from tally_stage.db.session import SessionLocal
from tally_stage.repositories.record_store import RecordStore
from tally_stage.services.counting import OnDemandCounter
from tally_stage.services.faults import FaultInjector
from tally_stage.services.pipelines import MutationPipeline, build_pipeline
from tally_stage.services.reconciler import Reconciler


def get_session_factory() -> sessionmaker[Session]:
    """Return the session factory for the record store."""
    return SessionLocal


SessionFactoryDep = Annotated[sessionmaker[Session], Depends(get_session_factory)]


def get_session(factory: SessionFactoryDep) -> Generator[Session, None, None]:
    """Yield a database session for dependency injection."""
    db = factory()
    try:
        yield db
    finally:
        db.close()


SessionDep = Annotated[Session, Depends(get_session)]


def get_fault_injector(request: Request) -> FaultInjector:
    """Return the app-wide fault injector, creating it on first use."""
    faults = getattr(request.app.state, "faults", None)
    if faults is None:
        faults = FaultInjector()
        request.app.state.faults = faults
    return faults


FaultsDep = Annotated[FaultInjector, Depends(get_fault_injector)]


def get_pipeline(factory: SessionFactoryDep, faults: FaultsDep) -> MutationPipeline:
    """Return the pipeline for the configured counter strategy."""
    return build_pipeline(settings.counter_strategy, RecordStore(factory), faults=faults)


def get_on_demand_counter(factory: SessionFactoryDep) -> OnDemandCounter:
    return OnDemandCounter(factory)


def get_reconciler(factory: SessionFactoryDep) -> Reconciler:
    return Reconciler(factory)


PipelineDep = Annotated[MutationPipeline, Depends(get_pipeline)]
CounterDep = Annotated[OnDemandCounter, Depends(get_on_demand_counter)]
ReconcilerDep = Annotated[Reconciler, Depends(get_reconciler)]


def raise_http_error(exc: TallyError) -> NoReturn:
    """Translate a counter maintenance error into an HTTPException.

    Raises:
        HTTPException: 404 for unknown records or kinds, 409 for rejected
            detail writes, 503 for aborted or unacknowledged transactions, 500 otherwise.
    """
    if isinstance(exc, (DetailNotFound, UnknownCounterError, UnknownDetailKind)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, DetailWriteFailure):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, (TransactionAbort, CommitAcknowledgementLost)):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
        ) from exc
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
    ) from exc


def require_entity(db: Session, model: type, entity_id: int, label: str) -> None:
    """Raise 404 unless ``model`` has a row with ``entity_id``."""
    if db.get(model, entity_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{label} {entity_id} not found",
        )
