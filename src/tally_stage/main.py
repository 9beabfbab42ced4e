# src/tally_stage/main.py
"""Main entry point for the Tally Stage harness."""

from __future__ import annotations

import logging

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from tally_stage.api.v1 import (
    comments_router,
    counts_router,
    likes_router,
    posts_router,
    reconcile_router,
    system_router,
    users_router,
)
from tally_stage.api.v1.dependencies import SessionFactoryDep
from tally_stage.core.settings import settings
from tally_stage.db.session import SessionLocal
from tally_stage.services.change_listener import ChangeFeedListener, ChangeFeedWorker
from tally_stage.services.faults import FaultInjector
from tally_stage.services.reconciler import ReconcileWorker, Reconciler

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Tally API",
    description="Harness for comparing denormalized counter maintenance strategies",
    version=settings.app_version,
)
app.state.faults = FaultInjector()

# Include API routers
app.include_router(users_router, prefix="/api/v1")
app.include_router(posts_router, prefix="/api/v1")
app.include_router(likes_router, prefix="/api/v1")
app.include_router(comments_router, prefix="/api/v1")
app.include_router(counts_router, prefix="/api/v1")
app.include_router(reconcile_router, prefix="/api/v1")
app.include_router(system_router, prefix="/api/v1")


@app.on_event("startup")
async def on_startup() -> None:
    logger.info(
        "Starting %s with counter strategy '%s'", settings.app_name, settings.counter_strategy
    )
    if settings.counter_strategy == "event":
        feed_worker = ChangeFeedWorker(ChangeFeedListener(SessionLocal))
        await feed_worker.start()
        app.state.feed_worker = feed_worker
    else:
        app.state.feed_worker = None

    reconcile_worker = ReconcileWorker(Reconciler(SessionLocal))
    await reconcile_worker.start()
    app.state.reconcile_worker = reconcile_worker


@app.on_event("shutdown")
async def on_shutdown() -> None:
    feed_worker: ChangeFeedWorker | None = getattr(app.state, "feed_worker", None)
    if feed_worker:
        await feed_worker.stop()
    reconcile_worker: ReconcileWorker | None = getattr(app.state, "reconcile_worker", None)
    if reconcile_worker:
        await reconcile_worker.stop()


@app.get("/health")
def health_check(factory: SessionFactoryDep) -> dict[str, str]:
    """Health check endpoint to verify the service and database are reachable."""
    try:
        with factory() as db:
            db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Health check failed: %s", exc)
        return {"status": "degraded", "database": "unreachable"}
    return {"status": "ok", "database": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": "Tally API",
        "version": settings.app_version,
        "strategy": settings.counter_strategy,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("tally_stage.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
