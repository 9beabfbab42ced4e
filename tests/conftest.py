# tests/conftest.py
from __future__ import annotations

import os
from collections.abc import Callable, Generator, Iterator
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RECONCILE_INTERVAL_SECONDS", "0")

from tally_stage.api.v1.dependencies import get_session_factory
from tally_stage.core.settings import Settings, settings
from tally_stage.db.session import build_engine, build_session_factory, create_tables
from tally_stage.main import app as fastapi_app
from tally_stage.repositories.aggregate_store import AggregateStore
from tally_stage.repositories.record_store import RecordStore
from tally_stage.services.counting import OnDemandCounter
from tally_stage.services.faults import FaultInjector
from tally_stage.services.scenarios import Seed, seed_entities


@pytest.fixture()
def engine(tmp_path: Path) -> Generator[Engine, None, None]:
    # File-backed so that concurrent writers get separate connections.
    engine = build_engine(f"sqlite:///{tmp_path / 'tally.db'}")
    create_tables(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return build_session_factory(engine)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def records(session_factory: sessionmaker[Session]) -> RecordStore:
    return RecordStore(session_factory)


@pytest.fixture()
def aggregates(session_factory: sessionmaker[Session]) -> AggregateStore:
    return AggregateStore(session_factory)


@pytest.fixture()
def counter(session_factory: sessionmaker[Session]) -> OnDemandCounter:
    return OnDemandCounter(session_factory)


@pytest.fixture()
def faults() -> FaultInjector:
    return FaultInjector()


@pytest.fixture()
def seed(session_factory: sessionmaker[Session]) -> Seed:
    """Three users and one post authored by the first user."""
    return seed_entities(session_factory, users=3, posts=1)


@pytest.fixture()
def measure(
    aggregates: AggregateStore, counter: OnDemandCounter
) -> Callable[[str, int], tuple[int, int]]:
    """Return ``(stored, actual)`` for a counter and owner."""

    def _measure(name: str, owner_id: int) -> tuple[int, int]:
        return aggregates.read(name, owner_id), counter.count(name, owner_id)

    return _measure


@pytest.fixture()
def use_strategy(monkeypatch: pytest.MonkeyPatch) -> Callable[[str], None]:
    """Switch the configured counter strategy for the duration of a test."""

    def _use(strategy: str) -> None:
        monkeypatch.setattr(settings, "counter_strategy", strategy)

    return _use


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture()
def client(app: FastAPI, session_factory: sessionmaker[Session]) -> Iterator[TestClient]:
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.state.faults = FaultInjector()
    try:
        with TestClient(app, base_url="http://test") as test_client:
            yield test_client
    finally:
        app.dependency_overrides.pop(get_session_factory, None)


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Provide a Settings instance aligned with runtime configuration."""
    return Settings()
