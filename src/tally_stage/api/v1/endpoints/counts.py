# src/tally_stage/api/v1/endpoints/counts.py
"""Stored versus true counts for one entity."""

from typing import Literal

from fastapi import APIRouter

from tally_stage.api.v1.dependencies import (
    CounterDep,
    SessionDep,
    SessionFactoryDep,
    require_entity,
)
from tally_stage.models import Post, User
from tally_stage.repositories.aggregate_store import AggregateStore
from tally_stage.schemas.counts import CounterValue, CountsResponse
from tally_stage.services.counters import counters_for_entity

router = APIRouter(prefix="/counts", tags=["counts"])

_ENTITIES = {"user": User, "post": Post}


@router.get("/{entity}/{entity_id}", response_model=CountsResponse)
def get_counts(
    entity: Literal["user", "post"],
    entity_id: int,
    db: SessionDep,
    factory: SessionFactoryDep,
    counter: CounterDep,
) -> CountsResponse:
    """Compare every stored aggregate of an entity with its on-demand count.

    Args:
        entity: ``user`` or ``post``
        entity_id: Identifier of the entity
        db: Database session
        factory: Session factory for the aggregate store
        counter: On-demand counter

    Returns:
        Stored value, true value and drift per counter
    """
    model = _ENTITIES[entity]
    require_entity(db, model, entity_id, entity.capitalize())

    aggregates = AggregateStore(factory)
    values: dict[str, CounterValue] = {}
    for spec in counters_for_entity(model):
        stored = aggregates.read(spec.name, entity_id, session=db) or 0
        actual = counter.count(spec.name, entity_id, session=db)
        values[spec.name] = CounterValue(
            stored=stored,
            actual=actual,
            drift=actual - stored,
            cost_hint=counter.cost_hint(spec.name),
        )
    return CountsResponse(entity=entity, id=entity_id, counters=values)
