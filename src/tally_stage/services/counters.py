"""Registry of denormalized counters and the detail records they mirror."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import InstrumentedAttribute

from tally_stage.core.errors import UnknownCounterError, UnknownDetailKind
from tally_stage.db.session import Base
from tally_stage.models import Comment, Post, PostLike, User


@dataclass(frozen=True)
class CounterSpec:
    """Describe one aggregate field and the detail set it should equal.

    Attributes:
        name: Registry key, e.g. ``"post.likes"``.
        entity: ORM model that carries the aggregate column.
        field: Name of the aggregate column on ``entity``.
        detail: ORM model whose rows are being counted.
        owner_column: Column on ``detail`` referencing ``entity.id``.
    """

    name: str
    entity: type[Base]
    field: str
    detail: type[Base]
    owner_column: str

    @property
    def aggregate_attr(self) -> InstrumentedAttribute[int]:
        return getattr(self.entity, self.field)

    @property
    def owner_attr(self) -> InstrumentedAttribute[int]:
        return getattr(self.detail, self.owner_column)


COUNTERS: dict[str, CounterSpec] = {
    spec.name: spec
    for spec in (
        CounterSpec("user.posts", User, "number_of_posts", Post, "author_id"),
        CounterSpec("user.posts_liked", User, "number_of_posts_liked", PostLike, "user_id"),
        CounterSpec("user.comments", User, "number_of_comments", Comment, "author_id"),
        CounterSpec("post.likes", Post, "like_count", PostLike, "post_id"),
        CounterSpec("post.comments", Post, "comment_count", Comment, "post_id"),
    )
}

# Public detail kind name -> ORM model.
DETAIL_KINDS: dict[str, type[Base]] = {
    "post": Post,
    "like": PostLike,
    "comment": Comment,
}


def get_counter(name: str) -> CounterSpec:
    """Return the counter registered under ``name``."""
    try:
        return COUNTERS[name]
    except KeyError:
        raise UnknownCounterError(name) from None


def get_detail_model(kind: str) -> type[Base]:
    """Return the ORM model for a detail kind."""
    try:
        return DETAIL_KINDS[kind]
    except KeyError:
        raise UnknownDetailKind(kind) from None


def kind_for_collection(collection: str) -> str:
    """Map a table name from the change feed back to its detail kind."""
    for kind, model in DETAIL_KINDS.items():
        if model.__tablename__ == collection:
            return kind
    raise UnknownDetailKind(collection)


def counters_for_detail(detail: type[Base]) -> list[CounterSpec]:
    """Return every counter that must move when a ``detail`` row changes."""
    return [spec for spec in COUNTERS.values() if spec.detail is detail]


def counters_for_entity(entity: type[Base]) -> list[CounterSpec]:
    """Return every counter stored on ``entity``."""
    return [spec for spec in COUNTERS.values() if spec.entity is entity]


def owner_ids(detail: type[Base], values: Any) -> dict[str, int]:
    """Extract owner references for ``detail`` from a row or mapping."""
    owners: dict[str, int] = {}
    for spec in counters_for_detail(detail):
        if isinstance(values, dict):
            owner = values.get(spec.owner_column)
        else:
            owner = getattr(values, spec.owner_column, None)
        if owner is not None:
            owners[spec.owner_column] = int(owner)
    return owners
