"""Tests for aggregate storage."""

import pytest

from tally_stage.core.errors import AggregateOwnerMissing, AggregateWriteFailure
from tally_stage.repositories.aggregate_store import AggregateStore


def test_read_and_adjust(aggregates, seed) -> None:
    post_id = seed.post_ids[0]
    aggregates.adjust("post.likes", post_id, +1)
    aggregates.adjust("post.likes", post_id, +1)
    aggregates.adjust("post.likes", post_id, -1)

    assert aggregates.read("post.likes", post_id) == 1


def test_read_missing_entity(aggregates) -> None:
    assert aggregates.read("user.posts", 999) is None


def test_adjust_missing_entity(aggregates) -> None:
    with pytest.raises(AggregateOwnerMissing) as excinfo:
        aggregates.adjust("post.likes", 999, +1)
    assert isinstance(excinfo.value, AggregateWriteFailure)
    assert excinfo.value.owner_id == 999


def test_atomic_prepare_has_no_baseline(aggregates, seed) -> None:
    adjustment = aggregates.prepare("post.likes", seed.post_ids[0], +1)

    assert adjustment.baseline is None


def test_read_modify_write_uses_stale_baseline(session_factory, seed) -> None:
    store = AggregateStore(session_factory, atomic=False)
    post_id = seed.post_ids[0]

    first = store.prepare("post.likes", post_id, +1)
    second = store.prepare("post.likes", post_id, +1)
    store.apply(first)
    store.apply(second)

    # Both writers read 0, so the second write overwrites the first.
    assert store.read("post.likes", post_id) == 1


def test_atomic_increments_do_not_lose_updates(aggregates, seed) -> None:
    post_id = seed.post_ids[0]

    first = aggregates.prepare("post.likes", post_id, +1)
    second = aggregates.prepare("post.likes", post_id, +1)
    aggregates.apply(first)
    aggregates.apply(second)

    assert aggregates.read("post.likes", post_id) == 2


def test_write_overwrites(aggregates, seed) -> None:
    aggregates.write("user.comments", seed.user_ids[0], 7)

    assert aggregates.read("user.comments", seed.user_ids[0]) == 7


def test_recount_sets_live_detail_count(aggregates, records, seed) -> None:
    post_id = seed.post_ids[0]
    for user_id in seed.user_ids[:2]:
        records.create_detail("like", {"user_id": user_id, "post_id": post_id})
    aggregates.write("post.likes", post_id, 9)

    assert aggregates.recount("post.likes", post_id) == 2
    assert aggregates.read("post.likes", post_id) == 2
    assert aggregates.recount("post.likes", 9999) is None
