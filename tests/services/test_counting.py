"""Tests for on-demand counting."""

import pytest

from tally_stage.core.errors import UnknownCounterError
from tally_stage.services.counting import OnDemandCounter
from tally_stage.services.pipelines import OnDemandPipeline


def test_count_matches_detail_rows(records, counter, seed) -> None:
    pipeline = OnDemandPipeline(records)
    post_id = seed.post_ids[0]
    like_ids = [
        pipeline.create("like", {"user_id": uid, "post_id": post_id}).record.id
        for uid in seed.user_ids
    ]
    pipeline.create("comment", {"author_id": seed.user_ids[1], "post_id": post_id, "body_md": "hi"})
    pipeline.delete("like", like_ids[0])

    assert counter.count("post.likes", post_id) == 2
    assert counter.count("post.likes", post_id) == records.count_where("like", "post_id", post_id)
    assert counter.count("post.comments", post_id) == 1
    assert counter.count("user.comments", seed.user_ids[1]) == 1
    assert counter.count("user.posts_liked", seed.user_ids[0]) == 0
    assert counter.count("user.posts", seed.user_ids[0]) == 1


def test_count_many_includes_zero_owners(records, counter, seed) -> None:
    OnDemandPipeline(records).create(
        "like", {"user_id": seed.user_ids[0], "post_id": seed.post_ids[0]}
    )

    counts = counter.count_many("user.posts_liked", seed.user_ids)

    assert counts == {seed.user_ids[0]: 1, seed.user_ids[1]: 0, seed.user_ids[2]: 0}


def test_count_many_without_owner_filter(counter, seed) -> None:
    counts = counter.count_many("user.posts")

    assert counts[seed.user_ids[0]] == 1
    assert all(counts[uid] == 0 for uid in seed.user_ids[1:])


def test_count_many_skips_unknown_owners(counter, seed) -> None:
    assert counter.count_many("post.likes", []) == {}
    assert counter.count_many("post.likes", [seed.post_ids[0], 9999]) == {seed.post_ids[0]: 0}


def test_count_reuses_session(counter, db_session, seed) -> None:
    assert counter.count("post.likes", seed.post_ids[0], session=db_session) == 0
    assert counter.count_many("post.likes", session=db_session) == {seed.post_ids[0]: 0}


@pytest.mark.parametrize(
    ("name", "indexed"),
    [
        ("post.likes", True),
        ("user.posts_liked", True),
        ("user.posts", True),
        ("user.comments", True),
        ("post.comments", False),
    ],
)
def test_has_owner_index(name: str, indexed: bool) -> None:
    assert OnDemandCounter.has_owner_index(name) is indexed


def test_cost_hint() -> None:
    assert OnDemandCounter.cost_hint("post.likes").startswith("index range scan on post_like")
    assert OnDemandCounter.cost_hint("post.comments") == (
        "full scan of comment: O(table rows)"
    )


def test_unknown_counter(counter) -> None:
    with pytest.raises(UnknownCounterError):
        counter.count("post.shares", 1)
