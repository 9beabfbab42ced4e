"""Tests for the counter registry."""

import pytest

from tally_stage.core.errors import UnknownCounterError, UnknownDetailKind
from tally_stage.models import Comment, Post, PostLike, User
from tally_stage.services.counters import (
    COUNTERS,
    counters_for_detail,
    counters_for_entity,
    get_counter,
    get_detail_model,
    kind_for_collection,
    owner_ids,
)


def test_registry_names() -> None:
    assert set(COUNTERS) == {
        "user.posts",
        "user.posts_liked",
        "user.comments",
        "post.likes",
        "post.comments",
    }


def test_get_counter_describes_aggregate() -> None:
    spec = get_counter("post.likes")

    assert spec.entity is Post
    assert spec.field == "like_count"
    assert spec.detail is PostLike
    assert spec.owner_column == "post_id"


def test_unknown_names_raise() -> None:
    with pytest.raises(UnknownCounterError):
        get_counter("post.shares")
    with pytest.raises(UnknownDetailKind):
        get_detail_model("share")
    with pytest.raises(UnknownDetailKind):
        kind_for_collection("share")


def test_like_moves_two_counters() -> None:
    names = [spec.name for spec in counters_for_detail(PostLike)]

    assert names == ["user.posts_liked", "post.likes"]


def test_counters_for_entity() -> None:
    assert {spec.name for spec in counters_for_entity(User)} == {
        "user.posts",
        "user.posts_liked",
        "user.comments",
    }
    assert {spec.name for spec in counters_for_entity(Post)} == {"post.likes", "post.comments"}


def test_owner_ids_from_mapping_and_row() -> None:
    assert owner_ids(Comment, {"author_id": 4, "post_id": 9, "body_md": "x"}) == {
        "author_id": 4,
        "post_id": 9,
    }
    assert owner_ids(PostLike, PostLike(user_id=1, post_id=2)) == {"user_id": 1, "post_id": 2}


def test_kind_for_collection_round_trips_table_names() -> None:
    assert kind_for_collection("post_like") == "like"
    assert kind_for_collection("comment") == "comment"
    assert kind_for_collection("post") == "post"
