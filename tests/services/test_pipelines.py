"""Tests for the mutation pipelines and their drift behaviour."""

import sqlite3
import threading
import time

import pytest

from tally_stage.core.errors import (
    AggregateWriteFailure,
    CommitAcknowledgementLost,
    DetailWriteFailure,
    InjectedFault,
    TransactionAbort,
)
from tally_stage.repositories.aggregate_store import AggregateStore
from tally_stage.services.faults import (
    AFTER_AGGREGATE_WRITE,
    AFTER_COMMIT,
    AFTER_DETAIL_WRITE,
    BEFORE_AGGREGATE_WRITE,
    RACE_WINDOW,
    FaultInjector,
)
from tally_stage.services.pipelines import (
    EventDrivenPipeline,
    MutationAttempt,
    MutationState,
    OnDemandPipeline,
    TransactionalPipeline,
    UnprotectedPipeline,
    build_pipeline,
)


def _like(seed, user_index: int = 1) -> dict[str, int]:
    return {"user_id": seed.user_ids[user_index], "post_id": seed.post_ids[0]}


# --- state machine ---------------------------------------------------------------


def test_attempt_state_machine() -> None:
    attempt = MutationAttempt(kind="like", action="create", strategy="unprotected")

    attempt.advance(MutationState.DETAIL_COMMITTED)
    attempt.advance(MutationState.AGGREGATE_APPLIED)

    assert attempt.history == [
        MutationState.PENDING,
        MutationState.DETAIL_COMMITTED,
        MutationState.AGGREGATE_APPLIED,
    ]
    assert attempt.consistent and not attempt.drifted


def test_illegal_transition() -> None:
    attempt = MutationAttempt(kind="like", action="create", strategy="unprotected")

    with pytest.raises(ValueError):
        attempt.advance(MutationState.AGGREGATE_APPLIED)


def test_detail_failure_is_terminal() -> None:
    attempt = MutationAttempt(kind="like", action="create", strategy="unprotected")
    attempt.advance(MutationState.DETAIL_FAILED)

    with pytest.raises(ValueError):
        attempt.advance(MutationState.DETAIL_COMMITTED)
    assert not attempt.succeeded
    assert not attempt.drifted


def test_build_pipeline(records) -> None:
    assert isinstance(build_pipeline("transactional", records), TransactionalPipeline)
    with pytest.raises(ValueError):
        build_pipeline("eventual", records)


# --- unprotected -----------------------------------------------------------------


def test_unprotected_success(records, seed, measure) -> None:
    attempt = UnprotectedPipeline(records).create("like", _like(seed))

    assert attempt.state is MutationState.AGGREGATE_APPLIED
    assert attempt.applied == ["user.posts_liked", "post.likes"]
    assert measure("post.likes", seed.post_ids[0]) == (1, 1)
    assert measure("user.posts_liked", seed.user_ids[1]) == (1, 1)


def test_three_likes_with_one_lost_increment(records, seed, faults, measure, caplog) -> None:
    faults.arm(BEFORE_AGGREGATE_WRITE, skip=2, when=lambda ctx: ctx["counter"] == "post.likes")
    pipeline = UnprotectedPipeline(records, faults=faults)

    attempts = [pipeline.create("like", _like(seed, i)) for i in range(3)]

    assert all(a.succeeded for a in attempts)
    assert [a.drifted for a in attempts] == [False, False, True]
    assert attempts[2].failed == ["post.likes"]
    assert measure("post.likes", seed.post_ids[0]) == (2, 3)
    assert "Aggregate drift" in caplog.text


def test_fault_after_detail_write_skips_every_counter(records, seed, faults, measure) -> None:
    faults.arm(AFTER_DETAIL_WRITE)

    attempt = UnprotectedPipeline(records, faults=faults).create("like", _like(seed))

    assert attempt.state is MutationState.AGGREGATE_FAILED
    assert isinstance(attempt.error, InjectedFault)
    assert attempt.failed == ["user.posts_liked", "post.likes"]
    assert measure("post.likes", seed.post_ids[0]) == (0, 1)
    assert measure("user.posts_liked", seed.user_ids[1]) == (0, 1)


def test_aggregate_write_failure_leaves_drift(records, seed, faults, mocker) -> None:
    pipeline = UnprotectedPipeline(records, faults=faults)
    mocker.patch.object(
        pipeline.aggregates,
        "apply",
        side_effect=AggregateWriteFailure("post.likes", seed.post_ids[0], "lock timeout"),
    )

    attempt = pipeline.create("like", _like(seed))

    assert attempt.drifted
    assert isinstance(attempt.error, AggregateWriteFailure)


def test_unprotected_detail_failure_raises(records, seed) -> None:
    with pytest.raises(DetailWriteFailure):
        UnprotectedPipeline(records).create("like", {"user_id": seed.user_ids[0], "post_id": 777})


def test_operator_retry_repairs_clean_failure(records, seed, faults, measure) -> None:
    faults.arm(AFTER_DETAIL_WRITE)
    pipeline = UnprotectedPipeline(records, faults=faults)
    attempt = pipeline.create("like", _like(seed))

    pipeline.retry_aggregate(attempt)

    assert attempt.state is MutationState.AGGREGATE_APPLIED
    assert attempt.attempts == 2
    assert measure("post.likes", seed.post_ids[0]) == (1, 1)


def test_operator_retry_double_counts_partial_failure(records, seed, faults, measure) -> None:
    # user.posts_liked commits, then post.likes fails: the retry re-applies both.
    faults.arm(AFTER_AGGREGATE_WRITE, when=lambda ctx: ctx["counter"] == "user.posts_liked")
    pipeline = UnprotectedPipeline(records, faults=faults)
    attempt = pipeline.create("like", _like(seed))
    assert attempt.drifted

    pipeline.retry_aggregate(attempt)

    assert measure("post.likes", seed.post_ids[0]) == (1, 1)
    assert measure("user.posts_liked", seed.user_ids[1]) == (2, 1)


def test_retry_requires_failed_attempt(records, seed) -> None:
    pipeline = UnprotectedPipeline(records)
    attempt = pipeline.create("like", _like(seed))

    with pytest.raises(ValueError):
        pipeline.retry_aggregate(attempt)


def test_unprotected_delete(records, seed, measure) -> None:
    pipeline = UnprotectedPipeline(records)
    created = pipeline.create("like", _like(seed))

    deleted = pipeline.delete("like", created.record.id)

    assert deleted.state is MutationState.AGGREGATE_APPLIED
    assert measure("post.likes", seed.post_ids[0]) == (0, 0)


# --- transactional ---------------------------------------------------------------


def test_transactional_success(records, seed, measure) -> None:
    attempt = TransactionalPipeline(records).create("like", _like(seed))

    assert attempt.history == [
        MutationState.PENDING,
        MutationState.DETAIL_COMMITTED,
        MutationState.AGGREGATE_APPLIED,
    ]
    assert measure("post.likes", seed.post_ids[0]) == (1, 1)


def test_transactional_abort_rolls_back_both_sides(records, seed, faults, measure) -> None:
    faults.arm(BEFORE_AGGREGATE_WRITE, times=None, when=lambda ctx: ctx["counter"] == "post.likes")
    pipeline = TransactionalPipeline(records, faults=faults, max_retries=2, backoff=0)

    with pytest.raises(TransactionAbort):
        pipeline.create("like", _like(seed))

    assert measure("post.likes", seed.post_ids[0]) == (0, 0)
    assert measure("user.posts_liked", seed.user_ids[1]) == (0, 0)
    assert faults.hits[BEFORE_AGGREGATE_WRITE] == 6


def test_transactional_retries_transient_abort(records, seed, faults, measure) -> None:
    faults.arm(AFTER_DETAIL_WRITE, times=1)
    pipeline = TransactionalPipeline(records, faults=faults, max_retries=3, backoff=0)

    attempt = pipeline.create("like", _like(seed))

    assert attempt.attempts == 2
    assert attempt.consistent
    assert measure("post.likes", seed.post_ids[0]) == (1, 1)


def test_transactional_timeout_rolls_back(records, seed, faults, measure) -> None:
    faults.arm(
        AFTER_DETAIL_WRITE,
        times=None,
        exc_factory=lambda point: TimeoutError(f"{point} took too long"),
    )
    pipeline = TransactionalPipeline(records, faults=faults, timeout=0.5, max_retries=0)

    with pytest.raises(TransactionAbort):
        pipeline.create("like", _like(seed))

    assert measure("post.likes", seed.post_ids[0]) == (0, 0)


def test_transactional_deadline_exceeded(records, seed, faults, measure) -> None:
    faults.hook(AFTER_DETAIL_WRITE, lambda ctx: time.sleep(0.05))
    pipeline = TransactionalPipeline(records, faults=faults, timeout=0.01, max_retries=0)

    with pytest.raises(TransactionAbort):
        pipeline.create("like", _like(seed))

    assert measure("post.likes", seed.post_ids[0]) == (0, 0)
    assert measure("user.posts_liked", seed.user_ids[1]) == (0, 0)


def test_transactional_stops_aggregate_writes_at_the_deadline(records, seed, faults) -> None:
    faults.hook(AFTER_AGGREGATE_WRITE, lambda ctx: time.sleep(0.6))
    pipeline = TransactionalPipeline(records, faults=faults, timeout=0.5, max_retries=0)

    with pytest.raises(TransactionAbort):
        pipeline.create("like", _like(seed))

    assert faults.hits[BEFORE_AGGREGATE_WRITE] == 1


def test_transactional_lock_wait_is_bounded_by_the_deadline(engine, records, seed, measure) -> None:
    blocker = sqlite3.connect(engine.url.database, isolation_level=None)
    blocker.execute("BEGIN IMMEDIATE")
    pipeline = TransactionalPipeline(records, timeout=0.3, max_retries=0)
    try:
        started = time.monotonic()
        with pytest.raises(TransactionAbort):
            pipeline.create("like", _like(seed))
        elapsed = time.monotonic() - started
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()

    assert elapsed < 5
    assert measure("post.likes", seed.post_ids[0]) == (0, 0)


def test_transactional_detail_failure_is_not_retried(records, seed, faults) -> None:
    pipeline = TransactionalPipeline(records, faults=faults, max_retries=3)

    with pytest.raises(DetailWriteFailure):
        pipeline.create("like", {"user_id": seed.user_ids[0], "post_id": 555})
    assert faults.hits[RACE_WINDOW] == 1


def test_retry_after_lost_acknowledgement_double_counts(records, seed, faults, measure) -> None:
    faults.arm(AFTER_COMMIT)
    pipeline = TransactionalPipeline(records, faults=faults)

    with pytest.raises(CommitAcknowledgementLost):
        pipeline.create("like", _like(seed))
    retry = pipeline.create("like", _like(seed))

    assert retry.record.created is False
    assert retry.double_counted
    assert retry.drifted and not retry.consistent
    assert measure("post.likes", seed.post_ids[0]) == (2, 1)
    assert measure("user.posts_liked", seed.user_ids[1]) == (2, 1)


def test_repeated_unprotected_like_is_reported_as_drift(records, seed, measure, caplog) -> None:
    pipeline = UnprotectedPipeline(records, AggregateStore(records.session_factory))
    first = pipeline.create("like", _like(seed))

    with caplog.at_level("ERROR"):
        second = pipeline.create("like", _like(seed))

    assert not first.double_counted and first.consistent
    assert second.state is MutationState.AGGREGATE_APPLIED
    assert second.double_counted and second.drifted
    assert not second.consistent
    assert "row already existed, counted again" in caplog.text
    assert measure("post.likes", seed.post_ids[0]) == (2, 1)


def test_repeated_on_demand_like_is_not_double_counted(records, seed) -> None:
    pipeline = OnDemandPipeline(records)
    pipeline.create("like", _like(seed))

    again = pipeline.create("like", _like(seed))

    assert again.record.created is False
    assert not again.double_counted
    assert again.consistent


def test_bulk_delete_bypasses_transactional_pipeline(records, seed, measure) -> None:
    pipeline = TransactionalPipeline(records)
    for i in range(3):
        pipeline.create("like", _like(seed, i))

    records.bulk_delete_where("like", "post_id", seed.post_ids[0])

    assert measure("post.likes", seed.post_ids[0]) == (3, 0)


def test_cascade_delete_bypasses_transactional_pipeline(records, seed, measure) -> None:
    pipeline = TransactionalPipeline(records)
    pipeline.create("like", _like(seed, 2))
    pipeline.create(
        "comment", {"author_id": seed.user_ids[1], "post_id": seed.post_ids[0], "body_md": "hey"}
    )

    attempt = pipeline.delete("post", seed.post_ids[0])

    assert attempt.consistent
    assert measure("user.posts", seed.user_ids[0]) == (0, 0)
    assert measure("user.posts_liked", seed.user_ids[2]) == (1, 0)
    assert measure("user.comments", seed.user_ids[1]) == (1, 0)


def _race(session_factory, records, seed, *, atomic: bool) -> list[MutationAttempt]:
    barrier = threading.Barrier(3, timeout=10)
    faults = FaultInjector().hook(RACE_WINDOW, lambda ctx: barrier.wait())
    pipeline = TransactionalPipeline(
        records,
        AggregateStore(session_factory, atomic=atomic),
        faults=faults,
        max_retries=0,
    )
    results: list[MutationAttempt] = []
    lock = threading.Lock()

    def like(index: int) -> None:
        attempt = pipeline.create("like", _like(seed, index))
        with lock:
            results.append(attempt)

    threads = [threading.Thread(target=like, args=(i,)) for i in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return results


def test_racing_read_modify_write_loses_updates(session_factory, records, seed, measure) -> None:
    results = _race(session_factory, records, seed, atomic=False)

    assert len(results) == 3
    assert all(a.consistent for a in results)
    stored, actual = measure("post.likes", seed.post_ids[0])
    assert actual == 3
    assert stored == 1


def test_racing_atomic_increments_stay_correct(session_factory, records, seed, measure) -> None:
    results = _race(session_factory, records, seed, atomic=True)

    assert len(results) == 3
    assert measure("post.likes", seed.post_ids[0]) == (3, 3)


# --- detail-only strategies ------------------------------------------------------


def test_event_driven_defers_aggregates(records, seed, measure) -> None:
    attempt = EventDrivenPipeline(records).create("like", _like(seed))

    assert attempt.state is MutationState.AGGREGATE_DEFERRED
    assert not attempt.drifted
    assert not attempt.consistent
    assert measure("post.likes", seed.post_ids[0]) == (0, 1)


def test_on_demand_writes_detail_only(records, seed, measure) -> None:
    pipeline = OnDemandPipeline(records)
    attempt = pipeline.create("like", _like(seed))

    assert attempt.state is MutationState.NOT_MATERIALIZED
    assert attempt.consistent
    assert measure("post.likes", seed.post_ids[0]) == (0, 1)

    pipeline.delete("like", attempt.record.id)
    assert measure("post.likes", seed.post_ids[0]) == (0, 0)


def test_detail_only_failure(records) -> None:
    with pytest.raises(DetailWriteFailure):
        OnDemandPipeline(records).delete("like", 31337)
