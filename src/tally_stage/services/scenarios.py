"""Reproducible drift scenarios shared by the CLI and the test-suite.

Each scenario seeds a fresh set of entities, drives one pipeline into a known
failure mode and reports the stored aggregate next to the true count.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from uuid import uuid4

from sqlalchemy.orm import Session, sessionmaker

from tally_stage.core.errors import CommitAcknowledgementLost
from tally_stage.models import Post, User
from tally_stage.repositories.aggregate_store import AggregateStore
from tally_stage.repositories.record_store import RecordStore
from tally_stage.services.change_feed import ChangeFeed
from tally_stage.services.change_listener import ChangeFeedListener
from tally_stage.services.counting import OnDemandCounter
from tally_stage.services.faults import (
    AFTER_COMMIT,
    BEFORE_AGGREGATE_WRITE,
    RACE_WINDOW,
    FaultInjector,
)
from tally_stage.services.pipelines import (
    EventDrivenPipeline,
    MutationAttempt,
    MutationPipeline,
    TransactionalPipeline,
    UnprotectedPipeline,
)

logger = logging.getLogger(__name__)


@dataclass
class Seed:
    """Identifiers created by :func:`seed_entities`."""

    user_ids: list[int]
    post_ids: list[int]


@dataclass
class ScenarioResult:
    """Stored versus true value of the counter a scenario targets."""

    name: str
    counter: str
    owner_id: int
    stored: int
    actual: int
    attempts: list[MutationAttempt] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    @property
    def drift(self) -> int:
        return self.actual - self.stored


def seed_entities(
    session_factory: sessionmaker[Session], *, users: int = 3, posts: int = 1
) -> Seed:
    """Create users and posts with consistent aggregates.

    Posts are authored by the first user. They are written directly, without a
    change event, so the listener never sees them.
    """
    prefix = uuid4().hex[:8]
    with session_factory() as db:
        created_users = [User(handle=f"{prefix}-user{i + 1}") for i in range(users)]
        db.add_all(created_users)
        db.flush()
        author = created_users[0]
        created_posts = [
            Post(author_id=author.id, body_md=f"post {i + 1}") for i in range(posts)
        ]
        db.add_all(created_posts)
        author.number_of_posts += len(created_posts)
        db.commit()
        return Seed(
            user_ids=[user.id for user in created_users],
            post_ids=[post.id for post in created_posts],
        )


def _result(
    session_factory: sessionmaker[Session], name: str, counter: str, owner_id: int
) -> ScenarioResult:
    stored = AggregateStore(session_factory).read(counter, owner_id) or 0
    actual = OnDemandCounter(session_factory).count(counter, owner_id)
    return ScenarioResult(
        name=name, counter=counter, owner_id=owner_id, stored=stored, actual=actual
    )


def _like_concurrently(
    pipeline: MutationPipeline, payloads: list[dict[str, int]]
) -> list[MutationAttempt]:
    """Create one like per payload, each on its own thread."""
    attempts: list[MutationAttempt] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def like(payload: dict[str, int]) -> None:
        try:
            attempt = pipeline.create("like", payload)
        except Exception as exc:  # collected and re-raised below
            with lock:
                errors.append(exc)
            return
        with lock:
            attempts.append(attempt)

    threads = [threading.Thread(target=like, args=(payload,)) for payload in payloads]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    if errors:
        raise errors[0]
    return attempts


def three_likes(session_factory: sessionmaker[Session]) -> ScenarioResult:
    """Three likes, the third one's post.likes increment fails.

    Ends with ``post.likes`` stored 2 and true 3.
    """
    seed = seed_entities(session_factory, users=3, posts=1)
    post_id = seed.post_ids[0]
    faults = FaultInjector().arm(
        BEFORE_AGGREGATE_WRITE, skip=2, when=lambda ctx: ctx["counter"] == "post.likes"
    )
    pipeline = UnprotectedPipeline(RecordStore(session_factory), faults=faults)
    attempts = [
        pipeline.create("like", {"user_id": uid, "post_id": post_id}) for uid in seed.user_ids
    ]

    result = _result(session_factory, "three-likes", "post.likes", post_id)
    result.attempts = attempts
    result.notes.append(
        f"caller saw {sum(a.succeeded for a in attempts)} successful likes; "
        f"{sum(a.drifted for a in attempts)} left drift behind"
    )
    return result


def lost_update(
    session_factory: sessionmaker[Session],
    *,
    writers: int = 2,
    atomic: bool = False,
) -> ScenarioResult:
    """Concurrent transactional likes with read-modify-write increments.

    Every writer reads the aggregate before any of them writes, so with
    ``atomic=False`` all but one increment is lost. Needs a file-backed or
    server database; an in-memory SQLite connection is shared by all threads.
    """
    seed = seed_entities(session_factory, users=writers, posts=1)
    post_id = seed.post_ids[0]
    barrier = threading.Barrier(writers, timeout=10)
    faults = FaultInjector().hook(RACE_WINDOW, lambda ctx: barrier.wait())
    pipeline = TransactionalPipeline(
        RecordStore(session_factory),
        AggregateStore(session_factory, atomic=atomic),
        faults=faults,
        max_retries=0,
    )

    attempts = _like_concurrently(
        pipeline, [{"user_id": uid, "post_id": post_id} for uid in seed.user_ids]
    )

    result = _result(session_factory, "lost-update", "post.likes", post_id)
    result.attempts = attempts
    result.notes.append(f"{writers} committed transactions, atomic_increments={atomic}")
    return result


def concurrent_likes(
    session_factory: sessionmaker[Session], *, posts: int = 3, faults: int = 1
) -> ScenarioResult:
    """One user likes ``posts`` posts at once; ``faults`` of the liker's increments fail.

    Every like is committed, so the caller sees ``posts`` successes while
    ``user.posts_liked`` ends ``faults`` short of the true count. Needs a
    file-backed or server database.
    """
    seed = seed_entities(session_factory, users=1, posts=posts)
    user_id = seed.user_ids[0]
    barrier = threading.Barrier(posts, timeout=10)
    injector = (
        FaultInjector()
        .hook(RACE_WINDOW, lambda ctx: barrier.wait())
        .arm(
            BEFORE_AGGREGATE_WRITE,
            times=faults,
            when=lambda ctx: ctx["counter"] == "user.posts_liked",
        )
    )
    pipeline = UnprotectedPipeline(
        RecordStore(session_factory),
        AggregateStore(session_factory, atomic=True),
        faults=injector,
    )
    attempts = _like_concurrently(
        pipeline, [{"user_id": user_id, "post_id": post_id} for post_id in seed.post_ids]
    )

    result = _result(session_factory, "concurrent-likes", "user.posts_liked", user_id)
    result.attempts = attempts
    result.notes.append(
        f"{sum(a.succeeded for a in attempts)} of {posts} concurrent likes reported success; "
        f"{sum(a.drifted for a in attempts)} left drift behind"
    )
    return result


def retry_after_lost_ack(session_factory: sessionmaker[Session]) -> ScenarioResult:
    """The commit succeeds, its acknowledgement is lost, the caller retries.

    The like is insert-if-absent, so the retry adds no row, but the increment
    runs again.
    """
    seed = seed_entities(session_factory, users=1, posts=1)
    post_id = seed.post_ids[0]
    faults = FaultInjector().arm(AFTER_COMMIT)
    pipeline = TransactionalPipeline(RecordStore(session_factory), faults=faults)
    payload = {"user_id": seed.user_ids[0], "post_id": post_id}

    result_notes = []
    try:
        pipeline.create("like", payload)
    except CommitAcknowledgementLost as exc:
        result_notes.append(f"first attempt: {exc}")
    retry = pipeline.create("like", payload)

    result = _result(session_factory, "retry", "post.likes", post_id)
    result.attempts = [retry]
    result.notes.extend(result_notes)
    result.notes.append(f"retry found existing like: {not retry.record.created}")
    return result


def cascade_delete(session_factory: sessionmaker[Session]) -> ScenarioResult:
    """Deleting a post cascades to its likes without touching likers' aggregates."""
    seed = seed_entities(session_factory, users=2, posts=1)
    post_id = seed.post_ids[0]
    liker = seed.user_ids[1]
    pipeline = TransactionalPipeline(RecordStore(session_factory))
    pipeline.create("like", {"user_id": liker, "post_id": post_id})
    deleted = pipeline.delete("post", post_id)

    result = _result(session_factory, "cascade", "user.posts_liked", liker)
    result.attempts = [deleted]
    result.notes.append("post delete cascaded to post_like at the database level")
    return result


def feed_gap(session_factory: sessionmaker[Session]) -> ScenarioResult:
    """The listener is down while the feed prunes events it never read."""
    seed = seed_entities(session_factory, users=3, posts=1)
    post_id = seed.post_ids[0]
    pipeline = EventDrivenPipeline(RecordStore(session_factory))
    feed = ChangeFeed(session_factory)
    listener = ChangeFeedListener(
        session_factory,
        feed,
        consumer=f"scenario-{uuid4().hex[:8]}",
        collections=["post_like"],
        dedup_backend="database",
    )

    pipeline.create("like", {"user_id": seed.user_ids[0], "post_id": post_id})
    listener.drain()
    # Listener offline from here on.
    for user_id in seed.user_ids[1:]:
        pipeline.create("like", {"user_id": user_id, "post_id": post_id})
    feed.prune("post_like", keep_last=1)
    listener.drain()

    result = _result(session_factory, "gap", "post.likes", post_id)
    result.notes.append(f"listener detected {listener.stats.gaps} gap(s)")
    return result


SCENARIOS: dict[str, Callable[[sessionmaker[Session]], ScenarioResult]] = {
    "three-likes": three_likes,
    "lost-update": lost_update,
    "concurrent-likes": concurrent_likes,
    "retry": retry_after_lost_ack,
    "cascade": cascade_delete,
    "gap": feed_gap,
}
