"""Tests for the dedup lock variants."""

import pytest

from tally_stage.core.settings import settings
from tally_stage.services import dedup
from tally_stage.services.dedup import (
    DatabaseDedupLock,
    DedupLock,
    InMemoryDedupLock,
    RedisDedupLock,
    get_dedup_lock,
)


def test_database_lock_claims_once(db_session) -> None:
    lock = DatabaseDedupLock(db_session)

    assert lock.acquire_once("evt-1") is True
    assert lock.acquire_once("evt-1") is False
    assert lock.acquire_once("evt-2") is True


def test_database_lock_is_transactional(session_factory) -> None:
    with session_factory() as db:
        assert DatabaseDedupLock(db).acquire_once("evt-1") is True
        db.rollback()

    with session_factory() as db:
        # The rolled back claim left nothing behind.
        assert DatabaseDedupLock(db).acquire_once("evt-1") is True
        db.commit()

    with session_factory() as db:
        assert DatabaseDedupLock(db).acquire_once("evt-1") is False


def test_memory_lock_release() -> None:
    lock = InMemoryDedupLock()

    assert lock.acquire_once("evt") is True
    assert lock.acquire_once("evt") is False
    lock.release("evt")
    assert lock.acquire_once("evt") is True


def test_redis_lock_uses_set_nx(mocker) -> None:
    client = mocker.MagicMock()
    client.set.side_effect = [True, None]
    lock = RedisDedupLock(client, ttl_seconds=60)

    assert lock.acquire_once("evt") is True
    assert lock.acquire_once("evt") is False
    client.set.assert_called_with("tally:event:evt", "1", nx=True, ex=60)

    lock.release("evt")
    client.delete.assert_called_once_with("tally:event:evt")


def test_redis_lock_builds_client_from_settings(mocker) -> None:
    from_url = mocker.patch("tally_stage.services.dedup.redis.from_url")

    lock = RedisDedupLock()

    from_url.assert_called_once_with(settings.redis_url)
    assert lock.ttl_seconds == settings.dedup_ttl_seconds


def test_get_dedup_lock(db_session, mocker) -> None:
    mocker.patch("tally_stage.services.dedup.redis.from_url")
    mocker.patch.dict(dedup._REDIS_LOCKS, clear=True)

    assert isinstance(get_dedup_lock(db_session, "database"), DatabaseDedupLock)
    assert get_dedup_lock(db_session, "memory") is get_dedup_lock(db_session, "memory")
    redis_lock = get_dedup_lock(db_session, "redis")
    assert isinstance(redis_lock, RedisDedupLock)
    assert get_dedup_lock(db_session, "redis") is redis_lock
    assert isinstance(redis_lock, DedupLock)
    with pytest.raises(ValueError):
        get_dedup_lock(db_session, "zookeeper")
