"""Unit tests for policyguard.workers.upload_lock.UploadLock (fakeredis)."""

from __future__ import annotations

from unittest.mock import MagicMock

import fakeredis
import pytest
import redis

from policyguard.workers.upload_lock import UploadLock


@pytest.fixture
def client() -> fakeredis.FakeRedis:
    return fakeredis.FakeRedis()


def test_acquire_sets_key_with_ttl(client) -> None:
    lock = UploadLock(client, "upload-1", ttl_seconds=60)

    assert lock.acquire() is True
    assert lock.held is True
    assert lock.key == "policyguard:upload-lock:upload-1"
    assert 0 < client.ttl(lock.key) <= 60


def test_second_holder_is_refused(client) -> None:
    first = UploadLock(client, "upload-1")
    second = UploadLock(client, "upload-1")

    assert first.acquire() is True
    assert second.acquire() is False
    assert second.held is False


def test_different_uploads_do_not_contend(client) -> None:
    assert UploadLock(client, "upload-1").acquire() is True
    assert UploadLock(client, "upload-2").acquire() is True


def test_release_frees_the_upload(client) -> None:
    first = UploadLock(client, "upload-1")
    first.acquire()
    first.release()

    assert first.held is False
    assert client.exists(first.key) == 0
    assert UploadLock(client, "upload-1").acquire() is True


def test_release_keeps_another_holders_key(client) -> None:
    stale = UploadLock(client, "upload-1", ttl_seconds=60)
    stale.acquire()
    # The stale holder's lock expired and another worker took over.
    client.delete(stale.key)
    fresh = UploadLock(client, "upload-1")
    fresh.acquire()

    stale.release()

    assert client.exists(fresh.key) == 1


def test_release_without_acquire_is_noop(client) -> None:
    UploadLock(client, "upload-1").release()
    assert client.keys() == []


def test_acquire_propagates_redis_errors() -> None:
    broken = MagicMock()
    broken.set.side_effect = redis.ConnectionError("refused")
    with pytest.raises(redis.RedisError):
        UploadLock(broken, "upload-1").acquire()


def test_release_swallows_redis_errors(client) -> None:
    lock = UploadLock(client, "upload-1")
    lock.acquire()
    broken = MagicMock(wraps=client)
    broken.get.side_effect = redis.ConnectionError("refused")
    lock._client = broken

    lock.release()

    assert lock.held is False
