"""Per-upload in-flight lock on Redis.

A worker takes the lock before running the pipeline for an upload and
releases it afterwards, so duplicate deliveries of the same job (retries,
late acks, a user clicking "process" twice) never run concurrently.

The lock is a single ``SET key token NX EX ttl``.  The TTL bounds how long a
crashed worker can keep an upload blocked.  Release only deletes the key
when it still holds this holder's token.

Usage::

    lock = UploadLock(redis_client, "upload-1", ttl_seconds=1800)
    if lock.acquire():
        try:
            ...
        finally:
            lock.release()
"""

from __future__ import annotations

import logging
import uuid

import redis

logger = logging.getLogger(__name__)

_KEY_PREFIX = "policyguard:upload-lock"


class UploadLock:
    """Non-blocking lock for one upload id.

    Args:
        client: Synchronous Redis client.
        upload_id: Upload the lock guards.
        ttl_seconds: Lock expiry.
    """

    def __init__(self, client: redis.Redis, upload_id: str, ttl_seconds: int = 1800) -> None:
        self._client = client
        self._key = f"{_KEY_PREFIX}:{upload_id}"
        self._token = uuid.uuid4().hex
        self._ttl_seconds = ttl_seconds
        self._held = False

    @property
    def key(self) -> str:
        return self._key

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> bool:
        """Try to take the lock; return ``False`` if another holder has it.

        Raises:
            redis.RedisError: If Redis is unreachable.
        """
        self._held = bool(self._client.set(self._key, self._token, nx=True, ex=self._ttl_seconds))
        if not self._held:
            logger.info("Upload lock busy: key=%s", self._key)
        return self._held

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        try:
            current = self._client.get(self._key)
            if current is not None and _as_str(current) == self._token:
                self._client.delete(self._key)
        except redis.RedisError:
            # The TTL frees the key if the delete never lands.
            logger.exception("Failed to release upload lock: key=%s", self._key)


def _as_str(value: bytes | str) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value
