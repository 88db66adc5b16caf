"""
Per-relationship mutual exclusion.

Accept handling and reconciliation both read-modify-write the follow state of a
(local actor, remote actor) pair. Every such write happens while holding the lock for that pair.
"""
from __future__ import annotations
import hashlib
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator

import redis

logger = logging.getLogger(__name__)


def lock_key(local_actor_id: int, remote_actor_uri: str) -> str:
    digest = hashlib.md5(remote_actor_uri.encode('utf-8')).hexdigest()
    return f"lock:follow:{local_actor_id}:{digest}"


class LocalKeyedLocks:
    """In-process locks, one per key. Good for tests and single-process deployments."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, local_actor_id: int, remote_actor_uri: str) -> Iterator[None]:
        lock = self._lock_for(lock_key(local_actor_id, remote_actor_uri))
        with lock:
            yield


class RedisKeyedLocks:
    """Locks shared by every web and worker process through redis"""

    def __init__(self, redis_client: redis.Redis, timeout: int = 10, blocking_timeout: int = 6):
        self.redis = redis_client
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout

    @contextmanager
    def hold(self, local_actor_id: int, remote_actor_uri: str) -> Iterator[None]:
        key = lock_key(local_actor_id, remote_actor_uri)
        with self.redis.lock(key, timeout=self.timeout, blocking_timeout=self.blocking_timeout):
            yield


def create_locks(app, redis_client=None):
    backend = app.config.get('FOLLOW_LOCK_BACKEND', 'redis')
    if backend == 'local':
        return LocalKeyedLocks()
    if backend == 'redis':
        if redis_client is None:
            raise ValueError('FOLLOW_LOCK_BACKEND is redis but no redis client is configured')
        return RedisKeyedLocks(redis_client, timeout=app.config.get('FOLLOW_LOCK_TIMEOUT', 30))
    raise ValueError(f"Unknown FOLLOW_LOCK_BACKEND: {backend}")
