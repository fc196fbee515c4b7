"""
Named locks.

Per-budget email debouncing and the daily digest use cross-process named
locks. Uses Redis (``REDIS_URL``) in production, falls back to an
in-process lock registry for development/testing or when Redis is down.

Usage:
    with named_lock(f"budget_complete_email_{budget_id}", timeout=10):
        ...

Raises LockTimeoutError when the lock is not acquired in time; callers
that only deliver best-effort side effects treat that as "someone else
owns it" and exit.
"""

import logging
import threading
from contextlib import contextmanager

import redis
from flask import current_app

from budgetflow.core.exceptions import LockTimeoutError

logger = logging.getLogger(__name__)

# Auto-release after this many seconds if the holder dies
LOCK_LEASE_SECONDS = 120

# ── In-memory fallback ───────────────────────────────────────────────────

_local_locks: dict[str, threading.Lock] = {}
_registry_guard = threading.Lock()


def _local_lock(name: str) -> threading.Lock:
    with _registry_guard:
        lock = _local_locks.get(name)
        if lock is None:
            lock = threading.Lock()
            _local_locks[name] = lock
        return lock


# ── Singleton Redis client ───────────────────────────────────────────────

_client = None
_client_url = None


def _get_client():
    """Lazy-initialise Redis or return None for the in-memory fallback."""
    global _client, _client_url
    redis_url = current_app.config.get("REDIS_URL") or ""
    if not redis_url or redis_url.startswith("memory://"):
        return None
    if _client is not None and _client_url == redis_url:
        return _client
    try:
        client = redis.from_url(redis_url, decode_responses=True)
        client.ping()
    except redis.exceptions.RedisError as exc:
        logger.warning("Redis unavailable (%s) — falling back to in-process locks", exc)
        return None
    _client, _client_url = client, redis_url
    logger.info("Locks: using Redis at %s", redis_url.split("@")[-1])
    return _client


@contextmanager
def named_lock(name: str, timeout: float | None = None):
    """Hold a named lock for the duration of the block."""
    if timeout is None:
        timeout = float(current_app.config.get("LOCK_TIMEOUT_SECONDS", 10))

    client = _get_client()
    if client is not None:
        lock = client.lock(f"lock:{name}", timeout=LOCK_LEASE_SECONDS, blocking_timeout=timeout)
        if not lock.acquire():
            raise LockTimeoutError(name, timeout)
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError:
                logger.warning("Lock %s expired before release", name)
        return

    lock = _local_lock(name)
    if not lock.acquire(timeout=timeout):
        raise LockTimeoutError(name, timeout)
    try:
        yield
    finally:
        lock.release()
