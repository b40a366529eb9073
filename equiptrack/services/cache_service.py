"""
Cache backend.

Uses Redis when REDIS_URL points at one, and a simple in-memory dict
otherwise (development / testing).  Values are JSON strings.

Callers go through the generic helpers (``get_cached``, ``set_cached``,
``delete_cached``, ``delete_prefix``); domain caches such as
``ClearanceStatusCache`` build their keys on top of them.
"""

import json
import logging
import os
import time

import redis

logger = logging.getLogger(__name__)

# ── In-memory backend ────────────────────────────────────────────────────

_memory_store: dict = {}  # key → (value_json, expire_ts)


class _MemoryBackend:
    """Simple dict cache for dev/testing."""

    def get(self, key):
        entry = _memory_store.get(key)
        if entry is None:
            return None
        val, expires = entry
        if expires and time.time() > expires:
            _memory_store.pop(key, None)
            return None
        return val

    def setex(self, key, ttl_seconds, value):
        _memory_store[key] = (value, time.time() + ttl_seconds)

    def delete(self, *keys):
        for k in keys:
            _memory_store.pop(k, None)

    def keys(self, pattern):
        """Simple glob matching for 'prefix*' patterns."""
        if pattern.endswith("*"):
            prefix = pattern[:-1]
            return [k for k in _memory_store if k.startswith(prefix)]
        return [k for k in _memory_store if k == pattern]

    def flushdb(self):
        _memory_store.clear()

    def ping(self):
        return True


# ── Singleton cache backend ──────────────────────────────────────────────

_backend = None


def _get_backend():
    """Lazy-initialise Redis or use the in-memory store."""
    global _backend
    if _backend is not None:
        return _backend

    redis_url = os.getenv("REDIS_URL")
    if redis_url and not redis_url.startswith("memory://"):
        client = redis.from_url(redis_url, decode_responses=True)
        try:
            client.ping()
            _backend = client
            logger.info("Cache: using Redis at %s", redis_url.split("@")[-1])
        except redis.RedisError as exc:
            logger.warning("Redis unavailable (%s) — using memory cache", exc)
            _backend = _MemoryBackend()
    else:
        _backend = _MemoryBackend()
    return _backend


DEFAULT_TTL = 300  # 5 minutes


# ── Public API ───────────────────────────────────────────────────────────


def get_cached(key, ttl=DEFAULT_TTL, loader=None):
    """Generic cache-aside.  If *loader* is provided, it's called on miss
    and the result is cached."""
    be = _get_backend()
    raw = be.get(key)
    if raw is not None:
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Discarding undecodable cache entry %s", key)
            be.delete(key)
    if loader is None:
        return None
    value = loader()
    if value is not None:
        be.setex(key, ttl, json.dumps(value, default=str))
    return value


def set_cached(key, value, ttl=DEFAULT_TTL):
    """Generic set."""
    _get_backend().setex(key, ttl, json.dumps(value, default=str))


def delete_cached(*keys):
    """Generic delete."""
    if keys:
        _get_backend().delete(*keys)


def delete_prefix(prefix):
    """Remove every key that starts with *prefix*."""
    be = _get_backend()
    keys = be.keys(f"{prefix}*")
    if keys:
        be.delete(*keys)


def clear_all():
    """Flush entire cache (use sparingly, mainly for testing)."""
    _get_backend().flushdb()


def health_check():
    """Return cache backend status."""
    try:
        be = _get_backend()
        be.ping()
        backend_type = "redis" if not isinstance(be, _MemoryBackend) else "memory"
        return {"status": "ok", "backend": backend_type}
    except redis.RedisError as exc:
        return {"status": "error", "detail": str(exc)}
