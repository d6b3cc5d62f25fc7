"""
Tenant-Aware Config Cache

Caches each shop's resolved workflow configuration (serialised to JSON) so
the transition engine does not re-read and re-merge override rows on every
call.

Uses Redis when REDIS_URL points at a server, falls back to a simple
in-memory dict for development/testing. The cache is an explicit object
handed to WorkflowConfigService; saving an override invalidates the shop's
entry synchronously.
"""

import json
import logging
import threading
import time

import redis

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300   # 5 minutes


# ── In-memory fallback ───────────────────────────────────────────────────

class _MemoryBackend:
    """Simple dict cache for dev/testing."""

    def __init__(self):
        self._store: dict = {}  # key → (value_json, expire_ts)
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            val, expires = entry
            if expires and time.time() > expires:
                self._store.pop(key, None)
                return None
            return val

    def setex(self, key, ttl_seconds, value):
        with self._lock:
            self._store[key] = (value, time.time() + ttl_seconds)

    def delete(self, *keys):
        with self._lock:
            for k in keys:
                self._store.pop(k, None)

    def keys(self, pattern):
        """Simple glob matching for 'prefix*' patterns."""
        with self._lock:
            if pattern.endswith("*"):
                prefix = pattern[:-1]
                return [k for k in self._store if k.startswith(prefix)]
            return [k for k in self._store if k == pattern]

    def ping(self):
        return True


def make_backend(redis_url: str | None):
    """Redis client for *redis_url*, or the in-memory backend."""
    if redis_url and not redis_url.startswith("memory://"):
        try:
            backend = redis.from_url(redis_url, decode_responses=True)
            backend.ping()
            logger.info("Cache: using Redis at %s", redis_url.split("@")[-1])
            return backend
        except Exception as exc:
            logger.warning("Redis unavailable (%s); using memory cache", exc)
    return _MemoryBackend()


class ConfigCache:
    """Per-tenant cache of resolved workflow configuration dicts."""

    def __init__(self, backend=None, ttl: int = DEFAULT_TTL, prefix: str = "wfcfg"):
        self.backend = backend if backend is not None else _MemoryBackend()
        self.ttl = ttl
        self.prefix = prefix

    @classmethod
    def from_app(cls, app) -> "ConfigCache":
        return cls(
            backend=make_backend(app.config.get("REDIS_URL")),
            ttl=app.config.get("WORKFLOW_CONFIG_CACHE_TTL", DEFAULT_TTL),
        )

    def _key(self, tenant_id) -> str:
        return f"{self.prefix}:{tenant_id}"

    def get(self, tenant_id) -> dict | None:
        """Return the cached config dict, or None on miss."""
        raw = self.backend.get(self._key(tenant_id))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None

    def set(self, tenant_id, value: dict) -> None:
        self.backend.setex(self._key(tenant_id), self.ttl, json.dumps(value))

    def invalidate(self, tenant_id) -> None:
        self.backend.delete(self._key(tenant_id))

    def clear(self) -> None:
        keys = self.backend.keys(f"{self.prefix}:*")
        if keys:
            self.backend.delete(*keys)

    def health_check(self) -> dict:
        """Return cache backend status."""
        try:
            self.backend.ping()
            backend_type = "memory" if isinstance(self.backend, _MemoryBackend) else "redis"
            return {"status": "ok", "backend": backend_type}
        except Exception as exc:
            return {"status": "error", "detail": str(exc)}
