"""
In-memory response caching for the site API.

Each cache family (resource lists, free tests, top users, profiles) is an
independent ``ResponseCache`` with its own TTL and key function. Entries are
never evicted by size; an entry older than the TTL is simply treated as absent
until it is overwritten or invalidated.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from fastapi import Request

from . import config
from .logging_utils import get_logger

logger = get_logger("edusite.cache")

KeyFn = Union[str, Callable[[Request], str]]


@dataclass
class CacheEntry:
    """A stored response payload and when it was written"""
    key: str
    payload: Any
    stored_at: float


class ResponseCache:
    """TTL cache of computed response payloads.

    Operations never raise: an internal error is logged and reported as a
    miss (``get``) or ignored (``set``/``invalidate``).
    """

    def __init__(self, name: str, ttl_seconds: float, key_fn: KeyFn):
        self.name = name
        self.ttl_seconds = ttl_seconds
        self._key_fn = key_fn
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._stats = {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'invalidations': 0,
        }

    def key_for(self, request: Request) -> str:
        if callable(self._key_fn):
            return self._key_fn(request)
        return self._key_fn

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for key, or None if absent or older than the TTL"""
        try:
            with self._lock:
                entry = self._entries.get(key)
                now = time.time()
                if entry is None or now - entry.stored_at >= self.ttl_seconds:
                    self._stats['misses'] += 1
                    logger.info("cache_miss", extra={"cache": self.name, "key": key})
                    return None
                self._stats['hits'] += 1
                logger.info(
                    "cache_hit",
                    extra={"cache": self.name, "key": key, "age_s": round(now - entry.stored_at)},
                )
                return entry
        except Exception as e:
            logger.warning("cache_get_failed", extra={"cache": self.name, "key": key, "error": str(e)})
            return None

    def set(self, key: str, payload: Any) -> None:
        try:
            with self._lock:
                self._entries[key] = CacheEntry(key=key, payload=payload, stored_at=time.time())
                self._stats['sets'] += 1
            logger.info("cache_set", extra={"cache": self.name, "key": key})
        except Exception as e:
            logger.warning("cache_set_failed", extra={"cache": self.name, "key": key, "error": str(e)})

    def invalidate(self, key: str) -> bool:
        """Drop the entry for key; return True if one existed"""
        try:
            with self._lock:
                found = self._entries.pop(key, None) is not None
                if found:
                    self._stats['invalidations'] += 1
            logger.info("cache_invalidated", extra={"cache": self.name, "key": key, "found": found})
            return found
        except Exception as e:
            logger.warning("cache_invalidate_failed", extra={"cache": self.name, "key": key, "error": str(e)})
            return False

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total_requests = self._stats['hits'] + self._stats['misses']
            hit_rate = (self._stats['hits'] / total_requests * 100) if total_requests > 0 else 0
            return {
                **self._stats,
                'total_requests': total_requests,
                'hit_rate_percent': round(hit_rate, 2),
                'size': len(self._entries),
                'ttl_seconds': self.ttl_seconds,
            }


def free_test_key(test_id: Any) -> str:
    return f"test-{test_id}"


def profile_key(email: str) -> str:
    return f"profile:{email}"


TOP_USERS_KEY = "topUsers"


def _test_key_from_request(request: Request) -> str:
    return free_test_key(request.path_params.get("id"))


def _profile_key_from_request(request: Request) -> str:
    user = getattr(request.state, "user", None)
    return profile_key(getattr(user, "email", ""))


@dataclass
class CacheRegistry:
    """The cache families used by the API handlers."""
    resources: Dict[str, ResponseCache]
    tests: ResponseCache
    top_users: ResponseCache
    profiles: ResponseCache

    def all(self) -> Dict[str, ResponseCache]:
        caches = {f"resources:{name}": c for name, c in self.resources.items()}
        caches.update({
            self.tests.name: self.tests,
            self.top_users.name: self.top_users,
            self.profiles.name: self.profiles,
        })
        return caches

    def get_stats(self) -> Dict[str, Any]:
        return {name: c.get_stats() for name, c in self.all().items()}

    def clear(self) -> None:
        for c in self.all().values():
            c.clear()


RESOURCE_FAMILIES = ("courses", "banners", "teachers", "students", "partners", "news")


def build_registry(ttl_minutes: float = 20, profile_ttl_minutes: float = 5) -> CacheRegistry:
    ttl = ttl_minutes * 60
    return CacheRegistry(
        resources={name: ResponseCache(name, ttl, name) for name in RESOURCE_FAMILIES},
        tests=ResponseCache("tests", ttl, _test_key_from_request),
        top_users=ResponseCache("top_users", ttl, TOP_USERS_KEY),
        profiles=ResponseCache("profiles", profile_ttl_minutes * 60, _profile_key_from_request),
    )


_registry: Optional[CacheRegistry] = None


def init_caches() -> CacheRegistry:
    """Create the process-wide registry. Called once at startup."""
    global _registry
    _registry = build_registry(config.CACHE_TTL_MINUTES, config.PROFILE_CACHE_TTL_MINUTES)
    return _registry


def get_caches() -> CacheRegistry:
    """FastAPI dependency returning the process-wide registry"""
    if _registry is None:
        return init_caches()
    return _registry


# Response envelopes
def success_envelope(payload: Any, cached: bool) -> Dict[str, Any]:
    return {"success": True, "data": payload, "cached": cached}


def raw_envelope(payload: Any, cached: bool) -> Any:
    return payload


def top_users_envelope(payload: Any, cached: bool) -> Dict[str, Any]:
    return {"topUsers": payload}


def cached_response(
    cache: ResponseCache,
    key: str,
    compute: Callable[[], Any],
    envelope: Callable[[Any, bool], Any] = success_envelope,
) -> Any:
    """Serve key from cache, or compute, store and serve it.

    Exceptions raised by compute propagate and nothing is stored.
    """
    entry = cache.get(key)
    if entry is not None:
        return envelope(entry.payload, True)
    payload = compute()
    cache.set(key, payload)
    return envelope(payload, False)
