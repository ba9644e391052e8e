"""
TTL cache for provider responses.

Entries are keyed by a request fingerprint and expire lazily: a read past
the entry's ttl is a miss, but nothing is evicted until invalidated or
purge_expired() runs.
"""

import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlencode

from config import CACHE_TTL_DEFAULT
from utils.logger import get_logger

logger = get_logger("RESPONSE_CACHE")


def make_fingerprint(operation_key: str, params: Optional[Mapping[str, Any]] = None) -> str:
    """
    Deterministic cache key for an operation and its parameters.

    Parameters are sorted by key and URL-encoded, so insertion order never
    matters and values containing "&" or "=" cannot collide:
        make_fingerprint("/search", {"b": 2, "a": 1}) == "/search?a=1&b=2"
    """
    if not params:
        return operation_key

    pairs = sorted(((str(k), str(v)) for k, v in params.items()), key=lambda kv: kv[0])
    return f"{operation_key}?{urlencode(pairs)}"


@dataclass
class CacheEntry:
    """A cached payload"""
    fingerprint: str
    payload: Any
    inserted_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.inserted_at < self.ttl


class TTLCache:
    """
    In-memory response cache with per-entry TTL

    Usage:
        cache = TTLCache(default_ttl=300)
        cache.set("stock:RELIANCE", {"price": 2900})
        cache.get("stock:RELIANCE")   # {"price": 2900}
    """

    def __init__(self, default_ttl: float = CACHE_TTL_DEFAULT, clock: Callable[[], float] = time.time):
        self.default_ttl = default_ttl
        self._clock = clock
        self._store: Dict[str, CacheEntry] = {}

        # Only guards the counters; dict reads/writes are atomic
        self._stats_lock = Lock()
        self._stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0}

    def _count(self, name: str):
        with self._stats_lock:
            self._stats[name] += 1

    @staticmethod
    def fingerprint(operation_key: str, params: Optional[Mapping[str, Any]] = None) -> str:
        return make_fingerprint(operation_key, params)

    def get_entry(self, fingerprint: str) -> Optional[CacheEntry]:
        """Fresh entry for a fingerprint, None on miss or expiry"""
        entry = self._store.get(fingerprint)

        if entry is None or not entry.is_fresh(self._clock()):
            self._count("misses")
            return None

        self._count("hits")
        return entry

    def get(self, fingerprint: str, default: Any = None) -> Any:
        """Cached payload, or default on miss"""
        entry = self.get_entry(fingerprint)
        return entry.payload if entry is not None else default

    def put(self, fingerprint: str, payload: Any, ttl: Optional[float] = None):
        """Store a payload (last write wins)"""
        self._store[fingerprint] = CacheEntry(
            fingerprint=fingerprint,
            payload=payload,
            inserted_at=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )
        self._count("sets")

    set = put

    def clear_item(self, fingerprint: str) -> bool:
        """Remove one entry. Returns True if it existed"""
        if self._store.pop(fingerprint, None) is None:
            return False
        self._count("deletes")
        return True

    def clear_prefix(self, prefix: str) -> int:
        """Remove every entry whose fingerprint starts with prefix"""
        removed = 0
        for fp in [fp for fp in list(self._store) if fp.startswith(prefix)]:
            if self.clear_item(fp):
                removed += 1
        if removed:
            logger.debug(f"Invalidated {removed} entries under {prefix}")
        return removed

    def clear(self):
        """Remove all entries"""
        self._store.clear()
        logger.info("Cache cleared")

    def purge_expired(self) -> int:
        """Drop stale entries. Never called implicitly"""
        now = self._clock()
        stale = [fp for fp, e in list(self._store.items()) if not e.is_fresh(now)]
        for fp in stale:
            self._store.pop(fp, None)
        if stale:
            logger.info(f"Cache cleanup: removed {len(stale)} expired items, {len(self._store)} left")
        return len(stale)

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, fingerprint: str) -> bool:
        entry = self._store.get(fingerprint)
        return entry is not None and entry.is_fresh(self._clock())

    def get_stats(self) -> Dict:
        """Hit/miss counters and size"""
        with self._stats_lock:
            stats = dict(self._stats)
        lookups = stats["hits"] + stats["misses"]
        stats["items"] = len(self._store)
        stats["hit_rate"] = stats["hits"] / lookups if lookups else 0.0
        return stats
