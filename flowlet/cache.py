"""In-memory TTL cache used by the LLM client for responses and embeddings."""
import hashlib
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import CacheError


@dataclass
class CacheEntry:
    value: Any
    ttl: float
    created: float

    def expired(self, now: float) -> bool:
        return now - self.created > self.ttl


def compute_key(*parts: Any) -> str:
    """Stable key for a combination of parts (model, prompt, temperature...)."""
    return hashlib.sha256(":".join(str(p) for p in parts).encode("utf-8")).hexdigest()


class Cache:
    """Bounded key/value store with per-entry expiry.

    Expired entries are dropped lazily on read or by evict_expired(). When the
    cache is full, inserting a new key evicts the oldest entry.
    """

    def __init__(self, max_size: int = 10000, default_ttl: float = 3600):
        if max_size < 1:
            raise CacheError(f"max_size must be at least 1, got {max_size}")
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._store: Dict[str, CacheEntry] = {}

    def get(self, key: str) -> Any:
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.expired(time.monotonic()):
            del self._store[key]
            return None
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl < 0:
            raise CacheError(f"ttl must be non-negative, got {ttl}", cache_key=key)
        if key not in self._store and len(self._store) >= self.max_size:
            oldest = min(self._store, key=lambda k: self._store[k].created)
            del self._store[oldest]
        self._store[key] = CacheEntry(value, ttl, time.monotonic())

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def clear(self) -> None:
        self._store.clear()

    def size(self) -> int:
        return len(self._store)

    def evict_expired(self) -> int:
        now = time.monotonic()
        expired = [k for k, entry in self._store.items() if entry.expired(now)]
        for k in expired:
            del self._store[k]
        return len(expired)


global_cache = Cache()


def get_cached(key: str) -> Any:
    return global_cache.get(key)


def set_cached(key: str, value: Any, ttl: Optional[float] = None) -> None:
    global_cache.set(key, value, ttl)
