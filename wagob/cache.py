"""Read-through cache in front of state store queries.

Entries expire after a per-entry TTL. Invalidation is synchronous and bumps a
per-key generation; ``get_or_load`` only stores a loaded value if the key's
generation is unchanged since the load started, so a reader that raced a
committed write can never repopulate the pre-write value.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

logger = logging.getLogger(__name__)

MISS = object()

# TTLs in seconds
TTL_SHORT = 60  # job listings
TTL_MEDIUM = 300  # single jobs and escrows
TTL_REPUTATION = 600


def job_key(job_id: int) -> str:
    return f"job:{job_id}"


def job_list_prefix(status: Optional[str] = None) -> str:
    return f"jobs:list:{status or 'all'}:"


def job_list_key(status, category, cursor, limit: int) -> str:
    return f"{job_list_prefix(status)}{category or 'all'}:{cursor or 'start'}:{limit}"


def escrow_job_key(job_id: int) -> str:
    return f"escrow:job:{job_id}"


def reputation_key(account_hash: int) -> str:
    return f"reputation:{account_hash}"


class TTLCache:
    """Thread-safe in-memory cache with TTL expiration."""

    def __init__(self, ttl_seconds: float = TTL_MEDIUM, clock: Callable[[], float] = time.monotonic):
        self._cache: Dict[str, Tuple[Any, float]] = {}
        self._generations: Dict[str, int] = {}
        self._epoch = 0  # bumped by prefix invalidation and clear()
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Any:
        """Return the cached value or ``MISS``."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is not None:
                value, expires_at = entry
                if self._clock() < expires_at:
                    self.hits += 1
                    return value
                # Expired
                del self._cache[key]
            self.misses += 1
            return MISS

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._store(key, value, ttl)

    def _store(self, key: str, value: Any, ttl: Optional[float]) -> None:
        self._cache[key] = (value, self._clock() + (self._ttl if ttl is None else ttl))

    def _token(self, key: str) -> Tuple[int, int]:
        return (self._epoch, self._generations.get(key, 0))

    def get_or_load(self, key: str, loader: Callable[[], Any], ttl: Optional[float] = None) -> Any:
        """Read through the cache, falling back to ``loader`` on a miss.

        ``None`` results are not cached so a later write is seen immediately.
        """
        value = self.get(key)
        if value is not MISS:
            return value

        with self._lock:
            token = self._token(key)
        value = loader()
        if value is None:
            return None
        with self._lock:
            if self._token(key) == token:
                self._store(key, value, ttl)
            else:
                logger.debug(f"Skipped caching {key}: invalidated during load")
        return value

    def invalidate(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._cache.pop(key, None)
                self._generations[key] = self._generations.get(key, 0) + 1

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every key starting with ``prefix``. Returns the number dropped."""
        with self._lock:
            doomed = [key for key in self._cache if key.startswith(prefix)]
            for key in doomed:
                del self._cache[key]
            # In-flight loads for keys not yet cached must not store either
            self._epoch += 1
            return len(doomed)

    def invalidate_all(self, keys: Iterable[str]) -> None:
        """Invalidate a mixed list where entries ending in ':' are prefixes."""
        for key in keys:
            if key.endswith(":"):
                self.invalidate_prefix(key)
            else:
                self.invalidate(key)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._epoch += 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not MISS
