"""In-process caches owned by the application composition root.

Both classes are thread-safe, bounded and TTL-evicted. They are created by
``create_app`` and passed to whoever needs them, so each test (or each app
instance) gets an isolated copy.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable

from webmail_proxy.lib.logger import get_logger

logger = get_logger(__name__)


@dataclass
class CacheEntry:
    """Cached value with expiration."""
    value: Any
    expires_at: float


class SimpleCache:
    """Thread-safe in-memory cache with TTL and a maximum entry count.

    When full, the least recently written entry is evicted.
    """

    def __init__(
        self,
        ttl_seconds: float = 300,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._cache: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        """Get value from cache if not expired."""
        with self._lock:
            entry = self._cache.get(key)
            if entry and self._clock() < entry.expires_at:
                return entry.value

            # Expired or missing
            if entry:
                del self._cache[key]
            return None

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        """Set value in cache with TTL (defaults to the cache-wide TTL)."""
        ttl = self._ttl if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._cache.pop(key, None)
            self._cache[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)
            while len(self._cache) > self._max_entries:
                evicted, _ = self._cache.popitem(last=False)
                logger.debug(f"Evicted cache entry {evicted}")

    def invalidate(self, key: str) -> None:
        """Discard a single entry."""
        with self._lock:
            self._cache.pop(key, None)

    def clear(self) -> None:
        """Clear all cached values."""
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)


class FolderCache(SimpleCache):
    """Per-account folder lookup tables (requested name -> server path).

    Keys are account identifiers (see ``FolderCache.key_for``); values map
    lowercased names, paths, special-use tags and aliases to the real path.
    Correctness never depends on freshness: a miss simply re-lists.
    """

    @staticmethod
    def key_for(email: str, imap_host: str) -> str:
        return f"{email.lower()}|{imap_host.lower()}"


class RateLimiter:
    """Fixed-window request counter keyed by client identifier.

    Windows are tracked per key and expire on their own; the table is
    bounded and the oldest windows are dropped first when it fills up.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 60,
        max_keys: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._max_requests = max_requests
        self._window = window_seconds
        self._max_keys = max_keys
        self._clock = clock
        self._windows: OrderedDict[str, tuple[float, int]] = OrderedDict()
        self._lock = threading.Lock()

    def hit(self, key: str) -> tuple[bool, int]:
        """Record one request.

        Args:
            key: Client identifier (usually the remote IP)

        Returns:
            (allowed, retry_after_seconds). retry_after is 0 when allowed.
        """
        now = self._clock()
        with self._lock:
            window_start, count = self._windows.get(key, (now, 0))
            if now - window_start >= self._window:
                window_start, count = now, 0

            count += 1
            self._windows.pop(key, None)
            self._windows[key] = (window_start, count)

            while len(self._windows) > self._max_keys:
                self._windows.popitem(last=False)

            if count > self._max_requests:
                retry_after = max(1, int(window_start + self._window - now + 0.999))
                return False, retry_after
            return True, 0

    def reset(self, key: str | None = None) -> None:
        """Forget one key, or every key when None."""
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)
