"""
Derived-Attribute Caching for the Livestream Engagement API.

Short-lived, in-process caches that sit in front of per-user values which are
expensive to derive on every response: the SHA-256 digest of a user's icon and
the user's dark-mode theme flag.

Key Components:
- `ReadWriteLock`: Lets any number of readers proceed together while giving a
  writer exclusive access. Writers are preferred once waiting, so a steady
  stream of reads can't starve a `set`.
- `CacheEntry`: Immutable value/expiry pair. Entries are replaced, never
  mutated, so a reader can't observe a half-written entry.
- `TTLCache`: Generic key-value cache with one fixed TTL per instance and lazy
  eviction of expired entries on read. Each key carries a version token so a
  reader can store a recomputed value only if no writer touched the key since.)
- `IconHashCache` / `ThemeCache`: The two concrete caches, keyed by username
  and by user id respectively.
- `DerivedAttributeCaches`: Bundles both caches into one explicit service
  object that is built at startup and injected into the services needing it.

Cache entries are advisory. A miss or an expired entry only means the caller
recomputes the value from storage (or from the canonical icon bytes) and
stores it again; it never changes what a client sees.
"""

import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

from core.logging_config import get_logger

logger = get_logger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

DEFAULT_ICON_HASH_TTL = 100.0
DEFAULT_THEME_TTL = 100.0


class ReadWriteLock:
    """Reader/writer lock with writer preference"""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer_active = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer_active or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer_active or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer_active = True

    def release_write(self) -> None:
        with self._cond:
            self._writer_active = False
            self._cond.notify_all()

    def read_locked(self) -> "_LockContext":
        return _LockContext(self.acquire_read, self.release_read)

    def write_locked(self) -> "_LockContext":
        return _LockContext(self.acquire_write, self.release_write)


class _LockContext:
    def __init__(self, acquire: Callable[[], None], release: Callable[[], None]):
        self._acquire = acquire
        self._release = release

    def __enter__(self):
        self._acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._release()
        return False


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    """Cache entry with its expiry instant (clock seconds)"""

    value: V
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class TTLCache(Generic[K, V]):
    """Thread-safe key-value cache with a fixed per-instance TTL"""

    def __init__(
        self,
        ttl: float,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl <= 0:
            raise ValueError(f"TTL for cache '{name}' must be positive, got {ttl}")
        self.ttl = float(ttl)
        self.name = name
        self._clock = clock
        self._entries: Dict[K, CacheEntry[V]] = {}
        self._versions: Dict[K, int] = {}
        self._lock = ReadWriteLock()
        self._stats_lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: K) -> Tuple[Optional[V], bool]:
        """Return ``(value, True)`` for a live entry, ``(None, False)`` otherwise."""
        with self._lock.read_locked():
            entry = self._entries.get(key)

        if entry is None:
            self._record(miss=True)
            return None, False

        if entry.is_expired(self._clock()):
            self._evict_if_unchanged(key, entry)
            self._record(miss=True)
            logger.debug(f"Cache '{self.name}' entry expired for key: {key}")
            return None, False

        self._record(miss=False)
        return entry.value, True

    def set(self, key: K, value: V) -> None:
        entry = CacheEntry(value=value, expires_at=self._clock() + self.ttl)
        with self._lock.write_locked():
            self._entries[key] = entry
            self._versions[key] = self._versions.get(key, 0) + 1

    def version(self, key: K) -> int:
        """Token that changes on every set or delete of ``key``."""
        with self._lock.read_locked():
            return self._versions.get(key, 0)

    def set_if_unchanged(self, key: K, value: V, version: int) -> bool:
        """Store ``value`` only if ``key`` was not written since ``version`` was read.

        Readers that recompute a value from storage take the version before
        reading, so a value computed from data a concurrent writer has since
        replaced never lands over the writer's entry.
        """
        entry = CacheEntry(value=value, expires_at=self._clock() + self.ttl)
        with self._lock.write_locked():
            if self._versions.get(key, 0) != version:
                stored = False
            else:
                self._entries[key] = entry
                self._versions[key] = version + 1
                stored = True
        if not stored:
            logger.debug(f"Cache '{self.name}' skipped outdated write for key: {key}")
        return stored

    def delete(self, key: K) -> bool:
        with self._lock.write_locked():
            self._versions[key] = self._versions.get(key, 0) + 1
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock.write_locked():
            self._entries.clear()
        logger.info(f"Cache '{self.name}' cleared")

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            hits, misses, evictions = self.hits, self.misses, self.evictions
        total_requests = hits + misses
        return {
            "name": self.name,
            "ttl_seconds": self.ttl,
            "entries": len(self),
            "hits": hits,
            "misses": misses,
            "hit_rate": hits / total_requests if total_requests > 0 else 0.0,
            "evictions": evictions,
        }

    def _evict_if_unchanged(self, key: K, entry: CacheEntry[V]) -> None:
        # A concurrent set may have replaced the expired entry meanwhile
        with self._lock.write_locked():
            if self._entries.get(key) is entry:
                del self._entries[key]
                with self._stats_lock:
                    self.evictions += 1

    def _record(self, miss: bool) -> None:
        with self._stats_lock:
            if miss:
                self.misses += 1
            else:
                self.hits += 1


class IconHashCache(TTLCache[str, str]):
    """Username -> hex SHA-256 digest of the user's icon bytes"""

    def __init__(self, ttl: float = DEFAULT_ICON_HASH_TTL, **kwargs):
        super().__init__(ttl, name="icon_hash", **kwargs)


class ThemeCache(TTLCache[int, bool]):
    """User id -> dark mode flag"""

    def __init__(self, ttl: float = DEFAULT_THEME_TTL, **kwargs):
        super().__init__(ttl, name="theme", **kwargs)


class DerivedAttributeCaches:
    """The per-process set of derived-attribute caches"""

    def __init__(self, icon_hash: IconHashCache, theme: ThemeCache):
        self.icon_hash = icon_hash
        self.theme = theme

    def stats(self) -> Dict[str, Any]:
        return {
            "icon_hash": self.icon_hash.stats(),
            "theme": self.theme.stats(),
        }

    def health_check(self) -> Dict[str, Any]:
        """Round-trip a throwaway entry through each cache"""
        try:
            probe = "__health_check__"
            self.icon_hash.set(probe, "ok")
            value, present = self.icon_hash.get(probe)
            self.icon_hash.delete(probe)
            return {
                "status": "healthy" if present and value == "ok" else "unhealthy",
                "backend_type": "memory",
                "stats": self.stats(),
            }
        except Exception as e:
            logger.error(f"Cache health check failed: {e}")
            return {"status": "unhealthy", "backend_type": "memory", "error": str(e)}


# Process-wide instance, built by init_caches() during startup
_caches: Optional[DerivedAttributeCaches] = None


def init_caches(
    icon_hash_ttl: Optional[float] = None, theme_ttl: Optional[float] = None
) -> DerivedAttributeCaches:
    """Build the caches from explicit TTLs or the environment."""
    global _caches
    if icon_hash_ttl is None:
        icon_hash_ttl = float(os.getenv("ICON_HASH_CACHE_TTL", DEFAULT_ICON_HASH_TTL))
    if theme_ttl is None:
        theme_ttl = float(os.getenv("THEME_CACHE_TTL", DEFAULT_THEME_TTL))

    _caches = DerivedAttributeCaches(
        icon_hash=IconHashCache(ttl=icon_hash_ttl),
        theme=ThemeCache(ttl=theme_ttl),
    )
    logger.info(
        "Derived attribute caches initialized",
        extra={"icon_hash_ttl": icon_hash_ttl, "theme_ttl": theme_ttl},
    )
    return _caches


def get_caches() -> DerivedAttributeCaches:
    """Get the process-wide caches, building defaults on first use."""
    if _caches is None:
        return init_caches()
    return _caches
