"""In-memory TTL cache for expensive report results.

Entries expire on an absolute TTL measured from insertion. Expired entries
are dropped lazily when ``get`` finds them, and in bulk by ``cleanup``,
which ``CacheSweeper`` runs on a fixed interval.

The cache is meant to be used from a single asyncio event loop. None of its
operations await, so two calls can never interleave. Concurrent misses on
the same key are not coalesced: each caller fetches and the last ``set``
wins.
"""
import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Generic, List, Optional, TypeVar

from .logging import slogger

T = TypeVar('T')

Clock = Callable[[], datetime]

KEY_DELIMITER = ":"
DEFAULT_TTL_SECONDS = 10 * 60
DEFAULT_CLEANUP_INTERVAL_SECONDS = 5 * 60


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(moment: datetime) -> str:
    """Render a UTC timestamp the way the dashboard expects (``...T12:00:00.000Z``)."""
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def generate_key(report_name: str, start_date: str, end_date: str) -> str:
    """
    Build the cache key for a report over a date range.

    Dates are used verbatim, so ``2025-08-01`` and ``2025-8-1`` are different
    keys. Inputs must not contain the delimiter or distinct triples may
    collide.
    """
    return KEY_DELIMITER.join((str(report_name), str(start_date), str(end_date)))


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    data: T
    cached_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class CachedValue(Generic[T]):
    """A cache hit: the stored payload and when it was stored."""
    data: T
    cached_at: str
    from_cache: bool = True


@dataclass(frozen=True)
class CacheEntryStats:
    key: str
    cached_at: str
    expires_at: str
    is_expired: bool
    size: int


@dataclass(frozen=True)
class CacheStats:
    total_entries: int
    active_entries: int
    expired_entries: int
    entries: List[CacheEntryStats] = field(default_factory=list)


def payload_size(data) -> int:
    """Byte length of the JSON serialization of a payload."""
    return len(json.dumps(data, default=str, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))


class ReportCache(Generic[T]):
    """Simple in-memory cache with absolute TTL expiry."""

    generate_key = staticmethod(generate_key)

    def __init__(self, default_ttl: float = DEFAULT_TTL_SECONDS, clock: Clock = utc_now):
        self._cache: Dict[str, CacheEntry[T]] = {}
        self.default_ttl = default_ttl
        self._clock = clock

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: str) -> bool:
        return key in self._cache

    def set(self, key: str, data: T, ttl: Optional[float] = None) -> None:
        """Store ``data`` under ``key`` for ``ttl`` seconds, replacing any prior entry."""
        ttl = self.default_ttl if ttl is None else ttl
        now = self._clock()
        self._cache[key] = CacheEntry(
            data=data,
            cached_at=now,
            expires_at=now + timedelta(seconds=ttl),
        )
        slogger.info(
            "CACHE_SET",
            f"Cached {key} (expires in {ttl}s)",
            data={"key": key, "ttl_seconds": ttl},
        )

    def get(self, key: str) -> Optional[CachedValue[T]]:
        """Return the cached value, or None when absent or expired."""
        entry = self._cache.get(key)
        if entry is None:
            slogger.info("CACHE_MISS", f"Cache miss for {key}", data={"key": key})
            return None

        if entry.is_expired(self._clock()):
            del self._cache[key]
            slogger.info("CACHE_EXPIRED", f"Cache entry {key} expired", data={"key": key})
            return None

        cached_at = isoformat(entry.cached_at)
        slogger.info(
            "CACHE_HIT",
            f"Cache hit for {key}",
            data={"key": key, "cached_at": cached_at},
        )
        return CachedValue(data=entry.data, cached_at=cached_at)

    def delete(self, key: str) -> None:
        """Remove a value from the cache; absent keys are ignored."""
        self._cache.pop(key, None)
        slogger.info("CACHE_DELETE", f"Deleted cache entry {key}", data={"key": key})

    def clear(self) -> None:
        """Remove every entry."""
        removed = len(self._cache)
        self._cache.clear()
        slogger.info(
            "CACHE_CLEAR",
            "All cache entries removed",
            data={"removed": removed},
        )

    def get_stats(self) -> CacheStats:
        """Describe every entry, expired or not, without removing anything."""
        now = self._clock()
        entries = [
            CacheEntryStats(
                key=key,
                cached_at=isoformat(entry.cached_at),
                expires_at=isoformat(entry.expires_at),
                is_expired=entry.is_expired(now),
                size=payload_size(entry.data),
            )
            for key, entry in list(self._cache.items())
        ]
        expired = sum(1 for entry in entries if entry.is_expired)
        return CacheStats(
            total_entries=len(entries),
            active_entries=len(entries) - expired,
            expired_entries=expired,
            entries=entries,
        )

    def cleanup(self) -> int:
        """Remove expired entries and return how many were removed."""
        now = self._clock()
        expired_keys = [key for key, entry in self._cache.items() if entry.is_expired(now)]
        for key in expired_keys:
            del self._cache[key]

        if expired_keys:
            slogger.info(
                "CACHE_CLEANUP",
                f"Removed {len(expired_keys)} expired entries",
                data={"removed": len(expired_keys), "remaining": len(self._cache)},
            )
        return len(expired_keys)


class CacheSweeper:
    """
    Runs ``cache.cleanup()`` every ``interval`` seconds on the event loop.

    Owned by the application lifespan: ``start()`` on startup, ``stop()`` on
    shutdown. Also usable as ``async with CacheSweeper(cache):``.
    """

    def __init__(self, cache: ReportCache, interval: float = DEFAULT_CLEANUP_INTERVAL_SECONDS):
        if interval <= 0:
            raise ValueError("Cleanup interval must be positive")
        self.cache = cache
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="report-cache-sweeper")
        slogger.info(
            "CACHE_SWEEPER_START",
            "Started cache sweeper",
            data={"interval_seconds": self.interval},
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        slogger.info("CACHE_SWEEPER_STOP", "Stopped cache sweeper")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.cache.cleanup()
            except Exception as e:
                slogger.error(
                    "CACHE_SWEEPER_ERROR",
                    "Cache cleanup pass failed",
                    error=e,
                )

    async def __aenter__(self) -> "CacheSweeper":
        await self.start()
        return self

    async def __aexit__(self, *args) -> None:
        await self.stop()
