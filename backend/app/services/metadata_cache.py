"""
Metadata request de-duplication and result cache.

Concurrent callers asking for the same stream share one in-flight fetch,
and completed results are served from a short-lived cache. This is the
only place that owns the cache and in-flight maps.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from app.config.settings import MetadataSettings
from app.models import MetadataResult

logger = logging.getLogger(__name__)

Fetcher = Callable[[str], Awaitable[MetadataResult]]


@dataclass
class CacheEntry:
    """A completed result and the clock value at which it settled."""
    result: MetadataResult
    timestamp: float


@dataclass
class InFlightRequest:
    """A fetch shared by every caller for the same stream URL."""
    task: "asyncio.Task[MetadataResult]"
    started_at: float
    settled_at: Optional[float] = None

    @property
    def is_settled(self) -> bool:
        return self.settled_at is not None


class MetadataCache:
    """
    Per-URL state machine: cache hit -> in-flight hit -> cold start.

    Args:
        fetcher: Coroutine function performing the real network fetch.
        clock: Monotonic time source in seconds; injectable for tests.
        ttl: Seconds a settled result may be served.
        grace: Seconds an in-flight entry is kept after settling, measured
               on the same clock as the TTL.
        max_entries: Cache size above which stale entries are swept.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        clock: Callable[[], float] = time.monotonic,
        ttl: float = 30.0,
        grace: float = 45.0,
        max_entries: int = 100,
    ):
        self._fetcher = fetcher
        self._clock = clock
        self._ttl = ttl
        self._grace = grace
        self._max_entries = max_entries
        self._cache: Dict[str, CacheEntry] = {}
        self._in_flight: Dict[str, InFlightRequest] = {}
        self._hits = 0
        self._shared = 0
        self._fetches = 0

    @classmethod
    def from_settings(cls, fetcher: Fetcher, settings: MetadataSettings) -> "MetadataCache":
        return cls(
            fetcher,
            ttl=settings.cache_ttl,
            grace=settings.inflight_grace,
            max_entries=settings.cache_max_entries,
        )

    async def get_metadata(self, url: str) -> MetadataResult:
        """
        Get metadata for a stream, fetching at most once per URL at a time.

        Raises:
            ValueError: If no URL is given.
        """
        if not url:
            raise ValueError("Stream URL required")

        # Decide and register without yielding to the event loop
        now = self._clock()
        self._purge_in_flight(now)

        cached = self._cache.get(url)
        if cached is not None and now - cached.timestamp < self._ttl:
            logger.debug(f"Using cached metadata for: {url}")
            self._hits += 1
            return cached.result

        request = self._in_flight.get(url)
        if request is not None and self._is_shareable(request, now):
            logger.debug(f"Reusing active metadata request for: {url}")
            self._shared += 1
        else:
            request = self._start(url, now)

        return await asyncio.shield(request.task)

    def _is_shareable(self, request: InFlightRequest, now: float) -> bool:
        if not request.is_settled:
            return True
        # A settled request never outlives the cache TTL as a source of answers
        return now - request.settled_at < min(self._ttl, self._grace)

    def _purge_in_flight(self, now: float) -> None:
        """Forget settled requests older than the grace period."""
        expired = [
            url
            for url, request in self._in_flight.items()
            if request.is_settled and now - request.settled_at >= self._grace
        ]
        for url in expired:
            del self._in_flight[url]

    def _start(self, url: str, now: float) -> InFlightRequest:
        task = asyncio.ensure_future(self._run_fetch(url))
        request = InFlightRequest(task=task, started_at=now)
        self._in_flight[url] = request
        self._fetches += 1
        task.add_done_callback(lambda t: self._on_settled(url, request, t))
        return request

    async def _run_fetch(self, url: str) -> MetadataResult:
        try:
            return await self._fetcher(url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Metadata request for {url} failed: {e}")
            return MetadataResult.failure(str(e) or "Metadata request failed")

    def _on_settled(self, url: str, request: InFlightRequest, task: asyncio.Task) -> None:
        now = self._clock()
        request.settled_at = now

        if task.cancelled():
            if self._in_flight.get(url) is request:
                del self._in_flight[url]
            return

        # Written even if clear() ran meanwhile; the entry carries a fresh timestamp
        self._cache[url] = CacheEntry(result=task.result(), timestamp=now)
        self._sweep(now)

    def _sweep(self, now: float) -> None:
        if len(self._cache) <= self._max_entries:
            return
        stale = [key for key, entry in self._cache.items() if now - entry.timestamp >= self._ttl]
        for key in stale:
            del self._cache[key]
        if stale:
            logger.debug(f"Evicted {len(stale)} stale metadata cache entries")

    def clear(self) -> None:
        """
        Drop all cached results and in-flight registrations.

        Running fetches are not cancelled; when they finish they store their
        result again as a fresh cache entry.
        """
        logger.info(
            f"Clearing {len(self._in_flight)} active requests and {len(self._cache)} cached entries"
        )
        self._in_flight.clear()
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, url: str) -> bool:
        return url in self._cache

    @property
    def in_flight_count(self) -> int:
        self._purge_in_flight(self._clock())
        return len(self._in_flight)

    def get_status(self) -> dict:
        """Get current cache status for debugging."""
        now = self._clock()
        self._purge_in_flight(now)
        return {
            "cached_entries": len(self._cache),
            "in_flight": sum(1 for r in self._in_flight.values() if not r.is_settled),
            "settled_in_flight": sum(1 for r in self._in_flight.values() if r.is_settled),
            "ttl_seconds": self._ttl,
            "grace_seconds": self._grace,
            "max_entries": self._max_entries,
            "hits": self._hits,
            "shared": self._shared,
            "fetches": self._fetches,
            "entries": [
                {
                    "url": url,
                    "age_seconds": round(now - entry.timestamp, 3),
                    "has_metadata": entry.result.has_metadata,
                }
                for url, entry in self._cache.items()
            ],
        }
