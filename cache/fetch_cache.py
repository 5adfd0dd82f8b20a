"""Short-TTL in-memory cache for rate-limited upstream APIs.

Shelly Cloud and Victron VRM answer with HTTP 429 when several dashboard
tabs poll them at once. All upstream reads go through a FetchCache so that
identical requests collapse into at most one call per key and TTL window:

- a fresh entry is returned without touching the network
- while a fetch for a key is in flight, other callers wait for it
- a failed fetch falls back to the last good value, however old

Each upstream call runs on its own daemon thread so that a hung request can
be abandoned after fetch_timeout_s instead of blocking the key forever. The
timeout starts when the call starts; it never includes time spent queueing.
"""

import logging
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)


class FetchTimeoutError(TimeoutError):
    """Raised when an upstream fetch does not finish within the timeout."""


@dataclass(frozen=True)
class CacheEntry:
    data: Any
    timestamp: float


class FetchCache:
    def __init__(
        self,
        fetch_timeout_s: float | None = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.fetch_timeout_s = fetch_timeout_s
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, CacheEntry] = {}
        self._pending: dict[str, Future] = {}
        self.hits = 0
        self.misses = 0
        self.coalesced = 0
        self.stale_served = 0

    def get_or_fetch(self, key: str, ttl_s: float, fetch_fn: Callable[[], Any]) -> Any:
        """Return cached data for key, or fetch it once for all concurrent callers."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._clock() - entry.timestamp < ttl_s:
                self.hits += 1
                logger.debug("Cache HIT for %s", key)
                return entry.data

            pending = self._pending.get(key)
            if pending is not None:
                self.coalesced += 1
                leader = False
            else:
                pending = Future()
                self._pending[key] = pending
                self.misses += 1
                leader = True

        if not leader:
            logger.debug("Waiting for in-flight fetch of %s", key)
            return pending.result()

        logger.debug("Cache MISS for %s, fetching", key)
        try:
            data = self._run(key, fetch_fn)
        except Exception as e:
            with self._lock:
                self._pending.pop(key, None)
                stale = self._entries.get(key)
                if stale is not None:
                    self.stale_served += 1
            if stale is not None:
                logger.warning(
                    "Fetch for %s failed (%s); serving stale data from %.0fs ago",
                    key, e, self._clock() - stale.timestamp,
                )
                pending.set_result(stale.data)
                return stale.data
            logger.error("Fetch for %s failed with no cached fallback: %s", key, e)
            pending.set_exception(e)
            raise
        except BaseException as e:
            # KeyboardInterrupt, SystemExit etc.: release waiters, never serve stale
            with self._lock:
                self._pending.pop(key, None)
            pending.set_exception(e)
            raise

        with self._lock:
            self._entries[key] = CacheEntry(data=data, timestamp=self._clock())
            self._pending.pop(key, None)
        pending.set_result(data)
        return data

    def _run(self, key: str, fetch_fn: Callable[[], Any]) -> Any:
        if self.fetch_timeout_s is None:
            return fetch_fn()
        job = Future()
        job.set_running_or_notify_cancel()

        def worker():
            try:
                job.set_result(fetch_fn())
            except BaseException as e:
                job.set_exception(e)

        threading.Thread(target=worker, name=f"fetch-{key}", daemon=True).start()
        try:
            return job.result(timeout=self.fetch_timeout_s)
        except FutureTimeout:
            # The worker keeps running; its result is discarded.
            raise FetchTimeoutError(
                f"Fetch for {key} timed out after {self.fetch_timeout_s:g}s"
            ) from None

    def peek(self, key: str) -> CacheEntry | None:
        with self._lock:
            return self._entries.get(key)

    def invalidate(self, key: str) -> bool:
        """Drop the entry for key. In-flight fetches are left alone."""
        with self._lock:
            removed = self._entries.pop(key, None) is not None
        if removed:
            logger.info("Cache entry %s invalidated", key)
        return removed

    def clear(self):
        with self._lock:
            self._entries.clear()
        logger.info("Cache cleared")

    def stats(self) -> dict:
        with self._lock:
            now = self._clock()
            return {
                "size": len(self._entries),
                "keys": sorted(self._entries),
                "ages_s": {
                    k: round(now - e.timestamp, 1) for k, e in self._entries.items()
                },
                "pending": sorted(self._pending),
                "hits": self.hits,
                "misses": self.misses,
                "coalesced": self.coalesced,
                "stale_served": self.stale_served,
            }

    def close(self):
        """Drop all entries. Fetches still running finish on their own threads."""
        with self._lock:
            self._entries.clear()
