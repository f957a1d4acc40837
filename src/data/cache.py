"""Market data cache with parallel segment refresh.

This module keeps price, lot size and name data for every tracked market
segment in memory with a time-to-live, refreshing from the upstream provider
on a miss or expiry.

Refresh fans out one task per segment. Each segment is written to the cache
as soon as its own fetch completes. If any fetch fails, the remaining tasks
are cancelled and the failure is raised, but segments cached before the
failure was observed stay cached. Callers must tolerate a partially
refreshed cache after a failed refresh.

Concurrent misses are not deduplicated: two threads missing different ids at
the same time each run a full refresh.
"""

import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, Optional

from cachetools import TTLCache

from src.data.base import DEFAULT_SEGMENTS, MarketSegment, SecuritiesProvider, SecurityRecord
from src.utils.exceptions import (
    DataProviderError,
    RefreshCancelledError,
    SecurityNotFoundError,
)
from src.utils.logging import get_logger, log_with_context

logger = get_logger(__name__)


class _ChildCancelEvent(threading.Event):
    """Cancel token for one refresh that also observes the caller's token."""

    def __init__(self, parent: Optional[threading.Event] = None):
        super().__init__()
        self._parent = parent

    def is_set(self) -> bool:
        return super().is_set() or (self._parent is not None and self._parent.is_set())


class MarketDataCache:
    """In-memory security cache backed by a SecuritiesProvider.

    Attributes:
        provider: Upstream client used for refreshes
        segments: Market segments fetched on every refresh
        ttl: Lifetime of an entry after it is written
        max_workers: Thread pool size for refresh fan-out

    Example:
        >>> cache = MarketDataCache(MoexProvider())
        >>> record = cache.lookup("AFKS")
        >>> record.price, record.lot_size
        (27.785, 100.0)
    """

    DEFAULT_TTL = timedelta(hours=24)

    def __init__(
        self,
        provider: SecuritiesProvider,
        segments: Optional[Iterable[MarketSegment]] = None,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
        max_workers: Optional[int] = None,
    ):
        """Initialize the cache.

        Args:
            provider: Upstream securities provider
            segments: Segments to refresh (defaults to DEFAULT_SEGMENTS)
            ttl: Entry lifetime (default 24 hours)
            clock: Returns the current time in seconds; injectable for tests
            max_workers: Refresh pool size (defaults to one per segment)
        """
        self.provider = provider
        self.segments: List[MarketSegment] = list(
            DEFAULT_SEGMENTS if segments is None else segments
        )
        if not self.segments:
            raise ValueError("At least one market segment is required")
        if ttl.total_seconds() <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        self.ttl = ttl
        self.max_workers = max_workers or len(self.segments)
        # Entries expire once clock() reaches write time plus ttl.
        self._entries: TTLCache = TTLCache(
            maxsize=math.inf, ttl=ttl.total_seconds(), timer=clock
        )
        self._lock = threading.Lock()

        logger.debug(
            "MarketDataCache initialized with %d segments (ttl=%s)",
            len(self.segments),
            self.ttl,
        )

    def lookup(
        self, secid: str, cancel_event: Optional[threading.Event] = None
    ) -> SecurityRecord:
        """Return a fresh record, refreshing once on a miss.

        Args:
            secid: Security identifier
            cancel_event: Passed to the refresh triggered by a miss

        Returns:
            SecurityRecord for secid

        Raises:
            SecurityNotFoundError: If secid is still absent after a refresh
            DataProviderError: If the refresh fails
        """
        record = self.peek(secid)
        if record is not None:
            logger.debug("Cache hit for %s", secid)
            return record

        logger.debug("Cache miss for %s, refreshing", secid)
        self.refresh(cancel_event)

        record = self.peek(secid)
        if record is None:
            raise SecurityNotFoundError(secid)
        return record

    def lookup_many(
        self, secids: Iterable[str], cancel_event: Optional[threading.Event] = None
    ) -> Dict[str, SecurityRecord]:
        """Resolve several ids, omitting the ones that are not found.

        Args:
            secids: Security identifiers
            cancel_event: Passed to refreshes triggered by misses

        Returns:
            Dictionary mapping each found secid to its record

        Raises:
            DataProviderError: If a refresh fails
        """
        result: Dict[str, SecurityRecord] = {}
        for secid in secids:
            try:
                result[secid] = self.lookup(secid, cancel_event)
            except SecurityNotFoundError:
                logger.debug("Omitting unknown security %s from batch lookup", secid)
        return result

    def peek(self, secid: str) -> Optional[SecurityRecord]:
        """Return a cached, non-expired record without refreshing."""
        with self._lock:
            return self._entries.get(secid)

    def refresh(self, cancel_event: Optional[threading.Event] = None) -> int:
        """Fetch every segment in parallel and cache the results.

        Args:
            cancel_event: Caller's cancel token. Setting it abandons fetches
                that have not completed yet.

        Returns:
            Number of records written to the cache

        Raises:
            DataProviderError: If any segment fetch fails or is cancelled
        """
        group_cancel = _ChildCancelEvent(cancel_event)
        first_error: Optional[BaseException] = None
        failed_segment: Optional[MarketSegment] = None
        cached = 0
        started = time.perf_counter()

        logger.info("Refreshing market data for %d segments", len(self.segments))

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="market-refresh"
        ) as executor:
            futures = {
                executor.submit(self._load_and_cache, segment, group_cancel): segment
                for segment in self.segments
            }
            for future in as_completed(futures):
                segment = futures[future]
                if future.cancelled():
                    continue
                try:
                    cached += future.result()
                except Exception as e:
                    if first_error is None:
                        first_error = e
                        failed_segment = segment
                        group_cancel.set()
                        for pending in futures:
                            pending.cancel()
                    else:
                        logger.debug("Segment %s also failed: %s", segment, e)

        elapsed = time.perf_counter() - started

        if first_error is not None:
            log_with_context(
                logger,
                "error",
                "Market data refresh failed",
                segment=failed_segment,
                error=first_error,
                cached=cached,
            )
            if isinstance(first_error, DataProviderError):
                raise first_error
            raise DataProviderError(
                f"Refresh of {failed_segment} failed: {first_error}"
            ) from first_error

        log_with_context(
            logger, "info", "Market data refreshed", records=cached, seconds=f"{elapsed:.2f}"
        )
        return cached

    def invalidate(self) -> None:
        """Drop every cached entry."""
        with self._lock:
            self._entries.clear()
        logger.debug("Market data cache invalidated")

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)

    def __contains__(self, secid: str) -> bool:
        return self.peek(secid) is not None

    def _load_and_cache(self, segment: MarketSegment, cancel_event: threading.Event) -> int:
        records = self.provider.fetch_segment(segment, cancel_event)
        if cancel_event.is_set():
            raise RefreshCancelledError(f"Refresh cancelled before caching {segment}")
        self._store(records.values())
        logger.debug("Cached %d records from %s", len(records), segment)
        return len(records)

    def _store(self, records: Iterable[SecurityRecord]) -> None:
        with self._lock:
            for record in records:
                self._entries[record.secid] = record
