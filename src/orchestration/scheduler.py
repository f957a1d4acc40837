"""Cache Refresh Scheduler - APScheduler job that keeps market data warm.

Refreshing on a timer means user lookups rarely pay for a full refresh.
A failing refresh is logged and retried on the next tick; it never stops
the scheduler.
"""

from datetime import datetime
from typing import Optional

import pytz
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.data.cache import MarketDataCache
from src.utils.logging import get_logger

logger = get_logger(__name__)

MOSCOW_TZ = pytz.timezone("Europe/Moscow")
REFRESH_JOB_ID = "market_data_refresh"


class CacheRefreshScheduler:
    """APScheduler wrapper running MarketDataCache.refresh on an interval.

    Example:
        >>> scheduler = CacheRefreshScheduler(cache, {"refresh_interval_minutes": 30})
        >>> scheduler.start()
        >>> ...
        >>> scheduler.stop()
    """

    def __init__(self, cache: MarketDataCache, config: Optional[dict] = None):
        """Initialize refresh scheduler.

        Args:
            cache: Cache to refresh
            config: Scheduler settings
                - refresh_interval_minutes: Minutes between refreshes (default: 60)
                - timezone: Scheduler timezone (default: Europe/Moscow)
                - run_immediately: Refresh once on start (default: True)
                - misfire_grace_time: Seconds a late run is still allowed (default: 60)
        """
        self.cache = cache
        self.config = config or {}

        self.interval_minutes = float(self.config.get("refresh_interval_minutes", 60))
        if self.interval_minutes <= 0:
            raise ValueError(
                f"refresh_interval_minutes must be positive, got {self.interval_minutes}"
            )
        timezone_name = self.config.get("timezone")
        self.timezone = pytz.timezone(timezone_name) if timezone_name else MOSCOW_TZ

        self.scheduler = BackgroundScheduler(
            timezone=self.timezone,
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": self.config.get("misfire_grace_time", 60),
            },
        )
        self.scheduler.add_listener(
            self._on_job_executed, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR
        )
        self.refresh_count = 0
        self.failure_count = 0

        logger.info(
            "CacheRefreshScheduler initialized (every %.1f min, timezone: %s)",
            self.interval_minutes,
            self.timezone,
        )

    def _refresh(self) -> int:
        return self.cache.refresh()

    def _on_job_executed(self, event) -> None:
        """Event listener for job execution/errors.

        Args:
            event: APScheduler event object
        """
        if event.exception:
            self.failure_count += 1
            logger.error(
                "Job '%s' raised exception: %s",
                event.job_id,
                event.exception,
            )
        else:
            self.refresh_count += 1
            logger.debug("Job '%s' cached %s records", event.job_id, event.retval)

    def start(self) -> None:
        """Register the refresh job and start the scheduler (non-blocking)."""
        if self.scheduler.running:
            logger.warning("Scheduler already running")
            return

        job_kwargs = {}
        if self.config.get("run_immediately", True):
            job_kwargs["next_run_time"] = self._now()

        self.scheduler.add_job(
            func=self._refresh,
            trigger=IntervalTrigger(minutes=self.interval_minutes, timezone=self.timezone),
            id=REFRESH_JOB_ID,
            name=REFRESH_JOB_ID,
            replace_existing=True,
            **job_kwargs,
        )
        self.scheduler.start()
        logger.info("Scheduler started")

    def stop(self) -> None:
        """Stop the scheduler, waiting for a running refresh to finish."""
        if not self.scheduler.running:
            logger.warning("Scheduler not running")
            return

        logger.info("Shutting down scheduler...")
        self.scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        return self.scheduler.running

    def _now(self) -> datetime:
        return datetime.now(self.timezone)
