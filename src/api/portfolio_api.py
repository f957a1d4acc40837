"""User-facing Portfolio API for allocation intake and purchase planning.

This module is the seam between a command surface (chat bot, CLI) and the
core: it tokenizes "TICKER PERCENT" input, resolves tickers through the
market data cache, keeps each user's allocation at or below 100% and turns a
finished allocation plus a cash amount into a lot purchase plan.

User-input problems raise InvalidAllocationError or AlreadyFinishedError
with a message fit to show the user. Upstream and storage failures
propagate unchanged.
"""

import math
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Hashable, Iterable, List, Mapping, Optional, Union

from src.data.base import segments_from_config
from src.data.cache import MarketDataCache
from src.data.providers.moex_provider import MoexProvider
from src.portfolio.allocation import AllocationEngine, PurchasePlan
from src.portfolio.store import Allocation, PortfolioStore
from src.utils.config import Config
from src.utils.exceptions import (
    AlreadyFinishedError,
    InvalidAllocationError,
    SecurityNotFoundError,
)
from src.utils.logging import get_logger, log_with_context

logger = get_logger(__name__)

FULL_PERCENT = 100.0
# Totals are rounded to drop binary noise such as 33.3 + 33.3 + 33.4, which
# stays far below any percent a user can type.
PERCENT_DECIMALS = 9


def percent_total(percents: Iterable[float]) -> float:
    """Sum percentages exactly and round away binary float noise."""
    return round(math.fsum(percents), PERCENT_DECIMALS)


@dataclass
class IntakeResult:
    """Outcome of one add_allocation call.

    Attributes:
        added: Resolved secids and the percents written for them
        not_found: Tickers that could not be resolved (as typed, upper-cased)
        allocation: Full allocation after the write
    """

    added: Dict[str, float]
    not_found: List[str]
    allocation: Dict[str, float] = field(default_factory=dict)

    @property
    def total_percent(self) -> float:
        return percent_total(self.allocation.values())

    @property
    def complete(self) -> bool:
        """Whether the allocation now sums to 100%."""
        return self.total_percent == FULL_PERCENT


@dataclass
class ViewLine:
    """One row of a portfolio view."""

    secid: str
    percent: float
    short_name: Optional[str] = None


def _kept_percents(current: Mapping[str, float], updates: Mapping[str, float]) -> List[float]:
    """Current percents of secids that updates will not replace."""
    return [percent for secid, percent in current.items() if secid not in updates]


def check_within_limit(current: Allocation, updates: Allocation) -> None:
    """Reject updates that would push the allocation over 100%.

    Used as the in-transaction validator of PortfolioStore.add_entries.

    Raises:
        InvalidAllocationError: With the still-available and current percent
    """
    kept_percents = _kept_percents(current, updates)
    if percent_total(kept_percents + list(updates.values())) > FULL_PERCENT:
        kept = percent_total(kept_percents)
        available = round(FULL_PERCENT - kept, PERCENT_DECIMALS)
        raise InvalidAllocationError(
            f"Cannot add this percentage, the total would exceed 100%. "
            f"Available: {available:.2f}, already allocated: {kept:.2f}",
            available=available,
            current=kept,
        )


class PortfolioAPI:
    """High-level API for building and using a target allocation.

    Example:
        >>> api = PortfolioAPI.from_config(load_config())
        >>> api.add_allocation(42, "FXMM 30\\nSBER 70").complete
        True
        >>> api.finish(42)
        >>> plan = api.buy(42, 100_000)
        >>> plan.total_spend <= 100_000
        True
    """

    DEFAULT_TICKER_SUFFIX = "-RM"

    def __init__(
        self,
        store: PortfolioStore,
        cache: MarketDataCache,
        engine: Optional[AllocationEngine] = None,
        ticker_suffix: str = DEFAULT_TICKER_SUFFIX,
    ):
        """Initialize PortfolioAPI.

        Args:
            store: Portfolio store
            cache: Market data cache used to resolve tickers and prices
            engine: Allocation engine (defaults to AllocationEngine())
            ticker_suffix: Market marker tried when a ticker is not found
                as typed; empty string disables the fallback
        """
        self.store = store
        self.cache = cache
        self.engine = engine or AllocationEngine()
        self.ticker_suffix = ticker_suffix

        logger.debug("PortfolioAPI initialized (ticker_suffix=%r)", ticker_suffix)

    @classmethod
    def from_config(cls, config: Config) -> "PortfolioAPI":
        """Wire provider, cache, store and engine from configuration.

        Args:
            config: Loaded Config (see config/default.yaml)

        Returns:
            PortfolioAPI instance
        """
        provider = MoexProvider(
            base_url=config.get("moex.base_url", MoexProvider.DEFAULT_BASE_URL),
            price_column=config.get("moex.price_column", MoexProvider.DEFAULT_PRICE_COLUMN),
            timeout=float(config.get("moex.timeout_seconds", 15)),
        )
        segments = segments_from_config(config.get("moex.segments"))
        cache = MarketDataCache(
            provider,
            segments=segments,
            ttl=timedelta(hours=float(config.get("cache.ttl_hours", 24))),
            max_workers=int(config.get("cache.max_workers", len(segments))),
        )
        store = PortfolioStore(config.get("store.path") or None)
        return cls(
            store=store,
            cache=cache,
            ticker_suffix=config.get("intake.ticker_suffix", cls.DEFAULT_TICKER_SUFFIX),
        )

    @staticmethod
    def parse_allocation_text(text: str) -> Dict[str, float]:
        """Parse "TICKER PERCENT" lines.

        Blank lines are ignored, tickers are upper-cased and a repeated
        ticker keeps its last percent.

        Args:
            text: One or more lines, e.g. "FXMM 30\\nRU000A0JS1W0 10"

        Returns:
            Mapping of ticker to percent

        Raises:
            InvalidAllocationError: On a malformed line or a percent outside
                0..100
        """
        parsed: Dict[str, float] = {}
        for line in text.splitlines():
            parts = line.split()
            if not parts:
                continue
            if len(parts) != 2:
                raise InvalidAllocationError(
                    f"Invalid format in {line.strip()!r}: expected 'ticker percent'"
                )
            ticker, raw_percent = parts
            try:
                percent = float(raw_percent.replace(",", "."))
            except ValueError as e:
                raise InvalidAllocationError(
                    f"Percent for {ticker.upper()} is not a number: {raw_percent!r}"
                ) from e
            if not 0 <= percent <= FULL_PERCENT:
                raise InvalidAllocationError(
                    f"Percent for {ticker.upper()} must be between 0 and 100, got {raw_percent}"
                )
            parsed[ticker.upper()] = percent

        if not parsed:
            raise InvalidAllocationError("No positions given: expected 'ticker percent' lines")
        return parsed

    def resolve_ticker(self, ticker: str) -> Optional[str]:
        """Resolve a ticker to a cached secid, trying the suffix variant.

        Returns:
            The secid found (ticker or ticker + suffix), or None

        Raises:
            DataProviderError: If a refresh fails
        """
        try:
            return self.cache.lookup(ticker).secid
        except SecurityNotFoundError:
            if not self.ticker_suffix or ticker.endswith(self.ticker_suffix):
                return None

        try:
            return self.cache.lookup(ticker + self.ticker_suffix).secid
        except SecurityNotFoundError:
            return None

    def display_ticker(self, secid: str) -> str:
        """Strip the market suffix added by resolve_ticker."""
        if self.ticker_suffix and secid.endswith(self.ticker_suffix):
            return secid[: -len(self.ticker_suffix)]
        return secid

    def add_allocation(
        self, user_id: Hashable, entries: Union[str, Mapping[str, float]]
    ) -> IntakeResult:
        """Add or replace positions in a user's allocation.

        Args:
            user_id: Opaque user identifier
            entries: "TICKER PERCENT" text or a ticker -> percent mapping

        Returns:
            IntakeResult describing what was written

        Raises:
            AlreadyFinishedError: If the user already finished
            InvalidAllocationError: On malformed input or if the total would
                exceed 100%
        """
        if self.store.is_finished(user_id):
            raise AlreadyFinishedError(user_id)

        if isinstance(entries, str):
            requested = self.parse_allocation_text(entries)
        else:
            requested = {}
            for ticker, raw_percent in entries.items():
                ticker = ticker.upper()
                try:
                    percent = float(raw_percent)
                except (TypeError, ValueError) as e:
                    raise InvalidAllocationError(
                        f"Percent for {ticker} is not a number: {raw_percent!r}"
                    ) from e
                requested[ticker] = percent
                if not 0 <= percent <= FULL_PERCENT:
                    raise InvalidAllocationError(
                        f"Percent for {ticker} must be between 0 and 100, got {percent}"
                    )

        added: Dict[str, float] = {}
        not_found: List[str] = []
        for ticker, percent in requested.items():
            secid = self.resolve_ticker(ticker)
            if secid is None:
                not_found.append(ticker)
                continue
            added[secid] = percent

        self.store.add_entries(user_id, added, validator=check_within_limit)
        result = IntakeResult(
            added=added,
            not_found=not_found,
            allocation=self.store.get_allocation(user_id),
        )

        log_with_context(
            logger,
            "info",
            "Allocation updated",
            user=user_id,
            added=len(added),
            not_found=len(not_found),
            total=f"{result.total_percent:.2f}",
        )
        return result

    def finish(self, user_id: Hashable) -> Allocation:
        """Lock a complete (100%) allocation.

        Returns:
            The finished allocation

        Raises:
            InvalidAllocationError: If the percents do not sum to 100
            AlreadyFinishedError: If already finished
        """
        allocation = self.store.get_allocation(user_id)
        total = percent_total(allocation.values())
        if total != FULL_PERCENT:
            raise InvalidAllocationError(
                f"Portfolio percents sum to {total:.10g}%, not 100%",
                available=round(FULL_PERCENT - total, PERCENT_DECIMALS),
                current=total,
            )
        self.store.finish(user_id)
        return allocation

    def restart(self, user_id: Hashable) -> Dict[str, float]:
        """Clear the user's allocation and finished flag.

        Returns:
            The previous allocation keyed by display ticker, for undo
        """
        snapshot = self.store.clear_data(user_id)
        return {self.display_ticker(secid): percent for secid, percent in snapshot.items()}

    def view(self, user_id: Hashable) -> List[ViewLine]:
        """Describe the user's allocation, sorted by secid.

        Raises:
            DataProviderError: If resolving names requires a failing refresh
        """
        allocation = self.store.get_allocation(user_id)
        if not allocation:
            return []
        records = self.cache.lookup_many(allocation)
        return [
            ViewLine(
                secid=self.display_ticker(secid),
                percent=percent,
                short_name=records[secid].short_name if secid in records else None,
            )
            for secid, percent in sorted(allocation.items())
        ]

    def buy(self, user_id: Hashable, capital: float) -> PurchasePlan:
        """Plan whole-lot purchases for a finished allocation.

        Args:
            user_id: Opaque user identifier
            capital: Cash to spend

        Returns:
            PurchasePlan; securities without a current price are UNPRICED lines

        Raises:
            InvalidAllocationError: If the allocation is not finished or
                capital is invalid
            DataProviderError: If prices cannot be refreshed
        """
        capital = self.engine.validate_capital(capital)
        if not self.store.is_finished(user_id):
            raise InvalidAllocationError(
                "Portfolio is not finished yet: fill it up to 100% and finish it first"
            )
        allocation = self.store.get_allocation(user_id)
        prices = self.cache.lookup_many(allocation)
        return self.engine.plan(allocation, prices, capital)

    def close(self) -> None:
        """Release the store and the upstream HTTP session."""
        self.store.close()
        close_provider = getattr(self.cache.provider, "close", None)
        if close_provider is not None:
            close_provider()
