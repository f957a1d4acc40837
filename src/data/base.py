"""Core market data types and the securities provider interface.

This module defines the records the cache stores and the SecuritiesProvider
interface that upstream clients must implement.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

from src.utils.exceptions import ConfigurationError


@dataclass(frozen=True)
class SecurityRecord:
    """Price, lot size and display name of one security.

    Attributes:
        secid: Exchange security identifier (e.g. "AFKS")
        short_name: Short display name (e.g. "Система ао")
        price: Last quoted price, always positive
        lot_size: Number of securities in one lot, always positive
    """

    secid: str
    short_name: str
    price: float
    lot_size: float

    def __post_init__(self):
        """Validate record fields."""
        if self.price <= 0:
            raise ValueError(f"price must be positive, got {self.price}")
        if self.lot_size <= 0:
            raise ValueError(f"lot_size must be positive, got {self.lot_size}")


@dataclass(frozen=True)
class MarketSegment:
    """One (engine, market, board) listing tracked by the cache."""

    engine: str
    market: str
    board: str

    def __str__(self) -> str:
        return f"{self.engine}/{self.market}/{self.board}"


# Reference configuration: shares, treasury bonds, corporate bonds,
# index instruments and foreign shares.
DEFAULT_SEGMENTS: List[MarketSegment] = [
    MarketSegment("stock", "shares", "TQBR"),
    MarketSegment("stock", "bonds", "TQOB"),
    MarketSegment("stock", "bonds", "TQCB"),
    MarketSegment("stock", "index", "SNDX"),
    MarketSegment("stock", "foreignshares", "FQBR"),
]


def segments_from_config(raw_segments: Optional[list]) -> List[MarketSegment]:
    """Build MarketSegment list from the ``moex.segments`` config entry.

    Args:
        raw_segments: List of mappings with engine, market and board keys.
            None falls back to DEFAULT_SEGMENTS.

    Returns:
        List of MarketSegment

    Raises:
        ConfigurationError: If an entry is malformed or the list is empty
    """
    if raw_segments is None:
        return list(DEFAULT_SEGMENTS)

    if not isinstance(raw_segments, list) or not raw_segments:
        raise ConfigurationError("moex.segments must be a non-empty list")

    segments = []
    for i, entry in enumerate(raw_segments):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"moex.segments[{i}] must be a mapping")
        missing = [k for k in ("engine", "market", "board") if not entry.get(k)]
        if missing:
            raise ConfigurationError(
                f"moex.segments[{i}] is missing required keys: {missing}"
            )
        segments.append(
            MarketSegment(str(entry["engine"]), str(entry["market"]), str(entry["board"]))
        )
    return segments


class SecuritiesProvider(ABC):
    """Abstract interface for security listing sources.

    A provider fetches one market segment at a time and returns decoded
    records. It does no caching.
    """

    @abstractmethod
    def fetch_segment(
        self,
        segment: MarketSegment,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, SecurityRecord]:
        """Fetch and decode every quoted security in a segment.

        Args:
            segment: Segment to fetch
            cancel_event: Set by the caller to abandon the fetch

        Returns:
            Dictionary mapping secid to SecurityRecord. Securities without a
            quoted price are absent.

        Raises:
            DataProviderError: On network failure or non-2xx response
            DataQualityError: If the response cannot be decoded
            RefreshCancelledError: If cancel_event was set
        """
        pass
