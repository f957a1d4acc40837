"""Moscow Exchange (MOEX ISS) securities provider.

This module fetches board listings from the MOEX Informational & Statistical
Server and decodes them into SecurityRecord objects.

API Endpoint:
    {base_url}/engines/{engine}/markets/{market}/boards/{board}/securities.json

The response carries a column-name header plus row data. Column order is not
fixed, so field positions are resolved by name on every response.
"""

import numbers
import threading
from typing import Any, Callable, Dict, Optional

import pandas as pd
import requests

from src.data.base import MarketSegment, SecuritiesProvider, SecurityRecord
from src.utils.exceptions import (
    DataProviderError,
    DataQualityError,
    RefreshCancelledError,
)
from src.utils.logging import get_logger, log_with_context

logger = get_logger(__name__)

SECID_COLUMN = "SECID"
SHORTNAME_COLUMN = "SHORTNAME"
LOTSIZE_COLUMN = "LOTSIZE"
BOARD_COLUMN = "BOARDID"


def _is_text(value: Any) -> bool:
    return isinstance(value, str)


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


class MoexProvider(SecuritiesProvider):
    """MOEX ISS implementation of SecuritiesProvider.

    Example:
        >>> provider = MoexProvider(price_column="PREVWAPRICE")
        >>> records = provider.fetch_segment(MarketSegment("stock", "shares", "TQBR"))
        >>> records["AFKS"].lot_size
        100.0
    """

    DEFAULT_BASE_URL = "https://iss.moex.com/iss"
    DEFAULT_PRICE_COLUMN = "PREVWAPRICE"
    QUERY_PARAMS = {"iss.meta": "off", "iss.only": "securities"}

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        price_column: str = DEFAULT_PRICE_COLUMN,
        timeout: float = 15.0,
        session: Optional[requests.Session] = None,
    ):
        """Initialize MOEX provider.

        Args:
            base_url: ISS root URL
            price_column: Name of the column holding the price. The name has
                changed between ISS versions, so it is configurable.
            timeout: Per-request timeout in seconds
            session: requests session to reuse (created if None)
        """
        self.base_url = base_url.rstrip("/")
        self.price_column = price_column
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.setdefault("Accept", "application/json")

        logger.debug(
            "MoexProvider initialized (base_url=%s, price_column=%s)",
            self.base_url,
            self.price_column,
        )

    def segment_url(self, segment: MarketSegment) -> str:
        """Build the listing URL for a segment."""
        return (
            f"{self.base_url}/engines/{segment.engine}/markets/{segment.market}"
            f"/boards/{segment.board}/securities.json"
        )

    def fetch_segment(
        self,
        segment: MarketSegment,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, SecurityRecord]:
        """Fetch and decode one segment listing.

        Args:
            segment: Segment to fetch
            cancel_event: Checked before the request and before decoding

        Returns:
            Dictionary mapping secid to SecurityRecord

        Raises:
            DataProviderError: If the request fails
            DataQualityError: If the response cannot be decoded
            RefreshCancelledError: If cancel_event is set
        """
        self._check_cancelled(segment, cancel_event)

        url = self.segment_url(segment)
        logger.debug("Fetching %s from %s", segment, url)

        try:
            response = self.session.get(url, params=self.QUERY_PARAMS, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise DataProviderError(f"Failed to fetch {segment} from MOEX: {e}") from e

        try:
            payload = response.json()
        except ValueError as e:
            raise DataQualityError(f"MOEX returned non-JSON content for {segment}: {e}") from e

        self._check_cancelled(segment, cancel_event)

        records = decode_securities(payload, segment, self.price_column)
        log_with_context(logger, "info", "Fetched segment", segment=segment, records=len(records))
        return records

    def close(self) -> None:
        """Close the underlying HTTP session."""
        self.session.close()

    @staticmethod
    def _check_cancelled(
        segment: MarketSegment, cancel_event: Optional[threading.Event]
    ) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise RefreshCancelledError(f"Fetch of {segment} was cancelled")


def decode_securities(
    payload: Any,
    segment: MarketSegment,
    price_column: str = MoexProvider.DEFAULT_PRICE_COLUMN,
) -> Dict[str, SecurityRecord]:
    """Decode an ISS securities table into records.

    Accepts either the full ISS body (``{"securities": {...}}``) or the bare
    table (``{"columns": [...], "data": [[...]]}``). Rows whose price is null
    are skipped, as are rows from another board when a BOARDID column exists.

    Args:
        payload: Parsed JSON body
        segment: Segment the payload belongs to (used for filtering/messages)
        price_column: Name of the price column

    Returns:
        Dictionary mapping secid to SecurityRecord

    Raises:
        DataQualityError: If the table is malformed, a required column is
            missing or a cell has the wrong type
    """
    table = payload.get("securities", payload) if isinstance(payload, dict) else None
    if not isinstance(table, dict) or "columns" not in table or "data" not in table:
        raise DataQualityError(f"Response for {segment} has no securities table")

    columns = table["columns"]
    rows = table["data"]
    if not isinstance(columns, list) or not all(isinstance(c, str) for c in columns):
        raise DataQualityError(f"Column header for {segment} is not a list of names")
    if not isinstance(rows, list):
        raise DataQualityError(f"Row data for {segment} is not a list")

    required = [SECID_COLUMN, SHORTNAME_COLUMN, LOTSIZE_COLUMN, price_column]
    missing = [c for c in required if c not in columns]
    if missing:
        raise DataQualityError(
            f"Missing required columns for {segment}: {missing}. "
            f"Available columns: {columns}"
        )

    for i, row in enumerate(rows):
        if not isinstance(row, list) or len(row) != len(columns):
            raise DataQualityError(
                f"Row {i} for {segment} does not match the {len(columns)}-column header"
            )

    frame = pd.DataFrame(rows, columns=columns, dtype=object)

    if BOARD_COLUMN in frame.columns:
        frame = frame[frame[BOARD_COLUMN] == segment.board]

    # Price not currently quoted
    frame = frame[frame[price_column].notna()]

    _check_column(frame, SECID_COLUMN, _is_text, "a string", segment)
    _check_column(frame, SHORTNAME_COLUMN, _is_text, "a string", segment)
    _check_column(frame, LOTSIZE_COLUMN, _is_number, "a number", segment)
    _check_column(frame, price_column, _is_number, "a number", segment)

    records: Dict[str, SecurityRecord] = {}
    subset = frame[[SECID_COLUMN, SHORTNAME_COLUMN, price_column, LOTSIZE_COLUMN]]
    for secid, short_name, price, lot_size in subset.itertuples(index=False, name=None):
        if price <= 0 or lot_size <= 0:
            logger.debug(
                "Skipping %s in %s: price=%s lot_size=%s", secid, segment, price, lot_size
            )
            continue
        records[secid] = SecurityRecord(
            secid=secid,
            short_name=short_name,
            price=float(price),
            lot_size=float(lot_size),
        )

    return records


def _check_column(
    frame: pd.DataFrame,
    column: str,
    predicate: Callable[[Any], bool],
    expected: str,
    segment: MarketSegment,
) -> None:
    """Raise DataQualityError on the first cell failing predicate."""
    if frame.empty:
        return
    valid = frame[column].map(predicate).astype(bool)
    if valid.all():
        return
    row_index = valid[~valid].index[0]
    value = frame.at[row_index, column]
    raise DataQualityError(
        f"{column} for row {row_index} in {segment} is not {expected}, "
        f"got {type(value).__name__}"
    )
