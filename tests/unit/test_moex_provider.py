"""Unit tests for MoexProvider."""

import threading
from unittest.mock import MagicMock, patch

import pytest
import requests

from src.data.base import MarketSegment, SecurityRecord
from src.data.providers.moex_provider import MoexProvider, decode_securities
from src.utils.exceptions import (
    DataProviderError,
    DataQualityError,
    RefreshCancelledError,
)


def _mock_response(payload=None) -> MagicMock:
    response = MagicMock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


def _reverse_columns(payload: dict) -> dict:
    table = payload["securities"]
    return {
        "securities": {
            "columns": table["columns"][::-1],
            "data": [row[::-1] for row in table["data"]],
        }
    }


class TestMoexProvider:
    """Test cases for MoexProvider."""

    @pytest.fixture
    def provider(self) -> MoexProvider:
        """Create MoexProvider instance."""
        return MoexProvider()

    @pytest.fixture
    def segment(self) -> MarketSegment:
        return MarketSegment("stock", "shares", "TQBR")

    def test_fetch_segment_decodes_record(
        self, provider: MoexProvider, segment: MarketSegment, moex_payload: dict
    ) -> None:
        """Test AFKS is decoded exactly from the fixture."""
        with patch.object(provider.session, "get", return_value=_mock_response(moex_payload)):
            records = provider.fetch_segment(segment)

        assert records["AFKS"] == SecurityRecord(
            secid="AFKS", short_name="Система ао", price=27.785, lot_size=100.0
        )
        assert records["AFLT"].lot_size == 10.0

    def test_requests_segment_url(
        self, provider: MoexProvider, segment: MarketSegment, moex_payload: dict
    ) -> None:
        """Test one GET per segment with board-level URL and timeout."""
        with patch.object(
            provider.session, "get", return_value=_mock_response(moex_payload)
        ) as mock_get:
            provider.fetch_segment(segment)

        mock_get.assert_called_once()
        url = mock_get.call_args[0][0]
        assert url == (
            "https://iss.moex.com/iss/engines/stock/markets/shares"
            "/boards/TQBR/securities.json"
        )
        assert mock_get.call_args[1]["timeout"] == provider.timeout
        assert mock_get.call_args[1]["params"]["iss.only"] == "securities"

    def test_null_price_row_skipped(
        self, provider: MoexProvider, segment: MarketSegment, moex_payload: dict
    ) -> None:
        """Test securities without a quoted price are excluded."""
        with patch.object(provider.session, "get", return_value=_mock_response(moex_payload)):
            records = provider.fetch_segment(segment)

        assert "ZZZX" not in records

    def test_rows_from_other_boards_skipped(
        self, provider: MoexProvider, segment: MarketSegment, moex_payload: dict
    ) -> None:
        """Test rows whose BOARDID differs from the segment board are skipped."""
        with patch.object(provider.session, "get", return_value=_mock_response(moex_payload)):
            records = provider.fetch_segment(segment)

        assert "SBER" not in records
        assert set(records) == {"AFKS", "AFLT"}

    def test_column_order_is_resolved_by_name(
        self, segment: MarketSegment, moex_payload: dict
    ) -> None:
        """Test decoding does not depend on column positions."""
        expected = decode_securities(moex_payload, segment)
        reordered = decode_securities(_reverse_columns(moex_payload), segment)

        assert reordered == expected

    def test_price_column_is_configurable(
        self, segment: MarketSegment, moex_payload: dict
    ) -> None:
        """Test a different price column name can be used."""
        provider = MoexProvider(price_column="PREVPRICE")
        with patch.object(provider.session, "get", return_value=_mock_response(moex_payload)):
            records = provider.fetch_segment(segment)

        assert records["AFKS"].price == 27.8

    def test_bare_table_payload_accepted(self, segment: MarketSegment, moex_payload: dict) -> None:
        """Test a body without the securities wrapper is decoded too."""
        records = decode_securities(moex_payload["securities"], segment)

        assert "AFKS" in records

    def test_missing_column_raises_data_quality_error(
        self, segment: MarketSegment, moex_payload: dict
    ) -> None:
        """Test a missing required column fails fast with its name."""
        table = moex_payload["securities"]
        index = table["columns"].index("LOTSIZE")
        table["columns"].pop(index)
        for row in table["data"]:
            row.pop(index)

        with pytest.raises(DataQualityError, match="LOTSIZE"):
            decode_securities(moex_payload, segment)

    def test_wrong_cell_type_raises_data_quality_error(
        self, segment: MarketSegment, moex_payload: dict
    ) -> None:
        """Test a text price is reported with column and row."""
        table = moex_payload["securities"]
        table["data"][0][table["columns"].index("PREVWAPRICE")] = "27.785"

        with pytest.raises(DataQualityError, match="PREVWAPRICE for row 0"):
            decode_securities(moex_payload, segment)

    def test_short_row_raises_data_quality_error(
        self, segment: MarketSegment, moex_payload: dict
    ) -> None:
        """Test rows that do not match the header are rejected."""
        moex_payload["securities"]["data"][1] = ["AFLT", "TQBR"]

        with pytest.raises(DataQualityError, match="Row 1"):
            decode_securities(moex_payload, segment)

    def test_missing_table_raises_data_quality_error(self, segment: MarketSegment) -> None:
        """Test a body without columns/data is rejected."""
        with pytest.raises(DataQualityError, match="no securities table"):
            decode_securities({"marketdata": {}}, segment)

    def test_non_positive_lot_size_skipped(
        self, segment: MarketSegment, moex_payload: dict
    ) -> None:
        """Test records that would violate price/lot invariants are dropped."""
        table = moex_payload["securities"]
        table["data"][1][table["columns"].index("LOTSIZE")] = 0

        records = decode_securities(moex_payload, segment)

        assert "AFLT" not in records
        assert "AFKS" in records

    def test_network_error_raises_data_provider_error(
        self, provider: MoexProvider, segment: MarketSegment
    ) -> None:
        """Test connection failures are wrapped."""
        with patch.object(
            provider.session, "get", side_effect=requests.ConnectionError("boom")
        ):
            with pytest.raises(DataProviderError, match="Failed to fetch stock/shares/TQBR"):
                provider.fetch_segment(segment)

    def test_http_error_raises_data_provider_error(
        self, provider: MoexProvider, segment: MarketSegment
    ) -> None:
        """Test non-2xx responses are wrapped."""
        response = _mock_response()
        response.raise_for_status.side_effect = requests.HTTPError("503 Server Error")
        with patch.object(provider.session, "get", return_value=response):
            with pytest.raises(DataProviderError, match="503"):
                provider.fetch_segment(segment)

    def test_non_json_raises_data_quality_error(
        self, provider: MoexProvider, segment: MarketSegment
    ) -> None:
        """Test undecodable bodies raise DataQualityError."""
        response = _mock_response()
        response.json.side_effect = ValueError("Expecting value")
        with patch.object(provider.session, "get", return_value=response):
            with pytest.raises(DataQualityError, match="non-JSON"):
                provider.fetch_segment(segment)

    def test_cancelled_before_request(
        self, provider: MoexProvider, segment: MarketSegment
    ) -> None:
        """Test a set cancel event prevents the request."""
        cancel = threading.Event()
        cancel.set()
        with patch.object(provider.session, "get") as mock_get:
            with pytest.raises(RefreshCancelledError):
                provider.fetch_segment(segment, cancel)

        mock_get.assert_not_called()

    def test_upstream_errors_share_base_class(self) -> None:
        """Test decode and cancel errors are upstream failures."""
        assert issubclass(DataQualityError, DataProviderError)
        assert issubclass(RefreshCancelledError, DataProviderError)
