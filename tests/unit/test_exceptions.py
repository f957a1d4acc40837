"""Unit tests for custom exceptions."""

import pytest

from src.utils.exceptions import (
    AlreadyFinishedError,
    ConfigurationError,
    DataError,
    DataProviderError,
    DataQualityError,
    InvalidAllocationError,
    PortfolioError,
    RefreshCancelledError,
    SecurityNotFoundError,
    StorageError,
    WhatToBuyError,
)


class TestExceptionHierarchy:
    """Test exception inheritance hierarchy."""

    def test_configuration_error_inherits_from_base(self) -> None:
        assert issubclass(ConfigurationError, WhatToBuyError)

    def test_data_errors(self) -> None:
        """Test operational errors share DataError."""
        for exc in (DataProviderError, SecurityNotFoundError, StorageError):
            assert issubclass(exc, DataError)
            assert issubclass(exc, WhatToBuyError)

    def test_upstream_errors_inherit_from_provider_error(self) -> None:
        assert issubclass(DataQualityError, DataProviderError)
        assert issubclass(RefreshCancelledError, DataProviderError)

    def test_portfolio_errors_are_not_data_errors(self) -> None:
        """Test user-input errors are kept apart from server failures."""
        for exc in (InvalidAllocationError, AlreadyFinishedError):
            assert issubclass(exc, PortfolioError)
            assert not issubclass(exc, DataError)


class TestExceptionRaising:
    """Test raising and catching exceptions."""

    def test_raise_base_error(self) -> None:
        with pytest.raises(WhatToBuyError, match="Base error"):
            raise WhatToBuyError("Base error")

    def test_security_not_found_carries_secid(self) -> None:
        with pytest.raises(DataError, match="Security not found: AFKS") as exc_info:
            raise SecurityNotFoundError("AFKS")

        assert exc_info.value.secid == "AFKS"

    def test_invalid_allocation_carries_percentages(self) -> None:
        with pytest.raises(PortfolioError, match="exceed") as exc_info:
            raise InvalidAllocationError("would exceed 100%", available=20.0, current=80.0)

        assert exc_info.value.available == 20.0
        assert exc_info.value.current == 80.0

    def test_invalid_allocation_defaults(self) -> None:
        exc = InvalidAllocationError("bad line")

        assert exc.available is None
        assert exc.current is None

    def test_already_finished_carries_user(self) -> None:
        with pytest.raises(PortfolioError, match="already finished") as exc_info:
            raise AlreadyFinishedError(42)

        assert exc_info.value.user_id == 42
