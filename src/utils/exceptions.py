"""Custom exceptions for whattobuy.

This module defines the exception hierarchy for the application.
"""

from typing import Optional


class WhatToBuyError(Exception):
    """Base exception for all whattobuy errors.

    All custom exceptions in the application should inherit from this class.
    """

    pass


class ConfigurationError(WhatToBuyError):
    """Raised when configuration is invalid or missing.

    Examples:
        - Missing market segment definitions
        - Invalid configuration values
        - Configuration file not found
    """

    pass


class DataError(WhatToBuyError):
    """Base exception for data layer errors.

    Parent class for all data-related exceptions.
    """

    pass


class DataProviderError(DataError):
    """Raised when the upstream exchange source fails.

    Examples:
        - Network connection failed or timed out
        - Non-2xx response from the exchange
        - Response body is not JSON
    """

    pass


class DataQualityError(DataProviderError):
    """Raised when an upstream response cannot be decoded.

    Examples:
        - Expected column missing from the header
        - Cell of the wrong type (e.g. text where a price is expected)
    """

    pass


class RefreshCancelledError(DataProviderError):
    """Raised when a segment fetch is cancelled before it completes."""

    pass


class SecurityNotFoundError(DataError):
    """Raised when a security identifier is unknown after a refresh."""

    def __init__(self, secid: str):
        super().__init__(f"Security not found: {secid}")
        self.secid = secid


class StorageError(DataError):
    """Raised when key-value store operations fail.

    Examples:
        - Database file cannot be opened
        - Transaction failed to commit
    """

    pass


class PortfolioError(WhatToBuyError):
    """Base exception for user allocation errors.

    These are user-input class errors: they are reported back verbatim
    and are not server failures.
    """

    pass


class InvalidAllocationError(PortfolioError):
    """Raised when an allocation is malformed or would exceed 100%.

    Attributes:
        available: Percentage still allowed to be entered (if relevant)
        current: Percentage already allocated (if relevant)
    """

    def __init__(
        self,
        message: str,
        available: Optional[float] = None,
        current: Optional[float] = None,
    ):
        super().__init__(message)
        self.available = available
        self.current = current


class AlreadyFinishedError(PortfolioError):
    """Raised when a finished allocation is mutated or finished again."""

    def __init__(self, user_id):
        super().__init__(
            f"Portfolio of user {user_id} is already finished; restart it to edit"
        )
        self.user_id = user_id
