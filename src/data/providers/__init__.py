"""Data Providers - Security listing sources.

This module provides provider implementations for fetching exchange
security listings.
"""

from src.data.providers.moex_provider import MoexProvider, decode_securities

__all__ = [
    "MoexProvider",
    "decode_securities",
]
