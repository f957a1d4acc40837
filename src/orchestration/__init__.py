"""Orchestration Layer - Background jobs around the core.

This module provides the scheduler that keeps the market data cache warm.
"""

from src.orchestration.scheduler import CacheRefreshScheduler

__all__ = [
    "CacheRefreshScheduler",
]
