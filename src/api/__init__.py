"""User-facing APIs for whattobuy.

Components:
- PortfolioAPI: Allocation intake, view, finish/restart and purchase planning
"""

from src.api.portfolio_api import IntakeResult, PortfolioAPI, ViewLine

__all__ = [
    "PortfolioAPI",
    "IntakeResult",
    "ViewLine",
]
