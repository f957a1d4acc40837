"""Portfolio Layer.

This layer stores each user's target allocation and turns it into whole-lot
purchase plans.

Components:
- PortfolioStore: Durable per-user allocation with a one-way finish flag
- AllocationEngine: Whole-lot purchase planning
- PurchasePlan / PlanLine: Planning output
"""

from src.portfolio.allocation import (
    AllocationEngine,
    LineStatus,
    PlanLine,
    PurchasePlan,
)
from src.portfolio.store import PortfolioStore

__all__ = [
    "PortfolioStore",
    "AllocationEngine",
    "LineStatus",
    "PlanLine",
    "PurchasePlan",
]
