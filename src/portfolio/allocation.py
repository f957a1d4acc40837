"""Whole-lot purchase planning.

Turns a percentage allocation and a cash amount into a number of whole lots
per security. Lots are always truncated toward zero, so no line ever spends
more than its share of the capital.

Algorithm, per (secid, percent):
1. target = capital * percent / 100
2. units = target / price
3. units < lot_size -> cannot afford one lot, spend nothing
4. lots = floor(units / lot_size), spend = lots * lot_size * price
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Mapping, Optional

from src.data.base import SecurityRecord
from src.utils.exceptions import InvalidAllocationError
from src.utils.logging import get_logger

logger = get_logger(__name__)


class LineStatus(Enum):
    """Outcome of planning one allocation line."""

    BUY = "BUY"
    INSUFFICIENT = "INSUFFICIENT"
    UNPRICED = "UNPRICED"


@dataclass
class PlanLine:
    """Purchase decision for one security.

    Attributes:
        secid: Security identifier
        percent: Target share of capital
        target_spend: capital * percent / 100
        status: BUY, INSUFFICIENT (not enough for one lot) or UNPRICED
        lots: Whole lots to buy
        spend: lots * lot_size * price
        price: Price used, None when unpriced
        lot_size: Lot size used, None when unpriced
        units_affordable: Whole securities the target could buy, ignoring lots
    """

    secid: str
    percent: float
    target_spend: float
    status: LineStatus
    lots: int = 0
    spend: float = 0.0
    price: Optional[float] = None
    lot_size: Optional[float] = None
    units_affordable: int = 0


@dataclass
class PurchasePlan:
    """Lot purchase plan for a whole allocation.

    Lines are ordered by secid.
    """

    capital: float
    lines: List[PlanLine] = field(default_factory=list)

    @property
    def total_spend(self) -> float:
        return sum(line.spend for line in self.lines)

    @property
    def leftover(self) -> float:
        """Capital not spent by the plan."""
        return self.capital - self.total_spend

    @property
    def purchases(self) -> List[PlanLine]:
        return [line for line in self.lines if line.status is LineStatus.BUY]

    @property
    def insufficient(self) -> List[PlanLine]:
        return [line for line in self.lines if line.status is LineStatus.INSUFFICIENT]

    @property
    def unpriced(self) -> List[PlanLine]:
        return [line for line in self.lines if line.status is LineStatus.UNPRICED]

    def line(self, secid: str) -> PlanLine:
        """Return the line for secid.

        Raises:
            KeyError: If secid is not part of the plan
        """
        for line in self.lines:
            if line.secid == secid:
                return line
        raise KeyError(secid)


class AllocationEngine:
    """Computes whole-lot purchase plans. Stateless.

    Example:
        >>> engine = AllocationEngine()
        >>> plan = engine.plan(
        ...     {"AFKS": 50.0},
        ...     {"AFKS": SecurityRecord("AFKS", "Система ао", 27.785, 100)},
        ...     1_000_000,
        ... )
        >>> plan.line("AFKS").lots
        179
    """

    @staticmethod
    def validate_capital(capital: float) -> float:
        """Return capital as a float.

        Raises:
            InvalidAllocationError: If capital is not a positive finite number
        """
        try:
            capital = float(capital)
        except (TypeError, ValueError) as e:
            raise InvalidAllocationError(f"Capital must be a number, got {capital!r}") from e
        if not math.isfinite(capital) or capital <= 0:
            raise InvalidAllocationError(f"Capital must be a positive number, got {capital}")
        return capital

    def plan(
        self,
        allocation: Mapping[str, float],
        prices: Mapping[str, SecurityRecord],
        capital: float,
    ) -> PurchasePlan:
        """Build a purchase plan.

        Args:
            allocation: Mapping of secid to percent
            prices: Mapping of secid to SecurityRecord; secids missing here
                become UNPRICED lines
            capital: Cash to distribute

        Returns:
            PurchasePlan with one line per allocation entry

        Raises:
            InvalidAllocationError: If capital is not a positive finite number
        """
        capital = self.validate_capital(capital)

        lines = [
            self._plan_line(secid, float(percent), prices.get(secid), capital)
            for secid, percent in sorted(allocation.items())
        ]
        plan = PurchasePlan(capital=capital, lines=lines)

        logger.debug(
            "Planned %d lines: total_spend=%.2f of %.2f (%d unpriced, %d insufficient)",
            len(lines),
            plan.total_spend,
            capital,
            len(plan.unpriced),
            len(plan.insufficient),
        )
        return plan

    @staticmethod
    def _plan_line(
        secid: str, percent: float, record: Optional[SecurityRecord], capital: float
    ) -> PlanLine:
        target_spend = capital * percent / 100

        if record is None:
            return PlanLine(
                secid=secid,
                percent=percent,
                target_spend=target_spend,
                status=LineStatus.UNPRICED,
            )

        raw_units = target_spend / record.price
        line = PlanLine(
            secid=secid,
            percent=percent,
            target_spend=target_spend,
            status=LineStatus.INSUFFICIENT,
            price=record.price,
            lot_size=record.lot_size,
            units_affordable=max(0, math.floor(raw_units)),
        )
        if raw_units < record.lot_size:
            return line

        line.lots = math.floor(raw_units / record.lot_size)
        line.spend = line.lots * record.lot_size * record.price
        line.status = LineStatus.BUY
        return line

