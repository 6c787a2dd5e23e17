"""Capital metrics models.

Rollups are always recomputed from source records. A capital view
(committed / called / paid / uncalled / outstanding) selects which amount
drives a weight, a percentage or a sector total.
"""

from typing import List, Optional
from decimal import Decimal
from pydantic import Field

from .base import DomainModel, CapitalView


# =============================================================================
# Allocation / Fund metrics
# =============================================================================

class AllocationMetrics(DomainModel):
    """Capital figures for one allocation.

    called      = sum(call.call_amount)
    uncalled    = committed - called
    outstanding = called - paid
    """

    allocation_id: Optional[int] = None
    committed: Decimal = Decimal("0")
    called: Decimal = Decimal("0")
    paid: Decimal = Decimal("0")
    uncalled: Decimal = Decimal("0")
    outstanding: Decimal = Decimal("0")


class FundTotals(AllocationMetrics):
    """Fund-level totals, produced by full resummation of allocation metrics."""

    allocation_count: int = 0
    distributions: Decimal = Decimal("0")
    market_value: Decimal = Decimal("0")

    @property
    def deployment_rate(self) -> Decimal:
        """Called capital as a percentage of committed (0 when nothing committed)."""
        if self.committed == 0:
            return Decimal("0")
        return self.called / self.committed * 100

    @property
    def moic(self) -> Optional[Decimal]:
        if self.committed == 0:
            return None
        return (self.distributions + self.market_value) / self.committed


# =============================================================================
# Fund metrics report
# =============================================================================

class AllocationWeight(DomainModel):
    """An allocation's share of the fund total under one view."""

    allocation_id: int
    deal_id: int
    amount: Decimal
    weight: Decimal = Field(
        description="Percentage of the fund total (0 when the total is 0)"
    )


class SectorSlice(DomainModel):
    """One bar of the sector distribution."""

    sector: str
    amount: Decimal
    percentage: Decimal
    allocation_count: int = 0


class FundMetricsReport(DomainModel):
    """Result of getFundMetrics(fund_id, view)."""

    fund_id: int
    view: CapitalView
    total_amount: Decimal
    totals: FundTotals
    weights: List[AllocationWeight] = Field(default_factory=list)
    sector_distribution: List[SectorSlice] = Field(default_factory=list)
