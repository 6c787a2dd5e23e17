"""Distribution records.

Distributions are the return leg: money flowing back from a deal to the fund.
They are a sibling child of FundAllocation, independent of capital calls, and
only feed distribution totals and MOIC.
"""

from typing import Dict, Optional
from datetime import date
from decimal import Decimal
from pydantic import Field

from .base import DomainModel, StoredRecord, MoneyAmount, DistributionType


class Distribution(StoredRecord):
    """A distribution paid back on an allocation."""

    allocation_id: int = Field(
        description="Allocation the distribution is returned on"
    )

    amount: MoneyAmount = Field(
        description="Amount distributed"
    )

    distribution_date: date = Field(
        description="Date of distribution"
    )

    distribution_type: DistributionType = Field(
        default="other",
        description="dividend, capital_return, interest, fee or other"
    )

    notes: Optional[str] = Field(
        default=None,
        description="Free-form notes"
    )


class DistributionSummary(DomainModel):
    """Totals for an allocation or a fund."""

    count: int = 0
    total_amount: Decimal = Decimal("0")
    by_type: Dict[str, Decimal] = Field(default_factory=dict)
    committed_amount: Decimal = Decimal("0")
    market_value: Decimal = Decimal("0")
    moic: Optional[Decimal] = None
