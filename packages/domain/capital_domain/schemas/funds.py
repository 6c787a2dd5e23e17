"""Fund and deal records.

Funds and deals are owned by their own top-level collections. The capital
engine only reads deals (for sector rollups) and advances a deal's stage
when money starts flowing; the fund's capital fields are a cache that only
the metrics aggregator writes, always by full resummation.
"""

from typing import Optional
from decimal import Decimal
from pydantic import Field

from .base import StoredRecord, DerivedAmount, DealStage


# =============================================================================
# Fund
# =============================================================================

class Fund(StoredRecord):
    """An investment fund.

    The four capital fields are derived aggregates:
        committed_capital = sum(allocation.committed_amount)
        called_capital    = sum(allocation.called_amount)
        uncalled_capital  = committed_capital - called_capital
        aum               = sum(allocation.paid_amount)

    They are refreshed by CapitalMetricsAggregator.refresh_fund() and never
    patched incrementally, so replayed or out-of-order refreshes converge.
    """

    name: str = Field(
        description="Fund display name"
    )

    vintage: Optional[int] = Field(
        default=None,
        description="Vintage year"
    )

    committed_capital: DerivedAmount = Field(
        default=Decimal("0"),
        description="Sum of committed amounts across the fund's allocations"
    )

    called_capital: DerivedAmount = Field(
        default=Decimal("0"),
        description="Sum of capital call amounts across the fund's allocations"
    )

    uncalled_capital: DerivedAmount = Field(
        default=Decimal("0"),
        description="committed_capital - called_capital"
    )

    aum: DerivedAmount = Field(
        default=Decimal("0"),
        description="Assets under management: capital actually paid in"
    )


# =============================================================================
# Deal
# =============================================================================

class Deal(StoredRecord):
    """A deal (portfolio company opportunity) that funds allocate into.

    Only `stage` and `sector` matter to the capital engine. Stage advances to
    "invested" once any allocation is partially paid or funded, and is never
    regressed automatically.
    """

    name: str = Field(
        description="Deal / company name"
    )

    stage: DealStage = Field(
        default="initial_review",
        description="Pipeline stage"
    )

    sector: Optional[str] = Field(
        default=None,
        description="Sector used for portfolio rollups (missing sectors are flagged)"
    )
