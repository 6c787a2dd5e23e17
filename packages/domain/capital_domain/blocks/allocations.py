"""Allocation metrics block.

Flattens a fund's allocations (and their deals) into one DataFrame row per
allocation. Every other block works from this frame.
"""

from typing import Dict, List, Sequence

import pandas as pd

from .base import Block, BlockContext
from ..schemas import Deal, FundAllocation

ALLOCATION_METRIC_COLUMNS = [
    "allocation_id",
    "deal_id",
    "deal_name",
    "sector",
    "security_type",
    "status",
    "committed",
    "called",
    "paid",
    "uncalled",
    "outstanding",
    "distributions",
    "market_value",
]


class AllocationMetricsBlock(Block):
    """Per-allocation capital figures.

    Inputs (from context):
        - allocations: list of FundAllocation
        - deals: dict of deal id -> Deal

    Outputs (to context):
        - allocation_metrics: DataFrame with ALLOCATION_METRIC_COLUMNS;
          amounts are floats, sector is None when the deal has none
    """

    def __init__(self, allocations_key: str = "allocations", deals_key: str = "deals"):
        self.allocations_key = allocations_key
        self.deals_key = deals_key

    def inputs(self) -> List[str]:
        return [self.allocations_key, self.deals_key]

    def outputs(self) -> List[str]:
        return ["allocation_metrics"]

    def execute(self, context: BlockContext) -> None:
        allocations: Sequence[FundAllocation] = context.get(self.allocations_key)
        deals: Dict[int, Deal] = context.get(self.deals_key)
        context.set("allocation_metrics", self._compute(allocations, deals))

    def _compute(self, allocations: Sequence[FundAllocation], deals: Dict[int, Deal]) -> pd.DataFrame:
        if not allocations:
            return pd.DataFrame(columns=ALLOCATION_METRIC_COLUMNS)

        rows = []
        for allocation in allocations:
            deal = deals.get(allocation.deal_id)
            rows.append({
                "allocation_id": allocation.id,
                "deal_id": allocation.deal_id,
                "deal_name": deal.name if deal is not None else None,
                "sector": deal.sector if deal is not None else None,
                "security_type": allocation.security_type,
                "status": allocation.status,
                "committed": float(allocation.committed_amount),
                "called": float(allocation.called_amount),
                "paid": float(allocation.paid_amount),
                "uncalled": float(allocation.uncalled_amount),
                "outstanding": float(allocation.outstanding_amount),
                "distributions": float(allocation.distribution_paid),
                "market_value": float(allocation.market_value),
            })
        return pd.DataFrame(rows, columns=ALLOCATION_METRIC_COLUMNS)
