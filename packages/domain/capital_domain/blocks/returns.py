"""Returns computation block.

MOIC (multiple on invested capital) per allocation and for the fund:

    moic = (distributions + market_value) / committed

MOIC is None (NaN in the frame) where nothing is committed.
"""

from typing import List, Optional

import pandas as pd

from .base import Block, BlockContext


class ReturnsBlock(Block):
    """Return metrics from allocation metrics.

    Inputs (from context):
        - allocation_metrics: DataFrame from AllocationMetricsBlock

    Outputs (to context):
        - returns_by_allocation: DataFrame with:
            * allocation_id, deal_id
            * committed, paid: capital in
            * distributions, market_value: realised and unrealised value
            * total_value: distributions + market_value
            * moic: total_value / committed
        - returns_summary: single-row DataFrame with total_committed,
          total_paid, total_distributions, total_market_value,
          total_value, aggregate_moic
    """

    def __init__(self, metrics_key: str = "allocation_metrics"):
        self.metrics_key = metrics_key

    def inputs(self) -> List[str]:
        return [self.metrics_key]

    def outputs(self) -> List[str]:
        return ["returns_by_allocation", "returns_summary"]

    def execute(self, context: BlockContext) -> None:
        metrics_df: pd.DataFrame = context.get(self.metrics_key)

        by_allocation = self._compute_by_allocation(metrics_df)
        context.set("returns_by_allocation", by_allocation)
        context.set("returns_summary", self._compute_summary(by_allocation))

    def _compute_by_allocation(self, metrics_df: pd.DataFrame) -> pd.DataFrame:
        columns = [
            "allocation_id",
            "deal_id",
            "committed",
            "paid",
            "distributions",
            "market_value",
            "total_value",
            "moic",
        ]
        if metrics_df.empty:
            return pd.DataFrame(columns=columns)

        rows = []
        for _, row in metrics_df.iterrows():
            total_value = row["distributions"] + row["market_value"]
            rows.append({
                "allocation_id": row["allocation_id"],
                "deal_id": row["deal_id"],
                "committed": row["committed"],
                "paid": row["paid"],
                "distributions": row["distributions"],
                "market_value": row["market_value"],
                "total_value": total_value,
                "moic": self._moic(total_value, row["committed"]),
            })
        return pd.DataFrame(rows, columns=columns)

    def _compute_summary(self, by_allocation: pd.DataFrame) -> pd.DataFrame:
        def column_total(name: str) -> float:
            return float(by_allocation[name].sum()) if not by_allocation.empty else 0.0

        total_committed = column_total("committed")
        total_value = column_total("total_value")
        summary = {
            "total_committed": total_committed,
            "total_paid": column_total("paid"),
            "total_distributions": column_total("distributions"),
            "total_market_value": column_total("market_value"),
            "total_value": total_value,
            "aggregate_moic": self._moic(total_value, total_committed),
        }
        return pd.DataFrame([summary])

    @staticmethod
    def _moic(total_value: float, committed: float) -> Optional[float]:
        if committed <= 0:
            return None
        return total_value / committed
