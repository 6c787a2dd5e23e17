"""Portfolio weight and sector distribution blocks.

Both select one amount column per the capital view and express it as a share
of the fund total. A zero total yields zero weights, never NaN.
"""

from typing import List

import pandas as pd

from .base import Block, BlockContext
from ..schemas import LedgerCFG


def _share(amounts: pd.Series, total: float) -> pd.Series:
    if total == 0:
        return pd.Series(0.0, index=amounts.index)
    return amounts / total * 100


class PortfolioWeightsBlock(Block):
    """Dynamic portfolio weights.

    Inputs (from context):
        - allocation_metrics: DataFrame from AllocationMetricsBlock
        - capital_view: committed / called / paid / uncalled / outstanding

    Outputs (to context):
        - portfolio_weights: DataFrame with allocation_id, deal_id, amount,
          weight (percent), sorted by weight descending
    """

    def __init__(self, metrics_key: str = "allocation_metrics", view_key: str = "capital_view"):
        self.metrics_key = metrics_key
        self.view_key = view_key

    def inputs(self) -> List[str]:
        return [self.metrics_key, self.view_key]

    def outputs(self) -> List[str]:
        return ["portfolio_weights"]

    def execute(self, context: BlockContext) -> None:
        metrics_df: pd.DataFrame = context.get(self.metrics_key)
        view: str = context.get(self.view_key)

        weights_df = pd.DataFrame({
            "allocation_id": metrics_df["allocation_id"],
            "deal_id": metrics_df["deal_id"],
            "amount": metrics_df[view].astype(float),
        })
        weights_df["weight"] = _share(weights_df["amount"], weights_df["amount"].sum())
        weights_df = weights_df.sort_values("weight", ascending=False, kind="stable")
        context.set("portfolio_weights", weights_df.reset_index(drop=True))


class SectorDistributionBlock(Block):
    """Sector rollup with long-tail collapse.

    Inputs (from context):
        - allocation_metrics: DataFrame from AllocationMetricsBlock
        - capital_view: amount column to roll up
        - ledger_cfg: LedgerCFG (sector_top_n, other/missing labels)

    Outputs (to context):
        - sector_distribution: DataFrame with sector, amount, percentage,
          allocation_count; top-N sectors by amount, then one "Other" row
    """

    def __init__(
        self,
        metrics_key: str = "allocation_metrics",
        view_key: str = "capital_view",
        config_key: str = "ledger_cfg",
    ):
        self.metrics_key = metrics_key
        self.view_key = view_key
        self.config_key = config_key

    def inputs(self) -> List[str]:
        return [self.metrics_key, self.view_key, self.config_key]

    def outputs(self) -> List[str]:
        return ["sector_distribution"]

    def execute(self, context: BlockContext) -> None:
        metrics_df: pd.DataFrame = context.get(self.metrics_key)
        view: str = context.get(self.view_key)
        cfg: LedgerCFG = context.get(self.config_key)

        columns = ["sector", "amount", "percentage", "allocation_count"]
        if metrics_df.empty:
            context.set("sector_distribution", pd.DataFrame(columns=columns))
            return

        frame = pd.DataFrame({
            "sector": metrics_df["sector"].fillna(cfg.missing_sector_label).replace("", cfg.missing_sector_label),
            "amount": metrics_df[view].astype(float),
        })
        grouped = (
            frame.groupby("sector", sort=False)
            .agg(amount=("amount", "sum"), allocation_count=("amount", "size"))
            .reset_index()
            .sort_values(["amount", "sector"], ascending=[False, True], kind="stable")
        )
        total = grouped["amount"].sum()

        head = grouped.head(cfg.sector_top_n)
        tail = grouped.iloc[cfg.sector_top_n:]
        if not tail.empty:
            other = pd.DataFrame([{
                "sector": cfg.other_sector_label,
                "amount": tail["amount"].sum(),
                "allocation_count": int(tail["allocation_count"].sum()),
            }])
            head = pd.concat([head, other], ignore_index=True)

        head = head.reset_index(drop=True)
        head["percentage"] = _share(head["amount"], total)
        context.set("sector_distribution", head[columns])
