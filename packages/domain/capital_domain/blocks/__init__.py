"""Computation blocks for fund rollups.

This package turns ledger records into DataFrames for dashboards, exports
or any other consumer.

Architecture:
    Records (schemas) → Blocks (computation) → DataFrames (output)

Key concepts:
- Blocks are reusable computation units with explicit dependencies
- Each block declares its inputs and outputs
- The dependency graph fixes execution order
- All outputs are pandas DataFrames

Available blocks:
- AllocationMetricsBlock: one row of capital figures per allocation
- PortfolioWeightsBlock: view-relative portfolio weights
- SectorDistributionBlock: sector rollup with a long-tail "Other" bucket
- ReturnsBlock: MOIC per allocation and for the fund

Usage:
    from capital_domain.blocks import (
        BlockContext, BlockExecutor, AllocationMetricsBlock, ReturnsBlock
    )

    context = BlockContext()
    context.set("allocations", allocations)
    context.set("deals", deals_by_id)

    BlockExecutor([ReturnsBlock(), AllocationMetricsBlock()]).execute(context)
    returns_df = context.get("returns_by_allocation")
"""

from .base import (
    Block,
    BlockContext,
    BlockExecutor,
    CircularDependencyError,
    topological_sort,
)
from .allocations import AllocationMetricsBlock, ALLOCATION_METRIC_COLUMNS
from .weights import PortfolioWeightsBlock, SectorDistributionBlock
from .returns import ReturnsBlock

__all__ = [
    "Block",
    "BlockContext",
    "BlockExecutor",
    "CircularDependencyError",
    "topological_sort",
    "AllocationMetricsBlock",
    "ALLOCATION_METRIC_COLUMNS",
    "PortfolioWeightsBlock",
    "SectorDistributionBlock",
    "ReturnsBlock",
]
