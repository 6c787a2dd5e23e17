"""Capital metrics aggregation.

Rollups at three levels (allocation, fund, sector), always recomputed from
source records. A capital view selects which amount drives a weight,
percentage or sector total:

    committed    allocation.committed_amount
    called       sum of call amounts
    paid         sum of payments
    uncalled     committed - called
    outstanding  called - paid

The pure calculations are static so the integrity validator and tests can
use them without a store. The fund row's capital fields are a cache written
only by refresh_fund(), by full resummation.
"""

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import pandas as pd

from .base import LedgerComponent
from ..blocks import (
    BlockContext,
    BlockExecutor,
    AllocationMetricsBlock,
    PortfolioWeightsBlock,
    SectorDistributionBlock,
    ReturnsBlock,
)
from ..errors import ConcurrencyConflict, ValidationError
from ..schemas import (
    AllocationMetrics,
    AllocationWeight,
    CapitalCall,
    CapitalView,
    CAPITAL_VIEWS,
    Deal,
    Fund,
    FundAllocation,
    FundMetricsReport,
    FundTotals,
    HUNDRED,
    SectorSlice,
    ZERO,
)

logger = logging.getLogger(__name__)

FRAME_KEYS = (
    "allocation_metrics",
    "portfolio_weights",
    "sector_distribution",
    "returns_by_allocation",
    "returns_summary",
)


def validate_view(view: str) -> str:
    if view not in CAPITAL_VIEWS:
        raise ValidationError(
            f"Unknown capital view '{view}'; expected one of {', '.join(CAPITAL_VIEWS)}",
            {"view": view},
        )
    return view


def percentage_of(amount: Decimal, total: Decimal) -> Decimal:
    """amount / total * 100, or 0 when total is 0."""
    if total == ZERO:
        return ZERO
    return amount / total * HUNDRED


class CapitalMetricsAggregator(LedgerComponent):
    """Allocation, fund and sector rollups."""

    # =========================================================================
    # Pure calculations
    # =========================================================================

    @staticmethod
    def calculate_allocation_metrics(
        allocation: FundAllocation,
        capital_calls: Optional[Sequence[CapitalCall]] = None,
    ) -> AllocationMetrics:
        """Capital figures for one allocation.

        Args:
            allocation: The allocation
            capital_calls: Its calls; when given, `called` is resummed from
                them instead of read from allocation.called_amount

        Returns:
            AllocationMetrics
        """
        if capital_calls is None:
            called = allocation.called_amount
        else:
            called = sum((c.call_amount for c in capital_calls), ZERO)
        committed = allocation.committed_amount
        paid = allocation.paid_amount
        return AllocationMetrics(
            allocation_id=allocation.id,
            committed=committed,
            called=called,
            paid=paid,
            uncalled=committed - called,
            outstanding=called - paid,
        )

    @classmethod
    def calculate_fund_metrics(cls, allocations: Iterable[FundAllocation]) -> FundTotals:
        """Sum allocation metrics into fund totals (full resummation)."""
        totals = FundTotals()
        for allocation in allocations:
            metrics = cls.calculate_allocation_metrics(allocation)
            totals.allocation_count += 1
            totals.committed += metrics.committed
            totals.called += metrics.called
            totals.paid += metrics.paid
            totals.uncalled += metrics.uncalled
            totals.outstanding += metrics.outstanding
            totals.distributions += allocation.distribution_paid
            totals.market_value += allocation.market_value
        return totals

    @staticmethod
    def get_display_amount(metrics: AllocationMetrics, view: CapitalView) -> Decimal:
        """Select the amount a capital view displays."""
        return getattr(metrics, validate_view(view))

    @classmethod
    def calculate_dynamic_weight(
        cls,
        allocation: FundAllocation,
        all_allocations: Sequence[FundAllocation],
        view: CapitalView,
    ) -> Decimal:
        """An allocation's percentage of the fund total under `view` (0 when the total is 0)."""
        amount = cls.get_display_amount(cls.calculate_allocation_metrics(allocation), view)
        fund_total = cls.get_display_amount(cls.calculate_fund_metrics(all_allocations), view)
        return percentage_of(amount, fund_total)

    @classmethod
    def portfolio_weights(
        cls,
        allocations: Sequence[FundAllocation],
        view: CapitalView,
    ) -> List[AllocationWeight]:
        """Weights of every allocation; they sum to 100 unless the total is 0."""
        amounts = [
            (a, cls.get_display_amount(cls.calculate_allocation_metrics(a), view))
            for a in allocations
        ]
        fund_total = sum((amount for _, amount in amounts), ZERO)
        return [
            AllocationWeight(
                allocation_id=a.id,
                deal_id=a.deal_id,
                amount=amount,
                weight=percentage_of(amount, fund_total),
            )
            for a, amount in amounts
        ]

    @classmethod
    def sector_distribution(
        cls,
        allocations: Sequence[FundAllocation],
        deals: Mapping[int, Deal],
        view: CapitalView,
        top_n: int = 7,
        other_label: str = "Other",
        missing_label: str = "Unspecified",
    ) -> List[SectorSlice]:
        """Sector totals under `view`, sorted by amount descending.

        Sectors past the first `top_n` collapse into one `other_label` slice
        appended at the end.
        """
        amounts: Dict[str, Decimal] = defaultdict(lambda: ZERO)
        counts: Dict[str, int] = defaultdict(int)
        for allocation in allocations:
            deal = deals.get(allocation.deal_id)
            sector = deal.sector if deal is not None and deal.sector else missing_label
            amounts[sector] += cls.get_display_amount(cls.calculate_allocation_metrics(allocation), view)
            counts[sector] += 1

        fund_total = sum(amounts.values(), ZERO)
        ranked = sorted(amounts, key=lambda s: (-amounts[s], s))
        slices = [
            SectorSlice(
                sector=sector,
                amount=amounts[sector],
                percentage=percentage_of(amounts[sector], fund_total),
                allocation_count=counts[sector],
            )
            for sector in ranked
        ]
        if len(slices) <= top_n:
            return slices

        head, tail = slices[:top_n], slices[top_n:]
        tail_amount = sum((s.amount for s in tail), ZERO)
        head.append(SectorSlice(
            sector=other_label,
            amount=tail_amount,
            percentage=percentage_of(tail_amount, fund_total),
            allocation_count=sum(s.allocation_count for s in tail),
        ))
        return head

    # =========================================================================
    # Store-backed operations
    # =========================================================================

    def refresh_fund(self, fund_id: int) -> Fund:
        """Rewrite a fund's cached capital fields from its allocations.

        Retries up to cfg.max_refresh_retries times when a concurrent refresh
        wins the version race. Running it twice yields the same fund.

        Raises:
            NotFound: fund does not exist
            ConcurrencyConflict: still conflicting after all retries
        """
        attempt = 0
        while True:
            try:
                with self.store.transaction() as tx:
                    fund = tx.require(Fund, fund_id)
                    totals = self.calculate_fund_metrics(tx.list_allocations(fund_id=fund_id))
                    fund.committed_capital = totals.committed
                    fund.called_capital = totals.called
                    fund.uncalled_capital = max(totals.uncalled, ZERO)
                    fund.aum = totals.paid
                    tx.save(fund)
                break
            except ConcurrencyConflict:
                attempt += 1
                if attempt > self.cfg.max_refresh_retries:
                    raise
                logger.warning("Fund %s refresh conflicted, retry %d", fund_id, attempt)

        logger.info(
            "Refreshed fund %s: committed=%s called=%s aum=%s",
            fund_id, fund.committed_capital, fund.called_capital, fund.aum,
        )
        self.emit("fund_refreshed", {"fund_id": fund_id}, {
            "committed_capital": fund.committed_capital,
            "called_capital": fund.called_capital,
            "uncalled_capital": fund.uncalled_capital,
            "aum": fund.aum,
        })
        return fund

    def refresh_after_commit(self, fund_id: int) -> Optional[Fund]:
        """Refresh following a committed mutation.

        The mutation has already committed, so a refresh that keeps losing the
        race is logged and left for the next refresh or an integrity sync.
        """
        try:
            return self.refresh_fund(fund_id)
        except ConcurrencyConflict:
            logger.warning("Fund %s left stale after %d retries", fund_id, self.cfg.max_refresh_retries)
            return None

    def refresh_all_funds(self) -> List[Fund]:
        with self.store.transaction() as tx:
            fund_ids = [f.id for f in tx.list_funds()]
        return [self.refresh_fund(fund_id) for fund_id in fund_ids]

    def get_fund_totals(self, fund_id: int) -> FundTotals:
        """Fund totals computed on read (ignores the cached fund fields)."""
        with self.store.transaction() as tx:
            tx.require(Fund, fund_id)
            return self.calculate_fund_metrics(tx.list_allocations(fund_id=fund_id))

    def get_fund_metrics(self, fund_id: int, view: CapitalView = "committed") -> FundMetricsReport:
        """Total, per-allocation weights and sector distribution under `view`.

        Raises:
            ValidationError: unknown view
            NotFound: fund does not exist
        """
        validate_view(view)
        with self.store.transaction() as tx:
            tx.require(Fund, fund_id)
            allocations = tx.list_allocations(fund_id=fund_id)
            deals = {d.id: d for d in tx.list_deals()}

        totals = self.calculate_fund_metrics(allocations)
        return FundMetricsReport(
            fund_id=fund_id,
            view=view,
            total_amount=self.get_display_amount(totals, view),
            totals=totals,
            weights=self.portfolio_weights(allocations, view),
            sector_distribution=self.sector_distribution(
                allocations,
                deals,
                view,
                top_n=self.cfg.sector_top_n,
                other_label=self.cfg.other_sector_label,
                missing_label=self.cfg.missing_sector_label,
            ),
        )

    def fund_metrics_frames(self, fund_id: int, view: CapitalView = "committed") -> Dict[str, pd.DataFrame]:
        """Fund rollups as DataFrames, computed by the metrics blocks.

        Returns:
            Dict keyed by allocation_metrics, portfolio_weights,
            sector_distribution, returns_by_allocation, returns_summary
        """
        validate_view(view)
        with self.store.transaction() as tx:
            tx.require(Fund, fund_id)
            allocations = tx.list_allocations(fund_id=fund_id)
            deals = {d.id: d for d in tx.list_deals()}

        context = BlockContext()
        context.set("allocations", allocations)
        context.set("deals", deals)
        context.set("capital_view", view)
        context.set("ledger_cfg", self.cfg)

        executor = BlockExecutor([
            ReturnsBlock(),
            SectorDistributionBlock(),
            PortfolioWeightsBlock(),
            AllocationMetricsBlock(),
        ])
        executor.execute(context)
        return {key: context.get(key) for key in FRAME_KEYS}
