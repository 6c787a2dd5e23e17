"""Allocation recomputation.

Called inside the transaction of every mutation that touches an allocation's
capital calls, payments or distributions. Derived amounts are always rebuilt
by full resummation over the children, never patched by a delta, so replayed
or out-of-order triggers converge on the same state:

    called_amount     = sum(call.call_amount)
    paid_amount       = sum(call.paid_amount)
    distribution_paid = sum(distribution.amount)
    total_returned    = distribution_paid

The allocation is always saved, even when nothing changed. Saving bumps its
version, so two concurrent mutations under one allocation can never both
commit.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from .base import Clock, LedgerComponent
from .metrics import CapitalMetricsAggregator
from .status import StatusDerivationService
from ..events import EventSink
from ..schemas import CapitalCall, Deal, FundAllocation, LedgerCFG, ZERO
from ..store import LedgerStore, LedgerTransaction

logger = logging.getLogger(__name__)


@dataclass
class RecomputeResult:
    """What changed while recomputing one allocation."""

    allocation: FundAllocation
    previous_status: str
    deal: Optional[Deal] = None
    previous_stage: Optional[str] = None

    @property
    def status_changed(self) -> bool:
        return self.allocation.status != self.previous_status

    @property
    def stage_advanced(self) -> bool:
        return self.deal is not None and self.deal.stage != self.previous_stage


def total(amounts: Iterable[Decimal]) -> Decimal:
    return sum(amounts, ZERO)


def recompute_call(
    tx: LedgerTransaction,
    call: CapitalCall,
    as_of: Optional[date] = None,
    grace_days: int = 0,
) -> CapitalCall:
    """Rebuild a call's paid/outstanding amounts and status from its payments."""
    paid = total(p.amount for p in tx.list_payments(call.id))
    call.paid_amount = paid
    call.outstanding_amount = max(call.call_amount - paid, ZERO)
    call.status = StatusDerivationService.derive_call_status(
        call.call_amount,
        paid,
        initial_status=call.initial_status,
        due_date=call.due_date,
        as_of=as_of,
        current=call.status,
        grace_days=grace_days,
    )
    return tx.save(call)


def recompute_allocation(tx: LedgerTransaction, allocation: FundAllocation) -> RecomputeResult:
    """Resum an allocation from its children, re-derive status, advance the deal.

    Args:
        tx: Open transaction; the allocation and (possibly) its deal are saved in it
        allocation: Allocation as read in this transaction

    Returns:
        RecomputeResult describing status and stage changes
    """
    calls = tx.list_capital_calls(allocation.id)
    distributions = tx.list_distributions(allocation.id)

    previous_status = allocation.status
    allocation.called_amount = total(c.call_amount for c in calls)
    allocation.paid_amount = total(c.paid_amount for c in calls)
    allocation.distribution_paid = total(d.amount for d in distributions)
    allocation.total_returned = allocation.distribution_paid
    allocation.status = StatusDerivationService.resolve_allocation_status(
        allocation.status,
        allocation.committed_amount,
        allocation.paid_amount,
    )
    tx.save(allocation)

    logger.debug(
        "Recomputed allocation %s: called=%s paid=%s status=%s",
        allocation.id, allocation.called_amount, allocation.paid_amount, allocation.status,
    )

    result = RecomputeResult(allocation=allocation, previous_status=previous_status)
    deal = tx.get_deal(allocation.deal_id)
    if deal is None:
        return result

    statuses = [a.status for a in tx.list_allocations(deal_id=deal.id)]
    stage = StatusDerivationService.next_deal_stage(deal.stage, statuses)
    if stage != deal.stage:
        result.previous_stage = deal.stage
        deal.stage = stage
        tx.save(deal)
        result.deal = deal
    return result


class RecomputingComponent(LedgerComponent):
    """Component whose mutations recompute an allocation and refresh its fund.

    The fund refresh runs after commit in its own transaction through the
    shared CapitalMetricsAggregator.
    """

    def __init__(
        self,
        store: LedgerStore,
        cfg: Optional[LedgerCFG] = None,
        event_sink: Optional[EventSink] = None,
        clock: Optional[Clock] = None,
        aggregator: Optional[CapitalMetricsAggregator] = None,
    ):
        super().__init__(store, cfg, event_sink, clock)
        self.aggregator = aggregator if aggregator is not None else CapitalMetricsAggregator(
            store, self.cfg, self.event_sink, self.clock
        )

    def publish_recompute(self, result: RecomputeResult, refresh_fund: bool = True) -> None:
        """Emit status/stage events for a committed recompute and refresh the fund."""
        allocation = result.allocation
        ids = {"allocation_id": allocation.id, "fund_id": allocation.fund_id, "deal_id": allocation.deal_id}
        if result.status_changed:
            logger.info(
                "Allocation %s status %s -> %s",
                allocation.id, result.previous_status, allocation.status,
            )
            self.emit("allocation_status_changed", ids, {
                "from": result.previous_status,
                "to": allocation.status,
            })
        if result.stage_advanced:
            logger.info(
                "Deal %s advanced %s -> %s", result.deal.id, result.previous_stage, result.deal.stage
            )
            self.emit("deal_stage_advanced", {"deal_id": result.deal.id}, {
                "from": result.previous_stage,
                "to": result.deal.stage,
            })
        if refresh_fund:
            self.aggregator.refresh_after_commit(allocation.fund_id)
