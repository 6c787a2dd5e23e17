"""CapitalEngine facade.

Wires one store, config, event sink and clock into every component and
exposes the engine's public contract:

    create_allocation(deal_id, fund_id, committed_amount, security_type)
    create_capital_call(allocation_id, amount | percentage, call_date, due_date)
    process_payment(capital_call_id, amount, payment_date)
    get_fund_metrics(fund_id, view)
    run_integrity_check(scope)

Usage:
    from capital_domain import CapitalEngine, InMemoryLedgerStore

    engine = CapitalEngine(InMemoryLedgerStore())
    fund = engine.register_fund("Fund I")
    deal = engine.register_deal("Acme", sector="Software")
    allocation = engine.create_allocation(deal.id, fund.id, Decimal("1000000"))
    call = engine.create_capital_call(allocation.id, percentage=25)
    engine.process_payment(call.id, Decimal("250000"))
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional, Union

from .allocations import AllocationLedger
from .base import Clock, LedgerComponent, build_record
from .capital_calls import CapitalCallEngine
from .distributions import DistributionLedger
from .integrity import IntegrityValidator
from .metrics import CapitalMetricsAggregator
from .payments import PaymentProcessor
from ..events import EventSink
from ..schemas import (
    CallBasis,
    CallStatus,
    CapitalCall,
    CapitalView,
    Deal,
    DealStage,
    Fund,
    FundAllocation,
    FundMetricsReport,
    Inconsistency,
    IntegrityScope,
    LedgerCFG,
    SecurityType,
)
from ..store import LedgerStore

logger = logging.getLogger(__name__)


class CapitalEngine(LedgerComponent):
    """All capital accounting components over one store."""

    def __init__(
        self,
        store: LedgerStore,
        cfg: Optional[LedgerCFG] = None,
        event_sink: Optional[EventSink] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(store, cfg, event_sink, clock)
        collaborators = (self.store, self.cfg, self.event_sink, self.clock)
        self.metrics = CapitalMetricsAggregator(*collaborators)
        self.allocations = AllocationLedger(*collaborators, aggregator=self.metrics)
        self.capital_calls = CapitalCallEngine(*collaborators, aggregator=self.metrics)
        self.payments = PaymentProcessor(*collaborators, aggregator=self.metrics)
        self.distributions = DistributionLedger(*collaborators, aggregator=self.metrics)
        self.integrity = IntegrityValidator(*collaborators)

    # =========================================================================
    # Reference data
    # =========================================================================

    def register_fund(self, name: str, vintage: Optional[int] = None) -> Fund:
        fund = build_record(Fund, name=name, vintage=vintage)
        with self.store.transaction() as tx:
            tx.add(fund)
        logger.info("Registered fund %s (%s)", fund.id, name)
        return fund

    def register_deal(
        self,
        name: str,
        sector: Optional[str] = None,
        stage: DealStage = "initial_review",
    ) -> Deal:
        deal = build_record(Deal, name=name, sector=sector, stage=stage)
        with self.store.transaction() as tx:
            tx.add(deal)
        logger.info("Registered deal %s (%s)", deal.id, name)
        return deal

    def get_fund(self, fund_id: int) -> Fund:
        with self.store.transaction() as tx:
            return tx.require(Fund, fund_id)

    def get_deal(self, deal_id: int) -> Deal:
        with self.store.transaction() as tx:
            return tx.require(Deal, deal_id)

    # =========================================================================
    # Exposed contract
    # =========================================================================

    def create_allocation(
        self,
        deal_id: int,
        fund_id: int,
        committed_amount: Any,
        security_type: SecurityType = "equity",
        allocation_date: Optional[date] = None,
        notes: Optional[str] = None,
    ) -> FundAllocation:
        """Commit a fund to a deal. See AllocationLedger.create_allocation()."""
        return self.allocations.create_allocation(
            deal_id,
            fund_id,
            committed_amount,
            security_type=security_type,
            allocation_date=allocation_date,
            notes=notes,
        )

    def create_capital_call(
        self,
        allocation_id: int,
        amount: Optional[Any] = None,
        percentage: Optional[Any] = None,
        basis: CallBasis = "committed",
        call_date: Optional[date] = None,
        due_date: Optional[date] = None,
        notes: Optional[str] = None,
        initial_status: CallStatus = "scheduled",
    ) -> CapitalCall:
        """Call capital by amount or percentage of commitment.

        See CapitalCallEngine.create_capital_call().
        """
        return self.capital_calls.create_capital_call(
            allocation_id,
            amount=amount,
            percentage=percentage,
            basis=basis,
            call_date=call_date,
            due_date=due_date,
            notes=notes,
            initial_status=initial_status,
        )

    def process_payment(
        self,
        capital_call_id: int,
        amount: Any,
        payment_date: Optional[date] = None,
        reference: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> CapitalCall:
        """Apply a payment to a call. See PaymentProcessor.process_payment()."""
        return self.payments.process_payment(
            capital_call_id,
            amount,
            payment_date=payment_date,
            reference=reference,
            notes=notes,
        )

    def get_fund_metrics(self, fund_id: int, view: CapitalView = "committed") -> FundMetricsReport:
        """Totals, weights and sector rollup for one fund in one capital view."""
        return self.metrics.get_fund_metrics(fund_id, view)

    def run_integrity_check(
        self,
        scope: Optional[Union[IntegrityScope, Dict[str, int]]] = None,
    ) -> List[Inconsistency]:
        """Read-only drift scan of the whole store, one fund or one allocation."""
        return self.integrity.run_integrity_check(scope)
