"""Integrity validation.

A read-only scan for invariant violations and data drift: rows written before
the current rules existed, rows edited directly, or caches left stale by a
failed refresh. Findings are returned as data and never raised.

Severity:
    critical  a monetary invariant is broken
              (0 <= paid <= called <= committed, calls <= commitment, call paid <= call amount)
    high      stored derived amounts disagree with their source records
    medium    derived labels (status, deal stage, date ordering) disagree with the rules
    low       missing reference data or advisory findings

Every suggested_fix is the resummed or re-derived value; AllocationLedger
sync_allocation() / sync_fund() apply them on an operator's request.
"""

import logging
from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .base import LedgerComponent, build_record
from .metrics import CapitalMetricsAggregator
from .status import FUNDED_STATUSES, StatusDerivationService
from ..schemas import (
    CapitalCall,
    Deal,
    Distribution,
    Fund,
    FundAllocation,
    Inconsistency,
    IntegrityScope,
    Payment,
    ZERO,
)

logger = logging.getLogger(__name__)


class IntegrityValidator(LedgerComponent):
    """Detects drift without ever writing."""

    def _drifted(self, stored: Decimal, expected: Decimal) -> bool:
        return abs(stored - expected) > self.cfg.money_epsilon

    # =========================================================================
    # Allocation-level checks
    # =========================================================================

    def find_inconsistencies(
        self,
        allocations: Sequence[FundAllocation],
        capital_calls: Optional[Iterable[CapitalCall]] = None,
        payments: Optional[Iterable[Payment]] = None,
        distributions: Optional[Iterable[Distribution]] = None,
        deals: Optional[Mapping[int, Deal]] = None,
        as_of: Optional[date] = None,
    ) -> List[Inconsistency]:
        """Check allocations, and whichever child records are supplied.

        Checks that need a child collection are skipped when it is None; an
        empty collection means "this allocation has none".

        Args:
            allocations: Allocations to check
            capital_calls: Calls of those allocations
            payments: Payments of those calls
            distributions: Distributions of those allocations
            deals: Deals by id (sector and stage checks)
            as_of: Date for overdue derivation (default: today)

        Returns:
            Findings, in allocation order
        """
        as_of = as_of if as_of is not None else self.today()
        calls_by_allocation: Dict[int, List[CapitalCall]] = defaultdict(list)
        for call in capital_calls or ():
            calls_by_allocation[call.allocation_id].append(call)
        payments_by_call: Dict[int, List[Payment]] = defaultdict(list)
        for payment in payments or ():
            payments_by_call[payment.capital_call_id].append(payment)
        distributions_by_allocation: Dict[int, List[Distribution]] = defaultdict(list)
        for distribution in distributions or ():
            distributions_by_allocation[distribution.allocation_id].append(distribution)

        findings: List[Inconsistency] = []
        checked_deals = set()
        for allocation in allocations:
            calls = calls_by_allocation[allocation.id] if capital_calls is not None else None
            findings.extend(self._check_amounts(allocation, calls))
            if calls is not None:
                for call in calls:
                    call_payments = payments_by_call[call.id] if payments is not None else None
                    findings.extend(self._check_call(call, call_payments, as_of))
            findings.extend(self._check_status(allocation, calls))
            if distributions is not None:
                findings.extend(self._check_distributions(
                    allocation, distributions_by_allocation[allocation.id]
                ))
            if deals is not None and allocation.deal_id not in checked_deals:
                checked_deals.add(allocation.deal_id)
                findings.extend(self._check_deal(allocation, allocations, deals))
        return findings

    def _finding(self, allocation: FundAllocation, **fields: Any) -> Inconsistency:
        fields.setdefault("entity_type", "allocation")
        fields.setdefault("entity_id", allocation.id)
        return Inconsistency(allocation_id=allocation.id, **fields)

    def _check_amounts(
        self,
        allocation: FundAllocation,
        calls: Optional[List[CapitalCall]],
    ) -> List[Inconsistency]:
        findings = []
        called_sum = sum((c.call_amount for c in calls), ZERO) if calls is not None else None
        paid_sum = sum((c.paid_amount for c in calls), ZERO) if calls is not None else None

        for name, fix in (("called_amount", called_sum), ("paid_amount", paid_sum)):
            stored = getattr(allocation, name)
            if stored < ZERO:
                findings.append(self._finding(
                    allocation,
                    field=name,
                    issue=f"Stored {name} {stored} is negative",
                    severity="critical",
                    current_value=stored,
                    suggested_fix=fix,
                ))
        if allocation.paid_amount > allocation.called_amount:
            findings.append(self._finding(
                allocation,
                field="paid_amount",
                issue=f"Paid {allocation.paid_amount} exceeds called {allocation.called_amount}",
                severity="critical",
                current_value=allocation.paid_amount,
                suggested_fix=paid_sum,
            ))
        if allocation.called_amount > allocation.committed_amount:
            findings.append(self._finding(
                allocation,
                field="called_amount",
                issue=f"Called {allocation.called_amount} exceeds committed {allocation.committed_amount}",
                severity="critical",
                current_value=allocation.called_amount,
                suggested_fix=called_sum,
            ))
        if calls is None:
            return findings

        if called_sum > allocation.committed_amount:
            findings.append(self._finding(
                allocation,
                field="capital_calls",
                issue=f"Capital calls total {called_sum} exceeds commitment {allocation.committed_amount}",
                severity="critical",
                current_value=called_sum,
            ))
        if self._drifted(allocation.called_amount, called_sum):
            findings.append(self._finding(
                allocation,
                field="called_amount",
                issue=f"Stored called {allocation.called_amount} differs from call total {called_sum}",
                severity="high",
                current_value=allocation.called_amount,
                suggested_fix=called_sum,
            ))
        if self._drifted(allocation.paid_amount, paid_sum):
            findings.append(self._finding(
                allocation,
                field="paid_amount",
                issue=f"Stored paid {allocation.paid_amount} differs from call payments {paid_sum}",
                severity="high",
                current_value=allocation.paid_amount,
                suggested_fix=paid_sum,
            ))
        return findings

    def _check_call(
        self,
        call: CapitalCall,
        payments: Optional[List[Payment]],
        as_of: date,
    ) -> List[Inconsistency]:
        findings = []

        def finding(**fields: Any) -> Inconsistency:
            return Inconsistency(
                entity_type="capital_call",
                entity_id=call.id,
                allocation_id=call.allocation_id,
                **fields,
            )

        payment_sum = sum((p.amount for p in payments), ZERO) if payments is not None else None
        expected_outstanding = max(call.call_amount - call.paid_amount, ZERO)
        for name, fix in (("paid_amount", payment_sum), ("outstanding_amount", expected_outstanding)):
            stored = getattr(call, name)
            if stored < ZERO:
                findings.append(finding(
                    field=name,
                    issue=f"Call {name} {stored} is negative",
                    severity="critical",
                    current_value=stored,
                    suggested_fix=fix,
                ))
        if call.paid_amount > call.call_amount:
            findings.append(finding(
                field="paid_amount",
                issue=f"Call paid {call.paid_amount} exceeds call amount {call.call_amount}",
                severity="critical",
                current_value=call.paid_amount,
            ))
        if payment_sum is not None and self._drifted(call.paid_amount, payment_sum):
            findings.append(finding(
                field="paid_amount",
                issue=f"Call paid {call.paid_amount} differs from payments total {payment_sum}",
                severity="high",
                current_value=call.paid_amount,
                suggested_fix=payment_sum,
            ))
        if self._drifted(call.outstanding_amount, expected_outstanding):
            findings.append(finding(
                field="outstanding_amount",
                issue=f"Outstanding {call.outstanding_amount} should be {expected_outstanding}",
                severity="high",
                current_value=call.outstanding_amount,
                suggested_fix=expected_outstanding,
            ))
        if call.due_date < call.call_date:
            findings.append(finding(
                field="due_date",
                issue=f"Due date {call.due_date} is before call date {call.call_date}",
                severity="medium",
                current_value=str(call.due_date),
            ))
        elif call.due_date == call.call_date:
            findings.append(finding(
                field="due_date",
                issue=f"Due date {call.due_date} is the call date",
                severity="low",
                current_value=str(call.due_date),
            ))

        derived = StatusDerivationService.derive_call_status(
            call.call_amount,
            call.paid_amount,
            initial_status=call.initial_status,
            due_date=call.due_date,
            as_of=as_of,
            current=call.status,
            grace_days=self.cfg.overdue_grace_days,
        )
        if derived != call.status:
            findings.append(finding(
                field="status",
                issue=f"Call status {call.status} should be {derived}",
                severity="medium",
                current_value=call.status,
                suggested_fix=derived,
            ))
        return findings

    def _check_status(
        self,
        allocation: FundAllocation,
        calls: Optional[List[CapitalCall]],
    ) -> List[Inconsistency]:
        paid = sum((c.paid_amount for c in calls), ZERO) if calls is not None else allocation.paid_amount
        derived = StatusDerivationService.derive_allocation_status(allocation.committed_amount, paid)
        status = allocation.status

        if status == "written_off":
            return []
        if status == "unfunded":
            if paid > ZERO:
                return [self._finding(
                    allocation,
                    field="status",
                    issue=f"Allocation marked unfunded but {paid} has been paid",
                    severity="medium",
                    current_value=status,
                    suggested_fix=derived,
                )]
            return []
        if status != derived:
            return [self._finding(
                allocation,
                field="status",
                issue=f"Status {status} disagrees with derived status {derived}",
                severity="medium",
                current_value=status,
                suggested_fix=derived,
            )]
        return []

    def _check_distributions(
        self,
        allocation: FundAllocation,
        distributions: List[Distribution],
    ) -> List[Inconsistency]:
        findings = []
        expected = sum((d.amount for d in distributions), ZERO)
        for name in ("distribution_paid", "total_returned"):
            stored = getattr(allocation, name)
            if self._drifted(stored, expected):
                findings.append(self._finding(
                    allocation,
                    field=name,
                    issue=f"Stored {name} {stored} differs from distributions total {expected}",
                    severity="high",
                    current_value=stored,
                    suggested_fix=expected,
                ))
        return findings

    def _check_deal(
        self,
        allocation: FundAllocation,
        allocations: Sequence[FundAllocation],
        deals: Mapping[int, Deal],
    ) -> List[Inconsistency]:
        deal = deals.get(allocation.deal_id)
        if deal is None:
            return [self._finding(
                allocation,
                field="deal_id",
                issue=f"Deal {allocation.deal_id} not found",
                severity="low",
                current_value=str(allocation.deal_id),
            )]

        findings = []
        if not deal.sector:
            findings.append(Inconsistency(
                entity_type="deal",
                entity_id=deal.id,
                allocation_id=allocation.id,
                field="sector",
                issue=f"Deal {deal.name} has no sector; it rolls up as unspecified",
                severity="low",
            ))
        funded = next(
            (a for a in allocations if a.deal_id == deal.id and a.status in FUNDED_STATUSES),
            None,
        )
        if funded is not None and deal.stage != "invested":
            findings.append(Inconsistency(
                entity_type="deal",
                entity_id=deal.id,
                allocation_id=funded.id,
                field="stage",
                issue=f"Deal {deal.name} has paid-in allocations but is at stage {deal.stage}",
                severity="medium",
                current_value=deal.stage,
                suggested_fix="invested",
            ))
        return findings

    # =========================================================================
    # Fund-level checks
    # =========================================================================

    def check_funds(
        self,
        funds: Iterable[Fund],
        allocations: Iterable[FundAllocation],
    ) -> List[Inconsistency]:
        """Compare each fund's cached capital fields with resummed totals."""
        by_fund: Dict[int, List[FundAllocation]] = defaultdict(list)
        for allocation in allocations:
            by_fund[allocation.fund_id].append(allocation)

        findings = []
        for fund in funds:
            totals = CapitalMetricsAggregator.calculate_fund_metrics(by_fund[fund.id])
            expected = {
                "committed_capital": totals.committed,
                "called_capital": totals.called,
                "uncalled_capital": max(totals.uncalled, ZERO),
                "aum": totals.paid,
            }
            for name, value in expected.items():
                stored = getattr(fund, name)
                if self._drifted(stored, value):
                    findings.append(Inconsistency(
                        entity_type="fund",
                        entity_id=fund.id,
                        field=name,
                        issue=f"Fund {name} {stored} differs from resummed {value}",
                        severity="high",
                        current_value=stored,
                        suggested_fix=value,
                    ))
        return findings

    # =========================================================================
    # Store-backed scan
    # =========================================================================

    def run_integrity_check(
        self,
        scope: Optional[Union[IntegrityScope, Dict[str, int]]] = None,
    ) -> List[Inconsistency]:
        """Scan the store, or one fund / one allocation of it.

        Fund checks run for a fund scope and for a full scan; an allocation
        scope checks only that allocation and its children.

        Raises:
            ValidationError: scope names both a fund and an allocation
            NotFound: the scoped fund or allocation does not exist
        """
        if scope is None:
            scope = IntegrityScope()
        elif not isinstance(scope, IntegrityScope):
            scope = build_record(IntegrityScope, **scope)

        with self.store.transaction() as tx:
            if scope.allocation_id is not None:
                allocations = [tx.require(FundAllocation, scope.allocation_id)]
                funds = []
            elif scope.fund_id is not None:
                funds = [tx.require(Fund, scope.fund_id)]
                allocations = tx.list_allocations(fund_id=scope.fund_id)
            else:
                funds = tx.list_funds()
                allocations = tx.list_allocations()

            calls = [c for a in allocations for c in tx.list_capital_calls(a.id)]
            payments = [p for c in calls for p in tx.list_payments(c.id)]
            distributions = [d for a in allocations for d in tx.list_distributions(a.id)]
            deal_ids = {a.deal_id for a in allocations}
            deals = {d.id: d for d in tx.list_deals() if d.id in deal_ids}

        findings = self.find_inconsistencies(
            allocations,
            capital_calls=calls,
            payments=payments,
            distributions=distributions,
            deals=deals,
        )
        findings.extend(self.check_funds(funds, allocations))

        critical = sum(1 for f in findings if f.severity == "critical")
        if critical:
            logger.warning("Integrity check found %d critical issues (%d total)", critical, len(findings))
        else:
            logger.info("Integrity check found %d issues", len(findings))
        return findings
