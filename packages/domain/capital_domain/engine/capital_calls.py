"""Capital call engine.

Creates and mutates the capital calls of one allocation and enforces that
calls never exceed the commitment:

    sum(existing call amounts) + new amount <= committed_amount

A call can be sized by amount or by a percentage. Percentages are always
"of committed amount"; callers who mean "of the remaining uncalled amount"
convert first with remaining_basis_amount() and pass a dollar amount.
"""

import logging
from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, List, Optional

from .base import build_record, coerce_amount
from .recompute import RecomputingComponent, recompute_allocation
from .status import StatusDerivationService
from ..errors import ConstraintViolation, ValidationError
from ..schemas import (
    AllocationProgress,
    CallBasis,
    CallStatus,
    CapitalCall,
    CapitalCallSummary,
    CENTS,
    FundAllocation,
    HUNDRED,
    INITIAL_CALL_STATUSES,
    ZERO,
)

logger = logging.getLogger(__name__)


def amount_for_percentage(base: Decimal, percentage: Decimal) -> Decimal:
    """percentage% of base, rounded half-up to cents."""
    return (base * percentage / HUNDRED).quantize(CENTS, rounding=ROUND_HALF_UP)


class CapitalCallEngine(RecomputingComponent):
    """Capital call lifecycle for allocations."""

    # =========================================================================
    # Creation
    # =========================================================================

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
        """Call part of an allocation's commitment.

        Args:
            allocation_id: Allocation being called
            amount: Dollar amount (exclusive with percentage)
            percentage: Percent of the committed amount, e.g. 25 for 25%
            basis: Must be "committed"
            call_date: Defaults to today
            due_date: Defaults to call_date + cfg.default_due_days
            notes: Free-form notes
            initial_status: "scheduled" or "sent"

        Returns:
            The new call

        Raises:
            ValidationError: bad amount/percentage/basis/initial status
            ConstraintViolation: due date before call date, or the call would
                exceed the commitment (details carry remaining_capacity)
            NotFound: allocation does not exist
        """
        if (amount is None) == (percentage is None):
            raise ValidationError("Provide exactly one of amount or percentage")
        if basis != "committed":
            raise ValidationError(
                f"Percentage basis must be 'committed', got '{basis}'; "
                f"convert with remaining_basis_amount() and pass an amount",
                {"basis": basis},
            )
        if initial_status not in INITIAL_CALL_STATUSES:
            raise ValidationError(
                f"initial_status must be one of {', '.join(INITIAL_CALL_STATUSES)}",
                {"initial_status": initial_status},
            )
        if percentage is not None:
            percentage = coerce_amount(percentage, "percentage")
            if not ZERO < percentage <= HUNDRED:
                raise ValidationError(
                    f"percentage must be in (0, 100], got {percentage}", {"percentage": percentage}
                )
        else:
            amount = coerce_amount(amount, "amount")
            if amount <= ZERO:
                raise ValidationError(f"amount must be positive, got {amount}", {"amount": amount})

        call_date = call_date if call_date is not None else self.today()
        due_date = due_date if due_date is not None else call_date + timedelta(days=self.cfg.default_due_days)
        if due_date < call_date:
            raise ConstraintViolation(
                f"due_date {due_date} is before call_date {call_date}",
                {"call_date": call_date, "due_date": due_date},
            )

        with self.store.transaction() as tx:
            allocation = tx.require(FundAllocation, allocation_id, lock=True)
            if percentage is not None:
                amount = amount_for_percentage(allocation.committed_amount, percentage)
                if amount <= ZERO:
                    raise ValidationError(
                        f"{percentage}% of {allocation.committed_amount} rounds to zero",
                        {"percentage": percentage},
                    )

            called = sum((c.call_amount for c in tx.list_capital_calls(allocation_id)), ZERO)
            remaining = allocation.committed_amount - called
            if amount > remaining:
                raise ConstraintViolation(
                    f"Capital call of {amount} exceeds remaining commitment of {max(remaining, ZERO)}",
                    {
                        "allocation_id": allocation_id,
                        "requested_amount": amount,
                        "committed_amount": allocation.committed_amount,
                        "called_amount": called,
                        "remaining_capacity": max(remaining, ZERO),
                    },
                )

            call = build_record(
                CapitalCall,
                allocation_id=allocation_id,
                call_amount=amount,
                call_percentage=percentage,
                call_date=call_date,
                due_date=due_date,
                paid_amount=ZERO,
                outstanding_amount=amount,
                status=StatusDerivationService.derive_call_status(
                    amount,
                    ZERO,
                    initial_status=initial_status,
                    due_date=due_date,
                    as_of=self.today(),
                    grace_days=self.cfg.overdue_grace_days,
                ),
                initial_status=initial_status,
                notes=notes,
            )
            tx.add(call)
            result = recompute_allocation(tx, allocation)

        logger.info(
            "Created capital call %s on allocation %s: %s due %s",
            call.id, allocation_id, amount, due_date,
        )
        self.emit(
            "capital_call_created",
            {"capital_call_id": call.id, "allocation_id": allocation_id, "fund_id": allocation.fund_id},
            {"call_amount": amount, "call_percentage": percentage, "due_date": due_date, "status": call.status},
        )
        self.publish_recompute(result)
        return call

    @staticmethod
    def remaining_basis_amount(allocation: FundAllocation, percentage: Any) -> Decimal:
        """Dollar amount for "percentage of remaining uncalled commitment".

        Callers that mean the remaining basis convert with this and pass the
        result as `amount` to create_capital_call().
        """
        percentage = coerce_amount(percentage, "percentage")
        if not ZERO < percentage <= HUNDRED:
            raise ValidationError(f"percentage must be in (0, 100], got {percentage}", {"percentage": percentage})
        return amount_for_percentage(max(allocation.uncalled_amount, ZERO), percentage)

    # =========================================================================
    # Explicit transitions
    # =========================================================================

    def _emit_transition(self, call: CapitalCall, previous: str, **extra: Any) -> None:
        logger.info("Capital call %s status %s -> %s", call.id, previous, call.status)
        self.emit(
            "capital_call_status_changed",
            {"capital_call_id": call.id, "allocation_id": call.allocation_id},
            {"from": previous, "to": call.status, **extra},
        )

    def mark_sent(self, capital_call_id: int) -> CapitalCall:
        """Move an unpaid scheduled call to sent.

        Raises:
            ConstraintViolation: call is terminal or already sent
        """
        with self.store.transaction() as tx:
            call = tx.require(CapitalCall, capital_call_id, lock=True)
            if call.is_terminal or call.initial_status != "scheduled":
                raise ConstraintViolation(
                    f"Capital call {capital_call_id} cannot be marked sent from {call.status}",
                    {"capital_call_id": capital_call_id, "status": call.status},
                )
            previous = call.status
            call.initial_status = "sent"
            call.status = StatusDerivationService.derive_call_status(
                call.call_amount,
                call.paid_amount,
                initial_status="sent",
                due_date=call.due_date,
                as_of=self.today(),
                current=call.status,
                grace_days=self.cfg.overdue_grace_days,
            )
            tx.save(call)

        if call.status != previous:
            self._emit_transition(call, previous)
        return call

    def mark_defaulted(self, capital_call_id: int, reason: Optional[str] = None) -> CapitalCall:
        """Mark a call defaulted (terminal).

        Raises:
            ConstraintViolation: call is already paid or defaulted
        """
        with self.store.transaction() as tx:
            call = tx.require(CapitalCall, capital_call_id, lock=True)
            previous = call.status
            if not StatusDerivationService.can_transition_call(previous, "defaulted"):
                raise ConstraintViolation(
                    f"Capital call {capital_call_id} is {previous} and cannot be defaulted",
                    {"capital_call_id": capital_call_id, "status": previous},
                )
            call.status = "defaulted"
            tx.save(call)

        self._emit_transition(call, previous, reason=reason)
        return call

    def update_due_date(self, capital_call_id: int, due_date: date) -> CapitalCall:
        """Move a call's due date; the overdue flag is re-derived.

        Raises:
            ConstraintViolation: call is terminal, or due_date before call_date
        """
        with self.store.transaction() as tx:
            call = tx.require(CapitalCall, capital_call_id, lock=True)
            if call.is_terminal:
                raise ConstraintViolation(
                    f"Capital call {capital_call_id} is {call.status}; due date is fixed",
                    {"capital_call_id": capital_call_id, "status": call.status},
                )
            if due_date < call.call_date:
                raise ConstraintViolation(
                    f"due_date {due_date} is before call_date {call.call_date}",
                    {"call_date": call.call_date, "due_date": due_date},
                )
            previous = call.status
            call.due_date = due_date
            call.status = StatusDerivationService.derive_call_status(
                call.call_amount,
                call.paid_amount,
                initial_status=call.initial_status,
                due_date=due_date,
                as_of=self.today(),
                current=call.status,
                grace_days=self.cfg.overdue_grace_days,
            )
            tx.save(call)

        if call.status != previous:
            self._emit_transition(call, previous)
        return call

    def refresh_overdue(self, as_of: Optional[date] = None) -> List[CapitalCall]:
        """Scheduled sweep: flag past-due calls overdue and clear stale flags.

        Runs in one transaction; a concurrent payment makes it raise
        ConcurrencyConflict and it can simply be re-run.

        Returns:
            Calls whose status changed
        """
        as_of = as_of if as_of is not None else self.today()
        changed = []
        with self.store.transaction() as tx:
            for call in tx.list_capital_calls():
                if call.is_terminal:
                    continue
                status = StatusDerivationService.derive_call_status(
                    call.call_amount,
                    call.paid_amount,
                    initial_status=call.initial_status,
                    due_date=call.due_date,
                    as_of=as_of,
                    current=call.status,
                    grace_days=self.cfg.overdue_grace_days,
                )
                if status != call.status:
                    changed.append((call, call.status))
                    call.status = status
                    tx.save(call)

        for call, previous in changed:
            self._emit_transition(call, previous, as_of=as_of)
        logger.info("Overdue sweep as of %s: %d calls changed", as_of, len(changed))
        return [call for call, _ in changed]

    # =========================================================================
    # Deletion
    # =========================================================================

    def delete_capital_call(self, capital_call_id: int) -> None:
        """Delete a call that has no payments and recompute its allocation.

        Raises:
            ConstraintViolation: payments have been applied to the call
        """
        with self.store.transaction() as tx:
            call = tx.require(CapitalCall, capital_call_id, lock=True)
            payments = tx.list_payments(capital_call_id)
            if payments:
                raise ConstraintViolation(
                    f"Capital call {capital_call_id} has {len(payments)} payments and cannot be deleted",
                    {"capital_call_id": capital_call_id, "payments": len(payments)},
                )
            allocation = tx.require(FundAllocation, call.allocation_id, lock=True)
            tx.delete(call)
            result = recompute_allocation(tx, allocation)

        logger.info("Deleted capital call %s from allocation %s", capital_call_id, call.allocation_id)
        self.emit(
            "capital_call_deleted",
            {"capital_call_id": capital_call_id, "allocation_id": call.allocation_id, "fund_id": allocation.fund_id},
            {"call_amount": call.call_amount},
        )
        self.publish_recompute(result)

    # =========================================================================
    # Reads
    # =========================================================================

    def get_capital_call(self, capital_call_id: int) -> CapitalCall:
        with self.store.transaction() as tx:
            return tx.require(CapitalCall, capital_call_id)

    def list_capital_calls(self, allocation_id: int) -> List[CapitalCall]:
        with self.store.transaction() as tx:
            tx.require(FundAllocation, allocation_id)
            return tx.list_capital_calls(allocation_id)

    def allocation_progress(self, allocation_id: int) -> AllocationProgress:
        """Called and paid progress of an allocation, with per-call summaries."""
        with self.store.transaction() as tx:
            allocation = tx.require(FundAllocation, allocation_id)
            calls = tx.list_capital_calls(allocation_id)

        today = self.today()
        committed = allocation.committed_amount
        total_called = sum((c.call_amount for c in calls), ZERO)
        total_paid = sum((c.paid_amount for c in calls), ZERO)

        def percent(amount: Decimal) -> Decimal:
            return amount / committed * HUNDRED if committed > ZERO else ZERO

        return AllocationProgress(
            allocation_id=allocation_id,
            committed_amount=committed,
            total_called=total_called,
            total_paid=total_paid,
            percentage_called=percent(total_called),
            percentage_paid=percent(total_paid),
            current_status=allocation.status,
            capital_calls=[
                CapitalCallSummary(
                    id=c.id,
                    call_amount=c.call_amount,
                    call_date=c.call_date,
                    due_date=c.due_date,
                    paid_amount=c.paid_amount,
                    outstanding_amount=c.outstanding_amount,
                    status=c.status,
                    effective_status=StatusDerivationService.derive_call_status(
                        c.call_amount,
                        c.paid_amount,
                        initial_status=c.initial_status,
                        due_date=c.due_date,
                        as_of=today,
                        current=c.status,
                        grace_days=self.cfg.overdue_grace_days,
                    ),
                    notes=c.notes,
                )
                for c in calls
            ],
        )
