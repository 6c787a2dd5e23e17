"""Capital call and payment records.

CapitalCall and Payment form a strict child chain under a FundAllocation:
    FundAllocation -> CapitalCall -> Payment

Status lifecycle of a call:
    scheduled -> sent -> partially_paid -> paid

    overdue:   flag-state reachable from any non-terminal state once the due
               date passes; reverts once the call is paid
    defaulted: terminal, reachable only through an explicit action
"""

from typing import List, Optional
from datetime import date
from decimal import Decimal
from pydantic import Field

from .base import (
    DomainModel,
    StoredRecord,
    MoneyAmount,
    DerivedAmount,
    PercentPoints,
    CallStatus,
    AllocationStatus,
    TERMINAL_CALL_STATUSES,
)


# =============================================================================
# Capital Call
# =============================================================================

class CapitalCall(StoredRecord):
    """A request for a portion of an allocation's commitment.

    Invariants (enforced by the engine on write, reported by the validator):
        0 <= paid_amount <= call_amount
        outstanding_amount == call_amount - paid_amount
        due_date >= call_date
        sum(call_amount over the allocation's calls) <= committed_amount

    Example:
        25% call on a $1M commitment:
            call_amount=250_000
            call_percentage=25 (recorded for display, basis "committed")
            paid_amount=0, outstanding_amount=250_000, status="scheduled"
    """

    allocation_id: int = Field(
        description="Owning allocation"
    )

    call_amount: MoneyAmount = Field(
        description="Dollar amount called"
    )

    call_percentage: Optional[PercentPoints] = Field(
        default=None,
        description="Percentage of committed amount the caller asked for, if sized by percentage"
    )

    call_date: date = Field(
        description="Date the call was issued"
    )

    due_date: date = Field(
        description="Payment due date (must be on or after call_date)"
    )

    paid_amount: DerivedAmount = Field(
        default=Decimal("0"),
        description="Sum of payments applied to this call"
    )

    outstanding_amount: DerivedAmount = Field(
        default=Decimal("0"),
        description="call_amount - paid_amount"
    )

    status: CallStatus = Field(
        default="scheduled",
        description="Current lifecycle state"
    )

    initial_status: CallStatus = Field(
        default="scheduled",
        description="State the call reverts to while unpaid (scheduled or sent)"
    )

    notes: Optional[str] = Field(
        default=None,
        description="Free-form notes"
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CALL_STATUSES


# =============================================================================
# Payment
# =============================================================================

class Payment(StoredRecord):
    """A payment applied to exactly one capital call.

    Payments are strictly additive; they are never negative and never push
    the call's paid amount past its call amount.
    """

    capital_call_id: int = Field(
        description="Capital call the payment is applied to"
    )

    amount: MoneyAmount = Field(
        description="Amount paid"
    )

    payment_date: date = Field(
        description="Date the payment was received"
    )

    reference: Optional[str] = Field(
        default=None,
        description="Caller-supplied idempotency reference (e.g. wire id)"
    )

    notes: Optional[str] = Field(
        default=None,
        description="Free-form notes"
    )


# =============================================================================
# Progress view
# =============================================================================

class CapitalCallSummary(DomainModel):
    """One call inside an AllocationProgress view."""

    id: int
    call_amount: Decimal
    call_date: date
    due_date: date
    paid_amount: Decimal
    outstanding_amount: Decimal
    status: CallStatus
    effective_status: CallStatus
    notes: Optional[str] = None


class AllocationProgress(DomainModel):
    """Commitment, call and payment progress for one allocation."""

    allocation_id: int
    committed_amount: Decimal
    total_called: Decimal
    total_paid: Decimal
    percentage_called: Decimal
    percentage_paid: Decimal
    current_status: AllocationStatus
    capital_calls: List[CapitalCallSummary] = Field(default_factory=list)
