"""Fund allocation records.

A FundAllocation links one fund to one deal and carries the commitment plus
the amounts derived from its capital calls, payments and distributions.
"""

from typing import Dict, List, Optional
from datetime import date
from decimal import Decimal
from pydantic import Field

from .base import (
    DomainModel,
    StoredRecord,
    MoneyAmount,
    DerivedAmount,
    AllocationStatus,
    SecurityType,
    ZERO,
)


# =============================================================================
# Fund Allocation
# =============================================================================

class FundAllocation(StoredRecord):
    """A fund's commitment to a deal.

    Derived fields (recomputed from children, never patched by callers):
        called_amount:     sum of CapitalCall.call_amount
        paid_amount:       sum of CapitalCall.paid_amount
        distribution_paid: sum of Distribution.amount
        total_returned:    same resummation, kept for reporting consumers

    Invariant (enforced on write by the engine, reported by the validator):
        0 <= paid_amount <= called_amount <= committed_amount

    The model itself does not reject states that break the invariant, so that
    drifted rows can still be loaded and reported.

    Example:
        FundAllocation(
            fund_id=1,
            deal_id=7,
            committed_amount=Decimal("1000000"),
            security_type="preferred",
        )
    """

    fund_id: int = Field(
        description="Owning fund"
    )

    deal_id: int = Field(
        description="Deal invested into (unique per fund)"
    )

    committed_amount: MoneyAmount = Field(
        description="Total amount the fund promises to invest"
    )

    called_amount: DerivedAmount = Field(
        default=Decimal("0"),
        description="Sum of capital call amounts"
    )

    paid_amount: DerivedAmount = Field(
        default=Decimal("0"),
        description="Sum of payments applied across capital calls"
    )

    distribution_paid: DerivedAmount = Field(
        default=Decimal("0"),
        description="Sum of distributions returned on this allocation"
    )

    total_returned: DerivedAmount = Field(
        default=Decimal("0"),
        description="Total capital returned (distributions)"
    )

    market_value: DerivedAmount = Field(
        default=Decimal("0"),
        description="Current marked value of the position"
    )

    security_type: SecurityType = Field(
        default="equity",
        description="Security held"
    )

    status: AllocationStatus = Field(
        default="committed",
        description="Derived from paid vs committed unless explicitly overridden"
    )

    allocation_date: Optional[date] = Field(
        default=None,
        description="Investment decision date"
    )

    notes: Optional[str] = Field(
        default=None,
        description="Free-form notes"
    )

    @property
    def uncalled_amount(self) -> Decimal:
        """Commitment not yet called."""
        return self.committed_amount - self.called_amount

    @property
    def outstanding_amount(self) -> Decimal:
        """Called but unpaid."""
        return self.called_amount - self.paid_amount

    @property
    def moic(self) -> Optional[Decimal]:
        """Multiple on invested capital: (distributions + market value) / commitment.

        Returns:
            MOIC, or None when nothing is committed.
        """
        if self.committed_amount <= ZERO:
            return None
        return (self.distribution_paid + self.market_value) / self.committed_amount


class AllocationPatch(DomainModel):
    """Field patch accepted by AllocationLedger.update_allocation().

    Amount fields that are derived from capital calls (called/paid) are not
    patchable. A requested `status` is honoured only when it is an explicit
    override ("unfunded", "written_off") or agrees with the derived status.
    """

    committed_amount: Optional[MoneyAmount] = None
    market_value: Optional[MoneyAmount] = None
    security_type: Optional[SecurityType] = None
    allocation_date: Optional[date] = None
    notes: Optional[str] = None
    status: Optional[AllocationStatus] = None


class DeletionPreview(DomainModel):
    """What a cascading allocation delete would remove."""

    allocation_id: int
    capital_calls: int = 0
    open_capital_calls: int = 0
    payments: int = 0
    distributions: int = 0
    paid_amount: DerivedAmount = Decimal("0")

    @property
    def requires_cascade(self) -> bool:
        return self.open_capital_calls > 0


class BatchDeleteResult(DomainModel):
    """Outcome of AllocationLedger.delete_allocations()."""

    deleted: List[int] = Field(default_factory=list)
    failed: Dict[int, str] = Field(default_factory=dict)

    @property
    def success_count(self) -> int:
        return len(self.deleted)

    @property
    def failure_count(self) -> int:
        return len(self.failed)
