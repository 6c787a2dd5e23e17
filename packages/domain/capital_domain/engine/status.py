"""Status derivation.

Statuses are derived from amounts, not stored truths. Everything here is a
pure function of its arguments so it can be called from the engine, from the
integrity validator and from tests alike.

Allocation:
    paid <= 0          -> committed
    paid >= committed  -> funded
    otherwise          -> partially_paid
    "unfunded" / "written_off" only ever come from an explicit override.

Capital call:
    paid <= 0              -> initial state (scheduled or sent)
    0 < paid < call_amount -> partially_paid
    paid >= call_amount    -> paid (terminal)
    past due and not paid  -> overdue (reverts once paid)
    "defaulted" only ever comes from an explicit action and is terminal.
"""

from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, Iterable, Optional, Tuple

from ..schemas.base import (
    AllocationStatus,
    CallStatus,
    DealStage,
    OVERRIDE_STATUSES,
    TERMINAL_CALL_STATUSES,
    ZERO,
)


# Explicit (operator/job) transitions. Derived transitions are not listed
# here; they follow from amounts.
CALL_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "scheduled": ("sent", "defaulted"),
    "sent": ("defaulted",),
    "partially_paid": ("defaulted",),
    "overdue": ("defaulted",),
    "paid": (),
    "defaulted": (),
}

ALLOCATION_OVERRIDE_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "committed": ("unfunded", "written_off"),
    "partially_paid": ("written_off",),
    "funded": ("written_off",),
    "unfunded": ("written_off",),
    "written_off": (),
}

FUNDED_STATUSES = ("partially_paid", "funded")


class StatusDerivationService:
    """Stateless status rules shared by every component."""

    @staticmethod
    def derive_allocation_status(committed_amount: Decimal, paid_amount: Decimal) -> AllocationStatus:
        """Derive an allocation's status from paid vs committed."""
        if paid_amount <= ZERO:
            return "committed"
        if paid_amount >= committed_amount:
            return "funded"
        return "partially_paid"

    @classmethod
    def resolve_allocation_status(
        cls,
        current: AllocationStatus,
        committed_amount: Decimal,
        paid_amount: Decimal,
    ) -> AllocationStatus:
        """Status to store after a recomputation, honouring explicit overrides.

        written_off is sticky. unfunded survives until payments move the
        derived status past committed.
        """
        derived = cls.derive_allocation_status(committed_amount, paid_amount)
        if current == "written_off":
            return current
        if current == "unfunded" and derived == "committed":
            return current
        return derived

    @staticmethod
    def is_override(status: str) -> bool:
        return status in OVERRIDE_STATUSES

    @staticmethod
    def can_override_allocation(current: str, target: str) -> bool:
        return target in ALLOCATION_OVERRIDE_TRANSITIONS.get(current, ())

    @staticmethod
    def derive_call_status(
        call_amount: Decimal,
        paid_amount: Decimal,
        initial_status: CallStatus = "scheduled",
        due_date: Optional[date] = None,
        as_of: Optional[date] = None,
        current: Optional[CallStatus] = None,
        grace_days: int = 0,
    ) -> CallStatus:
        """Derive a capital call's status.

        Args:
            call_amount: Amount called
            paid_amount: Sum of payments applied
            initial_status: State an unpaid call sits in (scheduled or sent)
            due_date: Payment due date (overdue check skipped when None)
            as_of: Evaluation date (overdue check skipped when None)
            current: Stored status; a defaulted call stays defaulted
            grace_days: Days past due before the call counts as overdue

        Returns:
            Derived CallStatus
        """
        if current == "defaulted":
            return "defaulted"
        if paid_amount <= ZERO:
            status = initial_status
        elif paid_amount < call_amount:
            status = "partially_paid"
        else:
            return "paid"
        if due_date is not None and as_of is not None:
            if as_of > due_date + timedelta(days=grace_days):
                return "overdue"
        return status

    @staticmethod
    def is_terminal_call_status(status: str) -> bool:
        return status in TERMINAL_CALL_STATUSES

    @staticmethod
    def can_transition_call(current: str, target: str) -> bool:
        """Whether an explicit action may move a call from `current` to `target`."""
        return target in CALL_TRANSITIONS.get(current, ())

    @staticmethod
    def next_deal_stage(stage: DealStage, allocation_statuses: Iterable[str]) -> DealStage:
        """Advance a deal to invested once money has been paid in.

        One-directional: an invested deal is never moved back, and the stage
        is left alone while no allocation is partially paid or funded.
        """
        if stage == "invested":
            return stage
        if any(status in FUNDED_STATUSES for status in allocation_statuses):
            return "invested"
        return stage
