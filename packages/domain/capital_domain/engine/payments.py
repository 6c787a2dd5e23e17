"""Payment processing.

A payment is applied to exactly one capital call, atomically with the
recomputation of the owning allocation:

    call.paid_amount       += amount
    call.outstanding_amount = call.call_amount - call.paid_amount
    call.status             = paid | partially_paid | unchanged
    allocation.paid_amount  = sum(call.paid_amount)   (resummed, never +=)

The call is read with a row lock where the store supports it, and both the
call and its allocation are version-checked at commit, so of two concurrent
payments that together exceed the outstanding balance exactly one commits.
"""

import logging
from datetime import date
from typing import Any, List, Optional

from .base import build_record, coerce_amount
from .recompute import RecomputingComponent, recompute_allocation
from .status import StatusDerivationService
from ..errors import ConstraintViolation, ValidationError
from ..schemas import CapitalCall, FundAllocation, Payment, ZERO

logger = logging.getLogger(__name__)


class PaymentProcessor(RecomputingComponent):
    """Applies payments to capital calls."""

    def process_payment(
        self,
        capital_call_id: int,
        amount: Any,
        payment_date: Optional[date] = None,
        reference: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> CapitalCall:
        """Apply a payment.

        Args:
            capital_call_id: Call being paid
            amount: Positive amount, at most the call's outstanding balance
            payment_date: Defaults to today
            reference: Idempotency key; a reference already applied to this
                call returns the call unchanged
            notes: Free-form notes

        Returns:
            The updated capital call

        Raises:
            ValidationError: amount not positive
            NotFound: call does not exist
            ConstraintViolation: call defaulted or fully paid, or amount
                exceeds outstanding (details carry outstanding_amount)
            ConcurrencyConflict: a concurrent mutation won; nothing applied
        """
        amount = coerce_amount(amount, "amount")
        if amount <= ZERO:
            raise ValidationError(f"Payment amount must be positive, got {amount}", {"amount": amount})
        payment_date = payment_date if payment_date is not None else self.today()

        with self.store.transaction() as tx:
            call = tx.require(CapitalCall, capital_call_id, lock=True)
            if reference is not None:
                replayed = [p for p in tx.list_payments(capital_call_id) if p.reference == reference]
                if replayed:
                    logger.info(
                        "Payment %s already applied to capital call %s as payment %s",
                        reference, capital_call_id, replayed[0].id,
                    )
                    return call

            if call.status == "defaulted":
                raise ConstraintViolation(
                    f"Capital call {capital_call_id} is defaulted",
                    {"capital_call_id": capital_call_id, "status": call.status},
                )
            outstanding = call.call_amount - call.paid_amount
            if outstanding <= ZERO:
                raise ConstraintViolation(
                    f"Capital call {capital_call_id} is already fully paid",
                    {"capital_call_id": capital_call_id, "outstanding_amount": ZERO},
                )
            if amount > outstanding:
                raise ConstraintViolation(
                    f"Payment of {amount} exceeds outstanding balance of {outstanding}",
                    {
                        "capital_call_id": capital_call_id,
                        "requested_amount": amount,
                        "outstanding_amount": outstanding,
                    },
                )

            payment = build_record(
                Payment,
                capital_call_id=capital_call_id,
                amount=amount,
                payment_date=payment_date,
                reference=reference,
                notes=notes,
            )
            tx.add(payment)

            previous_status = call.status
            call.paid_amount = call.paid_amount + amount
            call.outstanding_amount = call.call_amount - call.paid_amount
            call.status = StatusDerivationService.derive_call_status(
                call.call_amount,
                call.paid_amount,
                initial_status=call.initial_status,
                due_date=call.due_date,
                as_of=self.today(),
                current=call.status,
                grace_days=self.cfg.overdue_grace_days,
            )
            tx.save(call)

            allocation = tx.require(FundAllocation, call.allocation_id, lock=True)
            result = recompute_allocation(tx, allocation)

        logger.info(
            "Applied payment %s of %s to capital call %s (outstanding %s)",
            payment.id, amount, capital_call_id, call.outstanding_amount,
        )
        self.emit(
            "payment_processed",
            {
                "payment_id": payment.id,
                "capital_call_id": capital_call_id,
                "allocation_id": allocation.id,
                "fund_id": allocation.fund_id,
            },
            {
                "amount": amount,
                "payment_date": payment_date,
                "reference": reference,
                "outstanding_amount": call.outstanding_amount,
            },
        )
        if call.status != previous_status:
            self.emit(
                "capital_call_status_changed",
                {"capital_call_id": call.id, "allocation_id": call.allocation_id},
                {"from": previous_status, "to": call.status},
            )
        self.publish_recompute(result)
        return call

    def list_payments(self, capital_call_id: int) -> List[Payment]:
        with self.store.transaction() as tx:
            tx.require(CapitalCall, capital_call_id)
            return tx.list_payments(capital_call_id)
