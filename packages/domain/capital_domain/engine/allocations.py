"""Allocation ledger.

Owns FundAllocation records: creation with commitment bounds and the
one-allocation-per-(fund, deal) rule, field patches that always re-derive
status, explicit status overrides, and cascading deletes.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Union

from .base import build_record, coerce_amount
from .recompute import RecomputingComponent, recompute_allocation, recompute_call
from .status import StatusDerivationService
from ..errors import ConstraintViolation, LedgerError, ValidationError
from ..schemas import (
    AllocationPatch,
    BatchDeleteResult,
    Deal,
    DeletionPreview,
    Fund,
    FundAllocation,
    OVERRIDE_STATUSES,
    SecurityType,
    ZERO,
)
from ..store import LedgerTransaction

logger = logging.getLogger(__name__)


class AllocationLedger(RecomputingComponent):
    """Create, patch, override and delete fund allocations."""

    # =========================================================================
    # Reads
    # =========================================================================

    def get_allocation(self, allocation_id: int) -> FundAllocation:
        with self.store.transaction() as tx:
            return tx.require(FundAllocation, allocation_id)

    def list_allocations(
        self,
        fund_id: Optional[int] = None,
        deal_id: Optional[int] = None,
    ) -> List[FundAllocation]:
        with self.store.transaction() as tx:
            return tx.list_allocations(fund_id=fund_id, deal_id=deal_id)

    # =========================================================================
    # Create / update
    # =========================================================================

    def _check_commitment(self, amount: Decimal) -> None:
        if not self.cfg.min_commitment <= amount <= self.cfg.max_commitment:
            raise ValidationError(
                f"committed_amount {amount} outside allowed range "
                f"[{self.cfg.min_commitment}, {self.cfg.max_commitment}]",
                {
                    "committed_amount": amount,
                    "min_commitment": self.cfg.min_commitment,
                    "max_commitment": self.cfg.max_commitment,
                },
            )

    def create_allocation(
        self,
        deal_id: int,
        fund_id: int,
        committed_amount: Any,
        security_type: SecurityType = "equity",
        allocation_date: Optional[date] = None,
        notes: Optional[str] = None,
    ) -> FundAllocation:
        """Commit a fund to a deal.

        Returns:
            The new allocation: status committed, called and paid zero

        Raises:
            ValidationError: amount outside [min_commitment, max_commitment]
                or unknown security type
            NotFound: fund or deal does not exist
            ConstraintViolation: the fund already has an allocation to the deal
        """
        amount = coerce_amount(committed_amount, "committed_amount")
        self._check_commitment(amount)
        allocation = build_record(
            FundAllocation,
            fund_id=fund_id,
            deal_id=deal_id,
            committed_amount=amount,
            security_type=security_type,
            allocation_date=allocation_date if allocation_date is not None else self.today(),
            notes=notes,
        )

        with self.store.transaction() as tx:
            tx.require(Fund, fund_id)
            tx.require(Deal, deal_id)
            existing = tx.find_allocation(fund_id, deal_id)
            if existing is not None:
                raise ConstraintViolation(
                    f"Fund {fund_id} already has an allocation to deal {deal_id}",
                    {"fund_id": fund_id, "deal_id": deal_id, "allocation_id": existing.id},
                )
            tx.add(allocation)

        logger.info(
            "Created allocation %s: fund %s -> deal %s, committed %s",
            allocation.id, fund_id, deal_id, amount,
        )
        self.emit(
            "allocation_created",
            {"allocation_id": allocation.id, "fund_id": fund_id, "deal_id": deal_id},
            {"committed_amount": amount, "security_type": allocation.security_type},
        )
        self.aggregator.refresh_after_commit(fund_id)
        return allocation

    def update_allocation(
        self,
        allocation_id: int,
        patch: Union[AllocationPatch, Dict[str, Any]],
    ) -> FundAllocation:
        """Apply a field patch and re-derive status.

        A requested status is applied only when it is an allowed explicit
        override (unfunded, written_off) or equals the derived status. Any
        other requested status is not applied; the rejection is logged and
        emitted as allocation_status_override_rejected, and the rest of the
        patch still goes through.

        Raises:
            ValidationError: malformed patch or commitment out of range
            NotFound: allocation does not exist
            ConstraintViolation: new commitment below the amount already called
        """
        if not isinstance(patch, AllocationPatch):
            patch = build_record(AllocationPatch, **patch)
        changes = patch.model_dump(exclude_unset=True)
        requested_status = changes.pop("status", None)
        if changes.get("committed_amount") is not None:
            self._check_commitment(changes["committed_amount"])

        rejected: Optional[Dict[str, Any]] = None
        with self.store.transaction() as tx:
            allocation = tx.require(FundAllocation, allocation_id, lock=True)
            original_status = allocation.status
            new_committed = changes.get("committed_amount")
            if new_committed is not None:
                called = sum((c.call_amount for c in tx.list_capital_calls(allocation_id)), ZERO)
                if new_committed < called:
                    raise ConstraintViolation(
                        f"committed_amount {new_committed} is below the {called} already called",
                        {"committed_amount": new_committed, "called_amount": called},
                    )

            for name, value in changes.items():
                if value is not None or name in ("allocation_date", "notes"):
                    setattr(allocation, name, value)

            result = recompute_allocation(tx, allocation)
            if requested_status is not None and requested_status != allocation.status:
                rejected = self._apply_requested_status(allocation, requested_status)
                if rejected is None:
                    tx.save(allocation)

        ids = {"allocation_id": allocation.id, "fund_id": allocation.fund_id, "deal_id": allocation.deal_id}
        logger.info("Updated allocation %s: %s", allocation_id, sorted(changes))
        self.emit("allocation_updated", ids, {"fields": sorted(changes)})
        if rejected is not None:
            logger.warning(
                "Allocation %s: requested status %s contradicts derived status %s; not applied",
                allocation_id, requested_status, allocation.status,
            )
            self.emit("allocation_status_override_rejected", ids, rejected)
        result.previous_status = original_status
        self.publish_recompute(result)
        return allocation

    def _apply_requested_status(self, allocation: FundAllocation, requested: str) -> Optional[Dict[str, Any]]:
        """Apply a caller-supplied status if allowed; otherwise describe the rejection."""
        derived = StatusDerivationService.derive_allocation_status(
            allocation.committed_amount, allocation.paid_amount
        )
        if requested in OVERRIDE_STATUSES:
            allowed = StatusDerivationService.can_override_allocation(allocation.status, requested)
        else:
            allowed = requested == derived and allocation.status != "written_off"
        if allowed:
            allocation.status = requested
            return None
        return {"requested": requested, "current": allocation.status, "derived": derived}

    # =========================================================================
    # Status overrides
    # =========================================================================

    def override_status(self, allocation_id: int, status: str, reason: Optional[str] = None) -> FundAllocation:
        """Explicitly mark an allocation unfunded or written_off.

        Raises:
            ValidationError: status is not an override status
            NotFound: allocation does not exist
            ConstraintViolation: transition not allowed (e.g. unfunded with payments,
                anything out of written_off)
        """
        if status not in OVERRIDE_STATUSES:
            raise ValidationError(
                f"Only {', '.join(OVERRIDE_STATUSES)} can be set explicitly, got '{status}'",
                {"status": status},
            )
        with self.store.transaction() as tx:
            allocation = tx.require(FundAllocation, allocation_id, lock=True)
            previous = allocation.status
            if previous == status:
                return allocation
            if not StatusDerivationService.can_override_allocation(previous, status):
                raise ConstraintViolation(
                    f"Allocation {allocation_id} cannot move from {previous} to {status}",
                    {"allocation_id": allocation_id, "current": previous, "requested": status},
                )
            allocation.status = status
            tx.save(allocation)

        logger.info("Allocation %s overridden %s -> %s (%s)", allocation_id, previous, status, reason)
        self.emit(
            "allocation_status_changed",
            {"allocation_id": allocation.id, "fund_id": allocation.fund_id, "deal_id": allocation.deal_id},
            {"from": previous, "to": status, "override": True, "reason": reason},
        )
        return allocation

    def clear_override(self, allocation_id: int) -> FundAllocation:
        """Drop an explicit override and go back to the derived status."""
        with self.store.transaction() as tx:
            allocation = tx.require(FundAllocation, allocation_id, lock=True)
            previous = allocation.status
            if previous not in OVERRIDE_STATUSES:
                return allocation
            allocation.status = StatusDerivationService.derive_allocation_status(
                allocation.committed_amount, allocation.paid_amount
            )
            result = recompute_allocation(tx, allocation)

        result.previous_status = previous
        self.publish_recompute(result, refresh_fund=False)
        return allocation

    # =========================================================================
    # Deletion
    # =========================================================================

    def _preview(self, tx: LedgerTransaction, allocation: FundAllocation) -> DeletionPreview:
        calls = tx.list_capital_calls(allocation.id)
        payments = sum(len(tx.list_payments(c.id)) for c in calls)
        return DeletionPreview(
            allocation_id=allocation.id,
            capital_calls=len(calls),
            open_capital_calls=sum(1 for c in calls if not c.is_terminal),
            payments=payments,
            distributions=len(tx.list_distributions(allocation.id)),
            paid_amount=sum((c.paid_amount for c in calls), ZERO),
        )

    def preview_deletion(self, allocation_id: int) -> DeletionPreview:
        """Counts of what delete_allocation() would remove."""
        with self.store.transaction() as tx:
            return self._preview(tx, tx.require(FundAllocation, allocation_id))

    def delete_allocation(self, allocation_id: int, cascade: bool = False) -> DeletionPreview:
        """Delete an allocation together with its calls, payments and distributions.

        Args:
            allocation_id: Allocation to delete
            cascade: Required when the allocation still has open capital calls

        Returns:
            Preview of what was removed

        Raises:
            NotFound: allocation does not exist
            ConstraintViolation: open capital calls exist and cascade is False
        """
        with self.store.transaction() as tx:
            allocation = tx.require(FundAllocation, allocation_id, lock=True)
            preview = self._preview(tx, allocation)
            if preview.requires_cascade and not cascade:
                raise ConstraintViolation(
                    f"Allocation {allocation_id} has {preview.open_capital_calls} open capital calls; "
                    f"delete with cascade=True",
                    preview.model_dump(),
                )
            for call in tx.list_capital_calls(allocation_id):
                for payment in tx.list_payments(call.id):
                    tx.delete(payment)
                tx.delete(call)
            for distribution in tx.list_distributions(allocation_id):
                tx.delete(distribution)
            tx.delete(allocation)

        logger.info(
            "Deleted allocation %s (%d calls, %d payments, %d distributions)",
            allocation_id, preview.capital_calls, preview.payments, preview.distributions,
        )
        self.emit(
            "allocation_deleted",
            {"allocation_id": allocation_id, "fund_id": allocation.fund_id, "deal_id": allocation.deal_id},
            {**preview.model_dump(), "cascade": cascade},
        )
        self.aggregator.refresh_after_commit(allocation.fund_id)
        return preview

    def delete_allocations(self, allocation_ids: Iterable[int], cascade: bool = False) -> BatchDeleteResult:
        """Delete several allocations, each in its own transaction."""
        result = BatchDeleteResult()
        for allocation_id in allocation_ids:
            try:
                self.delete_allocation(allocation_id, cascade=cascade)
            except LedgerError as exc:
                logger.warning("Batch delete of allocation %s failed: %s", allocation_id, exc.message)
                result.failed[allocation_id] = exc.message
            else:
                result.deleted.append(allocation_id)
        logger.info("Batch delete: %d deleted, %d failed", result.success_count, result.failure_count)
        return result

    # =========================================================================
    # Repair
    # =========================================================================

    def sync_allocation(self, allocation_id: int) -> FundAllocation:
        """Rebuild an allocation and its calls from payments and distributions.

        This is how an operator applies the validator's suggested fixes.
        """
        with self.store.transaction() as tx:
            allocation = tx.require(FundAllocation, allocation_id, lock=True)
            for call in tx.list_capital_calls(allocation_id):
                recompute_call(tx, call, as_of=self.today(), grace_days=self.cfg.overdue_grace_days)
            result = recompute_allocation(tx, allocation)

        logger.info("Synced allocation %s", allocation_id)
        self.publish_recompute(result)
        return allocation

    def sync_fund(self, fund_id: int) -> Fund:
        """Sync every allocation of a fund, then refresh the fund."""
        with self.store.transaction() as tx:
            tx.require(Fund, fund_id)
            allocation_ids = [a.id for a in tx.list_allocations(fund_id=fund_id)]
        for allocation_id in allocation_ids:
            self.sync_allocation(allocation_id)
        return self.aggregator.refresh_fund(fund_id)
