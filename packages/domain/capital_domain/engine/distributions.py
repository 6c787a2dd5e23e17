"""Distribution ledger.

Distributions are an independent accounting track under an allocation. They
feed distribution_paid / total_returned and MOIC, never called or paid.
"""

import logging
from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .base import build_record, coerce_amount
from .recompute import RecomputingComponent, recompute_allocation
from ..errors import ValidationError
from ..schemas import (
    Distribution,
    DistributionSummary,
    DistributionType,
    Fund,
    FundAllocation,
    ZERO,
)

logger = logging.getLogger(__name__)


class DistributionLedger(RecomputingComponent):
    """Record, delete and summarise distributions."""

    def record_distribution(
        self,
        allocation_id: int,
        amount: Any,
        distribution_date: Optional[date] = None,
        distribution_type: DistributionType = "other",
        notes: Optional[str] = None,
    ) -> Distribution:
        """Record money returned on an allocation.

        Raises:
            ValidationError: amount not positive or unknown type
            NotFound: allocation does not exist
        """
        amount = coerce_amount(amount, "amount")
        if amount <= ZERO:
            raise ValidationError(f"Distribution amount must be positive, got {amount}", {"amount": amount})
        distribution = build_record(
            Distribution,
            allocation_id=allocation_id,
            amount=amount,
            distribution_date=distribution_date if distribution_date is not None else self.today(),
            distribution_type=distribution_type,
            notes=notes,
        )

        with self.store.transaction() as tx:
            allocation = tx.require(FundAllocation, allocation_id, lock=True)
            tx.add(distribution)
            result = recompute_allocation(tx, allocation)

        logger.info(
            "Recorded %s distribution %s of %s on allocation %s",
            distribution.distribution_type, distribution.id, amount, allocation_id,
        )
        self.emit(
            "distribution_recorded",
            {"distribution_id": distribution.id, "allocation_id": allocation_id, "fund_id": allocation.fund_id},
            {"amount": amount, "distribution_type": distribution.distribution_type},
        )
        self.publish_recompute(result)
        return distribution

    def delete_distribution(self, distribution_id: int) -> None:
        with self.store.transaction() as tx:
            distribution = tx.require(Distribution, distribution_id)
            allocation = tx.require(FundAllocation, distribution.allocation_id, lock=True)
            tx.delete(distribution)
            result = recompute_allocation(tx, allocation)

        logger.info("Deleted distribution %s from allocation %s", distribution_id, allocation.id)
        self.emit(
            "distribution_deleted",
            {"distribution_id": distribution_id, "allocation_id": allocation.id, "fund_id": allocation.fund_id},
            {"amount": distribution.amount},
        )
        self.publish_recompute(result)

    def list_distributions(self, allocation_id: int) -> List[Distribution]:
        with self.store.transaction() as tx:
            tx.require(FundAllocation, allocation_id)
            return tx.list_distributions(allocation_id)

    def distribution_summary(
        self,
        allocation_id: Optional[int] = None,
        fund_id: Optional[int] = None,
    ) -> DistributionSummary:
        """Totals, totals by type and MOIC for one allocation or one fund.

        Raises:
            ValidationError: neither or both of allocation_id and fund_id given
            NotFound: allocation or fund does not exist
        """
        if (allocation_id is None) == (fund_id is None):
            raise ValidationError("Provide exactly one of allocation_id or fund_id")

        with self.store.transaction() as tx:
            if allocation_id is not None:
                allocations = [tx.require(FundAllocation, allocation_id)]
            else:
                tx.require(Fund, fund_id)
                allocations = tx.list_allocations(fund_id=fund_id)
            distributions = [d for a in allocations for d in tx.list_distributions(a.id)]

        by_type: Dict[str, Decimal] = defaultdict(lambda: ZERO)
        for distribution in distributions:
            by_type[distribution.distribution_type] += distribution.amount

        total = sum((d.amount for d in distributions), ZERO)
        committed = sum((a.committed_amount for a in allocations), ZERO)
        market_value = sum((a.market_value for a in allocations), ZERO)
        return DistributionSummary(
            count=len(distributions),
            total_amount=total,
            by_type=dict(by_type),
            committed_amount=committed,
            market_value=market_value,
            moic=(total + market_value) / committed if committed > ZERO else None,
        )
