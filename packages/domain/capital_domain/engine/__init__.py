"""Capital accounting engine.

Components (leaves first):
- StatusDerivationService: pure status rules for allocations, calls and deals
- AllocationLedger: FundAllocation lifecycle
- CapitalCallEngine: capital calls, never exceeding the commitment
- PaymentProcessor: payments against capital calls
- DistributionLedger: distributions and MOIC
- CapitalMetricsAggregator: allocation, fund and sector rollups
- IntegrityValidator: read-only drift detection
- CapitalEngine: facade wiring all of the above
"""

from .status import StatusDerivationService, CALL_TRANSITIONS, ALLOCATION_OVERRIDE_TRANSITIONS
from .base import LedgerComponent
from .recompute import RecomputeResult, recompute_allocation, recompute_call
from .metrics import CapitalMetricsAggregator
from .allocations import AllocationLedger
from .capital_calls import CapitalCallEngine, amount_for_percentage
from .payments import PaymentProcessor
from .distributions import DistributionLedger
from .integrity import IntegrityValidator
from .facade import CapitalEngine

__all__ = [
    "StatusDerivationService",
    "CALL_TRANSITIONS",
    "ALLOCATION_OVERRIDE_TRANSITIONS",
    "LedgerComponent",
    "RecomputeResult",
    "recompute_allocation",
    "recompute_call",
    "CapitalMetricsAggregator",
    "AllocationLedger",
    "CapitalCallEngine",
    "amount_for_percentage",
    "PaymentProcessor",
    "DistributionLedger",
    "IntegrityValidator",
    "CapitalEngine",
]
