"""Capital accounting schemas.

This package contains all Pydantic models for the capital accounting layer:
- Base types, money coercion and status vocabularies
- Funds and deals
- Fund allocations (commitments)
- Capital calls and payments
- Distributions
- Metrics, integrity findings and configuration

Usage:
    from capital_domain.schemas import (
        Fund, Deal, FundAllocation, CapitalCall, Payment, Distribution,
        LedgerCFG, FundMetricsReport, Inconsistency
    )
"""

# Base types
from .base import (
    DomainModel,
    StoredRecord,
    MoneyAmount,
    DerivedAmount,
    PercentPoints,
    AllocationStatus,
    CallStatus,
    DealStage,
    SecurityType,
    DistributionType,
    CapitalView,
    Severity,
    CallBasis,
    CAPITAL_VIEWS,
    OVERRIDE_STATUSES,
    INITIAL_CALL_STATUSES,
    TERMINAL_CALL_STATUSES,
    ZERO,
    HUNDRED,
    CENTS,
)

# Funds and deals
from .funds import Fund, Deal

# Allocations
from .allocations import (
    FundAllocation,
    AllocationPatch,
    DeletionPreview,
    BatchDeleteResult,
)

# Capital calls and payments
from .capital_calls import (
    CapitalCall,
    Payment,
    CapitalCallSummary,
    AllocationProgress,
)

# Distributions
from .distributions import Distribution, DistributionSummary

# Metrics
from .metrics import (
    AllocationMetrics,
    FundTotals,
    AllocationWeight,
    SectorSlice,
    FundMetricsReport,
)

# Integrity
from .integrity import Inconsistency, IntegrityScope

# Configuration
from .config import LedgerCFG

__all__ = [
    # Base types
    "DomainModel",
    "StoredRecord",
    "MoneyAmount",
    "DerivedAmount",
    "PercentPoints",
    "AllocationStatus",
    "CallStatus",
    "DealStage",
    "SecurityType",
    "DistributionType",
    "CapitalView",
    "Severity",
    "CallBasis",
    "CAPITAL_VIEWS",
    "OVERRIDE_STATUSES",
    "INITIAL_CALL_STATUSES",
    "TERMINAL_CALL_STATUSES",
    "ZERO",
    "HUNDRED",
    "CENTS",
    # Funds and deals
    "Fund",
    "Deal",
    # Allocations
    "FundAllocation",
    "AllocationPatch",
    "DeletionPreview",
    "BatchDeleteResult",
    # Capital calls
    "CapitalCall",
    "Payment",
    "CapitalCallSummary",
    "AllocationProgress",
    # Distributions
    "Distribution",
    "DistributionSummary",
    # Metrics
    "AllocationMetrics",
    "FundTotals",
    "AllocationWeight",
    "SectorSlice",
    "FundMetricsReport",
    # Integrity
    "Inconsistency",
    "IntegrityScope",
    # Configuration
    "LedgerCFG",
]
