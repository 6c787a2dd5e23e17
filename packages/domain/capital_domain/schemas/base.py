"""Base classes and type system for capital accounting models.

This module provides the foundational types, validators, and base classes
used throughout the capital accounting schemas.
"""

from decimal import Decimal
from typing import Annotated, Any, Literal, Optional
from pydantic import BaseModel, BeforeValidator, Field, ConfigDict

# =============================================================================
# Base Model
# =============================================================================

class DomainModel(BaseModel):
    """Base class for all domain models.

    Provides common configuration for all Pydantic models in the domain layer:
    - Validation on assignment for runtime safety
    - Support for Decimal and date types
    - Literal/enum value serialization
    """

    model_config = ConfigDict(
        frozen=False,  # Engine recomputes derived fields in place
        validate_assignment=True,
        use_enum_values=True,
        arbitrary_types_allowed=True,
    )


class StoredRecord(DomainModel):
    """A record owned by a ledger store.

    `id` is assigned by the store on insert. `version` is the optimistic
    concurrency token: 0 for unsaved records, bumped by the store on every
    committed write.
    """

    id: Optional[int] = Field(
        default=None,
        description="Store-assigned identifier (None until inserted)"
    )

    version: int = Field(
        default=0,
        ge=0,
        description="Optimistic concurrency token maintained by the store"
    )


# =============================================================================
# Deserialization boundary
# =============================================================================

def to_decimal(value: Any) -> Any:
    """Coerce numeric input to Decimal.

    Floats go through str() so 0.1 becomes Decimal("0.1") rather than the
    binary expansion. Anything else is left for pydantic to validate.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, int):
        return Decimal(value)
    return value


def none_to_zero(value: Any) -> Any:
    """Normalize missing derived amounts to zero, then coerce to Decimal."""
    if value is None or value == "":
        return Decimal("0")
    return to_decimal(value)


# =============================================================================
# Type Aliases - Numeric
# =============================================================================

MoneyAmount = Annotated[
    Decimal,
    BeforeValidator(to_decimal),
    Field(ge=0, description="Currency amount (non-negative)")
]

# Unbounded: a stored aggregate that drifted negative must still load so the
# integrity scan can report it. Caller input uses MoneyAmount.
DerivedAmount = Annotated[
    Decimal,
    BeforeValidator(none_to_zero),
    Field(description="Recomputed amount; missing values load as zero")
]

PercentPoints = Annotated[
    Decimal,
    BeforeValidator(to_decimal),
    Field(ge=0, le=100, description="Percentage in points (25 = 25%)")
]

ZERO = Decimal("0")
HUNDRED = Decimal("100")
CENTS = Decimal("0.01")


# =============================================================================
# Status and category vocabularies
# =============================================================================

AllocationStatus = Literal[
    "committed",
    "partially_paid",
    "funded",
    "unfunded",
    "written_off",
]

# Statuses an operator may set explicitly; never produced by derivation
OVERRIDE_STATUSES = ("unfunded", "written_off")

CallStatus = Literal[
    "scheduled",
    "sent",
    "partially_paid",
    "paid",
    "overdue",
    "defaulted",
]

INITIAL_CALL_STATUSES = ("scheduled", "sent")
TERMINAL_CALL_STATUSES = ("paid", "defaulted")

DealStage = Literal[
    "initial_review",
    "screening",
    "diligence",
    "ic_review",
    "closing",
    "closed",
    "invested",
    "rejected",
]

SecurityType = Literal["equity", "debt", "preferred", "convertible", "warrant"]

DistributionType = Literal["dividend", "capital_return", "interest", "fee", "other"]

CapitalView = Literal["committed", "called", "paid", "uncalled", "outstanding"]

CAPITAL_VIEWS = ("committed", "called", "paid", "uncalled", "outstanding")

Severity = Literal["critical", "high", "medium", "low"]

# Only "committed" is accepted by the engine; "remaining" exists so callers
# can name the conversion they pre-apply.
CallBasis = Literal["committed", "remaining"]
