"""Integrity findings.

Inconsistencies are data, never exceptions. They annotate dashboards and
carry a suggested fix (the resummed or re-derived value) that an operator or
job must confirm before it is applied.
"""

from typing import Optional, Union
from decimal import Decimal
from pydantic import Field, model_validator

from .base import DomainModel, Severity


class Inconsistency(DomainModel):
    """One detected violation or drift.

    Severity:
        critical: a monetary invariant is broken (I1/I2/I3)
        high:     stored derived amounts disagree with their source records
        medium:   derived labels (status) disagree with derivation
        low:      missing reference data or advisory findings
    """

    entity_type: str = Field(
        description="allocation, capital_call, fund or deal"
    )

    entity_id: int = Field(
        description="ID of the record the finding is about"
    )

    allocation_id: Optional[int] = Field(
        default=None,
        description="Owning allocation, when the finding sits under one"
    )

    field: str = Field(
        description="Field that is wrong (or the invariant name)"
    )

    issue: str = Field(
        description="Human-readable description"
    )

    severity: Severity

    current_value: Optional[Union[Decimal, str]] = None

    suggested_fix: Optional[Union[Decimal, str]] = Field(
        default=None,
        description="Resummed / re-derived value; None when no value can be derived"
    )


class IntegrityScope(DomainModel):
    """Narrows runIntegrityCheck() to one fund or one allocation."""

    fund_id: Optional[int] = None
    allocation_id: Optional[int] = None

    @model_validator(mode='after')
    def validate_single_target(self):
        if self.fund_id is not None and self.allocation_id is not None:
            raise ValueError("IntegrityScope takes fund_id or allocation_id, not both")
        return self
