"""Ledger configuration.

LedgerCFG is passed explicitly into every engine component. There is no
process-wide configuration object; build one per engine and hand it down.
Fields left unset fall back to CAPITAL_LEDGER_* environment variables, then
to the defaults below.
"""

from decimal import Decimal
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .base import MoneyAmount


ENV_PREFIX = "CAPITAL_LEDGER_"


class LedgerCFG(BaseSettings):
    """Limits and tolerances for the capital engine.

    Examples:
        # Defaults
        LedgerCFG()

        # Production-style limits
        LedgerCFG(min_commitment=Decimal("10000"), sector_top_n=5)

        # CAPITAL_LEDGER_SECTOR_TOP_N=5 in the environment
        LedgerCFG().sector_top_n  # 5
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        validate_assignment=True,
    )

    min_commitment: MoneyAmount = Field(
        default=Decimal("1000"),
        description="Smallest commitment accepted by createAllocation"
    )

    max_commitment: MoneyAmount = Field(
        default=Decimal("100000000"),
        description="Largest commitment accepted by createAllocation"
    )

    money_epsilon: MoneyAmount = Field(
        default=Decimal("0.01"),
        description="Tolerance when comparing stored aggregates to resummed totals"
    )

    sector_top_n: int = Field(
        default=7,
        ge=1,
        description="Sectors shown individually before the rest collapse into 'Other'"
    )

    default_due_days: int = Field(
        default=30,
        ge=0,
        description="Due date offset used when a capital call is created without one"
    )

    overdue_grace_days: int = Field(
        default=0,
        ge=0,
        description="Days past due before an unpaid call derives as overdue"
    )

    max_refresh_retries: int = Field(
        default=3,
        ge=0,
        description="Retries of the post-commit fund refresh on a concurrency conflict"
    )

    other_sector_label: str = Field(
        default="Other",
        description="Label of the long-tail sector bucket"
    )

    missing_sector_label: str = Field(
        default="Unspecified",
        description="Label used for deals without a sector"
    )

    @model_validator(mode='after')
    def validate_commitment_bounds(self):
        if self.min_commitment >= self.max_commitment:
            raise ValueError(
                f"min_commitment ({self.min_commitment}) must be less than "
                f"max_commitment ({self.max_commitment})"
            )
        return self

    @classmethod
    def from_env(cls) -> "LedgerCFG":
        """Build a config from CAPITAL_LEDGER_* variables, defaults elsewhere."""
        return cls()
