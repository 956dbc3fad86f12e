"""
Typed Request Models

DESIGN DECISION: Every core operation takes one explicit request model.
No loosely-typed dicts cross into an engine.

These models only check STRUCTURE (types, lengths, decimal places).
Business-range checks (amount > 0, per-payment ceiling, date order)
are done by vaultpay.validation so they surface as our own
ValidationError with a list of issues, rather than as a bare
pydantic error.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from vaultpay.models.ledger import BudgetPeriod, TransactionStatus, VaultType
from vaultpay.models.money import ZERO, Money


def _assume_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC; the ledger stores aware UTC times."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class _Request(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    user_id: str = Field(..., min_length=1, description="Authenticated caller")


# =============================================================================
# ACCOUNT LIFECYCLE
# =============================================================================

class LinkAccountRequest(_Request):
    account_number: str = Field(..., min_length=4, max_length=34)
    routing_code: str = Field(..., min_length=1, max_length=20)
    bank_name: str = Field(..., min_length=1, max_length=100)
    holder_name: str = Field(..., min_length=1, max_length=200)
    initial_balance: Money = ZERO

    @field_validator("routing_code")
    @classmethod
    def upper_routing_code(cls, v: str) -> str:
        return v.upper()


class BalanceAdjustmentRequest(_Request):
    """Apply a signed delta to an account balance."""

    account_id: str = Field(..., min_length=1)
    delta: Money
    description: str = Field(default="", max_length=500)


# =============================================================================
# VAULT ALLOCATION
# =============================================================================

class AllocateRequest(_Request):
    bank_account_id: str = Field(..., min_length=1)
    vault_name: str = Field(..., min_length=1, max_length=100)
    vault_type: VaultType
    amount: Money

    # Metadata
    icon: Optional[str] = Field(default=None, max_length=16)
    budget_period: BudgetPeriod = BudgetPeriod.MONTHLY
    auto_refill: bool = False


class ReallocateRequest(_Request):
    vault_id: str = Field(..., min_length=1)
    new_amount: Money


class UpdateVaultRequest(_Request):
    """Metadata edit with an optional allocation change."""

    vault_id: str = Field(..., min_length=1)
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    icon: Optional[str] = Field(default=None, max_length=16)
    budget_period: Optional[BudgetPeriod] = None
    auto_refill: Optional[bool] = None
    allocated_amount: Optional[Money] = None

    def metadata_changes(self) -> dict:
        """Non-allocation fields the caller actually set."""
        return self.model_dump(
            include={"name", "icon", "budget_period", "auto_refill"},
            exclude_none=True,
        )


# =============================================================================
# PAYMENTS
# =============================================================================

class PaymentRequest(_Request):
    vault_id: str = Field(..., min_length=1)
    amount: Money
    description: str = Field(default="", max_length=500)

    recipient_phone: Optional[str] = Field(default=None, max_length=20)
    recipient_upi: Optional[str] = Field(default=None, max_length=100)
    recipient_id: Optional[str] = Field(default=None, max_length=64)

    idempotency_key: Optional[str] = Field(
        default=None,
        min_length=8,
        max_length=128,
        description="Reuse the same key when retrying an uncertain payment"
    )


# =============================================================================
# READ SIDE
# =============================================================================

class Granularity(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class AnalyticsQuery(_Request):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    granularity: Granularity = Granularity.DAY

    normalize_dates = field_validator("start_date", "end_date")(_assume_utc)


class TransactionQuery(_Request):
    vault_id: Optional[str] = None
    status: Optional[TransactionStatus] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = Field(default=50, ge=1, le=100)
    offset: int = Field(default=0, ge=0)

    normalize_dates = field_validator("start_date", "end_date")(_assume_utc)


# =============================================================================
# VALIDATION MODELS
# =============================================================================

class ValidationIssue(BaseModel):
    """A single validation issue found."""

    field: str = Field(..., description="Field with the issue")
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing', 'invalid_value', 'out_of_range')"
    )
    message: str = Field(..., description="Human-readable description of the issue")
    severity: str = Field(..., pattern="^(error|warning|info)$")
    suggested_fix: Optional[str] = None


class ValidationResult(BaseModel):
    """
    Result of boundary validation.

    Stage 1: Schema validation (pydantic parsing)
    Stage 2: Semantic validation (ranges, limits, date order)
    """

    schema_valid: bool
    semantic_valid: bool
    issues: list[ValidationIssue] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.schema_valid and self.semantic_valid

    @property
    def has_errors(self) -> bool:
        return any(issue.severity == "error" for issue in self.issues)

    @property
    def error_count(self) -> int:
        return sum(1 for issue in self.issues if issue.severity == "error")
