"""
Result Models

What the engines hand back to callers. Every figure here is computed
from values read (or written) inside a unit of work, or derived fresh
from committed ledger state. None of these are persisted.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from vaultpay.models.ledger import (
    BankAccount,
    Transaction,
    TransactionStatus,
    VaultState,
    VaultView,
)
from vaultpay.models.money import Money


# =============================================================================
# WRITE SIDE
# =============================================================================

class PaymentVaultView(BaseModel):
    """Vault balance before and after a payment, as committed."""

    vault_id: str
    name: str
    previous_balance: Money
    new_balance: Money
    usage_percentage: Decimal


class PaymentResult(BaseModel):
    """
    Outcome of a payment.

    CRITICAL: a declined payment is still a PaymentResult.
    Callers must read `transaction.status` to learn the real outcome.
    """

    transaction: Transaction
    vault: PaymentVaultView
    replayed: bool = Field(
        default=False,
        description="True when returned from an earlier attempt with the same idempotency key"
    )

    @property
    def succeeded(self) -> bool:
        return self.transaction.status == TransactionStatus.COMPLETED


class VaultDeletion(BaseModel):
    vault_id: str
    state: VaultState
    deleted_permanently: bool
    message: str


class AccountDeletion(BaseModel):
    account_id: str
    promoted_account_id: Optional[str] = None
    message: str = "Account deleted successfully"


class TransactionPage(BaseModel):
    transactions: list[Transaction]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total


# =============================================================================
# READ SIDE - analytics
# =============================================================================

class CategorySpending(BaseModel):
    category: str
    amount: Money
    percentage: Decimal
    transaction_count: int


class TimeBucketSpending(BaseModel):
    period: date = Field(description="Bucket key: the day, ISO week Monday, or first of month")
    amount: Money
    transaction_count: int


class VaultSpending(BaseModel):
    vault_id: str
    vault_name: Optional[str] = None
    vault_type: Optional[str] = None
    icon: Optional[str] = None
    allocated_amount: Optional[Money] = None
    amount: Money
    percentage_of_total: Decimal
    percentage_of_allocation: Decimal


class AllocationTotals(BaseModel):
    """Aggregate of a set of vaults against a balance."""

    total_balance: Money
    total_allocated: Money
    total_spent: Money
    total_remaining: Money
    unallocated_balance: Money
    total_vaults: int
    allocation_percentage: Decimal
    usage_percentage: Decimal


class VaultSummary(BaseModel):
    account_id: str
    account_number: str
    bank_name: str
    summary: AllocationTotals


class AccountSummary(BaseModel):
    account: BankAccount
    summary: AllocationTotals
    vaults: list[VaultView] = Field(default_factory=list)


class UserSpendingSummary(BaseModel):
    total_vaults: int
    total_allocated: Money
    total_spent: Money
    total_remaining: Money
    overall_usage: Decimal
    total_transactions: int
    spending_by_category: list[CategorySpending] = Field(default_factory=list)
    recent_transactions: list[Transaction] = Field(default_factory=list)


class VaultAnalytics(BaseModel):
    vault: VaultView
    total_transactions: int
    total_spent: Money
    average_transaction: Money
    spending_trend: list[TimeBucketSpending] = Field(default_factory=list)


# =============================================================================
# RECONCILIATION
# =============================================================================

class VaultDrift(BaseModel):
    """A vault whose stored spent amount disagrees with its ledger."""

    vault_id: str
    vault_name: str
    recorded_spent: Money
    ledger_spent: Money

    @property
    def difference(self) -> Decimal:
        return self.recorded_spent - self.ledger_spent


class ReconciliationReport(BaseModel):
    user_id: str
    checked_at: datetime
    vaults_checked: int
    drifts: list[VaultDrift] = Field(default_factory=list)
    pending_transactions: int = Field(
        default=0,
        description="Payments awaiting finalisation; not counted as spend"
    )

    @property
    def is_consistent(self) -> bool:
        return not self.drifts


class InsightInput(BaseModel):
    """The only data the insight collaborator ever sees."""

    period_start: datetime
    period_end: datetime
    total_spent: Money
    spending_by_category: list[CategorySpending] = Field(default_factory=list)
    spending_by_vault: list[VaultSpending] = Field(default_factory=list)
    spending_trend: list[TimeBucketSpending] = Field(default_factory=list)

    @property
    def has_spending(self) -> bool:
        return self.total_spent > 0 and bool(self.spending_by_category)
