"""
Core Ledger Models for VaultPay

These models define the three persisted entities of the money-movement
core and the derived views computed from them:

1. BankAccount - a linked account holding the real balance
2. Vault       - a budget carved out of one account's balance
3. Transaction - an append-only ledger entry, the source of truth

DESIGN DECISION: Derived figures (remaining amount, usage percentage)
are NEVER stored. They are computed by `derive_vault_balance`, the one
place that knows how, so rounding and zero-allocation handling cannot
diverge between callers.
"""

import secrets
import time
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from vaultpay.models.money import ZERO, Money, percentage


def utc_now() -> datetime:
    """Current UTC time, timezone-aware."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


def generate_reference(prefix: str, user_id: str) -> str:
    """
    Build a human-readable transaction reference.

    Format: {PREFIX}-{epoch millis}-{first 8 chars of user id}-{random}

    The random tail keeps two references minted in the same millisecond
    for the same user distinct.
    """
    millis = int(time.time() * 1000)
    return f"{prefix}-{millis}-{user_id[:8]}-{secrets.token_hex(3).upper()}"


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class VaultType(str, Enum):
    """Category tag of a vault. Drives spending-by-category analytics."""
    GROCERIES = "groceries"
    RENT = "rent"
    ENTERTAINMENT = "entertainment"
    SAVINGS = "savings"
    BILLS = "bills"
    TRANSPORT = "transport"
    HEALTH = "health"
    EDUCATION = "education"
    CUSTOM = "custom"


VAULT_TYPE_ICONS: dict[VaultType, str] = {
    VaultType.GROCERIES: "🛒",
    VaultType.RENT: "🏠",
    VaultType.ENTERTAINMENT: "🎮",
    VaultType.SAVINGS: "💰",
    VaultType.BILLS: "💡",
    VaultType.TRANSPORT: "🚗",
    VaultType.HEALTH: "🏥",
    VaultType.EDUCATION: "📚",
    VaultType.CUSTOM: "✨",
}

DEFAULT_VAULT_ICON = "💰"


class BudgetPeriod(str, Enum):
    MONTHLY = "monthly"
    WEEKLY = "weekly"
    ONE_TIME = "one-time"


class VaultState(str, Enum):
    """
    Vault lifecycle.

    ACTIVE --delete, spent > 0--> ARCHIVED (terminal, row kept)
    ACTIVE --delete, spent = 0--> DELETED  (row removed)
    """
    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


class TransactionType(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class TransactionStatus(str, Enum):
    """
    Ledger entry status.

    CRITICAL: PENDING is only ever finalised once, to COMPLETED or FAILED.
    COMPLETED and FAILED rows never change again.
    """
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class TransactionCategory(str, Enum):
    P2P = "p2p"
    VAULT_ALLOCATION = "vault-allocation"
    ACCOUNT_ADJUSTMENT = "account-adjustment"


class PaymentMethod(str, Enum):
    VAULT = "vault"
    BANK = "bank"


class ReferencePrefix(str, Enum):
    ALLOCATION = "ALLOC"
    REALLOCATION = "REALLOC"
    PAYMENT = "PAY"
    ADJUSTMENT = "ADJ"


# =============================================================================
# ENTITIES
# =============================================================================

class BankAccount(BaseModel):
    """
    A linked bank account.

    The balance is the ceiling for the sum of allocations of the
    account's active vaults.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=new_id)
    user_id: str = Field(..., min_length=1)

    account_number: str = Field(..., min_length=4, max_length=34)
    routing_code: str = Field(
        ...,
        min_length=1,
        max_length=20,
        description="IFSC / routing code, stored upper-case"
    )
    bank_name: str = Field(..., min_length=1, max_length=100)
    holder_name: str = Field(..., min_length=1, max_length=200)

    balance: Money = Field(default=ZERO, ge=0)
    is_primary: bool = False
    is_verified: bool = False

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Vault(BaseModel):
    """
    A budget-limited sub-account tied to one bank account.

    Invariants (checked by the engines, asserted here as a last line):
    - 0 <= spent_amount <= allocated_amount
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(default_factory=new_id)
    user_id: str = Field(..., min_length=1)
    bank_account_id: str = Field(..., min_length=1)

    name: str = Field(..., min_length=1, max_length=100)
    vault_type: VaultType
    allocated_amount: Money = Field(..., ge=0)
    spent_amount: Money = Field(default=ZERO, ge=0)

    icon: str = Field(default=DEFAULT_VAULT_ICON, max_length=16)
    budget_period: BudgetPeriod = BudgetPeriod.MONTHLY
    auto_refill: bool = Field(
        default=False,
        description="Reserved; not used by the core"
    )
    state: VaultState = VaultState.ACTIVE

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return self.state == VaultState.ACTIVE

    @model_validator(mode="after")
    def validate_ceiling(self) -> "Vault":
        if self.spent_amount > self.allocated_amount:
            raise ValueError(
                f"Vault spent amount {self.spent_amount} exceeds "
                f"allocated amount {self.allocated_amount}"
            )
        return self


class Transaction(BaseModel):
    """
    An append-only ledger entry.

    Frozen: a finalised entry is replaced wholesale by the store
    (PENDING -> COMPLETED/FAILED), never mutated in place.
    """
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    id: str = Field(default_factory=new_id)
    reference: str = Field(..., min_length=1, max_length=64)

    user_id: str
    vault_id: Optional[str] = Field(
        default=None,
        description="None for account-level events"
    )
    bank_account_id: str

    transaction_type: TransactionType
    category: TransactionCategory
    amount: Money = Field(..., gt=0)
    description: str = Field(default="", max_length=500)
    status: TransactionStatus
    payment_method: PaymentMethod = PaymentMethod.VAULT

    gateway_ref: Optional[str] = None
    gateway_response: Optional[dict[str, Any]] = None

    recipient_phone: Optional[str] = None
    recipient_upi: Optional[str] = None
    recipient_id: Optional[str] = None

    idempotency_key: Optional[str] = Field(
        default=None,
        max_length=128,
        description="Client-assigned key, unique per user"
    )

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_spend(self) -> bool:
        """
        True for entries counted into a vault's spent amount.

        Completed debits against a vault, excluding allocation bookkeeping.
        """
        return (
            self.vault_id is not None
            and self.status == TransactionStatus.COMPLETED
            and self.transaction_type == TransactionType.DEBIT
            and self.category != TransactionCategory.VAULT_ALLOCATION
        )


# =============================================================================
# DERIVED VIEWS
# =============================================================================

class VaultBalance(BaseModel):
    """Derived balance figures of a vault. Never persisted."""

    allocated_amount: Money
    spent_amount: Money
    remaining_amount: Money
    usage_percentage: Decimal = Field(description="Rounded to 2 places, display only")


def derive_vault_balance(allocated: Decimal, spent: Decimal) -> VaultBalance:
    """
    The single source of remaining / usage figures.

    Zero allocation gives 0% usage instead of a division error.
    """
    return VaultBalance(
        allocated_amount=allocated,
        spent_amount=spent,
        remaining_amount=allocated - spent,
        usage_percentage=percentage(spent, allocated),
    )


class VaultView(BaseModel):
    """A vault together with its derived balance, as returned to callers."""

    vault: Vault
    balance: VaultBalance
    account_number: Optional[str] = None
    bank_name: Optional[str] = None
    recent_transactions: list[Transaction] = Field(default_factory=list)

    @classmethod
    def of(
        cls,
        vault: Vault,
        account: Optional[BankAccount] = None,
        recent_transactions: Optional[list[Transaction]] = None,
    ) -> "VaultView":
        return cls(
            vault=vault,
            balance=derive_vault_balance(vault.allocated_amount, vault.spent_amount),
            account_number=account.account_number if account else None,
            bank_name=account.bank_name if account else None,
            recent_transactions=recent_transactions or [],
        )
