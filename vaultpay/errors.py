"""
Domain Error Taxonomy

DESIGN DECISION: Engines RAISE typed errors. They never return error
codes and never leave a partial ledger mutation behind: every raise
inside a unit of work rolls the unit back.

Each error carries:
- code: stable machine-readable kind
- user_message: safe to show to the caller
- details: data needed to correct the request (e.g. available headroom)

Business-rule rejections (insufficient funds, conflicts) are detailed.
System failures live in vaultpay.services.storage and are reported
generically.

A declined payment is NOT an error. It is a Transaction with
status "failed".
"""

from decimal import Decimal
from typing import Any, Optional

from vaultpay.models.money import format_inr


class LedgerError(Exception):
    """Base exception for every business-rule failure of the ledger core."""

    code = "ledger_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.user_message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.user_message,
            "details": {
                key: str(value) if isinstance(value, Decimal) else value
                for key, value in self.details.items()
            },
        }


# =============================================================================
# NOT FOUND - always resolved by (id, owner) pair
# =============================================================================

class NotFoundError(LedgerError):
    code = "not_found"


class AccountNotFound(NotFoundError):
    code = "account_not_found"

    def __init__(self, account_id: Optional[str] = None, message: str = "Account not found"):
        super().__init__(message, {"account_id": account_id} if account_id else None)


class VaultNotFound(NotFoundError):
    code = "vault_not_found"

    def __init__(self, vault_id: str):
        super().__init__("Vault not found", {"vault_id": vault_id})


class TransactionNotFound(NotFoundError):
    code = "transaction_not_found"

    def __init__(self, transaction_id: str):
        super().__init__("Transaction not found", {"transaction_id": transaction_id})


# =============================================================================
# VALIDATION - malformed or out-of-range input
# =============================================================================

class ValidationError(LedgerError):
    """
    Input failed boundary validation.

    `issues` holds the individual ValidationIssue objects.
    """

    code = "validation_error"

    def __init__(self, message: str, issues: Optional[list] = None):
        super().__init__(message, {"issues": [i.model_dump() for i in issues or []]})
        self.issues = issues or []


class AmountExceedsLimit(ValidationError):
    code = "amount_exceeds_limit"

    def __init__(self, amount: Decimal, limit: Decimal):
        super().__init__(
            f"Payment amount cannot exceed {format_inr(limit)}",
        )
        self.details.update({"amount": amount, "limit": limit})


# =============================================================================
# INSUFFICIENT FUNDS - business-rule rejections, checked before mutation
# =============================================================================

class InsufficientFundsError(LedgerError):
    code = "insufficient_funds"

    def __init__(self, message: str, requested: Decimal, available: Decimal):
        super().__init__(message, {"requested": requested, "available": available})
        self.requested = requested
        self.available = available


class InsufficientUnallocatedBalance(InsufficientFundsError):
    code = "insufficient_unallocated_balance"

    def __init__(self, requested: Decimal, available: Decimal):
        super().__init__(
            f"Insufficient unallocated balance. Available: {format_inr(available)}",
            requested,
            available,
        )


class InsufficientVaultBalance(InsufficientFundsError):
    code = "insufficient_vault_balance"

    def __init__(self, requested: Decimal, available: Decimal):
        super().__init__(
            f"Insufficient vault balance. Available: {format_inr(available)}",
            requested,
            available,
        )


class InsufficientAccountBalance(InsufficientFundsError):
    code = "insufficient_account_balance"

    def __init__(self, requested: Decimal, available: Decimal, reason: str = "Insufficient balance"):
        super().__init__(
            f"{reason}. Available: {format_inr(available)}",
            requested,
            available,
        )


# =============================================================================
# CONFLICT - request is valid but the current state forbids it
# =============================================================================

class ConflictError(LedgerError):
    code = "conflict"


class AccountHasActiveVaults(ConflictError):
    code = "account_has_active_vaults"

    def __init__(self, account_id: str, active_vaults: int):
        super().__init__(
            "Cannot delete account linked to active vaults",
            {"account_id": account_id, "active_vaults": active_vaults},
        )


class BelowSpentAmount(ConflictError):
    code = "below_spent_amount"

    def __init__(self, requested: Decimal, spent: Decimal):
        super().__init__(
            f"Cannot allocate less than spent amount ({format_inr(spent)})",
            {"requested": requested, "spent": spent},
        )


class VaultArchived(ConflictError):
    code = "vault_archived"

    def __init__(self, vault_id: str):
        super().__init__(
            "Vault is archived and can no longer change",
            {"vault_id": vault_id},
        )


class IdempotencyKeyReused(ConflictError):
    """The key already belongs to a different payment."""

    code = "idempotency_key_reused"

    def __init__(self, idempotency_key: str):
        super().__init__(
            "This idempotency key was already used for a different payment",
            {"idempotency_key": idempotency_key},
        )
