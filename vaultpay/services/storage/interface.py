"""
Abstract Ledger Store Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Use an in-memory store for tests and local development
2. Use a SQL database (SQLite / PostgreSQL) for durable storage
3. Keep the money-movement engines decoupled from any backend

The contract every backend must honour:

- `transaction()` yields a unit of work over a consistent view.
  Reads inside the unit see the unit's own writes. Leaving the block
  normally commits atomically; ANY exception rolls everything back.
- Two units touching the same vault are serialised. The engines re-read
  rows through `get_vault_for_update` / `get_account_for_update` inside
  the unit instead of trusting a read taken before it.
- A unit is bounded in time. If it cannot finish it rolls back and
  raises StoreTimeout.
- `read()` yields a read-only view of committed state.
- Every lookup is scoped by owner: (user_id, entity_id), never id alone.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncContextManager, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from vaultpay.models.audit import AuditEvent
from vaultpay.models.ledger import (
    BankAccount,
    Transaction,
    TransactionCategory,
    TransactionStatus,
    TransactionType,
    Vault,
)
from vaultpay.models.money import sum_money


class TransactionFilter(BaseModel):
    """Selection criteria for ledger queries. All set fields must match."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    vault_id: Optional[str] = None
    status: Optional[TransactionStatus] = None
    transaction_type: Optional[TransactionType] = None
    category: Optional[TransactionCategory] = None
    exclude_category: Optional[TransactionCategory] = None
    has_vault: Optional[bool] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    # Ordering / paging
    newest_first: bool = True
    limit: Optional[int] = None
    offset: int = 0

    def matches(self, txn: Transaction) -> bool:
        """Pure predicate, used by backends that filter in Python."""
        if txn.user_id != self.user_id:
            return False
        if self.vault_id is not None and txn.vault_id != self.vault_id:
            return False
        if self.status is not None and txn.status != self.status:
            return False
        if self.transaction_type is not None and txn.transaction_type != self.transaction_type:
            return False
        if self.category is not None and txn.category != self.category:
            return False
        if self.exclude_category is not None and txn.category == self.exclude_category:
            return False
        if self.has_vault is not None and (txn.vault_id is not None) != self.has_vault:
            return False
        if self.start is not None and txn.created_at < self.start:
            return False
        if self.end is not None and txn.created_at > self.end:
            return False
        return True

    def unpaged(self) -> "TransactionFilter":
        return self.model_copy(update={"limit": None, "offset": 0})


def spend_filter(
    user_id: str,
    vault_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> TransactionFilter:
    """Completed, non-allocation debits against a vault: what counts as spend."""
    return TransactionFilter(
        user_id=user_id,
        vault_id=vault_id,
        status=TransactionStatus.COMPLETED,
        transaction_type=TransactionType.DEBIT,
        exclude_category=TransactionCategory.VAULT_ALLOCATION,
        has_vault=True,
        start=start,
        end=end,
    )


class LedgerReader(ABC):
    """Read operations, available both inside and outside a unit of work."""

    # Accounts

    @abstractmethod
    async def get_account(self, user_id: str, account_id: str) -> Optional[BankAccount]:
        """The account if it exists AND belongs to user_id, else None."""

    @abstractmethod
    async def list_accounts(self, user_id: str) -> list[BankAccount]:
        """All accounts of the user, primary first, then newest first."""

    # Vaults

    @abstractmethod
    async def get_vault(
        self,
        user_id: str,
        vault_id: str,
        include_archived: bool = False,
    ) -> Optional[Vault]:
        """The vault if it exists and belongs to user_id; archived only on request."""

    @abstractmethod
    async def list_vaults(
        self,
        user_id: str,
        bank_account_id: Optional[str] = None,
        include_archived: bool = False,
    ) -> list[Vault]:
        """Vaults of the user (optionally of one account), newest first."""

    # Transactions

    @abstractmethod
    async def get_transaction(self, user_id: str, transaction_id: str) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def find_by_idempotency_key(self, user_id: str, key: str) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def list_transactions(self, criteria: TransactionFilter) -> list[Transaction]:
        pass

    @abstractmethod
    async def count_transactions(self, criteria: TransactionFilter) -> int:
        """Number of matches, ignoring limit/offset."""

    @abstractmethod
    async def sum_transactions(self, criteria: TransactionFilter) -> Decimal:
        """Exact sum of matching amounts, ignoring limit/offset."""

    async def allocated_total(
        self,
        user_id: str,
        bank_account_id: str,
        exclude_vault_id: Optional[str] = None,
    ) -> Decimal:
        """Sum of allocations of the account's ACTIVE vaults."""
        vaults = await self.list_vaults(user_id, bank_account_id=bank_account_id)
        return sum_money(v.allocated_amount for v in vaults if v.id != exclude_vault_id)

    async def pending_amount(self, user_id: str, vault_id: str) -> Decimal:
        """Money reserved by payments that are not finalised yet."""
        return await self.sum_transactions(
            TransactionFilter(
                user_id=user_id,
                vault_id=vault_id,
                status=TransactionStatus.PENDING,
                transaction_type=TransactionType.DEBIT,
            )
        )


class LedgerUnitOfWork(LedgerReader):
    """Read and write operations inside one atomic unit."""

    @abstractmethod
    async def get_account_for_update(self, user_id: str, account_id: str) -> Optional[BankAccount]:
        """Like get_account, but locks the row until the unit ends."""

    @abstractmethod
    async def get_vault_for_update(
        self,
        user_id: str,
        vault_id: str,
        include_archived: bool = False,
    ) -> Optional[Vault]:
        """Like get_vault, but locks the row until the unit ends."""

    @abstractmethod
    async def add_account(self, account: BankAccount) -> BankAccount:
        pass

    @abstractmethod
    async def save_account(self, account: BankAccount) -> BankAccount:
        """Persist changed fields of an existing account."""

    @abstractmethod
    async def delete_account(self, account_id: str) -> None:
        pass

    @abstractmethod
    async def add_vault(self, vault: Vault) -> Vault:
        pass

    @abstractmethod
    async def save_vault(self, vault: Vault) -> Vault:
        """Persist changed fields of an existing vault."""

    @abstractmethod
    async def delete_vault(self, vault_id: str) -> None:
        pass

    @abstractmethod
    async def add_transaction(self, txn: Transaction) -> Transaction:
        """
        Append a ledger entry.

        Raises:
            DuplicateError: If the reference, or the user's idempotency
                key, is already taken.
        """

    @abstractmethod
    async def finalize_transaction(
        self,
        transaction_id: str,
        status: TransactionStatus,
        gateway_ref: Optional[str],
        gateway_response: Optional[dict[str, Any]],
    ) -> Transaction:
        """
        Move a PENDING entry to COMPLETED or FAILED. The only permitted
        mutation of a ledger entry, and it happens once.

        Raises:
            StorageError: If the entry is missing or no longer pending.
        """


class LedgerStore(ABC):
    """
    A durable, transactional home for accounts, vaults and transactions.

    Stores are constructed explicitly and passed to every engine.
    """

    @abstractmethod
    def transaction(self) -> AsyncContextManager[LedgerUnitOfWork]:
        """
        Open one atomic unit of work.

        Usage:
            async with store.transaction() as uow:
                vault = await uow.get_vault_for_update(user_id, vault_id)
                ...

        Raises:
            StoreTimeout: If the unit cannot complete within its bound.
        """

    @abstractmethod
    def read(self) -> AsyncContextManager[LedgerReader]:
        """Open a read-only view of committed state."""

    async def close(self) -> None:
        """Release backend resources."""


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        pass

    @abstractmethod
    async def get_events_by_correlation_id(self, correlation_id: UUID) -> list[AuditEvent]:
        """Related events in chronological order."""

    @abstractmethod
    async def get_events_by_entity(self, entity_type: str, entity_id: str) -> list[AuditEvent]:
        """Events for one entity in chronological order."""

    @abstractmethod
    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        """Most recent events, newest first."""


class StorageError(Exception):
    """
    Base exception for storage operations.

    `user_message` is deliberately generic; internals stay in the log.
    """

    user_message = "The ledger is temporarily unavailable. Please try again."


class StoreTimeout(StorageError):
    """A unit of work could not finish in time. Rolled back; retriable."""


class PaymentStatusUnknown(StoreTimeout):
    """
    The gateway answered but the outcome could not be recorded.

    The payment row stays PENDING. Retrying with the same idempotency key
    resumes it without charging twice.
    """

    user_message = "Payment is being processed. Retry with the same idempotency key to confirm."

    def __init__(self, message: str, reference: str, idempotency_key: str):
        super().__init__(message)
        self.reference = reference
        self.idempotency_key = idempotency_key


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""


class StoreConnectionError(StorageError):
    """Could not connect to storage backend."""
