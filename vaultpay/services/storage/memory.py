"""
In-Memory Ledger Store

Used by the test suite and for local development (LEDGER_BACKEND=memory).

How it meets the LedgerStore contract:
- Committed state is an immutable snapshot. A unit of work works on a
  shallow copy and swaps it in on success, so a failed unit leaves
  nothing behind.
- A single store-wide asyncio lock serialises units. That is coarser
  than row locking, and therefore also serialises any two units that
  touch the same vault.
- Entities handed out are copies; callers can never mutate committed
  state by accident.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, AsyncIterator, Optional
from uuid import UUID

import structlog

from vaultpay.models.audit import AuditEvent
from vaultpay.models.ledger import (
    BankAccount,
    Transaction,
    TransactionStatus,
    Vault,
    utc_now,
)
from vaultpay.models.money import sum_money
from vaultpay.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    LedgerReader,
    LedgerStore,
    LedgerUnitOfWork,
    StorageError,
    StoreTimeout,
    TransactionFilter,
)


logger = structlog.get_logger(__name__)


@dataclass
class _MemoryState:
    accounts: dict[str, BankAccount] = field(default_factory=dict)
    vaults: dict[str, Vault] = field(default_factory=dict)
    # Insertion order doubles as the ledger's append order
    transactions: dict[str, Transaction] = field(default_factory=dict)

    def copy(self) -> "_MemoryState":
        return _MemoryState(
            accounts=dict(self.accounts),
            vaults=dict(self.vaults),
            transactions=dict(self.transactions),
        )


class _MemoryReader(LedgerReader):
    def __init__(self, state: _MemoryState):
        self.state = state

    async def get_account(self, user_id: str, account_id: str) -> Optional[BankAccount]:
        account = self.state.accounts.get(account_id)
        if account is None or account.user_id != user_id:
            return None
        return account.model_copy()

    async def list_accounts(self, user_id: str) -> list[BankAccount]:
        accounts = [a for a in self.state.accounts.values() if a.user_id == user_id]
        accounts.sort(key=lambda a: a.created_at, reverse=True)
        accounts.sort(key=lambda a: not a.is_primary)
        return [a.model_copy() for a in accounts]

    async def get_vault(
        self,
        user_id: str,
        vault_id: str,
        include_archived: bool = False,
    ) -> Optional[Vault]:
        vault = self.state.vaults.get(vault_id)
        if vault is None or vault.user_id != user_id:
            return None
        if not vault.is_active and not include_archived:
            return None
        return vault.model_copy()

    async def list_vaults(
        self,
        user_id: str,
        bank_account_id: Optional[str] = None,
        include_archived: bool = False,
    ) -> list[Vault]:
        vaults = [
            v for v in self.state.vaults.values()
            if v.user_id == user_id
            and (bank_account_id is None or v.bank_account_id == bank_account_id)
            and (include_archived or v.is_active)
        ]
        vaults.sort(key=lambda v: v.created_at, reverse=True)
        return [v.model_copy() for v in vaults]

    async def get_transaction(self, user_id: str, transaction_id: str) -> Optional[Transaction]:
        txn = self.state.transactions.get(transaction_id)
        if txn is None or txn.user_id != user_id:
            return None
        return txn

    async def find_by_idempotency_key(self, user_id: str, key: str) -> Optional[Transaction]:
        for txn in self.state.transactions.values():
            if txn.user_id == user_id and txn.idempotency_key == key:
                return txn
        return None

    def _select(self, criteria: TransactionFilter) -> list[Transaction]:
        # Stable sort on created_at keeps append order among equal timestamps
        matched = [t for t in self.state.transactions.values() if criteria.matches(t)]
        matched.sort(key=lambda t: t.created_at)
        if criteria.newest_first:
            matched.reverse()
        return matched

    async def list_transactions(self, criteria: TransactionFilter) -> list[Transaction]:
        matched = self._select(criteria)
        end = None if criteria.limit is None else criteria.offset + criteria.limit
        return matched[criteria.offset:end]

    async def count_transactions(self, criteria: TransactionFilter) -> int:
        return len(self._select(criteria))

    async def sum_transactions(self, criteria: TransactionFilter) -> Decimal:
        return sum_money(t.amount for t in self._select(criteria))


class _MemoryUnit(_MemoryReader, LedgerUnitOfWork):
    """Works on a private copy of the state; the store swaps it in on commit."""

    async def get_account_for_update(self, user_id: str, account_id: str) -> Optional[BankAccount]:
        return await self.get_account(user_id, account_id)

    async def get_vault_for_update(
        self,
        user_id: str,
        vault_id: str,
        include_archived: bool = False,
    ) -> Optional[Vault]:
        return await self.get_vault(user_id, vault_id, include_archived)

    async def add_account(self, account: BankAccount) -> BankAccount:
        if account.id in self.state.accounts:
            raise DuplicateError(f"Account already exists: {account.id}")
        self.state.accounts[account.id] = account.model_copy()
        return account

    async def save_account(self, account: BankAccount) -> BankAccount:
        if account.id not in self.state.accounts:
            raise StorageError(f"Account not found: {account.id}")
        account = account.model_copy(update={"updated_at": utc_now()})
        self.state.accounts[account.id] = account
        return account.model_copy()

    async def delete_account(self, account_id: str) -> None:
        self.state.accounts.pop(account_id, None)

    async def add_vault(self, vault: Vault) -> Vault:
        if vault.id in self.state.vaults:
            raise DuplicateError(f"Vault already exists: {vault.id}")
        self.state.vaults[vault.id] = vault.model_copy()
        return vault

    async def save_vault(self, vault: Vault) -> Vault:
        if vault.id not in self.state.vaults:
            raise StorageError(f"Vault not found: {vault.id}")
        vault = vault.model_copy(update={"updated_at": utc_now()})
        self.state.vaults[vault.id] = vault
        return vault.model_copy()

    async def delete_vault(self, vault_id: str) -> None:
        self.state.vaults.pop(vault_id, None)

    async def add_transaction(self, txn: Transaction) -> Transaction:
        for existing in self.state.transactions.values():
            if existing.reference == txn.reference or existing.id == txn.id:
                raise DuplicateError(f"Transaction already recorded: {txn.reference}")
            if (
                txn.idempotency_key is not None
                and existing.user_id == txn.user_id
                and existing.idempotency_key == txn.idempotency_key
            ):
                raise DuplicateError(f"Idempotency key already used: {txn.idempotency_key}")
        self.state.transactions[txn.id] = txn
        return txn

    async def finalize_transaction(
        self,
        transaction_id: str,
        status: TransactionStatus,
        gateway_ref: Optional[str],
        gateway_response: Optional[dict[str, Any]],
    ) -> Transaction:
        txn = self.state.transactions.get(transaction_id)
        if txn is None:
            raise StorageError(f"Transaction not found: {transaction_id}")
        if txn.status != TransactionStatus.PENDING:
            raise StorageError(f"Transaction {txn.reference} is already {txn.status.value}")
        if status == TransactionStatus.PENDING:
            raise StorageError("A transaction can only be finalised to completed or failed")
        finalised = txn.model_copy(update={
            "status": status,
            "gateway_ref": gateway_ref,
            "gateway_response": gateway_response,
            "updated_at": utc_now(),
        })
        self.state.transactions[transaction_id] = finalised
        return finalised


class InMemoryLedgerStore(LedgerStore):
    """
    Process-local ledger store.

    Args:
        unit_timeout: Seconds a unit of work may take, waiting for the
            lock included.
    """

    def __init__(self, unit_timeout: float = 10.0):
        self._state = _MemoryState()
        self._lock = asyncio.Lock()
        self._unit_timeout = unit_timeout

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[LedgerUnitOfWork]:
        try:
            async with asyncio.timeout(self._unit_timeout):
                async with self._lock:
                    unit = _MemoryUnit(self._state.copy())
                    yield unit
                    # Commit: swap the unit's copy in as the new snapshot
                    self._state = unit.state
        except TimeoutError as e:
            logger.warning("ledger_unit_timeout", timeout_seconds=self._unit_timeout)
            raise StoreTimeout(
                f"Unit of work did not complete within {self._unit_timeout}s"
            ) from e

    @asynccontextmanager
    async def read(self) -> AsyncIterator[LedgerReader]:
        yield _MemoryReader(self._state)


class InMemoryAuditStorage(AuditStorageInterface):
    """Audit events kept in a list. Append-only."""

    def __init__(self):
        self._events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_events_by_correlation_id(self, correlation_id: UUID) -> list[AuditEvent]:
        return [e for e in self._events if e.correlation_id == correlation_id]

    async def get_events_by_entity(self, entity_type: str, entity_id: str) -> list[AuditEvent]:
        return [
            e for e in self._events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        return list(reversed(self._events[-limit:]))
