"""
Storage Services Package

Provides the abstract ledger store interface and its implementations:
an in-memory store for tests and local runs, and a SQLAlchemy store
for durable storage.
"""

from vaultpay.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    LedgerReader,
    LedgerStore,
    LedgerUnitOfWork,
    PaymentStatusUnknown,
    StorageError,
    StoreConnectionError,
    StoreTimeout,
    TransactionFilter,
    spend_filter,
)
from vaultpay.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryLedgerStore,
)
from vaultpay.services.storage.retry import store_retrying
from vaultpay.services.storage.sql import SqlLedgerStore

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "LedgerReader",
    "LedgerStore",
    "LedgerUnitOfWork",
    "TransactionFilter",
    "spend_filter",
    "store_retrying",
    # Exceptions
    "DuplicateError",
    "PaymentStatusUnknown",
    "StorageError",
    "StoreConnectionError",
    "StoreTimeout",
    # Implementations
    "InMemoryAuditStorage",
    "InMemoryLedgerStore",
    "SqlLedgerStore",
]
