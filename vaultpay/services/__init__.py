"""Services package."""

from vaultpay.services.gateway import (
    GatewayError,
    GatewayResult,
    GatewayUnavailableError,
    PaymentGatewayInterface,
    SimulatedPaymentGateway,
)
from vaultpay.services.storage import (
    AuditStorageInterface,
    DuplicateError,
    InMemoryAuditStorage,
    InMemoryLedgerStore,
    LedgerReader,
    LedgerStore,
    LedgerUnitOfWork,
    PaymentStatusUnknown,
    SqlLedgerStore,
    StorageError,
    StoreConnectionError,
    StoreTimeout,
    TransactionFilter,
)

__all__ = [
    # Gateway
    "GatewayError",
    "GatewayResult",
    "GatewayUnavailableError",
    "PaymentGatewayInterface",
    "SimulatedPaymentGateway",
    # Storage
    "AuditStorageInterface",
    "DuplicateError",
    "InMemoryAuditStorage",
    "InMemoryLedgerStore",
    "LedgerReader",
    "LedgerStore",
    "LedgerUnitOfWork",
    "PaymentStatusUnknown",
    "SqlLedgerStore",
    "StorageError",
    "StoreConnectionError",
    "StoreTimeout",
    "TransactionFilter",
]
