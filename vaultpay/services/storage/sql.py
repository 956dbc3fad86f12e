"""
SQL Ledger Store (SQLAlchemy 2, async)

The durable backend. Works with SQLite through aiosqlite (the default,
zero-setup) and with PostgreSQL through asyncpg.

How it meets the LedgerStore contract:
- One unit of work = one AsyncSession inside `session.begin()`.
  Any exception rolls the session back.
- Row locks: `get_*_for_update` issue SELECT ... FOR UPDATE. SQLite has
  no row locks, so on SQLite every writing unit opens with
  BEGIN IMMEDIATE, which takes the database write lock up front and
  serialises writers before they read anything.
- Money is stored as integer minor units (paise), never as a float.
- Timestamps are stored in UTC and always come back timezone-aware.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Optional

import structlog
from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum as SAEnum,
    MetaData,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
    select,
)
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from vaultpay.models.ledger import (
    BankAccount,
    BudgetPeriod,
    PaymentMethod,
    Transaction,
    TransactionCategory,
    TransactionStatus,
    TransactionType,
    Vault,
    VaultState,
    VaultType,
    utc_now,
)
from vaultpay.models.money import ZERO, from_minor_units, to_minor_units
from vaultpay.services.storage.interface import (
    DuplicateError,
    LedgerReader,
    LedgerStore,
    LedgerUnitOfWork,
    StorageError,
    StoreConnectionError,
    StoreTimeout,
    TransactionFilter,
)


logger = structlog.get_logger(__name__)


# =============================================================================
# COLUMN TYPES
# =============================================================================

class MoneyType(TypeDecorator):
    """Decimal('12.34') <-> 1234 in a BIGINT column."""

    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value: Optional[Decimal], dialect) -> Optional[int]:
        return None if value is None else to_minor_units(value)

    def process_result_value(self, value: Optional[int], dialect) -> Optional[Decimal]:
        return None if value is None else from_minor_units(value)


class UTCDateTime(TypeDecorator):
    """Stores UTC; hands back aware datetimes even where the driver drops tzinfo."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def _enum(enum_cls) -> SAEnum:
    # Store enum VALUES ("one-time"), not member names ("ONE_TIME")
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


# =============================================================================
# TABLES
# =============================================================================

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


class BankAccountRow(Base):
    __tablename__ = "bank_accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    account_number: Mapped[str] = mapped_column(String(34))
    routing_code: Mapped[str] = mapped_column(String(20))
    bank_name: Mapped[str] = mapped_column(String(100))
    holder_name: Mapped[str] = mapped_column(String(200))
    balance: Mapped[Decimal] = mapped_column(MoneyType)
    is_primary: Mapped[bool] = mapped_column(Boolean, default=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime)


class VaultRow(Base):
    """
    No foreign key to bank_accounts: an archived vault outlives the
    account it was carved from, and keeps its history.
    """

    __tablename__ = "vaults"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    bank_account_id: Mapped[str] = mapped_column(String(36), index=True)
    name: Mapped[str] = mapped_column(String(100))
    vault_type: Mapped[VaultType] = mapped_column(_enum(VaultType))
    allocated_amount: Mapped[Decimal] = mapped_column(MoneyType)
    spent_amount: Mapped[Decimal] = mapped_column(MoneyType)
    icon: Mapped[str] = mapped_column(String(16))
    budget_period: Mapped[BudgetPeriod] = mapped_column(_enum(BudgetPeriod))
    auto_refill: Mapped[bool] = mapped_column(Boolean, default=False)
    state: Mapped[VaultState] = mapped_column(_enum(VaultState), index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime)


class TransactionRow(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_transactions_user_idempotency"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    reference: Mapped[str] = mapped_column(String(64), unique=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    vault_id: Mapped[Optional[str]] = mapped_column(String(36), index=True, nullable=True)
    bank_account_id: Mapped[str] = mapped_column(String(36))
    transaction_type: Mapped[TransactionType] = mapped_column(_enum(TransactionType))
    category: Mapped[TransactionCategory] = mapped_column(_enum(TransactionCategory))
    amount: Mapped[Decimal] = mapped_column(MoneyType)
    description: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[TransactionStatus] = mapped_column(_enum(TransactionStatus), index=True)
    payment_method: Mapped[PaymentMethod] = mapped_column(_enum(PaymentMethod))
    gateway_ref: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    gateway_response: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    recipient_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    recipient_upi: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    recipient_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime)


def _to_account(row: Optional[BankAccountRow]) -> Optional[BankAccount]:
    return None if row is None else BankAccount.model_validate(row, from_attributes=True)


def _to_vault(row: Optional[VaultRow]) -> Optional[Vault]:
    return None if row is None else Vault.model_validate(row, from_attributes=True)


def _to_transaction(row: Optional[TransactionRow]) -> Optional[Transaction]:
    return None if row is None else Transaction.model_validate(row, from_attributes=True)


def _transaction_where(criteria: TransactionFilter) -> list:
    clauses = [TransactionRow.user_id == criteria.user_id]
    if criteria.vault_id is not None:
        clauses.append(TransactionRow.vault_id == criteria.vault_id)
    if criteria.status is not None:
        clauses.append(TransactionRow.status == criteria.status)
    if criteria.transaction_type is not None:
        clauses.append(TransactionRow.transaction_type == criteria.transaction_type)
    if criteria.category is not None:
        clauses.append(TransactionRow.category == criteria.category)
    if criteria.exclude_category is not None:
        clauses.append(TransactionRow.category != criteria.exclude_category)
    if criteria.has_vault is True:
        clauses.append(TransactionRow.vault_id.is_not(None))
    elif criteria.has_vault is False:
        clauses.append(TransactionRow.vault_id.is_(None))
    if criteria.start is not None:
        clauses.append(TransactionRow.created_at >= criteria.start)
    if criteria.end is not None:
        clauses.append(TransactionRow.created_at <= criteria.end)
    return clauses


# =============================================================================
# READER / UNIT OF WORK
# =============================================================================

class _SqlReader(LedgerReader):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def _account_row(self, user_id: str, account_id: str, lock: bool) -> Optional[BankAccountRow]:
        stmt = select(BankAccountRow).where(
            BankAccountRow.id == account_id,
            BankAccountRow.user_id == user_id,
        )
        if lock:
            stmt = stmt.with_for_update()
        return await self._session.scalar(stmt)

    async def _vault_row(
        self,
        user_id: str,
        vault_id: str,
        include_archived: bool,
        lock: bool,
    ) -> Optional[VaultRow]:
        stmt = select(VaultRow).where(VaultRow.id == vault_id, VaultRow.user_id == user_id)
        if not include_archived:
            stmt = stmt.where(VaultRow.state == VaultState.ACTIVE)
        if lock:
            stmt = stmt.with_for_update()
        return await self._session.scalar(stmt)

    async def get_account(self, user_id: str, account_id: str) -> Optional[BankAccount]:
        return _to_account(await self._account_row(user_id, account_id, lock=False))

    async def list_accounts(self, user_id: str) -> list[BankAccount]:
        rows = await self._session.scalars(
            select(BankAccountRow)
            .where(BankAccountRow.user_id == user_id)
            .order_by(BankAccountRow.is_primary.desc(), BankAccountRow.created_at.desc())
        )
        return [_to_account(row) for row in rows]

    async def get_vault(
        self,
        user_id: str,
        vault_id: str,
        include_archived: bool = False,
    ) -> Optional[Vault]:
        return _to_vault(await self._vault_row(user_id, vault_id, include_archived, lock=False))

    async def list_vaults(
        self,
        user_id: str,
        bank_account_id: Optional[str] = None,
        include_archived: bool = False,
    ) -> list[Vault]:
        stmt = select(VaultRow).where(VaultRow.user_id == user_id)
        if bank_account_id is not None:
            stmt = stmt.where(VaultRow.bank_account_id == bank_account_id)
        if not include_archived:
            stmt = stmt.where(VaultRow.state == VaultState.ACTIVE)
        rows = await self._session.scalars(stmt.order_by(VaultRow.created_at.desc()))
        return [_to_vault(row) for row in rows]

    async def get_transaction(self, user_id: str, transaction_id: str) -> Optional[Transaction]:
        row = await self._session.scalar(
            select(TransactionRow).where(
                TransactionRow.id == transaction_id,
                TransactionRow.user_id == user_id,
            )
        )
        return _to_transaction(row)

    async def find_by_idempotency_key(self, user_id: str, key: str) -> Optional[Transaction]:
        row = await self._session.scalar(
            select(TransactionRow).where(
                TransactionRow.user_id == user_id,
                TransactionRow.idempotency_key == key,
            )
        )
        return _to_transaction(row)

    async def list_transactions(self, criteria: TransactionFilter) -> list[Transaction]:
        order = TransactionRow.created_at.desc() if criteria.newest_first else TransactionRow.created_at.asc()
        stmt = select(TransactionRow).where(*_transaction_where(criteria)).order_by(order)
        if criteria.offset:
            stmt = stmt.offset(criteria.offset)
        if criteria.limit is not None:
            stmt = stmt.limit(criteria.limit)
        rows = await self._session.scalars(stmt)
        return [_to_transaction(row) for row in rows]

    async def count_transactions(self, criteria: TransactionFilter) -> int:
        count = await self._session.scalar(
            select(func.count()).select_from(TransactionRow).where(*_transaction_where(criteria))
        )
        return int(count or 0)

    async def sum_transactions(self, criteria: TransactionFilter) -> Decimal:
        total = await self._session.scalar(
            select(func.sum(TransactionRow.amount)).where(*_transaction_where(criteria))
        )
        return total if total is not None else ZERO


class _SqlUnit(_SqlReader, LedgerUnitOfWork):
    async def get_account_for_update(self, user_id: str, account_id: str) -> Optional[BankAccount]:
        return _to_account(await self._account_row(user_id, account_id, lock=True))

    async def get_vault_for_update(
        self,
        user_id: str,
        vault_id: str,
        include_archived: bool = False,
    ) -> Optional[Vault]:
        return _to_vault(await self._vault_row(user_id, vault_id, include_archived, lock=True))

    async def _flush(self, what: str) -> None:
        try:
            await self._session.flush()
        except IntegrityError as e:
            raise DuplicateError(f"Duplicate {what}") from e

    async def add_account(self, account: BankAccount) -> BankAccount:
        self._session.add(BankAccountRow(**account.model_dump()))
        await self._flush(f"account {account.id}")
        return account

    async def save_account(self, account: BankAccount) -> BankAccount:
        row = await self._session.get(BankAccountRow, account.id)
        if row is None:
            raise StorageError(f"Account not found: {account.id}")
        for name, value in account.model_dump(exclude={"id", "created_at"}).items():
            setattr(row, name, value)
        row.updated_at = utc_now()
        await self._flush(f"account {account.id}")
        return _to_account(row)

    async def delete_account(self, account_id: str) -> None:
        row = await self._session.get(BankAccountRow, account_id)
        if row is not None:
            await self._session.delete(row)
            await self._session.flush()

    async def add_vault(self, vault: Vault) -> Vault:
        self._session.add(VaultRow(**vault.model_dump()))
        await self._flush(f"vault {vault.id}")
        return vault

    async def save_vault(self, vault: Vault) -> Vault:
        row = await self._session.get(VaultRow, vault.id)
        if row is None:
            raise StorageError(f"Vault not found: {vault.id}")
        for name, value in vault.model_dump(exclude={"id", "created_at"}).items():
            setattr(row, name, value)
        row.updated_at = utc_now()
        await self._flush(f"vault {vault.id}")
        return _to_vault(row)

    async def delete_vault(self, vault_id: str) -> None:
        row = await self._session.get(VaultRow, vault_id)
        if row is not None:
            await self._session.delete(row)
            await self._session.flush()

    async def add_transaction(self, txn: Transaction) -> Transaction:
        self._session.add(TransactionRow(**txn.model_dump()))
        await self._flush(f"transaction {txn.reference}")
        return txn

    async def finalize_transaction(
        self,
        transaction_id: str,
        status: TransactionStatus,
        gateway_ref: Optional[str],
        gateway_response: Optional[dict[str, Any]],
    ) -> Transaction:
        row = await self._session.get(TransactionRow, transaction_id, with_for_update=True)
        if row is None:
            raise StorageError(f"Transaction not found: {transaction_id}")
        if row.status != TransactionStatus.PENDING:
            raise StorageError(f"Transaction {row.reference} is already {row.status.value}")
        if status == TransactionStatus.PENDING:
            raise StorageError("A transaction can only be finalised to completed or failed")
        row.status = status
        row.gateway_ref = gateway_ref
        row.gateway_response = gateway_response
        row.updated_at = utc_now()
        await self._session.flush()
        return _to_transaction(row)


# =============================================================================
# STORE
# =============================================================================

class SqlLedgerStore(LedgerStore):
    """
    SQLAlchemy-backed ledger store.

    Usage:
        store = SqlLedgerStore("sqlite+aiosqlite:///./vaultpay.db")
        await store.create_tables()
        async with store.transaction() as uow:
            ...
        await store.close()
    """

    def __init__(
        self,
        database_url: str,
        unit_timeout: float = 10.0,
        echo: bool = False,
    ):
        self._database_url = database_url
        self._unit_timeout = unit_timeout
        self._is_sqlite = database_url.startswith("sqlite")

        connect_args: dict[str, Any] = {}
        if self._is_sqlite:
            # Seconds SQLite waits on a held write lock before giving up
            connect_args["timeout"] = unit_timeout

        try:
            self._engine: AsyncEngine = create_async_engine(
                database_url,
                echo=echo,
                connect_args=connect_args,
            )
        except (SQLAlchemyError, ImportError) as e:
            raise StoreConnectionError(f"Cannot create database engine: {e}") from e

        if self._is_sqlite:
            self._install_sqlite_locking(self._engine)

        self._read_engine = self._engine.execution_options(vaultpay_readonly=True)
        self._sessions = async_sessionmaker(self._engine, expire_on_commit=False)
        self._read_sessions = async_sessionmaker(self._read_engine, expire_on_commit=False)

    @staticmethod
    def _install_sqlite_locking(engine: AsyncEngine) -> None:
        """
        Take over BEGIN from the driver so writers start with BEGIN IMMEDIATE.

        Readers use a plain deferred BEGIN so they never block on writers
        (WAL mode).
        """

        @event.listens_for(engine.sync_engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        @event.listens_for(engine.sync_engine, "begin")
        def _on_begin(conn):
            if conn.get_execution_options().get("vaultpay_readonly"):
                conn.exec_driver_sql("BEGIN")
            else:
                conn.exec_driver_sql("BEGIN IMMEDIATE")

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_tables(self) -> None:
        """Create all ledger tables if they don't exist."""
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise StoreConnectionError(f"Failed to create ledger tables: {e}") from e

    async def close(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[LedgerUnitOfWork]:
        try:
            async with asyncio.timeout(self._unit_timeout):
                async with self._sessions() as session:
                    async with session.begin():
                        yield _SqlUnit(session)
        except TimeoutError as e:
            logger.warning("ledger_unit_timeout", timeout_seconds=self._unit_timeout)
            raise StoreTimeout(
                f"Unit of work did not complete within {self._unit_timeout}s"
            ) from e
        except OperationalError as e:
            if "locked" in str(e).lower():
                logger.warning("ledger_unit_lock_contention", error=str(e))
                raise StoreTimeout(f"Ledger is busy: {e}") from e
            raise StorageError(f"Ledger operation failed: {e}") from e
        except IntegrityError as e:
            raise DuplicateError(f"Ledger constraint violated: {e}") from e
        except SQLAlchemyError as e:
            logger.error("ledger_unit_failed", error=str(e))
            raise StorageError(f"Ledger operation failed: {e}") from e

    @asynccontextmanager
    async def read(self) -> AsyncIterator[LedgerReader]:
        try:
            async with self._read_sessions() as session:
                async with session.begin():
                    yield _SqlReader(session)
        except SQLAlchemyError as e:
            logger.error("ledger_read_failed", error=str(e))
            raise StorageError(f"Ledger read failed: {e}") from e
