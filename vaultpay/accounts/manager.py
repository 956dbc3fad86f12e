"""
Account Lifecycle Manager

Links, lists, promotes, unlinks and adjusts bank accounts.

DESIGN DECISION: "At most one primary account per user" is kept by
this manager, never by callers. Every change that touches the primary
flag reads and rewrites the user's accounts inside ONE unit of work.

A balance change is a ledger event like any other: it appends a
completed `account-adjustment` Transaction (no vault) so the account's
history explains its balance.
"""

from typing import Any, Optional, Union

import structlog

from vaultpay.audit import AuditLogger, create_correlation_id
from vaultpay.errors import (
    AccountHasActiveVaults,
    AccountNotFound,
    InsufficientAccountBalance,
    LedgerError,
)
from vaultpay.models.audit import AuditEventBuilder
from vaultpay.models.ledger import (
    BankAccount,
    PaymentMethod,
    ReferencePrefix,
    Transaction,
    TransactionCategory,
    TransactionStatus,
    TransactionType,
    generate_reference,
)
from vaultpay.models.money import ZERO, format_inr
from vaultpay.models.requests import BalanceAdjustmentRequest, LinkAccountRequest
from vaultpay.models.results import AccountDeletion
from vaultpay.services.storage import LedgerStore, LedgerUnitOfWork, store_retrying
from vaultpay.validation import LedgerRequestValidator, request_user_id


logger = structlog.get_logger(__name__)


class AccountManager:
    """Owns the BankAccount lifecycle and the one-primary rule."""

    def __init__(
        self,
        store: LedgerStore,
        audit: Optional[AuditLogger] = None,
        validator: Optional[LedgerRequestValidator] = None,
        retry_attempts: int = 3,
    ):
        self._store = store
        self._audit = audit or AuditLogger()
        self._validator = validator or LedgerRequestValidator()
        self._retry_attempts = retry_attempts

    # =========================================================================
    # LINK / UNLINK
    # =========================================================================

    async def link_account(self, request: Union[LinkAccountRequest, dict[str, Any]]) -> BankAccount:
        """
        Link a bank account. The user's first account becomes primary.

        Accounts are marked verified on link; there is no verification flow.
        """
        correlation_id = create_correlation_id()
        user_id = request_user_id(request)

        try:
            request = self._validator.check(LinkAccountRequest, request)
            async for attempt in store_retrying(self._retry_attempts):
                with attempt:
                    account = await self._link_unit(request)
        except LedgerError as e:
            await self._audit.log_rejected(user_id, "link_account", e, correlation_id)
            raise

        await self._audit.log(AuditEventBuilder.account_linked(
            user_id=account.user_id,
            account_id=account.id,
            is_primary=account.is_primary,
            correlation_id=correlation_id,
        ))
        return account

    async def _link_unit(self, request: LinkAccountRequest) -> BankAccount:
        async with self._store.transaction() as uow:
            existing = await uow.list_accounts(request.user_id)
            account = BankAccount(
                user_id=request.user_id,
                account_number=request.account_number,
                routing_code=request.routing_code,
                bank_name=request.bank_name,
                holder_name=request.holder_name,
                balance=request.initial_balance,
                is_primary=not existing,
                is_verified=True,
            )
            await uow.add_account(account)

        logger.info(
            "account_linked",
            user_id=account.user_id,
            account_id=account.id,
            is_primary=account.is_primary,
        )
        return account

    async def unlink(self, user_id: str, account_id: str) -> AccountDeletion:
        """
        Remove an account that no active vault depends on.

        When the primary is removed, the newest remaining account is
        promoted in the same unit. Archived vaults of the account are
        kept with their history.

        Raises:
            AccountNotFound
            AccountHasActiveVaults: An active vault references the account.
        """
        correlation_id = create_correlation_id()

        try:
            async for attempt in store_retrying(self._retry_attempts):
                with attempt:
                    deletion = await self._unlink_unit(user_id, account_id)
        except LedgerError as e:
            await self._audit.log_rejected(user_id, "unlink_account", e, correlation_id)
            raise

        await self._audit.log(AuditEventBuilder.account_unlinked(
            user_id=user_id,
            account_id=account_id,
            promoted_account_id=deletion.promoted_account_id,
            correlation_id=correlation_id,
        ))
        return deletion

    async def _unlink_unit(self, user_id: str, account_id: str) -> AccountDeletion:
        async with self._store.transaction() as uow:
            account = await self._account_for_update(uow, user_id, account_id)

            active = await uow.list_vaults(user_id, bank_account_id=account.id)
            if active:
                raise AccountHasActiveVaults(account.id, len(active))

            await uow.delete_account(account.id)

            promoted = None
            if account.is_primary:
                remaining = await uow.list_accounts(user_id)
                if remaining:
                    promoted = await uow.save_account(remaining[0].model_copy(
                        update={"is_primary": True}
                    ))

        logger.info(
            "account_unlinked",
            user_id=user_id,
            account_id=account_id,
            promoted=promoted.id if promoted else None,
        )
        return AccountDeletion(
            account_id=account_id,
            promoted_account_id=promoted.id if promoted else None,
        )

    # =========================================================================
    # PRIMARY ACCOUNT
    # =========================================================================

    async def set_primary(self, user_id: str, account_id: str) -> BankAccount:
        """Make one account primary and clear the flag on all others, atomically."""
        correlation_id = create_correlation_id()

        try:
            async for attempt in store_retrying(self._retry_attempts):
                with attempt:
                    account = await self._set_primary_unit(user_id, account_id)
        except LedgerError as e:
            await self._audit.log_rejected(user_id, "set_primary", e, correlation_id)
            raise

        await self._audit.log(AuditEventBuilder.primary_changed(
            user_id=user_id,
            account_id=account.id,
            correlation_id=correlation_id,
        ))
        return account

    async def _set_primary_unit(self, user_id: str, account_id: str) -> BankAccount:
        async with self._store.transaction() as uow:
            target = await self._account_for_update(uow, user_id, account_id)

            for other in await uow.list_accounts(user_id):
                if other.id != target.id and other.is_primary:
                    await uow.save_account(other.model_copy(
                        update={"is_primary": False}
                    ))

            if target.is_primary:
                return target
            return await uow.save_account(target.model_copy(
                update={"is_primary": True}
            ))

    # =========================================================================
    # BALANCE
    # =========================================================================

    async def update_balance(
        self,
        request: Union[BalanceAdjustmentRequest, dict[str, Any]],
    ) -> BankAccount:
        """
        Apply a signed delta to an account balance.

        The new balance may not go below zero, nor below what the
        account's active vaults already hold.

        Raises:
            AccountNotFound
            InsufficientAccountBalance
        """
        correlation_id = create_correlation_id()
        user_id = request_user_id(request)

        try:
            request = self._validator.check(BalanceAdjustmentRequest, request)
            async for attempt in store_retrying(self._retry_attempts):
                with attempt:
                    account = await self._balance_unit(request)
        except LedgerError as e:
            await self._audit.log_rejected(user_id, "update_balance", e, correlation_id)
            raise

        await self._audit.log(AuditEventBuilder.balance_updated(
            user_id=account.user_id,
            account_id=account.id,
            delta=request.delta,
            new_balance=account.balance,
            correlation_id=correlation_id,
        ))
        return account

    async def _balance_unit(self, request: BalanceAdjustmentRequest) -> BankAccount:
        async with self._store.transaction() as uow:
            account = await self._account_for_update(uow, request.user_id, request.account_id)

            new_balance = account.balance + request.delta
            if new_balance < ZERO:
                raise InsufficientAccountBalance(abs(request.delta), account.balance)

            allocated = await uow.allocated_total(request.user_id, account.id)
            if new_balance < allocated:
                raise InsufficientAccountBalance(
                    abs(request.delta),
                    account.balance - allocated,
                    reason="Balance cannot go below the amount allocated to vaults",
                )

            account = await uow.save_account(account.model_copy(
                update={"balance": new_balance}
            ))

            credit = request.delta > ZERO
            await uow.add_transaction(Transaction(
                reference=generate_reference(ReferencePrefix.ADJUSTMENT.value, request.user_id),
                user_id=request.user_id,
                vault_id=None,
                bank_account_id=account.id,
                transaction_type=TransactionType.CREDIT if credit else TransactionType.DEBIT,
                category=TransactionCategory.ACCOUNT_ADJUSTMENT,
                amount=abs(request.delta),
                description=request.description or (
                    f"Balance {'increased' if credit else 'decreased'} by "
                    f"{format_inr(abs(request.delta))}"
                ),
                status=TransactionStatus.COMPLETED,
                payment_method=PaymentMethod.BANK,
            ))

        logger.info(
            "account_balance_updated",
            user_id=account.user_id,
            account_id=account.id,
            delta=str(request.delta),
            balance=str(account.balance),
        )
        return account

    # =========================================================================
    # READS
    # =========================================================================

    async def list_accounts(self, user_id: str) -> list[BankAccount]:
        """Primary first, then newest first."""
        async with self._store.read() as reader:
            return await reader.list_accounts(user_id)

    async def get_account(self, user_id: str, account_id: str) -> BankAccount:
        async with self._store.read() as reader:
            account = await reader.get_account(user_id, account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    async def get_primary_account(self, user_id: str) -> BankAccount:
        accounts = await self.list_accounts(user_id)
        for account in accounts:
            if account.is_primary:
                return account
        raise AccountNotFound(message="Primary account not found")

    async def _account_for_update(
        self,
        uow: LedgerUnitOfWork,
        user_id: str,
        account_id: str,
    ) -> BankAccount:
        account = await uow.get_account_for_update(user_id, account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account
