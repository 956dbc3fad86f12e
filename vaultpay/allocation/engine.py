"""
Allocation Engine

Moves money, conceptually, from an account's unallocated balance into a
vault's budget.

    unallocated = account.balance - sum(allocated_amount of ACTIVE vaults)

DESIGN DECISION: Every change to a vault's allocated_amount appends a
completed `vault-allocation` Transaction in the same unit of work:
- creation: debit of the allocated amount
- increase: debit of the delta
- decrease: credit of the delta
A no-op resize appends nothing.

Every check runs INSIDE the unit, against rows re-read for update. A
read taken before the unit is never trusted for an invariant.

Allocation units are safe to retry on StoreTimeout: a timed-out unit
was rolled back and is re-run from its first read.
"""

from decimal import Decimal
from typing import Any, Optional, Union

import structlog

from vaultpay.audit import AuditLogger, create_correlation_id
from vaultpay.errors import (
    AccountNotFound,
    BelowSpentAmount,
    InsufficientUnallocatedBalance,
    LedgerError,
    VaultArchived,
    VaultNotFound,
)
from vaultpay.models.audit import AuditEventBuilder, AuditEventType
from vaultpay.models.ledger import (
    DEFAULT_VAULT_ICON,
    PaymentMethod,
    ReferencePrefix,
    Transaction,
    TransactionCategory,
    TransactionStatus,
    TransactionType,
    Vault,
    VaultState,
    VAULT_TYPE_ICONS,
    VaultView,
    generate_reference,
)
from vaultpay.models.money import ZERO, format_inr
from vaultpay.models.requests import AllocateRequest, ReallocateRequest, UpdateVaultRequest
from vaultpay.models.results import VaultDeletion
from vaultpay.services.storage import (
    LedgerStore,
    LedgerUnitOfWork,
    TransactionFilter,
    store_retrying,
)
from vaultpay.validation import LedgerRequestValidator, request_user_id


logger = structlog.get_logger(__name__)


class AllocationEngine:
    """
    Creates, resizes, edits and removes vaults.

    Args:
        store: The ledger store every unit of work runs against.
        audit: Audit logger; a local-only one is created if omitted.
        validator: Boundary validator; built from settings if omitted.
        retry_attempts: Attempts per operation on StoreTimeout.
        recent_transactions_limit: Transactions shown by get_vault.
    """

    def __init__(
        self,
        store: LedgerStore,
        audit: Optional[AuditLogger] = None,
        validator: Optional[LedgerRequestValidator] = None,
        retry_attempts: int = 3,
        recent_transactions_limit: int = 10,
    ):
        self._store = store
        self._audit = audit or AuditLogger()
        self._validator = validator or LedgerRequestValidator()
        self._retry_attempts = retry_attempts
        self._recent_limit = recent_transactions_limit

    # =========================================================================
    # WRITE OPERATIONS
    # =========================================================================

    async def allocate(self, request: Union[AllocateRequest, dict[str, Any]]) -> Vault:
        """
        Create a vault funded from the account's unallocated balance.

        Raises:
            ValidationError: amount <= 0 or malformed request.
            AccountNotFound: The account does not exist or is not the caller's.
            InsufficientUnallocatedBalance: amount > unallocated headroom.
        """
        correlation_id = create_correlation_id()
        user_id = request_user_id(request)

        try:
            request = self._validator.check(AllocateRequest, request)
            async for attempt in store_retrying(self._retry_attempts):
                with attempt:
                    vault, txn = await self._allocate_unit(request)
        except LedgerError as e:
            await self._audit.log_rejected(user_id, "allocate", e, correlation_id)
            raise

        await self._audit.log(AuditEventBuilder.vault_allocation(
            event_type=AuditEventType.VAULT_CREATED,
            user_id=vault.user_id,
            vault_id=vault.id,
            vault_name=vault.name,
            allocated=vault.allocated_amount,
            reference=txn.reference,
            correlation_id=correlation_id,
        ))
        return vault

    async def _allocate_unit(self, request: AllocateRequest) -> tuple[Vault, Transaction]:
        async with self._store.transaction() as uow:
            account = await uow.get_account_for_update(request.user_id, request.bank_account_id)
            if account is None:
                raise AccountNotFound(request.bank_account_id, "Bank account not found")

            allocated = await uow.allocated_total(request.user_id, account.id)
            unallocated = account.balance - allocated
            if request.amount > unallocated:
                raise InsufficientUnallocatedBalance(request.amount, max(unallocated, ZERO))

            vault = Vault(
                user_id=request.user_id,
                bank_account_id=account.id,
                name=request.vault_name,
                vault_type=request.vault_type,
                allocated_amount=request.amount,
                icon=request.icon or VAULT_TYPE_ICONS.get(request.vault_type, DEFAULT_VAULT_ICON),
                budget_period=request.budget_period,
                auto_refill=request.auto_refill,
            )
            await uow.add_vault(vault)

            txn = Transaction(
                reference=generate_reference(ReferencePrefix.ALLOCATION.value, request.user_id),
                user_id=request.user_id,
                vault_id=vault.id,
                bank_account_id=account.id,
                transaction_type=TransactionType.DEBIT,
                category=TransactionCategory.VAULT_ALLOCATION,
                amount=request.amount,
                description=f"Allocated {format_inr(request.amount)} to {vault.name} vault",
                status=TransactionStatus.COMPLETED,
                payment_method=PaymentMethod.VAULT,
            )
            await uow.add_transaction(txn)

        logger.info(
            "vault_allocated",
            user_id=request.user_id,
            vault_id=vault.id,
            amount=str(request.amount),
        )
        return vault, txn

    async def reallocate(self, request: Union[ReallocateRequest, dict[str, Any]]) -> Vault:
        """
        Resize a vault's budget.

        The headroom for an increase is computed excluding the vault
        being resized; only the delta has to fit.

        Raises:
            VaultNotFound / VaultArchived
            BelowSpentAmount: new amount < spent + pending reservations.
            InsufficientUnallocatedBalance: the increase does not fit.
        """
        correlation_id = create_correlation_id()
        user_id = request_user_id(request)

        try:
            request = self._validator.check(ReallocateRequest, request)
            async for attempt in store_retrying(self._retry_attempts):
                with attempt:
                    vault, txn = await self._reallocate_unit(request)
        except LedgerError as e:
            await self._audit.log_rejected(user_id, "reallocate", e, correlation_id)
            raise

        if txn is not None:
            await self._audit.log(AuditEventBuilder.vault_allocation(
                event_type=AuditEventType.VAULT_REALLOCATED,
                user_id=vault.user_id,
                vault_id=vault.id,
                vault_name=vault.name,
                allocated=vault.allocated_amount,
                reference=txn.reference,
                correlation_id=correlation_id,
            ))
        return vault

    async def _reallocate_unit(self, request: ReallocateRequest) -> tuple[Vault, Optional[Transaction]]:
        async with self._store.transaction() as uow:
            vault = await self._active_vault_for_update(uow, request.user_id, request.vault_id)
            return await self._apply_reallocation(uow, vault, request.new_amount)

    async def _apply_reallocation(
        self,
        uow: LedgerUnitOfWork,
        vault: Vault,
        new_amount: Decimal,
    ) -> tuple[Vault, Optional[Transaction]]:
        """Resize `vault` inside an open unit. Returns the vault and the ledger entry, if any."""
        floor = vault.spent_amount + await uow.pending_amount(vault.user_id, vault.id)
        if new_amount < floor:
            raise BelowSpentAmount(new_amount, floor)

        delta = new_amount - vault.allocated_amount
        if delta == ZERO:
            return vault, None

        if delta > ZERO:
            account = await uow.get_account_for_update(vault.user_id, vault.bank_account_id)
            if account is None:
                raise AccountNotFound(vault.bank_account_id, "Bank account not found")
            others = await uow.allocated_total(vault.user_id, account.id, exclude_vault_id=vault.id)
            headroom = account.balance - others - vault.allocated_amount
            if delta > headroom:
                raise InsufficientUnallocatedBalance(delta, max(headroom, ZERO))

        vault = await uow.save_vault(vault.model_copy(update={"allocated_amount": new_amount}))

        increase = delta > ZERO
        txn = Transaction(
            reference=generate_reference(ReferencePrefix.REALLOCATION.value, vault.user_id),
            user_id=vault.user_id,
            vault_id=vault.id,
            bank_account_id=vault.bank_account_id,
            transaction_type=TransactionType.DEBIT if increase else TransactionType.CREDIT,
            category=TransactionCategory.VAULT_ALLOCATION,
            amount=abs(delta),
            description=(
                f"{'Added' if increase else 'Released'} {format_inr(abs(delta))} "
                f"{'to' if increase else 'from'} {vault.name} vault"
            ),
            status=TransactionStatus.COMPLETED,
            payment_method=PaymentMethod.VAULT,
        )
        await uow.add_transaction(txn)

        logger.info(
            "vault_reallocated",
            user_id=vault.user_id,
            vault_id=vault.id,
            delta=str(delta),
            allocated=str(new_amount),
        )
        return vault, txn

    async def update_vault(self, request: Union[UpdateVaultRequest, dict[str, Any]]) -> Vault:
        """
        Edit vault metadata, optionally resizing it in the same unit.

        An allocation change follows exactly the reallocate rules.
        """
        correlation_id = create_correlation_id()
        user_id = request_user_id(request)

        try:
            request = self._validator.check(UpdateVaultRequest, request)
            async for attempt in store_retrying(self._retry_attempts):
                with attempt:
                    vault, txn = await self._update_unit(request)
        except LedgerError as e:
            await self._audit.log_rejected(user_id, "update_vault", e, correlation_id)
            raise

        await self._audit.log(AuditEventBuilder.vault_allocation(
            event_type=AuditEventType.VAULT_REALLOCATED if txn else AuditEventType.VAULT_UPDATED,
            user_id=vault.user_id,
            vault_id=vault.id,
            vault_name=vault.name,
            allocated=vault.allocated_amount,
            reference=txn.reference if txn else None,
            correlation_id=correlation_id,
        ))
        return vault

    async def _update_unit(self, request: UpdateVaultRequest) -> tuple[Vault, Optional[Transaction]]:
        async with self._store.transaction() as uow:
            vault = await self._active_vault_for_update(uow, request.user_id, request.vault_id)

            txn = None
            if request.allocated_amount is not None:
                vault, txn = await self._apply_reallocation(uow, vault, request.allocated_amount)

            changes = request.metadata_changes()
            if changes:
                vault = await uow.save_vault(vault.model_copy(update=changes))

        return vault, txn

    async def delete_vault(self, user_id: str, vault_id: str) -> VaultDeletion:
        """
        Remove a vault.

        - spent > 0 (or a payment still pending): ARCHIVED. The row and
          its transactions stay queryable.
        - otherwise: DELETED. The row is removed; its allocation
          transactions keep the vault id as a historical reference.

        The allocation returns to the account's unallocated balance in
        both cases, since only ACTIVE vaults count against it.
        """
        correlation_id = create_correlation_id()

        try:
            async for attempt in store_retrying(self._retry_attempts):
                with attempt:
                    deletion = await self._delete_unit(user_id, vault_id)
        except LedgerError as e:
            await self._audit.log_rejected(user_id, "delete_vault", e, correlation_id)
            raise

        await self._audit.log(AuditEventBuilder.vault_removed(
            user_id=user_id,
            vault_id=vault_id,
            archived=not deletion.deleted_permanently,
            correlation_id=correlation_id,
        ))
        return deletion

    async def _delete_unit(self, user_id: str, vault_id: str) -> VaultDeletion:
        async with self._store.transaction() as uow:
            vault = await self._active_vault_for_update(uow, user_id, vault_id)
            pending = await uow.pending_amount(user_id, vault.id)

            if vault.spent_amount > ZERO or pending > ZERO:
                await uow.save_vault(vault.model_copy(update={"state": VaultState.ARCHIVED}))
                return VaultDeletion(
                    vault_id=vault.id,
                    state=VaultState.ARCHIVED,
                    deleted_permanently=False,
                    message="Vault archived!",
                )

            await uow.delete_vault(vault.id)
            return VaultDeletion(
                vault_id=vault.id,
                state=VaultState.DELETED,
                deleted_permanently=True,
                message="Vault deleted successfully",
            )

    async def _active_vault_for_update(
        self,
        uow: LedgerUnitOfWork,
        user_id: str,
        vault_id: str,
    ) -> Vault:
        vault = await uow.get_vault_for_update(user_id, vault_id, include_archived=True)
        if vault is None:
            raise VaultNotFound(vault_id)
        if not vault.is_active:
            raise VaultArchived(vault_id)
        return vault

    # =========================================================================
    # READ OPERATIONS
    # =========================================================================

    async def list_vaults(self, user_id: str) -> list[VaultView]:
        """Active vaults, newest first, with derived balances."""
        async with self._store.read() as reader:
            vaults = await reader.list_vaults(user_id)
            accounts = {a.id: a for a in await reader.list_accounts(user_id)}

        return [VaultView.of(v, accounts.get(v.bank_account_id)) for v in vaults]

    async def get_vault(self, user_id: str, vault_id: str) -> VaultView:
        """One active vault with its most recent transactions."""
        async with self._store.read() as reader:
            vault = await reader.get_vault(user_id, vault_id)
            if vault is None:
                raise VaultNotFound(vault_id)
            account = await reader.get_account(user_id, vault.bank_account_id)
            recent = await reader.list_transactions(TransactionFilter(
                user_id=user_id,
                vault_id=vault.id,
                limit=self._recent_limit,
            ))

        return VaultView.of(vault, account, recent)
