"""
Payment Engine

Debits a vault, calls the payment gateway, and records the outcome.

DESIGN DECISION: No irreversible external effect happens before a
durable record of it exists. A payment runs in five steps:

1. Idempotency lookup. A final payment with the same key is returned
   as-is. A pending one is resumed from step 4.
2. Pre-check against committed state (fast fail, no lock).
3. Reservation unit: re-read the vault for update, check the amount
   against allocated - spent - pending reservations, and persist a
   PENDING p2p debit carrying the idempotency key.
4. Gateway call, OUTSIDE any unit of work. The key is forwarded, so a
   resumed payment is never charged twice. An unreachable gateway is
   retried, then recorded as a failed payment. Any other gateway fault
   leaves the row PENDING and raises PaymentStatusUnknown; a cancelled
   caller leaves it PENDING too. `resume_pending` finalises such rows.
5. Finalise unit: re-read the vault for update; on success increment
   spent and mark COMPLETED, on decline mark FAILED with spent untouched.

Because pending reservations count against the ceiling in step 3, N
concurrent payments of a vault's full remaining amount give exactly one
reservation; the rest fail with InsufficientVaultBalance before any
gateway call.

CRITICAL: A gateway decline is NOT an exception. The caller gets a
PaymentResult whose transaction.status is "failed".
"""

import asyncio
from datetime import timedelta
from typing import Any, Optional, Union
from uuid import UUID, uuid4

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from vaultpay.audit import AuditLogger, create_correlation_id
from vaultpay.errors import (
    IdempotencyKeyReused,
    InsufficientVaultBalance,
    LedgerError,
    VaultNotFound,
)
from vaultpay.models.audit import AuditEventBuilder
from vaultpay.models.ledger import (
    PaymentMethod,
    ReferencePrefix,
    Transaction,
    TransactionCategory,
    TransactionStatus,
    TransactionType,
    Vault,
    derive_vault_balance,
    generate_reference,
    utc_now,
)
from vaultpay.models.money import ZERO
from vaultpay.models.requests import PaymentRequest
from vaultpay.models.results import PaymentResult, PaymentVaultView
from vaultpay.services.gateway import (
    GatewayResult,
    GatewayUnavailableError,
    PaymentGatewayInterface,
)
from vaultpay.services.storage import (
    DuplicateError,
    LedgerStore,
    PaymentStatusUnknown,
    StorageError,
    StoreTimeout,
    TransactionFilter,
    store_retrying,
)
from vaultpay.validation import LedgerRequestValidator, request_user_id


logger = structlog.get_logger(__name__)


def new_idempotency_key() -> str:
    return f"pay-{uuid4().hex}"


class PaymentEngine:
    """
    Spends from vaults.

    Args:
        store: The ledger store every unit of work runs against.
        gateway: Payment gateway capability.
        audit: Audit logger; a local-only one is created if omitted.
        validator: Boundary validator (per-payment ceiling lives there).
        retry_attempts: Attempts for the reserve and finalise units on
            StoreTimeout.
        gateway_retry_attempts: Attempts when the gateway is unreachable.
        gateway_retry_wait: Base of the exponential backoff between
            gateway attempts, seconds.
    """

    def __init__(
        self,
        store: LedgerStore,
        gateway: PaymentGatewayInterface,
        audit: Optional[AuditLogger] = None,
        validator: Optional[LedgerRequestValidator] = None,
        retry_attempts: int = 3,
        gateway_retry_attempts: int = 3,
        gateway_retry_wait: float = 0.5,
    ):
        self._store = store
        self._gateway = gateway
        self._audit = audit or AuditLogger()
        self._validator = validator or LedgerRequestValidator()
        self._retry_attempts = retry_attempts
        self._gateway_retry_attempts = gateway_retry_attempts
        self._gateway_retry_wait = gateway_retry_wait

    async def pay(self, request: Union[PaymentRequest, dict[str, Any]]) -> PaymentResult:
        """
        Pay from a vault.

        Returns:
            PaymentResult. Check `transaction.status` (or `succeeded`):
            a declined payment is returned, not raised.

        Raises:
            ValidationError: amount <= 0 or malformed request.
            AmountExceedsLimit: amount above the per-payment ceiling.
            VaultNotFound: Missing, archived, or not the caller's.
            InsufficientVaultBalance: amount above what the vault has left.
            IdempotencyKeyReused: The key belongs to another payment.
            PaymentStatusUnknown: The gateway failed unexpectedly or the
                outcome could not be recorded. Retry with the idempotency
                key carried on the error.
            StoreTimeout: The reservation could not be made in time.
                Nothing was charged.
        """
        correlation_id = create_correlation_id()
        user_id = request_user_id(request)

        try:
            request = self._validator.check(PaymentRequest, request)
            if request.idempotency_key is None:
                request = request.model_copy(update={"idempotency_key": new_idempotency_key()})

            txn = await self._find_existing(request)
            resumed = txn is not None
            if txn is None:
                await self._pre_check(request)
                try:
                    async for attempt in store_retrying(self._retry_attempts):
                        with attempt:
                            txn = await self._reserve(request, correlation_id)
                except DuplicateError:
                    # Same key reserved concurrently by another attempt
                    txn = await self._find_existing(request)
                    if txn is None:
                        raise
                    resumed = True
        except LedgerError as e:
            await self._audit.log_rejected(user_id, "pay", e, correlation_id)
            raise
        except StoreTimeout as e:
            await self._audit.log_error(
                error_type="reservation_timeout",
                error_message=str(e),
                details={"user_id": user_id, "operation": "pay"},
                correlation_id=correlation_id,
            )
            raise

        if txn.status != TransactionStatus.PENDING:
            return await self._replay(txn, correlation_id)

        if resumed:
            logger.info("payment_resumed", transaction_id=txn.id, idempotency_key=txn.idempotency_key)

        try:
            outcome, response = await self._charge(txn, correlation_id)
        except asyncio.CancelledError:
            logger.warning(
                "payment_cancelled_while_charging",
                transaction_id=txn.id,
                idempotency_key=txn.idempotency_key,
            )
            raise
        except Exception as e:
            await self._audit.log_external_service_error(
                service="payment_gateway",
                error_message=f"{type(e).__name__}: {e}",
                correlation_id=correlation_id,
            )
            raise await self._left_pending(txn, e, correlation_id) from e

        return await self._finalize(txn, outcome, response, correlation_id)

    async def resume_pending(
        self,
        user_id: str,
        stale_after: Optional[timedelta] = None,
    ) -> list[PaymentResult]:
        """
        Finalise the user's payments still sitting in PENDING.

        Each row is charged again with its stored idempotency key, so the
        gateway returns its original answer instead of charging twice,
        and the answer is recorded. Rows whose gateway or store still
        fails stay PENDING for the next sweep.

        Args:
            user_id: Owner of the payments.
            stale_after: Only rows reserved at least this long ago. None
                takes every pending row, including ones a live `pay` may
                still be finalising; that race ends in a replay.

        Returns:
            One PaymentResult per row finalised, oldest first.
        """
        criteria = TransactionFilter(
            user_id=user_id,
            status=TransactionStatus.PENDING,
            category=TransactionCategory.P2P,
            end=utc_now() - stale_after if stale_after is not None else None,
            newest_first=False,
        )
        async with self._store.read() as reader:
            pending = await reader.list_transactions(criteria)

        results = []
        for txn in pending:
            correlation_id = create_correlation_id()
            logger.info("payment_resumed", transaction_id=txn.id, idempotency_key=txn.idempotency_key)
            try:
                outcome, response = await self._charge(txn, correlation_id)
            except Exception as e:
                await self._left_pending(txn, e, correlation_id)
                continue

            try:
                results.append(await self._finalize(txn, outcome, response, correlation_id))
            except PaymentStatusUnknown:
                # Audited by _finalize; the row waits for the next sweep
                continue

        logger.info("pending_payments_resumed", user_id=user_id, found=len(pending), finalised=len(results))
        return results

    # =========================================================================
    # STEP 1 / 2 - lookup and pre-check (committed state, no locks)
    # =========================================================================

    async def _find_existing(self, request: PaymentRequest) -> Optional[Transaction]:
        async with self._store.read() as reader:
            existing = await reader.find_by_idempotency_key(request.user_id, request.idempotency_key)

        if existing is not None and (
            existing.vault_id != request.vault_id
            or existing.amount != request.amount
            or existing.category != TransactionCategory.P2P
        ):
            raise IdempotencyKeyReused(request.idempotency_key)
        return existing

    async def _pre_check(self, request: PaymentRequest) -> Vault:
        async with self._store.read() as reader:
            vault = await reader.get_vault(request.user_id, request.vault_id)

        if vault is None:
            raise VaultNotFound(request.vault_id)
        remaining = derive_vault_balance(vault.allocated_amount, vault.spent_amount).remaining_amount
        if request.amount > remaining:
            raise InsufficientVaultBalance(request.amount, remaining)
        return vault

    # =========================================================================
    # STEP 3 - reservation unit
    # =========================================================================

    async def _reserve(self, request: PaymentRequest, correlation_id: UUID) -> Transaction:
        async with self._store.transaction() as uow:
            vault = await uow.get_vault_for_update(request.user_id, request.vault_id)
            if vault is None:
                raise VaultNotFound(request.vault_id)

            reserved = await uow.pending_amount(request.user_id, vault.id)
            balance = derive_vault_balance(vault.allocated_amount, vault.spent_amount)
            available = balance.remaining_amount - reserved
            if request.amount > available:
                raise InsufficientVaultBalance(request.amount, max(available, ZERO))

            txn = Transaction(
                reference=generate_reference(ReferencePrefix.PAYMENT.value, request.user_id),
                user_id=request.user_id,
                vault_id=vault.id,
                bank_account_id=vault.bank_account_id,
                transaction_type=TransactionType.DEBIT,
                category=TransactionCategory.P2P,
                amount=request.amount,
                description=request.description,
                status=TransactionStatus.PENDING,
                payment_method=PaymentMethod.VAULT,
                recipient_phone=request.recipient_phone,
                recipient_upi=request.recipient_upi,
                recipient_id=request.recipient_id,
                idempotency_key=request.idempotency_key,
            )
            await uow.add_transaction(txn)

        await self._audit.log(AuditEventBuilder.payment_reserved(
            user_id=txn.user_id,
            transaction_id=txn.id,
            vault_id=vault.id,
            amount=txn.amount,
            idempotency_key=txn.idempotency_key,
            correlation_id=correlation_id,
        ))
        return txn

    # =========================================================================
    # STEP 4 - gateway, outside any unit of work
    # =========================================================================

    async def _charge(
        self,
        txn: Transaction,
        correlation_id: UUID,
    ) -> tuple[Optional[GatewayResult], dict[str, Any]]:
        """The gateway's answer, or (None, error response) if it never answered."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._gateway_retry_attempts),
                wait=wait_exponential(multiplier=self._gateway_retry_wait, max=5),
                retry=retry_if_exception_type(GatewayUnavailableError),
                reraise=True,
            ):
                with attempt:
                    outcome = await self._gateway.charge(txn.amount, txn.idempotency_key)
        except GatewayUnavailableError as e:
            await self._audit.log_external_service_error(
                service="payment_gateway",
                error_message=str(e),
                correlation_id=correlation_id,
            )
            return None, {
                "success": False,
                "status": "failed",
                "error": "gateway_unavailable",
                "message": str(e),
            }

        return outcome, outcome.to_response()

    # =========================================================================
    # STEP 5 - finalise unit
    # =========================================================================

    async def _finalize(
        self,
        txn: Transaction,
        outcome: Optional[GatewayResult],
        response: dict[str, Any],
        correlation_id: UUID,
    ) -> PaymentResult:
        try:
            async for attempt in store_retrying(self._retry_attempts):
                with attempt:
                    result = await self._finalize_unit(txn, outcome, response)
        except StoreTimeout as e:
            raise await self._left_pending(txn, e, correlation_id) from e

        final = result.transaction
        await self._audit.log_payment_finalised(
            user_id=final.user_id,
            transaction_id=final.id,
            reference=final.reference,
            amount=final.amount,
            completed=final.status == TransactionStatus.COMPLETED,
            gateway_ref=final.gateway_ref,
            correlation_id=correlation_id,
        )
        if (final.gateway_response or {}).get("refund_required"):
            await self._audit.log_error(
                error_type="refund_required",
                error_message=f"Payment {final.reference} was charged but exceeded its vault",
                details={"transaction_id": final.id, "gateway_ref": final.gateway_ref},
                correlation_id=correlation_id,
            )
        return result

    async def _finalize_unit(
        self,
        txn: Transaction,
        outcome: Optional[GatewayResult],
        response: dict[str, Any],
    ) -> PaymentResult:
        async with self._store.transaction() as uow:
            current = await uow.get_transaction(txn.user_id, txn.id)
            if current is None:
                raise StorageError(f"Reserved payment {txn.reference} disappeared")

            vault = await uow.get_vault_for_update(txn.user_id, txn.vault_id, include_archived=True)
            if vault is None:
                raise StorageError(f"Vault of payment {txn.reference} disappeared")

            if current.status != TransactionStatus.PENDING:
                # A concurrent resume with the same key got here first
                return PaymentResult(
                    transaction=current,
                    vault=self._current_view(vault, current),
                    replayed=True,
                )

            before = derive_vault_balance(vault.allocated_amount, vault.spent_amount)
            succeeded = outcome is not None and outcome.success

            if succeeded and vault.spent_amount + txn.amount > vault.allocated_amount:
                # Unreachable while reservations hold; never overdraw if it happens
                logger.error(
                    "payment_exceeds_ceiling_at_finalise",
                    transaction_id=txn.id,
                    vault_id=vault.id,
                )
                succeeded = False
                response = {**response, "refund_required": True}

            if succeeded:
                vault = await uow.save_vault(
                    vault.model_copy(update={"spent_amount": vault.spent_amount + txn.amount})
                )

            final = await uow.finalize_transaction(
                txn.id,
                TransactionStatus.COMPLETED if succeeded else TransactionStatus.FAILED,
                gateway_ref=outcome.gateway_ref if outcome else None,
                gateway_response=response,
            )

            after = derive_vault_balance(vault.allocated_amount, vault.spent_amount)
            view = PaymentVaultView(
                vault_id=vault.id,
                name=vault.name,
                previous_balance=before.remaining_amount,
                new_balance=after.remaining_amount,
                usage_percentage=after.usage_percentage,
            )

        logger.info(
            "payment_finalised",
            transaction_id=final.id,
            status=final.status.value,
            vault_id=vault.id,
        )
        return PaymentResult(transaction=final, vault=view)

    async def _left_pending(
        self,
        txn: Transaction,
        error: BaseException,
        correlation_id: UUID,
    ) -> PaymentStatusUnknown:
        """Audit a payment left PENDING and build the error its caller gets."""
        await self._audit.log(AuditEventBuilder.payment_status_unknown(
            user_id=txn.user_id,
            transaction_id=txn.id,
            idempotency_key=txn.idempotency_key,
            error_message=str(error),
            correlation_id=correlation_id,
        ))
        return PaymentStatusUnknown(
            f"Payment {txn.reference} is still pending: {error}",
            reference=txn.reference,
            idempotency_key=txn.idempotency_key,
        )

    # =========================================================================
    # REPLAY
    # =========================================================================

    async def _replay(self, txn: Transaction, correlation_id: UUID) -> PaymentResult:
        async with self._store.read() as reader:
            vault = await reader.get_vault(txn.user_id, txn.vault_id, include_archived=True)

        await self._audit.log(AuditEventBuilder.payment_replayed(
            user_id=txn.user_id,
            transaction_id=txn.id,
            idempotency_key=txn.idempotency_key,
            correlation_id=correlation_id,
        ))
        return PaymentResult(
            transaction=txn,
            vault=self._current_view(vault, txn),
            replayed=True,
        )

    @staticmethod
    def _current_view(vault: Optional[Vault], txn: Transaction) -> PaymentVaultView:
        """
        Balance view of an already-final payment, from the vault as it is now.

        previous_balance is what the vault would hold without this payment.
        """
        if vault is None:
            return PaymentVaultView(
                vault_id=txn.vault_id or "",
                name="",
                previous_balance=ZERO,
                new_balance=ZERO,
                usage_percentage=ZERO,
            )
        balance = derive_vault_balance(vault.allocated_amount, vault.spent_amount)
        spent_here = txn.amount if txn.status == TransactionStatus.COMPLETED else ZERO
        return PaymentVaultView(
            vault_id=vault.id,
            name=vault.name,
            previous_balance=balance.remaining_amount + spent_here,
            new_balance=balance.remaining_amount,
            usage_percentage=balance.usage_percentage,
        )
