"""
Retry policy for units of work.

Only StoreTimeout is retried. A unit that timed out was rolled back, so
running it again from its first read is safe. PaymentStatusUnknown is
excluded: the gateway may already have charged, and only the payment
engine's idempotency path may resume it.
"""

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from vaultpay.services.storage.interface import PaymentStatusUnknown, StoreTimeout


logger = structlog.get_logger(__name__)


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "ledger_unit_retry",
        attempt=retry_state.attempt_number,
        error=str(error),
    )


def store_retrying(attempts: int) -> AsyncRetrying:
    """
    Usage:
        async for attempt in store_retrying(3):
            with attempt:
                result = await do_unit()
    """
    return AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
        retry=(
            retry_if_exception_type(StoreTimeout)
            & retry_if_not_exception_type(PaymentStatusUnknown)
        ),
        before_sleep=_log_retry,
        reraise=True,
    )
