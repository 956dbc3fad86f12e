"""Payments package."""

from vaultpay.payments.engine import PaymentEngine, new_idempotency_key

__all__ = ["PaymentEngine", "new_idempotency_key"]
