"""Request validation package."""

from vaultpay.validation.validator import LedgerRequestValidator, request_user_id

__all__ = ["LedgerRequestValidator", "request_user_id"]
