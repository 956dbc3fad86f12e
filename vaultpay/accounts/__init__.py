"""Bank account lifecycle package."""

from vaultpay.accounts.manager import AccountManager

__all__ = ["AccountManager"]
