"""Vault allocation package."""

from vaultpay.allocation.engine import AllocationEngine

__all__ = ["AllocationEngine"]
