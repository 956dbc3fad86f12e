"""
VaultPay - Ledger Core

Partitions money held in linked bank accounts into budget vaults and
moves it out of them through a payment gateway, keeping accounts,
vaults and the transaction ledger consistent.

DESIGN PRINCIPLES:
1. The ledger is the source of truth; derived figures are computed, never stored
2. Every state change happens inside ONE unit of work
3. Fail early, fail visibly: no silent corrections
4. Every step must be auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "VaultPay Team"
