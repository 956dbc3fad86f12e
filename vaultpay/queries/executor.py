"""
Transaction Query Execution

DESIGN DECISION: Queries are DETERMINISTIC and read-only.
They return exactly what committed storage holds, newest first,
scoped to the caller. An unknown or foreign id is simply "not found":
the caller cannot tell another user's transaction from a missing one.
"""

from typing import Any, Optional, Union

import structlog

from vaultpay.errors import TransactionNotFound
from vaultpay.models.ledger import Transaction
from vaultpay.models.requests import TransactionQuery
from vaultpay.models.results import TransactionPage
from vaultpay.services.storage import LedgerStore, TransactionFilter
from vaultpay.validation import LedgerRequestValidator


logger = structlog.get_logger(__name__)


def query_to_filter(query: TransactionQuery) -> TransactionFilter:
    """Translate a caller's query into a storage filter."""
    return TransactionFilter(
        user_id=query.user_id,
        vault_id=query.vault_id,
        status=query.status,
        start=query.start_date,
        end=query.end_date,
        limit=query.limit,
        offset=query.offset,
    )


class TransactionQueryExecutor:
    """
    Lists and looks up transactions.

    GUARANTEES:
    - Only returns real data from storage
    - A page and its total come from the same snapshot
    """

    def __init__(
        self,
        store: LedgerStore,
        validator: Optional[LedgerRequestValidator] = None,
    ):
        self._store = store
        self._validator = validator or LedgerRequestValidator()

    async def list_transactions(
        self,
        query: Union[TransactionQuery, dict[str, Any]],
    ) -> TransactionPage:
        """One page of the caller's transactions, with the total match count."""
        query = self._validator.check(TransactionQuery, query)
        criteria = query_to_filter(query)

        async with self._store.read() as reader:
            transactions = await reader.list_transactions(criteria)
            total = await reader.count_transactions(criteria)

        logger.debug(
            "transactions_listed",
            user_id=query.user_id,
            returned=len(transactions),
            total=total,
        )
        return TransactionPage(
            transactions=transactions,
            total=total,
            limit=query.limit,
            offset=query.offset,
        )

    async def get_transaction(self, user_id: str, transaction_id: str) -> Transaction:
        async with self._store.read() as reader:
            txn = await reader.get_transaction(user_id, transaction_id)
        if txn is None:
            raise TransactionNotFound(transaction_id)
        return txn
