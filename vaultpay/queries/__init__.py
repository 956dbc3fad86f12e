"""Transaction listing and lookup."""

from vaultpay.queries.executor import TransactionQueryExecutor, query_to_filter

__all__ = ["TransactionQueryExecutor", "query_to_filter"]
