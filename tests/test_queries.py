"""Tests for transaction listing and lookup."""

from decimal import Decimal

import pytest

from vaultpay.errors import TransactionNotFound, ValidationError
from vaultpay.models import TransactionCategory, TransactionQuery, TransactionStatus
from vaultpay.queries import query_to_filter

USER = "alice"
OTHER_USER = "bob"


class TestListTransactions:

    async def test_newest_first_with_total(self, queries, make_vault, pay):
        vault = await make_vault("1000.00")
        for amount in ("1.00", "2.00", "3.00"):
            await pay(vault.id, amount)

        page = await queries.list_transactions({"user_id": USER, "vault_id": vault.id})

        # Three payments plus the allocation entry
        assert page.total == 4
        assert page.has_more is False
        assert page.transactions[0].amount == Decimal("3.00")
        assert page.transactions[-1].category == TransactionCategory.VAULT_ALLOCATION

    async def test_pagination(self, queries, make_vault, pay):
        vault = await make_vault("1000.00")
        for _ in range(5):
            await pay(vault.id, "1.00")

        first = await queries.list_transactions(TransactionQuery(user_id=USER, limit=2))
        last = await queries.list_transactions(TransactionQuery(user_id=USER, limit=2, offset=4))

        assert first.total == 6
        assert len(first.transactions) == 2
        assert first.has_more is True
        assert len(last.transactions) == 2
        assert last.has_more is False
        assert not {t.id for t in first.transactions} & {t.id for t in last.transactions}

    async def test_status_filter(self, queries, make_vault, pay, gateway):
        vault = await make_vault("1000.00")
        await pay(vault.id, "10.00")
        gateway.force_outcome = False
        await pay(vault.id, "20.00")

        page = await queries.list_transactions({"user_id": USER, "status": "failed"})

        assert [t.amount for t in page.transactions] == [Decimal("20.00")]
        assert page.transactions[0].status == TransactionStatus.FAILED

    async def test_scoped_to_user(self, queries, make_vault, pay):
        vault = await make_vault("1000.00")
        await pay(vault.id, "10.00")

        page = await queries.list_transactions({"user_id": OTHER_USER})
        assert page.total == 0
        assert page.transactions == []

    async def test_limit_is_bounded(self, queries):
        with pytest.raises(ValidationError):
            await queries.list_transactions({"user_id": USER, "limit": 1000})

    def test_query_to_filter(self):
        criteria = query_to_filter(TransactionQuery(user_id=USER, vault_id="v1", limit=5, offset=10))
        assert criteria.vault_id == "v1"
        assert criteria.limit == 5
        assert criteria.offset == 10
        assert criteria.newest_first is True


class TestGetTransaction:

    async def test_get_own_transaction(self, queries, make_vault, pay):
        vault = await make_vault("1000.00")
        result = await pay(vault.id, "10.00")

        txn = await queries.get_transaction(USER, result.transaction.id)
        assert txn.reference == result.transaction.reference

    async def test_foreign_transaction_is_not_found(self, queries, make_vault, pay):
        vault = await make_vault("1000.00")
        result = await pay(vault.id, "10.00")

        with pytest.raises(TransactionNotFound):
            await queries.get_transaction(OTHER_USER, result.transaction.id)

    async def test_unknown_transaction(self, queries):
        with pytest.raises(TransactionNotFound):
            await queries.get_transaction(USER, "missing")
