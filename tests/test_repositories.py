import pytest
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from models import Account, LedgerTransaction, TransactionType
from repositories import (
    InMemoryAccountRepository,
    InMemoryTransactionManager,
    InMemoryTransactionRepository,
)
from exceptions import ConflictError, StoreError, TransactionTimeoutError


@pytest.fixture
def store():
    accounts = InMemoryAccountRepository()
    transactions = InMemoryTransactionRepository()
    return accounts, transactions, InMemoryTransactionManager(accounts, transactions)


def entry(account_id, amount, balance, date, type=TransactionType.deposit):
    return LedgerTransaction(
        accountId=account_id,
        date=date,
        amount=Decimal(amount),
        balance=Decimal(balance),
        type=type,
    )


class TestAccountRepository:
    @pytest.mark.asyncio
    async def test_create_and_find(self, store):
        accounts, _, _ = store

        created = await accounts.create_account("IBAN1")

        assert created.balance == Decimal("0")
        assert (await accounts.find_account("IBAN1")).id == "IBAN1"
        assert await accounts.find_account("IBAN2") is None

    @pytest.mark.asyncio
    async def test_duplicate_create_conflicts(self, store):
        accounts, _, _ = store
        await accounts.create_account("IBAN1")

        with pytest.raises(ConflictError):
            await accounts.create_account("IBAN1")

    @pytest.mark.asyncio
    async def test_stale_save_conflicts(self, store):
        accounts, _, _ = store
        await accounts.create_account("IBAN1")
        first = await accounts.find_account("IBAN1")
        second = await accounts.find_account("IBAN1")

        first.balance = Decimal("10")
        saved = await accounts.save_account(first)
        second.balance = Decimal("99")

        assert saved.version == 1
        with pytest.raises(ConflictError):
            await accounts.save_account(second)
        assert (await accounts.find_account("IBAN1")).balance == Decimal("10")

    @pytest.mark.asyncio
    async def test_save_unknown_account(self, store):
        accounts, _, _ = store

        with pytest.raises(StoreError):
            await accounts.save_account(Account(id="GHOST"))

    @pytest.mark.asyncio
    async def test_returned_accounts_are_copies(self, store):
        accounts, _, _ = store
        account = await accounts.create_account("IBAN1")

        account.balance = Decimal("1000")

        assert (await accounts.find_account("IBAN1")).balance == Decimal("0")


class TestTransactionRepository:
    @pytest.mark.asyncio
    async def test_query_orders_by_date(self, store):
        _, transactions, _ = store
        now = datetime.now(timezone.utc)
        await transactions.append_transaction(entry("A", "5", "5", now - timedelta(minutes=2)))
        await transactions.append_transaction(entry("B", "1", "1", now - timedelta(minutes=1)))
        await transactions.append_transaction(entry("A", "7", "12", now))

        newest_first = await transactions.query_transactions("A")
        oldest_first = await transactions.query_transactions("A", newest_first=False)

        assert [e.balance for e in newest_first] == [Decimal("12"), Decimal("5")]
        assert [e.balance for e in oldest_first] == [Decimal("5"), Decimal("12")]

    @pytest.mark.asyncio
    async def test_equal_dates_keep_latest_first(self, store):
        _, transactions, _ = store
        now = datetime.now(timezone.utc)
        await transactions.append_transaction(entry("A", "5", "5", now))
        await transactions.append_transaction(entry("A", "5", "10", now))

        assert [e.balance for e in await transactions.query_transactions("A")] == [Decimal("10"), Decimal("5")]


class TestTransactionManager:
    @pytest.mark.asyncio
    async def test_commit_applies_all_writes(self, store):
        accounts, transactions, manager = store

        async def work():
            account = await accounts.create_account("IBAN1")
            account.balance = Decimal("15")
            account = await accounts.save_account(account)
            await transactions.append_transaction(entry("IBAN1", "15", "15", datetime.now(timezone.utc)))
            # Reads inside the session see staged writes
            assert (await accounts.find_account("IBAN1")).balance == Decimal("15")
            assert len(await transactions.query_transactions("IBAN1")) == 1
            return account

        account = await manager.with_transaction(work)

        assert account.balance == Decimal("15")
        assert (await accounts.find_account("IBAN1")).balance == Decimal("15")
        assert await transactions.get_transactions_count() == 1

    @pytest.mark.asyncio
    async def test_abort_discards_all_writes(self, store):
        accounts, transactions, manager = store
        await accounts.create_account("IBAN1")

        async def work():
            account = await accounts.find_account("IBAN1")
            account.balance = Decimal("50")
            await accounts.save_account(account)
            await accounts.create_account("IBAN2")
            await transactions.append_transaction(entry("IBAN1", "50", "50", datetime.now(timezone.utc)))
            raise StoreError("boom")

        with pytest.raises(StoreError):
            await manager.with_transaction(work)

        assert (await accounts.find_account("IBAN1")).balance == Decimal("0")
        assert await accounts.find_account("IBAN2") is None
        assert await transactions.get_transactions_count() == 0

    @pytest.mark.asyncio
    async def test_staged_writes_are_invisible_outside_session(self, store):
        accounts, _, manager = store
        staged = asyncio.Event()
        release = asyncio.Event()

        async def work():
            await accounts.create_account("IBAN1")
            staged.set()
            await release.wait()

        task = asyncio.create_task(manager.with_transaction(work))
        await staged.wait()

        assert await accounts.find_account("IBAN1") is None

        release.set()
        await task
        assert await accounts.find_account("IBAN1") is not None

    @pytest.mark.asyncio
    async def test_concurrent_session_conflicts(self, store):
        accounts, _, manager = store
        await accounts.create_account("IBAN1", Decimal("100"))
        read_done = asyncio.Event()
        first_committed = asyncio.Event()

        async def slow_debit():
            account = await accounts.find_account("IBAN1")
            read_done.set()
            await first_committed.wait()
            account.balance -= Decimal("100")
            await accounts.save_account(account)

        async def fast_debit():
            account = await accounts.find_account("IBAN1")
            account.balance -= Decimal("100")
            await accounts.save_account(account)

        slow = asyncio.create_task(manager.with_transaction(slow_debit))
        await read_done.wait()
        await manager.with_transaction(fast_debit)
        first_committed.set()

        with pytest.raises(ConflictError):
            await slow
        assert (await accounts.find_account("IBAN1")).balance == Decimal("0")

    @pytest.mark.asyncio
    async def test_commit_time_conflict(self, store):
        accounts, _, manager = store
        await accounts.create_account("IBAN1")

        async def work():
            account = await accounts.find_account("IBAN1")
            account.balance = Decimal("5")
            await accounts.save_account(account)
            # A writer outside the session bumps the committed version
            outside = accounts.accounts["IBAN1"]
            accounts.accounts["IBAN1"] = outside.model_copy(update={"version": outside.version + 1})

        with pytest.raises(ConflictError):
            await manager.with_transaction(work)
        assert (await accounts.find_account("IBAN1")).balance == Decimal("0")

    @pytest.mark.asyncio
    async def test_timeout_aborts(self, store):
        accounts, _, manager = store

        async def work():
            await accounts.create_account("IBAN1")
            await asyncio.sleep(1)

        with pytest.raises(TransactionTimeoutError):
            await manager.with_transaction(work, timeout=0.05)
        assert await accounts.find_account("IBAN1") is None

    @pytest.mark.asyncio
    async def test_nested_boundary_joins_outer(self, store):
        accounts, _, manager = store

        async def inner():
            await accounts.create_account("INNER")

        async def outer():
            await manager.with_transaction(inner)
            raise StoreError("outer failed")

        with pytest.raises(StoreError):
            await manager.with_transaction(outer)
        assert await accounts.find_account("INNER") is None
