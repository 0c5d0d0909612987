from abc import ABC, abstractmethod
from typing import AsyncContextManager, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar
from dataclasses import dataclass, field
from contextlib import asynccontextmanager
from contextvars import ContextVar
from decimal import Decimal
from itertools import islice
import asyncio
from collections import defaultdict
import structlog

from models import Account, LedgerTransaction
from exceptions import ConflictError, StoreError, TransactionTimeoutError

logger = structlog.get_logger()

T = TypeVar("T")


class AccountRepository(ABC):
    @abstractmethod
    async def find_account(self, account_id: str) -> Optional[Account]:
        """Get account by IBAN. Returns None if account doesn't exist."""
        pass

    @abstractmethod
    async def create_account(self, account_id: str, balance: Decimal = Decimal("0")) -> Account:
        """Create a new account. Raises ConflictError if the IBAN is taken."""
        pass

    @abstractmethod
    async def save_account(self, account: Account) -> Account:
        """Persist account if its version is current. Raises ConflictError otherwise."""
        pass

    @abstractmethod
    async def list_account_ids(self, exclude: Optional[str] = None, limit: int = 5) -> List[str]:
        """List up to `limit` account IBANs other than `exclude`, in store order."""
        pass

    @abstractmethod
    async def get_accounts_count(self) -> int:
        """Get total number of accounts."""
        pass

    @abstractmethod
    def lock_account(self, account_id: str) -> AsyncContextManager[None]:
        """Hold the lock of a specific account for the duration of the block."""
        pass


class TransactionRepository(ABC):
    @abstractmethod
    async def append_transaction(self, transaction: LedgerTransaction) -> LedgerTransaction:
        """Append an immutable ledger entry."""
        pass

    @abstractmethod
    async def query_transactions(self, account_id: str, newest_first: bool = True) -> List[LedgerTransaction]:
        """Get all ledger entries of an account ordered by date."""
        pass

    @abstractmethod
    async def get_transactions_count(self) -> int:
        """Get total number of ledger entries."""
        pass


class TransactionManager(ABC):
    @abstractmethod
    async def with_transaction(self, fn: Callable[[], Awaitable[T]], timeout: Optional[float] = None) -> T:
        """Run `fn` so that all of its writes commit together or not at all."""
        pass


@dataclass
class _Session:
    # account id -> (committed version at first touch, staged account);
    # a None version means the account was created inside the session
    accounts: Dict[str, Tuple[Optional[int], Account]] = field(default_factory=dict)
    transactions: List[LedgerTransaction] = field(default_factory=list)


_current_session: ContextVar[Optional[_Session]] = ContextVar("ledger_session", default=None)


class InMemoryAccountRepository(AccountRepository):
    def __init__(self):
        self.accounts: Dict[str, Account] = {}
        self.locks: Dict[str, asyncio.Lock] = {}
        self.lock_holders: Dict[str, int] = defaultdict(int)

    async def find_account(self, account_id: str) -> Optional[Account]:
        session = _current_session.get()
        if session is not None and account_id in session.accounts:
            return session.accounts[account_id][1].model_copy()
        account = self.accounts.get(account_id)
        return account.model_copy() if account is not None else None

    async def create_account(self, account_id: str, balance: Decimal = Decimal("0")) -> Account:
        if await self.find_account(account_id) is not None:
            raise ConflictError(f"Account {account_id} already exists")

        account = Account(id=account_id, balance=balance)
        session = _current_session.get()
        if session is not None:
            session.accounts[account_id] = (None, account)
        else:
            self.accounts[account_id] = account
        return account.model_copy()

    async def save_account(self, account: Account) -> Account:
        current = await self.find_account(account.id)
        if current is None:
            raise StoreError(f"Account {account.id} does not exist")
        if current.version != account.version:
            raise ConflictError()

        saved = account.model_copy(update={"version": account.version + 1})
        session = _current_session.get()
        if session is not None:
            base_version = session.accounts[account.id][0] if account.id in session.accounts else account.version
            session.accounts[account.id] = (base_version, saved)
        else:
            self.accounts[account.id] = saved
        return saved.model_copy()

    async def list_account_ids(self, exclude: Optional[str] = None, limit: int = 5) -> List[str]:
        return list(islice((account_id for account_id in self.accounts if account_id != exclude), limit))

    async def get_accounts_count(self) -> int:
        return len(self.accounts)

    @asynccontextmanager
    async def lock_account(self, account_id: str) -> AsyncIterator[None]:
        lock = self.locks.setdefault(account_id, asyncio.Lock())
        self.lock_holders[account_id] += 1
        try:
            async with lock:
                yield
        finally:
            # Drop the lock once no task holds or waits on it
            self.lock_holders[account_id] -= 1
            if self.lock_holders[account_id] == 0:
                del self.lock_holders[account_id]
                del self.locks[account_id]

    def check_staged(self, staged: Dict[str, Tuple[Optional[int], Account]]) -> None:
        """Raise ConflictError if any staged account changed since the session read it."""
        for account_id, (base_version, _) in staged.items():
            committed = self.accounts.get(account_id)
            if base_version is None:
                if committed is not None:
                    raise ConflictError(f"Account {account_id} already exists")
            elif committed is None or committed.version != base_version:
                raise ConflictError()

    def apply_staged(self, staged: Dict[str, Tuple[Optional[int], Account]]) -> None:
        for account_id, (_, account) in staged.items():
            self.accounts[account_id] = account


class InMemoryTransactionRepository(TransactionRepository):
    def __init__(self):
        self.transactions: List[LedgerTransaction] = []

    async def append_transaction(self, transaction: LedgerTransaction) -> LedgerTransaction:
        session = _current_session.get()
        if session is not None:
            session.transactions.append(transaction)
        else:
            self.transactions.append(transaction)
        return transaction

    async def query_transactions(self, account_id: str, newest_first: bool = True) -> List[LedgerTransaction]:
        entries = list(self.transactions)
        session = _current_session.get()
        if session is not None:
            entries.extend(session.transactions)
        matches = [t for t in entries if t.accountId == account_id]
        if newest_first:
            # Entries sharing a timestamp keep reverse insertion order
            return sorted(reversed(matches), key=lambda t: t.date, reverse=True)
        return sorted(matches, key=lambda t: t.date)

    async def get_transactions_count(self) -> int:
        return len(self.transactions)

    def apply_staged(self, staged: List[LedgerTransaction]) -> None:
        self.transactions.extend(staged)


class InMemoryTransactionManager(TransactionManager):
    """Stages writes per task and applies them in a single step on commit.

    Nothing a session writes is visible to other tasks before commit, so an
    aborted session needs no undo work.
    """

    def __init__(self, account_repo: InMemoryAccountRepository, transaction_repo: InMemoryTransactionRepository):
        self.account_repo = account_repo
        self.transaction_repo = transaction_repo

    async def with_transaction(self, fn: Callable[[], Awaitable[T]], timeout: Optional[float] = None) -> T:
        if _current_session.get() is not None:
            # Nested boundaries join the enclosing session
            return await fn()

        session = _Session()

        async def run() -> T:
            token = _current_session.set(session)
            try:
                return await fn()
            finally:
                _current_session.reset(token)

        try:
            result = await asyncio.wait_for(run(), timeout)
        except asyncio.TimeoutError as e:
            logger.warning(
                "Transaction timed out, staged writes discarded",
                timeout=timeout,
                staged_accounts=list(session.accounts),
            )
            raise TransactionTimeoutError() from e
        except Exception:
            logger.debug(
                "Transaction aborted, staged writes discarded",
                staged_accounts=list(session.accounts),
                staged_transactions=len(session.transactions),
            )
            raise

        self.account_repo.check_staged(session.accounts)
        self.account_repo.apply_staged(session.accounts)
        self.transaction_repo.apply_staged(session.transactions)
        return result


# Singleton instances, swapped out by reset_repositories
_account_repo = InMemoryAccountRepository()
_transaction_repo = InMemoryTransactionRepository()
_transaction_manager = InMemoryTransactionManager(_account_repo, _transaction_repo)


def get_account_repository() -> AccountRepository:
    return _account_repo


def get_transaction_repository() -> TransactionRepository:
    return _transaction_repo


def get_transaction_manager() -> TransactionManager:
    return _transaction_manager


def reset_repositories():
    """Reset all repositories to an empty state (for testing only)."""
    global _account_repo, _transaction_repo, _transaction_manager
    _account_repo = InMemoryAccountRepository()
    _transaction_repo = InMemoryTransactionRepository()
    _transaction_manager = InMemoryTransactionManager(_account_repo, _transaction_repo)
