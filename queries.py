from decimal import Decimal
from typing import List, Optional
import structlog

from config import Settings
from models import LedgerTransaction
from repositories import AccountRepository, TransactionRepository, TransactionManager
from services import get_or_create_account

logger = structlog.get_logger()


class AccountQueryService:
    """Read-side operations: balances, statements and peer discovery."""

    def __init__(
        self,
        account_repo: AccountRepository,
        transaction_repo: TransactionRepository,
        transaction_manager: TransactionManager,
        settings: Settings,
    ):
        self.account_repo = account_repo
        self.transaction_repo = transaction_repo
        self.transaction_manager = transaction_manager
        self.settings = settings

    async def get_balance(self, iban: str) -> Decimal:
        """Current balance of `iban`; an unknown IBAN is created at balance 0."""
        async with self.account_repo.lock_account(iban):
            account = await self.transaction_manager.with_transaction(
                lambda: get_or_create_account(self.account_repo, iban),
                timeout=self.settings.transaction_timeout_seconds,
            )
        logger.debug("Balance retrieved", iban=iban, balance=str(account.balance))
        return account.balance

    async def get_statement(self, iban: str) -> List[LedgerTransaction]:
        # Pure read: no account is created for an unknown IBAN
        transactions = await self.transaction_repo.query_transactions(iban, newest_first=True)
        logger.debug("Statement retrieved", iban=iban, transactions=len(transactions))
        return transactions

    async def list_other_accounts(self, exclude_iban: Optional[str], limit: Optional[int] = None) -> List[str]:
        if limit is None:
            limit = self.settings.peer_accounts_limit
        return await self.account_repo.list_account_ids(exclude=exclude_iban, limit=limit)


def get_query_service(
    account_repo: AccountRepository,
    transaction_repo: TransactionRepository,
    transaction_manager: TransactionManager,
    settings: Settings,
) -> AccountQueryService:
    return AccountQueryService(account_repo, transaction_repo, transaction_manager, settings)
