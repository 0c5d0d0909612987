from datetime import datetime
from zoneinfo import ZoneInfo
from decimal import Decimal, InvalidOperation
from typing import Any
import math
import structlog

from config import Settings
from models import Account, LedgerTransaction, TransactionType
from repositories import AccountRepository, TransactionRepository, TransactionManager
from exceptions import (
    AccountNotFoundError,
    InsufficientFundsError,
    InvalidAmountError,
    MissingFieldsError,
    SameAccountError,
)

# Configure structured logging
logger = structlog.get_logger()


def parse_amount(value: Any, allow_text: bool = False) -> Decimal:
    """Convert a request amount to a finite, positive Decimal.

    Floats go through their shortest repr so 0.1 stays 0.1. Strings are only
    accepted when `allow_text` is set. Fractional-cent drift is not handled:
    amounts are kept exactly as the caller sent them.
    """
    if value is None or isinstance(value, bool):
        raise InvalidAmountError()

    if isinstance(value, str):
        if not allow_text:
            raise InvalidAmountError()
        try:
            amount = Decimal(value.strip())
        except InvalidOperation:
            raise InvalidAmountError()
    elif isinstance(value, (int, float, Decimal)):
        amount = Decimal(str(value))
    else:
        raise InvalidAmountError()

    if not amount.is_finite() or not math.isfinite(float(amount)) or amount <= 0:
        raise InvalidAmountError()
    return amount


def ensure_representable(iban: str, balance: Decimal) -> None:
    """Reject a resulting balance that JSON numbers can no longer carry."""
    if not math.isfinite(float(balance)):
        logger.warning("Operation rejected: balance out of range", iban=iban)
        raise InvalidAmountError("resulting balance out of range")


async def get_or_create_account(account_repo: AccountRepository, iban: str) -> Account:
    """Read-through lookup: accounts come into existence at balance 0 on first use."""
    account = await account_repo.find_account(iban)
    if account is None:
        account = await account_repo.create_account(iban, Decimal("0"))
        logger.info("Account created", iban=iban)
    return account


class LedgerService:
    """Deposits, withdrawals and transfers.

    Every mutation holds the per-account lock of each account it touches and
    runs inside a transactional boundary, so a balance change and its ledger
    entry become visible together or not at all.
    """

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
        self.tz = ZoneInfo(settings.timezone)

    def _now(self) -> datetime:
        return datetime.now(self.tz)

    async def _record(self, account: Account, amount: Decimal, tx_type: TransactionType, date: datetime) -> None:
        await self.transaction_repo.append_transaction(
            LedgerTransaction(
                accountId=account.id,
                date=date,
                amount=amount,
                balance=account.balance,
                type=tx_type,
            )
        )

    async def deposit(self, iban: str, amount: Any) -> Account:
        """Credit `amount` to `iban`, creating the account if needed. Returns the updated account."""
        value = parse_amount(amount)
        logger.info("Processing deposit", iban=iban, amount=str(value))

        async def apply() -> Account:
            account = await get_or_create_account(self.account_repo, iban)
            account.balance += value
            ensure_representable(iban, account.balance)
            account = await self.account_repo.save_account(account)
            await self._record(account, value, TransactionType.deposit, self._now())
            return account

        async with self.account_repo.lock_account(iban):
            account = await self.transaction_manager.with_transaction(
                apply, timeout=self.settings.transaction_timeout_seconds
            )

        logger.info("Deposit successful", iban=iban, new_balance=str(account.balance))
        return account

    async def withdraw(self, iban: str, amount: Any) -> Decimal:
        """Debit `amount` from `iban`. Returns the new balance."""
        value = parse_amount(amount)
        logger.info("Processing withdrawal", iban=iban, amount=str(value))

        async def apply() -> Account:
            account = await get_or_create_account(self.account_repo, iban)
            if account.balance < value:
                logger.warning(
                    "Withdrawal failed: insufficient funds",
                    iban=iban,
                    attempted=str(value),
                    available=str(account.balance),
                )
                raise InsufficientFundsError()

            account.balance -= value
            account = await self.account_repo.save_account(account)
            await self._record(account, -value, TransactionType.withdrawal, self._now())
            return account

        async with self.account_repo.lock_account(iban):
            account = await self.transaction_manager.with_transaction(
                apply, timeout=self.settings.transaction_timeout_seconds
            )

        logger.info("Withdrawal successful", iban=iban, new_balance=str(account.balance))
        return account.balance

    async def transfer(self, sender_iban: str, recipient_iban: str, amount: Any) -> Decimal:
        """Move `amount` between two existing accounts. Returns the sender's new balance.

        Unlike deposit and withdraw, transfer never creates accounts; both ends
        must already exist.
        """
        if amount is None or not sender_iban or not recipient_iban:
            logger.warning(
                "Transfer failed: missing fields",
                sender_iban=sender_iban,
                recipient_iban=recipient_iban,
                amount=amount,
            )
            if amount is None:
                raise InvalidAmountError()
            raise MissingFieldsError()
        if sender_iban == recipient_iban:
            logger.warning("Transfer failed: same account", iban=sender_iban)
            raise SameAccountError()
        value = parse_amount(amount, allow_text=True)

        logger.info(
            "Processing transfer",
            sender_iban=sender_iban,
            recipient_iban=recipient_iban,
            amount=str(value),
        )

        async def apply() -> Account:
            sender = await self.account_repo.find_account(sender_iban)
            recipient = await self.account_repo.find_account(recipient_iban)
            if sender is None or recipient is None:
                logger.warning(
                    "Transfer failed: account not found",
                    sender_iban=sender_iban,
                    sender_found=sender is not None,
                    recipient_iban=recipient_iban,
                    recipient_found=recipient is not None,
                )
                raise AccountNotFoundError()

            if sender.balance < value:
                logger.warning(
                    "Transfer failed: insufficient funds",
                    sender_iban=sender_iban,
                    attempted=str(value),
                    available=str(sender.balance),
                )
                raise InsufficientFundsError()

            sender.balance -= value
            recipient.balance += value
            ensure_representable(recipient_iban, recipient.balance)
            sender = await self.account_repo.save_account(sender)
            recipient = await self.account_repo.save_account(recipient)

            date = self._now()
            await self._record(sender, -value, TransactionType.transfer_out, date)
            await self._record(recipient, value, TransactionType.transfer_in, date)
            return sender

        # Canonical lock order keeps A->B and B->A from deadlocking
        first, second = sorted((sender_iban, recipient_iban))
        async with self.account_repo.lock_account(first):
            async with self.account_repo.lock_account(second):
                sender = await self.transaction_manager.with_transaction(
                    apply, timeout=self.settings.transaction_timeout_seconds
                )

        logger.info(
            "Transfer successful",
            sender_iban=sender_iban,
            recipient_iban=recipient_iban,
            sender_balance=str(sender.balance),
        )
        return sender.balance


# Factory function for dependency injection
def get_ledger_service(
    account_repo: AccountRepository,
    transaction_repo: TransactionRepository,
    transaction_manager: TransactionManager,
    settings: Settings,
) -> LedgerService:
    return LedgerService(account_repo, transaction_repo, transaction_manager, settings)
