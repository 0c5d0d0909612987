"""Error taxonomy for ledger operations.

Every error carries the HTTP status and machine-readable code the API layer
answers with, plus a message that is safe to show to the caller.
"""

from typing import Optional


class LedgerError(Exception):
    status_code: int = 400
    error_code: str = "LEDGER_ERROR"
    message: str = "Request could not be processed"

    def __init__(self, detail: Optional[str] = None):
        # `detail` is for logs only; callers always see `message`
        super().__init__(detail or self.message)


class InvalidAmountError(LedgerError):
    error_code = "INVALID_AMOUNT"
    message = "Invalid amount"


class InsufficientFundsError(LedgerError):
    error_code = "INSUFFICIENT_FUNDS"
    message = "Insufficient funds"


class SameAccountError(LedgerError):
    error_code = "SAME_ACCOUNT"
    message = "Sender and recipient accounts must be different"


class MissingFieldsError(LedgerError):
    error_code = "MISSING_FIELDS"
    message = "Missing required fields"


class AccountNotFoundError(LedgerError):
    status_code = 404
    error_code = "ACCOUNT_NOT_FOUND"
    message = "Account not found"


class StoreError(LedgerError):
    """Persistence failure. The message shown to callers stays generic."""

    status_code = 500
    error_code = "STORE_ERROR"
    message = "Internal server error"


class ConflictError(StoreError):
    """A concurrent write changed a document since it was read. Retryable."""

    status_code = 409
    error_code = "CONFLICT"
    message = "Account was modified concurrently, please retry"


class TransactionTimeoutError(StoreError):
    status_code = 503
    error_code = "TRANSACTION_TIMEOUT"
    message = "Operation timed out, please retry"
