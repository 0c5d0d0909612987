from pydantic import BaseModel, Field, field_serializer
from enum import Enum
from typing import Any, Optional
from datetime import datetime
from decimal import Decimal
import uuid


class TransactionType(str, Enum):
    deposit = "deposit"
    withdrawal = "withdrawal"
    transfer_out = "transfer_out"
    transfer_in = "transfer_in"


class Account(BaseModel):
    id: str = Field(..., min_length=1, description="Account IBAN")
    balance: Decimal = Field(default=Decimal("0"), description="Current account balance")
    # Compare-and-swap token, bumped by every successful save
    version: int = Field(default=0, exclude=True)

    @field_serializer("balance")
    def serialize_balance(self, v: Decimal) -> float:
        return float(v)


class LedgerTransaction(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Unique transaction identifier")
    accountId: str = Field(..., description="IBAN of the account this entry belongs to")
    date: datetime = Field(..., description="Server time the entry was recorded")
    amount: Decimal = Field(..., description="Signed amount: positive credits, negative debits")
    balance: Decimal = Field(..., description="Account balance right after this entry")
    type: TransactionType = Field(..., description="Transaction type")

    @field_serializer("amount", "balance")
    def serialize_money(self, v: Decimal) -> float:
        return float(v)


# Request payloads leave amount untyped and every field optional: validation
# belongs to the ledger service so every caller gets the same InvalidAmount.
class AmountRequest(BaseModel):
    amount: Any = Field(default=None, description="Amount to move, must be > 0")
    iban: Optional[str] = Field(default=None, description="Target account; omitted means the default account")


class TransferRequest(BaseModel):
    amount: Any = Field(default=None, description="Amount to transfer, must be > 0")
    senderIBAN: Optional[str] = Field(default=None, description="Account to debit")
    recipientIBAN: Optional[str] = Field(default=None, description="Account to credit")


class BalanceData(BaseModel):
    balance: Decimal

    @field_serializer("balance")
    def serialize_balance(self, v: Decimal) -> float:
        return float(v)


class ApiResponse(BaseModel):
    success: bool = Field(default=True)
    message: Optional[str] = Field(default=None, description="Human-readable outcome")
    data: Any = Field(default=None)


class ErrorResponse(BaseModel):
    success: bool = Field(default=False)
    message: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=datetime.now)
    accounts_count: int = Field(..., description="Number of accounts in system")
    transactions_count: int = Field(..., description="Number of ledger entries recorded")
