"""Credit ledger schemas."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict


class TransactionKind(str, Enum):
    PURCHASE = "purchase"
    SUBSCRIPTION = "subscription"
    DEDUCTION = "deduction"
    REFUND = "refund"
    BONUS = "bonus"
    ADJUSTMENT = "adjustment"


class CreditTransaction(BaseModel):
    """Immutable ledger entry; positive amounts add credits, negative ones spend them."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    amount: int
    kind: TransactionKind
    reference: str | None = None
    timestamp: datetime
    balance_after: int
    description: str | None = None


class BalanceResponse(BaseModel):
    balance: int
    pending_sync: int = 0


class CreditEstimate(BaseModel):
    duration_seconds: float
    required: int
    available: int
    sufficient: bool


class TransactionPage(BaseModel):
    items: list[CreditTransaction]
