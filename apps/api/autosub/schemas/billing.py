"""Billing provider and settlement schemas."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class SubscriptionTier(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    ULTIMATE = "ultimate"

    @property
    def monthly_credits(self) -> int:
        return _MONTHLY_CREDITS[self]


_MONTHLY_CREDITS: dict[SubscriptionTier, int] = {
    SubscriptionTier.FREE: 5,
    SubscriptionTier.STARTER: 60,
    SubscriptionTier.PRO: 180,
    SubscriptionTier.ULTIMATE: 500,
}


class PeriodType(str, Enum):
    NORMAL = "normal"
    TRIAL = "trial"
    INTRO = "intro"


class Entitlement(BaseModel):
    product_id: str
    period_type: PeriodType = PeriodType.NORMAL
    period_started_at: datetime | None = None
    expires_at: datetime | None = None


class PurchaseRecord(BaseModel):
    transaction_id: str = Field(min_length=1)
    product_id: str = Field(min_length=1)
    purchased_at: datetime | None = None


class BillingSnapshot(BaseModel):
    """Read-only view of what the billing provider knows about a customer."""

    active_entitlement: Entitlement | None = None
    purchases: list[PurchaseRecord] = Field(default_factory=list)


class SettlementFailure(BaseModel):
    item: str
    code: str
    message: str


class SettlementReport(BaseModel):
    tier: SubscriptionTier = SubscriptionTier.FREE
    subscription_credits: int = 0
    purchase_credits: int = 0
    settled_transactions: list[str] = Field(default_factory=list)
    skipped_transactions: list[str] = Field(default_factory=list)
    failures: list[SettlementFailure] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures
