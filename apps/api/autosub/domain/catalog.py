"""Credit pricing rules and the purchasable product catalog."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum

from autosub.schemas.billing import SubscriptionTier

SECONDS_PER_CREDIT = 60


def required_credits(duration_seconds: float) -> int:
    """One credit per started minute of video, never less than one."""
    return max(1, math.ceil(duration_seconds / SECONDS_PER_CREDIT))


class ProductType(str, Enum):
    SUBSCRIPTION = "subscription"
    ONE_TIME = "one_time"


@dataclass(frozen=True, slots=True)
class Product:
    id: str
    name: str
    type: ProductType
    credits: int


SUBSCRIPTIONS: tuple[Product, ...] = (
    Product("com.autosubtitle.subscription.starter.monthly", "Starter", ProductType.SUBSCRIPTION, 60),
    Product("com.autosubtitle.subscription.pro.monthly", "Pro", ProductType.SUBSCRIPTION, 180),
    Product("com.autosubtitle.subscription.ultimate.monthly", "Ultimate", ProductType.SUBSCRIPTION, 500),
)

CREDIT_PACKS: tuple[Product, ...] = (
    Product("com.autosubtitle.credits.small", "Small Pack", ProductType.ONE_TIME, 20),
    Product("com.autosubtitle.credits.medium", "Medium Pack", ProductType.ONE_TIME, 75),
    Product("com.autosubtitle.credits.large", "Large Pack", ProductType.ONE_TIME, 250),
)

_PRODUCTS_BY_ID: dict[str, Product] = {product.id: product for product in SUBSCRIPTIONS + CREDIT_PACKS}

# Checked in order; "pro" is a substring of nothing else in the catalog.
_TIER_MARKERS: tuple[tuple[str, SubscriptionTier], ...] = (
    ("starter", SubscriptionTier.STARTER),
    ("ultimate", SubscriptionTier.ULTIMATE),
    ("pro", SubscriptionTier.PRO),
)


def get_product(product_id: str) -> Product | None:
    return _PRODUCTS_BY_ID.get(product_id)


def tier_for_product(product_id: str | None) -> SubscriptionTier:
    """Map an entitlement's product identifier onto a subscription tier."""
    if not product_id:
        return SubscriptionTier.FREE
    lowered = product_id.lower()
    for marker, tier in _TIER_MARKERS:
        if marker in lowered:
            return tier
    return SubscriptionTier.FREE
