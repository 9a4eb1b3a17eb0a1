"""Billing provider adapters."""

from .base import BillingProvider, StaticBillingProvider
from .revenuecat import RevenueCatBillingProvider

__all__ = ["BillingProvider", "RevenueCatBillingProvider", "StaticBillingProvider"]
