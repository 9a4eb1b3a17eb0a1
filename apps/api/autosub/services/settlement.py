"""Billing snapshot settlement into ledger credits."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
import logging

from autosub.adapters.billing.base import BillingProvider
from autosub.core.logging_safety import safe_log_identifier
from autosub.domain.catalog import ProductType, get_product, tier_for_product
from autosub.errors import AutosubError, PersistenceError
from autosub.repositories.base import DocumentStore, LocalCache
from autosub.schemas.billing import (
    BillingSnapshot,
    Entitlement,
    PeriodType,
    PurchaseRecord,
    SettlementFailure,
    SettlementReport,
    SubscriptionTier,
)
from autosub.schemas.ledger import TransactionKind
from autosub.services.ledger import CreditLedger

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class PurchaseSettlement:
    """Turns billing provider state into ledger credits exactly once.

    Two records guard against double grants. The last grant per tier is kept
    on the user document and mirrored in the local key/value store, which also
    holds the processed purchase ids. The ledger is consulted as well for a
    transaction carrying the same idempotency key, so a crash between crediting
    and marking an item processed is healed on the next pass instead of
    crediting twice.
    """

    def __init__(
        self,
        user_id: str,
        ledger: CreditLedger,
        billing: BillingProvider,
        store: DocumentStore,
        state: LocalCache,
        *,
        grant_window_days: int = 28,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._user_id = user_id
        self._ledger = ledger
        self._billing = billing
        self._store = store
        self._state = state
        self._grant_window = timedelta(days=grant_window_days)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = asyncio.Lock()
        self._log_user = safe_log_identifier(user_id, prefix="uid")

    async def sync(self) -> SettlementReport:
        """Pull a billing snapshot and settle it.

        ``BillingSyncFailed`` from the provider propagates: nothing has been
        settled at that point. Per-item failures are collected in the report and
        the items stay unprocessed for the next pass.
        """
        async with self._lock:
            snapshot = await self._billing.fetch_snapshot(self._user_id)
            return await self._settle(snapshot)

    async def settle(self, snapshot: BillingSnapshot) -> SettlementReport:
        """Settle a snapshot that the caller already holds."""
        async with self._lock:
            return await self._settle(snapshot)

    async def last_grant_at(self, tier: SubscriptionTier) -> datetime | None:
        """Latest recorded grant for ``tier``: the store's record or the local copy, whichever is newer."""
        raw = self._state.get(self._last_grant_key(tier))
        recorded = [datetime.fromisoformat(raw)] if raw else []
        stored = await self._store.get_last_grant(self._user_id, tier)
        if stored is not None:
            recorded.append(stored)
        return max(recorded, default=None)

    def processed_transaction_ids(self) -> set[str]:
        return set(self._state.get(self._processed_key) or [])

    async def _settle(self, snapshot: BillingSnapshot) -> SettlementReport:
        # Opens the account document before the tier is written to it.
        await self._ledger.balance()
        entitlement = snapshot.active_entitlement
        tier = tier_for_product(entitlement.product_id if entitlement else None)
        report = SettlementReport(tier=tier)

        try:
            await self._store.set_subscription_tier(self._user_id, tier)
        except PersistenceError as exc:
            self._record_failure(report, "subscription_tier", exc)

        if entitlement is not None and tier is not SubscriptionTier.FREE:
            await self._grant_subscription(entitlement, tier, report)

        processed = self.processed_transaction_ids()
        for purchase in snapshot.purchases:
            if purchase.transaction_id in processed:
                continue
            if await self._settle_purchase(purchase, report):
                processed.add(purchase.transaction_id)
                self._state.set(self._processed_key, sorted(processed))

        logger.info(
            "settlement.completed user_id=%s tier=%s subscription_credits=%s purchase_credits=%s "
            "settled=%s skipped=%s failures=%s",
            self._log_user,
            tier.value,
            report.subscription_credits,
            report.purchase_credits,
            len(report.settled_transactions),
            len(report.skipped_transactions),
            len(report.failures),
        )
        return report

    async def _grant_subscription(
        self,
        entitlement: Entitlement,
        tier: SubscriptionTier,
        report: SettlementReport,
    ) -> None:
        if entitlement.period_type is not PeriodType.NORMAL:
            logger.info(
                "settlement.grant_skipped user_id=%s tier=%s reason=period_type_%s",
                self._log_user,
                tier.value,
                entitlement.period_type.value,
            )
            return

        now = self._clock()
        try:
            last_grant = await self.last_grant_at(tier)
        except PersistenceError as exc:
            self._record_failure(report, f"{tier.value}:last_grant", exc)
            return
        if last_grant is not None and now - last_grant <= self._grant_window:
            return

        reference = self._grant_reference(entitlement, tier, now)
        try:
            existing = await self._ledger.find_transaction(TransactionKind.SUBSCRIPTION, reference)
            if existing is None:
                credits = tier.monthly_credits
                await self._ledger.credit(
                    credits,
                    TransactionKind.SUBSCRIPTION,
                    reference=reference,
                    description=f"{tier.value.title()} monthly credits",
                )
                report.subscription_credits += credits
                await self._count_purchased(credits)
                granted_at = now
            else:
                logger.info(
                    "settlement.grant_already_recorded user_id=%s tier=%s",
                    self._log_user,
                    tier.value,
                )
                granted_at = existing.timestamp
        except AutosubError as exc:
            self._record_failure(report, reference, exc)
            return

        self._state.set(self._last_grant_key(tier), granted_at.isoformat())
        try:
            await self._store.set_last_grant(self._user_id, tier, granted_at)
        except PersistenceError as exc:
            self._record_failure(report, f"{tier.value}:last_grant", exc)

    def _grant_reference(self, entitlement: Entitlement, tier: SubscriptionTier, now: datetime) -> str:
        """Idempotency key of one monthly grant, stable for the whole billing period."""
        if entitlement.period_started_at is not None:
            return f"{tier.value}:{entitlement.period_started_at.date().isoformat()}"
        if entitlement.expires_at is not None:
            return f"{tier.value}:until:{entitlement.expires_at.date().isoformat()}"
        # No period data: fall back to fixed windows counted from the epoch.
        window = (now - _EPOCH) // self._grant_window
        return f"{tier.value}:window:{window}"

    async def _settle_purchase(self, purchase: PurchaseRecord, report: SettlementReport) -> bool:
        """Credit one purchase; return whether it may be marked processed."""
        product = get_product(purchase.product_id)
        if product is None or product.type is not ProductType.ONE_TIME:
            logger.warning(
                "settlement.unknown_product user_id=%s transaction_id=%s product_id=%s",
                self._log_user,
                safe_log_identifier(purchase.transaction_id, prefix="ptx"),
                purchase.product_id,
            )
            report.skipped_transactions.append(purchase.transaction_id)
            return False

        try:
            existing = await self._ledger.find_transaction(TransactionKind.PURCHASE, purchase.transaction_id)
            if existing is None:
                await self._ledger.credit(
                    product.credits,
                    TransactionKind.PURCHASE,
                    reference=purchase.transaction_id,
                    description=f"Purchased {product.name}",
                )
                report.purchase_credits += product.credits
                await self._count_purchased(product.credits)
        except AutosubError as exc:
            self._record_failure(report, purchase.transaction_id, exc)
            return False

        report.settled_transactions.append(purchase.transaction_id)
        return True

    async def _count_purchased(self, credits: int) -> None:
        try:
            await self._store.increment_counters(self._user_id, total_credits_purchased=credits)
        except PersistenceError as exc:
            logger.warning("settlement.counter_failed user_id=%s error=%s", self._log_user, exc.code)

    def _record_failure(self, report: SettlementReport, item: str, exc: AutosubError) -> None:
        logger.error(
            "settlement.item_failed user_id=%s item=%s error=%s",
            self._log_user,
            safe_log_identifier(item, prefix="item"),
            exc.code,
        )
        report.failures.append(SettlementFailure(item=item, code=exc.code, message=exc.message))

    @property
    def _processed_key(self) -> str:
        return f"settlement:{self._user_id}:processed"

    def _last_grant_key(self, tier: SubscriptionTier) -> str:
        return f"settlement:{self._user_id}:last_grant:{tier.value}"


__all__ = ["PurchaseSettlement"]
