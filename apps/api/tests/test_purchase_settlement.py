"""Exactly-once settlement of purchases and subscription grants."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
import unittest
from unittest.mock import patch

from autosub.adapters.billing.base import BillingProvider, StaticBillingProvider
from autosub.errors import BillingSyncFailed, PersistenceError
from autosub.repositories.memory import InMemoryDocumentStore, InMemoryLocalCache
from autosub.schemas.billing import (
    BillingSnapshot,
    Entitlement,
    PeriodType,
    PurchaseRecord,
    SubscriptionTier,
)
from autosub.schemas.ledger import TransactionKind
from autosub.services.ledger import CreditLedger
from autosub.services.settlement import PurchaseSettlement

MEDIUM_PACK = "com.autosubtitle.credits.medium"
PRO_MONTHLY = "com.autosubtitle.subscription.pro.monthly"
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class _UnavailableBilling(BillingProvider):
    async def fetch_snapshot(self, user_id: str) -> BillingSnapshot:
        raise BillingSyncFailed("HTTP 503")


class PurchaseSettlementTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.now = T0
        self.store = InMemoryDocumentStore()
        self.cache = InMemoryLocalCache()
        self.billing = StaticBillingProvider()
        self.ledger = CreditLedger("user-1", self.store, self.cache)
        self.settlement = PurchaseSettlement(
            "user-1",
            self.ledger,
            self.billing,
            self.store,
            self.cache,
            clock=lambda: self.now,
        )

    def _transactions(self, kind: TransactionKind) -> list:
        return [item for item in self.store.transactions.get("user-1", []) if item.kind == kind]

    def _pro_snapshot(self, period_type: PeriodType = PeriodType.NORMAL, started: datetime = T0) -> BillingSnapshot:
        return BillingSnapshot(
            active_entitlement=Entitlement(
                product_id=PRO_MONTHLY,
                period_type=period_type,
                period_started_at=started,
            )
        )

    async def test_same_purchase_delivered_twice_in_sequence_credits_once(self) -> None:
        snapshot = BillingSnapshot(purchases=[PurchaseRecord(transaction_id="txn-1", product_id=MEDIUM_PACK)])
        self.billing.set_snapshot("user-1", snapshot)

        first = await self.settlement.sync()
        second = await self.settlement.sync()

        self.assertEqual(first.purchase_credits, 75)
        self.assertEqual(first.settled_transactions, ["txn-1"])
        self.assertEqual(second.purchase_credits, 0)
        self.assertEqual(second.settled_transactions, [])
        self.assertEqual(len(self._transactions(TransactionKind.PURCHASE)), 1)
        self.assertEqual(await self.ledger.balance(), 75)
        self.assertEqual(self.store.users["user-1"].total_credits_purchased, 75)

    async def test_duplicate_entries_in_one_snapshot_credit_once(self) -> None:
        purchase = PurchaseRecord(transaction_id="txn-1", product_id=MEDIUM_PACK)

        report = await self.settlement.settle(BillingSnapshot(purchases=[purchase, purchase]))

        self.assertEqual(report.purchase_credits, 75)
        self.assertEqual(await self.ledger.balance(), 75)

    async def test_concurrent_syncs_credit_once(self) -> None:
        snapshot = BillingSnapshot(purchases=[PurchaseRecord(transaction_id="txn-1", product_id=MEDIUM_PACK)])
        self.billing.set_snapshot("user-1", snapshot)

        await asyncio.gather(self.settlement.sync(), self.settlement.sync())

        self.assertEqual(len(self._transactions(TransactionKind.PURCHASE)), 1)
        self.assertEqual(await self.ledger.balance(), 75)

    async def test_credit_recorded_before_crash_is_not_credited_again(self) -> None:
        await self.ledger.credit(75, TransactionKind.PURCHASE, reference="txn-1")
        snapshot = BillingSnapshot(purchases=[PurchaseRecord(transaction_id="txn-1", product_id=MEDIUM_PACK)])

        report = await self.settlement.settle(snapshot)

        self.assertEqual(report.purchase_credits, 0)
        self.assertEqual(report.settled_transactions, ["txn-1"])
        self.assertIn("txn-1", self.settlement.processed_transaction_ids())
        self.assertEqual(await self.ledger.balance(), 75)

    async def test_failed_credit_is_reported_and_left_unprocessed(self) -> None:
        snapshot = BillingSnapshot(purchases=[PurchaseRecord(transaction_id="txn-1", product_id=MEDIUM_PACK)])
        await self.ledger.load()

        with patch.object(self.ledger, "credit", side_effect=PersistenceError()):
            failed = await self.settlement.settle(snapshot)

        self.assertFalse(failed.ok)
        self.assertEqual([(item.item, item.code) for item in failed.failures], [("txn-1", "PERSISTENCE_FAILED")])
        self.assertNotIn("txn-1", self.settlement.processed_transaction_ids())
        self.assertEqual(await self.ledger.balance(), 0)

        retried = await self.settlement.settle(snapshot)

        self.assertTrue(retried.ok)
        self.assertEqual(retried.purchase_credits, 75)
        self.assertEqual(await self.ledger.balance(), 75)

    async def test_unknown_product_is_skipped_and_not_marked_processed(self) -> None:
        snapshot = BillingSnapshot(
            purchases=[
                PurchaseRecord(transaction_id="txn-x", product_id="com.other.app.coins"),
                PurchaseRecord(transaction_id="txn-sub", product_id=PRO_MONTHLY),
            ]
        )

        report = await self.settlement.settle(snapshot)

        self.assertEqual(report.skipped_transactions, ["txn-x", "txn-sub"])
        self.assertEqual(self.settlement.processed_transaction_ids(), set())
        self.assertEqual(await self.ledger.balance(), 0)

    async def test_subscription_grant_happens_at_most_once_within_window(self) -> None:
        first = await self.settlement.settle(self._pro_snapshot())
        self.now = T0 + timedelta(days=10)
        second = await self.settlement.settle(self._pro_snapshot())
        self.now = T0 + timedelta(days=28)
        third = await self.settlement.settle(self._pro_snapshot())

        self.assertEqual(first.tier, SubscriptionTier.PRO)
        self.assertEqual(first.subscription_credits, 180)
        self.assertEqual(second.subscription_credits, 0)
        self.assertEqual(third.subscription_credits, 0)
        self.assertEqual(await self.ledger.balance(), 180)
        self.assertEqual(self.store.users["user-1"].subscription_tier, SubscriptionTier.PRO)

    async def test_subscription_grant_repeats_after_window_for_new_period(self) -> None:
        await self.settlement.settle(self._pro_snapshot())
        self.now = T0 + timedelta(days=29)

        report = await self.settlement.settle(self._pro_snapshot(started=self.now))

        self.assertEqual(report.subscription_credits, 180)
        references = [item.reference for item in self._transactions(TransactionKind.SUBSCRIPTION)]
        self.assertEqual(references, ["pro:2026-03-01", "pro:2026-03-30"])
        self.assertEqual(await self.settlement.last_grant_at(SubscriptionTier.PRO), self.now)

    async def test_lost_grant_state_does_not_grant_same_period_twice(self) -> None:
        await self.settlement.settle(self._pro_snapshot())
        self.cache.delete("settlement:user-1:last_grant:pro")

        report = await self.settlement.settle(self._pro_snapshot())

        self.assertEqual(report.subscription_credits, 0)
        self.assertEqual(await self.ledger.balance(), 180)
        self.assertIsNotNone(await self.settlement.last_grant_at(SubscriptionTier.PRO))

    async def test_grant_without_period_dates_is_not_repeated_after_local_state_is_lost(self) -> None:
        snapshot = BillingSnapshot(active_entitlement=Entitlement(product_id=PRO_MONTHLY))
        await self.settlement.settle(snapshot)

        self.now = T0 + timedelta(days=1)
        fresh_cache = InMemoryLocalCache()
        restarted = PurchaseSettlement(
            "user-1",
            CreditLedger("user-1", self.store, fresh_cache),
            self.billing,
            self.store,
            fresh_cache,
            clock=lambda: self.now,
        )
        report = await restarted.settle(snapshot)

        self.assertEqual(report.subscription_credits, 0)
        self.assertEqual(len(self._transactions(TransactionKind.SUBSCRIPTION)), 1)
        self.assertEqual(self.store.users["user-1"].last_grants[SubscriptionTier.PRO], T0)

    async def test_grant_reference_uses_expiry_when_period_start_is_missing(self) -> None:
        snapshot = BillingSnapshot(
            active_entitlement=Entitlement(product_id=PRO_MONTHLY, expires_at=T0 + timedelta(days=30))
        )

        await self.settlement.settle(snapshot)

        (grant,) = self._transactions(TransactionKind.SUBSCRIPTION)
        self.assertEqual(grant.reference, "pro:until:2026-03-31")

    async def test_unreadable_grant_record_blocks_the_grant(self) -> None:
        await self.ledger.load()

        with patch.object(InMemoryDocumentStore, "get_last_grant", side_effect=PersistenceError()):
            report = await self.settlement.settle(self._pro_snapshot())

        self.assertEqual(report.subscription_credits, 0)
        self.assertEqual([failure.item for failure in report.failures], ["pro:last_grant"])
        self.assertEqual(await self.ledger.balance(), 0)

    async def test_trial_period_updates_tier_without_granting_credits(self) -> None:
        report = await self.settlement.settle(self._pro_snapshot(period_type=PeriodType.TRIAL))

        self.assertEqual(report.tier, SubscriptionTier.PRO)
        self.assertEqual(report.subscription_credits, 0)
        self.assertEqual(self.store.users["user-1"].subscription_tier, SubscriptionTier.PRO)
        self.assertIsNone(await self.settlement.last_grant_at(SubscriptionTier.PRO))

    async def test_no_entitlement_resets_tier_to_free(self) -> None:
        await self.settlement.settle(self._pro_snapshot(period_type=PeriodType.INTRO))

        report = await self.settlement.settle(BillingSnapshot())

        self.assertEqual(report.tier, SubscriptionTier.FREE)
        self.assertEqual(self.store.users["user-1"].subscription_tier, SubscriptionTier.FREE)

    async def test_provider_failure_propagates_without_side_effects(self) -> None:
        settlement = PurchaseSettlement("user-1", self.ledger, _UnavailableBilling(), self.store, self.cache)

        with self.assertRaises(BillingSyncFailed) as context:
            await settlement.sync()

        self.assertTrue(context.exception.retryable)
        self.assertEqual(self.store.transactions, {})


if __name__ == "__main__":
    unittest.main()
