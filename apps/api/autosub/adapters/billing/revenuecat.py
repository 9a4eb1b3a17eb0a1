"""RevenueCat REST client."""

from __future__ import annotations

from datetime import UTC, datetime
import logging
from typing import Any
from urllib.parse import quote

import httpx

from autosub.adapters.billing.base import BillingProvider
from autosub.core.logging_safety import safe_log_identifier
from autosub.errors import BillingSyncFailed
from autosub.schemas.billing import BillingSnapshot, Entitlement, PeriodType, PurchaseRecord

logger = logging.getLogger(__name__)


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _parse_period_type(value: Any) -> PeriodType:
    try:
        return PeriodType(str(value or PeriodType.NORMAL.value).lower())
    except ValueError:
        return PeriodType.NORMAL


def parse_subscriber(payload: dict[str, Any], *, now: datetime | None = None) -> BillingSnapshot:
    """Map a ``GET /v1/subscribers/{id}`` body onto a ``BillingSnapshot``.

    The first unexpired entitlement wins; its period type comes from the
    matching entry under ``subscriptions``.
    """
    now = now or datetime.now(UTC)
    subscriber = payload.get("subscriber") or {}
    subscriptions = subscriber.get("subscriptions") or {}

    active: Entitlement | None = None
    for entitlement in (subscriber.get("entitlements") or {}).values():
        product_id = entitlement.get("product_identifier")
        if not product_id:
            continue
        expires_at = _parse_datetime(entitlement.get("expires_date"))
        if expires_at is not None and expires_at <= now:
            continue
        subscription = subscriptions.get(product_id) or {}
        active = Entitlement(
            product_id=product_id,
            period_type=_parse_period_type(subscription.get("period_type")),
            period_started_at=_parse_datetime(
                subscription.get("purchase_date") or entitlement.get("purchase_date")
            ),
            expires_at=expires_at,
        )
        break

    purchases: list[PurchaseRecord] = []
    for product_id, transactions in (subscriber.get("non_subscriptions") or {}).items():
        for transaction in transactions or []:
            transaction_id = transaction.get("store_transaction_id") or transaction.get("id")
            if not transaction_id:
                continue
            purchases.append(
                PurchaseRecord(
                    transaction_id=str(transaction_id),
                    product_id=product_id,
                    purchased_at=_parse_datetime(transaction.get("purchase_date")),
                )
            )

    return BillingSnapshot(active_entitlement=active, purchases=purchases)


class RevenueCatBillingProvider(BillingProvider):
    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.revenuecat.com",
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    async def fetch_snapshot(self, user_id: str) -> BillingSnapshot:
        safe_user = safe_log_identifier(user_id, prefix="uid")
        try:
            response = await self._client.get(f"/v1/subscribers/{quote(user_id, safe='')}")
        except httpx.HTTPError as exc:
            logger.warning("billing.fetch_failed user_id=%s error=%s", safe_user, type(exc).__name__)
            raise BillingSyncFailed(f"Network error ({type(exc).__name__})") from exc

        if response.status_code >= 400:
            logger.warning("billing.fetch_failed user_id=%s status_code=%s", safe_user, response.status_code)
            raise BillingSyncFailed(f"HTTP {response.status_code}")

        try:
            snapshot = parse_subscriber(response.json())
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning("billing.unexpected_body user_id=%s error=%s", safe_user, type(exc).__name__)
            raise BillingSyncFailed("Invalid response from billing provider") from exc

        logger.info(
            "billing.fetched user_id=%s entitlement=%s purchases=%s",
            safe_user,
            snapshot.active_entitlement.product_id if snapshot.active_entitlement else None,
            len(snapshot.purchases),
        )
        return snapshot

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["RevenueCatBillingProvider", "parse_subscriber"]
