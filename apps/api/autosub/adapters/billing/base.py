"""Billing provider interfaces."""

from abc import ABC, abstractmethod

from autosub.schemas.billing import BillingSnapshot


class BillingProvider(ABC):
    """Provider-neutral read access to a customer's entitlements and purchases."""

    @abstractmethod
    async def fetch_snapshot(self, user_id: str) -> BillingSnapshot:
        """Return the current billing snapshot; raise ``BillingSyncFailed`` on error."""

    async def aclose(self) -> None:
        """Release network resources."""


class StaticBillingProvider(BillingProvider):
    """Serves snapshots pushed by the caller (local development and tests)."""

    def __init__(self, snapshots: dict[str, BillingSnapshot] | None = None) -> None:
        self._snapshots = dict(snapshots or {})

    def set_snapshot(self, user_id: str, snapshot: BillingSnapshot) -> None:
        self._snapshots[user_id] = snapshot

    async def fetch_snapshot(self, user_id: str) -> BillingSnapshot:
        return self._snapshots.get(user_id, BillingSnapshot())


__all__ = ["BillingProvider", "StaticBillingProvider"]
