"""Persistence interfaces consumed by the ledger, settlement and orchestrator."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from autosub.schemas.billing import SubscriptionTier
from autosub.schemas.job import Job
from autosub.schemas.ledger import CreditTransaction, TransactionKind


class DocumentStore(ABC):
    """Remote document store: one user document with transaction and job sub-collections.

    Implementations raise ``PersistenceError`` for any storage failure.
    """

    @abstractmethod
    async def ensure_user(self, user_id: str) -> tuple[int, bool]:
        """Return ``(balance, created)``, creating an empty user document if needed."""

    @abstractmethod
    async def get_balance(self, user_id: str) -> int | None:
        """Return the stored balance, or ``None`` when the user document is missing."""

    @abstractmethod
    async def record_transaction(self, transaction: CreditTransaction) -> bool:
        """Atomically increment the balance by ``transaction.amount`` and append it.

        Returns ``False`` without touching the balance when a transaction with the
        same id was already recorded.
        """

    @abstractmethod
    async def list_transactions(self, user_id: str, *, limit: int = 50) -> list[CreditTransaction]:
        """Return transactions newest first."""

    @abstractmethod
    async def find_transaction(
        self,
        user_id: str,
        *,
        kind: TransactionKind,
        reference: str,
    ) -> CreditTransaction | None:
        """Look up a transaction by its idempotency key."""

    @abstractmethod
    async def list_transactions_for(
        self,
        user_id: str,
        *,
        kind: TransactionKind,
        reference: str,
    ) -> list[CreditTransaction]:
        """Return every transaction of ``kind`` carrying ``reference``, oldest first."""

    @abstractmethod
    async def get_last_grant(self, user_id: str, tier: SubscriptionTier) -> datetime | None:
        """Return when monthly credits for ``tier`` were last granted."""

    @abstractmethod
    async def set_last_grant(self, user_id: str, tier: SubscriptionTier, granted_at: datetime) -> None:
        """Remember the latest monthly grant for ``tier``."""

    @abstractmethod
    async def set_subscription_tier(self, user_id: str, tier: SubscriptionTier) -> None:
        """Store the user's current subscription tier."""

    @abstractmethod
    async def increment_counters(self, user_id: str, **counters: int) -> None:
        """Add to user statistics counters such as ``total_credits_used``."""

    @abstractmethod
    async def save_job(self, job: Job) -> None:
        """Upsert a job record."""

    @abstractmethod
    async def get_job(self, user_id: str, job_id: str) -> Job | None:
        """Return a stored job owned by ``user_id``."""

    @abstractmethod
    async def list_jobs(self, user_id: str, *, limit: int = 50) -> list[Job]:
        """Return jobs newest first."""

    @abstractmethod
    async def list_jobs_pending_refund(self, user_id: str) -> list[Job]:
        """Return terminal jobs whose refund still has to be issued."""


class LocalCache(ABC):
    """Small key/value store kept on the device running the service."""

    @abstractmethod
    def get(self, key: str) -> Any | None:
        """Return the decoded value for ``key`` or ``None``."""

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Store a JSON-serialisable value."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key`` if present."""


__all__ = ["DocumentStore", "LocalCache"]
