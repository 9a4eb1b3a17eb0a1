"""In-memory repositories used for local development and tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from autosub.domain.job_fsm import is_terminal
from autosub.errors import PersistenceError
from autosub.repositories.base import DocumentStore, LocalCache
from autosub.schemas.billing import SubscriptionTier
from autosub.schemas.job import Job
from autosub.schemas.ledger import CreditTransaction, TransactionKind

_COUNTER_FIELDS = frozenset({"total_videos_processed", "total_credits_used", "total_credits_purchased"})


@dataclass(slots=True)
class UserRecord:
    user_id: str
    balance: int
    created_at: datetime
    last_active: datetime
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    total_videos_processed: int = 0
    total_credits_used: int = 0
    total_credits_purchased: int = 0
    last_grants: dict[SubscriptionTier, datetime] = field(default_factory=dict)


@dataclass(slots=True)
class InMemoryDocumentStore(DocumentStore):
    """Simple, deterministic persistence layer for scaffolding and tests."""

    users: dict[str, UserRecord] = field(default_factory=dict)
    transactions: dict[str, list[CreditTransaction]] = field(default_factory=dict)
    jobs: dict[str, dict[str, Job]] = field(default_factory=dict)
    transaction_write_count: int = 0
    job_write_count: int = 0
    # Failure injection: the next N calls of the named operation raise PersistenceError.
    ensure_user_failures_remaining: int = 0
    record_failures_remaining: int = 0
    save_job_failures_remaining: int = 0
    failure_message: str = "Injected store failure"

    async def ensure_user(self, user_id: str) -> tuple[int, bool]:
        if self.ensure_user_failures_remaining > 0:
            self.ensure_user_failures_remaining -= 1
            raise PersistenceError(self.failure_message)

        user = self.users.get(user_id)
        if user is not None:
            return user.balance, False

        now = datetime.now(UTC)
        self.users[user_id] = UserRecord(user_id=user_id, balance=0, created_at=now, last_active=now)
        return 0, True

    async def get_balance(self, user_id: str) -> int | None:
        user = self.users.get(user_id)
        return user.balance if user is not None else None

    async def record_transaction(self, transaction: CreditTransaction) -> bool:
        if self.record_failures_remaining > 0:
            self.record_failures_remaining -= 1
            raise PersistenceError(self.failure_message)

        user = self._require_user(transaction.user_id)
        history = self.transactions.setdefault(transaction.user_id, [])
        if any(existing.id == transaction.id for existing in history):
            return False

        user.balance += transaction.amount
        user.last_active = datetime.now(UTC)
        history.append(transaction)
        self.transaction_write_count += 1
        return True

    async def list_transactions(self, user_id: str, *, limit: int = 50) -> list[CreditTransaction]:
        history = self.transactions.get(user_id, [])
        return list(reversed(history))[:limit]

    async def find_transaction(
        self,
        user_id: str,
        *,
        kind: TransactionKind,
        reference: str,
    ) -> CreditTransaction | None:
        for transaction in self.transactions.get(user_id, []):
            if transaction.kind == kind and transaction.reference == reference:
                return transaction
        return None

    async def list_transactions_for(
        self,
        user_id: str,
        *,
        kind: TransactionKind,
        reference: str,
    ) -> list[CreditTransaction]:
        return [
            transaction
            for transaction in self.transactions.get(user_id, [])
            if transaction.kind == kind and transaction.reference == reference
        ]

    async def get_last_grant(self, user_id: str, tier: SubscriptionTier) -> datetime | None:
        return self._require_user(user_id).last_grants.get(tier)

    async def set_last_grant(self, user_id: str, tier: SubscriptionTier, granted_at: datetime) -> None:
        self._require_user(user_id).last_grants[tier] = granted_at

    async def set_subscription_tier(self, user_id: str, tier: SubscriptionTier) -> None:
        user = self._require_user(user_id)
        user.subscription_tier = tier
        user.last_active = datetime.now(UTC)

    async def increment_counters(self, user_id: str, **counters: int) -> None:
        user = self._require_user(user_id)
        for name, amount in counters.items():
            if name not in _COUNTER_FIELDS:
                raise ValueError(f"Unknown counter: {name}")
            setattr(user, name, getattr(user, name) + amount)

    async def save_job(self, job: Job) -> None:
        if self.save_job_failures_remaining > 0:
            self.save_job_failures_remaining -= 1
            raise PersistenceError(self.failure_message)

        self.jobs.setdefault(job.user_id, {})[job.id] = job.model_copy(deep=True)
        self.job_write_count += 1

    async def get_job(self, user_id: str, job_id: str) -> Job | None:
        job = self.jobs.get(user_id, {}).get(job_id)
        return job.model_copy(deep=True) if job is not None else None

    async def list_jobs(self, user_id: str, *, limit: int = 50) -> list[Job]:
        jobs = sorted(self.jobs.get(user_id, {}).values(), key=lambda job: job.created_at, reverse=True)
        return [job.model_copy(deep=True) for job in jobs[:limit]]

    async def list_jobs_pending_refund(self, user_id: str) -> list[Job]:
        return [
            job.model_copy(deep=True)
            for job in self.jobs.get(user_id, {}).values()
            if job.refund_pending and is_terminal(job.status)
        ]

    def _require_user(self, user_id: str) -> UserRecord:
        user = self.users.get(user_id)
        if user is None:
            raise PersistenceError(f"User document missing for {user_id}")
        return user


@dataclass(slots=True)
class InMemoryLocalCache(LocalCache):
    values: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str) -> Any | None:
        return self.values.get(key)

    def set(self, key: str, value: Any) -> None:
        self.values[key] = value

    def delete(self, key: str) -> None:
        self.values.pop(key, None)
