"""Firestore-backed document store."""

from __future__ import annotations

import asyncio
from datetime import datetime
import logging
from typing import Any

from autosub.core.logging_safety import safe_log_identifier
from autosub.errors import PersistenceError
from autosub.repositories.base import DocumentStore
from autosub.schemas.billing import SubscriptionTier
from autosub.schemas.job import Job, JobStatus
from autosub.schemas.ledger import CreditTransaction, TransactionKind

logger = logging.getLogger(__name__)

_USERS = "users"
_TRANSACTIONS = "transactions"
_JOBS = "jobs"
_LAST_GRANTS = "lastGrants"
_COUNTER_FIELDS = {
    "total_videos_processed": "totalVideosProcessed",
    "total_credits_used": "totalCreditsUsed",
    "total_credits_purchased": "totalCreditsPurchased",
}
_REFUNDABLE_STATUSES = [JobStatus.FAILED.value, JobStatus.CANCELLED.value]


def _load_firestore() -> Any:
    import firebase_admin
    from firebase_admin import firestore

    if not firebase_admin._apps:
        firebase_admin.initialize_app()
    return firestore


class FirestoreDocumentStore(DocumentStore):
    """Stores ``users/{uid}`` with ``transactions`` and ``jobs`` sub-collections.

    The Firestore client is synchronous, so every call runs in a worker thread.
    Balance changes go through a Firestore transaction that increments
    ``creditBalance`` and creates the transaction document together; an
    existing transaction document makes the write a no-op, which lets the
    ledger replay unsynced transactions safely.
    """

    def __init__(self, client: Any | None = None) -> None:
        self._firestore = _load_firestore()
        self._client = client or self._firestore.client()

    async def ensure_user(self, user_id: str) -> tuple[int, bool]:
        def _ensure() -> tuple[int, bool]:
            ref = self._user_ref(user_id)
            snapshot = ref.get()
            if snapshot.exists:
                return int(snapshot.get("creditBalance") or 0), False
            ref.set(
                {
                    "firebaseUID": user_id,
                    "creditBalance": 0,
                    "subscriptionTier": SubscriptionTier.FREE.value,
                    "createdAt": self._firestore.SERVER_TIMESTAMP,
                    "lastActive": self._firestore.SERVER_TIMESTAMP,
                    "totalVideosProcessed": 0,
                    "totalCreditsUsed": 0,
                    "totalCreditsPurchased": 0,
                }
            )
            return 0, True

        return await self._call("ensure_user", user_id, _ensure)

    async def get_balance(self, user_id: str) -> int | None:
        def _get() -> int | None:
            snapshot = self._user_ref(user_id).get()
            if not snapshot.exists:
                return None
            return int(snapshot.get("creditBalance") or 0)

        return await self._call("get_balance", user_id, _get)

    async def record_transaction(self, transaction: CreditTransaction) -> bool:
        firestore = self._firestore
        user_ref = self._user_ref(transaction.user_id)
        txn_ref = user_ref.collection(_TRANSACTIONS).document(transaction.id)
        data = _transaction_to_document(transaction)

        @firestore.transactional
        def _apply(db_transaction: Any) -> bool:
            if txn_ref.get(transaction=db_transaction).exists:
                return False
            db_transaction.update(
                user_ref,
                {
                    "creditBalance": firestore.Increment(transaction.amount),
                    "lastActive": firestore.SERVER_TIMESTAMP,
                },
            )
            db_transaction.set(txn_ref, data)
            return True

        return await self._call(
            "record_transaction",
            transaction.user_id,
            lambda: _apply(self._client.transaction()),
        )

    async def list_transactions(self, user_id: str, *, limit: int = 50) -> list[CreditTransaction]:
        def _list() -> list[CreditTransaction]:
            query = (
                self._user_ref(user_id)
                .collection(_TRANSACTIONS)
                .order_by("timestamp", direction=self._firestore.Query.DESCENDING)
                .limit(limit)
            )
            return [_transaction_from_document(doc.id, doc.to_dict()) for doc in query.stream()]

        return await self._call("list_transactions", user_id, _list)

    async def find_transaction(
        self,
        user_id: str,
        *,
        kind: TransactionKind,
        reference: str,
    ) -> CreditTransaction | None:
        def _find() -> CreditTransaction | None:
            query = (
                self._user_ref(user_id)
                .collection(_TRANSACTIONS)
                .where("type", "==", kind.value)
                .where("reference", "==", reference)
                .limit(1)
            )
            for doc in query.stream():
                return _transaction_from_document(doc.id, doc.to_dict())
            return None

        return await self._call("find_transaction", user_id, _find)

    async def list_transactions_for(
        self,
        user_id: str,
        *,
        kind: TransactionKind,
        reference: str,
    ) -> list[CreditTransaction]:
        def _list() -> list[CreditTransaction]:
            query = (
                self._user_ref(user_id)
                .collection(_TRANSACTIONS)
                .where("type", "==", kind.value)
                .where("reference", "==", reference)
            )
            found = [_transaction_from_document(doc.id, doc.to_dict()) for doc in query.stream()]
            return sorted(found, key=lambda transaction: transaction.timestamp)

        return await self._call("list_transactions_for", user_id, _list)

    async def get_last_grant(self, user_id: str, tier: SubscriptionTier) -> datetime | None:
        def _get() -> datetime | None:
            snapshot = self._user_ref(user_id).get()
            if not snapshot.exists:
                return None
            grants = (snapshot.to_dict() or {}).get(_LAST_GRANTS) or {}
            return grants.get(tier.value)

        return await self._call("get_last_grant", user_id, _get)

    async def set_last_grant(self, user_id: str, tier: SubscriptionTier, granted_at: datetime) -> None:
        await self._call(
            "set_last_grant",
            user_id,
            lambda: self._user_ref(user_id).update({f"{_LAST_GRANTS}.{tier.value}": granted_at}),
        )

    async def set_subscription_tier(self, user_id: str, tier: SubscriptionTier) -> None:
        await self._call(
            "set_subscription_tier",
            user_id,
            lambda: self._user_ref(user_id).update(
                {"subscriptionTier": tier.value, "lastActive": self._firestore.SERVER_TIMESTAMP}
            ),
        )

    async def increment_counters(self, user_id: str, **counters: int) -> None:
        update: dict[str, Any] = {"lastActive": self._firestore.SERVER_TIMESTAMP}
        for name, amount in counters.items():
            if name not in _COUNTER_FIELDS:
                raise ValueError(f"Unknown counter: {name}")
            update[_COUNTER_FIELDS[name]] = self._firestore.Increment(amount)

        await self._call("increment_counters", user_id, lambda: self._user_ref(user_id).update(update))

    async def save_job(self, job: Job) -> None:
        data = job.model_dump(mode="json")
        data["created_at"] = job.created_at
        await self._call(
            "save_job",
            job.user_id,
            lambda: self._user_ref(job.user_id).collection(_JOBS).document(job.id).set(data, merge=True),
        )

    async def get_job(self, user_id: str, job_id: str) -> Job | None:
        def _get() -> Job | None:
            snapshot = self._user_ref(user_id).collection(_JOBS).document(job_id).get()
            if not snapshot.exists:
                return None
            return Job.model_validate(snapshot.to_dict())

        return await self._call("get_job", user_id, _get)

    async def list_jobs(self, user_id: str, *, limit: int = 50) -> list[Job]:
        def _list() -> list[Job]:
            query = (
                self._user_ref(user_id)
                .collection(_JOBS)
                .order_by("created_at", direction=self._firestore.Query.DESCENDING)
                .limit(limit)
            )
            return [Job.model_validate(doc.to_dict()) for doc in query.stream()]

        return await self._call("list_jobs", user_id, _list)

    async def list_jobs_pending_refund(self, user_id: str) -> list[Job]:
        def _list() -> list[Job]:
            query = self._user_ref(user_id).collection(_JOBS).where("refund_pending", "==", True)
            jobs = [Job.model_validate(doc.to_dict()) for doc in query.stream()]
            return [job for job in jobs if job.status.value in _REFUNDABLE_STATUSES]

        return await self._call("list_jobs_pending_refund", user_id, _list)

    def _user_ref(self, user_id: str) -> Any:
        return self._client.collection(_USERS).document(user_id)

    async def _call(self, operation: str, user_id: str, func: Any) -> Any:
        try:
            return await asyncio.to_thread(func)
        except PersistenceError:
            raise
        except Exception as exc:  # provider exception surface
            logger.warning(
                "store.failed backend=firestore operation=%s user_id=%s error=%s",
                operation,
                safe_log_identifier(user_id, prefix="uid"),
                type(exc).__name__,
            )
            raise PersistenceError() from exc


def _transaction_to_document(transaction: CreditTransaction) -> dict[str, Any]:
    return {
        "userId": transaction.user_id,
        "amount": transaction.amount,
        "type": transaction.kind.value,
        "reference": transaction.reference,
        "timestamp": transaction.timestamp,
        "balanceAfter": transaction.balance_after,
        "description": transaction.description,
    }


def _transaction_from_document(doc_id: str, data: dict[str, Any]) -> CreditTransaction:
    return CreditTransaction(
        id=doc_id,
        user_id=data["userId"],
        amount=int(data["amount"]),
        kind=TransactionKind(data["type"]),
        reference=data.get("reference"),
        timestamp=data["timestamp"],
        balance_after=int(data["balanceAfter"]),
        description=data.get("description"),
    )


__all__ = ["FirestoreDocumentStore"]
