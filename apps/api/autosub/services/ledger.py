"""Credit ledger service."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
import logging
from uuid import uuid4

from autosub.core.logging_safety import safe_log_identifier
from autosub.domain.catalog import required_credits
from autosub.errors import InsufficientBalance, InvalidAmount, NotAuthenticated, PersistenceError
from autosub.repositories.base import DocumentStore, LocalCache
from autosub.schemas.ledger import CreditTransaction, TransactionKind

logger = logging.getLogger(__name__)

TransactionListener = Callable[[CreditTransaction], None]

_SIGNUP_BONUS_DESCRIPTION = "Welcome credits"


class CreditLedger:
    """Authoritative in-process view of one user's credit balance.

    Every mutation runs under a single lock: the new balance and the pending
    transaction are written to the local cache, then pushed to the document
    store. A store failure leaves the transaction queued as unsynced (the queue
    is mirrored in the local cache too) and it is replayed, in order, by the
    next mutation or by ``sync_pending``.
    """

    def __init__(
        self,
        user_id: str,
        store: DocumentStore,
        cache: LocalCache,
        *,
        signup_bonus_credits: int = 0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if not user_id:
            raise NotAuthenticated()
        self._user_id = user_id
        self._store = store
        self._cache = cache
        self._signup_bonus_credits = signup_bonus_credits
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = asyncio.Lock()
        self._balance: int | None = None
        self._unsynced: list[CreditTransaction] = []
        self._account_confirmed = False
        self._last_timestamp: datetime | None = None
        self._listeners: list[TransactionListener] = []
        self._log_user = safe_log_identifier(user_id, prefix="uid")

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def pending_sync_count(self) -> int:
        return len(self._unsynced)

    @staticmethod
    def required_credits(duration_seconds: float) -> int:
        return required_credits(duration_seconds)

    async def balance(self) -> int:
        if self._balance is not None:
            return self._balance
        return await self.load()

    async def has_sufficient_credits(self, duration_seconds: float) -> bool:
        return await self.balance() >= self.required_credits(duration_seconds)

    async def load(self) -> int:
        async with self._lock:
            return await self._ensure_loaded()

    async def credit(
        self,
        amount: int,
        kind: TransactionKind,
        reference: str | None = None,
        description: str | None = None,
    ) -> CreditTransaction:
        if amount <= 0:
            raise InvalidAmount(amount)
        async with self._lock:
            await self._ensure_loaded()
            return await self._apply(amount, kind, reference, description)

    async def debit(
        self,
        amount: int,
        kind: TransactionKind = TransactionKind.DEDUCTION,
        reference: str | None = None,
        description: str | None = None,
    ) -> CreditTransaction:
        if amount <= 0:
            raise InvalidAmount(amount)
        async with self._lock:
            balance = await self._ensure_loaded()
            if amount > balance:
                logger.info(
                    "ledger.debit_rejected user_id=%s required=%s available=%s",
                    self._log_user,
                    amount,
                    balance,
                )
                raise InsufficientBalance(required=amount, available=balance)
            return await self._apply(-amount, kind, reference, description)

    async def refund(
        self,
        amount: int,
        reference: str | None = None,
        description: str | None = None,
    ) -> CreditTransaction:
        return await self.credit(amount, TransactionKind.REFUND, reference, description)

    async def find_transaction(self, kind: TransactionKind, reference: str) -> CreditTransaction | None:
        for transaction in self._unsynced:
            if transaction.kind == kind and transaction.reference == reference:
                return transaction
        return await self._store.find_transaction(self._user_id, kind=kind, reference=reference)

    async def total_for(self, kind: TransactionKind, reference: str) -> int:
        """Sum every ``kind`` transaction carrying ``reference``, pushed or not."""
        async with self._lock:
            await self._ensure_loaded()
            unsynced = list(self._unsynced)
        stored = await self._store.list_transactions_for(self._user_id, kind=kind, reference=reference)
        seen = {transaction.id: transaction for transaction in stored}
        for transaction in unsynced:
            if transaction.kind == kind and transaction.reference == reference:
                seen[transaction.id] = transaction
        return sum(transaction.amount for transaction in seen.values())

    async def transactions(self, limit: int = 50) -> list[CreditTransaction]:
        """Return the newest transactions, including ones not yet pushed to the store."""
        remote = await self._store.list_transactions(self._user_id, limit=limit)
        remote_ids = {transaction.id for transaction in remote}
        merged = remote + [transaction for transaction in self._unsynced if transaction.id not in remote_ids]
        merged.sort(key=lambda transaction: transaction.timestamp, reverse=True)
        return merged[:limit]

    async def sync_pending(self) -> int:
        """Replay unsynced transactions; return how many are still pending."""
        async with self._lock:
            await self._ensure_loaded()
            await self._flush_unsynced()
            return len(self._unsynced)

    async def refresh(self) -> int:
        """Adopt the store's balance once nothing local is waiting to be pushed."""
        async with self._lock:
            await self._ensure_loaded()
            await self._flush_unsynced()
            if self._unsynced:
                return self._balance
            remote = await self._store.get_balance(self._user_id)
            if remote is not None and remote != self._balance:
                logger.info(
                    "ledger.refreshed user_id=%s local=%s remote=%s",
                    self._log_user,
                    self._balance,
                    remote,
                )
                self._balance = remote
                self._cache.set(self._balance_key, remote)
            return self._balance

    def subscribe(self, listener: TransactionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    @property
    def _balance_key(self) -> str:
        return f"ledger:{self._user_id}:balance"

    @property
    def _unsynced_key(self) -> str:
        return f"ledger:{self._user_id}:unsynced"

    async def _ensure_loaded(self) -> int:
        if self._balance is not None:
            return self._balance

        cached_balance = self._cache.get(self._balance_key)
        cached_unsynced = self._cache.get(self._unsynced_key) or []
        self._unsynced = [CreditTransaction.model_validate(item) for item in cached_unsynced]

        try:
            remote_balance, created = await self._store.ensure_user(self._user_id)
        except PersistenceError:
            if cached_balance is None:
                raise
            logger.warning("ledger.load_offline user_id=%s balance=%s", self._log_user, cached_balance)
            self._balance = int(cached_balance)
            return self._balance

        self._account_confirmed = True
        if self._unsynced and cached_balance is not None:
            self._balance = int(cached_balance)
        else:
            self._balance = remote_balance
            self._cache.set(self._balance_key, remote_balance)
        logger.info(
            "ledger.loaded user_id=%s balance=%s pending_sync=%s",
            self._log_user,
            self._balance,
            len(self._unsynced),
        )

        if created and self._signup_bonus_credits > 0:
            await self._apply(
                self._signup_bonus_credits,
                TransactionKind.BONUS,
                None,
                _SIGNUP_BONUS_DESCRIPTION,
            )
        return self._balance

    async def _apply(
        self,
        amount: int,
        kind: TransactionKind,
        reference: str | None,
        description: str | None,
    ) -> CreditTransaction:
        new_balance = self._balance + amount
        transaction = CreditTransaction(
            id=str(uuid4()),
            user_id=self._user_id,
            amount=amount,
            kind=kind,
            reference=reference,
            timestamp=self._next_timestamp(),
            balance_after=new_balance,
            description=description,
        )

        # Local cache first: if it cannot be written nothing has changed yet.
        self._write_local(new_balance, self._unsynced + [transaction])
        self._balance = new_balance
        self._unsynced.append(transaction)
        logger.info(
            "ledger.applied user_id=%s kind=%s amount=%s balance_after=%s reference=%s",
            self._log_user,
            kind.value,
            amount,
            new_balance,
            safe_log_identifier(reference, prefix="ref"),
        )

        await self._flush_unsynced()
        self._notify(transaction)
        return transaction

    async def _flush_unsynced(self) -> None:
        if self._unsynced and not self._account_confirmed:
            try:
                await self._store.ensure_user(self._user_id)
            except PersistenceError:
                logger.warning("ledger.sync_deferred user_id=%s reason=account_unreachable", self._log_user)
                return
            self._account_confirmed = True

        while self._unsynced:
            transaction = self._unsynced[0]
            try:
                await self._store.record_transaction(transaction)
            except PersistenceError as exc:
                logger.warning(
                    "ledger.sync_deferred user_id=%s transaction_id=%s pending=%s error=%s",
                    self._log_user,
                    safe_log_identifier(transaction.id, prefix="txn"),
                    len(self._unsynced),
                    exc.code,
                )
                return
            self._unsynced.pop(0)
            self._write_local(self._balance, self._unsynced)

    def _write_local(self, balance: int, unsynced: list[CreditTransaction]) -> None:
        self._cache.set(self._balance_key, balance)
        self._cache.set(self._unsynced_key, [item.model_dump(mode="json") for item in unsynced])

    def _next_timestamp(self) -> datetime:
        now = self._clock()
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    def _notify(self, transaction: CreditTransaction) -> None:
        for listener in list(self._listeners):
            try:
                listener(transaction)
            except Exception:
                logger.exception("ledger.listener_failed user_id=%s", self._log_user)


__all__ = ["CreditLedger", "TransactionListener"]
