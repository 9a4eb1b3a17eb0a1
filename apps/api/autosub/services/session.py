"""Per-user service wiring."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging

from autosub.adapters.billing import BillingProvider, RevenueCatBillingProvider, StaticBillingProvider
from autosub.adapters.media import FfprobeMediaProbe, MediaProbe
from autosub.adapters.remote_jobs import FalRemoteJobClient, RemoteJobClient
from autosub.core.config import Settings
from autosub.core.logging_safety import safe_log_identifier
from autosub.errors import AutosubError, NotAuthenticated
from autosub.repositories.base import DocumentStore, LocalCache
from autosub.repositories.local_cache import EncryptedFileCache
from autosub.repositories.memory import InMemoryDocumentStore, InMemoryLocalCache
from autosub.services.ledger import CreditLedger
from autosub.services.orchestrator import JobOrchestrator, JobPolicy
from autosub.services.reconciliation import Reconciler
from autosub.services.settlement import PurchaseSettlement

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class UserSession:
    """Ledger, orchestrator and settlement of one signed-in user.

    The three services share the same ``CreditLedger`` so every balance change
    from jobs and purchases goes through one lock.
    """

    user_id: str
    ledger: CreditLedger
    orchestrator: JobOrchestrator
    settlement: PurchaseSettlement
    reconciler: Reconciler
    reconcile_interval_seconds: float = 30.0
    _stop: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)
    _task: asyncio.Task | None = field(default=None, init=False, repr=False)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stop.clear()
            self._task = asyncio.create_task(
                self.reconciler.run_forever(self.reconcile_interval_seconds, self._stop),
                name=f"autosub-reconcile-{safe_log_identifier(self.user_id, prefix='uid')}",
            )

    async def stop(self) -> None:
        await self.orchestrator.aclose()
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
        try:
            await self.reconciler.run_once()
        except AutosubError as exc:
            logger.warning(
                "session.final_reconcile_failed user_id=%s error=%s",
                safe_log_identifier(self.user_id, prefix="uid"),
                exc.code,
            )


class SessionRegistry:
    def __init__(
        self,
        settings: Settings,
        *,
        store: DocumentStore,
        cache: LocalCache,
        remote: RemoteJobClient,
        billing: BillingProvider,
        probe: MediaProbe,
    ) -> None:
        self._settings = settings
        self.store = store
        self.cache = cache
        self.remote = remote
        self.billing = billing
        self.probe = probe
        self._sessions: dict[str, UserSession] = {}

    def get(self, user_id: str) -> UserSession:
        if not user_id:
            raise NotAuthenticated()
        session = self._sessions.get(user_id)
        if session is None:
            session = self._build(user_id)
            self._sessions[user_id] = session
            session.start()
            logger.info("session.opened user_id=%s", safe_log_identifier(user_id, prefix="uid"))
        return session

    async def aclose(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.stop()
        await self.remote.aclose()
        await self.billing.aclose()
        logger.info("session.registry_closed sessions=%s", len(sessions))

    def _build(self, user_id: str) -> UserSession:
        settings = self._settings
        ledger = CreditLedger(
            user_id,
            self.store,
            self.cache,
            signup_bonus_credits=settings.signup_bonus_credits,
        )
        orchestrator = JobOrchestrator(
            user_id,
            ledger,
            self.remote,
            self.probe,
            self.store,
            policy=JobPolicy.from_settings(settings),
        )
        settlement = PurchaseSettlement(
            user_id,
            ledger,
            self.billing,
            self.store,
            self.cache,
            grant_window_days=settings.subscription_grant_window_days,
        )
        return UserSession(
            user_id=user_id,
            ledger=ledger,
            orchestrator=orchestrator,
            settlement=settlement,
            reconciler=Reconciler(ledger, orchestrator),
            reconcile_interval_seconds=settings.reconcile_interval_seconds,
        )


def build_store(settings: Settings) -> DocumentStore:
    if settings.store_backend == "firestore":
        from autosub.repositories.firestore import FirestoreDocumentStore

        return FirestoreDocumentStore()
    return InMemoryDocumentStore()


def build_cache(settings: Settings) -> LocalCache:
    if settings.cache_encryption_key:
        return EncryptedFileCache(settings.cache_dir, settings.cache_encryption_key)
    logger.warning("cache.volatile reason=missing_encryption_key")
    return InMemoryLocalCache()


def build_billing(settings: Settings) -> BillingProvider:
    if settings.billing_provider == "revenuecat":
        return RevenueCatBillingProvider(
            api_key=settings.revenuecat_api_key or "",
            base_url=settings.revenuecat_base_url,
            timeout_seconds=settings.request_timeout_seconds,
        )
    return StaticBillingProvider()


def build_registry(settings: Settings) -> SessionRegistry:
    return SessionRegistry(
        settings,
        store=build_store(settings),
        cache=build_cache(settings),
        remote=FalRemoteJobClient(
            api_key=settings.remote_job_api_key,
            base_url=settings.remote_job_base_url,
            endpoint=settings.remote_job_endpoint,
            timeout_seconds=settings.request_timeout_seconds,
            download_timeout_seconds=settings.download_timeout_seconds,
        ),
        billing=build_billing(settings),
        probe=FfprobeMediaProbe(timeout_seconds=settings.probe_timeout_seconds),
    )


__all__ = [
    "SessionRegistry",
    "UserSession",
    "build_billing",
    "build_cache",
    "build_registry",
    "build_store",
]
