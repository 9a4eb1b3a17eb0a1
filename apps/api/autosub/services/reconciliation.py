"""Background repair of deferred ledger writes, job records and refunds."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging

from autosub.core.logging_safety import safe_log_identifier
from autosub.errors import AutosubError
from autosub.services.ledger import CreditLedger
from autosub.services.orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    pending_transactions: int
    pending_jobs: int
    refunded_jobs: int


class Reconciler:
    def __init__(self, ledger: CreditLedger, orchestrator: JobOrchestrator) -> None:
        self._ledger = ledger
        self._orchestrator = orchestrator
        self._log_user = safe_log_identifier(ledger.user_id, prefix="uid")

    async def run_once(self) -> ReconcileResult:
        """Push unsynced transactions first so refunds land on an up-to-date balance."""
        pending_transactions = await self._ledger.sync_pending()
        pending_jobs = await self._orchestrator.flush_unpersisted()
        refunded_jobs = await self._orchestrator.retry_pending_refunds()
        if pending_transactions or pending_jobs or refunded_jobs:
            logger.info(
                "reconcile.pass user_id=%s pending_transactions=%s pending_jobs=%s refunded_jobs=%s",
                self._log_user,
                pending_transactions,
                pending_jobs,
                refunded_jobs,
            )
        return ReconcileResult(pending_transactions, pending_jobs, refunded_jobs)

    async def run_forever(self, interval_seconds: float, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await self.run_once()
            except AutosubError as exc:
                logger.warning("reconcile.failed user_id=%s error=%s", self._log_user, exc.code)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            except TimeoutError:
                continue


__all__ = ["ReconcileResult", "Reconciler"]
