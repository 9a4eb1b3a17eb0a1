"""Subtitle job orchestration."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
import logging
import math
from pathlib import Path
from typing import TypeVar
from uuid import uuid4

from autosub.adapters.media.probe import MediaProbe
from autosub.adapters.remote_jobs.base import RemoteJobClient
from autosub.core.config import Settings
from autosub.core.logging_safety import safe_log_identifier
from autosub.domain.catalog import required_credits
from autosub.domain.job_fsm import ensure_transition, is_terminal
from autosub.errors import (
    AutosubError,
    CancelFailed,
    FileTooLarge,
    InsufficientBalance,
    InsufficientCredits,
    InvalidVideo,
    JobAlreadyRunning,
    JobCancelled,
    JobNotFound,
    JobTimeout,
    NoAudioTrack,
    NoResultVideo,
    PersistenceError,
    ProcessingFailed,
    VideoFileNotFound,
    VideoTooLong,
)
from autosub.repositories.base import DocumentStore
from autosub.schemas.job import Job, JobEvent, JobStatus, SubtitleStyle
from autosub.schemas.ledger import TransactionKind
from autosub.schemas.remote import RemoteJobState, RemoteResult
from autosub.services.ledger import CreditLedger

logger = logging.getLogger(__name__)

T = TypeVar("T")
JobListener = Callable[[JobEvent], None]

_PROGRESS: dict[JobStatus, float] = {
    JobStatus.VALIDATING: 0.05,
    JobStatus.CREDITS_RESERVED: 0.1,
    JobStatus.UPLOADING: 0.15,
    JobStatus.QUEUED: 0.3,
    JobStatus.PROCESSING: 0.6,
    JobStatus.DOWNLOADING: 0.9,
    JobStatus.COMPLETED: 1.0,
}

# Finished jobs that were never written to the store (nothing was reserved).
_UNSAVED_JOB_LIMIT = 20


@dataclass(frozen=True, slots=True)
class JobPolicy:
    max_file_size_bytes: int = 100 * 1024 * 1024
    max_duration_seconds: float | None = None
    max_retries: int = 3
    poll_base_interval_seconds: float = 3.0
    poll_backoff_factor: float = 1.5
    poll_max_interval_seconds: float = 10.0
    max_processing_seconds: float = 600.0
    output_dir: Path = Path(".autosub/results")

    @classmethod
    def from_settings(cls, settings: Settings) -> JobPolicy:
        return cls(
            max_file_size_bytes=settings.max_file_size_bytes,
            max_duration_seconds=settings.max_duration_seconds,
            max_retries=settings.max_retries,
            poll_base_interval_seconds=settings.poll_base_interval_seconds,
            poll_backoff_factor=settings.poll_backoff_factor,
            poll_max_interval_seconds=settings.poll_max_interval_seconds,
            max_processing_seconds=settings.max_processing_seconds,
            output_dir=settings.output_dir,
        )

    def next_interval(self, current: float) -> float:
        return min(current * self.poll_backoff_factor, self.poll_max_interval_seconds)


class _CancelRequested(Exception):
    """Raised inside a run once the user asked to cancel it."""


@dataclass(slots=True)
class _ActiveRun:
    job_id: str
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None
    error: AutosubError | None = None

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()


class JobOrchestrator:
    """Drives one user's subtitle jobs, one at a time.

    A run goes validate, reserve credits, upload, submit, poll, download and
    finalize. Credits are debited before any remote work with
    ``reference=job.id`` and every reservation that does not end in a
    completed job is refunded before the error is surfaced. A refund that
    cannot be issued leaves ``refund_pending`` set on the persisted job for
    ``retry_pending_refunds``.
    """

    def __init__(
        self,
        user_id: str,
        ledger: CreditLedger,
        remote: RemoteJobClient,
        probe: MediaProbe,
        store: DocumentStore,
        *,
        policy: JobPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._user_id = user_id
        self._ledger = ledger
        self._remote = remote
        self._probe = probe
        self._store = store
        self._policy = policy or JobPolicy()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._jobs: dict[str, Job] = {}
        self._unpersisted: set[str] = set()
        self._unsaved: deque[str] = deque()
        self._active: _ActiveRun | None = None
        self._listeners: list[JobListener] = []
        self._log_user = safe_log_identifier(user_id, prefix="uid")

    @property
    def policy(self) -> JobPolicy:
        return self._policy

    @property
    def active_job(self) -> Job | None:
        if self._active is None or not self._active.running:
            return None
        return self._jobs[self._active.job_id].model_copy(deep=True)

    def subscribe(self, listener: JobListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def start(self, video_path: str | Path, style: SubtitleStyle | None = None) -> Job:
        """Schedule a job in the background and return its initial snapshot."""
        if self._active is not None and self._active.running:
            raise JobAlreadyRunning(self._active.job_id)

        path = Path(video_path)
        job = Job(
            id=str(uuid4()),
            user_id=self._user_id,
            local_video_path=str(path),
            file_name=path.name,
            created_at=self._clock(),
            max_retries=self._policy.max_retries,
            style=style or SubtitleStyle(),
        )
        self._jobs[job.id] = job
        run = _ActiveRun(job_id=job.id)
        self._active = run
        run.task = asyncio.create_task(self._run(job, run), name=f"autosub-job-{job.id}")
        logger.info(
            "job.started user_id=%s job_id=%s",
            self._log_user,
            safe_log_identifier(job.id, prefix="job"),
        )
        return job.model_copy(deep=True)

    async def submit(self, video_path: str | Path, style: SubtitleStyle | None = None) -> Job:
        """Run a job to the end; raise the error that terminated it, if any."""
        job = await self.start(video_path, style)
        return await self.wait(job.id)

    async def wait(self, job_id: str) -> Job:
        run = self._active
        if run is None or run.job_id != job_id or run.task is None:
            return await self.get_job(job_id)
        job = await asyncio.shield(run.task)
        if run.error is not None:
            raise run.error
        return job.model_copy(deep=True)

    async def cancel(self, job_id: str) -> Job:
        """Cancel a running job and return its final snapshot; no-op once terminal."""
        job = await self.get_job(job_id)
        run = self._active
        if run is None or run.job_id != job_id or not run.running:
            return job

        logger.info(
            "job.cancel_requested user_id=%s job_id=%s status=%s",
            self._log_user,
            safe_log_identifier(job_id, prefix="job"),
            job.status.value,
        )
        run.cancel_event.set()
        final = await asyncio.shield(run.task)
        return final.model_copy(deep=True)

    async def get_job(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is not None:
            return job.model_copy(deep=True)
        stored = await self._store.get_job(self._user_id, job_id)
        if stored is None:
            raise JobNotFound()
        return stored

    async def list_jobs(self, limit: int = 50) -> list[Job]:
        stored = {job.id: job for job in await self._store.list_jobs(self._user_id, limit=limit)}
        for job in self._jobs.values():
            stored[job.id] = job.model_copy(deep=True)
        jobs = sorted(stored.values(), key=lambda job: job.created_at, reverse=True)
        return jobs[:limit]

    async def flush_unpersisted(self) -> int:
        """Retry job writes that failed earlier; return how many are still pending."""
        for job_id in sorted(self._unpersisted):
            job = self._jobs[job_id]
            await self._persist(job)
            if not self._is_running(job_id):
                self._release(job)
        return len(self._unpersisted)

    async def retry_pending_refunds(self) -> int:
        """Issue refunds that failed in-line and move those jobs to ``refunded``.

        The stored job can lag behind the ledger (a refund went through but the
        job write that followed did not), so the refunds already recorded under
        the job id are counted first and only the remainder is refunded.

        Returns the number of jobs refunded by this pass.
        """
        candidates = {job.id: job for job in await self._store.list_jobs_pending_refund(self._user_id)}
        for job_id in list(candidates):
            if job_id in self._jobs:
                candidates[job_id] = self._jobs[job_id]
        for job in self._jobs.values():
            if job.refund_pending and is_terminal(job.status):
                candidates[job.id] = job
        if self._active is not None and self._active.running:
            candidates.pop(self._active.job_id, None)

        refunded = 0
        for job in candidates.values():
            if not job.refund_pending or not is_terminal(job.status):
                continue
            self._jobs[job.id] = job
            try:
                recorded = await self._ledger.total_for(TransactionKind.REFUND, job.id)
            except PersistenceError as exc:
                logger.warning(
                    "job.refund_check_deferred job_id=%s error=%s",
                    safe_log_identifier(job.id, prefix="job"),
                    exc.code,
                )
                continue
            if recorded > job.credits_refunded:
                logger.info(
                    "job.refund_already_recorded job_id=%s recorded=%s stored=%s",
                    safe_log_identifier(job.id, prefix="job"),
                    recorded,
                    job.credits_refunded,
                )
                job.credits_refunded = min(recorded, job.credits_reserved)
            if not await self._refund(job):
                continue
            ensure_transition(job.status, JobStatus.REFUNDED)
            job.status = JobStatus.REFUNDED
            self._notify(job, "Credits refunded")
            await self._persist(job)
            self._release(job)
            refunded += 1
        return refunded

    async def aclose(self) -> None:
        """Cancel the running job, if any, and wait for it to settle."""
        run = self._active
        if run is not None and run.running:
            run.cancel_event.set()
            await asyncio.shield(run.task)

    async def _run(self, job: Job, run: _ActiveRun) -> Job:
        try:
            return await self._drive(job, run)
        finally:
            self._release(job)

    async def _drive(self, job: Job, run: _ActiveRun) -> Job:
        while True:
            try:
                await self._attempt(job, run)
                return job
            except _CancelRequested:
                await self._finish_cancelled(job, JobCancelled(), cancel_remote=True)
                run.error = JobCancelled()
                return job
            except JobCancelled as exc:
                await self._finish_cancelled(job, exc, cancel_remote=False)
                run.error = exc
                return job
            except AutosubError as exc:
                await self._finish_failed(job, exc)
                if exc.retryable and job.can_retry and not run.cancel_event.is_set():
                    job.retry_count += 1
                    logger.info(
                        "job.retrying job_id=%s retry_count=%s max_retries=%s error=%s",
                        safe_log_identifier(job.id, prefix="job"),
                        job.retry_count,
                        job.max_retries,
                        exc.code,
                    )
                    self._notify(job, "Retrying...")
                    continue
                run.error = exc
                return job
            except Exception:
                logger.exception(
                    "job.crashed user_id=%s job_id=%s status=%s",
                    self._log_user,
                    safe_log_identifier(job.id, prefix="job"),
                    job.status.value,
                )
                error = ProcessingFailed("Unexpected processing error")
                await self._finish_failed(job, error)
                run.error = error
                return job

    async def _attempt(self, job: Job, run: _ActiveRun) -> None:
        job.error_code = None
        job.error_message = None
        job.completed_at = None
        job.remote_request_id = None
        self._transition(job, JobStatus.VALIDATING, "Validating video...")
        await self._validate(job, run)
        self._checkpoint(run)

        await self._reserve(job)
        self._checkpoint(run)

        self._transition(job, JobStatus.UPLOADING, "Uploading video...")
        video_url = await self._interruptible(self._remote.upload(Path(job.local_video_path)), run)

        self._transition(job, JobStatus.QUEUED, "Submitting request...")
        job.remote_request_id = await self._interruptible(self._remote.submit(video_url, job.style), run)
        job.started_at = self._clock()
        self._notify(job, "Request submitted")

        result = await self._poll(job, run)

        self._transition(job, JobStatus.DOWNLOADING, "Downloading result...")
        result_url = result.result_url
        if not result_url:
            raise NoResultVideo()
        destination = self._policy.output_dir / f"subtitle_{uuid4().hex}.mp4"
        await self._interruptible(self._remote.download(result_url, destination), run)
        self._checkpoint(run)

        job.result_url = result_url
        job.local_result_path = str(destination)
        job.transcription = result.transcription
        job.subtitle_count = result.subtitle_count
        job.completed_at = self._clock()
        self._transition(job, JobStatus.COMPLETED, "Completed!")
        await self._count_completion(job)
        await self._persist(job)
        logger.info(
            "job.completed user_id=%s job_id=%s credits=%s retry_count=%s",
            self._log_user,
            safe_log_identifier(job.id, prefix="job"),
            job.outstanding_credits,
            job.retry_count,
        )

    async def _validate(self, job: Job, run: _ActiveRun) -> None:
        path = Path(job.local_video_path)
        try:
            stat = path.stat()
        except FileNotFoundError as exc:
            raise VideoFileNotFound() from exc
        except OSError as exc:
            raise InvalidVideo("Could not read the video file") from exc
        if not path.is_file():
            raise VideoFileNotFound()

        if stat.st_size > self._policy.max_file_size_bytes:
            raise FileTooLarge(size=stat.st_size, max_size=self._policy.max_file_size_bytes)

        info = await self._interruptible(self._probe.probe(path), run)
        duration = info.duration_seconds
        if not math.isfinite(duration) or duration <= 0:
            raise InvalidVideo()
        if not info.has_audio:
            raise NoAudioTrack()
        max_duration = self._policy.max_duration_seconds
        if max_duration is not None and duration > max_duration:
            raise VideoTooLong(duration_seconds=duration, max_duration_seconds=max_duration)

        job.size_bytes = stat.st_size
        job.duration_seconds = duration

    async def _reserve(self, job: Job) -> None:
        required = required_credits(job.duration_seconds)
        available = await self._ledger.balance()
        if required > available:
            raise InsufficientCredits(required=required, available=available)

        try:
            await self._ledger.debit(
                required,
                TransactionKind.DEDUCTION,
                reference=job.id,
                description=f"Video processing: {job.file_name}",
            )
        except InsufficientBalance as exc:
            raise InsufficientCredits(required=exc.required, available=exc.available) from exc

        job.credits_reserved += required
        self._transition(job, JobStatus.CREDITS_RESERVED, f"Reserved {required} credits")

    async def _poll(self, job: Job, run: _ActiveRun) -> RemoteResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._policy.max_processing_seconds
        interval = self._policy.poll_base_interval_seconds
        request_id = job.remote_request_id

        while True:
            self._checkpoint(run)
            if loop.time() >= deadline:
                logger.warning(
                    "job.timeout job_id=%s max_processing_seconds=%s",
                    safe_log_identifier(job.id, prefix="job"),
                    self._policy.max_processing_seconds,
                )
                await self._cancel_remote(job)
                raise JobTimeout()

            status = await self._interruptible(self._remote.status(request_id), run)
            state = status.state
            if state is RemoteJobState.COMPLETED:
                return await self._interruptible(self._remote.result(request_id), run)
            if state is RemoteJobState.FAILED:
                raise ProcessingFailed()
            if state is RemoteJobState.CANCELLED:
                raise JobCancelled()
            if state is RemoteJobState.IN_QUEUE:
                self._transition(job, JobStatus.QUEUED, "In queue...")
            elif state is RemoteJobState.IN_PROGRESS:
                self._transition(job, JobStatus.PROCESSING, "Processing...")

            remaining = deadline - loop.time()
            if remaining > 0:
                await self._sleep(min(interval, remaining), run)
            interval = self._policy.next_interval(interval)

    async def _finish_failed(self, job: Job, error: AutosubError) -> None:
        job.error_code = error.code
        job.error_message = error.message
        job.completed_at = self._clock()
        self._transition(job, JobStatus.FAILED, error.message)
        logger.warning(
            "job.failed user_id=%s job_id=%s error=%s category=%s retry_count=%s",
            self._log_user,
            safe_log_identifier(job.id, prefix="job"),
            error.code,
            error.category.value,
            job.retry_count,
        )
        await self._refund(job)
        if job.credits_reserved > 0:
            await self._persist(job)

    async def _finish_cancelled(self, job: Job, error: JobCancelled, *, cancel_remote: bool) -> None:
        if cancel_remote:
            await self._cancel_remote(job)
        job.error_code = error.code
        job.error_message = error.message
        job.completed_at = self._clock()
        self._transition(job, JobStatus.CANCELLED, error.message)
        logger.info(
            "job.cancelled user_id=%s job_id=%s by_user=%s",
            self._log_user,
            safe_log_identifier(job.id, prefix="job"),
            cancel_remote,
        )
        await self._refund(job)
        if job.credits_reserved > 0:
            await self._persist(job)

    async def _refund(self, job: Job) -> bool:
        outstanding = job.outstanding_credits
        if outstanding <= 0:
            job.refund_pending = False
            return True
        try:
            await self._ledger.refund(
                outstanding,
                reference=job.id,
                description=f"Refund for failed video: {job.file_name}",
            )
        except (AutosubError, OSError) as exc:
            job.refund_pending = True
            logger.error(
                "job.refund_failed user_id=%s job_id=%s credits=%s error=%s",
                self._log_user,
                safe_log_identifier(job.id, prefix="job"),
                outstanding,
                getattr(exc, "code", type(exc).__name__),
            )
            return False
        job.credits_refunded += outstanding
        job.refund_pending = False
        return True

    async def _cancel_remote(self, job: Job) -> None:
        if not job.remote_request_id:
            return
        try:
            await self._remote.cancel(job.remote_request_id)
        except CancelFailed as exc:
            logger.warning(
                "job.remote_cancel_failed job_id=%s reason=%s",
                safe_log_identifier(job.id, prefix="job"),
                exc.reason,
            )

    async def _persist(self, job: Job) -> None:
        try:
            await self._store.save_job(job)
        except PersistenceError as exc:
            self._unpersisted.add(job.id)
            logger.warning(
                "job.persist_deferred job_id=%s status=%s error=%s",
                safe_log_identifier(job.id, prefix="job"),
                job.status.value,
                exc.code,
            )
            return
        self._unpersisted.discard(job.id)

    def _is_running(self, job_id: str) -> bool:
        return self._active is not None and self._active.job_id == job_id and self._active.running

    def _release(self, job: Job) -> None:
        """Drop a finished job from memory once the store holds it."""
        if not is_terminal(job.status) or job.refund_pending or job.id in self._unpersisted:
            return
        if job.credits_reserved > 0:
            self._jobs.pop(job.id, None)
            return
        self._unsaved.append(job.id)
        while len(self._unsaved) > _UNSAVED_JOB_LIMIT:
            self._jobs.pop(self._unsaved.popleft(), None)

    async def _count_completion(self, job: Job) -> None:
        try:
            await self._store.increment_counters(
                self._user_id,
                total_videos_processed=1,
                total_credits_used=job.outstanding_credits,
            )
        except PersistenceError as exc:
            logger.warning("job.counter_failed user_id=%s error=%s", self._log_user, exc.code)

    def _transition(self, job: Job, status: JobStatus, message: str) -> None:
        ensure_transition(job.status, status)
        job.status = status
        self._notify(job, message)

    def _notify(self, job: Job, message: str) -> None:
        event = JobEvent(job=job.model_copy(deep=True), message=message, progress=_PROGRESS.get(job.status, 0.0))
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("job.listener_failed job_id=%s", safe_log_identifier(job.id, prefix="job"))

    @staticmethod
    def _checkpoint(run: _ActiveRun) -> None:
        if run.cancel_event.is_set():
            raise _CancelRequested()

    @staticmethod
    async def _sleep(seconds: float, run: _ActiveRun) -> None:
        try:
            await asyncio.wait_for(run.cancel_event.wait(), timeout=seconds)
        except TimeoutError:
            return
        raise _CancelRequested()

    @staticmethod
    async def _interruptible(awaitable: Awaitable[T], run: _ActiveRun) -> T:
        """Await a remote call, abandoning it as soon as cancellation is requested."""
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(run.cancel_event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work in done:
            return work.result()
        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        raise _CancelRequested()


__all__ = ["JobListener", "JobOrchestrator", "JobPolicy"]
