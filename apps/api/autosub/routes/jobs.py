"""Job routes."""

from pathlib import Path as FilePath
from typing import Annotated

from fastapi import APIRouter, Depends, Path, Query, status

from autosub.core.config import Settings
from autosub.errors import VideoPathNotAllowed
from autosub.routes.dependencies import get_app_settings, get_orchestrator
from autosub.schemas.error import ErrorResponse, JobConflictError, NoLeakNotFoundError
from autosub.schemas.job import Job, JobList, SubmitJobRequest
from autosub.services.orchestrator import JobOrchestrator

router = APIRouter(prefix="/jobs", tags=["Jobs"])


def resolve_upload(video_path: str, upload_dir: FilePath) -> FilePath:
    """Map a client path onto the upload directory; anything resolving outside it is refused."""
    root = upload_dir.resolve()
    candidate = (root / video_path).resolve()
    if not candidate.is_relative_to(root) or candidate == root:
        raise VideoPathNotAllowed()
    return candidate


@router.post(
    "",
    response_model=Job,
    status_code=status.HTTP_202_ACCEPTED,
    responses={401: {"model": ErrorResponse}, 409: {"model": JobConflictError}},
)
async def submit_job(
    payload: SubmitJobRequest,
    orchestrator: Annotated[JobOrchestrator, Depends(get_orchestrator)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> Job:
    video = resolve_upload(payload.video_path, settings.upload_dir)
    return await orchestrator.start(video, payload.style)


@router.get(
    "",
    response_model=JobList,
    responses={401: {"model": ErrorResponse}},
)
async def list_jobs(
    orchestrator: Annotated[JobOrchestrator, Depends(get_orchestrator)],
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> JobList:
    return JobList(items=await orchestrator.list_jobs(limit))


@router.get(
    "/{jobId}",
    response_model=Job,
    responses={401: {"model": ErrorResponse}, 404: {"model": NoLeakNotFoundError}},
)
async def get_job(
    job_id: Annotated[str, Path(alias="jobId")],
    orchestrator: Annotated[JobOrchestrator, Depends(get_orchestrator)],
) -> Job:
    return await orchestrator.get_job(job_id)


@router.post(
    "/{jobId}/cancel",
    response_model=Job,
    responses={401: {"model": ErrorResponse}, 404: {"model": NoLeakNotFoundError}},
)
async def cancel_job(
    job_id: Annotated[str, Path(alias="jobId")],
    orchestrator: Annotated[JobOrchestrator, Depends(get_orchestrator)],
) -> Job:
    return await orchestrator.cancel(job_id)
