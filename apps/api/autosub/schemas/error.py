"""API error response schemas."""

from typing import Any
from typing import Literal

from pydantic import BaseModel

from autosub.schemas.job import JobStatus


class ErrorResponse(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class NoLeakNotFoundError(BaseModel):
    code: Literal["RESOURCE_NOT_FOUND"]
    message: str


class JobConflictErrorDetails(BaseModel):
    active_job_id: str | None = None
    current_status: JobStatus | None = None
    attempted_status: JobStatus | None = None


class JobConflictError(BaseModel):
    code: Literal["JOB_ALREADY_RUNNING", "FSM_TRANSITION_INVALID", "FSM_TERMINAL_IMMUTABLE"]
    message: str
    details: JobConflictErrorDetails | None = None


class UpstreamError(BaseModel):
    code: str
    message: str
