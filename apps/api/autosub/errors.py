"""Application exception types."""

from __future__ import annotations

from enum import Enum
from typing import Any

from autosub.schemas.error import ErrorResponse


class ApiError(Exception):
    """Structured API error that maps directly to contract error payloads."""

    def __init__(self, status_code: int, code: str, message: str, details: dict | None = None) -> None:
        self.status_code = status_code
        self.payload = ErrorResponse(code=code, message=message, details=details)
        super().__init__(message)


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    INSUFFICIENT_RESOURCE = "insufficient_resource"
    TRANSIENT_REMOTE = "transient_remote"
    TERMINAL_REMOTE = "terminal_remote"
    PERSISTENCE = "persistence"
    CONFLICT = "conflict"


class AutosubError(Exception):
    """Base for domain errors.

    Subclasses pin ``code`` and ``category`` and keep their structured fields as
    attributes so callers never have to parse the message.
    """

    code = "INTERNAL_ERROR"
    category = ErrorCategory.TERMINAL_REMOTE
    default_message = "Something went wrong"

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.category is ErrorCategory.TRANSIENT_REMOTE

    def to_payload(self) -> ErrorResponse:
        return ErrorResponse(code=self.code, message=self.message, details=self.details or None)


# Validation


class InvalidAmount(AutosubError):
    code = "INVALID_AMOUNT"
    category = ErrorCategory.VALIDATION
    default_message = "Invalid credit amount"

    def __init__(self, amount: int) -> None:
        self.amount = amount
        super().__init__(amount=amount)


class VideoFileNotFound(AutosubError):
    code = "VIDEO_FILE_NOT_FOUND"
    category = ErrorCategory.VALIDATION
    default_message = "Video file not found"


class VideoPathNotAllowed(AutosubError):
    code = "VIDEO_PATH_NOT_ALLOWED"
    category = ErrorCategory.VALIDATION
    default_message = "Video must be uploaded to the upload directory first"


class InvalidVideo(AutosubError):
    code = "INVALID_VIDEO"
    category = ErrorCategory.VALIDATION
    default_message = "Invalid video file"


class NoAudioTrack(AutosubError):
    code = "NO_AUDIO_TRACK"
    category = ErrorCategory.VALIDATION
    default_message = "Video has no audio track"


class FileTooLarge(AutosubError):
    code = "FILE_TOO_LARGE"
    category = ErrorCategory.VALIDATION

    def __init__(self, size: int, max_size: int) -> None:
        self.size = size
        self.max_size = max_size
        size_mb = size / (1024 * 1024)
        max_mb = max_size / (1024 * 1024)
        super().__init__(
            f"File too large ({size_mb:.1f} MB). Maximum size is {max_mb:.0f} MB",
            size=size,
            max_size=max_size,
        )


class VideoTooLong(AutosubError):
    code = "VIDEO_TOO_LONG"
    category = ErrorCategory.VALIDATION

    def __init__(self, duration_seconds: float, max_duration_seconds: float) -> None:
        self.duration_seconds = duration_seconds
        self.max_duration_seconds = max_duration_seconds
        super().__init__(
            f"Video is too long ({duration_seconds:.0f}s). Maximum length is {max_duration_seconds:.0f}s",
            duration_seconds=duration_seconds,
            max_duration_seconds=max_duration_seconds,
        )


# Authorization


class NotAuthenticated(AutosubError):
    code = "UNAUTHORIZED"
    category = ErrorCategory.AUTHORIZATION
    default_message = "You must be signed in to process videos"


# Insufficient resource


class InsufficientBalance(AutosubError):
    code = "INSUFFICIENT_BALANCE"
    category = ErrorCategory.INSUFFICIENT_RESOURCE

    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(
            "You don't have enough credits for this operation",
            required=required,
            available=available,
        )


class InsufficientCredits(AutosubError):
    code = "INSUFFICIENT_CREDITS"
    category = ErrorCategory.INSUFFICIENT_RESOURCE

    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(
            f"Not enough credits. Required: {required}, Available: {available}",
            required=required,
            available=available,
        )


# Remote job API


class RemoteJobError(AutosubError):
    """Failure reported by or while talking to the remote job API."""

    category = ErrorCategory.TRANSIENT_REMOTE
    prefix = "Remote job error"

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason
        message = f"{self.prefix}: {reason}" if reason else self.prefix
        super().__init__(message)


class UploadFailed(RemoteJobError):
    code = "UPLOAD_FAILED"
    prefix = "Upload failed"


class RequestFailed(RemoteJobError):
    code = "REQUEST_FAILED"
    prefix = "Request failed"


class StatusCheckFailed(RemoteJobError):
    code = "STATUS_CHECK_FAILED"
    prefix = "Status check failed"


class ResultFetchFailed(RemoteJobError):
    code = "RESULT_FETCH_FAILED"
    prefix = "Failed to fetch result"


class CancelFailed(RemoteJobError):
    code = "CANCEL_FAILED"
    prefix = "Cancel failed"


class DownloadFailed(RemoteJobError):
    code = "DOWNLOAD_FAILED"
    prefix = "Download failed"


class JobTimeout(AutosubError):
    code = "JOB_TIMEOUT"
    category = ErrorCategory.TRANSIENT_REMOTE
    default_message = "Processing timed out. Please try again with a shorter video."


class ProcessingFailed(AutosubError):
    code = "PROCESSING_FAILED"
    category = ErrorCategory.TERMINAL_REMOTE

    def __init__(self, reason: str = "API processing failed") -> None:
        self.reason = reason
        super().__init__(f"Processing failed: {reason}")


class JobCancelled(AutosubError):
    code = "JOB_CANCELLED"
    category = ErrorCategory.TERMINAL_REMOTE
    default_message = "Processing was cancelled"


class NoResultVideo(AutosubError):
    code = "NO_RESULT_VIDEO"
    category = ErrorCategory.TERMINAL_REMOTE
    default_message = "No result video received from server"


# Billing


class BillingSyncFailed(AutosubError):
    code = "BILLING_SYNC_FAILED"
    category = ErrorCategory.TRANSIENT_REMOTE

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason
        super().__init__(f"Failed to load purchases: {reason}" if reason else "Failed to load purchases")


# Persistence


class PersistenceError(AutosubError):
    code = "PERSISTENCE_FAILED"
    category = ErrorCategory.PERSISTENCE
    default_message = "Failed to sync credits with server"


# Conflicts


class JobAlreadyRunning(AutosubError):
    code = "JOB_ALREADY_RUNNING"
    category = ErrorCategory.CONFLICT

    def __init__(self, active_job_id: str) -> None:
        self.active_job_id = active_job_id
        super().__init__("Another video is already being processed", active_job_id=active_job_id)


class JobNotFound(AutosubError):
    code = "RESOURCE_NOT_FOUND"
    category = ErrorCategory.VALIDATION
    default_message = "Resource not found"


class JobTransitionInvalid(AutosubError):
    code = "FSM_TRANSITION_INVALID"
    category = ErrorCategory.CONFLICT
    default_message = "Invalid status transition"


class JobTerminalImmutable(JobTransitionInvalid):
    code = "FSM_TERMINAL_IMMUTABLE"
    default_message = "Terminal state cannot be mutated"


__all__ = [
    "ApiError",
    "AutosubError",
    "BillingSyncFailed",
    "CancelFailed",
    "DownloadFailed",
    "ErrorCategory",
    "FileTooLarge",
    "InsufficientBalance",
    "InsufficientCredits",
    "InvalidAmount",
    "InvalidVideo",
    "JobAlreadyRunning",
    "JobCancelled",
    "JobNotFound",
    "JobTerminalImmutable",
    "JobTimeout",
    "JobTransitionInvalid",
    "NoAudioTrack",
    "NoResultVideo",
    "NotAuthenticated",
    "PersistenceError",
    "ProcessingFailed",
    "RemoteJobError",
    "RequestFailed",
    "ResultFetchFailed",
    "StatusCheckFailed",
    "UploadFailed",
    "VideoFileNotFound",
    "VideoPathNotAllowed",
    "VideoTooLong",
]
