"""Remote job API wire models."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class RemoteJobState(str, Enum):
    IN_QUEUE = "IN_QUEUE"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: str | None) -> "RemoteJobState":
        try:
            return cls(str(raw or "").upper())
        except ValueError:
            return cls.UNKNOWN


class RemoteLogEntry(BaseModel):
    message: str
    timestamp: str | None = None
    level: str | None = None


class RemoteStatusResponse(BaseModel):
    status: str
    response_url: str | None = None
    logs: list[RemoteLogEntry] | None = None

    @property
    def state(self) -> RemoteJobState:
        return RemoteJobState.parse(self.status)


class RemoteVideoFile(BaseModel):
    url: str
    content_type: str | None = None
    file_name: str | None = None
    file_size: int | None = None


class RemoteResult(BaseModel):
    video: RemoteVideoFile | None = None
    transcription: str | None = None
    subtitle_count: int | None = None

    @property
    def result_url(self) -> str | None:
        return self.video.url if self.video is not None else None


class UploadTicket(BaseModel):
    upload_url: str
    file_url: str


class QueueSubmission(BaseModel):
    request_id: str = Field(min_length=1)
    status: str | None = None


class RemoteErrorBody(BaseModel):
    error: str | None = None
    message: str | None = None
    detail: Any = None

    @property
    def error_message(self) -> str:
        if self.error or self.message:
            return self.error or self.message
        if self.detail:
            return self.detail if isinstance(self.detail, str) else str(self.detail)
        return "Unknown error occurred"
