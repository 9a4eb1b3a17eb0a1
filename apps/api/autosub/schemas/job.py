"""Job schemas."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    CREDITS_RESERVED = "credits_reserved"
    UPLOADING = "uploading"
    QUEUED = "queued"
    PROCESSING = "processing"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class SubtitlePosition(str, Enum):
    TOP = "top"
    CENTER = "center"
    BOTTOM = "bottom"


class SubtitleStyle(BaseModel):
    language: str = "en"
    font_name: str = "Montserrat"
    font_size: int = Field(default=100, gt=0)
    font_weight: str = "bold"
    font_color: str = "#FFFFFF"
    highlight_color: str = "#A855F7"
    stroke_width: int = Field(default=3, ge=0)
    stroke_color: str = "#000000"
    background_color: str | None = None
    background_opacity: float | None = Field(default=None, ge=0, le=1)
    position: SubtitlePosition = SubtitlePosition.BOTTOM
    words_per_subtitle: int = Field(default=3, gt=0)
    enable_animation: bool = True


class Job(BaseModel):
    id: str
    user_id: str
    status: JobStatus = JobStatus.IDLE
    local_video_path: str
    file_name: str
    duration_seconds: float = 0.0
    size_bytes: int = 0
    credits_reserved: int = 0
    credits_refunded: int = 0
    remote_request_id: str | None = None
    result_url: str | None = None
    local_result_path: str | None = None
    transcription: str | None = None
    subtitle_count: int | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    refund_pending: bool = False
    style: SubtitleStyle = Field(default_factory=SubtitleStyle)

    @property
    def outstanding_credits(self) -> int:
        return self.credits_reserved - self.credits_refunded

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries


class JobEvent(BaseModel):
    """Snapshot pushed to job observers after every state change."""

    job: Job
    message: str
    progress: float = Field(default=0.0, ge=0, le=1)


class SubmitJobRequest(BaseModel):
    video_path: str = Field(min_length=1, description="File inside the configured upload directory")
    style: SubtitleStyle = Field(default_factory=SubtitleStyle)


class JobList(BaseModel):
    items: list[Job]
