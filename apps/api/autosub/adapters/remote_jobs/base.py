"""Remote job API interface."""

from abc import ABC, abstractmethod
from pathlib import Path

from autosub.schemas.job import SubtitleStyle
from autosub.schemas.remote import RemoteResult, RemoteStatusResponse


class RemoteJobClient(ABC):
    """Provider-neutral view of an asynchronous subtitle job runner.

    Every method raises the matching ``RemoteJobError`` subclass
    (``UploadFailed``, ``RequestFailed``, ...) instead of transport errors.
    """

    @abstractmethod
    async def upload(self, local_path: Path) -> str:
        """Upload a local video and return its remote URL."""

    @abstractmethod
    async def submit(self, video_url: str, style: SubtitleStyle) -> str:
        """Queue a subtitle job and return its request id."""

    @abstractmethod
    async def status(self, request_id: str) -> RemoteStatusResponse:
        """Return the current remote state of a request."""

    @abstractmethod
    async def result(self, request_id: str) -> RemoteResult:
        """Return the output of a completed request."""

    @abstractmethod
    async def cancel(self, request_id: str) -> None:
        """Ask the remote side to stop a request."""

    @abstractmethod
    async def download(self, url: str, destination: Path) -> None:
        """Fetch a result asset into ``destination``."""

    async def aclose(self) -> None:
        """Release network resources."""


__all__ = ["RemoteJobClient"]
