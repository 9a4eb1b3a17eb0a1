"""fal.ai queue API client for the auto-subtitle workflow."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
import tempfile

import httpx
from pydantic import ValidationError

from autosub.adapters.remote_jobs.base import RemoteJobClient
from autosub.core.logging_safety import safe_log_identifier, safe_log_message
from autosub.errors import (
    CancelFailed,
    DownloadFailed,
    RemoteJobError,
    RequestFailed,
    ResultFetchFailed,
    StatusCheckFailed,
    UploadFailed,
)
from autosub.schemas.job import SubtitleStyle
from autosub.schemas.remote import (
    QueueSubmission,
    RemoteErrorBody,
    RemoteResult,
    RemoteStatusResponse,
    UploadTicket,
)

logger = logging.getLogger(__name__)

_MIME_TYPES = {
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".m4v": "video/x-m4v",
    ".webm": "video/webm",
    ".gif": "image/gif",
}


def mime_type_for(path: Path) -> str:
    return _MIME_TYPES.get(path.suffix.lower(), "application/octet-stream")


class FalRemoteJobClient(RemoteJobClient):
    """Talks to ``queue.fal.run`` with ``Authorization: Key <api key>``.

    Pre-signed upload URLs and result URLs are fetched with a second client that
    never carries the API key.
    """

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://queue.fal.run",
        endpoint: str = "/fal-ai/workflow-utilities/auto-subtitle",
        timeout_seconds: float = 30.0,
        download_timeout_seconds: float = 600.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoint = endpoint.rstrip("/")
        self._api = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Key {api_key}"},
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )
        self._transfer = httpx.AsyncClient(
            timeout=httpx.Timeout(download_timeout_seconds, connect=timeout_seconds),
            transport=transport,
            follow_redirects=True,
        )

    async def upload(self, local_path: Path) -> str:
        content_type = mime_type_for(local_path)
        response = await self._send(
            UploadFailed,
            self._api.post(
                "/storage/upload",
                json={"file_name": local_path.name, "content_type": content_type},
            ),
        )
        ticket = self._parse(UploadFailed, UploadTicket, response)

        try:
            data = await asyncio.to_thread(local_path.read_bytes)
        except OSError as exc:
            raise UploadFailed("Could not read the video file") from exc

        put_response = await self._send(
            UploadFailed,
            self._transfer.put(ticket.upload_url, content=data, headers={"Content-Type": content_type}),
        )
        if not put_response.is_success:
            raise UploadFailed("Failed to upload file")

        logger.info("remote.uploaded bytes=%s content_type=%s", len(data), content_type)
        return ticket.file_url

    async def submit(self, video_url: str, style: SubtitleStyle) -> str:
        payload = {"video_url": video_url, **style.model_dump(mode="json", exclude_none=True)}
        response = await self._send(RequestFailed, self._api.post(self._endpoint, json=payload))
        submission = self._parse(RequestFailed, QueueSubmission, response)
        logger.info(
            "remote.submitted request_id=%s",
            safe_log_identifier(submission.request_id, prefix="rid"),
        )
        return submission.request_id

    async def status(self, request_id: str) -> RemoteStatusResponse:
        response = await self._send(
            StatusCheckFailed,
            self._api.get(f"{self._endpoint}/requests/{request_id}/status", params={"logs": 1}),
        )
        return self._parse(StatusCheckFailed, RemoteStatusResponse, response)

    async def result(self, request_id: str) -> RemoteResult:
        response = await self._send(ResultFetchFailed, self._api.get(f"{self._endpoint}/requests/{request_id}"))
        return self._parse(ResultFetchFailed, RemoteResult, response)

    async def cancel(self, request_id: str) -> None:
        response = await self._send(CancelFailed, self._api.put(f"{self._endpoint}/requests/{request_id}/cancel"))
        if not response.is_success:
            raise CancelFailed(self._error_message(response))
        logger.info("remote.cancelled request_id=%s", safe_log_identifier(request_id, prefix="rid"))

    async def download(self, url: str, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=destination.parent, prefix=".download-")
        try:
            with os.fdopen(fd, "wb") as handle:
                async with self._transfer.stream("GET", url) as response:
                    if not response.is_success:
                        raise DownloadFailed("Failed to download video")
                    async for chunk in response.aiter_bytes():
                        handle.write(chunk)
            os.replace(tmp_name, destination)
        except httpx.HTTPError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise DownloadFailed(type(exc).__name__) from exc
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.info("remote.downloaded file=%s", destination.name)

    async def aclose(self) -> None:
        await self._api.aclose()
        await self._transfer.aclose()

    @staticmethod
    async def _send(error_cls: type[RemoteJobError], request) -> httpx.Response:
        try:
            return await request
        except httpx.TimeoutException as exc:
            raise error_cls("Request timed out") from exc
        except httpx.HTTPError as exc:
            raise error_cls(f"Network error ({type(exc).__name__})") from exc

    def _parse(self, error_cls: type[RemoteJobError], model, response: httpx.Response):
        if not response.is_success:
            message = self._error_message(response)
            logger.warning(
                "remote.rejected error=%s status_code=%s message=%s",
                error_cls.code,
                response.status_code,
                safe_log_message(message),
            )
            raise error_cls(message)
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise error_cls("Invalid response from server") from exc

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = RemoteErrorBody.model_validate(response.json())
        except (ValueError, ValidationError):
            return f"HTTP {response.status_code}"
        return body.error_message


__all__ = ["FalRemoteJobClient", "mime_type_for"]
