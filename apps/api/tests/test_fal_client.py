"""Remote job API client against a mocked HTTP transport."""

from __future__ import annotations

import json
from pathlib import Path
import tempfile
import unittest

import httpx

from autosub.adapters.remote_jobs import FalRemoteJobClient
from autosub.adapters.remote_jobs.fal_client import mime_type_for
from autosub.errors import CancelFailed, DownloadFailed, RequestFailed, StatusCheckFailed, UploadFailed
from autosub.schemas.job import SubtitleStyle
from autosub.schemas.remote import RemoteJobState

ENDPOINT = "/fal-ai/auto-subtitle"


class FalRemoteJobClientTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.workdir = Path(tmp.name)
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], httpx.Response | Exception] = {}

    def _client(self) -> FalRemoteJobClient:
        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            url = f"{request.url.scheme}://{request.url.host}{request.url.path}"
            outcome = self.routes.get((request.method, url))
            if outcome is None:
                return httpx.Response(404, json={"detail": "no route"})
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        client = FalRemoteJobClient(
            api_key="secret",
            base_url="https://queue.test",
            endpoint=ENDPOINT,
            transport=httpx.MockTransport(handler),
        )
        self.addAsyncCleanup(client.aclose)
        return client

    async def test_upload_requests_ticket_then_puts_bytes_without_api_key(self) -> None:
        video = self.workdir / "clip.mov"
        video.write_bytes(b"movie-bytes")
        self.routes[("POST", "https://queue.test/storage/upload")] = httpx.Response(
            200,
            json={"upload_url": "https://uploads.test/put/1", "file_url": "https://files.test/clip.mov"},
        )
        self.routes[("PUT", "https://uploads.test/put/1")] = httpx.Response(200)

        file_url = await self._client().upload(video)

        self.assertEqual(file_url, "https://files.test/clip.mov")
        ticket_request, put_request = self.requests
        self.assertEqual(ticket_request.headers["Authorization"], "Key secret")
        self.assertEqual(
            json.loads(ticket_request.content),
            {"file_name": "clip.mov", "content_type": "video/quicktime"},
        )
        self.assertNotIn("Authorization", put_request.headers)
        self.assertEqual(put_request.headers["Content-Type"], "video/quicktime")
        self.assertEqual(put_request.content, b"movie-bytes")

    async def test_upload_put_rejection_is_upload_failure(self) -> None:
        video = self.workdir / "clip.mp4"
        video.write_bytes(b"movie-bytes")
        self.routes[("POST", "https://queue.test/storage/upload")] = httpx.Response(
            200,
            json={"upload_url": "https://uploads.test/put/1", "file_url": "https://files.test/clip.mp4"},
        )
        self.routes[("PUT", "https://uploads.test/put/1")] = httpx.Response(403)

        with self.assertRaises(UploadFailed) as context:
            await self._client().upload(video)

        self.assertEqual(context.exception.message, "Upload failed: Failed to upload file")
        self.assertTrue(context.exception.retryable)

    async def test_submit_sends_video_url_and_style_fields(self) -> None:
        self.routes[("POST", f"https://queue.test{ENDPOINT}")] = httpx.Response(
            200,
            json={"request_id": "req-123", "status": "IN_QUEUE"},
        )

        request_id = await self._client().submit("https://files.test/clip.mp4", SubtitleStyle(language="fr"))

        self.assertEqual(request_id, "req-123")
        payload = json.loads(self.requests[0].content)
        self.assertEqual(payload["video_url"], "https://files.test/clip.mp4")
        self.assertEqual(payload["language"], "fr")
        self.assertEqual(payload["position"], "bottom")
        self.assertEqual(payload["font_size"], 100)
        self.assertNotIn("background_color", payload)

    async def test_submit_rejection_surfaces_remote_message(self) -> None:
        self.routes[("POST", f"https://queue.test{ENDPOINT}")] = httpx.Response(422, json={"detail": "bad video"})

        with self.assertRaises(RequestFailed) as context:
            await self._client().submit("https://files.test/clip.mp4", SubtitleStyle())

        self.assertEqual(context.exception.message, "Request failed: bad video")
        self.assertEqual(context.exception.reason, "bad video")

    async def test_status_includes_logs_and_parses_state(self) -> None:
        self.routes[("GET", f"https://queue.test{ENDPOINT}/requests/req-1/status")] = httpx.Response(
            200,
            json={"status": "IN_PROGRESS", "logs": [{"message": "transcribing"}]},
        )

        status = await self._client().status("req-1")

        self.assertEqual(status.state, RemoteJobState.IN_PROGRESS)
        self.assertEqual(status.logs[0].message, "transcribing")
        self.assertEqual(self.requests[0].url.params["logs"], "1")

    async def test_unrecognised_status_maps_to_unknown(self) -> None:
        self.routes[("GET", f"https://queue.test{ENDPOINT}/requests/req-1/status")] = httpx.Response(
            200,
            json={"status": "WARMING_UP"},
        )

        status = await self._client().status("req-1")

        self.assertEqual(status.state, RemoteJobState.UNKNOWN)

    async def test_malformed_body_is_invalid_response(self) -> None:
        self.routes[("GET", f"https://queue.test{ENDPOINT}/requests/req-1/status")] = httpx.Response(
            200,
            content=b"<html>oops</html>",
        )

        with self.assertRaises(StatusCheckFailed) as context:
            await self._client().status("req-1")

        self.assertEqual(context.exception.reason, "Invalid response from server")

    async def test_transport_errors_are_wrapped(self) -> None:
        url = f"https://queue.test{ENDPOINT}/requests/req-1/status"
        cases = [
            (httpx.ConnectTimeout("slow"), "Request timed out"),
            (httpx.ConnectError("refused"), "Network error (ConnectError)"),
        ]
        for error, reason in cases:
            with self.subTest(reason=reason):
                self.routes[("GET", url)] = error

                with self.assertRaises(StatusCheckFailed) as context:
                    await self._client().status("req-1")

                self.assertEqual(context.exception.reason, reason)
                self.assertTrue(context.exception.retryable)

    async def test_result_exposes_video_url(self) -> None:
        self.routes[("GET", f"https://queue.test{ENDPOINT}/requests/req-1")] = httpx.Response(
            200,
            json={
                "video": {"url": "https://cdn.test/out.mp4", "content_type": "video/mp4"},
                "transcription": "hi",
                "subtitle_count": 1,
            },
        )

        result = await self._client().result("req-1")

        self.assertEqual(result.result_url, "https://cdn.test/out.mp4")
        self.assertEqual(result.subtitle_count, 1)

    async def test_cancel_uses_put_and_reports_rejection(self) -> None:
        url = f"https://queue.test{ENDPOINT}/requests/req-1/cancel"
        self.routes[("PUT", url)] = httpx.Response(202, json={"status": "CANCELLATION_REQUESTED"})
        client = self._client()

        await client.cancel("req-1")

        self.routes[("PUT", url)] = httpx.Response(400, json={"error": "already completed"})
        with self.assertRaises(CancelFailed) as context:
            await client.cancel("req-1")
        self.assertEqual(context.exception.reason, "already completed")

    async def test_download_writes_destination_atomically(self) -> None:
        self.routes[("GET", "https://cdn.test/out.mp4")] = httpx.Response(200, content=b"subtitled")
        destination = self.workdir / "results" / "subtitle_1.mp4"

        await self._client().download("https://cdn.test/out.mp4", destination)

        self.assertEqual(destination.read_bytes(), b"subtitled")
        self.assertEqual([path.name for path in destination.parent.iterdir()], ["subtitle_1.mp4"])
        self.assertNotIn("Authorization", self.requests[0].headers)

    async def test_failed_download_leaves_no_partial_file(self) -> None:
        self.routes[("GET", "https://cdn.test/out.mp4")] = httpx.Response(404)
        destination = self.workdir / "results" / "subtitle_1.mp4"

        with self.assertRaises(DownloadFailed):
            await self._client().download("https://cdn.test/out.mp4", destination)

        self.assertEqual(list(destination.parent.iterdir()), [])


class MimeTypeTests(unittest.TestCase):
    def test_known_extensions_and_fallback(self) -> None:
        cases = [
            ("a.mp4", "video/mp4"),
            ("a.MOV", "video/quicktime"),
            ("a.webm", "video/webm"),
            ("a.mkv", "application/octet-stream"),
        ]
        for name, expected in cases:
            with self.subTest(name=name):
                self.assertEqual(mime_type_for(Path(name)), expected)


if __name__ == "__main__":
    unittest.main()
