"""HTTP surface: credits, jobs and billing routes."""

from __future__ import annotations

import os
from pathlib import Path
import tempfile
import time
import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient

from _fakes import FakeMediaProbe, FakeRemoteJobClient, write_video

from autosub.adapters.billing import BillingProvider, StaticBillingProvider
from autosub.core.config import Settings, get_settings
from autosub.errors import BillingSyncFailed
from autosub.main import create_app
from autosub.repositories.memory import InMemoryDocumentStore, InMemoryLocalCache
from autosub.schemas.billing import BillingSnapshot, PurchaseRecord
from autosub.services.session import SessionRegistry

USER_1 = {"Authorization": "Bearer test:user-1"}
USER_2 = {"Authorization": "Bearer test:user-2:anonymous"}
TERMINAL = {"completed", "failed", "cancelled", "refunded"}


class _UnavailableBilling(BillingProvider):
    async def fetch_snapshot(self, user_id: str) -> BillingSnapshot:
        raise BillingSyncFailed("HTTP 503")


class ApiRouteTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.workdir = Path(tmp.name)
        self.video = write_video(self.workdir)
        self.settings = Settings(
            auth_provider="mock",
            output_dir=self.workdir / "results",
            upload_dir=self.workdir,
            poll_base_interval_seconds=0.001,
            poll_max_interval_seconds=0.005,
            reconcile_interval_seconds=3600,
            signup_bonus_credits=5,
        )
        self.store = InMemoryDocumentStore()
        self.remote = FakeRemoteJobClient()
        self.probe = FakeMediaProbe(duration_seconds=70)
        self.billing: BillingProvider = StaticBillingProvider()

    def _client(self) -> TestClient:
        registry = SessionRegistry(
            self.settings,
            store=self.store,
            cache=InMemoryLocalCache(),
            remote=self.remote,
            billing=self.billing,
            probe=self.probe,
        )
        return TestClient(create_app(self.settings, registry))

    def _wait_until_terminal(self, client: TestClient, job_id: str, headers: dict) -> dict:
        for _ in range(500):
            body = client.get(f"/api/v1/jobs/{job_id}", headers=headers).json()
            if body["status"] in TERMINAL:
                return body
            time.sleep(0.01)
        self.fail(f"job {job_id} did not finish")

    def test_missing_or_invalid_bearer_token_is_rejected(self) -> None:
        with self._client() as client:
            missing = client.get("/api/v1/credits")
            invalid = client.get("/api/v1/credits", headers={"Authorization": "Bearer not-a-token"})

        for response in (missing, invalid):
            self.assertEqual(response.status_code, 401)
            self.assertEqual(response.json()["code"], "UNAUTHORIZED")
        self.assertEqual(self.store.users, {})

    def test_balance_transactions_and_estimate(self) -> None:
        with self._client() as client:
            balance = client.get("/api/v1/credits", headers=USER_1)
            transactions = client.get("/api/v1/credits/transactions", headers=USER_1)
            estimate = client.get("/api/v1/credits/estimate", params={"duration_seconds": 61}, headers=USER_1)
            negative = client.get("/api/v1/credits/estimate", params={"duration_seconds": -1}, headers=USER_1)

        self.assertEqual(balance.status_code, 200)
        self.assertEqual(balance.json(), {"balance": 5, "pending_sync": 0})
        self.assertEqual([item["kind"] for item in transactions.json()["items"]], ["bonus"])
        self.assertEqual(
            estimate.json(),
            {"duration_seconds": 61.0, "required": 2, "available": 5, "sufficient": True},
        )
        self.assertEqual(negative.status_code, 422)

    def test_submitted_job_runs_to_completion_and_debits_credits(self) -> None:
        with self._client() as client:
            submitted = client.post(
                "/api/v1/jobs",
                json={"video_path": str(self.video), "style": {"language": "es"}},
                headers=USER_1,
            )
            self.assertEqual(submitted.status_code, 202)
            job_id = submitted.json()["id"]

            finished = self._wait_until_terminal(client, job_id, USER_1)
            listed = client.get("/api/v1/jobs", headers=USER_1).json()["items"]
            balance = client.get("/api/v1/credits", headers=USER_1).json()["balance"]

        self.assertEqual(finished["status"], "completed")
        self.assertEqual(finished["credits_reserved"], 2)
        self.assertEqual(finished["style"]["language"], "es")
        self.assertEqual([job["id"] for job in listed], [job_id])
        self.assertEqual(balance, 3)

    def test_job_without_enough_credits_fails_with_nothing_spent(self) -> None:
        self.probe = FakeMediaProbe(duration_seconds=400)

        with self._client() as client:
            job_id = client.post("/api/v1/jobs", json={"video_path": str(self.video)}, headers=USER_1).json()["id"]
            finished = self._wait_until_terminal(client, job_id, USER_1)
            balance = client.get("/api/v1/credits", headers=USER_1).json()["balance"]

        self.assertEqual(finished["status"], "failed")
        self.assertEqual(finished["error_code"], "INSUFFICIENT_CREDITS")
        self.assertEqual(balance, 5)
        self.assertEqual(self.remote.uploads, [])

    def test_second_job_conflicts_until_first_is_cancelled(self) -> None:
        self.remote.statuses = ["IN_PROGRESS"]
        self.settings = self.settings.model_copy(update={"max_processing_seconds": 30.0})

        with self._client() as client:
            first = client.post("/api/v1/jobs", json={"video_path": str(self.video)}, headers=USER_1).json()
            conflict = client.post("/api/v1/jobs", json={"video_path": str(self.video)}, headers=USER_1)
            cancelled = client.post(f"/api/v1/jobs/{first['id']}/cancel", headers=USER_1)
            balance = client.get("/api/v1/credits", headers=USER_1).json()["balance"]

        self.assertEqual(conflict.status_code, 409)
        self.assertEqual(conflict.json()["code"], "JOB_ALREADY_RUNNING")
        self.assertEqual(conflict.json()["details"]["active_job_id"], first["id"])
        self.assertEqual(cancelled.status_code, 200)
        self.assertEqual(cancelled.json()["status"], "cancelled")
        self.assertEqual(balance, 5)

    def test_jobs_are_scoped_to_their_owner(self) -> None:
        with self._client() as client:
            job_id = client.post("/api/v1/jobs", json={"video_path": str(self.video)}, headers=USER_1).json()["id"]
            self._wait_until_terminal(client, job_id, USER_1)

            foreign = client.get(f"/api/v1/jobs/{job_id}", headers=USER_2)
            foreign_cancel = client.post(f"/api/v1/jobs/{job_id}/cancel", headers=USER_2)
            foreign_list = client.get("/api/v1/jobs", headers=USER_2).json()["items"]

        for response in (foreign, foreign_cancel):
            self.assertEqual(response.status_code, 404)
            self.assertEqual(response.json(), {"code": "RESOURCE_NOT_FOUND", "message": "Resource not found"})
        self.assertEqual(foreign_list, [])

    def test_video_paths_outside_upload_directory_are_refused(self) -> None:
        outside = tempfile.TemporaryDirectory()
        self.addCleanup(outside.cleanup)
        stray = write_video(Path(outside.name), "stray.mp4")
        anonymous = {"Authorization": "Bearer test:visitor:anonymous"}

        with self._client() as client:
            responses = [
                client.post("/api/v1/jobs", json={"video_path": path}, headers=anonymous)
                for path in ("/etc/hostname", str(stray), "../stray.mp4", ".")
            ]
            listed = client.get("/api/v1/jobs", headers=anonymous).json()["items"]

        for response in responses:
            self.assertEqual(response.status_code, 422)
            self.assertEqual(response.json()["code"], "VIDEO_PATH_NOT_ALLOWED")
        self.assertEqual(listed, [])
        self.assertEqual(self.probe.calls, [])
        self.assertEqual(self.remote.uploads, [])

    def test_relative_video_path_is_resolved_inside_upload_directory(self) -> None:
        with self._client() as client:
            submitted = client.post("/api/v1/jobs", json={"video_path": "clip.mp4"}, headers=USER_1)
            finished = self._wait_until_terminal(client, submitted.json()["id"], USER_1)

        self.assertEqual(submitted.status_code, 202)
        self.assertEqual(finished["status"], "completed")
        self.assertEqual(self.probe.calls, [self.video.resolve()])

    def test_app_uses_the_settings_it_was_built_with(self) -> None:
        get_settings.cache_clear()
        self.addCleanup(get_settings.cache_clear)

        with patch.dict(os.environ, {"AUTOSUB_AUTH_PROVIDER": "firebase"}):
            with self._client() as client:
                response = client.get("/api/v1/credits", headers=USER_1)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["balance"], 5)

    def test_billing_sync_credits_purchase_once(self) -> None:
        self.billing.set_snapshot(
            "user-1",
            BillingSnapshot(
                purchases=[PurchaseRecord(transaction_id="txn-1", product_id="com.autosubtitle.credits.medium")]
            ),
        )

        with self._client() as client:
            first = client.post("/api/v1/billing/sync", headers=USER_1)
            second = client.post("/api/v1/billing/sync", headers=USER_1)
            balance = client.get("/api/v1/credits", headers=USER_1).json()["balance"]

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["purchase_credits"], 75)
        self.assertEqual(first.json()["settled_transactions"], ["txn-1"])
        self.assertEqual(second.json()["purchase_credits"], 0)
        self.assertEqual(balance, 80)

    def test_billing_provider_outage_is_bad_gateway(self) -> None:
        self.billing = _UnavailableBilling()

        with self._client() as client:
            response = client.post("/api/v1/billing/sync", headers=USER_1)

        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.json()["code"], "BILLING_SYNC_FAILED")

    def test_shutdown_closes_remote_client(self) -> None:
        with self._client() as client:
            client.get("/api/v1/credits", headers=USER_1)

        self.assertTrue(self.remote.closed)

    def test_openapi_lists_routes_with_error_contracts(self) -> None:
        with self._client() as client:
            paths = client.get("/openapi.json").json()["paths"]

        self.assertEqual(
            set(paths),
            {
                "/api/v1/credits",
                "/api/v1/credits/transactions",
                "/api/v1/credits/estimate",
                "/api/v1/jobs",
                "/api/v1/jobs/{jobId}",
                "/api/v1/jobs/{jobId}/cancel",
                "/api/v1/billing/sync",
            },
        )
        self.assertEqual(
            paths["/api/v1/jobs/{jobId}"]["get"]["responses"]["404"]["content"]["application/json"]["schema"]["$ref"],
            "#/components/schemas/NoLeakNotFoundError",
        )
        self.assertIn("409", paths["/api/v1/jobs"]["post"]["responses"])


if __name__ == "__main__":
    unittest.main()
