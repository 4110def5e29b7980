import json
import unittest

from fastapi.testclient import TestClient

from db_store import BalanceStore, JobLogStore
from main import create_app

from helpers import (
    FakeResponse,
    FakeSession,
    FakeVerifier,
    PNG_DATA_URI,
    TempDirMixin,
    aggregator_payload,
    auth_header,
    make_database,
    make_settings,
    payment_event,
)


class ApiTestCase(TempDirMixin, unittest.TestCase):
    def setUp(self):
        FakeSession.reset()
        self.temp_dir = self.make_temp_dir()
        self.db = make_database(self.temp_dir)
        self.balances = BalanceStore(self.db)
        self.job_log = JobLogStore(self.db)
        self.client = self.make_client()

    def make_client(self, **settings_overrides):
        app = create_app(
            settings=make_settings(self.temp_dir, **settings_overrides),
            db=self.db,
            session_factory=FakeSession,
            webhook_verifier=FakeVerifier(),
        )
        return TestClient(app)

    def fund(self, tokens, user_id="user-1"):
        self.balances.ensure_profile(user_id, initial_tokens=tokens)


class ProcessImageTests(ApiTestCase):
    def test_requires_bearer_token(self):
        response = self.client.post("/api/process-image", json={"instruction": "x"})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "AUTH")

    def test_expired_token_rejected(self):
        response = self.client.post(
            "/api/process-image",
            json={"instruction": "x"},
            headers=auth_header(expires_in=-60),
        )
        self.assertEqual(response.status_code, 401)

    def test_long_instruction_rejected_before_upstream(self):
        self.fund(10000)
        response = self.client.post(
            "/api/process-image",
            json={"instruction": "a" * 10001},
            headers=auth_header(),
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(FakeSession.calls, [])
        self.assertEqual(self.balances.get_balance("user-1"), 10000)

    def test_low_balance_rejected_with_one_free_event(self):
        self.fund(100)
        response = self.client.post(
            "/api/process-image",
            json={"instruction": "make it blue", "image": PNG_DATA_URI},
            headers=auth_header(),
        )

        self.assertEqual(response.status_code, 402)
        self.assertEqual(response.json()["tokens_remaining"], 100)
        self.assertEqual(FakeSession.calls, [])
        self.assertEqual(self.balances.get_balance("user-1"), 100)

        events = self.job_log.list_for_user("user-1")
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["status"], "error")
        self.assertEqual(events[0]["error_code"], "402")
        self.assertEqual(events[0]["tokens_charged"], 0)

    def test_success_returns_canonical_response(self):
        self.fund(10000)
        FakeSession.queue(FakeResponse(200, aggregator_payload(prompt=100, completion=200)))
        response = self.client.post(
            "/api/process-image",
            json={"instruction": "make it blue", "images": [PNG_DATA_URI], "model": "aggregator-default", "imageSize": "2K"},
            headers=auth_header(),
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["images"], ["data:image/png;base64,AAAA"])
        self.assertEqual(body["usage"], {"prompt_tokens": 100, "completion_tokens": 200, "total_tokens": 300})
        self.assertEqual(body["tokens_remaining"], 9700)
        self.assertEqual(body["gateway"], "aggregator")
        self.assertEqual(body["imageSize"], "2K")
        self.assertEqual(FakeSession.calls[0]["url"], "https://gateway.test/v1/chat/completions")

    def test_upstream_rate_limit_passed_through_and_logged(self):
        self.fund(10000)
        FakeSession.queue(FakeResponse(429, text="quota exceeded"))
        response = self.client.post(
            "/api/process-image",
            json={"instruction": "make it blue"},
            headers=auth_header(),
        )

        self.assertEqual(response.status_code, 429)
        self.assertTrue(response.json()["retryable"])
        self.assertEqual(self.balances.get_balance("user-1"), 10000)
        self.assertEqual(self.job_log.list_for_user("user-1")[0]["error_code"], "429")

    def test_malformed_body_shapes_rejected_and_logged(self):
        self.fund(10000)
        bodies = (
            {"instruction": "x", "images": "notalist"},
            {"instruction": "x", "images": [123]},
            {"instruction": "x", "mode": "collage"},
            ["not", "an", "object"],
        )
        for body in bodies:
            response = self.client.post("/api/process-image", json=body, headers=auth_header())
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.json()["code"], "VALIDATION")

        events = self.job_log.list_for_user("user-1")
        self.assertEqual(len(events), len(bodies))
        self.assertTrue(all(e["status"] == "error" and e["error_code"] == "VALIDATION" for e in events))
        self.assertTrue(all(e["tokens_charged"] == 0 for e in events))
        self.assertEqual(FakeSession.calls, [])
        self.assertEqual(self.balances.get_balance("user-1"), 10000)

    def test_invalid_json_rejected_and_logged(self):
        response = self.client.post(
            "/api/process-image",
            content=b"{not json",
            headers=dict(auth_header(), **{"Content-Type": "application/json"}),
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(len(self.job_log.list_for_user("user-1")), 1)

    def test_malformed_body_without_token_is_401(self):
        response = self.client.post("/api/process-image", json={"images": "notalist"})
        self.assertEqual(response.status_code, 401)

    def test_byo_without_saved_key(self):
        self.fund(10000)
        response = self.client.post(
            "/api/process-image",
            json={"instruction": "x", "model": "byo/gemini-3-pro-image"},
            headers=auth_header(),
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "MISSING_CREDENTIAL")
        self.assertEqual(FakeSession.calls, [])

        events = self.job_log.list_for_user("user-1")
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["status"], "error")
        self.assertEqual(events[0]["error_code"], "MISSING_CREDENTIAL")
        self.assertEqual(events[0]["tokens_charged"], 0)
        self.assertEqual(self.balances.get_balance("user-1"), 10000)

    def test_missing_service_key_fails_closed_and_logged(self):
        self.fund(10000)
        client = self.make_client(google_api_key=None)
        response = client.post(
            "/api/process-image",
            json={"instruction": "x", "model": "direct/gemini-3-pro-image"},
            headers=auth_header(),
        )
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["code"], "CONFIGURATION")
        self.assertEqual(FakeSession.calls, [])

        events = self.job_log.list_for_user("user-1")
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["error_code"], "CONFIGURATION")
        self.assertEqual(events[0]["tokens_charged"], 0)

    def test_no_images_is_billed_warning(self):
        self.fund(10000)
        FakeSession.queue(FakeResponse(200, aggregator_payload(images=(), content="")))
        response = self.client.post(
            "/api/process-image",
            json={"instruction": "make it blue", "images": [PNG_DATA_URI]},
            headers=auth_header(),
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["images"], [])
        self.assertEqual(body["warning"], "Model returned no images")
        self.assertEqual(body["tokens_remaining"], 9700)
        self.assertEqual(self.balances.get_balance("user-1"), 9700)

        events = self.job_log.list_for_user("user-1")
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["status"], "warning")
        self.assertEqual(events[0]["tokens_charged"], 300)
        self.assertEqual(events[0]["images_returned"], 0)

    def test_byo_request_is_not_charged(self):
        self.balances.set_byo_key("user-1", "personal-key")
        FakeSession.queue(FakeResponse(200, {
            "candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": "AAAA"}}]}}],
            "usageMetadata": {"promptTokenCount": 10, "candidatesTokenCount": 1000},
        }))
        response = self.client.post(
            "/api/process-image",
            json={"instruction": "x", "model": "byo/gemini-3-pro-image"},
            headers=auth_header(),
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["gateway"], "byo")
        self.assertEqual(FakeSession.calls[0]["headers"]["x-goog-api-key"], "personal-key")
        self.assertEqual(self.balances.get_balance("user-1"), 0)


class ByoKeyApiTests(ApiTestCase):
    def google_reply(self):
        return FakeResponse(200, {
            "candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": "AAAA"}}]}}],
            "usageMetadata": {"promptTokenCount": 10, "candidatesTokenCount": 1000},
        })

    def generate_byo(self):
        return self.client.post(
            "/api/process-image",
            json={"instruction": "x", "model": "byo/gemini-3-pro-image"},
            headers=auth_header(),
        )

    def test_saved_key_used_for_byo_generation(self):
        saved = self.client.post("/api/byo-key", json={"apiKey": "  personal-key  "}, headers=auth_header())
        self.assertEqual(saved.json(), {"success": True, "has_byo_key": True})
        self.assertTrue(self.client.get("/api/usage", headers=auth_header()).json()["has_byo_key"])

        FakeSession.queue(self.google_reply())
        response = self.generate_byo()

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["gateway"], "byo")
        self.assertEqual(FakeSession.calls[0]["headers"]["x-goog-api-key"], "personal-key")

    def test_cleared_key_blocks_byo_generation(self):
        self.client.post("/api/byo-key", json={"apiKey": "personal-key"}, headers=auth_header())
        cleared = self.client.post("/api/byo-key", json={"apiKey": ""}, headers=auth_header())
        self.assertFalse(cleared.json()["has_byo_key"])

        response = self.generate_byo()
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "MISSING_CREDENTIAL")
        self.assertEqual(FakeSession.calls, [])

    def test_saving_key_requires_token(self):
        response = self.client.post("/api/byo-key", json={"apiKey": "personal-key"})
        self.assertEqual(response.status_code, 401)
        self.assertIsNone(self.balances.get_profile("user-1"))


class JobQueueApiTests(ApiTestCase):
    def test_enqueued_job_completes_in_background(self):
        self.fund(10000)
        FakeSession.queue(FakeResponse(200, aggregator_payload()))
        response = self.client.post(
            "/api/enqueue-job",
            json={"instruction": "make it blue", "requestId": "req-42"},
            headers=auth_header(),
        )
        self.assertEqual(response.status_code, 202)
        job_id = response.json()["jobId"]
        self.assertEqual(response.json()["requestId"], "req-42")

        status = self.client.post("/api/jobs-status", json={"jobIds": [job_id]}, headers=auth_header())
        job = status.json()["jobs"][job_id]
        self.assertEqual(job["status"], "completed")
        self.assertEqual(job["images"], ["data:image/png;base64,AAAA"])
        self.assertEqual(self.balances.get_balance("user-1"), 9700)

    def test_failed_job_reports_error(self):
        self.fund(10000)
        FakeSession.queue(FakeResponse(503, text="overloaded"))
        job_id = self.client.post(
            "/api/enqueue-job", json={"instruction": "x"}, headers=auth_header()
        ).json()["jobId"]

        job = self.client.get(f"/api/job-status/{job_id}", headers=auth_header()).json()
        self.assertEqual(job["status"], "failed")
        self.assertEqual(job["errorCode"], "503")
        self.assertEqual(job["error"], "Model busy, try again")
        self.assertEqual(job["retryCount"], 1)

    def test_status_capped_and_unknown_ids_not_found(self):
        ids = [f"missing-{i}" for i in range(60)]
        response = self.client.post("/api/jobs-status", json={"jobIds": ids}, headers=auth_header())
        jobs = response.json()["jobs"]
        self.assertEqual(len(jobs), 50)
        self.assertEqual(jobs["missing-0"], {"status": "not_found"})

    def test_status_requires_non_empty_list(self):
        response = self.client.post("/api/jobs-status", json={"jobIds": []}, headers=auth_header())
        self.assertEqual(response.status_code, 400)

    def test_other_users_jobs_not_visible(self):
        self.fund(10000)
        FakeSession.queue(FakeResponse(200, aggregator_payload()))
        job_id = self.client.post(
            "/api/enqueue-job", json={"instruction": "x"}, headers=auth_header()
        ).json()["jobId"]

        response = self.client.post("/api/jobs-status", json={"jobIds": [job_id]}, headers=auth_header("user-2"))
        self.assertEqual(response.json()["jobs"][job_id]["status"], "not_found")


class BillingApiTests(ApiTestCase):
    def post_event(self, event, signature="valid"):
        return self.client.post(
            "/api/billing/webhook",
            content=json.dumps(event),
            headers={"webhook-id": "evt_1", "webhook-signature": signature, "webhook-timestamp": "1700000000"},
        )

    def test_duplicate_webhook_credits_once(self):
        first = self.post_event(payment_event("txn_1"))
        second = self.post_event(payment_event("txn_1"))

        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.status_code, 200)
        self.assertEqual(second.json()["message"], "Order already processed")
        self.assertEqual(self.balances.get_balance("user-1"), 100000)

    def test_forged_signature_rejected(self):
        response = self.post_event(payment_event(), signature="forged")
        self.assertEqual(response.status_code, 403)
        self.assertEqual(self.balances.get_balance("user-1"), 0)

    def test_usage_lists_purchases(self):
        self.post_event(payment_event("txn_9"))
        body = self.client.get("/api/usage", headers=auth_header()).json()
        self.assertEqual(body["tokens_remaining"], 100000)
        self.assertEqual(body["purchases"][0]["status"], "completed")
        self.assertEqual({p["id"] for p in body["packages"]}, {"starter", "pro"})

    def test_checkout_without_billing_config(self):
        response = self.client.post("/api/billing/checkout", json={"packageId": "starter"}, headers=auth_header())
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["code"], "CONFIGURATION")


class MiscApiTests(ApiTestCase):
    def test_log_resize_works_for_guests(self):
        response = self.client.post("/api/log-resize", json={"imagesCount": 2, "imageSize": "2K"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"success": True, "logged": True})

    def test_health(self):
        response = self.client.get("/health")
        self.assertEqual(response.json()["status"], "healthy")
        self.assertEqual(response.headers["X-Content-Type-Options"], "nosniff")

    def test_ready(self):
        response = self.client.get("/ready")
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["ready"])


if __name__ == "__main__":
    unittest.main()
