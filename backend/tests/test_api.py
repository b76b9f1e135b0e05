import os
import tempfile
import time
import unittest

from fastapi.testclient import TestClient

from main import create_app
from tarot_engine.core.errors import AIProviderError
from tarot_engine.core.settings import Settings
from tarot_engine.services.reading_status import create_pending_reading

from helpers import QUESTION, VALID_READING_JSON, FakeLLM, StaticCatalog, add_user


def make_settings(**overrides) -> Settings:
    settings = Settings()
    settings.db_auto_create = True
    settings.worker_enabled = False
    settings.basic_auth_enabled = False
    settings.cors_allow_origins = None
    settings.cron_secret = "secret"
    settings.user_id_header = "X-User-Id"
    settings.default_locale = "th"
    settings.achievements_webhook_url = None
    settings.fallback_llm_api_key = None
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


CRON = {"Authorization": "Bearer secret"}


def as_user(user_id: str = "user-1", **extra) -> dict:
    return {"X-User-Id": user_id, **extra}


class ApiTestCase(unittest.TestCase):
    settings_overrides: dict = {}
    script = (VALID_READING_JSON,)

    def setUp(self):
        # a file database so request threads and the worker get their own connections
        self.tmpdir = tempfile.TemporaryDirectory()
        database_url = "sqlite:///" + os.path.join(self.tmpdir.name, "tarot.db")
        self.llm = FakeLLM(*self.script)
        settings = make_settings(database_url=database_url, **self.settings_overrides)
        self.app = create_app(settings, llm=self.llm, catalog=StaticCatalog())
        self.client = TestClient(self.app)
        self.client.__enter__()
        self.session_factory = self.app.state.session_factory

    def tearDown(self):
        self.client.__exit__(None, None, None)
        self.tmpdir.cleanup()

    def submit(self, question=QUESTION, user_id="user-1", **extra):
        return self.client.post("/api/readings/submit", json={"question": question, **extra}, headers=as_user(user_id))

    def wait_for_status(self, reading_id, expected, user_id="user-1", timeout_s=5.0):
        deadline = time.monotonic() + timeout_s
        while True:
            body = self.client.get(f"/api/readings/status/{reading_id}", headers=as_user(user_id)).json()
            if body["status"] == expected or time.monotonic() > deadline:
                return body
            time.sleep(0.02)


class TestSubmitAndStatus(ApiTestCase):
    def test_submit_then_poll_until_completed(self):
        add_user(self.session_factory, stars=1)
        response = self.submit()
        self.assertEqual(response.status_code, 202)
        body = response.json()
        self.assertEqual(body["status"], "PENDING")
        self.assertEqual(body["confirmation_url"], f"/api/readings/status/{body['reading_id']}")
        self.assertGreater(body["estimated_seconds_remaining"], 0)

        status = self.wait_for_status(body["reading_id"], "COMPLETED")
        self.assertEqual(status["status"], "COMPLETED")
        self.assertIsNone(status["estimated_seconds_remaining"])
        answer = status["answer"]
        self.assertEqual(answer["kind"], "tarot_reading")
        self.assertIn(len(answer["cards"]), (3, 5))
        self.assertEqual(answer["question_analysis"]["topic"], "career")

    def test_camel_case_fields_are_accepted(self):
        add_user(self.session_factory, stars=1)
        response = self.submit(readingId="client-key-1", sessionId="s-1")
        self.assertEqual(response.status_code, 202)
        self.assertEqual(response.json()["reading_id"], "client-key-1")

    def test_insufficient_credits(self):
        add_user(self.session_factory)
        response = self.submit()
        self.assertEqual(response.status_code, 402)
        detail = response.json()["detail"]
        self.assertEqual(detail["code"], "INSUFFICIENT_CREDITS")
        self.assertEqual((detail["required"], detail["available"]), (1, 0))

    def test_rejected_question(self):
        add_user(self.session_factory, stars=1)
        response = self.client.post(
            "/api/readings/submit",
            json={"question": "Hi?"},
            headers=as_user(**{"Accept-Language": "en"}),
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(
            response.json()["detail"],
            {"code": "QUESTION_TOO_SHORT", "message": "Please enter a question longer than 10 characters."},
        )

    def test_unknown_user(self):
        response = self.submit(user_id="ghost")
        self.assertEqual(response.status_code, 404)

    def test_identity_is_required(self):
        response = self.client.post("/api/readings/submit", json={"question": QUESTION})
        self.assertEqual(response.status_code, 401)

    def test_status_of_other_users_reading(self):
        add_user(self.session_factory, stars=1)
        reading_id = self.submit().json()["reading_id"]
        self.assertEqual(self.client.get(f"/api/readings/status/{reading_id}", headers=as_user("user-2")).status_code, 403)
        self.assertEqual(self.client.get("/api/readings/status/ghost", headers=as_user()).status_code, 404)

    def test_delete_hides_reading(self):
        add_user(self.session_factory, stars=1)
        reading_id = self.submit().json()["reading_id"]
        self.assertEqual(self.client.delete(f"/api/readings/{reading_id}", headers=as_user("user-2")).status_code, 403)
        self.assertEqual(self.client.delete(f"/api/readings/{reading_id}", headers=as_user()).status_code, 204)
        self.assertEqual(self.client.get(f"/api/readings/status/{reading_id}", headers=as_user()).status_code, 404)

    def test_events_stream_for_completed_reading(self):
        add_user(self.session_factory, stars=1)
        reading_id = self.submit().json()["reading_id"]
        self.wait_for_status(reading_id, "COMPLETED")

        response = self.client.get(f"/api/readings/{reading_id}/events", headers=as_user())
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers["content-type"].startswith("text/event-stream"))
        self.assertIn("event: reading", response.text)
        self.assertTrue(response.text.rstrip().splitlines()[-2].startswith("event: complete"))

    def test_health(self):
        body = self.client.get("/health").json()
        self.assertEqual(body, {"status": "healthy", "worker": True, "llm": True})


class TestFailedGeneration(ApiTestCase):
    script = (AIProviderError("provider down"),)

    def test_failure_is_reported_and_refunded(self):
        add_user(self.session_factory, stars=1)
        reading_id = self.submit().json()["reading_id"]
        status = self.wait_for_status(reading_id, "FAILED")
        self.assertEqual(status["status"], "FAILED")
        self.assertEqual(status["error_code"], "AI_PROVIDER_ERROR")
        self.assertIsNone(status["answer"])

        # refunded credit pays for the next reading
        self.assertEqual(self.submit(question="Will my new business grow this year?").status_code, 202)


class TestCronEndpoints(ApiTestCase):
    def test_secret_is_required(self):
        self.assertEqual(self.client.get("/api/readings/process").status_code, 401)
        self.assertEqual(
            self.client.get("/api/readings/process", headers={"Authorization": "Bearer wrong"}).status_code, 401
        )
        self.assertEqual(self.client.get("/api/readings/stats").status_code, 401)

    def test_bearer_scheme_is_case_insensitive(self):
        self.assertEqual(
            self.client.get("/api/readings/stats", headers={"Authorization": "bearer secret"}).status_code, 200
        )
        self.assertEqual(
            self.client.get("/api/readings/stats", headers={"Authorization": "Token secret"}).status_code, 401
        )
        self.assertEqual(self.client.get("/api/readings/stats", headers={"Authorization": "Bearer"}).status_code, 401)

    def test_process_pending_batch(self):
        add_user(self.session_factory, stars=1)
        db = self.session_factory()
        try:
            # a row that was never handed to the worker
            reading_id = create_pending_reading(db, "user-1", QUESTION).id
        finally:
            db.close()

        response = self.client.get("/api/readings/process", headers=CRON)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"processed": 1, "successful": 1, "failed": 0, "skipped": 0, "recovered": 0})

        stats = self.client.get("/api/readings/stats", headers=CRON).json()
        self.assertEqual(stats, {"pending": 0, "processing": 0, "completed": 1, "failed": 0, "total": 1})

        again = self.client.post("/api/readings/process", json={"readingId": reading_id}, headers=CRON).json()
        self.assertEqual(again["status"], "skipped")
        self.assertFalse(again["success"])

    def test_process_one_missing(self):
        body = self.client.post("/api/readings/process", json={"readingId": "ghost"}, headers=CRON).json()
        self.assertEqual(body["status"], "failed")
        self.assertEqual(body["reading_id"], "ghost")

    def test_empty_batch(self):
        response = self.client.post("/api/readings/process", headers=CRON)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["processed"], 0)


class TestUnsetCronSecret(ApiTestCase):
    settings_overrides = {"cron_secret": None}

    def test_unset_secret_rejects_everything(self):
        response = self.client.get("/api/readings/process", headers={"Authorization": "Bearer "})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(self.client.get("/api/readings/stats", headers=CRON).status_code, 401)


class TestBasicAuth(ApiTestCase):
    settings_overrides = {"basic_auth_enabled": True, "basic_auth_username": "admin", "basic_auth_password": "pw"}

    def test_basic_auth_guards_user_routes_but_not_cron(self):
        response = self.client.get("/api/readings/status/ghost", headers=as_user())
        self.assertEqual(response.status_code, 401)
        self.assertEqual(self.client.get("/api/readings/stats", headers=CRON).status_code, 200)
        self.assertEqual(self.client.get("/health").status_code, 200)

        authed = self.client.get("/api/readings/status/ghost", headers=as_user(), auth=("admin", "pw"))
        self.assertEqual(authed.status_code, 404)

    def test_malformed_basic_credentials(self):
        for value in ("Basic", "Bearer YWRtaW46cHc=", "Basic !!!", "Basic YWRtaW4="):
            headers = {**as_user(), "Authorization": value}
            response = self.client.get("/api/readings/status/ghost", headers=headers)
            self.assertEqual(response.status_code, 401, value)
            self.assertEqual(response.headers["www-authenticate"], "Basic")

        headers = {**as_user(), "Authorization": "basic YWRtaW46cHc="}
        self.assertEqual(self.client.get("/api/readings/status/ghost", headers=headers).status_code, 404)


if __name__ == "__main__":
    unittest.main()
