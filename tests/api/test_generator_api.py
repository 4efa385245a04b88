"""
Tests for the generator HTTP API (generator_service/app.py and routes).

The app is built around a ServiceContext backed by FakeRedis. A queue
subscriber plays the worker's part for enqueue-and-wait requests.
"""

import asyncio
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from generator_service.app import create_app
from generator_service.queue import JobOptions, JobPayload, JobResult
from version import __version__

AUTH_SECRET = "test-secret-key-1234"
CDN_PDF = "https://d123.cloudfront.net/crm-pdf/invoice-42-1.pdf"


@pytest.fixture
def client(context):
    """FastAPI test client that does not follow redirects."""
    app = create_app(context=context)
    return TestClient(app, follow_redirects=False)


@pytest.fixture
def rendered(context):
    """
    Complete every enqueued job right away, like a worker would.

    Returns the list of page URLs that were "rendered".
    """
    urls = []
    queue = context.queue

    async def on_event(event):
        if event["event"] != "added":
            return
        claimed = await queue.claim_next()
        urls.append(claimed.job.payload.url)
        await queue.complete(claimed.job_id, claimed.token, JobResult(url=CDN_PDF, size=1024))

    queue.subscribe(on_event)
    yield urls
    queue.unsubscribe(on_event)


@pytest.fixture
def failing(context):
    """Terminally fail every enqueued job on its only attempt."""
    queue = context.queue
    queue.default_options = JobOptions(max_attempts=1)

    async def on_event(event):
        if event["event"] != "added":
            return
        claimed = await queue.claim_next()
        await queue.fail(
            claimed.job_id, claimed.token, "RenderError: Failed to load page. Status: 500"
        )

    queue.subscribe(on_event)
    yield
    queue.unsubscribe(on_event)


def fill_queue(context, count):
    """Enqueue jobs directly, bypassing admission control."""
    async def _fill():
        for i in range(count):
            await context.queue.enqueue(
                JobPayload(url=f"https://crm.example.com/invoice?id={i}", file_name=f"invoice-{i}")
            )

    asyncio.run(_fill())


class TestServiceEndpoints:
    """Tests for / and /health."""

    def test_root_reports_online(self, client):
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "online"
        assert data["service"] == "crm-pdf-generator"
        assert data["version"] == __version__
        assert "timestamp" in data

    def test_health_reports_queue(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["queue_connected"] is True
        assert data["outstanding_jobs"] == 0
        assert data["admission_ceiling"] == 5


class TestGenerate:
    """Tests for POST /generate and GET /status/{job_id}."""

    def test_generate_returns_job_handle(self, client):
        response = client.post(
            "/generate",
            json={"url": "https://crm.example.com/invoice?id=42", "fileName": "invoice-42"},
        )

        assert response.status_code == 202
        data = response.json()
        assert data["jobId"].startswith("pdf_")
        assert data["state"] == "queued"
        assert data["statusUrl"] == f"/status/{data['jobId']}"

    def test_status_of_queued_job(self, client):
        job_id = client.post(
            "/generate",
            json={"url": "https://crm.example.com/invoice?id=42", "fileName": "invoice-42"},
        ).json()["jobId"]

        response = client.get(f"/status/{job_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["jobId"] == job_id
        assert data["state"] == "queued"
        assert data["progress"] == 0
        assert data["attemptsMade"] == 0
        assert data["result"] is None

    def test_status_of_completed_job(self, client, rendered):
        job_id = client.post(
            "/generate",
            json={"url": "https://crm.example.com/invoice?id=42", "fileName": "invoice-42"},
        ).json()["jobId"]

        first = client.get(f"/status/{job_id}").json()
        second = client.get(f"/status/{job_id}").json()

        assert first == second
        assert first["state"] == "completed"
        assert first["progress"] == 100
        assert first["result"] == {"status": "success", "url": CDN_PDF, "size": 1024}

    def test_status_of_unknown_job(self, client):
        response = client.get("/status/pdf_doesnotexist")

        assert response.status_code == 404
        assert response.json()["jobId"] == "pdf_doesnotexist"

    @pytest.mark.parametrize(
        "body,error",
        [
            ({"fileName": "invoice-42"}, "Missing url"),
            ({"url": "https://crm.example.com/x"}, "Missing fileName"),
            ({"url": "https://crm.example.com/x", "fileName": "a", "renderProfile": "poster"},
             "Unknown render profile"),
        ],
    )
    def test_invalid_request_is_400(self, client, context, body, error):
        response = client.post("/generate", json=body)

        assert response.status_code == 400
        assert error in response.json()["error"]
        assert client.get("/health").json()["outstanding_jobs"] == 0

    def test_admission_ceiling_returns_429(self, client, context):
        fill_queue(context, context.settings.admission_ceiling)

        response = client.post(
            "/generate",
            json={"url": "https://crm.example.com/invoice?id=42", "fileName": "invoice-42"},
        )

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "30"
        assert response.json()["retryAfter"] == 30
        assert client.get("/health").json()["outstanding_jobs"] == 5


class TestEnqueueAndWait:
    """Tests for /generate-now, /generate-now-print and /magazinePro."""

    def test_invoice_redirects_to_stored_pdf(self, client, rendered):
        response = client.get("/generate-now", params={"id": "42", "type": "invoice"})

        assert response.status_code == 302
        assert response.headers["location"] == CDN_PDF
        page = urlparse(rendered[0])
        assert page.path == "/invoice"
        assert parse_qs(page.query) == {
            "id": ["42"],
            "waterMark": ["false"],
            "mapViewButton": ["false"],
        }

    def test_print_layout(self, client, rendered):
        response = client.get("/generate-now-print", params={"id": "9", "waterMark": "true"})

        assert response.status_code == 302
        page = urlparse(rendered[0])
        assert page.path == "/print-pdf-crm"
        assert parse_qs(page.query)["waterMark"] == ["true"]

    def test_magazine_layout(self, client, rendered):
        response = client.get("/magazinePro", params={"id": "3", "proTip": "false"})

        assert response.status_code == 302
        query = parse_qs(urlparse(rendered[0]).query)
        assert query["proTip"] == ["false"]
        assert query["energyMeter"] == ["true"]

    def test_missing_id_is_400(self, client):
        response = client.get("/generate-now")

        assert response.status_code == 400
        assert response.json() == {"error": "Missing ID"}

    def test_invalid_type_lists_allowed_types(self, client):
        response = client.get("/generate-now", params={"id": "1", "type": "brochure"})

        assert response.status_code == 400
        data = response.json()
        assert data["error"] == "Invalid PDF type"
        assert "voucherCrm" in data["allowedTypes"]

    def test_failed_job_is_500_with_reason(self, client, failing):
        response = client.get("/generate-now", params={"id": "42", "type": "invoice"})

        assert response.status_code == 500
        data = response.json()
        assert data["error"] == "PDF generation failed"
        assert "Status: 500" in data["message"]

    def test_timeout_is_504_with_job_id(self, client, context):
        context.settings.wait_timeout_seconds = 0.1

        response = client.get("/generate-now", params={"id": "42"})

        assert response.status_code == 504
        data = response.json()
        assert data["jobId"].startswith("pdf_")
        assert client.get(data["statusUrl"]).json()["state"] == "queued"

    def test_admission_ceiling_applies(self, client, context):
        fill_queue(context, context.settings.admission_ceiling)

        response = client.get("/generate-now", params={"id": "42"})

        assert response.status_code == 429


class TestQueueEndpoints:
    """Tests for /queue/state and /queue/{job_id}/retry."""

    def test_queue_state(self, client, context):
        fill_queue(context, 2)

        response = client.get("/queue/state")

        assert response.status_code == 200
        data = response.json()
        assert data["queue"] == "pdf-generation"
        assert data["counts"]["waiting"] == 2
        assert data["outstanding"] == 2

    def test_retry_failed_job(self, client, failing):
        job_id = client.post(
            "/generate",
            json={"url": "https://crm.example.com/invoice?id=42", "fileName": "invoice-42"},
        ).json()["jobId"]

        response = client.post(f"/queue/{job_id}/retry")

        assert response.status_code == 200
        assert response.json()["state"] == "queued"

    def test_retry_of_queued_job_is_409(self, client):
        job_id = client.post(
            "/generate",
            json={"url": "https://crm.example.com/invoice?id=42", "fileName": "invoice-42"},
        ).json()["jobId"]

        assert client.post(f"/queue/{job_id}/retry").status_code == 409

    def test_retry_requires_token_when_secret_set(self, client, context):
        context.settings.api_secret = AUTH_SECRET

        assert client.post("/queue/pdf_x/retry").status_code == 401
        assert client.post(
            "/queue/pdf_x/retry", headers={"Authorization": "Bearer wrong-secret"}
        ).status_code == 401
        assert client.post(
            "/queue/pdf_x/retry", headers={"Authorization": f"Bearer {AUTH_SECRET}"}
        ).status_code == 409
