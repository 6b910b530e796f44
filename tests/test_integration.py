"""
Integration tests running the application with its lifespan.

The real TranscriptionService is created on startup; only the google-genai
client class is replaced, so requests travel through every pipeline layer.
"""

import time
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from app import main
from app.config import settings
from app.gemini_client import clear_clients
from app.main import app


PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def text_response(text: str):
    return SimpleNamespace(
        text=text,
        prompt_feedback=None,
        candidates=[SimpleNamespace(finish_reason=SimpleNamespace(name="STOP"))],
    )


@pytest.fixture
def gemini(monkeypatch):
    """Patch the SDK client class and configure a server key."""
    monkeypatch.setattr(settings, "gemini_api_key", "integration-key")
    monkeypatch.setattr(settings, "inline_max_size_mb", 1)
    monkeypatch.setattr(settings, "inter_unit_delay_seconds", 0)
    clear_clients()
    with patch('app.gemini_client.genai.Client') as client_cls:
        sdk = client_cls.return_value
        sdk.aio.models.generate_content = AsyncMock(
            side_effect=[text_response("first page"), text_response("second page")]
        )
        yield sdk
    clear_clients()


def wait_for_terminal(client: TestClient, job_id: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        data = client.get(f"/api/v1/transcribe/batch/{job_id}").json()
        if data["status"] in ("completed", "failed", "cancelled"):
            return data
        time.sleep(0.01)
    raise AssertionError(f"Job {job_id} did not finish in {timeout}s")


class TestLifespanIntegration:
    """Tests with the application started and stopped."""

    def test_service_created_on_startup(self):
        """Test that health reports healthy once startup ran."""
        with TestClient(app) as client:
            data = client.get("/api/v1/health").json()

            assert data["status"] == "healthy"
            assert main.transcription_service is not None

    def test_synchronous_transcription(self, gemini):
        """Test a multipart request through the full pipeline."""
        with TestClient(app) as client:
            response = client.post(
                "/api/v1/transcribe",
                files=[
                    ("files", ("one.png", PNG, "image/png")),
                    ("files", ("two.png", PNG, "image/png")),
                ]
            )

        assert response.status_code == 200
        assert response.json()["text"] == "first page\n\nsecond page"
        assert gemini.aio.models.generate_content.await_count == 2

    def test_batch_job_polling(self, gemini):
        """Test that a batch job completes in the background and can be polled."""
        with TestClient(app) as client:
            response = client.post(
                "/api/v1/transcribe/batch",
                files=[
                    ("files", ("one.png", PNG, "image/png")),
                    ("files", ("two.png", PNG, "image/png")),
                ]
            )
            assert response.status_code == 200

            data = wait_for_terminal(client, response.json()["job_id"])

        assert data["status"] == "completed"
        assert data["transcription"] == "first page\n\nsecond page"
        assert data["progress"] == "Done"

    def test_missing_key_is_400(self, monkeypatch):
        """Test that a request without any key fails before reaching Gemini."""
        monkeypatch.setattr(settings, "gemini_api_key", None)

        with TestClient(app) as client:
            response = client.post("/api/v1/transcribe", files={"files": ("one.png", PNG, "image/png")})

        assert response.status_code == 400
        assert "API key" in response.json()["error"]["message"]
