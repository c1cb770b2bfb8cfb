"""Tests for the FastAPI endpoints."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from src.errors import (
    BatchItemFailed,
    Cancelled,
    ClinicNotProcessable,
    ConversationCreateFailed,
    NoModuleAvailable,
)
from src.models import BatchSummary, ProcessMessageResult
from src.server import app

MESSAGE = {
    "clinic_id": "c1",
    "patient_id": "p1",
    "channel": "whatsapp",
    "text": "Do you have anything on Friday?",
    "external_message_id": "wamid.1",
}


@pytest.fixture
def mock_processor():
    """Mock processor attached to app state (mirrors the lifespan)."""
    processor = MagicMock()
    processor.process_message.return_value = ProcessMessageResult(
        conversation_id="conv-1",
        module="scheduling",
        response_text="Friday 9am is free.",
        tool_call_names=("check_availability",),
    )
    app.state.processor = processor
    yield processor
    app.state.processor = None


@pytest.fixture
def mock_orchestrator():
    orchestrator = MagicMock()
    orchestrator.run_batch.return_value = BatchSummary(
        candidates=3, eligible=2, processed=1, skipped=1, failed=1,
        failures=[BatchItemFailed("c2", "conv-9", "RuntimeError", "storage timeout")],
    )
    app.state.orchestrator = orchestrator
    yield orchestrator
    app.state.orchestrator = None


@pytest.fixture
def client(mock_processor, mock_orchestrator):
    return TestClient(app)


class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["service"] == "clinic-agents"


class TestMessageWebhook:
    def test_returns_processed_reply(self, client, mock_processor):
        response = client.post("/api/webhooks/messages", json=MESSAGE)
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "processed"
        assert data["response_text"] == "Friday 9am is free."
        assert data["tool_call_count"] == 1
        assert data["tool_call_names"] == ["check_availability"]
        assert data["queued"] is False

    def test_passes_inbound_and_cancel_token(self, client, mock_processor):
        client.post("/api/webhooks/messages", json=MESSAGE)
        args, kwargs = mock_processor.process_message.call_args
        inbound = args[0]
        assert inbound.clinic_id == "c1"
        assert inbound.external_message_id == "wamid.1"
        assert kwargs["cancel"].is_set() is False

    @pytest.mark.parametrize("error", [ClinicNotProcessable("c1"), NoModuleAvailable("c1")])
    def test_skipped_is_not_an_error(self, client, mock_processor, error):
        mock_processor.process_message.side_effect = error
        response = client.post("/api/webhooks/messages", json=MESSAGE)
        assert response.status_code == 200
        assert response.json() == {"status": "skipped", "reason": type(error).__name__}

    def test_conversation_failure_is_retryable(self, client, mock_processor):
        mock_processor.process_message.side_effect = ConversationCreateFailed("c1", "p1", "whatsapp")
        response = client.post("/api/webhooks/messages", json=MESSAGE)
        assert response.status_code == 503

    def test_cancelled_returns_504(self, client, mock_processor):
        mock_processor.process_message.side_effect = Cancelled()
        response = client.post("/api/webhooks/messages", json=MESSAGE)
        assert response.status_code == 504

    def test_timeout_sets_cancel_token(self, client, mock_processor):
        seen = {}

        def slow(inbound, *, cancel):
            seen["cancel"] = cancel
            cancel.wait(timeout=2)
            raise Cancelled()

        mock_processor.process_message.side_effect = slow
        with patch("src.config.PROCESS_TIMEOUT_SECONDS", 0.05):
            response = client.post("/api/webhooks/messages", json=MESSAGE)
        assert response.status_code == 504
        assert seen["cancel"].is_set()

    def test_unexpected_error_does_not_leak(self, client, mock_processor):
        mock_processor.process_message.side_effect = RuntimeError("password=hunter2")
        response = client.post("/api/webhooks/messages", json=MESSAGE)
        assert response.status_code == 500
        assert "hunter2" not in response.text
        assert "internal error" in response.json()["detail"]

    def test_validates_empty_text(self, client):
        response = client.post("/api/webhooks/messages", json={**MESSAGE, "text": ""})
        assert response.status_code == 422

    def test_validates_missing_clinic(self, client):
        body = {k: v for k, v in MESSAGE.items() if k != "clinic_id"}
        assert client.post("/api/webhooks/messages", json=body).status_code == 422

    def test_response_includes_request_id_header(self, client):
        response = client.get("/api/health")
        assert "X-Request-ID" in response.headers

    def test_client_supplied_request_id_is_echoed(self, client):
        response = client.get("/api/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"


class TestCronEndpoint:
    def test_runs_batch_with_valid_secret(self, client, mock_orchestrator):
        with patch("src.config.CRON_SECRET", "s3cret"):
            response = client.post(
                "/api/cron/follow-ups", headers={"Authorization": "Bearer s3cret"},
            )
        assert response.status_code == 200
        data = response.json()
        assert (data["candidates"], data["processed"], data["failed"]) == (3, 1, 1)
        assert data["failures"] == [
            {"clinic_id": "c2", "conversation_id": "conv-9", "error_type": "RuntimeError"},
        ]

    def test_wrong_secret_is_rejected(self, client, mock_orchestrator):
        with patch("src.config.CRON_SECRET", "s3cret"):
            response = client.post(
                "/api/cron/follow-ups", headers={"Authorization": "Bearer nope"},
            )
        assert response.status_code == 401
        mock_orchestrator.run_batch.assert_not_called()

    def test_missing_header_is_rejected(self, client):
        with patch("src.config.CRON_SECRET", "s3cret"):
            assert client.post("/api/cron/follow-ups").status_code == 401

    def test_disabled_without_secret(self, client):
        with patch("src.config.CRON_SECRET", None):
            response = client.post(
                "/api/cron/follow-ups", headers={"Authorization": "Bearer anything"},
            )
        assert response.status_code == 401

    def test_batch_error_returns_500(self, client, mock_orchestrator):
        mock_orchestrator.run_batch.side_effect = RuntimeError("db down")
        with patch("src.config.CRON_SECRET", "s3cret"):
            response = client.post(
                "/api/cron/follow-ups", headers={"Authorization": "Bearer s3cret"},
            )
        assert response.status_code == 500
        assert "db down" not in response.text


class TestConfirmationsEndpoint:
    @pytest.fixture
    def mock_confirmations(self):
        confirmations = MagicMock()
        confirmations.run_batch.return_value = BatchSummary(
            candidates=2, eligible=1, processed=1, skipped=0, failed=1,
            failures=[BatchItemFailed("c1", None, "RuntimeError", "send failed")],
        )
        app.state.confirmations = confirmations
        yield confirmations
        app.state.confirmations = None

    def test_runs_batch_with_valid_secret(self, client, mock_confirmations):
        with patch("src.config.CRON_SECRET", "s3cret"):
            response = client.post(
                "/api/cron/confirmations", headers={"Authorization": "Bearer s3cret"},
            )
        assert response.status_code == 200
        data = response.json()
        assert (data["candidates"], data["processed"], data["failed"]) == (2, 1, 1)
        assert data["failures"] == [
            {"clinic_id": "c1", "conversation_id": None, "error_type": "RuntimeError"},
        ]

    def test_wrong_secret_is_rejected(self, client, mock_confirmations):
        with patch("src.config.CRON_SECRET", "s3cret"):
            response = client.post(
                "/api/cron/confirmations", headers={"Authorization": "Bearer nope"},
            )
        assert response.status_code == 401
        mock_confirmations.run_batch.assert_not_called()

    def test_not_ready_returns_503(self, client):
        app.state.confirmations = None
        with patch("src.config.CRON_SECRET", "s3cret"):
            response = client.post(
                "/api/cron/confirmations", headers={"Authorization": "Bearer s3cret"},
            )
        assert response.status_code == 503


class TestNotReady:
    def test_returns_503_when_processor_not_initialised(self):
        app.state.processor = None
        client = TestClient(app)
        response = client.post("/api/webhooks/messages", json=MESSAGE)
        assert response.status_code == 503


class TestRootEndpoint:
    def test_root_returns_service_info(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["service"] == "Clinic Agents"
