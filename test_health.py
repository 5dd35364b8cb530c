"""
Tests for health checks, the catch-all error handler, metrics and the phone and timestamp helpers.
"""

from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from conftest import post_inbound
from inbox import storage
from inbox.config import settings
from inbox.main import app
from inbox.utils import channel_from_address, format_ts, is_valid_phone, normalize_phone


class TestHealth:
    """Test /health/live and /health/ready."""

    def test_live(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_without_auth_secret(self, client, monkeypatch):
        monkeypatch.setattr(settings, "AUTH_SECRET", "")

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["reason"] == "AUTH_SECRET not configured"


class TestUnhandledErrors:
    """Test the catch-all error handler."""

    def test_unexpected_error_returns_500(self, client, monkeypatch):
        """Test an exception escaping a route becomes a generic 500 body."""
        def broken_list(db):
            raise RuntimeError("connection reset")

        monkeypatch.setattr(storage, "list_contacts", broken_list)

        with TestClient(app, raise_server_exceptions=False) as failing_client:
            response = failing_client.get("/api/contacts")

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}


class TestMetrics:
    """Test the Prometheus endpoint."""

    def test_metrics_exposed(self, client):
        client.get("/health/live")
        post_inbound(client, "+14155550123", "Hi", "SMmetrics")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        body = response.text
        assert "http_requests_total" in body
        assert 'webhook_requests_total{result="created"}' in body
        assert "request_latency_seconds_bucket" in body

    def test_path_label_uses_route_template(self, client):
        """Test ids in the URL are not used as metric labels."""
        client.get("/api/contacts/some-unique-id-123")

        body = client.get("/metrics").text

        assert "some-unique-id-123" not in body
        assert 'path="/api/contacts/{contact_id}"' in body


class TestPhoneHelpers:
    """Test phone normalization and channel detection."""

    def test_normalize_strips_prefix_and_formatting(self):
        assert normalize_phone("whatsapp:+1 (415) 555-0100") == "+14155550100"
        assert normalize_phone(" +44.20.7946.0958 ") == "+442079460958"

    def test_is_valid_phone(self):
        assert is_valid_phone("+14155550100")
        assert is_valid_phone("14155550100")
        assert not is_valid_phone("+0123")
        assert not is_valid_phone("+1")
        assert not is_valid_phone("+1234567890123456")

    def test_channel_from_address(self):
        assert channel_from_address("whatsapp:+14155550100") == "whatsapp"
        assert channel_from_address("+14155550100", "whatsapp:+14155550199") == "whatsapp"
        assert channel_from_address("+14155550100", "+14155550199") == "sms"

    def test_format_ts(self):
        naive = datetime(2025, 1, 15, 10, 0, 0, 123456)
        aware = datetime(2025, 1, 15, 12, 0, tzinfo=timezone(timedelta(hours=2)))

        assert format_ts(naive) == "2025-01-15T10:00:00.123Z"
        assert format_ts(aware) == "2025-01-15T10:00:00.000Z"
        assert format_ts(None) is None
