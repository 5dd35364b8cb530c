"""
Pytest configuration and shared fixtures.

Test environment variables are set here before any inbox imports, since
settings are read once at import time. Values already present in the
environment win.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_inbox.db")
os.environ.setdefault("AUTH_SECRET", "test-auth-secret-with-enough-length-for-hs256")
os.environ.setdefault("AUTH_BASE_URL", "http://testserver")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("TWILIO_ACCOUNT_SID", "ACtest")
os.environ.setdefault("TWILIO_AUTH_TOKEN", "test-twilio-token")
os.environ.setdefault("TWILIO_PHONE_NUMBER", "+14155550100")
os.environ.setdefault("TWILIO_WHATSAPP_NUMBER", "+14155550199")
os.environ.setdefault("GITHUB_CLIENT_ID", "gh-client-id")
os.environ.setdefault("GITHUB_CLIENT_SECRET", "gh-client-secret")

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from inbox.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient

from inbox.main import app
from inbox.messaging import get_sender
from inbox.storage import Base, engine


class FakeSender:
    """Records sends instead of calling Twilio. Set `error` to make sends fail."""

    def __init__(self):
        self.sent = []
        self.error = None

    def send(self, channel: str, to_phone: str, body: str) -> str:
        if self.error is not None:
            raise self.error
        self.sent.append({"channel": channel, "to": to_phone, "body": body})
        return f"SM{len(self.sent):032d}"


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture(scope="function")
def client(sender):
    """Create test client with fresh database and a fake sender for each test."""
    Base.metadata.create_all(bind=engine)
    app.dependency_overrides[get_sender] = lambda: sender

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


def create_contact(client, name: str = "Ada Lovelace", phone: str = "+14155550123", channel: str = "sms") -> dict:
    """Create a contact through the API and return its JSON."""
    response = client.post("/api/contacts", json={"name": name, "phone": phone, "channel": channel})
    assert response.status_code == 201, response.text
    return response.json()


def post_inbound(client, from_: str, body: str, sid: str, to: str = "+14155550100"):
    """Post a form-encoded inbound message the way Twilio does."""
    return client.post(
        "/api/webhooks/twilio",
        data={"From": from_, "To": to, "Body": body, "MessageSid": sid},
    )
