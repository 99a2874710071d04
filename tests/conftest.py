"""
Shared pytest fixtures for the notification service tests.

These fixtures provide consistent test data, fake providers and fresh state
between tests. No test talks to a real email or push provider: email goes
through an httpx.MockTransport and push through an in-memory sender.
"""

import json
from pathlib import Path

import httpx
import pytest
from pywebpush import WebPushException

from core.channels import EmailChannel, NotificationChannels, PushChannel
from core.config import Settings
from core.data_store import DataStore
from notifications.event_bus import EventHub
from notifications.preferences import PreferenceStore
from security.tokens import TokenService


TEST_SECRET = "test-signing-secret-0123456789abcdef"


@pytest.fixture
def data_dir() -> Path:
    """Path to the seed data directory."""
    return Path(__file__).parent.parent / "data"


@pytest.fixture
def data_store(data_dir: Path) -> DataStore:
    """
    Fresh DataStore instance for each test.

    Uses the real JSON fixtures but creates a new instance
    so tests don't interfere with each other.
    """
    return DataStore(data_dir=data_dir)


@pytest.fixture
def settings() -> Settings:
    """Settings with both provider channels enabled and fake credentials."""
    return Settings(
        jwt_secret=TEST_SECRET,
        brevo_api_key="test-brevo-key",
        vapid_public_key="test-vapid-public",
        vapid_private_key="test-vapid-private",
        email_max_retries=3,
        email_retry_min_timeout=1.0,
        email_retry_max_timeout=5.0,
        app_base_url="https://app.example",
    )


@pytest.fixture
def tokens() -> TokenService:
    return TokenService(secret=TEST_SECRET)


# =============================================================================
# Fake Providers
# =============================================================================

class FakeBrevo:
    """
    Stand-in for the Brevo transactional API.

    Responds 201 by default; queue statuses in `statuses` to make the next
    requests fail, or set `raise_network_error` to simulate an outage.
    """

    def __init__(self):
        self.requests: list[dict] = []
        self.statuses: list[int] = []
        self.raise_network_error = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        if self.raise_network_error:
            raise httpx.ConnectError("connection refused", request=request)
        status = self.statuses.pop(0) if self.statuses else 201
        if status < 300:
            return httpx.Response(status, json={"messageId": f"<msg-{len(self.requests)}@brevo>"})
        return httpx.Response(status, json={"code": "error", "message": f"status {status}"})

    def recipients(self) -> list[str]:
        return [r["to"][0]["email"] for r in self.requests]


class FakeResponse:
    def __init__(self, status_code: int):
        self.status_code = status_code
        self.text = ""
        self.headers = {}


class FakePushSender:
    """
    Records web push calls; endpoints listed in `fail_with` answer with the
    given provider status.
    """

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.fail_with: dict[str, int] = {}

    def __call__(self, subscription_info: dict, data: str) -> FakeResponse:
        endpoint = subscription_info["endpoint"]
        self.calls.append((endpoint, json.loads(data)))
        status = self.fail_with.get(endpoint)
        if status is not None:
            raise WebPushException(f"Push failed: {status}", response=FakeResponse(status))
        return FakeResponse(201)

    def endpoints(self) -> list[str]:
        return [endpoint for endpoint, _ in self.calls]


class FakeSleep:
    """Records backoff delays instead of sleeping."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def brevo() -> FakeBrevo:
    return FakeBrevo()


@pytest.fixture
def push_sender() -> FakePushSender:
    return FakePushSender()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def email_channel(settings: Settings, brevo: FakeBrevo, fake_sleep: FakeSleep) -> EmailChannel:
    """Email channel wired to the fake Brevo API."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(brevo.handler))
    return EmailChannel(settings, client=client, sleep=fake_sleep)


@pytest.fixture
def push_channel(settings: Settings, data_store: DataStore, push_sender: FakePushSender) -> PushChannel:
    """Push channel wired to the fake sender."""
    return PushChannel(settings, data_store, sender=push_sender)


@pytest.fixture
def channels(email_channel: EmailChannel, push_channel: PushChannel) -> NotificationChannels:
    """Fresh NotificationChannels facade for each test."""
    return NotificationChannels(email=email_channel, push=push_channel)


@pytest.fixture
def hub() -> EventHub:
    """Event hub with short timeouts so failing writes are detected quickly."""
    return EventHub(write_timeout=0.1, heartbeat_interval=0.05)


@pytest.fixture
def preferences(data_store: DataStore) -> PreferenceStore:
    return PreferenceStore(data_store)


# =============================================================================
# Seed Data Fixtures
# =============================================================================

@pytest.fixture
def starter_tenant_id() -> str:
    """Le Petit Bistro: starter plan, 100 reservations per month, two active staff."""
    return "rest-001"


@pytest.fixture
def pro_tenant_id() -> str:
    """La Grande Table: pro plan, unlimited."""
    return "rest-002"


@pytest.fixture
def owner_user_id() -> str:
    """Claire, owner of rest-001."""
    return "user-001"


@pytest.fixture
def staff_user_id() -> str:
    """Hugo, server at rest-001."""
    return "user-002"


@pytest.fixture
def inactive_user_id() -> str:
    """Paul, deactivated server at rest-001; never receives notifications."""
    return "user-004"


@pytest.fixture
def admin_user_id() -> str:
    return "admin-001"
