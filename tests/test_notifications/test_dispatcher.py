"""
Tests for the notification dispatcher.

These tests verify routing (who gets what on which channel), preference
gating, and that a failing channel never affects the others or the caller.
"""

import asyncio
import re
from datetime import date

import pytest

from core.channels import ChannelType
from core.models import PreferenceUpdate, PushKeys, PushSubscription, Reservation, ReservationStatus
from notifications.analytics import NotificationAnalytics
from notifications.dispatcher import NotificationDispatcher
from notifications.events import quota_threshold, reservation_created, reservation_status_changed
from security.tokens import TokenService

pytestmark = pytest.mark.asyncio

CLAIRE = "claire@petitbistro.example"
HUGO = "hugo@petitbistro.example"
PAUL = "paul@petitbistro.example"
GUEST = "ada@example.com"


class RecordingConnection:
    def __init__(self, connection_id: str):
        self.id = connection_id
        self.frames: list[dict] = []
        self.closed = False

    async def send(self, frame: dict) -> None:
        self.frames.append(frame)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def dashboard(hub) -> RecordingConnection:
    """A dashboard tab open on rest-001."""
    connection = RecordingConnection("tab-1")
    hub.subscribe("rest-001", connection, user_id="user-001")
    return connection


@pytest.fixture
def dispatcher(channels, data_store, hub, preferences, tokens) -> NotificationDispatcher:
    return NotificationDispatcher(
        channels=channels,
        data_store=data_store,
        hub=hub,
        preferences=preferences,
        tokens=tokens,
        app_base_url="https://app.example",
    )


@pytest.fixture
def claire_phone(data_store) -> str:
    """Claire (user-001) has one registered push endpoint."""
    endpoint = "https://push.example/claire-phone"
    data_store.upsert_push_subscription(PushSubscription(
        user_id="user-001", endpoint=endpoint, keys=PushKeys(auth="a", p256dh="p"),
    ))
    return endpoint


def _reservation(status: ReservationStatus = ReservationStatus.PENDING) -> Reservation:
    return Reservation(
        id="R1",
        tenant_id="rest-001",
        customer_name="Ada Lovelace",
        customer_email=GUEST,
        date=date(2026, 10, 20),
        time="20:00",
        party_size=4,
        status=status,
        notes="Window table please",
    )


def _email_to(brevo, address: str) -> dict:
    return next(r for r in brevo.requests if r["to"][0]["email"] == address)


class TestReservationCreated:
    """Tests for the full fan-out of a new reservation."""

    async def test_all_channels(self, dispatcher, brevo, push_sender, dashboard, claire_phone):
        """Test dashboard, push, staff email and customer receipt all go out."""
        report = await dispatcher.dispatch(reservation_created(_reservation()))

        assert report.failed == []
        assert dashboard.frames[0]["event"] == "reservation_created"
        assert push_sender.endpoints() == [claire_phone]
        assert sorted(brevo.recipients()) == sorted([CLAIRE, HUGO, GUEST])
        assert PAUL not in brevo.recipients()

    async def test_staff_email_content(self, dispatcher, brevo, claire_phone):
        """Test the staff notification uses the restaurant template."""
        await dispatcher.dispatch(reservation_created(_reservation()))

        staff = _email_to(brevo, HUGO)
        assert staff["subject"] == "[TableMaster] New reservation - Ada Lovelace"
        assert "20 October 2026" in staff["htmlContent"]
        assert "Window table please" in staff["htmlContent"]

    async def test_customer_receipt_has_cancel_link(self, dispatcher, brevo, tokens: TokenService):
        """Test the pending receipt links to a valid cancellation token."""
        await dispatcher.dispatch(reservation_created(_reservation()))

        receipt = _email_to(brevo, GUEST)
        assert receipt["subject"].startswith("Reservation request received")
        assert receipt["replyTo"] == {"email": "contact@petitbistro.example"}
        token = re.search(r"/reservations/cancel\?token=([\w.\-]+)", receipt["htmlContent"]).group(1)
        claims = tokens.validate_reservation_cancel(token)
        assert (claims.reservation_id, claims.restaurant_id) == ("R1", "rest-001")

    async def test_direct_confirmation(self, dispatcher, brevo):
        """Test that a reservation created as confirmed gets the direct confirmation."""
        await dispatcher.dispatch(reservation_created(_reservation(ReservationStatus.CONFIRMED)))

        assert _email_to(brevo, GUEST)["subject"] == "Your reservation at Le Petit Bistro"


class TestStatusChanges:
    """Tests for routing of status change events."""

    async def test_confirmed(self, dispatcher, brevo, push_sender, dashboard, claire_phone):
        """Test that a confirmation pushes to staff and emails only the customer."""
        await dispatcher.dispatch(reservation_status_changed(_reservation(ReservationStatus.CONFIRMED)))

        assert dashboard.frames[0]["event"] == "reservation_confirmed"
        assert push_sender.calls[0][1]["title"] == "Reservation confirmed"
        assert brevo.recipients() == [GUEST]
        assert _email_to(brevo, GUEST)["subject"].startswith("Reservation confirmed")

    async def test_cancelled(self, dispatcher, brevo):
        """Test that a cancellation notifies staff and the customer."""
        await dispatcher.dispatch(reservation_status_changed(_reservation(ReservationStatus.CANCELLED)))

        assert sorted(brevo.recipients()) == sorted([CLAIRE, HUGO, GUEST])
        assert "/reservations/cancel" not in _email_to(brevo, GUEST)["htmlContent"]

    async def test_completed_is_dashboard_only(self, dispatcher, brevo, push_sender, dashboard, claire_phone):
        """Test that completion only reaches the dashboard."""
        report = await dispatcher.dispatch(reservation_status_changed(_reservation(ReservationStatus.COMPLETED)))

        assert dashboard.frames[0]["event"] == "reservation_completed"
        assert brevo.requests == []
        assert push_sender.calls == []
        assert report.failed == []


class TestPreferences:
    """Tests for preference gating."""

    async def test_push_disabled(self, dispatcher, preferences, push_sender, dashboard, claire_phone):
        """Test that disabling push stops push but not the dashboard."""
        preferences.update("user-001", PreferenceUpdate(push_enabled=False))

        await dispatcher.dispatch(reservation_created(_reservation()))

        assert push_sender.calls == []
        assert len(dashboard.frames) == 1

    async def test_event_flag_disables_staff_email(self, dispatcher, preferences, brevo):
        """Test that an event opt-out removes that user's staff email only."""
        preferences.update("user-002", PreferenceUpdate(events={"created": False}))

        await dispatcher.dispatch(reservation_created(_reservation()))

        assert HUGO not in brevo.recipients()
        assert CLAIRE in brevo.recipients()

    async def test_customer_email_is_never_gated(self, dispatcher, preferences, brevo):
        """Test that transactional receipts ignore staff preferences."""
        for user_id in ("user-001", "user-002"):
            preferences.update(user_id, PreferenceUpdate(email_enabled=False, push_enabled=False))

        await dispatcher.dispatch(reservation_created(_reservation()))

        assert brevo.recipients() == [GUEST]


class TestFailureIsolation:
    """Tests that one failing channel never affects the others."""

    async def test_email_down_push_and_dashboard_succeed(self, dispatcher, brevo, push_sender, dashboard, claire_phone):
        """Test that an email outage still delivers push and the dashboard frame."""
        brevo.raise_network_error = True

        report = await dispatcher.dispatch(reservation_created(_reservation()))

        assert len(dashboard.frames) == 1
        assert push_sender.endpoints() == [claire_phone]
        assert {r.channel for r in report.failed} == {ChannelType.EMAIL}
        assert len(report.failed) == 3
        assert all(r.success for r in report.by_channel(ChannelType.PUSH))

    async def test_unexpected_error_is_contained(self, dispatcher, preferences, dashboard, monkeypatch):
        """Test that a bug in a channel path becomes a failed result."""
        def broken(user_id):
            raise RuntimeError("preference store offline")

        monkeypatch.setattr(preferences, "get", broken)

        report = await dispatcher.dispatch(reservation_created(_reservation()))

        assert len(dashboard.frames) == 1
        assert any("preference store offline" in (r.error or "") for r in report.failed)
        assert report.by_channel(ChannelType.SSE)[0].success is True

    async def test_recipient_lookup_failure(self, dispatcher, data_store, dashboard, monkeypatch):
        """Test that failing to resolve recipients still broadcasts."""
        def broken(tenant_id, *args, **kwargs):
            raise RuntimeError("users collection unavailable")

        monkeypatch.setattr(data_store, "get_recipients", broken)

        report = await dispatcher.dispatch(reservation_created(_reservation()))

        assert len(dashboard.frames) == 1
        assert report.failed == []


class TestQuotaThreshold:
    """Tests for quota warning delivery."""

    async def test_warning_to_tenant_contact(self, dispatcher, brevo, push_sender, dashboard, claire_phone):
        """Test that the warning goes to the tenant address and the dashboard, not push."""
        await dispatcher.dispatch(quota_threshold("rest-001", 80, 80, 100))

        assert brevo.recipients() == ["contact@petitbistro.example"]
        assert "80%" in brevo.requests[0]["subject"]
        assert dashboard.frames[0]["event"] == "quota_threshold"
        assert push_sender.calls == []


class TestScheduling:
    """Tests for detached dispatch."""

    async def test_schedule_and_drain(self, dispatcher, brevo, dashboard):
        """Test that scheduled work completes in the background."""
        task = dispatcher.schedule(reservation_created(_reservation()))

        assert dispatcher.pending_count == 1
        await dispatcher.drain()

        assert task.done()
        assert dispatcher.pending_count == 0
        assert len(dashboard.frames) == 1
        assert GUEST in brevo.recipients()

    async def test_scheduled_failure_is_swallowed(self, dispatcher, brevo):
        """Test that a failing background email never raises to the caller."""
        brevo.statuses = [400]

        task = dispatcher.schedule_email(
            to=CLAIRE,
            template_name="password-reset",
            params={"userName": "Claire", "resetLink": "https://app.example/reset-password?token=x"},
        )
        await dispatcher.drain()

        results = task.result()
        assert results[0].success is False
        assert results[0].channel == ChannelType.EMAIL

    async def test_schedule_requires_running_loop(self, dispatcher):
        """Test that scheduling from a thread without an event loop fails loudly."""
        with pytest.raises(RuntimeError):
            await asyncio.to_thread(dispatcher.schedule, reservation_created(_reservation()))

        assert dispatcher.pending_count == 0


class TestAnalytics:
    """Tests for feeding dispatch outcomes to the analytics log."""

    async def test_outcomes_are_recorded(self, channels, data_store, hub, preferences, tokens, brevo, dashboard, claire_phone):
        """Test that a dispatch logs one record per attempted delivery."""
        dispatcher = NotificationDispatcher(
            channels=channels, data_store=data_store, hub=hub, preferences=preferences,
            tokens=tokens, analytics=NotificationAnalytics(data_store),
        )
        brevo.raise_network_error = True

        await dispatcher.dispatch(reservation_created(_reservation()))

        records = data_store.get_notification_records("rest-001")
        by_channel = {}
        for record in records:
            by_channel.setdefault(record.channel, []).append(record.status.value)
        assert by_channel["sse"] == ["delivered"]
        assert by_channel["push"] == ["delivered"]
        assert by_channel["email"] == ["failed"] * 3

    async def test_recording_failure_does_not_affect_delivery(self, channels, data_store, hub, preferences, dashboard):
        """Test that a broken analytics log is logged and the report still returned."""
        analytics = NotificationAnalytics(data_store)

        def broken(report):
            raise RuntimeError("analytics store offline")

        analytics.record_report = broken
        dispatcher = NotificationDispatcher(
            channels=channels, data_store=data_store, hub=hub, preferences=preferences, analytics=analytics,
        )

        report = await dispatcher.dispatch(reservation_created(_reservation()))

        assert len(dashboard.frames) == 1
        assert report.by_channel(ChannelType.SSE)[0].success is True
