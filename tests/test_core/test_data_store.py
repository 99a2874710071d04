"""
Tests for the data store.

These tests verify fixture loading, recipient resolution, uniqueness
constraints and the atomic quota update.
"""

import threading
from datetime import date

import pytest

from core.data_store import DataStore
from core.errors import DuplicateKeyError
from core.models import (
    NotificationPreference,
    PeriodKey,
    PushKeys,
    PushSubscription,
    QuotaCounter,
    Reservation,
    ReservationStatus,
)


PERIOD = PeriodKey(2026, 10)


def _reservation(reservation_id: str = "R1", tenant_id: str = "rest-001") -> Reservation:
    return Reservation(
        id=reservation_id,
        tenant_id=tenant_id,
        customer_name="Ada",
        customer_email="ada@example.com",
        date=date(2026, 10, 20),
        time="20:00",
        party_size=2,
    )


class TestFixtureLoading:
    """Tests for lazily loaded seed data."""

    def test_get_tenant(self, data_store: DataStore, starter_tenant_id):
        """Test loading a tenant from restaurants.json."""
        tenant = data_store.get_tenant(starter_tenant_id)

        assert tenant is not None
        assert tenant.name == "Le Petit Bistro"
        assert tenant.quota_limit == 100

    def test_unknown_tenant(self, data_store: DataStore):
        """Test that a missing tenant returns None."""
        assert data_store.get_tenant("nope") is None

    def test_get_user_by_email_case_insensitive(self, data_store: DataStore):
        """Test email lookup ignores case and surrounding spaces."""
        user = data_store.get_user_by_email("  CLAIRE@petitbistro.example ")
        assert user is not None
        assert user.id == "user-001"

    def test_missing_data_dir_is_empty(self, tmp_path):
        """Test that a store without fixtures simply has no tenants."""
        store = DataStore(data_dir=tmp_path)
        assert store.get_tenants() == []


class TestRecipients:
    """Tests for recipient resolution."""

    def test_active_staff_only(self, data_store: DataStore, starter_tenant_id, inactive_user_id):
        """Test that inactive users and other tenants' users are excluded."""
        recipients = {u.id for u in data_store.get_recipients(starter_tenant_id)}

        assert recipients == {"user-001", "user-002"}
        assert inactive_user_id not in recipients

    def test_admins_are_not_recipients(self, data_store: DataStore):
        """Test that platform admins never receive tenant notifications."""
        for tenant in data_store.get_tenants():
            assert all(u.role.value != "admin" for u in data_store.get_recipients(tenant.id))


class TestReservations:
    """Tests for reservation storage."""

    def test_duplicate_id_rejected(self, data_store: DataStore):
        """Test that inserting the same id twice fails."""
        data_store.add_reservation(_reservation())
        with pytest.raises(DuplicateKeyError):
            data_store.add_reservation(_reservation())

    def test_update_status(self, data_store: DataStore):
        """Test that status updates replace the stored record."""
        data_store.add_reservation(_reservation())

        updated = data_store.update_reservation_status("R1", ReservationStatus.CONFIRMED)

        assert updated.status == "confirmed"
        assert data_store.get_reservation("R1").status == "confirmed"

    def test_update_unknown_reservation(self, data_store: DataStore):
        """Test updating a missing reservation returns None."""
        assert data_store.update_reservation_status("missing", ReservationStatus.CANCELLED) is None

    def test_listing_while_inserting(self, data_store: DataStore):
        """Test that listing a tenant's reservations is safe during concurrent inserts."""
        errors = []
        done = threading.Event()

        def writer():
            for i in range(2000):
                data_store.add_reservation(_reservation(f"R{i}"))
            done.set()

        def reader():
            while not done.is_set():
                try:
                    data_store.get_reservations_by_tenant("rest-001")
                except RuntimeError as e:
                    errors.append(e)
                    return

        threads = [threading.Thread(target=writer)] + [threading.Thread(target=reader) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(data_store.get_reservations_by_tenant("rest-001")) == 2000


class TestPreferences:
    """Tests for the preference uniqueness constraint."""

    def test_insert_twice_raises(self, data_store: DataStore):
        """Test that a second insert for the same user is a duplicate."""
        data_store.insert_preference(NotificationPreference(user_id="user-001"))
        with pytest.raises(DuplicateKeyError):
            data_store.insert_preference(NotificationPreference(user_id="user-001"))


class TestPushSubscriptions:
    """Tests for push endpoint storage."""

    def _subscription(self, endpoint: str, user_id: str = "user-001") -> PushSubscription:
        return PushSubscription(user_id=user_id, endpoint=endpoint, keys=PushKeys(auth="a", p256dh="p"))

    def test_upsert_by_endpoint(self, data_store: DataStore):
        """Test that registering the same endpoint twice keeps one record."""
        data_store.upsert_push_subscription(self._subscription("https://push/1"))
        data_store.upsert_push_subscription(self._subscription("https://push/1"))

        assert len(data_store.get_push_subscriptions("user-001")) == 1

    def test_delete_checks_owner(self, data_store: DataStore):
        """Test that a user cannot delete another user's endpoint."""
        data_store.upsert_push_subscription(self._subscription("https://push/1"))

        assert data_store.delete_push_subscription("https://push/1", user_id="user-002") is False
        assert data_store.delete_push_subscription("https://push/1", user_id="user-001") is True
        assert data_store.get_push_subscriptions("user-001") == []


class TestAdmitQuota:
    """Tests for the atomic quota update."""

    def test_creates_counter_lazily(self, data_store: DataStore):
        """Test that the first admission creates the counter."""
        assert data_store.get_quota_counter("rest-001") is None

        outcome = data_store.admit_quota("rest-001", PERIOD, 10)

        assert outcome.admitted is True
        assert outcome.count == 1
        assert data_store.get_quota_counter("rest-001").count == 1

    def test_refuses_at_limit(self, data_store: DataStore):
        """Test that a full counter refuses without incrementing."""
        data_store.set_quota_counter(QuotaCounter(tenant_id="rest-001", period=PERIOD, limit=2, count=2))

        outcome = data_store.admit_quota("rest-001", PERIOD, 2)

        assert outcome.admitted is False
        assert outcome.count == 2

    def test_rollover_resets_before_admitting(self, data_store: DataStore):
        """Test that a counter from an older period restarts at zero."""
        old = QuotaCounter(tenant_id="rest-001", period=PeriodKey(2026, 9), limit=100, count=55)
        old.thresholds_fired[80] = True
        data_store.set_quota_counter(old)

        outcome = data_store.admit_quota("rest-001", PERIOD, 100)

        assert outcome.rolled_over is True
        assert outcome.count == 1
        counter = data_store.get_quota_counter("rest-001")
        assert counter.period == PERIOD
        assert counter.thresholds_fired[80] is False

    def test_jump_past_several_thresholds(self, data_store: DataStore):
        """Test that one increment can set several flags, in ascending order."""
        data_store.set_quota_counter(QuotaCounter(tenant_id="rest-001", period=PERIOD, limit=2, count=1))

        outcome = data_store.admit_quota("rest-001", PERIOD, 2)

        assert outcome.fired == (80, 90, 100)

    def test_returned_counter_is_a_copy(self, data_store: DataStore):
        """Test that callers cannot mutate the stored counter."""
        data_store.admit_quota("rest-001", PERIOD, 10)

        copy = data_store.get_quota_counter("rest-001")
        copy.count = 999
        copy.thresholds_fired[80] = True

        stored = data_store.get_quota_counter("rest-001")
        assert stored.count == 1
        assert stored.thresholds_fired[80] is False

    def test_concurrent_admissions_never_exceed_limit(self, data_store: DataStore):
        """Test that a burst of threads admits exactly `limit` units."""
        limit = 25
        admitted = []
        barrier = threading.Barrier(50)

        def worker():
            barrier.wait()
            admitted.append(data_store.admit_quota("rest-001", PERIOD, limit).admitted)

        threads = [threading.Thread(target=worker) for _ in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert admitted.count(True) == limit
        assert data_store.get_quota_counter("rest-001").count == limit
