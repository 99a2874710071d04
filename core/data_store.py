"""
In-memory data store backed by JSON seed fixtures.

Restaurants and users are read lazily from data/*.json; everything the
service writes (reservations, preferences, push subscriptions, quota counters)
lives in memory. In a real deployment each collection would be a table or a
document collection; the methods here mirror the queries and the atomic
updates the service relies on.

Design decisions:
- One re-entrant lock guards the collections; quota counters additionally get
  one lock per tenant so admissions for different tenants never contend
- `admit_quota` is the single atomic conditional update for a counter:
  rollover, limit check, increment and threshold flags happen together
- Preferences enforce a uniqueness constraint on user_id; a second insert for
  the same user raises DuplicateKeyError, exactly like a unique index would
- Push subscriptions are unique per endpoint
- The notification log is capped per tenant; the oldest records are dropped
  once a tenant reaches NOTIFICATION_LOG_LIMIT
"""

import json
import math
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from core.errors import DuplicateKeyError
from core.models import (
    QUOTA_THRESHOLDS,
    RECIPIENT_ROLES,
    NotificationPreference,
    NotificationRecord,
    PeriodKey,
    PushSubscription,
    QuotaCounter,
    Reservation,
    ReservationStatus,
    Tenant,
    User,
    UserRole,
)

# Analytics records kept per tenant
NOTIFICATION_LOG_LIMIT = 10_000


@dataclass(frozen=True)
class QuotaAdmission:
    """
    Outcome of one atomic admission attempt.

    Attributes:
        admitted: Whether the increment was applied
        count: Counter value after the attempt
        limit: Limit the attempt was evaluated against
        rolled_over: True if the counter was reset into a new period first
        fired: Thresholds whose flag was set by this attempt, ascending
    """
    admitted: bool
    count: int
    limit: int
    rolled_over: bool = False
    fired: tuple[int, ...] = field(default_factory=tuple)


class DataStore:
    """
    Central data store for the subscribed collections.

    Example:
        store = DataStore(data_dir=Path("data"))
        tenant = store.get_tenant("rest-001")
        outcome = store.admit_quota("rest-001", PeriodKey(2026, 10), 400)
    """

    def __init__(self, data_dir: Optional[Path] = None):
        """
        Initialize the data store.

        Args:
            data_dir: Directory containing restaurants.json and users.json.
                     Defaults to ./data relative to the project root.
        """
        if data_dir is None:
            data_dir = Path(__file__).parent.parent / "data"

        self.data_dir = Path(data_dir)
        self._lock = threading.RLock()

        # Seed collections, loaded lazily
        self._tenants: Optional[dict[str, Tenant]] = None
        self._users: Optional[dict[str, User]] = None

        # Written by the service
        self._reservations: dict[str, Reservation] = {}
        self._preferences: dict[str, NotificationPreference] = {}  # keyed by user_id
        self._push_subscriptions: dict[str, PushSubscription] = {}  # keyed by endpoint
        self._quota_counters: dict[str, QuotaCounter] = {}  # keyed by tenant_id
        self._quota_locks: dict[str, threading.Lock] = {}
        self._notification_log: dict[str, deque[NotificationRecord]] = {}  # keyed by tenant_id

    # =========================================================================
    # Data Loading (lazy)
    # =========================================================================

    def _load_json(self, filename: str) -> list[dict]:
        """Load a JSON fixture file."""
        filepath = self.data_dir / filename
        if not filepath.exists():
            return []
        with open(filepath, "r") as f:
            return json.load(f)

    def _ensure_tenants_loaded(self):
        with self._lock:
            if self._tenants is None:
                data = self._load_json("restaurants.json")
                self._tenants = {t["id"]: Tenant(**t) for t in data}

    def _ensure_users_loaded(self):
        with self._lock:
            if self._users is None:
                data = self._load_json("users.json")
                self._users = {u["id"]: User(**u) for u in data}

    # =========================================================================
    # Tenant Operations
    # =========================================================================

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        self._ensure_tenants_loaded()
        return self._tenants.get(tenant_id)

    def get_tenants(self) -> list[Tenant]:
        self._ensure_tenants_loaded()
        with self._lock:
            return list(self._tenants.values())

    def save_tenant(self, tenant: Tenant) -> Tenant:
        """Insert or replace a tenant (plan changes, test setup)."""
        self._ensure_tenants_loaded()
        with self._lock:
            self._tenants[tenant.id] = tenant
        return tenant

    # =========================================================================
    # User Operations
    # =========================================================================

    def get_user(self, user_id: str) -> Optional[User]:
        self._ensure_users_loaded()
        return self._users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        self._ensure_users_loaded()
        wanted = email.strip().lower()
        with self._lock:
            for user in self._users.values():
                if user.email.lower() == wanted:
                    return user
        return None

    def save_user(self, user: User) -> User:
        self._ensure_users_loaded()
        with self._lock:
            self._users[user.id] = user
        return user

    def get_recipients(self, tenant_id: str, roles: Iterable[UserRole] = RECIPIENT_ROLES) -> list[User]:
        """
        Get the active staff users who receive notifications for a tenant.

        Used by the dispatcher to resolve who gets push and email.
        """
        self._ensure_users_loaded()
        wanted = {UserRole(r) for r in roles}
        with self._lock:
            return [
                u for u in self._users.values()
                if u.tenant_id == tenant_id and u.active and u.role in wanted
            ]

    # =========================================================================
    # Reservation Operations
    # =========================================================================

    def add_reservation(self, reservation: Reservation) -> Reservation:
        with self._lock:
            if reservation.id in self._reservations:
                raise DuplicateKeyError(f"Reservation {reservation.id} already exists")
            self._reservations[reservation.id] = reservation
        return reservation

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        with self._lock:
            return self._reservations.get(reservation_id)

    def get_reservations_by_tenant(self, tenant_id: str) -> list[Reservation]:
        with self._lock:
            return [r for r in self._reservations.values() if r.tenant_id == tenant_id]

    def update_reservation_status(
        self,
        reservation_id: str,
        status: ReservationStatus,
    ) -> Optional[Reservation]:
        """Update a reservation's status. Returns None if not found."""
        with self._lock:
            reservation = self._reservations.get(reservation_id)
            if reservation is None:
                return None
            updated = reservation.model_copy(update={"status": ReservationStatus(status).value})
            self._reservations[reservation_id] = updated
            return updated

    # =========================================================================
    # Notification Preference Operations
    # =========================================================================

    def find_preference(self, user_id: str) -> Optional[NotificationPreference]:
        return self._preferences.get(user_id)

    def insert_preference(self, preference: NotificationPreference) -> NotificationPreference:
        """
        Insert a new preference record.

        Raises:
            DuplicateKeyError: If a record for this user already exists
        """
        with self._lock:
            if preference.user_id in self._preferences:
                raise DuplicateKeyError(f"Preferences for user {preference.user_id} already exist")
            self._preferences[preference.user_id] = preference
        return preference

    def save_preference(self, preference: NotificationPreference) -> NotificationPreference:
        with self._lock:
            self._preferences[preference.user_id] = preference
        return preference

    # =========================================================================
    # Push Subscription Operations
    # =========================================================================

    def upsert_push_subscription(self, subscription: PushSubscription) -> PushSubscription:
        """Store a subscription, replacing any previous one for the same endpoint."""
        with self._lock:
            self._push_subscriptions[subscription.endpoint] = subscription
        return subscription

    def get_push_subscriptions(self, user_id: str) -> list[PushSubscription]:
        with self._lock:
            return [s for s in self._push_subscriptions.values() if s.user_id == user_id]

    def delete_push_subscription(self, endpoint: str, user_id: Optional[str] = None) -> bool:
        """Delete a subscription by endpoint, optionally only if owned by user_id."""
        with self._lock:
            existing = self._push_subscriptions.get(endpoint)
            if existing is None or (user_id is not None and existing.user_id != user_id):
                return False
            del self._push_subscriptions[endpoint]
            return True

    # =========================================================================
    # Quota Operations
    # =========================================================================

    def _quota_lock(self, tenant_id: str) -> threading.Lock:
        with self._lock:
            lock = self._quota_locks.get(tenant_id)
            if lock is None:
                lock = self._quota_locks[tenant_id] = threading.Lock()
            return lock

    def get_quota_counter(self, tenant_id: str) -> Optional[QuotaCounter]:
        """Return a copy of the tenant's counter, or None if never admitted."""
        with self._quota_lock(tenant_id):
            counter = self._quota_counters.get(tenant_id)
            if counter is None:
                return None
            return replace(counter, thresholds_fired=dict(counter.thresholds_fired))

    def admit_quota(self, tenant_id: str, period: PeriodKey, limit: int) -> QuotaAdmission:
        """
        Atomically admit one unit against a tenant's counter.

        Under the tenant's lock: create the counter if missing, reset it if it
        belongs to an older period, refuse if `count >= limit`, otherwise
        increment and set every threshold flag that the new percentage reaches
        for the first time.

        Args:
            tenant_id: Tenant being admitted
            period: The current calendar period
            limit: The tenant's monthly limit (must not be UNLIMITED)
        """
        with self._quota_lock(tenant_id):
            counter = self._quota_counters.get(tenant_id)
            rolled_over = False
            if counter is None:
                counter = QuotaCounter(tenant_id=tenant_id, period=period, limit=limit)
                self._quota_counters[tenant_id] = counter
            elif counter.period != period:
                counter.reset(period)
                rolled_over = True
            counter.limit = limit

            if counter.count >= limit:
                return QuotaAdmission(
                    admitted=False,
                    count=counter.count,
                    limit=limit,
                    rolled_over=rolled_over,
                )

            counter.count += 1
            percentage = math.floor(100 * counter.count / limit)
            fired = []
            for threshold in QUOTA_THRESHOLDS:
                if percentage >= threshold and not counter.thresholds_fired[threshold]:
                    counter.thresholds_fired[threshold] = True
                    fired.append(threshold)

            return QuotaAdmission(
                admitted=True,
                count=counter.count,
                limit=limit,
                rolled_over=rolled_over,
                fired=tuple(fired),
            )

    def reset_quota(self, tenant_id: str, period: PeriodKey, limit: int) -> QuotaCounter:
        """Force a counter to zero with cleared flags for `period`."""
        with self._quota_lock(tenant_id):
            counter = self._quota_counters.get(tenant_id)
            if counter is None:
                counter = QuotaCounter(tenant_id=tenant_id, period=period, limit=limit)
                self._quota_counters[tenant_id] = counter
            else:
                counter.limit = limit
                counter.reset(period)
            return replace(counter, thresholds_fired=dict(counter.thresholds_fired))

    def set_quota_counter(self, counter: QuotaCounter) -> None:
        """Install a counter as-is (seeding and migrations)."""
        with self._quota_lock(counter.tenant_id):
            self._quota_counters[counter.tenant_id] = counter

    # =========================================================================
    # Notification Log
    # =========================================================================

    def add_notification_records(self, records: Iterable[NotificationRecord]) -> None:
        with self._lock:
            for record in records:
                log = self._notification_log.get(record.tenant_id)
                if log is None:
                    log = self._notification_log[record.tenant_id] = deque(maxlen=NOTIFICATION_LOG_LIMIT)
                log.append(record)

    def get_notification_records(
        self,
        tenant_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[NotificationRecord]:
        """Records of one tenant, oldest first, optionally within [since, until]."""
        with self._lock:
            records = list(self._notification_log.get(tenant_id, ()))
        return [
            r for r in records
            if (since is None or r.sent_at >= since) and (until is None or r.sent_at <= until)
        ]

    # =========================================================================
    # Utility Methods
    # =========================================================================

    def reload(self):
        """Force the seed collections to be re-read from JSON."""
        with self._lock:
            self._tenants = None
            self._users = None


# Module-level singleton for convenience
# In tests, create a new DataStore instance with test fixtures
_default_store: Optional[DataStore] = None


def get_data_store() -> DataStore:
    """Get the default data store singleton."""
    global _default_store
    if _default_store is None:
        _default_store = DataStore()
    return _default_store
