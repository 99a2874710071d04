"""
Domain models for the admission, token and notification subsystem.

These models cover the narrow slice of the reservation platform this service
needs: tenants (restaurants) with their plan, staff users who receive
notifications, reservation summaries carried by domain events, per-user
notification preferences, push device subscriptions and quota counters.

Design decisions:
- Using Pydantic for validation and serialization of anything that crosses
  the HTTP boundary or is loaded from JSON fixtures
- Quota counters are plain dataclasses: they never leave the data store and
  are only mutated under its per-tenant lock
- Preferences default every flag to True (opt-out model)
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


UNLIMITED = -1
QUOTA_THRESHOLDS = (80, 90, 100)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class Plan(str, Enum):
    """Subscription plans. Only STARTER is metered."""
    STARTER = "starter"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class UserRole(str, Enum):
    OWNER = "restaurant"
    STAFF = "server"
    ADMIN = "admin"


# Roles that receive reservation notifications for their restaurant
RECIPIENT_ROLES = {UserRole.OWNER, UserRole.STAFF}


class ReservationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class EventType(str, Enum):
    """Kinds of domain events handed to the dispatcher."""
    RESERVATION_CREATED = "reservation_created"
    RESERVATION_CONFIRMED = "reservation_confirmed"
    RESERVATION_CANCELLED = "reservation_cancelled"
    RESERVATION_UPDATED = "reservation_updated"
    RESERVATION_COMPLETED = "reservation_completed"
    QUOTA_THRESHOLD = "quota_threshold"


# Event kind -> per-event preference flag. Kinds missing here are never
# delivered through preference-gated channels.
PREFERENCE_KEYS: dict[EventType, str] = {
    EventType.RESERVATION_CREATED: "created",
    EventType.RESERVATION_CONFIRMED: "confirmed",
    EventType.RESERVATION_CANCELLED: "cancelled",
    EventType.RESERVATION_UPDATED: "updated",
}


# =============================================================================
# Tenants and Users
# =============================================================================

class Tenant(BaseModel):
    """
    A restaurant account.

    `quota_limit` is the monthly reservation allowance; UNLIMITED (-1) means
    the tenant is never metered and no counter is ever allocated for it. None
    means the starter allowance configured for the service.
    """
    id: str = Field(..., description="Unique restaurant identifier")
    name: str = Field(..., description="Display name")
    email: str = Field(..., description="Contact address for account notices")
    phone: Optional[str] = Field(default=None)
    plan: Plan = Field(default=Plan.STARTER)
    quota_limit: Optional[int] = Field(default=None, ge=UNLIMITED)

    @property
    def unlimited(self) -> bool:
        return self.quota_limit == UNLIMITED


class User(BaseModel):
    """A dashboard user attached to a restaurant."""
    id: str = Field(..., description="Unique user identifier")
    tenant_id: Optional[str] = Field(default=None, description="Restaurant the user works for")
    name: str
    email: str
    role: UserRole = Field(default=UserRole.OWNER)
    active: bool = Field(default=True)


# =============================================================================
# Reservations
# =============================================================================

class Reservation(BaseModel):
    """
    Reservation record as persisted by the booking flow.

    The booking rules themselves (opening hours, day blocks) live elsewhere;
    this service only stores what notifications need.
    """
    id: str
    tenant_id: str
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    date: date
    time: str = Field(..., pattern=r"^\d{2}:\d{2}$")
    party_size: int = Field(..., ge=1)
    status: ReservationStatus = Field(default=ReservationStatus.PENDING)
    notes: str = ""
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(use_enum_values=True)


class ReservationSummary(BaseModel):
    """The reservation fields carried in dashboard frames and notifications."""
    id: str
    customer_name: str
    customer_email: str
    date: str
    time: str
    number_of_guests: int
    status: str
    restaurant_id: str

    @classmethod
    def from_reservation(cls, reservation: Reservation) -> "ReservationSummary":
        return cls(
            id=reservation.id,
            customer_name=reservation.customer_name,
            customer_email=reservation.customer_email,
            date=reservation.date.isoformat(),
            time=reservation.time,
            number_of_guests=reservation.party_size,
            status=ReservationStatus(reservation.status).value,
            restaurant_id=reservation.tenant_id,
        )


# =============================================================================
# Notification Preferences
# =============================================================================

class EventPreferences(BaseModel):
    """Per-event opt-in flags."""
    created: bool = True
    confirmed: bool = True
    cancelled: bool = True
    updated: bool = True


class NotificationPreference(BaseModel):
    """
    A user's notification preferences.

    Global toggles gate a whole channel; event flags gate a kind of event on
    every gated channel. The dashboard stream is never gated.
    """
    user_id: str
    push_enabled: bool = True
    email_enabled: bool = True
    events: EventPreferences = Field(default_factory=EventPreferences)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def event_enabled(self, event_key: Optional[str]) -> bool:
        """Check the per-event flag; unknown event kinds are not opted in."""
        if event_key is None:
            return False
        return bool(getattr(self.events, event_key, False))

    def should_send_push(self, event_key: Optional[str]) -> bool:
        return self.push_enabled and self.event_enabled(event_key)

    def should_send_email(self, event_key: Optional[str]) -> bool:
        return self.email_enabled and self.event_enabled(event_key)


class EventPreferencesUpdate(BaseModel):
    created: Optional[bool] = None
    confirmed: Optional[bool] = None
    cancelled: Optional[bool] = None
    updated: Optional[bool] = None


class PreferenceUpdate(BaseModel):
    """Partial update; only fields explicitly supplied are applied."""
    push_enabled: Optional[bool] = None
    email_enabled: Optional[bool] = None
    events: Optional[EventPreferencesUpdate] = None


# =============================================================================
# Push Subscriptions
# =============================================================================

class PushKeys(BaseModel):
    auth: str = Field(..., min_length=1)
    p256dh: str = Field(..., min_length=1)


class PushSubscription(BaseModel):
    """A browser push endpoint registered by a user."""
    user_id: str
    endpoint: str = Field(..., min_length=1)
    keys: PushKeys
    user_agent: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def subscription_info(self) -> dict:
        """The shape expected by the web push library."""
        return {
            "endpoint": self.endpoint,
            "keys": {"auth": self.keys.auth, "p256dh": self.keys.p256dh},
        }


# =============================================================================
# Quota
# =============================================================================

@dataclass(frozen=True, order=True)
class PeriodKey:
    """A calendar billing period (one month)."""
    year: int
    month: int

    @classmethod
    def for_datetime(cls, moment: datetime) -> "PeriodKey":
        return cls(year=moment.year, month=moment.month)

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


def _no_thresholds_fired() -> dict[int, bool]:
    return {threshold: False for threshold in QUOTA_THRESHOLDS}


@dataclass
class QuotaCounter:
    """
    Monthly admission counter for one metered tenant.

    Invariants (maintained by the data store):
    - `count` never decreases within a period
    - `count` never exceeds `limit`
    - each entry of `thresholds_fired` flips to True at most once per period
    """
    tenant_id: str
    period: PeriodKey
    limit: int
    count: int = 0
    thresholds_fired: dict[int, bool] = field(default_factory=_no_thresholds_fired)

    def reset(self, period: PeriodKey) -> None:
        self.period = period
        self.count = 0
        self.thresholds_fired = _no_thresholds_fired()


class QuotaUsage(BaseModel):
    """Usage report returned by the quota tracker."""
    current: int
    limit: int
    remaining: Optional[int] = None
    percentage: int = 0
    unlimited: bool = False


# =============================================================================
# Notification Analytics
# =============================================================================

class DeliveryStatus(str, Enum):
    """Outcome recorded for one delivered (or failed) notification."""
    DELIVERED = "delivered"
    FAILED = "failed"


class NotificationRecord(BaseModel):
    """
    One delivery attempt kept for analytics.

    Channel and event type are stored as plain strings so the log can hold
    entries for channels and events added later.
    """
    id: str
    tenant_id: str
    channel: str
    event_type: str
    status: DeliveryStatus
    recipient: str
    error: Optional[str] = None
    sent_at: datetime = Field(default_factory=utcnow)


class ChannelDeliveryRate(BaseModel):
    delivered: int = 0
    total: int = 0
    rate: float = 0.0


class NotificationBreakdown(BaseModel):
    """Count of records for one (channel, event type) pair, split by status."""
    channel: str
    event_type: str
    total: int
    by_status: dict[str, int]


class NotificationAnalyticsReport(BaseModel):
    """Delivery statistics of one restaurant over a trailing window."""
    tenant_id: str
    days: int
    since: datetime
    delivery_rate: dict[str, ChannelDeliveryRate]
    breakdown: list[NotificationBreakdown]
