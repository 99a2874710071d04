"""
Shared infrastructure for the admission, token and notification subsystem.

This package contains code used by every other package:
- Domain models (Tenant, User, Reservation, NotificationPreference, ...)
- Configuration and the error taxonomy
- In-memory data store seeded from JSON fixtures
- Delivery channels (Email, Push) and message templates
"""

from core.config import Settings, get_settings, load_settings
from core.data_store import DataStore, get_data_store
from core.errors import (
    AuthError,
    ChannelDeliveryError,
    ConfigurationError,
    QuotaExceeded,
    ServiceError,
    StorageError,
    ValidationError,
)
from core.models import (
    EventType,
    NotificationPreference,
    Plan,
    PushSubscription,
    Reservation,
    Tenant,
    User,
)

__all__ = [
    "Settings",
    "get_settings",
    "load_settings",
    "DataStore",
    "get_data_store",
    "AuthError",
    "ChannelDeliveryError",
    "ConfigurationError",
    "QuotaExceeded",
    "ServiceError",
    "StorageError",
    "ValidationError",
    "EventType",
    "NotificationPreference",
    "Plan",
    "PushSubscription",
    "Reservation",
    "Tenant",
    "User",
]
