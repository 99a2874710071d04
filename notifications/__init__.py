"""
Notification fan-out: domain events, the dashboard stream hub, user
preferences and the dispatcher that ties them to the delivery channels.
"""

from notifications.dispatcher import DispatchReport, NotificationDispatcher
from notifications.event_bus import EventHub, StreamConnection, SubscriptionHandle, get_event_hub, reset_event_hub
from notifications.events import DomainEvent, quota_threshold, reservation_created, reservation_status_changed
from notifications.preferences import PreferenceStore

__all__ = [
    "DispatchReport",
    "NotificationDispatcher",
    "EventHub",
    "StreamConnection",
    "SubscriptionHandle",
    "get_event_hub",
    "reset_event_hub",
    "DomainEvent",
    "quota_threshold",
    "reservation_created",
    "reservation_status_changed",
    "PreferenceStore",
]
