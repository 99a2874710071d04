"""
Domain events handed to the notification dispatcher.

Events are immutable facts produced once, after the business change they
describe has been committed. Each event is consumed once by the dispatcher;
nothing is queued, stored or replayed.

Design decisions:
- Events are named in past tense (reservation_created, quota_threshold)
- Events carry everything the channels need (reservation summary, customer
  email, threshold figures) so the dispatcher never queries back into the
  booking flow
- Helper functions build properly structured events
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from core.models import EventType, Reservation, ReservationStatus, ReservationSummary


@dataclass(frozen=True)
class DomainEvent:
    """
    Something that happened to a tenant.

    Attributes:
        type: Kind of event (used for preference and template routing)
        tenant_id: Restaurant the event belongs to
        payload: Event-specific data
        timestamp: When the event occurred
        event_id: Unique identifier, used as the stream frame id
    """
    type: EventType
    tenant_id: str
    payload: dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid4()))

    def __str__(self) -> str:
        return f"DomainEvent({self.type.value}, tenant={self.tenant_id}, id={self.event_id[:8]})"

    @property
    def reservation(self) -> Optional[dict[str, Any]]:
        return self.payload.get("reservation")

    @property
    def customer_email(self) -> Optional[str]:
        reservation = self.reservation
        if reservation is None:
            return None
        return reservation.get("customer_email")

    def to_stream_data(self) -> dict[str, Any]:
        """JSON body of the dashboard frame for this event."""
        data: dict[str, Any] = {
            "type": self.type.value,
            "tenantId": self.tenant_id,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.reservation is not None:
            data["reservation"] = dict(self.reservation)
        else:
            data.update(self.payload)
        return data


RESERVATION_EVENTS_BY_STATUS: dict[str, EventType] = {
    "confirmed": EventType.RESERVATION_CONFIRMED,
    "cancelled": EventType.RESERVATION_CANCELLED,
    "completed": EventType.RESERVATION_COMPLETED,
}


def reservation_event(
    event_type: EventType,
    reservation: Reservation,
    notes: Optional[str] = None,
) -> DomainEvent:
    """
    Create a reservation lifecycle event.

    Published after the reservation change is persisted.
    """
    payload: dict[str, Any] = {
        "reservation": ReservationSummary.from_reservation(reservation).model_dump(),
        "party_size": reservation.party_size,
    }
    if notes is None:
        notes = reservation.notes
    if notes:
        payload["notes"] = notes
    return DomainEvent(type=event_type, tenant_id=reservation.tenant_id, payload=payload)


def reservation_created(reservation: Reservation) -> DomainEvent:
    return reservation_event(EventType.RESERVATION_CREATED, reservation)


def reservation_status_changed(reservation: Reservation) -> DomainEvent:
    """Map the new status to its event kind; other changes are updates."""
    event_type = RESERVATION_EVENTS_BY_STATUS.get(ReservationStatus(reservation.status).value, EventType.RESERVATION_UPDATED)
    return reservation_event(event_type, reservation)


def quota_threshold(tenant_id: str, threshold: int, current: int, limit: int) -> DomainEvent:
    """
    Create a quota_threshold event.

    Emitted at most once per threshold per tenant per billing period.
    """
    return DomainEvent(
        type=EventType.QUOTA_THRESHOLD,
        tenant_id=tenant_id,
        payload={
            "threshold": threshold,
            "current": current,
            "limit": limit,
        },
    )
