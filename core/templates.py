"""
Notification message templates.

Email templates use named `{{variable}}` placeholders, substituted with
HTML-escaped values. Push messages are short title/body pairs per event kind.

Design decisions:
- Templates are plain strings kept in code; rich rendering belongs to the
  email provider, we only send the final HTML
- Unknown placeholders are left untouched so a missing variable is visible in
  the delivered message rather than raising mid-dispatch
- Staff templates and customer (transactional) templates are looked up
  separately: staff mail is preference-gated, customer mail is not
"""

import html
import re
from dataclasses import dataclass
from typing import Any, Optional

from core.models import EventType, ReservationStatus


_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def substitute(text: str, params: dict[str, Any]) -> str:
    """Replace every {{name}} for which `params` has a non-None value."""

    def _replace(match: re.Match) -> str:
        value = params.get(match.group(1))
        if value is None:
            return match.group(0)
        return html.escape(str(value))

    return _PLACEHOLDER.sub(_replace, text)


@dataclass(frozen=True)
class EmailTemplate:
    """An email subject and HTML body with {{variable}} placeholders."""
    name: str
    subject: str
    body: str

    def render(self, **params) -> tuple[str, str]:
        """
        Render the template with provided variables.

        Returns:
            Tuple of (subject, html_body)
        """
        return substitute(self.subject, params), substitute(self.body, params)


# =============================================================================
# Email Template Definitions
# =============================================================================

TEMPLATES: dict[str, EmailTemplate] = {t.name: t for t in (
    EmailTemplate(
        name="password-reset",
        subject="Reset your TableMaster password",
        body="""<p>Hi {{userName}},</p>
<p>We received a request to reset your password. The link below is valid for 24 hours.</p>
<p><a href="{{resetLink}}">Choose a new password</a></p>
<p>If you did not ask for this, you can ignore this email.</p>""",
    ),
    EmailTemplate(
        name="pending-reservation",
        subject="Reservation request received - {{restaurantName}}",
        body="""<p>Hi {{customerName}},</p>
<p>{{restaurantName}} received your request for {{partySize}} guest(s) on {{reservationDate}} at {{reservationTime}}.
The restaurant will confirm it shortly.</p>
<p><a href="{{cancelLink}}">Cancel this reservation</a></p>""",
    ),
    EmailTemplate(
        name="confirmation",
        subject="Reservation confirmed - {{restaurantName}}",
        body="""<p>Hi {{customerName}},</p>
<p>Your reservation at {{restaurantName}} for {{partySize}} guest(s) on {{reservationDate}} at {{reservationTime}} is confirmed.</p>
<p><a href="{{cancelLink}}">Cancel this reservation</a></p>""",
    ),
    EmailTemplate(
        name="direct-confirmation",
        subject="Your reservation at {{restaurantName}}",
        body="""<p>Hi {{customerName}},</p>
<p>{{restaurantName}} booked a table for {{partySize}} guest(s) on {{reservationDate}} at {{reservationTime}} for you.</p>
<p><a href="{{cancelLink}}">Cancel this reservation</a></p>""",
    ),
    EmailTemplate(
        name="cancellation-confirmation",
        subject="Reservation cancelled - {{restaurantName}}",
        body="""<p>Hi {{customerName}},</p>
<p>Your reservation at {{restaurantName}} on {{reservationDate}} at {{reservationTime}} has been cancelled.</p>""",
    ),
    EmailTemplate(
        name="reservation-update",
        subject="Reservation updated - {{restaurantName}}",
        body="""<p>Hi {{customerName}},</p>
<p>Your reservation at {{restaurantName}} is now on {{reservationDate}} at {{reservationTime}}
for {{partySize}} guest(s). Status: {{status}}.</p>""",
    ),
    EmailTemplate(
        name="restaurant-notification",
        subject="[TableMaster] {{actionTitle}} - {{customerName}}",
        body="""<h2>{{actionTitle}}</h2>
<p>A reservation was {{actionVerb}}.</p>
<ul>
<li>Customer: {{customerName}} ({{customerEmail}})</li>
<li>Date: {{reservationDate}} at {{reservationTime}}</li>
<li>Guests: {{partySize}}</li>
<li>Status: {{status}}</li>
</ul>
<p>{{notes}}</p>""",
    ),
    EmailTemplate(
        name="quota-warning",
        subject="[TableMaster] You have used {{threshold}}% of your monthly reservations",
        body="""<p>Hello {{restaurantName}},</p>
<p>You have used {{current}} of your {{limit}} reservations this month ({{threshold}}%).</p>
<p>Upgrade to the Pro plan for unlimited reservations.</p>""",
    ),
)}


# Staff-facing template per event kind; kinds absent here send no staff email
STAFF_EMAIL_TEMPLATES: dict[EventType, str] = {
    EventType.RESERVATION_CREATED: "restaurant-notification",
    EventType.RESERVATION_UPDATED: "restaurant-notification",
    EventType.RESERVATION_CANCELLED: "restaurant-notification",
}

STAFF_ACTIONS: dict[EventType, tuple[str, str]] = {
    EventType.RESERVATION_CREATED: ("New reservation", "created"),
    EventType.RESERVATION_UPDATED: ("Reservation updated", "updated"),
    EventType.RESERVATION_CANCELLED: ("Reservation cancelled", "cancelled"),
}


def customer_template_for(event_type: EventType, status: Optional[str]) -> Optional[str]:
    """
    Pick the transactional customer template for an event, if any.

    A reservation created directly as confirmed (phone booking) gets the
    direct confirmation; a web booking gets the pending receipt.
    """
    if event_type == EventType.RESERVATION_CREATED:
        if status == ReservationStatus.CONFIRMED.value:
            return "direct-confirmation"
        return "pending-reservation"
    if event_type == EventType.RESERVATION_CONFIRMED:
        return "confirmation"
    if event_type == EventType.RESERVATION_CANCELLED:
        return "cancellation-confirmation"
    if event_type == EventType.RESERVATION_UPDATED:
        return "reservation-update"
    return None


# =============================================================================
# Push Messages
# =============================================================================

PUSH_MESSAGES: dict[EventType, tuple[str, str]] = {
    EventType.RESERVATION_CREATED: (
        "New reservation",
        "New reservation from {customer_name} on {date} at {time}",
    ),
    EventType.RESERVATION_CONFIRMED: (
        "Reservation confirmed",
        "Reservation for {customer_name} on {date} at {time} was confirmed",
    ),
    EventType.RESERVATION_CANCELLED: (
        "Reservation cancelled",
        "Reservation for {customer_name} on {date} at {time} was cancelled",
    ),
    EventType.RESERVATION_UPDATED: (
        "Reservation updated",
        "Reservation for {customer_name} is now on {date} at {time}",
    ),
}

PUSH_ICON = "/icons/icon-192x192.png"
PUSH_BADGE = "/icons/badge-72x72.png"


# =============================================================================
# Template Access Functions
# =============================================================================

def get_template(name: str) -> Optional[EmailTemplate]:
    """Get an email template by name."""
    return TEMPLATES.get(name)


def render_email(name: str, **params) -> tuple[str, str]:
    """
    Render a named email template.

    Raises:
        ValueError: If the template does not exist
    """
    template = get_template(name)
    if template is None:
        raise ValueError(f"No email template named: {name}")
    return template.render(**params)


def build_push_payload(event_type: EventType, reservation: dict[str, Any]) -> Optional[dict[str, Any]]:
    """
    Build the web push payload for a reservation event.

    Returns None for event kinds that have no push message.
    """
    message = PUSH_MESSAGES.get(event_type)
    if message is None:
        return None
    title, body = message
    reservation_id = reservation.get("id")
    return {
        "title": title,
        "body": body.format(
            customer_name=reservation.get("customer_name", ""),
            date=reservation.get("date", ""),
            time=reservation.get("time", ""),
        ),
        "icon": PUSH_ICON,
        "badge": PUSH_BADGE,
        "data": {
            "reservationId": reservation_id,
            "type": event_type.value,
            "url": f"/reservations/{reservation_id}",
        },
        "tag": f"reservation-{reservation_id}",
    }
