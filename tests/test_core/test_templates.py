"""
Tests for message templates.
"""

import pytest

from core.models import EventType
from core.templates import (
    TEMPLATES,
    build_push_payload,
    customer_template_for,
    render_email,
    substitute,
)


class TestSubstitute:
    """Tests for {{variable}} substitution."""

    def test_replaces_named_variables(self):
        """Test basic substitution, with optional inner spaces."""
        assert substitute("Hi {{name}}, {{ count }} left", {"name": "Ada", "count": 3}) == "Hi Ada, 3 left"

    def test_values_are_html_escaped(self):
        """Test that customer-supplied text cannot inject markup."""
        result = substitute("<p>{{notes}}</p>", {"notes": "<script>alert(1)</script>"})
        assert "<script>" not in result
        assert "&lt;script&gt;" in result

    def test_missing_variables_left_visible(self):
        """Test that unknown placeholders stay in the output."""
        assert substitute("Hi {{name}}", {}) == "Hi {{name}}"


class TestEmailTemplates:
    """Tests for the email template catalogue."""

    def test_catalogue(self):
        """Test that every template used by the service exists."""
        assert set(TEMPLATES) == {
            "password-reset",
            "pending-reservation",
            "confirmation",
            "direct-confirmation",
            "cancellation-confirmation",
            "reservation-update",
            "restaurant-notification",
            "quota-warning",
        }

    def test_render_quota_warning(self):
        """Test rendering subject and body together."""
        subject, body = render_email(
            "quota-warning", restaurantName="Le Petit Bistro", threshold=80, current=80, limit=100,
        )
        assert "80%" in subject
        assert "80 of your 100" in body

    def test_unknown_template(self):
        """Test that an unknown template name is an error."""
        with pytest.raises(ValueError):
            render_email("does-not-exist")


class TestCustomerTemplateSelection:
    """Tests for transactional template routing."""

    @pytest.mark.parametrize("event_type,status,expected", [
        (EventType.RESERVATION_CREATED, "pending", "pending-reservation"),
        (EventType.RESERVATION_CREATED, "confirmed", "direct-confirmation"),
        (EventType.RESERVATION_CONFIRMED, "confirmed", "confirmation"),
        (EventType.RESERVATION_CANCELLED, "cancelled", "cancellation-confirmation"),
        (EventType.RESERVATION_UPDATED, "pending", "reservation-update"),
        (EventType.RESERVATION_COMPLETED, "completed", None),
        (EventType.QUOTA_THRESHOLD, None, None),
    ])
    def test_selection(self, event_type, status, expected):
        """Test which receipt a customer gets for each event."""
        assert customer_template_for(event_type, status) == expected


class TestPushPayload:
    """Tests for web push payloads."""

    def test_payload_shape(self):
        """Test the payload has title, body, icon, badge, data and tag."""
        payload = build_push_payload(EventType.RESERVATION_CREATED, {
            "id": "R1", "customer_name": "Ada", "date": "2026-10-20", "time": "20:00",
        })

        assert payload["title"] == "New reservation"
        assert "Ada" in payload["body"]
        assert payload["data"] == {
            "reservationId": "R1",
            "type": "reservation_created",
            "url": "/reservations/R1",
        }
        assert payload["tag"] == "reservation-R1"
        assert payload["icon"] and payload["badge"]

    def test_no_push_for_completed(self):
        """Test that completion produces no push message."""
        assert build_push_payload(EventType.RESERVATION_COMPLETED, {"id": "R1"}) is None
