"""
Request and response models for the HTTP API.

These are separate from the domain models in core.models: they describe what
crosses the wire, with camelCase where the dashboard expects it.
"""

from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from core.models import PushKeys, ReservationStatus


class ReservationCreate(BaseModel):
    """Booking request submitted for a restaurant."""
    customer_name: str = Field(..., min_length=1, description="Guest name")
    customer_email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+$", description="Guest email, receives the receipt")
    customer_phone: Optional[str] = Field(default=None)
    date: date
    time: str = Field(..., pattern=r"^\d{2}:\d{2}$", description="Local time, HH:MM")
    party_size: int = Field(..., ge=1, le=50)
    notes: str = Field(default="", max_length=500)
    status: ReservationStatus = Field(
        default=ReservationStatus.PENDING,
        description="Staff may create a reservation directly as confirmed",
    )


class ReservationStatusUpdate(BaseModel):
    status: ReservationStatus


class ReservationResponse(BaseModel):
    """A reservation as returned by the API."""
    id: str
    restaurant_id: str
    customer_name: str
    customer_email: str
    date: date
    time: str
    party_size: int
    status: str
    notes: str = ""


class PasswordResetRequest(BaseModel):
    email: str = Field(..., min_length=3)


class PasswordResetValidation(BaseModel):
    valid: bool
    user_id: str = Field(..., serialization_alias="userId")

    model_config = ConfigDict(populate_by_name=True)


class PushSubscriptionCreate(BaseModel):
    """Browser PushSubscription.toJSON() plus the user agent."""
    endpoint: str = Field(..., min_length=1)
    keys: PushKeys
    user_agent: Optional[str] = Field(default=None, alias="userAgent")

    model_config = ConfigDict(populate_by_name=True)


class MessageResponse(BaseModel):
    message: str
