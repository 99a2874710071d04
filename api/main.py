"""
FastAPI application for the admission, token and notification service.

This application provides:
1. Reservation creation guarded by the quota tracker, and status changes
2. Quota usage and the administrative quota reset
3. The live dashboard stream (text/event-stream)
4. Password reset requests and public cancellation by signed token
5. Notification preferences and push subscription registration
6. Notification delivery analytics for administrators

Every business endpoint commits its change first and only then hands the
domain event to the dispatcher, which runs detached from the request.

Run with:
    uvicorn api.main:app --reload

Then visit http://localhost:8000/docs for interactive API documentation.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, Query, Request, status
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from admission.quota import QuotaTracker
from api.models import (
    MessageResponse,
    PasswordResetRequest,
    PasswordResetValidation,
    PushSubscriptionCreate,
    ReservationCreate,
    ReservationResponse,
    ReservationStatusUpdate,
)
from core.channels import NotificationChannels
from core.config import Settings, get_settings
from core.data_store import DataStore
from core.errors import AuthError, ForbiddenError, NotFoundError, ServiceError, ValidationError
from core.models import (
    NotificationAnalyticsReport,
    NotificationPreference,
    PreferenceUpdate,
    PushSubscription,
    QuotaUsage,
    Reservation,
    ReservationStatus,
    User,
    UserRole,
)
from notifications.analytics import DEFAULT_WINDOW_DAYS, NotificationAnalytics
from notifications.dispatcher import NotificationDispatcher
from notifications.event_bus import EventHub, StreamConnection, connected_frame
from notifications.events import reservation_created, reservation_status_changed
from notifications.preferences import PreferenceStore
from security.tokens import TokenService

logger = logging.getLogger("api")


# =============================================================================
# Service wiring
# =============================================================================

@dataclass
class Services:
    """Everything the endpoints need, built once per process."""
    settings: Settings
    data_store: DataStore
    tokens: TokenService
    hub: EventHub
    channels: NotificationChannels
    preferences: PreferenceStore
    dispatcher: NotificationDispatcher
    quota: QuotaTracker
    analytics: NotificationAnalytics

    @classmethod
    def build(
        cls,
        settings: Settings,
        data_store: Optional[DataStore] = None,
        channels: Optional[NotificationChannels] = None,
        hub: Optional[EventHub] = None,
    ) -> "Services":
        """
        Wire the services together.

        Raises:
            ConfigurationError: If the token secret is missing
        """
        data_store = data_store or DataStore()
        tokens = TokenService.from_settings(settings)
        hub = hub or EventHub.from_settings(settings)
        channels = channels or NotificationChannels.from_settings(settings, data_store)
        preferences = PreferenceStore(data_store)
        analytics = NotificationAnalytics(data_store)
        dispatcher = NotificationDispatcher(
            channels=channels,
            data_store=data_store,
            hub=hub,
            preferences=preferences,
            tokens=tokens,
            app_base_url=settings.app_base_url,
            analytics=analytics,
        )
        quota = QuotaTracker(
            data_store=data_store,
            event_sink=dispatcher.schedule,
            starter_limit=settings.starter_quota_limit,
        )
        return cls(
            settings=settings,
            data_store=data_store,
            tokens=tokens,
            hub=hub,
            channels=channels,
            preferences=preferences,
            dispatcher=dispatcher,
            quota=quota,
            analytics=analytics,
        )


# Module-level instance (would use proper DI in production)
_services: Optional[Services] = None


def get_services() -> Services:
    """Get the wired services, building them from the environment on first use."""
    global _services
    if _services is None:
        _services = Services.build(get_settings())
    return _services


def reset_api_state(services: Optional[Services] = None) -> None:
    """Reset API state (for testing)."""
    global _services
    _services = services


def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> User:
    """
    Resolve the calling dashboard user.

    Session authentication happens upstream; the gateway forwards the
    authenticated user id in the X-User-Id header.
    """
    if not x_user_id:
        raise AuthError(message="Authentication required")
    user = services.data_store.get_user(x_user_id)
    if user is None or not user.active:
        raise AuthError(message="Authentication required")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != UserRole.ADMIN:
        raise ForbiddenError("Administrator access required")
    return user


def _require_tenant_access(user: User, tenant_id: str) -> None:
    if user.role != UserRole.ADMIN and user.tenant_id != tenant_id:
        raise ForbiddenError("You do not have access to this restaurant")


def _to_response(reservation: Reservation) -> ReservationResponse:
    return ReservationResponse(
        id=reservation.id,
        restaurant_id=reservation.tenant_id,
        customer_name=reservation.customer_name,
        customer_email=reservation.customer_email,
        date=reservation.date,
        time=reservation.time,
        party_size=reservation.party_size,
        status=ReservationStatus(reservation.status).value,
        notes=reservation.notes,
    )


# =============================================================================
# Application
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    services = get_services()
    logging.basicConfig(
        level=services.settings.log_level,
        format="%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s",
        datefmt="%H:%M:%S",
    )
    logger.info("Starting TableMaster notification service")

    stop = asyncio.Event()
    maintenance = asyncio.create_task(services.hub.run_maintenance(stop), name="stream-maintenance")
    try:
        yield
    finally:
        logger.info("Shutting down")
        stop.set()
        await maintenance
        services.hub.close_all()
        await services.dispatcher.drain()
        await services.channels.aclose()


app = FastAPI(
    title="TableMaster Notification Service",
    description="""
    Reservation admission, signed action tokens and notification fan-out.

    ## Endpoints

    - `/api/restaurants/{id}/reservations` - Create reservations (quota guarded)
    - `/api/restaurants/{id}/events` - Live dashboard stream
    - `/api/auth/*` - Password reset tokens
    - `/api/reservations/cancel` - Public cancellation by signed token
    - `/api/notifications/*` - Preferences and push subscriptions
    """,
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# =============================================================================
# Health Check
# =============================================================================

@app.get("/health", tags=["Health"])
def health_check(services: Services = Depends(get_services)):
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "tablemaster-notifications",
        "streams": services.hub.get_subscriber_count(),
    }


# =============================================================================
# Reservations
# =============================================================================

@app.post(
    "/api/restaurants/{tenant_id}/reservations",
    response_model=ReservationResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Reservations"],
)
async def create_reservation(
    tenant_id: str,
    request: ReservationCreate,
    services: Services = Depends(get_services),
):
    """
    Create a reservation.

    The quota tracker admits the reservation before it is stored; a refusal
    returns 403 QUOTA_EXCEEDED with the current usage. Notifications are
    dispatched in the background after the reservation is saved.
    """
    services.quota.require_admission(tenant_id)

    reservation = Reservation(
        id=f"res-{uuid4().hex[:12]}",
        tenant_id=tenant_id,
        customer_name=request.customer_name,
        customer_email=request.customer_email,
        customer_phone=request.customer_phone,
        date=request.date,
        time=request.time,
        party_size=request.party_size,
        status=request.status,
        notes=request.notes,
    )
    services.data_store.add_reservation(reservation)
    logger.info(f"Reservation {reservation.id} created for {tenant_id}")

    services.dispatcher.schedule(reservation_created(reservation))
    return _to_response(reservation)


@app.patch(
    "/api/reservations/{reservation_id}/status",
    response_model=ReservationResponse,
    tags=["Reservations"],
)
async def change_reservation_status(
    reservation_id: str,
    request: ReservationStatusUpdate,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Confirm, cancel, complete or reopen a reservation (staff only)."""
    reservation = services.data_store.get_reservation(reservation_id)
    if reservation is None:
        raise NotFoundError(f"Reservation {reservation_id} not found")
    _require_tenant_access(user, reservation.tenant_id)

    updated = services.data_store.update_reservation_status(reservation_id, request.status)
    logger.info(f"Reservation {reservation_id} is now {request.status.value}")

    services.dispatcher.schedule(reservation_status_changed(updated))
    return _to_response(updated)


@app.post(
    "/api/reservations/cancel",
    response_model=ReservationResponse,
    tags=["Reservations"],
)
async def cancel_reservation_by_token(
    token: str,
    services: Services = Depends(get_services),
):
    """
    Cancel a reservation from the link in the customer's email.

    The token must be a reservation-cancel token; its restaurant id must
    match the reservation it names.
    """
    claims = services.tokens.validate_reservation_cancel(token)
    reservation = services.data_store.get_reservation(claims.reservation_id)
    if reservation is None or reservation.tenant_id != claims.restaurant_id:
        raise NotFoundError("Reservation not found")
    if reservation.status == ReservationStatus.CANCELLED.value:
        raise ValidationError("Reservation is already cancelled")
    if reservation.status == ReservationStatus.COMPLETED.value:
        raise ValidationError("A completed reservation cannot be cancelled")

    updated = services.data_store.update_reservation_status(reservation.id, ReservationStatus.CANCELLED)
    logger.info(f"Reservation {reservation.id} cancelled by the customer")

    services.dispatcher.schedule(reservation_status_changed(updated))
    return _to_response(updated)


# =============================================================================
# Quota
# =============================================================================

@app.get("/api/restaurants/{tenant_id}/quota", response_model=QuotaUsage, tags=["Quota"])
def get_quota_usage(
    tenant_id: str,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Current month's reservation usage for a restaurant."""
    _require_tenant_access(user, tenant_id)
    return services.quota.get_usage(tenant_id)


@app.post("/api/admin/restaurants/{tenant_id}/quota/reset", response_model=QuotaUsage, tags=["Quota"])
def reset_quota(
    tenant_id: str,
    admin: User = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """Reset a restaurant's monthly counter (administrators only)."""
    logger.info(f"Quota reset for {tenant_id} requested by {admin.id}")
    return services.quota.reset_period(tenant_id)


@app.get(
    "/api/admin/analytics/notifications/restaurant/{tenant_id}",
    response_model=NotificationAnalyticsReport,
    tags=["Notifications"],
)
def get_notification_analytics(
    tenant_id: str,
    days: int = Query(default=DEFAULT_WINDOW_DAYS, ge=1, le=365),
    admin: User = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """Delivery rates and per-event counts of a restaurant's notifications (administrators only)."""
    if services.data_store.get_tenant(tenant_id) is None:
        raise NotFoundError("Restaurant not found")
    return services.analytics.report(tenant_id, days=days)


# =============================================================================
# Live Dashboard Stream
# =============================================================================

@app.get("/api/restaurants/{tenant_id}/events", tags=["Stream"])
async def stream_events(
    tenant_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> EventSourceResponse:
    """
    Subscribe to the restaurant's live reservation events.

    The first frame is `connected`; then one frame per domain event plus
    periodic keep-alive comments. Events raised while disconnected are not
    replayed.
    """
    _require_tenant_access(user, tenant_id)
    connection = StreamConnection(max_queue=services.settings.sse_queue_size)
    handle = services.hub.subscribe(tenant_id, connection, user_id=user.id)

    async def event_stream():
        try:
            yield connected_frame()
            async for frame in connection.frames():
                if await request.is_disconnected():
                    return
                yield frame
        finally:
            services.hub.unsubscribe(handle)

    return EventSourceResponse(
        event_stream(),
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


# =============================================================================
# Password Reset
# =============================================================================

@app.post("/api/auth/password-reset", response_model=MessageResponse, tags=["Auth"])
async def request_password_reset(
    request: PasswordResetRequest,
    services: Services = Depends(get_services),
):
    """
    Email a password reset link.

    The response is the same whether or not the address is known.
    """
    user = services.data_store.get_user_by_email(request.email)
    if user is not None and user.active:
        token = services.tokens.issue_password_reset(user.id)
        services.dispatcher.schedule_email(
            to=user.email,
            template_name="password-reset",
            params={
                "userName": user.name,
                "resetLink": f"{services.settings.app_base_url}/reset-password?token={token}",
            },
            to_name=user.name,
        )
    else:
        logger.info("Password reset requested for an unknown address")
    return MessageResponse(message="If this address is registered, a reset link has been sent.")


@app.get("/api/auth/password-reset/validate", response_model=PasswordResetValidation, tags=["Auth"])
def validate_password_reset(
    token: str,
    services: Services = Depends(get_services),
):
    """Check a reset token before showing the new-password form."""
    claims = services.tokens.validate_password_reset(token)
    if services.data_store.get_user(claims.user_id) is None:
        raise NotFoundError("User not found")
    return PasswordResetValidation(valid=True, user_id=claims.user_id)


# =============================================================================
# Notification Preferences
# =============================================================================

@app.get("/api/notifications/preferences", response_model=NotificationPreference, tags=["Notifications"])
def get_preferences(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Get the caller's notification preferences (created on first access)."""
    return services.preferences.get(user.id)


@app.patch("/api/notifications/preferences", response_model=NotificationPreference, tags=["Notifications"])
def update_preferences(
    changes: PreferenceUpdate,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Update some of the caller's notification preferences."""
    return services.preferences.update(user.id, changes)


# =============================================================================
# Push Subscriptions
# =============================================================================

@app.get("/api/notifications/push/vapid-public-key", tags=["Notifications"])
def get_vapid_public_key(services: Services = Depends(get_services)):
    """Public key the browser needs to create a push subscription."""
    if not services.settings.push_enabled:
        raise NotFoundError("Push notifications are not enabled")
    return {"publicKey": services.settings.vapid_public_key}


@app.post(
    "/api/notifications/push/subscriptions",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Notifications"],
)
def register_push_subscription(
    request: PushSubscriptionCreate,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Register (or refresh) a device endpoint for the caller."""
    services.data_store.upsert_push_subscription(PushSubscription(
        user_id=user.id,
        endpoint=request.endpoint,
        keys=request.keys,
        user_agent=request.user_agent,
    ))
    logger.info(f"Push subscription registered for user {user.id}")
    return MessageResponse(message="Subscription saved")


@app.delete("/api/notifications/push/subscriptions", response_model=MessageResponse, tags=["Notifications"])
def remove_push_subscription(
    endpoint: str,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Remove one of the caller's device endpoints."""
    if not services.data_store.delete_push_subscription(endpoint, user_id=user.id):
        raise NotFoundError("Subscription not found")
    logger.info(f"Push subscription removed for user {user.id}")
    return MessageResponse(message="Subscription removed")
