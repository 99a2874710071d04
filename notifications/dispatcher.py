"""
Notification dispatcher: fans one domain event out to the dashboard stream,
web push and email.

The dispatcher is handed an event after the business change behind it has
been committed. It resolves the tenant's recipients, consults each user's
preferences and runs every channel attempt concurrently. Each attempt is
isolated: whatever it raises is logged and turned into a failed result, so a
broken provider can never fail the request that produced the event or stop
the other channels.

Routing rules:
- Dashboard stream: always, for every event (operational channel, not gated)
- Push: per staff user, if push is enabled and the event kind is enabled
- Staff email: per staff user, if a staff template exists for the event kind
  and email plus the event kind are enabled
- Customer email: transactional receipts (pending, confirmation, cancellation,
  update) to the customer address carried by the event, never gated
- Quota threshold: transactional warning to the tenant's contact address

Design decisions:
- `schedule` spawns a detached task with its own timeout and error sink; the
  request path never awaits it
- Recipients and preferences are looked up at dispatch time, not at event
  creation time
- Email retry lives inside the email channel; the dispatcher never retries
- Finished reports go to the analytics log when one is configured; a failure
  to record never affects delivery
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Awaitable, Optional, Union

from core.channels import ChannelType, NotificationChannels, NotificationResult
from core.data_store import DataStore, get_data_store
from core.models import PREFERENCE_KEYS, EventType, ReservationStatus, Tenant, User
from core.templates import (
    STAFF_ACTIONS,
    STAFF_EMAIL_TEMPLATES,
    build_push_payload,
    customer_template_for,
)
from notifications.analytics import NotificationAnalytics
from notifications.event_bus import EventHub, get_event_hub
from notifications.events import DomainEvent
from notifications.preferences import PreferenceStore
from security.tokens import TokenService

logger = logging.getLogger("dispatcher")

# Customer templates that carry a self-service cancellation link
CANCELLABLE_TEMPLATES = {"pending-reservation", "confirmation", "direct-confirmation"}


@dataclass
class DispatchReport:
    """Outcome of one dispatch, for logging and tests."""
    event: DomainEvent
    results: list[NotificationResult] = field(default_factory=list)

    @property
    def delivered(self) -> list[NotificationResult]:
        return [r for r in self.results if r.success and not r.skipped]

    @property
    def failed(self) -> list[NotificationResult]:
        return [r for r in self.results if not r.success]

    def by_channel(self, channel: ChannelType) -> list[NotificationResult]:
        return [r for r in self.results if r.channel == channel]


def _format_date(value: Optional[str]) -> str:
    if not value:
        return ""
    try:
        return date.fromisoformat(value).strftime("%d %B %Y").lstrip("0")
    except ValueError:
        return value


class NotificationDispatcher:
    """
    Event-driven notification fan-out.

    Example:
        dispatcher = NotificationDispatcher(channels=channels, tokens=tokens)

        # inside a request handler, after the reservation is saved
        dispatcher.schedule(reservation_created(reservation))
    """

    def __init__(
        self,
        channels: NotificationChannels,
        data_store: Optional[DataStore] = None,
        hub: Optional[EventHub] = None,
        preferences: Optional[PreferenceStore] = None,
        tokens: Optional[TokenService] = None,
        app_base_url: str = "http://localhost:3000",
        dispatch_timeout: float = 60.0,
        analytics: Optional[NotificationAnalytics] = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            channels: Email and push channels
            data_store: Tenant and recipient lookups (defaults to singleton)
            hub: Dashboard stream hub (defaults to singleton)
            preferences: Preference store (defaults to one over data_store)
            tokens: Token service used to sign cancellation links; without it
                customer emails are sent without a link
            app_base_url: Base URL for links in emails
            dispatch_timeout: Upper bound on one scheduled dispatch
            analytics: Delivery log fed with every finished dispatch
        """
        self.channels = channels
        self.data_store = data_store or get_data_store()
        self.hub = hub or get_event_hub()
        self.preferences = preferences or PreferenceStore(self.data_store)
        self.tokens = tokens
        self.app_base_url = app_base_url.rstrip("/")
        self.dispatch_timeout = dispatch_timeout
        self.analytics = analytics
        self._pending: set[asyncio.Task] = set()

    # =========================================================================
    # Scheduling
    # =========================================================================

    def schedule(self, event: DomainEvent) -> asyncio.Task:
        """
        Start a detached dispatch of `event` and return immediately.

        Must be called from a running event loop, after the change behind
        the event has been committed.
        """
        return self._spawn(self.dispatch(event), name=f"dispatch-{event.event_id}")

    def schedule_email(
        self,
        to: str,
        template_name: str,
        params: dict[str, Any],
        to_name: Optional[str] = None,
    ) -> asyncio.Task:
        """
        Send one transactional email in the background (password reset).

        Same isolation as `schedule`: failures are logged, never raised.
        """
        work = self.channels.email.send(to=to, template_name=template_name, params=params, to_name=to_name)
        return self._spawn(self._attempt(ChannelType.EMAIL, to, work), name=f"email-{template_name}")

    def _spawn(self, work: Awaitable[Any], name: str) -> asyncio.Task:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if asyncio.iscoroutine(work):
                work.close()
            raise
        task = loop.create_task(asyncio.wait_for(work, timeout=self.dispatch_timeout), name=name)
        self._pending.add(task)
        task.add_done_callback(self._on_dispatch_done)
        return task

    def _on_dispatch_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.warning(f"Dispatch {task.get_name()} was cancelled")
            return
        exc = task.exception()
        if isinstance(exc, asyncio.TimeoutError):
            logger.error(f"Dispatch {task.get_name()} timed out after {self.dispatch_timeout}s")
        elif exc is not None:
            logger.error(f"Dispatch {task.get_name()} failed: {exc!r}")

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for every scheduled dispatch to finish (shutdown, tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def dispatch(self, event: DomainEvent) -> DispatchReport:
        """
        Deliver one event on every applicable channel.

        Never raises for delivery problems; see the module docstring for the
        routing rules.
        """
        logger.info(f"Dispatching {event}")
        attempts: list[Awaitable[list[NotificationResult]]] = [
            self._attempt(ChannelType.SSE, f"tenant:{event.tenant_id}", self._broadcast(event)),
        ]

        try:
            tenant = self.data_store.get_tenant(event.tenant_id)
            if event.type == EventType.QUOTA_THRESHOLD:
                if tenant is not None:
                    attempts.append(self._attempt(
                        ChannelType.EMAIL, tenant.email, self._email_quota_warning(tenant, event),
                    ))
            else:
                for user in self.data_store.get_recipients(event.tenant_id):
                    attempts.append(self._attempt(ChannelType.PUSH, user.id, self._push_to_user(user, event)))
                    attempts.append(self._attempt(ChannelType.EMAIL, user.email, self._email_staff(user, event, tenant)))
                customer_email = event.customer_email
                if customer_email:
                    attempts.append(self._attempt(
                        ChannelType.EMAIL, customer_email, self._email_customer(customer_email, event, tenant),
                    ))
        except Exception as e:
            logger.error(f"Could not resolve recipients for {event}: {e!r}")

        outcomes = await asyncio.gather(*attempts)
        report = DispatchReport(event=event, results=[r for outcome in outcomes for r in outcome])
        logger.info(
            f"Dispatched {event}: {len(report.delivered)} delivered, {len(report.failed)} failed"
        )
        if self.analytics is not None:
            try:
                self.analytics.record_report(report)
            except Exception as e:
                logger.error(f"Could not record analytics for {event}: {e!r}")
        return report

    async def _attempt(
        self,
        channel: ChannelType,
        recipient: str,
        work: Awaitable[Union[NotificationResult, list[NotificationResult]]],
    ) -> list[NotificationResult]:
        """Run one channel attempt, converting any failure into a result."""
        try:
            outcome = await work
        except Exception as e:
            logger.error(f"[{channel.value.upper()} FAILED] To: {recipient} | Error: {e}")
            return [NotificationResult(success=False, channel=channel, recipient=recipient, error=str(e))]
        if isinstance(outcome, NotificationResult):
            return [outcome]
        return list(outcome)

    def _skipped(self, channel: ChannelType, recipient: str, reason: str) -> list[NotificationResult]:
        logger.debug(f"[{channel.value.upper()} SKIPPED] To: {recipient} | {reason}")
        return [NotificationResult(success=True, channel=channel, recipient=recipient, skipped=True, error=reason)]

    # =========================================================================
    # Channels
    # =========================================================================

    async def _broadcast(self, event: DomainEvent) -> NotificationResult:
        delivered = await self.hub.broadcast(event.tenant_id, event)
        return NotificationResult(
            success=True,
            channel=ChannelType.SSE,
            recipient=f"tenant:{event.tenant_id}",
            body=event.type.value,
            attempts=delivered,
        )

    async def _push_to_user(self, user: User, event: DomainEvent) -> list[NotificationResult]:
        preference = self.preferences.get(user.id)
        if not preference.should_send_push(PREFERENCE_KEYS.get(event.type)):
            return self._skipped(ChannelType.PUSH, user.id, "push disabled by preferences")
        reservation = event.reservation
        payload = build_push_payload(event.type, reservation) if reservation else None
        if payload is None:
            return self._skipped(ChannelType.PUSH, user.id, f"no push message for {event.type.value}")
        return await self.channels.push.send_to_user(user.id, payload)

    async def _email_staff(
        self,
        user: User,
        event: DomainEvent,
        tenant: Optional[Tenant],
    ) -> list[NotificationResult]:
        template_name = STAFF_EMAIL_TEMPLATES.get(event.type)
        if template_name is None:
            return self._skipped(ChannelType.EMAIL, user.email, f"no staff template for {event.type.value}")
        preference = self.preferences.get(user.id)
        if not preference.should_send_email(PREFERENCE_KEYS.get(event.type)):
            return self._skipped(ChannelType.EMAIL, user.email, "email disabled by preferences")

        title, verb = STAFF_ACTIONS[event.type]
        params = self._reservation_params(event, tenant)
        params.update({"actionTitle": title, "actionVerb": verb})
        result = await self.channels.email.send(
            to=user.email,
            template_name=template_name,
            params=params,
            to_name=user.name,
        )
        return [result]

    async def _email_customer(
        self,
        customer_email: str,
        event: DomainEvent,
        tenant: Optional[Tenant],
    ) -> list[NotificationResult]:
        reservation = event.reservation or {}
        template_name = customer_template_for(event.type, reservation.get("status"))
        if template_name is None:
            return self._skipped(ChannelType.EMAIL, customer_email, f"no customer template for {event.type.value}")

        params = self._reservation_params(event, tenant)
        if template_name in CANCELLABLE_TEMPLATES and self.tokens is not None:
            token = self.tokens.issue_reservation_cancel(reservation["id"], event.tenant_id)
            params["cancelLink"] = f"{self.app_base_url}/reservations/cancel?token={token}"

        result = await self.channels.email.send(
            to=customer_email,
            template_name=template_name,
            params=params,
            to_name=reservation.get("customer_name"),
            reply_to=tenant.email if tenant else None,
        )
        return [result]

    async def _email_quota_warning(self, tenant: Tenant, event: DomainEvent) -> list[NotificationResult]:
        result = await self.channels.email.send(
            to=tenant.email,
            template_name="quota-warning",
            params={
                "restaurantName": tenant.name,
                "threshold": event.payload["threshold"],
                "current": event.payload["current"],
                "limit": event.payload["limit"],
            },
            to_name=tenant.name,
        )
        return [result]

    def _reservation_params(self, event: DomainEvent, tenant: Optional[Tenant]) -> dict[str, Any]:
        reservation = event.reservation or {}
        status = reservation.get("status")
        return {
            "restaurantName": tenant.name if tenant else "",
            "customerName": reservation.get("customer_name"),
            "customerEmail": reservation.get("customer_email"),
            "reservationDate": _format_date(reservation.get("date")),
            "reservationTime": reservation.get("time"),
            "partySize": reservation.get("number_of_guests"),
            "status": ReservationStatus(status).value if status else "",
            "notes": event.payload.get("notes", ""),
        }
