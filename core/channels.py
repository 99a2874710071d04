"""
Delivery channels for notifications: transactional email and web push.

The dashboard stream is the third channel; it lives in
notifications.event_bus because it owns live connections rather than calling
a provider.

Design decisions:
- Channels raise ChannelDeliveryError on failure; the dispatcher is the only
  place that swallows it
- Email goes to the Brevo transactional API over httpx with bounded retry and
  exponential backoff; 4xx responses are terminal, 5xx and network errors are
  retried up to the configured budget
- Push goes through pywebpush (VAPID). Each device endpoint is attempted
  independently; endpoints the provider reports gone (404/410) are pruned
- A disabled channel reports skipped successes so callers need no branching
- Channels keep a bounded history of recent sends for test assertions and
  diagnostics; the oldest entries are dropped once it is full
"""

import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx
from pywebpush import WebPushException, webpush

from core.config import Settings
from core.data_store import DataStore
from core.errors import ChannelDeliveryError
from core.models import PushSubscription
from core.templates import render_email

logger = logging.getLogger("notifications")

# Provider statuses meaning the push endpoint no longer exists
GONE_STATUSES = {404, 410}

# Default number of recent sends each channel remembers
SENT_HISTORY_LIMIT = 200


class ChannelType(str, Enum):
    """Supported notification channels."""
    EMAIL = "email"
    PUSH = "push"
    SSE = "sse"


@dataclass
class NotificationResult:
    """
    Result of a notification send attempt.

    Captures success/failure and metadata for debugging and testing.
    """
    success: bool
    channel: ChannelType
    recipient: str
    subject: Optional[str] = None
    body: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error: Optional[str] = None
    skipped: bool = False
    message_id: Optional[str] = None
    attempts: int = 0

    def __str__(self) -> str:
        status = "skipped" if self.skipped else ("ok" if self.success else "failed")
        return f"[{status}] {self.channel.value.upper()} to {self.recipient}"


class _TrackingChannel:
    """Shared history helpers for channels."""

    def __init__(self, history_size: int = SENT_HISTORY_LIMIT):
        self.sent_messages: deque[NotificationResult] = deque(maxlen=history_size)

    def get_sent_count(self) -> int:
        """Get the number of messages attempted (for testing)."""
        return len(self.sent_messages)

    def get_successful_sends(self) -> list[NotificationResult]:
        """Get all successful, non-skipped sends."""
        return [m for m in self.sent_messages if m.success and not m.skipped]

    def clear_history(self):
        """Clear sent message history (useful between tests)."""
        self.sent_messages.clear()

    def find_message_to(self, recipient: str) -> Optional[NotificationResult]:
        """Find a message sent to a specific recipient."""
        for msg in self.sent_messages:
            if msg.recipient == recipient:
                return msg
        return None


# =============================================================================
# Email
# =============================================================================

class EmailChannel(_TrackingChannel):
    """
    Transactional email through the Brevo HTTP API.

    Example:
        channel = EmailChannel(settings)
        await channel.send(
            to="guest@example.com",
            template_name="confirmation",
            params={"customerName": "Ada", ...},
        )
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the email channel.

        Args:
            settings: Provider credentials, sender identity and retry budget
            client: HTTP client to use (created lazily if omitted)
            sleep: Backoff sleep function, replaceable in tests
        """
        super().__init__(settings.channel_history_size)
        self.settings = settings
        self.enabled = settings.email_enabled
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.email_timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def backoff_delay(self, retry_number: int) -> float:
        """Delay before retry `retry_number` (1-based): doubling, capped."""
        delay = self.settings.email_retry_min_timeout * (2 ** (retry_number - 1))
        return min(delay, self.settings.email_retry_max_timeout)

    async def send(
        self,
        to: str,
        template_name: str,
        params: dict[str, Any],
        to_name: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> NotificationResult:
        """
        Render a template and send it.

        Args:
            to: Recipient email address
            template_name: Name of a template in core.templates
            params: Template variables
            to_name: Recipient display name
            reply_to: Optional reply-to address

        Returns:
            NotificationResult for a delivered (or skipped) message

        Raises:
            ChannelDeliveryError: If the provider rejected the message or the
                retry budget was exhausted
        """
        if not self.enabled:
            logger.info(f"[EMAIL SKIPPED] Email disabled, not sending '{template_name}' to {to}")
            result = NotificationResult(
                success=True, channel=ChannelType.EMAIL, recipient=to, skipped=True,
            )
            self.sent_messages.append(result)
            return result

        subject, html_body = render_email(template_name, **params)
        message: dict[str, Any] = {
            "sender": {"email": self.settings.email_sender, "name": self.settings.email_sender_name},
            "to": [{"email": to, "name": to_name or to}],
            "subject": subject,
            "htmlContent": html_body,
        }
        if reply_to:
            message["replyTo"] = {"email": reply_to}

        try:
            message_id, attempts = await self._post_with_retry(message, to, template_name)
        except ChannelDeliveryError as exc:
            self.sent_messages.append(NotificationResult(
                success=False,
                channel=ChannelType.EMAIL,
                recipient=to,
                subject=subject,
                body=html_body,
                error=exc.message,
            ))
            raise

        result = NotificationResult(
            success=True,
            channel=ChannelType.EMAIL,
            recipient=to,
            subject=subject,
            body=html_body,
            message_id=message_id,
            attempts=attempts,
        )
        logger.info(f"[EMAIL] To: {to} | Subject: {subject} | Template: {template_name}")
        self.sent_messages.append(result)
        return result

    async def _post_with_retry(self, message: dict, to: str, template_name: str) -> tuple[Optional[str], int]:
        max_attempts = self.settings.email_max_retries + 1
        api_key = self.settings.brevo_api_key.get_secret_value() if self.settings.brevo_api_key else ""
        headers = {"api-key": api_key, "accept": "application/json"}
        client = self._get_client()

        for attempt in range(1, max_attempts + 1):
            try:
                response = await client.post(
                    self.settings.brevo_api_url,
                    json=message,
                    headers=headers,
                    timeout=self.settings.email_timeout,
                )
            except httpx.HTTPError as exc:
                error = ChannelDeliveryError("email", f"Email provider unreachable: {exc}")
            else:
                if response.is_success:
                    message_id = None
                    try:
                        message_id = response.json().get("messageId")
                    except ValueError:
                        pass
                    return message_id, attempt
                if 400 <= response.status_code < 500:
                    logger.error(
                        f"[EMAIL FAILED] To: {to} | Template: {template_name} | "
                        f"Provider rejected message with {response.status_code}, not retrying"
                    )
                    raise ChannelDeliveryError(
                        "email",
                        f"Email provider rejected message ({response.status_code})",
                        provider_status=response.status_code,
                        retryable=False,
                    )
                error = ChannelDeliveryError(
                    "email",
                    f"Email provider error ({response.status_code})",
                    provider_status=response.status_code,
                )

            if attempt == max_attempts:
                logger.error(
                    f"[EMAIL FAILED] To: {to} | Template: {template_name} | "
                    f"Giving up after {attempt} attempt(s): {error.message}"
                )
                raise error
            delay = self.backoff_delay(attempt)
            logger.warning(
                f"Email retry attempt {attempt} for {to} ({template_name}) in {delay:.1f}s: {error.message}"
            )
            await self._sleep(delay)

        # range() above always returns or raises
        raise ChannelDeliveryError("email", "Email retry budget exhausted")


# =============================================================================
# Web Push
# =============================================================================

# (subscription_info, json_payload) -> provider response; may block
PushSender = Callable[[dict, str], Any]


def make_webpush_sender(settings: Settings) -> PushSender:
    """Build a sender that signs requests with the configured VAPID key."""
    private_key = settings.vapid_private_key.get_secret_value() if settings.vapid_private_key else None

    def _send(subscription_info: dict, data: str) -> Any:
        return webpush(
            subscription_info=subscription_info,
            data=data,
            vapid_private_key=private_key,
            vapid_claims={"sub": settings.vapid_subject},
            timeout=settings.push_timeout,
        )

    return _send


class PushChannel(_TrackingChannel):
    """
    Web push to every device a user registered.

    The sender is blocking (pywebpush uses requests) so it runs in a worker
    thread, bounded by the push timeout.
    """

    def __init__(
        self,
        settings: Settings,
        data_store: DataStore,
        sender: Optional[PushSender] = None,
    ):
        super().__init__(settings.channel_history_size)
        self.settings = settings
        self.enabled = settings.push_enabled
        self.data_store = data_store
        self._sender = sender

    def _get_sender(self) -> PushSender:
        if self._sender is None:
            self._sender = make_webpush_sender(self.settings)
        return self._sender

    async def send(self, subscription: PushSubscription, payload: dict[str, Any]) -> NotificationResult:
        """
        Send one payload to one device endpoint.

        Raises:
            ChannelDeliveryError: On provider failure; endpoints reported gone
                are deleted from storage before raising
        """
        sender = self._get_sender()
        data = json.dumps(payload)
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(sender, subscription.subscription_info(), data),
                timeout=self.settings.push_timeout,
            )
        except WebPushException as exc:
            status = getattr(exc.response, "status_code", None)
            error = ChannelDeliveryError(
                "push", f"Push provider error: {exc.message}",
                provider_status=status, retryable=status not in GONE_STATUSES,
            )
        except ChannelDeliveryError as exc:
            error = exc
        except asyncio.TimeoutError:
            error = ChannelDeliveryError("push", "Push provider timed out")
        except Exception as exc:
            # Transport errors from the sender (refused connections, TLS, DNS)
            error = ChannelDeliveryError("push", f"Push delivery failed: {exc}")
        else:
            headers = getattr(response, "headers", None) or {}
            result = NotificationResult(
                success=True,
                channel=ChannelType.PUSH,
                recipient=subscription.endpoint,
                subject=payload.get("title"),
                body=payload.get("body"),
                message_id=headers.get("message-id"),
                attempts=1,
            )
            logger.info(f"[PUSH] To: {subscription.endpoint} | Title: {payload.get('title')}")
            self.sent_messages.append(result)
            return result

        self.sent_messages.append(NotificationResult(
            success=False,
            channel=ChannelType.PUSH,
            recipient=subscription.endpoint,
            subject=payload.get("title"),
            body=payload.get("body"),
            error=error.message,
            attempts=1,
        ))
        if error.provider_status in GONE_STATUSES:
            logger.info(f"Removing expired push subscription {subscription.endpoint}")
            self.data_store.delete_push_subscription(subscription.endpoint)
        raise error

    async def send_to_user(self, user_id: str, payload: dict[str, Any]) -> list[NotificationResult]:
        """
        Send a payload to every device endpoint of a user.

        One endpoint failing does not stop delivery to the others; failures
        are returned as unsuccessful results.
        """
        if not self.enabled:
            logger.info(f"[PUSH SKIPPED] Push disabled, not notifying user {user_id}")
            return [NotificationResult(success=True, channel=ChannelType.PUSH, recipient=user_id, skipped=True)]

        subscriptions = self.data_store.get_push_subscriptions(user_id)
        if not subscriptions:
            logger.debug(f"User {user_id} has no push subscriptions")
            return []

        results = []
        for subscription in subscriptions:
            try:
                results.append(await self.send(subscription, payload))
            except ChannelDeliveryError as exc:
                logger.error(f"[PUSH FAILED] To: {subscription.endpoint} | Error: {exc.message}")
                results.append(NotificationResult(
                    success=False,
                    channel=ChannelType.PUSH,
                    recipient=subscription.endpoint,
                    subject=payload.get("title"),
                    error=exc.message,
                    attempts=1,
                ))
        return results


class NotificationChannels:
    """
    Facade for the provider-backed channels.

    The dispatcher receives one of these so tests can swap either channel for
    a fake.
    """

    def __init__(self, email: EmailChannel, push: PushChannel):
        self.email = email
        self.push = push

    @classmethod
    def from_settings(cls, settings: Settings, data_store: DataStore) -> "NotificationChannels":
        return cls(
            email=EmailChannel(settings),
            push=PushChannel(settings, data_store),
        )

    def get_all_sent_messages(self) -> list[NotificationResult]:
        """Get all sent messages across all channels."""
        return list(self.email.sent_messages) + list(self.push.sent_messages)

    def get_total_sent_count(self) -> int:
        return self.email.get_sent_count() + self.push.get_sent_count()

    def clear_all_history(self):
        self.email.clear_history()
        self.push.clear_history()

    async def aclose(self) -> None:
        await self.email.aclose()
