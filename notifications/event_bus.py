"""
Per-tenant live subscriber registry for the dashboard event stream.

Each dashboard tab opens a long-lived text/event-stream response; the API
registers a StreamConnection for it here and drains its frames. Broadcasting
pushes one frame per domain event into every connection of that tenant.

Design decisions:
- The hub is the single owner of the registry; every add/remove goes through
  a mutex and broadcasts iterate a snapshot taken under it, so disconnects
  during a broadcast cannot corrupt iteration
- Writes are bounded by a timeout; a connection whose write fails or times
  out is unregistered and closed, siblings are unaffected
- Strict tenant isolation: broadcast only ever reads the tenant's own bucket
- No backlog: frames are delivered at most once to connections present at
  broadcast time
- A maintenance loop sends keep-alive comments and reaps connections that
  stopped draining or exceeded the maximum duration
- Registry is per process; multi-instance fan-out is out of scope
"""

import asyncio
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Optional
from uuid import uuid4

from core.config import Settings
from core.errors import TooManyConnections
from notifications.events import DomainEvent

logger = logging.getLogger("event_hub")

HEARTBEAT_FRAME = {"comment": "heartbeat"}
_CLOSE = object()


class ConnectionClosed(Exception):
    """Raised when writing to a connection that has been closed."""


def connected_frame() -> dict[str, str]:
    """First frame sent on every new stream."""
    return {"event": "connected", "data": json.dumps({"message": "SSE connection established"})}


def event_frame(event: DomainEvent) -> dict[str, str]:
    """One stream frame for a domain event."""
    return {
        "event": event.type.value,
        "id": event.event_id,
        "data": json.dumps(event.to_stream_data(), default=str),
    }


class StreamConnection:
    """
    One live stream, backed by a bounded queue.

    The hub writes frames with `send`; the HTTP response drains them with
    `frames()`. A consumer that stops draining fills the queue, which makes
    subsequent writes time out.
    """

    def __init__(self, max_queue: int = 100, clock: Callable[[], float] = time.monotonic):
        self.id = str(uuid4())
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._clock = clock
        self.connected_at = clock()
        self.last_active = self.connected_at
        self.closed = False

    async def send(self, frame: dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionClosed(self.id)
        await self._queue.put(frame)

    async def frames(self) -> AsyncIterator[dict[str, Any]]:
        """Yield frames until the connection is closed."""
        while True:
            frame = await self._queue.get()
            self.last_active = self._clock()
            if frame is _CLOSE:
                return
            yield frame

    def close(self) -> None:
        """Close the connection; pending frames are discarded."""
        if self.closed:
            return
        self.closed = True
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._queue.put_nowait(_CLOSE)


@dataclass(frozen=True)
class SubscriptionHandle:
    """Returned by subscribe; the only way to unsubscribe."""
    tenant_id: str
    connection_id: str
    user_id: Optional[str] = None


@dataclass
class _Subscriber:
    handle: SubscriptionHandle
    connection: Any
    connected_at: float = field(default_factory=time.monotonic)


class EventHub:
    """
    In-process broadcaster of domain events to dashboard connections.

    Example usage:
        hub = EventHub()
        connection = StreamConnection()
        handle = hub.subscribe("rest-001", connection, user_id="user-001")

        await hub.broadcast("rest-001", reservation_created(reservation))

        hub.unsubscribe(handle)
    """

    def __init__(
        self,
        write_timeout: float = 5.0,
        heartbeat_interval: float = 30.0,
        stale_after: float = 90.0,
        max_connection_duration: float = 3600.0,
        max_connections_per_user: int = 5,
        max_connections_per_tenant: int = 50,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.write_timeout = write_timeout
        self.heartbeat_interval = heartbeat_interval
        self.stale_after = stale_after
        self.max_connection_duration = max_connection_duration
        self.max_connections_per_user = max_connections_per_user
        self.max_connections_per_tenant = max_connections_per_tenant
        self._clock = clock

        # tenant_id -> connection_id -> subscriber
        self._subscribers: dict[str, dict[str, _Subscriber]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "EventHub":
        return cls(
            write_timeout=settings.sse_write_timeout,
            heartbeat_interval=settings.sse_heartbeat_interval,
            stale_after=settings.sse_stale_after,
            max_connection_duration=settings.sse_max_connection_duration,
            max_connections_per_user=settings.sse_max_connections_per_user,
            max_connections_per_tenant=settings.sse_max_connections_per_tenant,
        )

    # =========================================================================
    # Registry
    # =========================================================================

    def subscribe(self, tenant_id: str, connection: Any, user_id: Optional[str] = None) -> SubscriptionHandle:
        """
        Register a connection for a tenant's events.

        When the user already holds the maximum number of connections the
        oldest one is closed. When the tenant is full the new connection is
        refused.

        Raises:
            TooManyConnections: If the tenant already has the maximum number
                of live connections
        """
        evicted: Optional[_Subscriber] = None
        with self._lock:
            bucket = self._subscribers.setdefault(tenant_id, {})

            if user_id is not None:
                mine = [s for s in bucket.values() if s.handle.user_id == user_id]
                if len(mine) >= self.max_connections_per_user:
                    evicted = min(mine, key=lambda s: s.connected_at)
                    del bucket[evicted.handle.connection_id]

            if len(bucket) >= self.max_connections_per_tenant:
                logger.warning(
                    f"Tenant {tenant_id} exceeded max stream connections ({self.max_connections_per_tenant})"
                )
                raise TooManyConnections(
                    "Too many active connections for this restaurant. Please try again later."
                )

            handle = SubscriptionHandle(tenant_id=tenant_id, connection_id=connection.id, user_id=user_id)
            bucket[connection.id] = _Subscriber(handle=handle, connection=connection, connected_at=self._clock())

        if evicted is not None:
            logger.warning(
                f"User {user_id} exceeded max stream connections ({self.max_connections_per_user}), "
                f"closing oldest {evicted.handle.connection_id}"
            )
            evicted.connection.close()

        logger.info(f"Stream client connected: {connection.id} (tenant: {tenant_id})")
        return handle

    def unsubscribe(self, handle: SubscriptionHandle, reason: str = "client_closed") -> bool:
        """
        Remove a connection. Idempotent.

        Returns:
            True if the connection was registered
        """
        with self._lock:
            bucket = self._subscribers.get(handle.tenant_id)
            if bucket is None or handle.connection_id not in bucket:
                return False
            subscriber = bucket.pop(handle.connection_id)
            if not bucket:
                del self._subscribers[handle.tenant_id]
        subscriber.connection.close()
        logger.info(f"Stream client {handle.connection_id} disconnected ({reason})")
        return True

    def _snapshot(self, tenant_id: Optional[str] = None) -> list[_Subscriber]:
        with self._lock:
            if tenant_id is not None:
                return list(self._subscribers.get(tenant_id, {}).values())
            return [s for bucket in self._subscribers.values() for s in bucket.values()]

    def get_subscriber_count(self, tenant_id: Optional[str] = None) -> int:
        return len(self._snapshot(tenant_id))

    # =========================================================================
    # Delivery
    # =========================================================================

    async def _write(self, subscriber: _Subscriber, frame: dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(subscriber.connection.send(frame), timeout=self.write_timeout)
            return True
        except asyncio.TimeoutError:
            self.unsubscribe(subscriber.handle, reason="write_timeout")
        except Exception as e:
            logger.warning(f"Write to stream client {subscriber.handle.connection_id} failed: {e}")
            self.unsubscribe(subscriber.handle, reason="write_error")
        return False

    async def _deliver(self, subscribers: list[_Subscriber], frame: dict[str, Any]) -> int:
        if not subscribers:
            return 0
        outcomes = await asyncio.gather(*(self._write(s, frame) for s in subscribers))
        return sum(1 for ok in outcomes if ok)

    async def broadcast(self, tenant_id: str, event: DomainEvent) -> int:
        """
        Deliver an event to every connection of one tenant.

        Never raises for delivery problems; failing connections are reaped.

        Returns:
            Number of connections the frame was written to
        """
        subscribers = self._snapshot(tenant_id)
        if not subscribers:
            return 0
        delivered = await self._deliver(subscribers, event_frame(event))
        logger.info(
            f"Stream event '{event.type.value}' sent to {delivered}/{len(subscribers)} client(s) "
            f"for tenant {tenant_id}"
        )
        return delivered

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def send_heartbeats(self) -> int:
        """Write a keep-alive comment to every connection."""
        return await self._deliver(self._snapshot(), HEARTBEAT_FRAME)

    def reap_stale(self) -> int:
        """
        Drop connections that are closed, stopped draining for longer than
        `stale_after`, or exceeded the maximum duration.

        Returns:
            Number of connections removed
        """
        now = self._clock()
        reaped = 0
        for subscriber in self._snapshot():
            connection = subscriber.connection
            reason = None
            if getattr(connection, "closed", False):
                reason = "closed"
            elif now - subscriber.connected_at > self.max_connection_duration:
                reason = "max_duration"
            elif now - getattr(connection, "last_active", now) > self.stale_after:
                reason = "stale"
            if reason and self.unsubscribe(subscriber.handle, reason=reason):
                reaped += 1
        if reaped:
            logger.info(f"Cleaned up {reaped} dead stream connection(s). Active: {self.get_subscriber_count()}")
        return reaped

    async def run_maintenance(self, stop: asyncio.Event) -> None:
        """Send heartbeats and reap dead connections until `stop` is set."""
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.heartbeat_interval)
                break
            except asyncio.TimeoutError:
                pass
            await self.send_heartbeats()
            self.reap_stale()

    def close_all(self) -> None:
        """Unregister and close every connection (shutdown)."""
        for subscriber in self._snapshot():
            self.unsubscribe(subscriber.handle, reason="shutdown")


# Module-level singleton for convenience
# In production, you'd likely use dependency injection instead
_default_hub: Optional[EventHub] = None


def get_event_hub() -> EventHub:
    """Get the default event hub singleton."""
    global _default_hub
    if _default_hub is None:
        _default_hub = EventHub()
    return _default_hub


def reset_event_hub(hub: Optional[EventHub] = None) -> EventHub:
    """Reset the default event hub (useful for testing)."""
    global _default_hub
    _default_hub = hub or EventHub()
    return _default_hub
