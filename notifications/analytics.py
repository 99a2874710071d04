"""
Notification analytics: a per-restaurant log of delivery outcomes and the
statistics administrators read from it.

The dispatcher hands every finished DispatchReport to `record_report`. Each
non-skipped result becomes one NotificationRecord in the data store, so the
log answers two questions:
- what share of notifications reached their recipient, per channel
- how many notifications of each (channel, event type) pair went out, by status

Design decisions:
- Skipped results (disabled channel, preference opt-out, no template) are not
  notifications and are never recorded
- A dashboard broadcast counts as delivered as soon as one connection received
  it; a broadcast to an empty tenant is not recorded
- Recording is best effort: the dispatcher logs a failure here and moves on
"""

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional
from uuid import uuid4

from core.channels import ChannelType, NotificationResult
from core.data_store import DataStore, get_data_store
from core.models import (
    ChannelDeliveryRate,
    DeliveryStatus,
    NotificationAnalyticsReport,
    NotificationBreakdown,
    NotificationRecord,
    utcnow,
)

if TYPE_CHECKING:
    from notifications.dispatcher import DispatchReport

logger = logging.getLogger("analytics")

DEFAULT_WINDOW_DAYS = 30


def _is_notification(result: NotificationResult) -> bool:
    if result.skipped:
        return False
    if result.channel == ChannelType.SSE and result.success and result.attempts == 0:
        return False
    return True


class NotificationAnalytics:
    """
    Records delivery outcomes and aggregates them per restaurant.

    Example:
        analytics = NotificationAnalytics(data_store)
        dispatcher = NotificationDispatcher(channels, analytics=analytics)

        analytics.delivery_rate("rest-001", days=7)
    """

    def __init__(
        self,
        data_store: Optional[DataStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.data_store = data_store or get_data_store()
        self._clock = clock

    def record_report(self, report: "DispatchReport") -> list[NotificationRecord]:
        """Store one record per delivered or failed result of a dispatch."""
        event = report.event
        now = self._clock()
        records = [
            NotificationRecord(
                id=uuid4().hex,
                tenant_id=event.tenant_id,
                channel=result.channel.value,
                event_type=event.type.value,
                status=DeliveryStatus.DELIVERED if result.success else DeliveryStatus.FAILED,
                recipient=result.recipient,
                error=result.error,
                sent_at=now,
            )
            for result in report.results
            if _is_notification(result)
        ]
        if records:
            self.data_store.add_notification_records(records)
            logger.debug(f"Recorded {len(records)} notification(s) for {event}")
        return records

    # =========================================================================
    # Queries
    # =========================================================================

    def delivery_rate(self, tenant_id: str, days: int = DEFAULT_WINDOW_DAYS) -> dict[str, ChannelDeliveryRate]:
        """
        Share of delivered notifications per channel over the last `days`.

        Every channel is present in the result; a channel with no records
        reports a rate of 0.
        """
        since = self._clock() - timedelta(days=days)
        totals: Counter = Counter()
        delivered: Counter = Counter()
        for record in self.data_store.get_notification_records(tenant_id, since=since):
            totals[record.channel] += 1
            if record.status == DeliveryStatus.DELIVERED:
                delivered[record.channel] += 1

        rates = {}
        for channel in ChannelType:
            total = totals[channel.value]
            rates[channel.value] = ChannelDeliveryRate(
                delivered=delivered[channel.value],
                total=total,
                rate=delivered[channel.value] / total if total else 0.0,
            )
        return rates

    def breakdown(
        self,
        tenant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[NotificationBreakdown]:
        """Counts per (channel, event type), split by status, sorted by channel then event type."""
        groups: dict[tuple[str, str], Counter] = {}
        for record in self.data_store.get_notification_records(tenant_id, since=start, until=end):
            groups.setdefault((record.channel, record.event_type), Counter())[record.status.value] += 1

        return [
            NotificationBreakdown(
                channel=channel,
                event_type=event_type,
                total=sum(by_status.values()),
                by_status=dict(by_status),
            )
            for (channel, event_type), by_status in sorted(groups.items())
        ]

    def report(self, tenant_id: str, days: int = DEFAULT_WINDOW_DAYS) -> NotificationAnalyticsReport:
        """Delivery rates and the breakdown over the same trailing window."""
        since = self._clock() - timedelta(days=days)
        return NotificationAnalyticsReport(
            tenant_id=tenant_id,
            days=days,
            since=since,
            delivery_rate=self.delivery_rate(tenant_id, days=days),
            breakdown=self.breakdown(tenant_id, start=since),
        )
