"""
Quota tracker: monthly reservation admission per tenant.

Starter tenants get a fixed number of reservations per calendar month. Every
reservation-creation request asks the tracker to admit one unit *before* the
reservation is persisted; a refusal surfaces to the caller as QuotaExceeded.

Design decisions:
- The counter transition (rollover, limit check, increment, threshold flags)
  is a single atomic conditional update in the data store; the tracker never
  reads, compares and writes on its own
- Rollover happens on the first admission of a new period, no scheduled job
- Unlimited tenants are admitted without ever allocating a counter
- Threshold events are emitted after the atomic update returns, one per
  threshold set by that update, through an injected sink
- A unit consumed by an admission whose reservation later fails to persist
  is not returned; the counter never decreases within a period
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Union

from core.data_store import DataStore, get_data_store
from core.errors import NotFoundError, QuotaExceeded
from core.models import UNLIMITED, PeriodKey, Plan, QuotaUsage, Tenant, utcnow
from notifications.events import DomainEvent, quota_threshold

logger = logging.getLogger("quota")

EventSink = Callable[[DomainEvent], Any]

# Plans that are never metered, whatever limit is stored on the tenant
UNMETERED_PLANS = {Plan.PRO, Plan.ENTERPRISE}


@dataclass(frozen=True)
class Admitted:
    """The reservation may be created."""
    current: int
    limit: int
    thresholds_crossed: tuple[int, ...] = field(default_factory=tuple)

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED


@dataclass(frozen=True)
class Refused:
    """The tenant has used its whole allowance for this period."""
    current: int
    limit: int
    plan: str


Admission = Union[Admitted, Refused]


DEFAULT_STARTER_LIMIT = 400


def effective_limit(tenant: Tenant, starter_limit: int = DEFAULT_STARTER_LIMIT) -> int:
    """
    The limit admissions are evaluated against; UNLIMITED if not metered.

    A metered tenant without its own limit gets `starter_limit`.
    """
    if tenant.plan in UNMETERED_PLANS or tenant.unlimited:
        return UNLIMITED
    if tenant.quota_limit is None:
        return starter_limit
    return tenant.quota_limit


class QuotaTracker:
    """
    Per-tenant monthly admission counter with threshold detection.

    Example usage:
        tracker = QuotaTracker(event_sink=dispatcher.schedule)

        tracker.require_admission("rest-001")   # raises QuotaExceeded when full
        store.add_reservation(reservation)
    """

    def __init__(
        self,
        data_store: Optional[DataStore] = None,
        event_sink: Optional[EventSink] = None,
        clock: Callable[[], datetime] = utcnow,
        starter_limit: int = DEFAULT_STARTER_LIMIT,
    ):
        """
        Initialize the tracker.

        Args:
            data_store: Where counters live (defaults to singleton)
            event_sink: Called once per quota_threshold event
            clock: Returns the current time; the billing period is derived
                from it
            starter_limit: Allowance of metered tenants without their own
                limit
        """
        self.data_store = data_store or get_data_store()
        self.event_sink = event_sink
        self._clock = clock
        self.starter_limit = starter_limit

    def current_period(self) -> PeriodKey:
        return PeriodKey.for_datetime(self._clock())

    def _get_tenant(self, tenant_id: str) -> Tenant:
        tenant = self.data_store.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError(f"Restaurant {tenant_id} not found")
        return tenant

    # =========================================================================
    # Queries
    # =========================================================================

    def get_usage(self, tenant_id: str) -> QuotaUsage:
        """
        Report the tenant's usage for the current period.

        A counter left over from an earlier period reports zero; it is only
        reset by the next admission.

        Raises:
            NotFoundError: If the tenant does not exist
        """
        tenant = self._get_tenant(tenant_id)
        limit = effective_limit(tenant, self.starter_limit)
        period = self.current_period()

        if limit == UNLIMITED:
            current = sum(
                1 for r in self.data_store.get_reservations_by_tenant(tenant_id)
                if PeriodKey.for_datetime(r.created_at) == period
            )
            return QuotaUsage(current=current, limit=UNLIMITED, remaining=None, percentage=0, unlimited=True)

        counter = self.data_store.get_quota_counter(tenant_id)
        current = counter.count if counter is not None and counter.period == period else 0
        return QuotaUsage(
            current=current,
            limit=limit,
            remaining=max(limit - current, 0),
            percentage=math.floor(100 * current / limit) if limit > 0 else 100,
        )

    # =========================================================================
    # Admission
    # =========================================================================

    def admit(self, tenant_id: str) -> Admission:
        """
        Try to admit one reservation for the tenant.

        Returns:
            Admitted with the new count and any thresholds this admission
            crossed, or Refused with the current usage

        Raises:
            NotFoundError: If the tenant does not exist
        """
        tenant = self._get_tenant(tenant_id)
        limit = effective_limit(tenant, self.starter_limit)
        if limit == UNLIMITED:
            return Admitted(current=0, limit=UNLIMITED)

        outcome = self.data_store.admit_quota(tenant_id, self.current_period(), limit)
        if outcome.rolled_over:
            logger.info(f"Quota period rolled over for {tenant_id} ({self.current_period()})")

        if not outcome.admitted:
            logger.warning(f"Quota exceeded for {tenant_id}: {outcome.count}/{outcome.limit}")
            return Refused(current=outcome.count, limit=outcome.limit, plan=tenant.plan.value)

        logger.info(f"Admitted reservation for {tenant_id}: {outcome.count}/{outcome.limit}")
        for threshold in outcome.fired:
            self._emit(quota_threshold(tenant_id, threshold, outcome.count, outcome.limit))
        return Admitted(current=outcome.count, limit=outcome.limit, thresholds_crossed=outcome.fired)

    def require_admission(self, tenant_id: str) -> Admitted:
        """
        Admit or raise.

        Raises:
            QuotaExceeded: If the tenant's allowance is used up
            NotFoundError: If the tenant does not exist
        """
        result = self.admit(tenant_id)
        if isinstance(result, Refused):
            raise QuotaExceeded(current=result.current, limit=result.limit, plan=result.plan)
        return result

    def _emit(self, event: DomainEvent) -> None:
        logger.info(
            f"Quota threshold {event.payload['threshold']}% reached for {event.tenant_id} "
            f"({event.payload['current']}/{event.payload['limit']})"
        )
        if self.event_sink is None:
            return
        try:
            self.event_sink(event)
        except Exception as e:
            # The admission already happened; a lost warning must not undo it
            logger.error(f"Could not hand {event} to the dispatcher: {e!r}")

    # =========================================================================
    # Administration
    # =========================================================================

    def reset_period(self, tenant_id: str) -> QuotaUsage:
        """
        Force the tenant's counter to zero for the current period. Idempotent.

        Unlimited tenants have no counter and are left untouched.
        """
        tenant = self._get_tenant(tenant_id)
        limit = effective_limit(tenant, self.starter_limit)
        if limit != UNLIMITED:
            self.data_store.reset_quota(tenant_id, self.current_period(), limit)
            logger.info(f"Quota reset for {tenant_id} ({self.current_period()})")
        return self.get_usage(tenant_id)
