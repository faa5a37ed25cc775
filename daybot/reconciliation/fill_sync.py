"""
Poll-driven fill sync: list recent broker orders (bracket legs included)
and route every fill through the reconciler.

The push webhook covers the same events; the reconciler makes the two
channels idempotent with respect to each other.
"""
import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

from daybot.config.config import ReconciliationConfig
from daybot.domain.protocols import Brokerage
from daybot.exceptions import ValidationError
from daybot.monitoring.logger import get_logger
from daybot.reconciliation.order_events import OrderEvent, flatten_orders, normalize_order, to_datetime
from daybot.reconciliation.reconciler import FillReconciler
from daybot.runtime.exchange_clock import ExchangeClock

logger = get_logger(__name__)

DAY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass(frozen=True)
class SyncRange:
    """Broker order query range (aware UTC)."""
    after: datetime
    until: Optional[datetime] = None


def resolve_sync_range(
    clock: ExchangeClock,
    config: ReconciliationConfig,
    *,
    day: Optional[str] = None,
    window_minutes: Optional[Any] = None,
    until: Optional[str] = None,
) -> SyncRange:
    """
    ``day`` (YYYY-MM-DD) selects from that exchange-local midnight; otherwise
    a trailing window of ``window_minutes`` clamped to the configured bounds.

    Raises:
        ValidationError: malformed day, window or until value
    """
    until_dt = None
    if until:
        parsed = to_datetime(until)
        if parsed is None:
            raise ValidationError(f"invalid until: {until!r}")
        until_dt = parsed.replace(tzinfo=timezone.utc)

    if day:
        if not DAY_PATTERN.match(day):
            raise ValidationError(f"invalid day: {day!r} (expected YYYY-MM-DD)")
        after = clock.start_of_day_utc(day).replace(tzinfo=timezone.utc)
        return SyncRange(after=after, until=until_dt)

    minutes = config.default_window_minutes
    if window_minutes not in (None, ""):
        try:
            minutes = int(float(window_minutes))
        except (TypeError, ValueError):
            raise ValidationError(f"invalid windowMinutes: {window_minutes!r}")
    minutes = max(config.min_window_minutes, min(config.max_window_minutes, minutes))
    after = clock.now_utc().replace(tzinfo=timezone.utc) - timedelta(minutes=minutes)
    return SyncRange(after=after, until=until_dt)


def _event_sort_key(event: OrderEvent) -> datetime:
    return event.filled_at or event.submitted_at or datetime.min


class FillSync:
    """Pull recent orders from the broker and reconcile their fills."""

    def __init__(
        self,
        broker: Brokerage,
        reconciler: FillReconciler,
        config: ReconciliationConfig,
        clock: ExchangeClock,
    ):
        self.broker = broker
        self.reconciler = reconciler
        self.config = config
        self.clock = clock

    async def sync(
        self,
        *,
        day: Optional[str] = None,
        window_minutes: Optional[Any] = None,
        until: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Run one sync pass.

        Raises:
            ValidationError: bad range parameters
            UpstreamUnavailable: order listing failed
        """
        rng = resolve_sync_range(self.clock, self.config, day=day, window_minutes=window_minutes, until=until)
        raw_orders = await self.broker.list_orders(
            status="all",
            after=rng.after,
            until=rng.until,
            limit=self.config.order_page_limit,
            nested=True,
            direction="desc",
        )

        events = list(flatten_orders(normalize_order(o) for o in raw_orders if isinstance(o, Mapping)))
        # Oldest first so entries are stamped before their exits when both are present
        events.sort(key=_event_sort_key)

        results: List[Dict[str, Any]] = []
        processed = 0
        for event in events:
            if not (event.has_fill or (event.side == "buy" and event.is_terminal)):
                continue
            result = await asyncio.to_thread(self.reconciler.apply_event, event)
            if result.applied:
                processed += 1
            results.append(result.to_dict())

        logger.info(
            "FILL_SYNC_SUMMARY",
            after=rng.after.isoformat(),
            until=rng.until.isoformat() if rng.until else None,
            checked=len(events),
            routed=len(results),
            processed=processed,
        )
        return {
            "ok": True,
            "checked": len(events),
            "processed": processed,
            "results": results,
            "after": rng.after.isoformat(),
            "until": rng.until.isoformat() if rng.until else None,
        }
