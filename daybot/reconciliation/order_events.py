"""
Tolerant adapter from broker order payloads to one canonical OrderEvent.

Brokerage payloads differ between the REST order listing and push
notifications (field synonyms, nesting, string vs numeric quantities).
Everything downstream consumes OrderEvent only.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

ID_FIELDS = ("id", "order_id")
CLIENT_ID_FIELDS = ("client_order_id", "client_id")
SYMBOL_FIELDS = ("symbol", "ticker")
QTY_FIELDS = ("qty", "quantity")
FILLED_QTY_FIELDS = ("filled_qty", "filled_quantity", "cum_qty")
AVG_PRICE_FIELDS = ("filled_avg_price", "avg_price", "avg_fill_price", "fill_price")
FILLED_AT_FIELDS = ("filled_at", "timestamp")
SUBMITTED_AT_FIELDS = ("submitted_at", "created_at")

# Push events use verb forms; the REST listing uses states
STATUS_ALIASES = {
    "fill": "filled",
    "partial_fill": "partially_filled",
    "cancelled": "canceled",
}
TERMINAL_STATUSES = frozenset({"filled", "canceled", "expired", "done_for_day", "rejected", "stopped"})


def first_present(data: Mapping[str, Any], names: Sequence[str]) -> Any:
    """First value among ``names`` that is present and not None/''."""
    for name in names:
        value = data.get(name)
        if value is not None and value != "":
            return value
    return None


def to_decimal(value: Any) -> Optional[Decimal]:
    """Safe numeric coercion: None for missing, non-numeric or non-finite input."""
    if value is None or isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not result.is_finite():
        return None
    return result


def to_datetime(value: Any) -> Optional[datetime]:
    """ISO-8601 (with optional Z) -> naive UTC, else None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def normalize_status(raw: Any) -> str:
    status = str(raw or "").strip().lower()
    return STATUS_ALIASES.get(status, status)


def normalize_side(raw: Any) -> str:
    side = str(raw or "").strip().lower()
    return side if side in ("buy", "sell") else "unknown"


@dataclass
class OrderEvent:
    """Canonical broker order / fill event."""
    order_id: Optional[str]
    symbol: str
    side: str
    status: str
    qty: Optional[Decimal] = None
    filled_qty: Optional[Decimal] = None
    filled_avg_price: Optional[Decimal] = None
    filled_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    client_order_id: Optional[str] = None
    parent_order_id: Optional[str] = None
    order_class: str = ""
    legs: List["OrderEvent"] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def has_fill(self) -> bool:
        """Any evidence of execution: a fill status, a positive filled qty, or a fill time."""
        return (
            "fill" in self.status
            or (self.filled_qty is not None and self.filled_qty > 0)
            or self.filled_at is not None
        )

    def leg_avg_price(self) -> Optional[Decimal]:
        for leg in self.legs:
            if leg.filled_avg_price is not None:
                return leg.filled_avg_price
        return None

    def describe(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "symbol": self.symbol,
            "side": self.side,
            "status": self.status,
            "filled_qty": str(self.filled_qty) if self.filled_qty is not None else None,
            "filled_avg_price": str(self.filled_avg_price) if self.filled_avg_price is not None else None,
        }


def normalize_order(raw: Mapping[str, Any], *, parent_order_id: Optional[str] = None,
                    status_override: Any = None) -> OrderEvent:
    """Build an OrderEvent from one broker order mapping (legs recursively)."""
    order_id = first_present(raw, ID_FIELDS)
    order_id = str(order_id) if order_id is not None else None
    client_id = first_present(raw, CLIENT_ID_FIELDS)
    legs_raw = raw.get("legs") if isinstance(raw.get("legs"), list) else []

    return OrderEvent(
        order_id=order_id,
        client_order_id=str(client_id) if client_id is not None else None,
        parent_order_id=parent_order_id,
        symbol=str(first_present(raw, SYMBOL_FIELDS) or "").strip().upper(),
        side=normalize_side(raw.get("side")),
        status=normalize_status(status_override if status_override not in (None, "") else raw.get("status")),
        qty=to_decimal(first_present(raw, QTY_FIELDS)),
        filled_qty=to_decimal(first_present(raw, FILLED_QTY_FIELDS)),
        filled_avg_price=to_decimal(first_present(raw, AVG_PRICE_FIELDS)),
        filled_at=to_datetime(first_present(raw, FILLED_AT_FIELDS)),
        submitted_at=to_datetime(first_present(raw, SUBMITTED_AT_FIELDS)),
        order_class=str(raw.get("order_class") or "").lower(),
        legs=[normalize_order(leg, parent_order_id=order_id) for leg in legs_raw if isinstance(leg, Mapping)],
    )


def flatten_orders(orders: Iterable[OrderEvent]) -> Iterator[OrderEvent]:
    """Yield each order followed by its legs (depth-first)."""
    for order in orders:
        yield order
        yield from flatten_orders(order.legs)


def event_from_webhook(payload: Mapping[str, Any]) -> OrderEvent:
    """
    Extract the order event from a push payload.

    The order lives at ``payload.order``, ``payload.data.order`` or is the
    payload itself; the status comes from the order, then the push event name.
    """
    data = payload.get("data") if isinstance(payload.get("data"), Mapping) else {}
    order = payload.get("order")
    if not isinstance(order, Mapping):
        order = data.get("order") if isinstance(data.get("order"), Mapping) else payload

    status = order.get("status") or first_present(payload, ("event", "status")) or data.get("event")
    event = normalize_order(order, status_override=status)

    # Push payloads carry the fill time/price on the envelope
    if "fill" in event.status:
        if event.filled_at is None:
            event.filled_at = to_datetime(payload.get("timestamp"))
        if event.filled_avg_price is None:
            event.filled_avg_price = to_decimal(payload.get("price"))
    return event
