"""
Manual "panic" flatten: cancel every open order, then close every
broker-reported position with an opposite-side market order.

The ledger is not touched here; the resulting fills arrive through the
normal reconciliation paths.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List

from daybot.domain.protocols import Brokerage
from daybot.exceptions import AuthenticationError, OrderRejected, UpstreamUnavailable
from daybot.monitoring.logger import get_logger
from daybot.reconciliation.order_events import to_decimal

logger = get_logger(__name__)


@dataclass
class FlattenReport:
    canceled_open_orders: bool = False
    closed: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "canceled_open_orders": self.canceled_open_orders,
            "closed": self.closed,
            "errors": self.errors,
        }


async def flatten_all(broker: Brokerage) -> FlattenReport:
    """
    Best-effort flatten of the whole account.

    A failed cancel is reported and the close loop still runs; each symbol
    succeeds or fails on its own.

    Raises:
        UpstreamUnavailable: positions could not be listed
        ConfigurationError: broker credentials are missing
    """
    report = FlattenReport()
    try:
        canceled = await broker.cancel_all_open_orders()
        report.canceled_open_orders = True
        logger.warning("PANIC_ORDERS_CANCELED", count=canceled)
    except AuthenticationError:
        raise
    except UpstreamUnavailable as e:
        report.errors.append({"symbol": "*", "error": f"cancel open orders failed: {e}"})
        logger.error("PANIC_CANCEL_FAILED", error=str(e))

    positions = await broker.list_positions()
    for raw in positions:
        symbol = str(raw.get("symbol") or "").upper()
        qty = to_decimal(raw.get("qty"))
        if not symbol or qty is None or qty == 0:
            continue
        side = "sell" if qty > 0 else "buy"
        size = abs(qty)
        try:
            ack = await broker.submit_market_order(symbol, size, side)
        except (OrderRejected, UpstreamUnavailable) as e:
            report.errors.append({"symbol": symbol, "error": str(e)})
            logger.error("PANIC_CLOSE_FAILED", symbol=symbol, qty=str(qty), error=str(e))
            continue
        report.closed.append({"symbol": symbol, "side": side, "qty": str(size), "order_id": ack.order_id})

    logger.warning(
        "PANIC_FLATTEN",
        positions=len(positions),
        closed=[c["symbol"] for c in report.closed],
        errors=len(report.errors),
    )
    return report
