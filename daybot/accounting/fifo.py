"""
FIFO realized-P&L engine.

Per ticker, an ordered queue of open lots with signed quantity (long > 0,
short < 0). A trade opposite to the net position consumes lots oldest-first;
any unmatched remainder opens a lot in the trade's own direction. A trade in
the same direction (or from flat) appends a lot.

Reproduces the trade log (per-trade realized + running total) and the open
position view purely from trade history.
"""
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Deque, Dict, Iterable, List, Optional

from daybot.domain.models import Side, TradeRecord

ZERO = Decimal("0")


@dataclass
class Lot:
    """Open lot: signed quantity at a cost basis."""
    quantity: Decimal
    cost_basis: Decimal


@dataclass(frozen=True)
class FifoFill:
    """Minimal trade input for the engine."""
    ticker: str
    side: Side
    quantity: Decimal
    price: Decimal
    at: Optional[datetime] = None
    trade_id: Optional[int] = None


@dataclass(frozen=True)
class AnnotatedFill:
    """A fill with its realized increment and cumulative realized P&L."""
    fill: FifoFill
    realized: Decimal
    cumulative: Decimal

    def to_dict(self) -> dict:
        return {
            "id": self.fill.trade_id,
            "ticker": self.fill.ticker,
            "side": self.fill.side.value,
            "qty": float(self.fill.quantity),
            "price": float(self.fill.price),
            "at": self.fill.at.isoformat() if self.fill.at else None,
            "realized": float(self.realized),
            "cum_realized": float(self.cumulative),
        }


@dataclass(frozen=True)
class OpenPosition:
    """Net open quantity and average cost for a ticker."""
    ticker: str
    quantity: Decimal
    avg_cost: Decimal

    def to_dict(self) -> dict:
        return {"ticker": self.ticker, "qty": float(self.quantity), "avg_cost": float(self.avg_cost)}


@dataclass
class FifoLedger:
    """Lot inventory plus cumulative realized P&L."""
    lots: Dict[str, Deque[Lot]] = field(default_factory=dict)
    cumulative: Decimal = ZERO

    def net_quantity(self, ticker: str) -> Decimal:
        return sum((lot.quantity for lot in self.lots.get(ticker, ())), ZERO)

    def apply(self, fill: FifoFill) -> Decimal:
        """Apply one fill; return its realized P&L increment."""
        if fill.quantity <= 0:
            return ZERO

        lots = self.lots.setdefault(fill.ticker, deque())
        is_buy = fill.side is Side.BUY
        flow = fill.quantity if is_buy else -fill.quantity
        net = self.net_quantity(fill.ticker)
        realized = ZERO

        if net != 0 and (net > 0) != (flow > 0):
            remaining = fill.quantity
            while remaining > 0 and lots:
                lot = lots[0]
                matched = min(abs(lot.quantity), remaining)
                if lot.quantity > 0:
                    # Selling against a long lot
                    realized += (fill.price - lot.cost_basis) * matched
                    lot.quantity -= matched
                else:
                    # Buying back a short lot
                    realized += (lot.cost_basis - fill.price) * matched
                    lot.quantity += matched
                remaining -= matched
                if lot.quantity == 0:
                    lots.popleft()
            if remaining > 0:
                lots.append(Lot(quantity=remaining if is_buy else -remaining, cost_basis=fill.price))
        else:
            lots.append(Lot(quantity=flow, cost_basis=fill.price))

        self.cumulative += realized
        return realized

    def open_positions(self) -> List[OpenPosition]:
        positions = []
        for ticker, lots in self.lots.items():
            qty = self.net_quantity(ticker)
            if qty == 0:
                continue
            total_cost = sum((lot.cost_basis * lot.quantity for lot in lots), ZERO)
            positions.append(OpenPosition(ticker=ticker, quantity=qty, avg_cost=total_cost / qty))
        return positions


def fill_from_trade(trade: TradeRecord) -> FifoFill:
    """Ledger trade -> engine input, using the fill price once stamped."""
    return FifoFill(
        ticker=trade.ticker,
        side=trade.side,
        quantity=Decimal(trade.shares),
        price=trade.effective_price,
        at=trade.filled_at or trade.at,
        trade_id=trade.id,
    )


def compute_pnl_and_positions(fills: Iterable[FifoFill]) -> tuple[List[AnnotatedFill], List[OpenPosition]]:
    """
    Run fills (chronological) through a fresh ledger.

    Returns:
        (annotated fills, open positions)
    """
    ledger = FifoLedger()
    annotated = []
    for fill in fills:
        realized = ledger.apply(fill)
        annotated.append(AnnotatedFill(fill=fill, realized=realized, cumulative=ledger.cumulative))
    return annotated, ledger.open_positions()


def trade_log(trades: Iterable[TradeRecord]) -> tuple[List[AnnotatedFill], List[OpenPosition]]:
    """FIFO report for ledger trades, ordered by (trade time, id)."""
    ordered = sorted(trades, key=lambda t: (t.at, t.id))
    return compute_pnl_and_positions(fill_from_trade(t) for t in ordered)
