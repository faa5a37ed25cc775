"""
Domain models for the daily execution engine.

Plain value objects passed between the ledger, the orchestrator and the
HTTP surface. ORM rows never leave the storage layer.
All timestamps are naive UTC unless stated otherwise.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Dict, Any


class Side(str, Enum):
    """Trade side."""
    BUY = "BUY"
    SELL = "SELL"


class BotPhase(str, Enum):
    """Tick orchestrator states."""
    IDLE = "IDLE"
    PREWARM = "PREWARM"
    CLAIMING = "CLAIMING"
    ENTERING = "ENTERING"
    OPEN = "OPEN"
    MANDATORY_EXIT = "MANDATORY_EXIT"


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


@dataclass
class LedgerState:
    """Singleton bot state row."""
    cash: Decimal
    pnl: Decimal
    equity: Decimal
    last_run_day: Optional[str] = None
    claimed_at: Optional[datetime] = None
    pending_entry_ref: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: _jsonable(v) for k, v in asdict(self).items()}


@dataclass
class PositionView:
    """A ledger position."""
    id: int
    ticker: str
    entry_price: Decimal
    shares: int
    open: bool
    entry_at: datetime
    exit_price: Optional[Decimal] = None
    exit_at: Optional[datetime] = None
    broker_order_id: Optional[str] = None
    last_price: Optional[Decimal] = None

    @property
    def mark(self) -> Decimal:
        return self.last_price if self.last_price is not None else self.entry_price

    def to_dict(self) -> Dict[str, Any]:
        return {k: _jsonable(v) for k, v in asdict(self).items()}


@dataclass
class TradeRecord:
    """A ledger trade (BUY at submission, SELL at exit)."""
    id: int
    side: Side
    ticker: str
    price: Decimal
    shares: int
    at: datetime
    broker_order_id: Optional[str] = None
    filled_at: Optional[datetime] = None
    filled_price: Optional[Decimal] = None
    position_id: Optional[int] = None

    @property
    def effective_price(self) -> Decimal:
        """Fill price once stamped, submission price before."""
        return self.filled_price if self.filled_price is not None else self.price

    def to_dict(self) -> Dict[str, Any]:
        return {k: _jsonable(v) for k, v in asdict(self).items()}


@dataclass
class RecommendationView:
    """A stored daily pick."""
    ticker: str
    price: Optional[Decimal]
    at: datetime
    explanation: Optional[str] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: _jsonable(v) for k, v in asdict(self).items()}


@dataclass(frozen=True)
class Mover:
    """One row of the top-movers snapshot."""
    ticker: str
    price: Optional[Decimal] = None
    change_pct: Optional[Decimal] = None


@dataclass(frozen=True)
class Bar:
    """Intraday OHLCV bar."""
    timestamp: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {k: _jsonable(v) for k, v in asdict(self).items()}


@dataclass(frozen=True)
class BracketOrder:
    """Entry limit order with take-profit and stop-loss legs."""
    symbol: str
    qty: int
    limit_price: Decimal
    take_profit: Decimal
    stop_loss: Decimal
    time_in_force: str = "day"
    client_order_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: _jsonable(v) for k, v in asdict(self).items()}


@dataclass
class OrderAck:
    """Broker acknowledgement of a submitted order."""
    order_id: Optional[str]
    status: Optional[str] = None
    symbol: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)
