"""
Entry submission with adaptive slippage.

Handles:
- Reference price resolution (snapshot -> recommendation -> live quote)
- Share sizing against cash and the budget cap
- Bracket construction with tick rounding
- Widening-limit retries with a refreshed quote per attempt
- Pending entry marker before each send, optimistic ledger entry on acceptance
"""
import asyncio
import uuid
from datetime import datetime
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Dict, List, Optional, Sequence

from daybot.config.config import ExecutionConfig
from daybot.domain.models import BracketOrder, Mover, OrderAck, PositionView, RecommendationView
from daybot.domain.protocols import Brokerage, MarketData
from daybot.exceptions import (
    AuthenticationError,
    InsufficientFunds,
    NoReferencePrice,
    OrderRejected,
    UpstreamUnavailable,
)
from daybot.execution.price_rounding import ceil_to_tick, floor_to_tick
from daybot.monitoring.logger import get_logger
from daybot.storage import repository

logger = get_logger(__name__)


def slip_label(slip: Decimal) -> str:
    return f"slip_{slip * 100:.1f}%"


def new_client_order_id(ticker: str) -> str:
    return f"daybot-{ticker.lower()}-{uuid.uuid4().hex[:16]}"


def size_shares(cash: Decimal, budget_cap: Decimal, price: Decimal) -> int:
    """
    floor(min(cash, budget_cap) / price).

    Raises:
        InsufficientFunds: not even one share is affordable
    """
    if price <= 0:
        raise NoReferencePrice(f"non-positive price {price}")
    budget = min(cash, budget_cap)
    shares = int((budget / price).to_integral_value(rounding=ROUND_FLOOR)) if budget > 0 else 0
    if shares <= 0:
        raise InsufficientFunds(f"budget {budget} does not cover one share at {price}")
    return shares


@dataclass
class EntryResult:
    """Outcome of one entry attempt sequence."""
    ok: bool
    ticker: str
    shares: int = 0
    limit_price: Optional[Decimal] = None
    order_id: Optional[str] = None
    slippage: Optional[Decimal] = None
    client_order_id: Optional[str] = None
    position: Optional[PositionView] = None
    reasons: List[str] = field(default_factory=list)
    uncertain: bool = False  # submission outcome unknown (timeout)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "ticker": self.ticker,
            "shares": self.shares,
            "limit_price": str(self.limit_price) if self.limit_price is not None else None,
            "order_id": self.order_id,
            "client_order_id": self.client_order_id,
            "slippage": str(self.slippage) if self.slippage is not None else None,
            "reasons": list(self.reasons),
            "uncertain": self.uncertain,
        }


class EntrySubmitter:
    """
    Places the day's single protected entry.

    The caller holds the daily claim; this class never touches it. Before
    each send the order's client_order_id is stored as the pending entry, so
    a submission whose outcome is unknown pins the claim. Cash and positions
    are written only on acceptance, so an exhausted submission leaves cash
    and equity unchanged.
    """

    def __init__(
        self,
        config: ExecutionConfig,
        broker: Brokerage,
        market_data: MarketData,
        dry_run: bool = False,
    ):
        self.config = config
        self.broker = broker
        self.market_data = market_data
        self.dry_run = dry_run
        # Config floats go through str() so 0.003 stays 0.003
        self.target_pct = Decimal(str(config.target_pct))
        self.stop_pct = Decimal(str(config.stop_pct))
        self.budget_cap = Decimal(str(config.budget_cap))
        self.slippage_steps = [Decimal(str(s)) for s in config.slippage_steps]

    async def _quote(self, ticker: str) -> Optional[Decimal]:
        try:
            return await asyncio.wait_for(
                self.market_data.get_quote(ticker), timeout=self.config.order_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning("QUOTE_TIMEOUT", ticker=ticker)
            return None

    async def resolve_reference(
        self,
        ticker: str,
        snapshot: Sequence[Mover] = (),
        recommendation: Optional[RecommendationView] = None,
    ) -> Decimal:
        """
        First available of: snapshot price, stored recommendation price, live quote.

        Raises:
            NoReferencePrice: none of the three sources has a usable price
        """
        for mover in snapshot:
            if mover.ticker == ticker and mover.price is not None and mover.price > 0:
                return mover.price
        if recommendation is not None and recommendation.ticker == ticker:
            if recommendation.price is not None and recommendation.price > 0:
                return recommendation.price
        quote = await self._quote(ticker)
        if quote is not None and quote > 0:
            return quote
        raise NoReferencePrice(f"no reference price for {ticker}")

    def build_bracket(
        self,
        ticker: str,
        shares: int,
        reference: Decimal,
        slip: Decimal,
        client_order_id: Optional[str] = None,
    ) -> BracketOrder:
        limit = ceil_to_tick(reference * (1 + slip))
        return BracketOrder(
            symbol=ticker,
            qty=shares,
            limit_price=limit,
            take_profit=ceil_to_tick(limit * (1 + self.target_pct)),
            stop_loss=floor_to_tick(limit * (1 + self.stop_pct)),
            time_in_force=self.config.time_in_force,
            client_order_id=client_order_id,
        )

    async def _send(self, order: BracketOrder) -> OrderAck:
        if self.dry_run:
            logger.info("ENTRY_DRY_RUN", **order.to_dict())
            return OrderAck(order_id=f"dry-{uuid.uuid4().hex[:12]}", status="accepted", symbol=order.symbol)
        return await asyncio.wait_for(
            self.broker.submit_bracket_order(order), timeout=self.config.order_timeout_seconds
        )

    async def submit(
        self,
        ticker: str,
        cash: Decimal,
        reference: Decimal,
        at: Optional[datetime] = None,
    ) -> EntryResult:
        """
        Try each slippage step until the venue accepts the bracket.

        Raises:
            InsufficientFunds: zero affordable shares at the reference price
            AuthenticationError: broker rejected our credentials
            ConcurrencyConflict: another open position was recorded first
        """
        size_shares(cash, self.budget_cap, reference)

        result = EntryResult(ok=False, ticker=ticker)
        ref = reference
        for slip in self.slippage_steps:
            label = slip_label(slip)
            quote = await self._quote(ticker)
            if quote is not None and quote > 0:
                ref = quote

            sizing_price = ceil_to_tick(ref * (1 + slip)) if self.config.size_on_entry_limit else ref
            try:
                shares = size_shares(cash, self.budget_cap, sizing_price)
            except InsufficientFunds as e:
                result.reasons.append(f"{label}: {e}")
                continue

            order = self.build_bracket(ticker, shares, ref, slip, client_order_id=new_client_order_id(ticker))
            logger.info(
                "ENTRY_ATTEMPT",
                ticker=ticker,
                slippage=str(slip),
                reference=str(ref),
                shares=shares,
                limit=str(order.limit_price),
                take_profit=str(order.take_profit),
                stop_loss=str(order.stop_loss),
            )
            await asyncio.to_thread(repository.mark_entry_pending, order.client_order_id)
            try:
                ack = await self._send(order)
            except AuthenticationError:
                # Refused before reaching the book
                await asyncio.to_thread(repository.clear_entry_pending, order.client_order_id)
                raise
            except (OrderRejected, UpstreamUnavailable) as e:
                result.reasons.append(f"{label}: {e}")
                logger.warning("ENTRY_ATTEMPT_FAILED", ticker=ticker, slippage=str(slip), error=str(e))
                continue
            except asyncio.TimeoutError:
                # The order may have reached the venue; a wider retry could double the entry
                result.reasons.append(f"{label}: timeout")
                result.uncertain = True
                result.client_order_id = order.client_order_id
                logger.error(
                    "ENTRY_ATTEMPT_TIMEOUT", ticker=ticker, slippage=str(slip), client_order_id=order.client_order_id
                )
                break

            position = await asyncio.to_thread(
                repository.record_entry, ticker, shares, order.limit_price, ack.order_id, at=at
            )
            result.ok = True
            result.shares = shares
            result.limit_price = order.limit_price
            result.order_id = ack.order_id
            result.client_order_id = order.client_order_id
            result.slippage = slip
            result.position = position
            logger.info(
                "ENTRY_SUBMITTED",
                ticker=ticker,
                order_id=ack.order_id,
                shares=shares,
                limit=str(order.limit_price),
                slippage=str(slip),
                dry_run=self.dry_run,
            )
            return result

        if not result.uncertain:
            # Every attempt was refused; nothing is live at the venue
            await asyncio.to_thread(repository.clear_entry_pending)
        logger.warning("ENTRY_EXHAUSTED", ticker=ticker, reasons=result.reasons, uncertain=result.uncertain)
        return result
