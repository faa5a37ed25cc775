"""
Fill reconciliation: apply broker fill events to the ledger idempotently.

Both delivery channels (periodic order sync and push webhook) route every
event through FillReconciler.apply_event. Events are at-least-once and may
arrive in any order, so each handler runs in one transaction that locks the
bot state row and relies on two ledger-level guards:

- BUY: the trade's ``filled_at`` stamp is set with a conditional UPDATE
  (``WHERE filled_at IS NULL``); only the caller that sets it applies the
  cash correction.
- SELL: the trade keyed by broker order id records the quantity and price
  already applied; a replay applies only the difference, so an identical
  event is a no-op and a later price correction is applied exactly once.

A ReconciliationMismatch never escapes a handler: the event is dropped with
a logged reason and reported in the ApplyResult.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from daybot.domain.models import Side
from daybot.exceptions import ReconciliationMismatch
from daybot.monitoring.logger import get_logger
from daybot.reconciliation.order_events import OrderEvent
from daybot.storage.db import get_db
from daybot.storage.repository import (
    BotStateModel,
    PositionModel,
    TradeModel,
    adjust_cash,
    ensure_bot_state,
    lock_state_row,
    recompute_equity,
    utcnow,
)

logger = get_logger(__name__)

ZERO = Decimal("0")
MAX_APPLY_ATTEMPTS = 2


@dataclass
class ApplyResult:
    """Outcome of applying one event."""
    applied: bool
    action: str
    order_id: Optional[str] = None
    reason: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out = {"applied": self.applied, "action": self.action, "order_id": self.order_id}
        if self.reason:
            out["reason"] = self.reason
        if self.details:
            out.update(self.details)
        return out


class FillReconciler:
    """
    Applies broker order events to the ledger.

    Handlers are synchronous (one DB transaction each) and safe to call
    concurrently from several processes.
    """

    def __init__(self, now_fn: Optional[Callable[[], datetime]] = None, starting_cash: Optional[Decimal] = None):
        self._now = now_fn or utcnow
        # When set, a missing bot state row is created before the first event
        self.starting_cash = starting_cash

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def apply_event(self, event: OrderEvent) -> ApplyResult:
        """Route one event to the matching handler."""
        if not event.order_id or not event.symbol:
            return ApplyResult(False, "ignored", event.order_id, "missing order id or symbol")

        if event.side == "buy":
            if event.has_fill:
                return self.apply_buy_fill(event)
            if event.is_terminal:
                return self.void_unfilled_entry(event)
        elif event.side == "sell":
            if event.has_fill:
                return self.apply_sell_fill(event)
        else:
            return ApplyResult(False, "ignored", event.order_id, f"unknown side for status={event.status}")

        return ApplyResult(False, "ignored", event.order_id, f"no-op status={event.status}")

    def apply_buy_fill(self, event: OrderEvent) -> ApplyResult:
        return self._run("buy", self._apply_buy, event)

    def apply_sell_fill(self, event: OrderEvent, position_id: Optional[int] = None) -> ApplyResult:
        return self._run("sell", lambda session, ev: self._apply_sell(session, ev, position_id), event)

    def void_unfilled_entry(self, event: OrderEvent) -> ApplyResult:
        return self._run("void", self._void_entry, event)

    def record_exit(
        self,
        position_id: int,
        ticker: str,
        shares: int,
        price: Decimal,
        order_id: Optional[str] = None,
    ) -> ApplyResult:
        """
        Synchronous SELL accounting for a market close we just submitted.

        When the close order id is known, a later broker fill for the same
        id corrects the price through the normal SELL path.
        """
        event = OrderEvent(
            order_id=order_id,
            symbol=ticker,
            side="sell",
            status="filled",
            qty=Decimal(shares),
            filled_qty=Decimal(shares),
            filled_avg_price=price,
            filled_at=self._now(),
        )
        return self.apply_sell_fill(event, position_id=position_id)

    def _run(self, kind: str, handler: Callable[[Session, OrderEvent], ApplyResult], event: OrderEvent) -> ApplyResult:
        """
        Run a handler in its own transaction.

        A unique-constraint violation means a concurrent writer inserted the
        same row first; the handler is re-run once and then sees that row.
        """
        if self.starting_cash is not None:
            ensure_bot_state(self.starting_cash)
        for attempt in range(1, MAX_APPLY_ATTEMPTS + 1):
            try:
                with get_db().get_session() as session:
                    result = handler(session, event)
            except ReconciliationMismatch as e:
                logger.warning("FILL_DROPPED", kind=kind, reason=str(e), **event.describe())
                return ApplyResult(False, "dropped", event.order_id, str(e))
            except IntegrityError as e:
                if attempt < MAX_APPLY_ATTEMPTS:
                    logger.info("FILL_APPLY_RACE_RETRY", kind=kind, order_id=event.order_id)
                    continue
                logger.warning("FILL_DROPPED", kind=kind, reason="ledger conflict", error=str(e.orig), **event.describe())
                return ApplyResult(False, "conflict", event.order_id, "ledger conflict")
            if result.applied:
                logger.info(f"{kind.upper()}_FILL_APPLIED", action=result.action, **event.describe(), **result.details)
            else:
                logger.debug("FILL_NOOP", kind=kind, action=result.action, order_id=event.order_id)
            return result
        raise AssertionError("unreachable")

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @staticmethod
    def _trade_for_order(session: Session, order_id: Optional[str]) -> Optional[TradeModel]:
        if not order_id:
            return None
        return session.execute(
            select(TradeModel).where(TradeModel.broker_order_id == order_id)
        ).scalar_one_or_none()

    @staticmethod
    def _position_by_order(session: Session, *order_ids: Optional[str]) -> Optional[PositionModel]:
        ids = [i for i in order_ids if i]
        if not ids:
            return None
        return session.execute(
            select(PositionModel).where(PositionModel.broker_order_id.in_(ids)).order_by(PositionModel.id.desc())
        ).scalars().first()

    @staticmethod
    def _open_position_for(session: Session, ticker: str) -> Optional[PositionModel]:
        return session.execute(
            select(PositionModel)
            .where(PositionModel.is_open.is_(True))
            .where(PositionModel.ticker == ticker)
            .order_by(PositionModel.id.desc())
        ).scalars().first()

    def _unowned_open_position(self, session: Session, ev: OrderEvent) -> Optional[PositionModel]:
        """
        Open position for the ticker that no broker order owns yet.

        Raises:
            ReconciliationMismatch: the open position belongs to another entry order
        """
        position = self._open_position_for(session, ev.symbol)
        if position is not None and position.broker_order_id not in (None, ev.order_id):
            raise ReconciliationMismatch(
                f"buy fill for order {ev.order_id} but the open {ev.symbol} position belongs to "
                f"order {position.broker_order_id}"
            )
        return position

    @staticmethod
    def _resolve_pending(state: BotStateModel, ev: OrderEvent) -> bool:
        """Clear the pending entry marker when this event is that entry."""
        if ev.client_order_id and state.pending_entry_ref == ev.client_order_id:
            state.pending_entry_ref = None
            return True
        return False

    # ------------------------------------------------------------------
    # BUY
    # ------------------------------------------------------------------

    def _apply_buy(self, session: Session, ev: OrderEvent) -> ApplyResult:
        state = lock_state_row(session)
        trade = self._trade_for_order(session, ev.order_id)
        if trade is not None and trade.side != Side.BUY.value:
            raise ReconciliationMismatch(f"order {ev.order_id} is recorded as {trade.side}")
        if trade is not None and trade.filled_at is not None:
            return ApplyResult(False, "already_stamped", ev.order_id)

        position = None
        if trade is not None and trade.position_id is not None:
            position = session.get(PositionModel, trade.position_id)
        if position is None:
            position = self._position_by_order(session, ev.order_id) or self._unowned_open_position(session, ev)

        filled_qty = ev.filled_qty if ev.filled_qty is not None and ev.filled_qty > 0 else None
        filled_at = ev.filled_at or self._now()

        if position is None:
            self._resolve_pending(state, ev)
            return self._adopt_buy(session, ev, filled_qty, filled_at)

        # Submitted size; the position may already be reduced by an earlier SELL
        assumed_shares = int(trade.shares) if trade is not None else int(position.shares)
        if not ev.is_terminal and filled_qty is not None and filled_qty < assumed_shares:
            # Cumulative qty/avg arrive with the terminal event
            return ApplyResult(False, "buy_partial_pending", ev.order_id,
                               details={"filled_qty": int(filled_qty), "expected": assumed_shares})

        assumed_entry = Decimal(position.entry_price)
        true_fill = ev.filled_avg_price if ev.filled_avg_price is not None else assumed_entry
        final_shares = int(filled_qty) if filled_qty is not None else assumed_shares
        sold_shares = max(assumed_shares - int(position.shares), 0)

        correction = ZERO
        realized_adjustment = ZERO
        if trade is not None:
            stamped = session.execute(
                update(TradeModel)
                .where(TradeModel.id == trade.id)
                .where(TradeModel.filled_at.is_(None))
                .values(filled_at=filled_at, filled_price=true_fill, price=true_fill, shares=final_shares)
                .execution_options(synchronize_session=False)
            )
            if stamped.rowcount != 1:
                return ApplyResult(False, "already_stamped", ev.order_id)
            # Positive when the real fill was better than assumed
            correction = assumed_entry * assumed_shares - true_fill * final_shares
            # SELLs applied before this stamp realized against the assumed entry
            realized_adjustment = (assumed_entry - true_fill) * sold_shares
        else:
            session.add(TradeModel(
                side=Side.BUY.value,
                ticker=ev.symbol,
                price=true_fill,
                shares=final_shares,
                at=filled_at,
                broker_order_id=ev.order_id,
                filled_at=filled_at,
                filled_price=true_fill,
                position_id=position.id,
            ))

        position.entry_price = true_fill
        if position.is_open:
            position.shares = max(final_shares - sold_shares, 0)
            if position.shares == 0:
                position.is_open = False
                position.exit_at = position.exit_at or filled_at
        if position.broker_order_id is None:
            position.broker_order_id = ev.order_id
        if position.last_price is None:
            position.last_price = true_fill

        if correction != 0 or realized_adjustment != 0:
            adjust_cash(session, correction, realized_adjustment)
        else:
            recompute_equity(session)

        return ApplyResult(True, "buy_stamped", ev.order_id, details={
            "assumed_entry": str(assumed_entry),
            "true_fill": str(true_fill),
            "shares": final_shares,
            "cash_correction": str(correction),
            "realized_adjustment": str(realized_adjustment),
        })

    def _adopt_buy(self, session: Session, ev: OrderEvent, filled_qty: Optional[Decimal],
                   filled_at: datetime) -> ApplyResult:
        """Defensive path: a BUY fill for which no local position exists."""
        price = ev.filled_avg_price
        if filled_qty is None or price is None or price <= 0:
            raise ReconciliationMismatch("buy fill references no known position and lacks qty/price")

        shares = int(filled_qty)
        position = PositionModel(
            ticker=ev.symbol,
            entry_price=price,
            shares=shares,
            entry_at=filled_at,
            is_open=True,
            broker_order_id=ev.order_id,
            last_price=price,
        )
        session.add(position)
        session.flush()
        session.add(TradeModel(
            side=Side.BUY.value,
            ticker=ev.symbol,
            price=price,
            shares=shares,
            at=filled_at,
            broker_order_id=ev.order_id,
            filled_at=filled_at,
            filled_price=price,
            position_id=position.id,
        ))
        adjust_cash(session, -(price * shares))
        return ApplyResult(True, "buy_adopted", ev.order_id, details={"shares": shares, "true_fill": str(price)})

    def _void_entry(self, session: Session, ev: OrderEvent) -> ApplyResult:
        """A BUY that ended without any fill: refund the optimistic debit once."""
        state = lock_state_row(session)
        trade = self._trade_for_order(session, ev.order_id)
        if trade is None and self._resolve_pending(state, ev):
            # The entry whose submission timed out never executed
            return ApplyResult(True, "pending_entry_voided", ev.order_id, details={"broker_status": ev.status})
        if trade is None or trade.side != Side.BUY.value:
            return ApplyResult(False, "ignored", ev.order_id, "no local entry for unfilled order")

        now = self._now()
        stamped = session.execute(
            update(TradeModel)
            .where(TradeModel.id == trade.id)
            .where(TradeModel.filled_at.is_(None))
            .values(filled_at=now, filled_price=None, shares=0)
            .execution_options(synchronize_session=False)
        )
        if stamped.rowcount != 1:
            return ApplyResult(False, "already_stamped", ev.order_id)

        refund = ZERO
        position = session.get(PositionModel, trade.position_id) if trade.position_id else None
        if position is not None and position.is_open:
            refund = Decimal(position.entry_price) * int(position.shares)
            position.is_open = False
            position.exit_price = position.entry_price
            position.exit_at = now
            position.shares = 0
        adjust_cash(session, refund)
        return ApplyResult(True, "entry_voided", ev.order_id, details={"refund": str(refund), "broker_status": ev.status})

    # ------------------------------------------------------------------
    # SELL
    # ------------------------------------------------------------------

    def _apply_sell(self, session: Session, ev: OrderEvent, position_id: Optional[int] = None) -> ApplyResult:
        lock_state_row(session)
        existing = self._trade_for_order(session, ev.order_id)
        if existing is not None and existing.side != Side.SELL.value:
            raise ReconciliationMismatch(f"order {ev.order_id} is recorded as {existing.side}")

        position = None
        if existing is not None and existing.position_id is not None:
            position = session.get(PositionModel, existing.position_id)
        if position is None and position_id is not None:
            position = session.get(PositionModel, position_id)
        if position is None:
            position = (
                self._position_by_order(session, ev.order_id, ev.parent_order_id)
                or self._open_position_for(session, ev.symbol)
            )
        if position is None:
            raise ReconciliationMismatch("sell fill references no known position")
        if existing is None and not position.is_open:
            raise ReconciliationMismatch(f"position {position.id} already closed")

        entry = Decimal(position.entry_price)
        applied_qty = int(existing.shares) if existing is not None else 0
        applied_price = (
            Decimal(existing.filled_price if existing.filled_price is not None else existing.price)
            if existing is not None else ZERO
        )
        available = applied_qty + int(position.shares)

        reported = ev.filled_qty if ev.filled_qty is not None and ev.filled_qty > 0 else ev.qty
        target_qty = min(int(reported), available) if reported is not None else available

        fill_price = (
            ev.filled_avg_price
            or ev.leg_avg_price()
            or (Decimal(existing.filled_price) if existing is not None and existing.filled_price is not None else None)
            or (Decimal(position.exit_price) if position.exit_price is not None else None)
            or entry
        )

        delta_qty = target_qty - applied_qty
        if existing is not None and (delta_qty < 0 or (delta_qty == 0 and fill_price == applied_price)):
            return ApplyResult(False, "already_applied", ev.order_id)
        if target_qty <= 0:
            return ApplyResult(False, "ignored", ev.order_id, "no sellable quantity")

        delta_cash = target_qty * fill_price - applied_qty * applied_price
        delta_realized = delta_cash - delta_qty * entry
        filled_at = ev.filled_at or self._now()

        if existing is not None:
            existing.shares = target_qty
            existing.price = fill_price
            existing.filled_price = fill_price
            existing.filled_at = existing.filled_at or filled_at
        else:
            session.add(TradeModel(
                side=Side.SELL.value,
                ticker=position.ticker,
                price=fill_price,
                shares=target_qty,
                at=filled_at,
                broker_order_id=ev.order_id,
                filled_at=filled_at,
                filled_price=fill_price,
                position_id=position.id,
            ))

        remaining = int(position.shares) - delta_qty
        closed = remaining <= 0
        if closed:
            position.shares = 0
            position.is_open = False
            position.exit_price = fill_price
            position.exit_at = position.exit_at or filled_at
        else:
            position.shares = remaining
            position.last_price = fill_price

        adjust_cash(session, delta_cash, delta_realized)
        return ApplyResult(True, "position_closed" if closed else "position_reduced", ev.order_id, details={
            "ticker": position.ticker,
            "sell_qty": target_qty,
            "fill_price": str(fill_price),
            "cash_delta": str(delta_cash),
            "realized_delta": str(delta_realized),
        })
