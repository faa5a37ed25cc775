"""
Ledger persistence: ORM models and repository functions.

Every correctness-relevant check (daily claim, single open position, trade
idempotency) is a conditional write or a unique constraint here, so it holds
across process instances sharing the database.
"""
from sqlalchemy import (
    Column, String, Numeric, DateTime, Integer, Boolean, Text, ForeignKey, Index,
    select, update, delete, func, or_,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from daybot.domain.models import LedgerState, PositionView, TradeRecord, RecommendationView, Side
from daybot.exceptions import ConcurrencyConflict, ConfigurationError
from daybot.monitoring.logger import get_logger
from daybot.storage.db import Base, get_db

logger = get_logger(__name__)

BOT_STATE_ID = 1
MONEY = Numeric(precision=18, scale=6)


def utcnow() -> datetime:
    """Naive UTC timestamp, as stored in the ledger."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BotStateModel(Base):
    """Singleton row: cash, cumulative realized pnl, equity and the daily claim."""
    __tablename__ = "bot_state"

    id = Column(Integer, primary_key=True, default=BOT_STATE_ID)
    cash = Column(MONEY, nullable=False)
    pnl = Column(MONEY, nullable=False, default=0)
    equity = Column(MONEY, nullable=False)
    last_run_day = Column(String(10), nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    # client_order_id of an entry that may be live at the venue; pins the claim
    pending_entry_ref = Column(String(64), nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class PositionModel(Base):
    """ORM model for positions (open and closed)."""
    __tablename__ = "positions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ticker = Column(String(16), nullable=False)
    entry_price = Column(MONEY, nullable=False)
    shares = Column(Integer, nullable=False)
    entry_at = Column(DateTime, nullable=False, default=utcnow)
    is_open = Column("open", Boolean, nullable=False, default=True)
    exit_price = Column(MONEY, nullable=True)
    exit_at = Column(DateTime, nullable=True)
    broker_order_id = Column(String(64), nullable=True, unique=True)
    last_price = Column(MONEY, nullable=True)

    __table_args__ = (
        # At most one open row, enforced by the database
        Index(
            "uq_positions_single_open",
            is_open,
            unique=True,
            postgresql_where=is_open.is_(True),
            sqlite_where=is_open.is_(True),
        ),
        Index("idx_positions_ticker_open", "ticker", "open"),
    )


class TradeModel(Base):
    """ORM model for trades. broker_order_id is the idempotency key."""
    __tablename__ = "trades"
    __table_args__ = (
        Index("idx_trades_at", "at"),
        Index("idx_trades_ticker_side", "ticker", "side"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    side = Column(String(4), nullable=False)
    ticker = Column(String(16), nullable=False)
    price = Column(MONEY, nullable=False)
    shares = Column(Integer, nullable=False)
    at = Column(DateTime, nullable=False, default=utcnow)
    broker_order_id = Column(String(64), nullable=True, unique=True)
    filled_at = Column(DateTime, nullable=True)
    filled_price = Column(MONEY, nullable=True)
    position_id = Column(Integer, ForeignKey("positions.id"), nullable=True)


class RecommendationModel(Base):
    """ORM model for daily picks."""
    __tablename__ = "recommendations"
    __table_args__ = (
        Index("idx_recommendations_at", "at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    ticker = Column(String(16), nullable=False)
    price = Column(MONEY, nullable=True)
    at = Column(DateTime, nullable=False, default=utcnow)
    explanation = Column(Text, nullable=True)


# ---------------------------------------------------------------------------
# Row -> domain conversion
# ---------------------------------------------------------------------------

def _dec(value) -> Optional[Decimal]:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


def to_ledger_state(row: BotStateModel) -> LedgerState:
    return LedgerState(
        cash=_dec(row.cash),
        pnl=_dec(row.pnl),
        equity=_dec(row.equity),
        last_run_day=row.last_run_day,
        claimed_at=row.claimed_at,
        pending_entry_ref=row.pending_entry_ref,
    )


def to_position_view(row: PositionModel) -> PositionView:
    return PositionView(
        id=row.id,
        ticker=row.ticker,
        entry_price=_dec(row.entry_price),
        shares=int(row.shares),
        open=bool(row.is_open),
        entry_at=row.entry_at,
        exit_price=_dec(row.exit_price),
        exit_at=row.exit_at,
        broker_order_id=row.broker_order_id,
        last_price=_dec(row.last_price),
    )


def to_trade_record(row: TradeModel) -> TradeRecord:
    return TradeRecord(
        id=row.id,
        side=Side(row.side),
        ticker=row.ticker,
        price=_dec(row.price),
        shares=int(row.shares),
        at=row.at,
        broker_order_id=row.broker_order_id,
        filled_at=row.filled_at,
        filled_price=_dec(row.filled_price),
        position_id=row.position_id,
    )


def to_recommendation_view(row: RecommendationModel) -> RecommendationView:
    return RecommendationView(
        id=row.id,
        ticker=row.ticker,
        price=_dec(row.price),
        at=row.at,
        explanation=row.explanation,
    )


# ---------------------------------------------------------------------------
# Transaction helpers (used by reconciliation inside its own session)
# ---------------------------------------------------------------------------

def lock_state_row(session: Session) -> BotStateModel:
    """
    Lock the bot state row for the rest of the transaction.

    FOR UPDATE on PostgreSQL serializes ledger mutations across instances;
    SQLite ignores the clause and serializes writers itself.
    """
    row = session.execute(
        select(BotStateModel).where(BotStateModel.id == BOT_STATE_ID).with_for_update()
    ).scalar_one_or_none()
    if row is None:
        raise ConfigurationError("bot_state row missing; run init-db or ensure_bot_state() first")
    return row


def adjust_cash(session: Session, cash_delta: Decimal, pnl_delta: Decimal = Decimal("0")) -> None:
    """Apply cash/pnl deltas as SQL expressions, then recompute equity."""
    session.flush()
    session.execute(
        update(BotStateModel)
        .where(BotStateModel.id == BOT_STATE_ID)
        .values(
            cash=BotStateModel.cash + cash_delta,
            pnl=BotStateModel.pnl + pnl_delta,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    recompute_equity(session)


def recompute_equity(session: Session) -> None:
    """equity = cash + sum(open shares x last known price)."""
    session.flush()
    open_value = (
        select(
            func.coalesce(
                func.sum(
                    PositionModel.shares * func.coalesce(PositionModel.last_price, PositionModel.entry_price)
                ),
                0,
            )
        )
        .where(PositionModel.is_open.is_(True))
        .scalar_subquery()
    )
    session.execute(
        update(BotStateModel)
        .where(BotStateModel.id == BOT_STATE_ID)
        .values(equity=BotStateModel.cash + open_value)
        .execution_options(synchronize_session=False)
    )


def read_state(session: Session) -> LedgerState:
    session.flush()
    row = session.get(BotStateModel, BOT_STATE_ID, populate_existing=True)
    return to_ledger_state(row)


# ---------------------------------------------------------------------------
# Bot state & daily claim
# ---------------------------------------------------------------------------

def ensure_bot_state(starting_cash: Decimal) -> LedgerState:
    """Create the singleton row on first use; return the current state."""
    db = get_db()
    with db.get_session() as session:
        row = session.get(BotStateModel, BOT_STATE_ID)
        if row is not None:
            return to_ledger_state(row)
    try:
        with db.get_session() as session:
            session.add(BotStateModel(
                id=BOT_STATE_ID, cash=starting_cash, pnl=Decimal("0"), equity=starting_cash,
                updated_at=utcnow(),
            ))
        logger.info("BOT_STATE_CREATED", cash=str(starting_cash))
    except IntegrityError:
        # Another instance created it first
        logger.debug("BOT_STATE_CREATE_RACE")
    return get_bot_state()


def get_bot_state() -> LedgerState:
    with get_db().get_session() as session:
        row = session.get(BotStateModel, BOT_STATE_ID)
        if row is None:
            raise ConfigurationError("bot_state row missing; run init-db or ensure_bot_state() first")
        return to_ledger_state(row)


def try_claim_day(day: str, now: Optional[datetime] = None) -> bool:
    """
    Atomically claim the single entry attempt for ``day``.

    One conditional UPDATE: exactly one concurrent caller sees rowcount 1.
    """
    with get_db().get_session() as session:
        result = session.execute(
            update(BotStateModel)
            .where(BotStateModel.id == BOT_STATE_ID)
            .where(or_(BotStateModel.last_run_day.is_(None), BotStateModel.last_run_day != day))
            .values(last_run_day=day, claimed_at=now or utcnow(), pending_entry_ref=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        granted = result.rowcount == 1
    logger.info("CLAIM_GRANTED" if granted else "CLAIM_NOT_GRANTED", day=day)
    return granted


def release_claim(day: Optional[str] = None, keep_if_pending: bool = False) -> bool:
    """
    Clear the claim so the window can be retried.

    With ``day`` given, only a claim for that day is cleared. With
    ``keep_if_pending`` a claim pinned by an unresolved entry is left alone.
    """
    with get_db().get_session() as session:
        stmt = update(BotStateModel).where(BotStateModel.id == BOT_STATE_ID)
        if day is not None:
            stmt = stmt.where(BotStateModel.last_run_day == day)
        if keep_if_pending:
            stmt = stmt.where(BotStateModel.pending_entry_ref.is_(None))
        result = session.execute(
            stmt.values(last_run_day=None, claimed_at=None, pending_entry_ref=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        released = result.rowcount == 1
    if released:
        logger.info("CLAIM_RELEASED", day=day)
    else:
        logger.info("CLAIM_KEPT", day=day, keep_if_pending=keep_if_pending)
    return released


def release_stale_claim(day: str, older_than: datetime, since: datetime) -> bool:
    """
    Failsafe release: clear today's claim only if it is older than
    ``older_than``, no entry is pending at the venue, no position is open,
    and no BUY was recorded since ``since`` (start of the exchange day, UTC).
    """
    with get_db().get_session() as session:
        open_exists = select(PositionModel.id).where(PositionModel.is_open.is_(True)).exists()
        buy_today = (
            select(TradeModel.id)
            .where(TradeModel.side == Side.BUY.value)
            .where(TradeModel.at >= since)
            .exists()
        )
        result = session.execute(
            update(BotStateModel)
            .where(BotStateModel.id == BOT_STATE_ID)
            .where(BotStateModel.last_run_day == day)
            .where(or_(BotStateModel.claimed_at.is_(None), BotStateModel.claimed_at < older_than))
            .where(BotStateModel.pending_entry_ref.is_(None))
            .where(~open_exists)
            .where(~buy_today)
            .values(last_run_day=None, claimed_at=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        released = result.rowcount == 1
    if released:
        logger.warning("CLAIM_FAILSAFE_RELEASED", day=day)
    return released


def mark_entry_pending(client_order_id: str) -> None:
    """Record the entry about to be sent; cleared by record_entry or a release."""
    with get_db().get_session() as session:
        session.execute(
            update(BotStateModel)
            .where(BotStateModel.id == BOT_STATE_ID)
            .values(pending_entry_ref=client_order_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )


def clear_entry_pending(client_order_id: Optional[str] = None) -> bool:
    """Clear the pending entry marker (only ``client_order_id``'s, when given)."""
    with get_db().get_session() as session:
        stmt = update(BotStateModel).where(BotStateModel.id == BOT_STATE_ID)
        if client_order_id is not None:
            stmt = stmt.where(BotStateModel.pending_entry_ref == client_order_id)
        else:
            stmt = stmt.where(BotStateModel.pending_entry_ref.is_not(None))
        result = session.execute(
            stmt.values(pending_entry_ref=None, updated_at=utcnow()).execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------

def get_open_position() -> Optional[PositionView]:
    with get_db().get_session() as session:
        row = session.execute(
            select(PositionModel).where(PositionModel.is_open.is_(True)).order_by(PositionModel.id.desc())
        ).scalars().first()
        return to_position_view(row) if row else None


def record_entry(
    ticker: str,
    shares: int,
    entry_limit: Decimal,
    broker_order_id: Optional[str],
    at: Optional[datetime] = None,
) -> PositionView:
    """
    Persist a submitted entry in one transaction: open Position, unfilled BUY
    Trade keyed by the broker order id, cash debit and equity recompute. The
    pending entry marker is cleared in the same transaction.

    Raises:
        ConcurrencyConflict: another open position already exists.
    """
    at = at or utcnow()
    try:
        with get_db().get_session() as session:
            state = lock_state_row(session)
            state.pending_entry_ref = None
            position = PositionModel(
                ticker=ticker,
                entry_price=entry_limit,
                shares=shares,
                entry_at=at,
                is_open=True,
                broker_order_id=broker_order_id,
                last_price=entry_limit,
            )
            session.add(position)
            session.flush()
            session.add(TradeModel(
                side=Side.BUY.value,
                ticker=ticker,
                price=entry_limit,
                shares=shares,
                at=at,
                broker_order_id=broker_order_id,
                position_id=position.id,
            ))
            adjust_cash(session, -(entry_limit * shares))
            view = to_position_view(position)
    except IntegrityError as e:
        raise ConcurrencyConflict(f"entry for {ticker} conflicts with existing ledger rows: {e.orig}") from e
    logger.info(
        "ENTRY_RECORDED",
        ticker=ticker,
        shares=shares,
        entry_limit=str(entry_limit),
        broker_order_id=broker_order_id,
        position_id=view.id,
    )
    return view


def update_mark(position_id: int, price: Decimal) -> LedgerState:
    """Store the latest known price for an open position and recompute equity."""
    with get_db().get_session() as session:
        lock_state_row(session)
        session.execute(
            update(PositionModel)
            .where(PositionModel.id == position_id)
            .where(PositionModel.is_open.is_(True))
            .values(last_price=price)
            .execution_options(synchronize_session=False)
        )
        recompute_equity(session)
        return read_state(session)


# ---------------------------------------------------------------------------
# Trades
# ---------------------------------------------------------------------------

def list_recent_trades(limit: int = 50) -> List[TradeRecord]:
    """Newest first."""
    with get_db().get_session() as session:
        rows = session.execute(
            select(TradeModel).order_by(TradeModel.id.desc()).limit(limit)
        ).scalars().all()
        return [to_trade_record(r) for r in rows]


def list_trades_since(since: datetime) -> List[TradeRecord]:
    """Trades at or after ``since`` (naive UTC), oldest first."""
    with get_db().get_session() as session:
        rows = session.execute(
            select(TradeModel).where(TradeModel.at >= since).order_by(TradeModel.at, TradeModel.id)
        ).scalars().all()
        return [to_trade_record(r) for r in rows]


def list_all_trades() -> List[TradeRecord]:
    """Full history, oldest first (FIFO input)."""
    with get_db().get_session() as session:
        rows = session.execute(select(TradeModel).order_by(TradeModel.at, TradeModel.id)).scalars().all()
        return [to_trade_record(r) for r in rows]


def get_trade_by_order_id(broker_order_id: str) -> Optional[TradeRecord]:
    with get_db().get_session() as session:
        row = session.execute(
            select(TradeModel).where(TradeModel.broker_order_id == broker_order_id)
        ).scalar_one_or_none()
        return to_trade_record(row) if row else None


# ---------------------------------------------------------------------------
# Recommendations
# ---------------------------------------------------------------------------

def get_recommendation_since(since: datetime) -> Optional[RecommendationView]:
    """Most recent pick at or after ``since`` (start of exchange day, UTC)."""
    with get_db().get_session() as session:
        row = session.execute(
            select(RecommendationModel)
            .where(RecommendationModel.at >= since)
            .order_by(RecommendationModel.at.desc(), RecommendationModel.id.desc())
        ).scalars().first()
        return to_recommendation_view(row) if row else None


def get_latest_recommendation() -> Optional[RecommendationView]:
    with get_db().get_session() as session:
        row = session.execute(
            select(RecommendationModel).order_by(RecommendationModel.id.desc())
        ).scalars().first()
        return to_recommendation_view(row) if row else None


def save_recommendation(
    ticker: str,
    price: Optional[Decimal],
    explanation: Optional[str] = None,
    at: Optional[datetime] = None,
) -> RecommendationView:
    with get_db().get_session() as session:
        row = RecommendationModel(ticker=ticker.upper(), price=price, explanation=explanation, at=at or utcnow())
        session.add(row)
        session.flush()
        view = to_recommendation_view(row)
    logger.info("RECOMMENDATION_SAVED", ticker=view.ticker, price=str(price) if price is not None else None)
    return view


# ---------------------------------------------------------------------------
# Administrative
# ---------------------------------------------------------------------------

def reset_ledger(starting_cash: Decimal) -> dict:
    """Delete trades, positions and picks; reset bot state to starting cash."""
    with get_db().get_session() as session:
        trades = session.execute(delete(TradeModel)).rowcount
        positions = session.execute(delete(PositionModel)).rowcount
        recs = session.execute(delete(RecommendationModel)).rowcount
        row = session.get(BotStateModel, BOT_STATE_ID)
        if row is None:
            row = BotStateModel(id=BOT_STATE_ID)
            session.add(row)
        row.cash = starting_cash
        row.pnl = Decimal("0")
        row.equity = starting_cash
        row.last_run_day = None
        row.claimed_at = None
        row.pending_entry_ref = None
        row.updated_at = utcnow()
    logger.warning("LEDGER_RESET", trades=trades, positions=positions, recommendations=recs)
    return {"trades": trades, "positions": positions, "recommendations": recs}

