"""
Tick orchestrator: the once-a-day entry state machine.

Invoked by an external periodic trigger (and by anyone polling the tick
endpoint). Each invocation is one pass:

    ensure state -> mandatory exit -> trading-day/session gate -> pre-warm
    -> end-of-window failsafe -> claim + entry -> holding mark

Overlapping invocations in one process share a single computation
(SingleFlight); overlapping processes are serialised by the ledger's
conditional writes (daily claim, single-open-position index).
"""
import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from daybot.config.config import Config
from daybot.domain.models import BotPhase, LedgerState, Mover, PositionView, RecommendationView
from daybot.domain.protocols import Brokerage, MarketData, Recommender
from daybot.exceptions import (
    AuthenticationError,
    ConcurrencyConflict,
    OrderRejected,
    UpstreamUnavailable,
    ValidationError,
)
from daybot.execution.entry_executor import EntryResult, EntrySubmitter
from daybot.monitoring.logger import get_logger
from daybot.reconciliation.reconciler import FillReconciler
from daybot.runtime.exchange_clock import ExchangeClock
from daybot.runtime.single_flight import SingleFlight
from daybot.storage import repository
from daybot.utils.retry import RetryPolicy

logger = get_logger(__name__)


@dataclass
class TickContext:
    """Mutable per-pass scratch state."""
    today: str
    state: LedgerState
    position: Optional[PositionView]
    recommendation: Optional[RecommendationView]
    phase: BotPhase = BotPhase.IDLE
    movers: List[Mover] = field(default_factory=list)
    live_price: Optional[Decimal] = None
    skipped: Optional[str] = None
    entry: Optional[EntryResult] = None
    reasons: List[str] = field(default_factory=list)
    messages: List[str] = field(default_factory=list)


class TickOrchestrator:
    """
    Runs tick passes against the ledger and the collaborators.
    """

    def __init__(
        self,
        config: Config,
        clock: ExchangeClock,
        broker: Brokerage,
        market_data: MarketData,
        recommender: Recommender,
        reconciler: Optional[FillReconciler] = None,
        entry: Optional[EntrySubmitter] = None,
    ):
        self.config = config
        self.clock = clock
        self.broker = broker
        self.market_data = market_data
        self.recommender = recommender
        self.starting_cash = Decimal(str(config.execution.starting_cash))
        self.reconciler = reconciler or FillReconciler(now_fn=clock.now_utc, starting_cash=self.starting_cash)
        self.entry = entry or EntrySubmitter(
            config.execution, broker, market_data, dry_run=config.system.dry_run
        )
        self.call_timeout = config.execution.order_timeout_seconds

        rec = config.recommendation
        self.burst_policy = RetryPolicy.fixed(
            rec.burst_attempts, rec.burst_delay_seconds, attempt_timeout=rec.request_timeout_seconds
        )
        self.prewarm_policy = RetryPolicy.fixed(1, 0.0, attempt_timeout=rec.request_timeout_seconds)
        self.flight: SingleFlight[Dict[str, Any]] = SingleFlight(
            min_interval_seconds=config.api.tick_min_interval_ms / 1000.0
        )

    async def tick(self) -> Dict[str, Any]:
        """Coalesced entry point: concurrent callers share one pass."""
        return await self.flight.run(self._bounded_pass)

    async def _bounded_pass(self) -> Dict[str, Any]:
        return await asyncio.wait_for(self.run_once(), timeout=self.config.api.tick_timeout_seconds)

    async def run_once(self) -> Dict[str, Any]:
        """
        One uncoalesced pass of the state machine.

        Raises:
            ConfigurationError: missing credentials or service URLs
        """
        state = await asyncio.to_thread(repository.ensure_bot_state, self.starting_cash)
        ctx = TickContext(
            today=self.clock.today_key(),
            state=state,
            position=await asyncio.to_thread(repository.get_open_position),
            recommendation=await asyncio.to_thread(repository.get_latest_recommendation),
        )
        if ctx.position is not None:
            ctx.phase = BotPhase.OPEN
        logger.info(
            "TICK_START",
            today=ctx.today,
            local_time=self.clock.now().isoformat(),
            open_position=ctx.position.ticker if ctx.position else None,
            last_run_day=ctx.state.last_run_day,
        )

        # Any day: a position carried past the cutoff is flattened on the next pass
        if ctx.position is not None and self.clock.is_mandatory_exit_time():
            await self._mandatory_exit(ctx)

        if not self.clock.is_trading_day():
            ctx.skipped = "not_trading_day"
            ctx.reasons.append("not_trading_day")
            return await self._response(ctx)

        session_open = self.clock.is_session_open()
        if not session_open:
            ctx.reasons.append("session_closed")

        if ctx.position is None and session_open and self.clock.in_prewarm_window():
            await self._prewarm(ctx)

        if ctx.position is None and self.clock.in_end_of_window_failsafe():
            await self._failsafe(ctx)

        if ctx.position is None and session_open and self.clock.in_entry_window():
            await self._entry_window(ctx)

        await self._mark(ctx)
        ctx.state = await asyncio.to_thread(repository.get_bot_state)
        return await self._response(ctx)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _quote(self, ticker: str) -> Optional[Decimal]:
        try:
            price = await asyncio.wait_for(self.market_data.get_quote(ticker), timeout=self.call_timeout)
        except asyncio.TimeoutError:
            logger.warning("QUOTE_TIMEOUT", ticker=ticker)
            return None
        return price if price is not None and price > 0 else None

    async def _mandatory_exit(self, ctx: TickContext) -> None:
        position = ctx.position
        ctx.phase = BotPhase.MANDATORY_EXIT
        order_id = None
        if self.config.system.dry_run:
            logger.info("MANDATORY_EXIT_DRY_RUN", ticker=position.ticker)
        else:
            try:
                ack = await asyncio.wait_for(
                    self.broker.close_position_at_market(position.ticker), timeout=self.call_timeout
                )
            except (UpstreamUnavailable, OrderRejected, asyncio.TimeoutError) as e:
                reason = f"mandatory_exit_failed: {type(e).__name__}: {e}"
                ctx.reasons.append(reason)
                ctx.phase = BotPhase.OPEN
                logger.error("MANDATORY_EXIT_FAILED", ticker=position.ticker, error=str(e))
                return
            order_id = ack.order_id

        quote = await self._quote(position.ticker)
        price = quote if quote is not None else position.entry_price
        result = await asyncio.to_thread(
            self.reconciler.record_exit, position.id, position.ticker, position.shares, price, order_id=order_id
        )
        logger.warning(
            "MANDATORY_EXIT",
            ticker=position.ticker,
            shares=position.shares,
            price=str(price),
            price_source="quote" if quote is not None else "entry",
            order_id=order_id,
            action=result.action,
        )
        if not result.applied:
            ctx.reasons.append(f"mandatory_exit_not_applied: {result.reason or result.action}")
        ctx.messages.append(f"Mandatory exit {position.ticker} @ {price}")
        ctx.position = await asyncio.to_thread(repository.get_open_position)
        ctx.state = await asyncio.to_thread(repository.get_bot_state)
        ctx.phase = BotPhase.OPEN if ctx.position is not None else BotPhase.IDLE

    async def _load_movers(self, ctx: TickContext) -> List[Mover]:
        top = self.config.recommendation.top_candidates
        try:
            movers = await asyncio.wait_for(self.market_data.get_top_movers(top), timeout=self.call_timeout)
        except (UpstreamUnavailable, asyncio.TimeoutError) as e:
            ctx.reasons.append(f"snapshot_unavailable: {type(e).__name__}")
            logger.warning("SNAPSHOT_UNAVAILABLE", error=str(e))
            movers = []
        ctx.movers = list(movers)[:top]
        return ctx.movers

    async def _recommend_once(self, ctx: TickContext) -> Optional[RecommendationView]:
        """Today's stored pick, else ask for one and store it. None means try again."""
        existing = await asyncio.to_thread(repository.get_recommendation_since, self.clock.start_of_day_utc())
        if existing is not None:
            return existing

        ticker = await self.recommender.pick(ctx.movers)
        if not ticker:
            return None
        ticker = ticker.upper()

        price = next((m.price for m in ctx.movers if m.ticker == ticker and m.price), None)
        if price is None:
            price = await self._quote(ticker)
        if price is None:
            logger.warning("RECOMMENDATION_NO_PRICE", ticker=ticker)
            return None
        return await asyncio.to_thread(repository.save_recommendation, ticker, price, at=self.clock.now_utc())

    async def _ensure_recommendation(self, ctx: TickContext, policy: RetryPolicy, label: str) -> Optional[RecommendationView]:
        outcome = await policy.run(lambda: self._recommend_once(ctx), label=label)
        if outcome.ok:
            ctx.recommendation = outcome.value
        return outcome.value

    async def _prewarm(self, ctx: TickContext) -> None:
        """Best effort: ask early so the pick exists when the window opens."""
        ctx.phase = BotPhase.PREWARM
        await self._load_movers(ctx)
        rec = await self._ensure_recommendation(ctx, self.prewarm_policy, "prewarm_recommendation")
        if rec is None:
            ctx.reasons.append("prewarm_no_pick_yet")
        else:
            logger.info("PREWARM_PICK", ticker=rec.ticker)

    async def _failsafe(self, ctx: TickContext) -> None:
        older_than = self.clock.now_utc() - timedelta(seconds=self.config.schedule.claim_stale_seconds)
        released = await asyncio.to_thread(
            repository.release_stale_claim, ctx.today, older_than=older_than, since=self.clock.start_of_day_utc()
        )
        if released:
            ctx.reasons.append("failsafe_claim_released")
            ctx.state = await asyncio.to_thread(repository.get_bot_state)
            ctx.phase = BotPhase.IDLE

    async def _broker_session_open(self, ctx: TickContext) -> bool:
        """Broker clock check before claiming; skipped when the broker is unreachable."""
        if self.config.system.dry_run:
            return True
        try:
            clock = await asyncio.wait_for(self.broker.get_clock(), timeout=self.call_timeout)
        except AuthenticationError:
            raise
        except (UpstreamUnavailable, asyncio.TimeoutError) as e:
            logger.warning("BROKER_CLOCK_UNAVAILABLE", error=str(e))
            return True
        if isinstance(clock, dict) and clock.get("is_open") is False:
            ctx.reasons.append("broker_clock_closed")
            return False
        return True

    async def _entry_window(self, ctx: TickContext) -> None:
        if ctx.state.last_run_day == ctx.today:
            ctx.reasons.append("day_already_claimed")
            return

        ctx.phase = BotPhase.CLAIMING
        await self._load_movers(ctx)
        rec = await self._ensure_recommendation(ctx, self.burst_policy, "entry_recommendation")
        if rec is None:
            ctx.reasons.append("recommendation_missing_after_retries")
            ctx.phase = BotPhase.IDLE
            return

        if not await self._broker_session_open(ctx):
            ctx.phase = BotPhase.IDLE
            return

        if not await asyncio.to_thread(repository.try_claim_day, ctx.today, now=self.clock.now_utc()):
            ctx.reasons.append("day_already_claimed")
            ctx.phase = BotPhase.IDLE
            return

        ctx.position = await asyncio.to_thread(repository.get_open_position)
        if ctx.position is not None:
            ctx.reasons.append("position_open_after_claim")
            ctx.phase = BotPhase.OPEN
            return

        ctx.phase = BotPhase.ENTERING
        await self._enter(ctx, rec)

    async def _enter(self, ctx: TickContext, rec: RecommendationView) -> None:
        """Holds the claim on entry; a failure releases it unless an entry may be live at the venue."""
        try:
            reference = await self.entry.resolve_reference(rec.ticker, ctx.movers, rec)
            cash = (await asyncio.to_thread(repository.get_bot_state)).cash
            result = await self.entry.submit(rec.ticker, cash, reference, at=self.clock.now_utc())
        except ValidationError as e:
            await asyncio.to_thread(repository.release_claim, ctx.today)
            ctx.reasons.append(f"entry_invalid: {type(e).__name__}: {e}")
            ctx.phase = BotPhase.IDLE
            logger.warning("ENTRY_ABORTED", ticker=rec.ticker, error=str(e))
            return
        except ConcurrencyConflict as e:
            # Another writer holds the open position; the claim stays consumed
            ctx.reasons.append("position_conflict")
            logger.warning("ENTRY_CONFLICT", ticker=rec.ticker, error=str(e))
            ctx.position = await asyncio.to_thread(repository.get_open_position)
            ctx.phase = BotPhase.OPEN if ctx.position else BotPhase.IDLE
            return
        except asyncio.CancelledError:
            # The pass was cancelled (tick timeout); no further awaits on this path
            released = repository.release_claim(ctx.today, keep_if_pending=True)
            logger.error("ENTRY_CANCELLED", ticker=rec.ticker, claim_released=released)
            raise
        except Exception:
            await asyncio.to_thread(repository.release_claim, ctx.today, keep_if_pending=True)
            raise

        ctx.entry = result
        if result.ok:
            ctx.position = result.position
            ctx.phase = BotPhase.OPEN
            ctx.messages.append(f"BUY {rec.ticker} @ {result.limit_price} (shares={result.shares})")
            return

        ctx.reasons.extend(result.reasons)
        if result.uncertain:
            ctx.reasons.append("entry_outcome_unknown_claim_kept")
        else:
            await asyncio.to_thread(repository.release_claim, ctx.today)
            ctx.reasons.append("entry_exhausted")
        ctx.phase = BotPhase.IDLE

    async def _mark(self, ctx: TickContext) -> None:
        """Refresh the open position's mark (and equity), or quote the candidate."""
        if ctx.position is not None:
            price = await self._quote(ctx.position.ticker)
            if price is not None:
                ctx.state = await asyncio.to_thread(repository.update_mark, ctx.position.id, price)
                ctx.live_price = price
        elif ctx.recommendation is not None:
            ctx.live_price = await self._quote(ctx.recommendation.ticker)

    # ------------------------------------------------------------------
    # Response
    # ------------------------------------------------------------------

    async def _response(self, ctx: TickContext) -> Dict[str, Any]:
        if ctx.position is not None:
            ctx.position = await asyncio.to_thread(repository.get_open_position)
        live_ticker = (
            ctx.position.ticker if ctx.position is not None
            else ctx.recommendation.ticker if ctx.recommendation is not None
            else None
        )
        windows = dict(self.clock.window_info())
        windows.update({
            "in_prewarm": self.clock.in_prewarm_window(),
            "in_entry": self.clock.in_entry_window(),
            "in_failsafe": self.clock.in_end_of_window_failsafe(),
            "is_mandatory_exit": self.clock.is_mandatory_exit_time(),
            "session_open": self.clock.is_session_open(),
        })
        diagnostics: Dict[str, Any] = {
            "windows": windows,
            "target_pct": self.config.execution.target_pct,
            "stop_pct": self.config.execution.stop_pct,
            "slippage_steps": list(self.config.execution.slippage_steps),
            "reasons": ctx.reasons,
        }
        if ctx.messages:
            diagnostics["last_message"] = ctx.messages[-1]
        if ctx.entry is not None:
            diagnostics["entry"] = ctx.entry.to_dict()
        if ctx.movers:
            diagnostics["candidates"] = [m.ticker for m in ctx.movers]

        response = {
            "ok": True,
            "state": ctx.state.to_dict(),
            "bot": {
                "phase": ctx.phase.value,
                "today": ctx.today,
                "claimed_today": ctx.state.last_run_day == ctx.today,
                "dry_run": self.config.system.dry_run,
            },
            "last_recommendation": ctx.recommendation.to_dict() if ctx.recommendation else None,
            "open_position": ctx.position.to_dict() if ctx.position else None,
            "live_quote": {
                "ticker": live_ticker,
                "price": float(ctx.live_price) if ctx.live_price is not None else None,
            },
            "server_time_exchange_local": self.clock.now().isoformat(),
            "diagnostics": diagnostics,
        }
        if ctx.skipped:
            response["skipped"] = ctx.skipped
        logger.info("TICK_DONE", phase=ctx.phase.value, reasons=ctx.reasons)
        return response
