"""
HTTP surface for the scheduler, the broker push channel and the dashboard.

Every route answers with a structured JSON body (``ok`` plus ``error`` on
failure) so the scheduler and poll callers can always decide their next
action. Status codes:

    400  malformed input (bad JSON, bad range)
    401  wrong shared secret / passkey
    500  missing configuration or credentials
    502  upstream (broker / market data) failure
    503  ledger database unavailable
    504  tick exceeded its time budget
    207  panic flatten partially failed
"""
import asyncio
import json
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from daybot.accounting.fifo import trade_log
from daybot.api.auth import is_authorized, passkey_matches
from daybot.config.config import Config
from daybot.data.alpaca_client import AlpacaClient
from daybot.data.market_data import MarketDataClient
from daybot.data.recommendation_client import TICKER_PATTERN, RecommendationClient
from daybot.domain.protocols import Brokerage, MarketData, Recommender
from daybot.exceptions import (
    ConfigurationError,
    TradingSystemError,
    UpstreamUnavailable,
    ValidationError,
)
from daybot.execution.flatten import flatten_all
from daybot.execution.price_rounding import ceil_to_tick, floor_to_tick
from daybot.live.tick_orchestrator import TickOrchestrator
from daybot.monitoring.logger import get_logger
from daybot.reconciliation.fill_sync import FillSync
from daybot.reconciliation.order_events import event_from_webhook, to_decimal
from daybot.reconciliation.reconciler import FillReconciler
from daybot.runtime.exchange_clock import ExchangeClock
from daybot.storage import repository
from daybot.storage.db import get_db

logger = get_logger(__name__)

# FMP chart intervals and their length in minutes
BAR_INTERVALS = {"1min": 1, "5min": 5, "15min": 15, "30min": 30, "1hour": 60, "4hour": 240}
MAX_BARS = 1000


@dataclass
class AppServices:
    """Wired collaborators shared by all routes of one app instance."""
    config: Config
    clock: ExchangeClock
    broker: Brokerage
    market_data: MarketData
    recommender: Recommender
    reconciler: FillReconciler
    fill_sync: FillSync
    orchestrator: TickOrchestrator


def build_services(
    config: Config,
    *,
    clock: Optional[ExchangeClock] = None,
    broker: Optional[Brokerage] = None,
    market_data: Optional[MarketData] = None,
    recommender: Optional[Recommender] = None,
) -> AppServices:
    """Default wiring with the HTTP clients; tests pass fakes instead."""
    clock = clock or ExchangeClock(config.schedule)
    broker = broker or AlpacaClient(config.broker)
    market_data = market_data or MarketDataClient(config.market_data)
    recommender = recommender or RecommendationClient(config.recommendation)
    reconciler = FillReconciler(now_fn=clock.now_utc, starting_cash=Decimal(str(config.execution.starting_cash)))
    return AppServices(
        config=config,
        clock=clock,
        broker=broker,
        market_data=market_data,
        recommender=recommender,
        reconciler=reconciler,
        fill_sync=FillSync(broker, reconciler, config.reconciliation, clock),
        orchestrator=TickOrchestrator(config, clock, broker, market_data, recommender, reconciler=reconciler),
    )


def error_response(error: BaseException, context: str) -> JSONResponse:
    """Map an exception to the structured error body and status."""
    if isinstance(error, ConfigurationError):
        status = 500
    elif isinstance(error, UpstreamUnavailable):
        status = 502
    elif isinstance(error, ValidationError):
        status = 400
    elif isinstance(error, asyncio.TimeoutError):
        status = 504
    elif isinstance(error, SQLAlchemyError):
        status = 503
    else:
        status = 500
    if isinstance(error, SQLAlchemyError):
        # Driver messages can carry the connection URL
        message = f"ledger unavailable: {type(error).__name__}"
    else:
        message = str(error) or type(error).__name__
    logger.error("API_ERROR", context=context, status=status, error=message, error_type=type(error).__name__)
    return JSONResponse(content={"ok": False, "error": message}, status_code=status)


async def read_json_body(request: Request, required: bool = False) -> Dict[str, Any]:
    """
    Parse a JSON object body; empty bodies give {} unless ``required``.

    Raises:
        ValidationError: body is not a JSON object
    """
    raw = await request.body()
    if not raw.strip():
        if required:
            raise ValidationError("empty JSON body")
        return {}
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise ValidationError(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError("JSON body must be an object")
    return data


def parse_limit(raw: Optional[str], default: int = 50, low: int = 1, high: int = 200) -> int:
    try:
        value = int(float(raw)) if raw not in (None, "") else default
    except ValueError:
        value = default
    return max(low, min(high, value))


def open_position_view(config: Config) -> Dict[str, Any]:
    position = repository.get_open_position()
    if position is None:
        return {
            "open": False, "ticker": None, "shares": None, "entry_price": None,
            "entry_at": None, "take_profit": None, "stop_loss": None,
        }
    entry = position.entry_price
    return {
        "open": True,
        "ticker": position.ticker,
        "shares": position.shares,
        "entry_price": float(entry),
        "entry_at": position.entry_at.isoformat() if position.entry_at else None,
        "take_profit": float(ceil_to_tick(entry * (1 + Decimal(str(config.execution.target_pct))))),
        "stop_loss": float(floor_to_tick(entry * (1 + Decimal(str(config.execution.stop_pct))))),
        "last_price": float(position.last_price) if position.last_price is not None else None,
    }


def trades_payload(limit: int) -> Dict[str, Any]:
    rows = repository.list_recent_trades(limit)
    annotated, fifo_open = trade_log(repository.list_all_trades())
    position = repository.get_open_position()
    return {
        "ok": True,
        "trades": [t.to_dict() for t in rows],
        "open_position": position.to_dict() if position else None,
        "fifo": {
            "log": [a.to_dict() for a in annotated],
            "open_positions": [p.to_dict() for p in fifo_open],
            "realized_total": float(annotated[-1].cumulative) if annotated else 0.0,
        },
    }


def _number(raw: Any) -> Optional[float]:
    value = to_decimal(raw)
    return float(value) if value is not None else None


def account_summary(account: Dict[str, Any]) -> Dict[str, Any]:
    """Broker account balances plus the day's change against last close equity."""
    equity = to_decimal(account.get("equity"))
    last_equity = to_decimal(account.get("last_equity"))
    day_pnl = equity - last_equity if equity is not None and last_equity is not None else None
    day_pnl_pct = day_pnl / last_equity if day_pnl is not None and last_equity else None
    return {
        "cash": _number(account.get("cash")),
        "equity": _number(equity),
        "last_equity": _number(last_equity),
        "buying_power": _number(account.get("buying_power")),
        "day_pnl": _number(day_pnl),
        "day_pnl_pct": _number(day_pnl_pct),
        "pattern_day_trader": account.get("pattern_day_trader"),
    }


def broker_health_summary(
    account: Dict[str, Any],
    clock: Dict[str, Any],
    asset: Optional[Dict[str, Any]],
    symbol: str,
) -> Dict[str, Any]:
    asset = asset or {}
    return {
        "account": {
            key: account.get(key)
            for key in (
                "status", "account_blocked", "trading_blocked", "buying_power",
                "multiplier", "daytrade_count", "shorting_enabled", "trade_suspended_by_user",
            )
        },
        "clock": {key: clock.get(key) for key in ("is_open", "next_open", "next_close", "timestamp")},
        "asset": {
            "symbol": symbol,
            "found": bool(asset),
            "tradable": bool(asset.get("tradable")),
            "status": asset.get("status"),
            "class": asset.get("class"),
            "fractionable": asset.get("fractionable"),
            "marginable": asset.get("marginable"),
        },
    }


def create_app(config: Optional[Config] = None, services: Optional[AppServices] = None) -> FastAPI:
    """
    Build the API app. The ledger database must already be initialised
    (see ``daybot.storage.db.init_db``).
    """
    if services is None:
        if config is None:
            raise ConfigurationError("create_app needs a Config or AppServices")
        services = build_services(config)
    config = services.config
    api = FastAPI(title="daybot", version=config.system.version)
    api.state.services = services

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def _tick() -> JSONResponse:
        try:
            data = await services.orchestrator.tick()
        except (TradingSystemError, SQLAlchemyError, asyncio.TimeoutError) as e:
            return error_response(e, "tick")
        return JSONResponse(content=data)

    @api.get("/api/bot/tick")
    async def tick_get():
        return await _tick()

    @api.post("/api/bot/tick")
    async def tick_post():
        return await _tick()

    # ------------------------------------------------------------------
    # Fill reconciliation
    # ------------------------------------------------------------------

    def _authorized(request: Request) -> bool:
        return is_authorized(
            config.api.webhook_secret,
            request.headers,
            request.query_params,
            skew_seconds=config.api.scheduler_signature_skew_seconds,
        )

    async def _sync(request: Request, body: Dict[str, Any]) -> JSONResponse:
        if not _authorized(request):
            return JSONResponse(content={"ok": False, "error": "unauthorized"}, status_code=401)
        params = dict(body)
        params.update({k: v for k, v in request.query_params.items() if v != ""})
        try:
            result = await services.fill_sync.sync(
                day=params.get("day"),
                window_minutes=params.get("windowMinutes"),
                until=params.get("until"),
            )
        except (TradingSystemError, SQLAlchemyError) as e:
            return error_response(e, "fill_sync")
        result["base_url"] = config.broker.base_url
        result["key_last4"] = config.broker.key_last4
        return JSONResponse(content=result)

    @api.get("/api/alpaca/sync")
    async def sync_get(request: Request):
        return await _sync(request, {})

    @api.post("/api/alpaca/sync")
    async def sync_post(request: Request):
        try:
            body = await read_json_body(request)
        except ValidationError as e:
            return error_response(e, "fill_sync")
        return await _sync(request, body)

    @api.post("/api/alpaca/webhook")
    async def webhook(request: Request):
        if not _authorized(request):
            return JSONResponse(content={"ok": False, "error": "unauthorized"}, status_code=401)
        try:
            payload = await read_json_body(request, required=True)
        except ValidationError as e:
            return error_response(e, "webhook")
        event = event_from_webhook(payload)
        try:
            result = await asyncio.to_thread(services.reconciler.apply_event, event)
        except (TradingSystemError, SQLAlchemyError) as e:
            return error_response(e, "webhook")
        logger.info("WEBHOOK_EVENT", applied=result.applied, action=result.action, **event.describe())
        return JSONResponse(content={"ok": True, "event": event.describe(), "result": result.to_dict()})

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    @api.post("/api/bot/panic-sell")
    async def panic_sell(request: Request):
        try:
            body = await read_json_body(request)
        except ValidationError as e:
            return error_response(e, "panic")
        if not config.api.panic_passkey:
            return JSONResponse(content={"ok": False, "error": "panic passkey not configured"}, status_code=500)
        provided = body.get("key") if body.get("key") is not None else request.headers.get("x-panic-key")
        if not passkey_matches(config.api.panic_passkey, provided):
            logger.warning("PANIC_UNAUTHORIZED")
            return JSONResponse(content={"ok": False, "error": "Invalid passkey."}, status_code=401)
        try:
            report = await flatten_all(services.broker)
        except TradingSystemError as e:
            return error_response(e, "panic")
        return JSONResponse(content=report.to_dict(), status_code=200 if report.ok else 207)

    @api.post("/api/bot/reset")
    async def reset(request: Request):
        try:
            body = await read_json_body(request)
        except ValidationError as e:
            return error_response(e, "reset")
        if not config.api.reset_key:
            return JSONResponse(content={"ok": False, "error": "reset key not configured"}, status_code=500)
        provided = request.headers.get("x-reset-key") or body.get("key")
        if not passkey_matches(config.api.reset_key, provided):
            return JSONResponse(content={"ok": False, "error": "unauthorized"}, status_code=401)
        try:
            deleted = await asyncio.to_thread(repository.reset_ledger, Decimal(str(config.execution.starting_cash)))
            state = await asyncio.to_thread(repository.get_bot_state)
        except SQLAlchemyError as e:
            return error_response(e, "reset")
        return JSONResponse(content={"ok": True, "deleted": deleted, "state": state.to_dict()})

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @api.get("/api/trades")
    async def trades(limit: Optional[str] = None):
        try:
            content = await asyncio.to_thread(trades_payload, parse_limit(limit))
        except SQLAlchemyError as e:
            return error_response(e, "trades")
        return JSONResponse(content=content)

    @api.get("/api/trades/today")
    async def trades_today():
        since = services.clock.start_of_day_utc()
        try:
            rows = await asyncio.to_thread(repository.list_trades_since, since)
        except SQLAlchemyError as e:
            return error_response(e, "trades_today")
        return JSONResponse(content={
            "ok": True,
            "day": services.clock.today_key(),
            "trades": [t.to_dict() for t in rows],
        })

    @api.get("/api/positions/open")
    async def positions_open():
        try:
            content = await asyncio.to_thread(open_position_view, config)
        except SQLAlchemyError as e:
            return error_response(e, "positions_open")
        return JSONResponse(content=content, headers={"Cache-Control": "no-store"})

    @api.get("/api/market/candles")
    async def candles(symbol: Optional[str] = None, interval: str = "1min", limit: Optional[str] = None):
        ticker = (symbol or "").strip().upper()
        if not TICKER_PATTERN.match(ticker):
            return error_response(ValidationError("symbol required"), "candles")
        if interval not in BAR_INTERVALS:
            interval = "1min"
        count = parse_limit(limit, default=240, high=MAX_BARS)
        # Bar timestamps are exchange-local wall time
        end = services.clock.now().replace(tzinfo=None)
        start = end - timedelta(minutes=count * BAR_INTERVALS[interval])
        try:
            bars = await services.market_data.get_intraday_bars(ticker, start, end, interval=interval)
        except TradingSystemError as e:
            return error_response(e, "candles")
        return JSONResponse(content={
            "ok": True,
            "symbol": ticker,
            "interval": interval,
            "bars": [b.to_dict() for b in bars[-count:]],
        })

    # ------------------------------------------------------------------
    # Broker diagnostics
    # ------------------------------------------------------------------

    async def _broker_health(request: Request) -> JSONResponse:
        if not _authorized(request):
            return JSONResponse(content={"ok": False, "error": "unauthorized"}, status_code=401)
        symbol = (request.query_params.get("symbol") or "SPY").strip().upper()
        if not TICKER_PATTERN.match(symbol):
            return error_response(ValidationError(f"invalid symbol {symbol!r}"), "broker_health")
        try:
            account, clock, asset = await asyncio.wait_for(
                asyncio.gather(
                    services.broker.get_account(),
                    services.broker.get_clock(),
                    services.broker.get_asset(symbol),
                ),
                timeout=config.execution.order_timeout_seconds,
            )
        except (TradingSystemError, asyncio.TimeoutError) as e:
            return error_response(e, "broker_health")
        return JSONResponse(content={
            "ok": True,
            "summary": broker_health_summary(account, clock, asset, symbol),
            "base_url": config.broker.base_url,
            "key_last4": config.broker.key_last4,
        })

    @api.get("/api/alpaca/health")
    async def broker_health_get(request: Request):
        return await _broker_health(request)

    @api.post("/api/alpaca/health")
    async def broker_health_post(request: Request):
        return await _broker_health(request)

    @api.get("/api/alpaca/account")
    async def broker_account(request: Request):
        if not _authorized(request):
            return JSONResponse(content={"ok": False, "error": "unauthorized"}, status_code=401)
        try:
            account = await asyncio.wait_for(
                services.broker.get_account(), timeout=config.execution.order_timeout_seconds
            )
        except (TradingSystemError, asyncio.TimeoutError) as e:
            return error_response(e, "broker_account")
        return JSONResponse(content={
            "ok": True,
            "account": account_summary(account),
            "at_exchange_local": services.clock.now().isoformat(),
        })

    @api.get("/health")
    async def health():
        try:
            ping = await asyncio.to_thread(get_db().ping)
            database = "connected" if ping else "unreachable"
        except SQLAlchemyError as e:
            logger.error("HEALTH_DB_UNREACHABLE", error=str(e))
            database = "unreachable"
        healthy = database == "connected"
        return JSONResponse(
            content={
                "status": "healthy" if healthy else "unhealthy",
                "database": database,
                "environment": config.environment,
                "dry_run": config.system.dry_run,
                "server_time_exchange_local": services.clock.now().isoformat(),
            },
            status_code=200 if healthy else 503,
        )

    return api
