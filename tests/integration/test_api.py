"""
HTTP surface: tick, fill endpoints, admin actions and read-only views.
"""
from datetime import datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from daybot.api.server import build_services, create_app
from daybot.domain.models import Bar
from daybot.exceptions import AuthenticationError, ConfigurationError, UpstreamUnavailable
from daybot.storage import repository
from daybot.storage.db import init_db
from tests.fakes import FakeRecommender

HOOK = {"x-webhook-secret": "hook-secret"}


@pytest.fixture
def services(ledger, config, clock, broker, market_data):
    return build_services(config, clock=clock, broker=broker, market_data=market_data,
                          recommender=FakeRecommender("ACME"))


@pytest.fixture
def client(services):
    with TestClient(create_app(services=services)) as test_client:
        yield test_client


def _fill_payload(status="fill", price="20.07"):
    return {
        "event": status,
        "timestamp": "2026-03-16T15:05:03Z",
        "price": price,
        "order": {"id": "buy-1", "symbol": "ACME", "side": "buy", "status": "filled", "filled_qty": "200"},
    }


# ---------------------------------------------------------------------------
# Tick
# ---------------------------------------------------------------------------

def test_tick_enters_in_window(client, frozen_time, broker):
    frozen_time.set(11, 5, 10)
    response = client.post("/api/bot/tick")

    assert response.status_code == 200
    body = response.json()
    assert body["bot"]["phase"] == "OPEN"
    assert body["open_position"]["ticker"] == "ACME"
    assert len(broker.brackets) == 1

    idle = client.get("/api/bot/tick").json()
    assert idle["bot"]["claimed_today"] is True
    assert len(broker.brackets) == 1


def test_tick_missing_configuration_is_500(client, services, frozen_time):
    services.recommender.pick = AsyncMock(side_effect=ConfigurationError("Missing RECOMMENDATION_URL"))
    frozen_time.set(11, 5, 10)
    response = client.get("/api/bot/tick")

    assert response.status_code == 500
    assert response.json() == {"ok": False, "error": "Missing RECOMMENDATION_URL"}
    assert repository.get_bot_state().last_run_day is None


def test_tick_upstream_failure_is_502(client, broker, frozen_time):
    broker.get_clock = AsyncMock(side_effect=AuthenticationError("forbidden", status=403))
    frozen_time.set(11, 5, 10)
    response = client.get("/api/bot/tick")

    assert response.status_code == 502
    assert response.json()["ok"] is False


# ---------------------------------------------------------------------------
# Fill endpoints
# ---------------------------------------------------------------------------

def test_sync_requires_secret(client):
    assert client.get("/api/alpaca/sync").status_code == 401
    assert client.get("/api/alpaca/sync", params={"token": "nope"}).status_code == 401


def test_sync_with_token(client, broker):
    response = client.post("/api/alpaca/sync", params={"token": "hook-secret"}, json={"windowMinutes": 60})

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["key_last4"] == "1234"
    assert body["base_url"] == "https://paper-api.alpaca.markets"
    assert broker.last_list_kwargs["nested"] is True


def test_sync_bad_day_is_400(client):
    response = client.get("/api/alpaca/sync", params={"day": "yesterday"}, headers=HOOK)
    assert response.status_code == 400
    assert response.json()["ok"] is False


def test_webhook_stamps_entry(client):
    repository.record_entry("ACME", 200, Decimal("20.00"), "buy-1")
    response = client.post("/api/alpaca/webhook", json=_fill_payload(), headers=HOOK)

    assert response.status_code == 200
    body = response.json()
    assert body["result"]["action"] == "buy_stamped"
    assert body["event"]["order_id"] == "buy-1"
    assert repository.get_bot_state().cash == Decimal("-14")

    replay = client.post("/api/alpaca/webhook", json=_fill_payload(), headers=HOOK).json()
    assert replay["result"]["action"] == "already_stamped"
    assert repository.get_bot_state().cash == Decimal("-14")


def test_webhook_rejects_bad_requests(client):
    assert client.post("/api/alpaca/webhook", json=_fill_payload()).status_code == 401
    empty = client.post("/api/alpaca/webhook", content=b"", headers=HOOK)
    assert empty.status_code == 400
    not_json = client.post("/api/alpaca/webhook", content=b"{oops", headers=HOOK)
    assert not_json.status_code == 400


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

def test_panic_sell_requires_passkey(client, broker):
    broker.positions = [{"symbol": "ACME", "qty": "200"}]
    assert client.post("/api/bot/panic-sell", json={"key": "0000"}).status_code == 401
    assert broker.market_orders == []

    response = client.post("/api/bot/panic-sell", json={"key": "9340"})
    assert response.status_code == 200
    assert response.json()["closed"][0]["symbol"] == "ACME"


def test_panic_sell_header_key_and_partial_failure(client, broker):
    broker.positions = [{"symbol": "ACME", "qty": "200"}]
    broker.cancel_all_open_orders = AsyncMock(side_effect=UpstreamUnavailable("HTTP 500", status=500))
    response = client.post("/api/bot/panic-sell", headers={"x-panic-key": "9340"})

    assert response.status_code == 207
    assert response.json()["ok"] is False


def test_panic_sell_without_configured_passkey(client, services):
    services.config.api.panic_passkey = None
    response = client.post("/api/bot/panic-sell", json={"key": "9340"})
    assert response.status_code == 500


def test_reset(client):
    repository.record_entry("ACME", 200, Decimal("20.00"), "buy-1")
    assert client.post("/api/bot/reset", headers={"x-reset-key": "wrong"}).status_code == 401

    response = client.post("/api/bot/reset", headers={"x-reset-key": "reset-me"})
    body = response.json()
    assert response.status_code == 200
    assert body["deleted"]["trades"] == 1
    assert body["state"]["cash"] == 4000.0
    assert repository.get_open_position() is None


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------

def test_open_position_view(client):
    assert client.get("/api/positions/open").json()["open"] is False

    repository.record_entry("ACME", 200, Decimal("20.06"), "buy-1")
    response = client.get("/api/positions/open")
    body = response.json()

    assert response.headers["cache-control"] == "no-store"
    assert body["open"] is True
    assert body["shares"] == 200
    assert body["take_profit"] == 22.07
    assert body["stop_loss"] == 19.05


def test_trades_include_fifo_log(client, services):
    position = repository.record_entry("ACME", 200, Decimal("20.00"), "buy-1", at=datetime(2026, 3, 16, 13, 30))
    services.reconciler.record_exit(position.id, "ACME", 200, Decimal("22.00"), order_id="tp-1")

    body = client.get("/api/trades", params={"limit": "10"}).json()

    assert body["ok"] is True
    assert [t["side"] for t in body["trades"]] == ["SELL", "BUY"]
    assert body["open_position"] is None
    assert body["fifo"]["realized_total"] == 400.0
    assert body["fifo"]["open_positions"] == []


def test_trades_today(client, frozen_time):
    repository.record_entry("ACME", 200, Decimal("20.00"), "buy-1", at=frozen_time().replace(tzinfo=None))
    body = client.get("/api/trades/today").json()

    assert body["day"] == "2026-03-16"
    assert len(body["trades"]) == 1


def test_health(client):
    response = client.get("/health")
    body = response.json()

    assert response.status_code == 200
    assert body["status"] == "healthy"
    assert body["database"] == "connected"
    assert body["environment"] == "dev"


def test_candles_return_recent_bars(client, market_data, frozen_time):
    market_data.bars = [
        Bar(datetime(2026, 3, 16, h, m), Decimal("20"), Decimal("20.2"), Decimal("19.9"), Decimal("20.1"), Decimal("900"))
        for h, m in ((10, 58), (11, 3), (11, 5))
    ]
    frozen_time.set(11, 6)
    response = client.get("/api/market/candles", params={"symbol": "acme", "limit": "5"})

    assert response.status_code == 200
    body = response.json()
    assert body["symbol"] == "ACME"
    assert body["interval"] == "1min"
    assert [b["timestamp"] for b in body["bars"]] == ["2026-03-16T11:03:00", "2026-03-16T11:05:00"]
    assert body["bars"][0]["close"] == 20.1
    [request] = market_data.bar_requests
    assert request["end"] == datetime(2026, 3, 16, 11, 6)
    assert request["start"] == datetime(2026, 3, 16, 11, 1)


def test_candles_require_symbol(client):
    response = client.get("/api/market/candles")
    assert response.status_code == 400
    assert response.json()["ok"] is False


# ---------------------------------------------------------------------------
# Broker diagnostics
# ---------------------------------------------------------------------------

def test_broker_health_summary(client):
    assert client.get("/api/alpaca/health").status_code == 401

    response = client.get("/api/alpaca/health", params={"symbol": "acme"}, headers=HOOK)
    assert response.status_code == 200
    summary = response.json()["summary"]
    assert summary["account"]["status"] == "ACTIVE"
    assert summary["clock"]["is_open"] is True
    assert summary["asset"] == {
        "symbol": "ACME", "found": True, "tradable": True, "status": None,
        "class": None, "fractionable": None, "marginable": None,
    }
    assert client.post("/api/alpaca/health", headers=HOOK).json()["summary"]["asset"]["symbol"] == "SPY"


def test_broker_health_upstream_failure_is_502(client, broker):
    broker.get_asset = AsyncMock(side_effect=UpstreamUnavailable("HTTP 503", status=503))
    response = client.get("/api/alpaca/health", headers=HOOK)

    assert response.status_code == 502
    assert response.json()["ok"] is False


def test_broker_account_day_change(client, broker):
    response = client.get("/api/alpaca/account", headers=HOOK)

    assert response.status_code == 200
    account = response.json()["account"]
    assert account["cash"] == 4000.0
    assert account["equity"] == 4120.0
    assert account["buying_power"] == 8000.0
    assert account["day_pnl"] == 120.0
    assert account["day_pnl_pct"] == 0.03

    broker.account = {"cash": "4000"}
    partial = client.get("/api/alpaca/account", headers=HOOK).json()["account"]
    assert partial["equity"] is None
    assert partial["day_pnl"] is None


# ---------------------------------------------------------------------------
# Fresh and unavailable ledger
# ---------------------------------------------------------------------------

@pytest.fixture
def fresh_client(config, clock, broker, market_data):
    """App over a ledger whose bot_state row was never created."""
    db = init_db("sqlite://")
    services = build_services(config, clock=clock, broker=broker, market_data=market_data,
                              recommender=FakeRecommender("ACME"))
    with TestClient(create_app(services=services)) as test_client:
        yield test_client
    db.drop_all()
    db.engine.dispose()


def test_first_webhook_on_fresh_ledger(fresh_client):
    payload = _fill_payload()
    payload["order"]["id"] = "ext-1"
    response = fresh_client.post("/api/alpaca/webhook", json=payload, headers=HOOK)

    assert response.status_code == 200
    assert response.json()["result"]["action"] == "buy_adopted"
    assert repository.get_bot_state().cash == Decimal("-14")


def test_first_sync_on_fresh_ledger(fresh_client, broker, frozen_time):
    broker.orders = [{
        "id": "ext-1", "symbol": "ACME", "side": "buy", "status": "filled", "qty": "10",
        "filled_qty": "10", "filled_avg_price": "20.00", "filled_at": "2026-03-16T15:05:03Z",
    }]
    frozen_time.set(14, 0)
    response = fresh_client.get("/api/alpaca/sync", params={"windowMinutes": "240"}, headers=HOOK)

    assert response.status_code == 200
    assert response.json()["processed"] == 1
    assert repository.get_bot_state().cash == Decimal("3800")


def test_ledger_failure_is_structured_503(client, services):
    services.reconciler.apply_event = MagicMock(
        side_effect=OperationalError("SELECT 1", {}, Exception("connection refused"))
    )
    response = client.post("/api/alpaca/webhook", json=_fill_payload(), headers=HOOK)

    assert response.status_code == 503
    assert response.json() == {"ok": False, "error": "ledger unavailable: OperationalError"}


# ---------------------------------------------------------------------------
# Poll and push channels agree
# ---------------------------------------------------------------------------

def _broker_orders():
    return [{
        "id": "buy-1", "symbol": "ACME", "side": "buy", "status": "filled", "qty": "200",
        "filled_qty": "200", "filled_avg_price": "20.07", "filled_at": "2026-03-16T15:05:03Z",
        "order_class": "bracket",
        "legs": [{
            "id": "tp-1", "symbol": "ACME", "side": "sell", "status": "filled", "qty": "200",
            "filled_qty": "200", "filled_avg_price": "22.00", "filled_at": "2026-03-16T17:40:00Z",
        }],
    }]


def _push(order_id, side, price, filled_at):
    # Price and time only on the envelope, as in trade_updates fill events
    return {
        "event": "fill",
        "timestamp": filled_at,
        "price": price,
        "order": {
            "id": order_id, "symbol": "ACME", "side": side, "status": "filled", "qty": "200", "filled_qty": "200",
        },
    }


def _deliver(client, channel):
    if channel == "sync":
        response = client.get("/api/alpaca/sync", params={"windowMinutes": "240"}, headers=HOOK)
        assert response.status_code == 200
    elif channel == "push_buy":
        response = client.post("/api/alpaca/webhook", json=_push("buy-1", "buy", "20.07", "2026-03-16T15:05:03Z"),
                               headers=HOOK)
        assert response.status_code == 200
    else:
        response = client.post("/api/alpaca/webhook", json=_push("tp-1", "sell", "22.00", "2026-03-16T17:40:00Z"),
                               headers=HOOK)
        assert response.status_code == 200


@pytest.mark.parametrize("channels", [
    ("sync", "push_buy", "push_sell"),
    ("push_buy", "push_sell", "sync"),
    ("push_sell", "sync", "push_buy"),
    ("push_sell", "push_buy", "sync"),
])
def test_fill_channels_converge_in_any_order(client, broker, frozen_time, channels):
    repository.record_entry("ACME", 200, Decimal("20.00"), "buy-1", at=datetime(2026, 3, 16, 15, 5, 1))
    broker.orders = _broker_orders()
    frozen_time.set(14, 0)

    for channel in channels:
        _deliver(client, channel)

    state = repository.get_bot_state()
    assert state.cash == Decimal("4386")
    assert state.pnl == Decimal("386")
    assert state.equity == Decimal("4386")
    assert repository.get_open_position() is None
    rows = sorted(
        (t.side.value, t.broker_order_id, t.shares, t.filled_price) for t in repository.list_all_trades()
    )
    assert rows == [("BUY", "buy-1", 200, Decimal("20.07")), ("SELL", "tp-1", 200, Decimal("22.00"))]
