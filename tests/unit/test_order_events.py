"""
Broker payload normalisation into OrderEvent.
"""
from datetime import datetime
from decimal import Decimal

import pytest

from daybot.reconciliation.order_events import (
    event_from_webhook,
    flatten_orders,
    normalize_order,
    normalize_status,
    to_datetime,
    to_decimal,
)


def _bracket():
    return {
        "id": "buy-1",
        "client_order_id": "c-1",
        "symbol": "acme",
        "side": "buy",
        "status": "filled",
        "qty": "200",
        "filled_qty": "200",
        "filled_avg_price": "20.07",
        "filled_at": "2026-03-16T15:05:03.123456Z",
        "submitted_at": "2026-03-16T15:05:01Z",
        "order_class": "bracket",
        "legs": [
            {"id": "tp-1", "symbol": "ACME", "side": "sell", "status": "new", "qty": "200", "filled_qty": "0"},
            {"id": "sl-1", "symbol": "ACME", "side": "sell", "status": "held", "qty": "200", "filled_qty": "0"},
        ],
    }


@pytest.mark.parametrize("raw,expected", [
    ("12.5", Decimal("12.5")),
    (3, Decimal("3")),
    (" 7 ", Decimal("7")),
    ("", None),
    (None, None),
    ("abc", None),
    ("NaN", None),
    ("Infinity", None),
    (True, None),
])
def test_to_decimal(raw, expected):
    assert to_decimal(raw) == expected


def test_to_datetime_normalises_to_naive_utc():
    assert to_datetime("2026-03-16T11:05:00-04:00") == datetime(2026, 3, 16, 15, 5)
    assert to_datetime("2026-03-16T15:05:00Z") == datetime(2026, 3, 16, 15, 5)
    assert to_datetime("yesterday") is None
    assert to_datetime(None) is None


@pytest.mark.parametrize("raw,expected", [
    ("fill", "filled"),
    ("partial_fill", "partially_filled"),
    ("CANCELLED", "canceled"),
    ("new", "new"),
    (None, ""),
])
def test_status_aliases(raw, expected):
    assert normalize_status(raw) == expected


def test_normalize_bracket_with_legs():
    event = normalize_order(_bracket())

    assert event.order_id == "buy-1"
    assert event.symbol == "ACME"
    assert event.side == "buy"
    assert event.is_terminal
    assert event.has_fill
    assert event.filled_qty == Decimal("200")
    assert event.filled_avg_price == Decimal("20.07")
    assert event.filled_at == datetime(2026, 3, 16, 15, 5, 3, 123456)
    assert [leg.order_id for leg in event.legs] == ["tp-1", "sl-1"]
    assert all(leg.parent_order_id == "buy-1" for leg in event.legs)
    assert not event.legs[0].has_fill


def test_flatten_orders_is_depth_first():
    events = list(flatten_orders([normalize_order(_bracket())]))
    assert [e.order_id for e in events] == ["buy-1", "tp-1", "sl-1"]


def test_field_synonyms():
    event = normalize_order({
        "order_id": 42,
        "ticker": "zeta",
        "side": "SELL",
        "status": "fill",
        "quantity": 10,
        "cum_qty": "10",
        "avg_fill_price": "5.1",
        "timestamp": "2026-03-16T19:00:00Z",
    })
    assert event.order_id == "42"
    assert event.symbol == "ZETA"
    assert event.side == "sell"
    assert event.status == "filled"
    assert event.filled_qty == Decimal("10")
    assert event.filled_avg_price == Decimal("5.1")


def test_unknown_side_is_marked():
    assert normalize_order({"id": "x", "symbol": "ACME", "side": "short"}).side == "unknown"


def test_webhook_envelope_supplies_fill_fields():
    payload = {
        "event": "fill",
        "timestamp": "2026-03-16T19:30:00Z",
        "price": "22.00",
        "qty": "200",
        "order": {"id": "tp-1", "symbol": "ACME", "side": "sell", "status": "filled", "filled_qty": "200"},
    }
    event = event_from_webhook(payload)

    assert event.status == "filled"
    assert event.filled_avg_price == Decimal("22.00")
    assert event.filled_at == datetime(2026, 3, 16, 19, 30)


def test_webhook_order_under_data():
    payload = {"data": {"event": "canceled", "order": {"id": "buy-1", "symbol": "ACME", "side": "buy"}}}
    event = event_from_webhook(payload)

    assert event.order_id == "buy-1"
    assert event.status == "canceled"
    assert event.is_terminal
    assert not event.has_fill


def test_webhook_bare_order():
    event = event_from_webhook({"id": "buy-1", "symbol": "ACME", "side": "buy", "status": "partial_fill",
                                "filled_qty": "120"})
    assert event.status == "partially_filled"
    assert not event.is_terminal
    assert event.has_fill
