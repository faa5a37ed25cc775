"""
Unit tests for FillReconciler: BUY stamping, SELL accounting, voids, adoption.

The numbers follow one day's trade: 200 ACME submitted at a 20.00 limit
against 4000 cash, filled at 20.07, exited at the 22.00 take-profit.
"""
from datetime import datetime
from decimal import Decimal

import pytest

from daybot.reconciliation.order_events import OrderEvent
from daybot.reconciliation.reconciler import FillReconciler
from daybot.storage import repository
from daybot.storage.db import init_db

NOW = datetime(2026, 3, 16, 15, 6)


def _event(order_id, side, status, filled_qty=None, price=None, symbol="ACME", parent=None):
    return OrderEvent(
        order_id=order_id,
        symbol=symbol,
        side=side,
        status=status,
        qty=Decimal(filled_qty) if filled_qty is not None else None,
        filled_qty=Decimal(filled_qty) if filled_qty is not None else None,
        filled_avg_price=Decimal(price) if price is not None else None,
        filled_at=NOW if "fill" in status else None,
        parent_order_id=parent,
    )


@pytest.fixture
def reconciler():
    return FillReconciler(now_fn=lambda: NOW)


@pytest.fixture
def entry(ledger):
    return repository.record_entry("ACME", 200, Decimal("20.00"), "buy-1", at=NOW)


def _state():
    return repository.get_bot_state()


def test_entry_debits_cash_at_limit(entry):
    state = _state()
    assert state.cash == Decimal("0")
    assert state.equity == Decimal("4000")


def test_partial_buy_is_deferred_until_terminal(reconciler, entry):
    result = reconciler.apply_event(_event("buy-1", "buy", "partially_filled", "120", "20.05"))

    assert not result.applied
    assert result.action == "buy_partial_pending"
    assert _state().cash == Decimal("0")
    assert repository.get_trade_by_order_id("buy-1").filled_at is None


def test_full_day_worked_scenario(reconciler, entry):
    reconciler.apply_event(_event("buy-1", "buy", "partially_filled", "120", "20.05"))
    stamped = reconciler.apply_event(_event("buy-1", "buy", "filled", "200", "20.07"))

    assert stamped.action == "buy_stamped"
    assert _state().cash == Decimal("-14")
    position = repository.get_open_position()
    assert position.entry_price == Decimal("20.07")
    assert position.shares == 200

    closed = reconciler.apply_event(_event("tp-1", "sell", "filled", "200", "22.00", parent="buy-1"))

    assert closed.action == "position_closed"
    state = _state()
    assert state.cash == Decimal("4386")
    assert state.pnl == Decimal("386")
    assert state.equity == Decimal("4386")
    assert repository.get_open_position() is None


def test_replayed_events_are_noops(reconciler, entry):
    buy = _event("buy-1", "buy", "filled", "200", "20.07")
    sell = _event("tp-1", "sell", "filled", "200", "22.00", parent="buy-1")
    reconciler.apply_event(buy)
    reconciler.apply_event(sell)

    assert reconciler.apply_event(buy).action == "already_stamped"
    assert reconciler.apply_event(sell).action == "already_applied"

    state = _state()
    assert state.cash == Decimal("4386")
    assert state.pnl == Decimal("386")
    assert len(repository.list_all_trades()) == 2


def test_sell_before_buy_stamp_reaches_same_ledger(reconciler, entry):
    reconciler.apply_event(_event("tp-1", "sell", "filled", "200", "22.00", parent="buy-1"))
    # Realized against the assumed entry until the BUY stamp arrives
    assert _state().pnl == Decimal("400")

    result = reconciler.apply_event(_event("buy-1", "buy", "filled", "200", "20.07"))

    assert result.applied
    assert Decimal(result.details["realized_adjustment"]) == Decimal("-14")
    state = _state()
    assert state.cash == Decimal("4386")
    assert state.pnl == Decimal("386")
    assert state.equity == Decimal("4386")


def test_sell_price_correction_applies_only_the_difference(reconciler, entry):
    reconciler.apply_event(_event("buy-1", "buy", "filled", "200", "20.00"))
    reconciler.apply_event(_event("tp-1", "sell", "filled", "200", "22.00"))
    corrected = reconciler.apply_event(_event("tp-1", "sell", "filled", "200", "22.10"))

    assert corrected.applied
    state = _state()
    assert state.cash == Decimal("4420")
    assert state.pnl == Decimal("420")


def test_partial_sell_reduces_then_closes(reconciler, entry):
    first = reconciler.apply_event(_event("sl-1", "sell", "partially_filled", "80", "19.00"))
    assert first.action == "position_reduced"
    assert repository.get_open_position().shares == 120

    second = reconciler.apply_event(_event("sl-1", "sell", "filled", "200", "19.00"))
    assert second.action == "position_closed"
    state = _state()
    assert state.cash == Decimal("3800")
    assert state.pnl == Decimal("-200")


def test_unfilled_terminal_buy_voids_entry(reconciler, entry):
    result = reconciler.apply_event(_event("buy-1", "buy", "canceled"))

    assert result.action == "entry_voided"
    assert repository.get_open_position() is None
    state = _state()
    assert state.cash == Decimal("4000")
    assert state.equity == Decimal("4000")

    assert reconciler.apply_event(_event("buy-1", "buy", "expired")).action == "already_stamped"
    assert _state().cash == Decimal("4000")


def test_short_terminal_fill_trues_up_shares(reconciler, entry):
    result = reconciler.apply_event(_event("buy-1", "buy", "canceled", "150", "20.00"))

    assert result.action == "buy_stamped"
    assert repository.get_open_position().shares == 150
    assert _state().cash == Decimal("1000")


def test_unknown_buy_fill_is_adopted(reconciler, ledger):
    result = reconciler.apply_event(_event("ext-1", "buy", "filled", "10", "5.00", symbol="ZETA"))

    assert result.action == "buy_adopted"
    position = repository.get_open_position()
    assert position.ticker == "ZETA"
    assert position.shares == 10
    assert _state().cash == Decimal("3950")


def test_unknown_buy_without_price_is_dropped(reconciler, ledger):
    result = reconciler.apply_event(_event("ext-1", "buy", "filled", "10", None, symbol="ZETA"))

    assert result.action == "dropped"
    assert repository.get_open_position() is None
    assert _state().cash == Decimal("4000")


def test_sell_without_position_is_dropped(reconciler, ledger):
    result = reconciler.apply_event(_event("tp-9", "sell", "filled", "10", "22.00", symbol="NOPE"))

    assert not result.applied
    assert result.action == "dropped"
    assert "no known position" in result.reason


def test_side_mismatch_is_dropped(reconciler, entry):
    result = reconciler.apply_event(_event("buy-1", "sell", "filled", "200", "22.00"))

    assert result.action == "dropped"
    assert _state().cash == Decimal("0")


def test_event_without_order_id_is_ignored(reconciler, entry):
    result = reconciler.apply_event(_event(None, "buy", "filled", "200", "20.07"))
    assert result.action == "ignored"


def test_record_exit_closes_at_given_price(reconciler, entry):
    result = reconciler.record_exit(entry.id, "ACME", 200, Decimal("21.00"), order_id="close-1")

    assert result.action == "position_closed"
    state = _state()
    assert state.cash == Decimal("4200")
    assert state.pnl == Decimal("200")

    # The broker fill for the close order corrects the price once
    reconciler.apply_event(_event("close-1", "sell", "filled", "200", "20.90"))
    assert _state().cash == Decimal("4180")


def test_late_fill_of_pending_entry_is_adopted(reconciler, ledger):
    repository.mark_entry_pending("daybot-acme-1")
    event = _event("buy-7", "buy", "filled", "200", "19.98")
    event.client_order_id = "daybot-acme-1"

    result = reconciler.apply_event(event)

    assert result.action == "buy_adopted"
    assert repository.get_open_position().broker_order_id == "buy-7"
    state = _state()
    assert state.cash == Decimal("4.00")
    assert state.pending_entry_ref is None


def test_canceled_pending_entry_clears_marker(reconciler, ledger):
    repository.mark_entry_pending("daybot-acme-1")
    event = _event("buy-7", "buy", "canceled")
    event.client_order_id = "daybot-acme-1"

    result = reconciler.apply_event(event)

    assert result.action == "pending_entry_voided"
    assert _state().pending_entry_ref is None
    assert _state().cash == Decimal("4000")


def test_buy_fill_of_another_order_does_not_stamp_owned_position(reconciler, entry):
    result = reconciler.apply_event(_event("buy-2", "buy", "filled", "200", "20.30"))

    assert result.action == "dropped"
    assert "belongs to order buy-1" in result.reason
    assert repository.get_trade_by_order_id("buy-1").filled_at is None
    assert repository.get_trade_by_order_id("buy-2") is None
    assert _state().cash == Decimal("0")


def test_first_event_on_fresh_ledger_creates_state():
    db = init_db("sqlite://")
    try:
        reconciler = FillReconciler(now_fn=lambda: NOW, starting_cash=Decimal("4000"))
        result = reconciler.apply_event(_event("ext-1", "buy", "filled", "10", "5.00", symbol="ZETA"))

        assert result.action == "buy_adopted"
        assert _state().cash == Decimal("3950")
    finally:
        db.drop_all()
        db.engine.dispose()
