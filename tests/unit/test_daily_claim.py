"""
Daily claim: one conditional UPDATE per day, released on failure or by the
end-of-window failsafe.
"""
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from daybot.exceptions import ConcurrencyConflict, ConfigurationError
from daybot.reconciliation.reconciler import FillReconciler
from daybot.storage import repository
from daybot.storage.db import init_db

DAY = "2026-03-16"
CLAIM_AT = datetime(2026, 3, 16, 15, 5, 5)
START_OF_DAY = datetime(2026, 3, 16, 4, 0)


def test_claim_is_granted_once_per_day(ledger):
    assert repository.try_claim_day(DAY, now=CLAIM_AT) is True
    assert repository.try_claim_day(DAY, now=CLAIM_AT) is False

    state = repository.get_bot_state()
    assert state.last_run_day == DAY
    assert state.claimed_at == CLAIM_AT


def test_next_day_can_claim_again(ledger):
    assert repository.try_claim_day(DAY)
    assert repository.try_claim_day("2026-03-17")


def test_release_allows_reclaim(ledger):
    repository.try_claim_day(DAY)
    assert repository.release_claim(DAY)
    assert repository.get_bot_state().last_run_day is None
    assert repository.try_claim_day(DAY)


def test_release_for_other_day_is_a_noop(ledger):
    repository.try_claim_day(DAY)
    assert not repository.release_claim("2026-03-15")
    assert repository.get_bot_state().last_run_day == DAY


def test_failsafe_releases_only_stale_claims(ledger):
    repository.try_claim_day(DAY, now=CLAIM_AT)

    fresh_cutoff = CLAIM_AT - timedelta(seconds=1)
    assert not repository.release_stale_claim(DAY, older_than=fresh_cutoff, since=START_OF_DAY)

    stale_cutoff = CLAIM_AT + timedelta(seconds=45)
    assert repository.release_stale_claim(DAY, older_than=stale_cutoff, since=START_OF_DAY)
    assert repository.get_bot_state().last_run_day is None


def test_failsafe_keeps_claim_when_a_buy_was_recorded(ledger):
    repository.try_claim_day(DAY, now=CLAIM_AT)
    position = repository.record_entry("ACME", 10, Decimal("20.06"), "buy-1", at=CLAIM_AT)
    # Position closed by its exit; the BUY still marks the day as used
    FillReconciler(now_fn=lambda: CLAIM_AT).record_exit(position.id, "ACME", 10, Decimal("21"))

    later = CLAIM_AT + timedelta(minutes=5)
    assert not repository.release_stale_claim(DAY, older_than=later, since=START_OF_DAY)
    assert repository.get_bot_state().last_run_day == DAY


def test_second_open_position_is_rejected(ledger):
    repository.record_entry("ACME", 10, Decimal("20"), "buy-1")
    with pytest.raises(ConcurrencyConflict):
        repository.record_entry("ZETA", 10, Decimal("5"), "buy-2")

    # The failed entry left no cash trace
    assert repository.get_bot_state().cash == Decimal("3800")


def test_concurrent_claims_grant_exactly_one(tmp_path):
    db = init_db(f"sqlite:///{tmp_path / 'claims.db'}")
    try:
        repository.ensure_bot_state(Decimal("4000"))
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: repository.try_claim_day(DAY), range(16)))
        assert results.count(True) == 1
    finally:
        db.drop_all()
        db.engine.dispose()


def test_reset_clears_history_and_claim(ledger):
    repository.try_claim_day(DAY)
    repository.record_entry("ACME", 10, Decimal("20"), "buy-1")
    repository.save_recommendation("acme", Decimal("20"))

    deleted = repository.reset_ledger(Decimal("4000"))

    assert deleted == {"trades": 1, "positions": 1, "recommendations": 1}
    state = repository.get_bot_state()
    assert state.cash == Decimal("4000")
    assert state.equity == Decimal("4000")
    assert state.last_run_day is None
    assert repository.get_open_position() is None


def test_failsafe_keeps_claim_while_an_entry_may_be_live(ledger):
    repository.try_claim_day(DAY, now=CLAIM_AT)
    repository.mark_entry_pending("daybot-acme-1")

    later = CLAIM_AT + timedelta(minutes=2)
    assert not repository.release_stale_claim(DAY, older_than=later, since=START_OF_DAY)
    assert repository.get_bot_state().last_run_day == DAY

    # Once the venue answers that nothing executed, the failsafe may release
    assert repository.clear_entry_pending("daybot-acme-1")
    assert repository.release_stale_claim(DAY, older_than=later, since=START_OF_DAY)


def test_release_can_defer_to_pending_entry(ledger):
    repository.try_claim_day(DAY)
    repository.mark_entry_pending("daybot-acme-1")

    assert not repository.release_claim(DAY, keep_if_pending=True)
    assert repository.get_bot_state().last_run_day == DAY

    assert repository.release_claim(DAY)
    state = repository.get_bot_state()
    assert state.last_run_day is None
    assert state.pending_entry_ref is None


def test_clear_entry_pending_ignores_other_orders(ledger):
    repository.mark_entry_pending("daybot-acme-1")
    assert not repository.clear_entry_pending("daybot-zeta-2")
    assert repository.get_bot_state().pending_entry_ref == "daybot-acme-1"


def test_recorded_entry_clears_pending_marker(ledger):
    repository.try_claim_day(DAY, now=CLAIM_AT)
    repository.mark_entry_pending("daybot-acme-1")
    repository.record_entry("ACME", 10, Decimal("20"), "buy-1", at=CLAIM_AT)
    assert repository.get_bot_state().pending_entry_ref is None


def test_ledger_without_state_row_is_a_configuration_error():
    db = init_db("sqlite://")
    try:
        with pytest.raises(ConfigurationError):
            repository.get_bot_state()
    finally:
        db.drop_all()
        db.engine.dispose()
