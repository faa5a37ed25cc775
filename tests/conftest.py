"""
Pytest configuration and shared fixtures.
"""
import os

# Tests never read local dotenv files; the ledger is an in-memory SQLite per test.
os.environ.setdefault("ENVIRONMENT", "dev")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from decimal import Decimal

import pytest

from daybot.config.config import (
    ApiConfig,
    BrokerConfig,
    Config,
    ExecutionConfig,
    MarketDataConfig,
    RecommendationConfig,
)
from daybot.domain.models import Mover
from daybot.runtime.exchange_clock import ExchangeClock
from daybot.storage import repository
from daybot.storage.db import init_db
from tests.fakes import FakeBroker, FakeMarketData, FrozenTime

SECRET_ENV_VARS = (
    "ALPACA_API_KEY_ID", "ALPACA_API_KEY", "ALPACA_API_SECRET_KEY", "ALPACA_SECRET_KEY",
    "ALPACA_BASE_URL", "ALPACA_WEBHOOK_SECRET", "WEBHOOK_SECRET", "PANIC_PASSKEY",
    "RESET_KEY", "FMP_API_KEY", "RECOMMENDATION_URL", "DRY_RUN",
)


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


@pytest.fixture(autouse=True)
def _clean_secret_env(monkeypatch):
    """Keep developer credentials out of config defaults."""
    for name in SECRET_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def ledger():
    """Fresh in-memory ledger with the bot state row at 4000."""
    db = init_db("sqlite://")
    repository.ensure_bot_state(Decimal("4000"))
    yield db
    db.drop_all()
    db.engine.dispose()


@pytest.fixture
def frozen_time():
    return FrozenTime()


@pytest.fixture
def config():
    return Config(
        environment="dev",
        execution=ExecutionConfig(slippage_steps=[0.003, 0.006, 0.010]),
        recommendation=RecommendationConfig(
            service_url="http://recommend.test/pick", burst_attempts=3, burst_delay_seconds=0.0
        ),
        broker=BrokerConfig(api_key="PKTEST1234", api_secret="secret"),
        market_data=MarketDataConfig(api_key="fmp-test"),
        api=ApiConfig(tick_min_interval_ms=0, webhook_secret="hook-secret", panic_passkey="9340", reset_key="reset-me"),
    )


@pytest.fixture
def clock(config, frozen_time):
    return ExchangeClock(config.schedule, now_fn=frozen_time)


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def market_data():
    return FakeMarketData(
        quotes={"ACME": Decimal("20.00")},
        movers=[Mover("ACME", Decimal("20.00"), Decimal("12.5")), Mover("ZETA", Decimal("5.10"), Decimal("9.1"))],
    )
