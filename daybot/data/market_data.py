"""
Market data client (Financial Modeling Prep REST).

Quotes degrade to None on any upstream failure; callers fall back to the
previous reference. The top-movers snapshot is cached per process for a
short TTL with in-flight sharing, so concurrent ticks share one upstream
call. The cache is a convenience only and never drives ledger decisions.
"""
import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import quote as url_quote

import aiohttp

from daybot.config.config import MarketDataConfig
from daybot.domain.models import Bar, Mover
from daybot.exceptions import AuthenticationError, ConfigurationError, RateLimitError, UpstreamUnavailable
from daybot.monitoring.logger import get_logger
from daybot.reconciliation.order_events import to_datetime, to_decimal
from daybot.runtime.single_flight import TTLCache
from daybot.utils.retry import retry_on_transient_errors

logger = get_logger(__name__)

QUOTE_PRICE_FIELDS = ("price", "ask", "bid")


def parse_quote(payload: Any) -> Optional[Decimal]:
    """Price from an FMP quote array: price, then ask, then bid (positive only)."""
    row = payload[0] if isinstance(payload, list) and payload else payload
    if not isinstance(row, dict):
        return None
    for name in QUOTE_PRICE_FIELDS:
        value = to_decimal(row.get(name))
        if value is not None and value > 0:
            return value
    return None


def parse_movers(payload: Any, limit: int) -> List[Mover]:
    if not isinstance(payload, list):
        return []
    movers: List[Mover] = []
    for row in payload:
        if not isinstance(row, dict):
            continue
        ticker = str(row.get("symbol") or row.get("ticker") or "").strip().upper()
        if not ticker:
            continue
        movers.append(Mover(
            ticker=ticker,
            price=to_decimal(row.get("price")),
            change_pct=to_decimal(row.get("changesPercentage")),
        ))
        if len(movers) >= limit:
            break
    return movers


def parse_bars(payload: Any) -> List[Bar]:
    """FMP historical-chart rows (newest first) -> Bars oldest first."""
    if not isinstance(payload, list):
        return []
    bars = []
    for row in payload:
        if not isinstance(row, dict):
            continue
        ts = to_datetime(row.get("date"))
        values = [to_decimal(row.get(k)) for k in ("open", "high", "low", "close")]
        if ts is None or any(v is None for v in values):
            continue
        bars.append(Bar(
            timestamp=ts,
            open=values[0],
            high=values[1],
            low=values[2],
            close=values[3],
            volume=to_decimal(row.get("volume")) or Decimal("0"),
        ))
    bars.sort(key=lambda b: b.timestamp)
    return bars


class MarketDataClient:
    """
    FMP-backed implementation of the MarketData protocol.
    """

    def __init__(self, config: MarketDataConfig, cache: Optional[TTLCache] = None):
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=config.request_timeout_seconds)
        self.cache = cache or TTLCache(max_size=64)

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if not self.config.api_key:
            raise ConfigurationError("Missing FMP_API_KEY")
        query = dict(params or {})
        query["apikey"] = self.config.api_key
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url, params=query) as response:
                    if response.status == 401 or response.status == 403:
                        raise AuthenticationError(f"FMP {path}: HTTP {response.status}", status=response.status)
                    if response.status == 429:
                        raise RateLimitError(f"FMP {path}: rate limited", status=429)
                    if response.status != 200:
                        raise UpstreamUnavailable(f"FMP {path}: HTTP {response.status}", status=response.status)
                    return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamUnavailable(f"FMP {path} failed: {type(e).__name__}: {e}") from e

    async def get_quote(self, symbol: str) -> Optional[Decimal]:
        try:
            payload = await self._get(f"/api/v3/quote/{url_quote(symbol)}")
        except (UpstreamUnavailable, ConfigurationError) as e:
            logger.warning("QUOTE_UNAVAILABLE", symbol=symbol, error=str(e))
            return None
        return parse_quote(payload)

    @retry_on_transient_errors(max_retries=1, base_delay=0.5, max_backoff=1.0)
    async def _fetch_movers(self, limit: int) -> List[Mover]:
        payload = await self._get("/api/v3/stock_market/gainers", {"limit": limit})
        return parse_movers(payload, limit)

    async def get_top_movers(self, limit: int) -> List[Mover]:
        """
        Top gainers, cached for ``snapshot_ttl_seconds``.

        Raises:
            UpstreamUnavailable: the snapshot could not be fetched
        """
        movers = await self.cache.get_or_set(
            ("movers", limit),
            self.config.snapshot_ttl_seconds,
            lambda: self._fetch_movers(limit),
        )
        return list(movers or [])

    @retry_on_transient_errors(max_retries=1, base_delay=0.5, max_backoff=1.0)
    async def get_intraday_bars(
        self,
        symbol: str,
        start: datetime,
        end: datetime,
        interval: str = "1min",
    ) -> List[Bar]:
        params = {"from": start.strftime("%Y-%m-%d"), "to": end.strftime("%Y-%m-%d")}
        payload = await self._get(f"/api/v3/historical-chart/{interval}/{url_quote(symbol)}", params)
        return [b for b in parse_bars(payload) if start <= b.timestamp <= end]
