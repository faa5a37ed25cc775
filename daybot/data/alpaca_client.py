"""
Alpaca brokerage REST client.

Thin aiohttp wrapper implementing the Brokerage protocol. Every request has
a ClientTimeout; transport failures and non-2xx answers are translated to
the daybot exception taxonomy. Read-only calls retry transient failures;
order submission never retries here (the caller owns that policy).
"""
import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp

from daybot.config.config import BrokerConfig
from daybot.domain.models import BracketOrder, OrderAck
from daybot.exceptions import (
    AuthenticationError,
    ConfigurationError,
    OrderRejected,
    RateLimitError,
    UpstreamUnavailable,
)
from daybot.execution.price_rounding import format_price
from daybot.monitoring.logger import get_logger
from daybot.utils.retry import retry_on_transient_errors

logger = get_logger(__name__)


def _error_message(body: Any, text: str, status: int) -> str:
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or text or f"HTTP {status}")
    return text or f"HTTP {status}"


def _is_order_refusal(body: Any) -> bool:
    """
    Alpaca answers 403 both for bad keys and for business refusals of an
    order (insufficient buying power, PDT, non-tradable asset). Only the
    latter carry a coded JSON body with a specific message.
    """
    if not isinstance(body, dict):
        return False
    message = str(body.get("message") or "").strip().lower()
    return bool(message) and message != "forbidden"


def _ack(data: Any) -> OrderAck:
    data = data if isinstance(data, dict) else {}
    return OrderAck(
        order_id=str(data["id"]) if data.get("id") else None,
        status=data.get("status"),
        symbol=data.get("symbol"),
        raw=data,
    )


class AlpacaClient:
    """
    Alpaca trading API (v2) client.
    """

    def __init__(self, config: BrokerConfig):
        self.config = config
        self.base_url = config.base_url
        self.timeout = aiohttp.ClientTimeout(total=config.request_timeout_seconds)

    def _headers(self) -> Dict[str, str]:
        if not self.config.api_key or not self.config.api_secret:
            raise ConfigurationError("Missing Alpaca credentials (ALPACA_API_KEY_ID / ALPACA_API_SECRET_KEY)")
        return {
            "APCA-API-KEY-ID": self.config.api_key,
            "APCA-API-SECRET-KEY": self.config.api_secret,
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        allow_404: bool = False,
    ) -> Any:
        url = f"{self.base_url}{path}"
        headers = self._headers()
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, headers=headers, params=params, json=json_body) as response:
                    text = await response.text()
                    try:
                        body = await response.json(content_type=None) if text else None
                    except ValueError:
                        body = None
                    status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamUnavailable(f"Alpaca {method} {path} failed: {type(e).__name__}: {e}") from e

        if 200 <= status < 300:
            return body
        if status == 404 and allow_404:
            return None

        message = f"Alpaca {method} {path}: {_error_message(body, text, status)}"
        if status == 403 and method == "POST" and _is_order_refusal(body):
            raise OrderRejected(message)
        if status in (401, 403):
            raise AuthenticationError(message, status=status)
        if status == 429:
            raise RateLimitError(message, status=status)
        if status in (400, 422) and method == "POST":
            raise OrderRejected(message)
        raise UpstreamUnavailable(message, status=status)

    # ------------------------------------------------------------------
    # Account / reference data
    # ------------------------------------------------------------------

    @retry_on_transient_errors(max_retries=2, base_delay=0.5, max_backoff=2.0)
    async def get_account(self) -> Dict[str, Any]:
        return await self._request("GET", "/v2/account")

    @retry_on_transient_errors(max_retries=2, base_delay=0.5, max_backoff=2.0)
    async def get_clock(self) -> Dict[str, Any]:
        return await self._request("GET", "/v2/clock")

    @retry_on_transient_errors(max_retries=2, base_delay=0.5, max_backoff=2.0)
    async def get_asset(self, symbol: str) -> Optional[Dict[str, Any]]:
        return await self._request("GET", f"/v2/assets/{quote(symbol)}", allow_404=True)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    @retry_on_transient_errors(max_retries=2, base_delay=0.5, max_backoff=2.0)
    async def list_orders(
        self,
        *,
        status: str = "all",
        after: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 200,
        nested: bool = True,
        direction: str = "desc",
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"status": status, "limit": str(limit), "direction": direction}
        if nested:
            params["nested"] = "true"
        if after is not None:
            params["after"] = after.isoformat()
        if until is not None:
            params["until"] = until.isoformat()
        data = await self._request("GET", "/v2/orders", params=params)
        return data if isinstance(data, list) else []

    async def submit_bracket_order(self, order: BracketOrder) -> OrderAck:
        """Limit BUY with take-profit limit and stop-market legs. Prices must be tick-rounded."""
        body = {
            "symbol": order.symbol,
            "qty": str(order.qty),
            "side": "buy",
            "type": "limit",
            "limit_price": format_price(order.limit_price),
            "time_in_force": order.time_in_force,
            "order_class": "bracket",
            "take_profit": {"limit_price": format_price(order.take_profit)},
            "stop_loss": {"stop_price": format_price(order.stop_loss)},
        }
        if order.client_order_id:
            body["client_order_id"] = order.client_order_id
        return _ack(await self._request("POST", "/v2/orders", json_body=body))

    async def submit_market_order(self, symbol: str, qty: Decimal, side: str) -> OrderAck:
        body = {
            "symbol": symbol,
            "qty": str(qty),
            "side": side,
            "type": "market",
            "time_in_force": "day",
        }
        return _ack(await self._request("POST", "/v2/orders", json_body=body))

    async def cancel_all_open_orders(self) -> int:
        """DELETE /v2/orders; returns how many cancellations the broker reported."""
        data = await self._request("DELETE", "/v2/orders")
        return len(data) if isinstance(data, list) else 0

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    @retry_on_transient_errors(max_retries=2, base_delay=0.5, max_backoff=2.0)
    async def list_positions(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/v2/positions")
        return data if isinstance(data, list) else []

    async def close_position_at_market(self, symbol: str) -> OrderAck:
        """DELETE closes at market and cancels the related bracket legs."""
        data = await self._request("DELETE", f"/v2/positions/{quote(symbol)}")
        ack = _ack(data)
        logger.info("ALPACA_CLOSE_POSITION", symbol=symbol, order_id=ack.order_id, status=ack.status)
        return ack
