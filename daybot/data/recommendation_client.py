"""
Advisory "pick a ticker" client.

The recommendation service answers in several shapes (structured fields
or a free-text report containing ``Pick: TICKER``); parse_pick accepts all
of them.
"""
import asyncio
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

import aiohttp

from daybot.config.config import RecommendationConfig
from daybot.domain.models import Mover
from daybot.exceptions import ConfigurationError, UpstreamUnavailable
from daybot.monitoring.logger import get_logger

logger = get_logger(__name__)

PICK_PATTERN = re.compile(r"Pick:\**\s*\**\s*([A-Z][A-Z0-9.\-]*)", re.IGNORECASE)
TICKER_PATTERN = re.compile(r"^[A-Z][A-Z0-9.\-]{0,9}$")
TEXT_FIELDS = ("recommendation", "text", "content", "message")


def _clean(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    ticker = value.strip().upper()
    return ticker if TICKER_PATTERN.match(ticker) else None


def parse_pick(payload: Any) -> Optional[str]:
    """Extract the picked ticker, or None when the answer has none."""
    if isinstance(payload, str):
        match = PICK_PATTERN.search(payload)
        return match.group(1).upper() if match else None
    if not isinstance(payload, Mapping):
        return None

    data = payload.get("data") if isinstance(payload.get("data"), Mapping) else {}
    context = payload.get("context") if isinstance(payload.get("context"), Mapping) else {}
    context_tickers = context.get("tickers") if isinstance(context.get("tickers"), list) else []
    first_context = context_tickers[0] if context_tickers and isinstance(context_tickers[0], Mapping) else {}

    for candidate in (
        payload.get("ticker"),
        payload.get("symbol"),
        payload.get("pick"),
        data.get("ticker"),
        first_context.get("ticker"),
    ):
        ticker = _clean(candidate)
        if ticker:
            return ticker

    for name in TEXT_FIELDS:
        text = payload.get(name)
        if isinstance(text, str):
            match = PICK_PATTERN.search(text)
            if match:
                return match.group(1).upper()
    return None


def _candidate_payload(candidates: Sequence[Mover]) -> List[Dict[str, Any]]:
    return [
        {
            "ticker": m.ticker,
            "price": float(m.price) if m.price is not None else None,
            "changesPercentage": float(m.change_pct) if m.change_pct is not None else None,
        }
        for m in candidates
    ]


class RecommendationClient:
    """HTTP implementation of the Recommender protocol."""

    def __init__(self, config: RecommendationConfig):
        self.config = config
        self.timeout = aiohttp.ClientTimeout(total=config.request_timeout_seconds)

    async def pick(self, candidates: Sequence[Mover]) -> Optional[str]:
        """
        Ask for one ticker among ``candidates``.

        Returns None when the service answered without a pick; the caller's
        retry policy treats that as a failed attempt.

        Raises:
            ConfigurationError: no service URL configured
            UpstreamUnavailable: timeout or non-2xx answer
        """
        if not self.config.service_url:
            raise ConfigurationError("Missing RECOMMENDATION_URL")
        body = {"stocks": _candidate_payload(candidates), "forcePick": True, "requirePick": True}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.config.service_url, json=body) as response:
                    if response.status != 200:
                        text = await response.text()
                        raise UpstreamUnavailable(
                            f"recommendation HTTP {response.status}: {text[:200]}", status=response.status
                        )
                    content_type = response.headers.get("Content-Type", "")
                    if "json" in content_type:
                        payload = await response.json(content_type=None)
                    else:
                        payload = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamUnavailable(f"recommendation request failed: {type(e).__name__}: {e}") from e

        ticker = parse_pick(payload)
        if ticker is None:
            logger.info("RECOMMENDATION_NO_PICK", candidates=[m.ticker for m in candidates])
        return ticker
