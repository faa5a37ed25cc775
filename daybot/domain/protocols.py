"""
Collaborator protocols (interfaces) for dependency inversion.

The orchestrator, entry submitter and reconciliation depend on these
contracts, never on concrete HTTP clients. Tests substitute fakes or
AsyncMocks.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from daybot.domain.models import Bar, BracketOrder, Mover, OrderAck


@runtime_checkable
class Brokerage(Protocol):
    """Brokerage service. Raises UpstreamUnavailable / OrderRejected / ConfigurationError."""

    async def get_account(self) -> Dict[str, Any]: ...

    async def get_clock(self) -> Dict[str, Any]: ...

    async def get_asset(self, symbol: str) -> Optional[Dict[str, Any]]: ...

    async def list_positions(self) -> List[Dict[str, Any]]: ...

    async def list_orders(
        self,
        *,
        status: str = "all",
        after: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 200,
        nested: bool = True,
        direction: str = "desc",
    ) -> List[Dict[str, Any]]: ...

    async def submit_bracket_order(self, order: BracketOrder) -> OrderAck: ...

    async def submit_market_order(self, symbol: str, qty: Decimal, side: str) -> OrderAck: ...

    async def cancel_all_open_orders(self) -> int: ...

    async def close_position_at_market(self, symbol: str) -> OrderAck: ...


@runtime_checkable
class MarketData(Protocol):
    """Quote / movers provider. get_quote returns None when unavailable."""

    async def get_quote(self, symbol: str) -> Optional[Decimal]: ...

    async def get_top_movers(self, limit: int) -> List[Mover]: ...

    async def get_intraday_bars(
        self, symbol: str, start: datetime, end: datetime, interval: str = "1min"
    ) -> List[Bar]: ...


@runtime_checkable
class Recommender(Protocol):
    """Pick-a-ticker advisory service. Returns None when it has no pick."""

    async def pick(self, candidates: Sequence[Mover]) -> Optional[str]: ...
