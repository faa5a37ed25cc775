"""
US equity tick rounding for bracket orders.

Ticks are $0.01 at or above $1 and $0.0001 below. Buy limits and
take-profits round up, stops round down, so no leg lands off-tick.
"""
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR

PENNY = Decimal("0.01")
SUB_PENNY = Decimal("0.0001")


def tick_size_for(price: Decimal) -> Decimal:
    return PENNY if price >= 1 else SUB_PENNY


def ceil_to_tick(price: Decimal) -> Decimal:
    return price.quantize(tick_size_for(price), rounding=ROUND_CEILING)


def floor_to_tick(price: Decimal) -> Decimal:
    return price.quantize(tick_size_for(price), rounding=ROUND_FLOOR)


def format_price(price: Decimal) -> str:
    """Wire format with the tick's decimal places."""
    return str(price.quantize(tick_size_for(price)))
