# app/gateway/pricing.py
"""
Route pricing and fixed-point amount handling.

Prices are configured per route pattern as decimal NTMPI strings:

    GATEWAY_ROUTES="/api/v1/expensive/*=1.0,/api/v1/cheap/*=0.001"

Routes are tested in declaration order and the first match wins. A later,
more specific pattern never overrides an earlier one, so operators control
precedence purely by ordering.

All arithmetic is done on integer minor units (1 NTMPI = 1,000,000 uneutaro)
so repeated credits and debits never accumulate rounding error.
"""
import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Union

logger = logging.getLogger(__name__)

# Conversion constants
MICRO_PER_UNIT = 1_000_000  # 1 NTMPI = 10^6 uneutaro
AMOUNT_DECIMALS = 6

DEFAULT_ROUTE_PRICE = "0.1"


@dataclass(frozen=True)
class RoutePrice:
    """A route pattern (glob with `*` wildcard) and its price per request."""
    pattern: str
    amount: str


def parse_routes(raw: Optional[str]) -> List[RoutePrice]:
    """
    Parse a route pricing list.

    Args:
        raw: Comma-separated "pattern=price" pairs. An entry without a price
            gets DEFAULT_ROUTE_PRICE; entries with an empty pattern are dropped.

    Returns:
        RoutePrice entries in declaration order
    """
    if not raw or not raw.strip():
        return []

    routes = []
    for entry in raw.split(","):
        pattern, _, amount = entry.strip().partition("=")
        pattern = pattern.strip()
        if not pattern:
            continue
        routes.append(RoutePrice(pattern=pattern, amount=amount.strip() or DEFAULT_ROUTE_PRICE))

    return routes


def pattern_to_regex(pattern: str) -> "re.Pattern[str]":
    """Compile a glob pattern into a regex anchored at both ends of the path."""
    parts = [re.escape(part) for part in pattern.split("*")]
    return re.compile("^" + ".*".join(parts) + "$", re.DOTALL)


def match_route(path: str, routes: List[RoutePrice], default_price: str) -> str:
    """
    Return the price for a request path.

    Args:
        path: Request path (the full path must match, not a substring)
        routes: Route prices in declaration order
        default_price: Price used when no route matches

    Returns:
        The amount of the first matching route, or default_price
    """
    for route in routes:
        if pattern_to_regex(route.pattern).match(path):
            return route.amount
    return default_price


def to_micro(amount: Union[str, int, Decimal]) -> int:
    """
    Convert a decimal NTMPI amount into integer minor units.

    Raises:
        ValueError: If the amount is not a finite non-negative number or
            carries more than six decimal places.
    """
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {amount!r}")

    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    if value < 0:
        raise ValueError(f"Amount must not be negative: {amount!r}")

    micro = value * MICRO_PER_UNIT
    if micro != micro.to_integral_value():
        raise ValueError(f"Amount has more than {AMOUNT_DECIMALS} decimal places: {amount!r}")

    return int(micro)


def format_micro(micro: int) -> str:
    """Format integer minor units as a 6-decimal NTMPI string, e.g. "4.999000"."""
    sign = "-" if micro < 0 else ""
    whole, frac = divmod(abs(micro), MICRO_PER_UNIT)
    return f"{sign}{whole}.{frac:0{AMOUNT_DECIMALS}d}"
