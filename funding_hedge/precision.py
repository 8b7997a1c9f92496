"""Venue precision rules.

Prices: at most 5 significant figures and at most ``6 - szDecimals``
(perp) / ``8 - szDecimals`` (spot) decimals; integer prices are always valid.
Sizes: at most ``szDecimals`` decimals, always rounded toward zero so a leg
never exceeds the balance it was sized from.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal

from .types import LegSpec

MAX_SIGNIFICANT_FIGURES = 5
PERP_MAX_DECIMALS = 6
SPOT_MAX_DECIMALS = 8


def max_price_decimals(leg: LegSpec) -> int:
    base = SPOT_MAX_DECIMALS if leg.is_spot else PERP_MAX_DECIMALS
    return max(0, base - leg.sz_decimals)


def round_price(price: float, leg: LegSpec) -> float:
    if price <= 0:
        raise ValueError(f"price must be positive: {price}")
    if price >= 10 ** MAX_SIGNIFICANT_FIGURES:
        return float(round(price))
    sig = float(f"{price:.{MAX_SIGNIFICANT_FIGURES}g}")
    return round(sig, max_price_decimals(leg))


def round_size(size: float, leg: LegSpec) -> float:
    if size <= 0:
        return 0.0
    quantum = Decimal(1).scaleb(-leg.sz_decimals)
    return float(Decimal(str(size)).quantize(quantum, rounding=ROUND_DOWN))


def slippage_price(mid: float, is_buy: bool, slippage_pct: float, leg: LegSpec) -> float:
    factor = 1 + slippage_pct / 100 if is_buy else 1 - slippage_pct / 100
    return round_price(mid * factor, leg)
