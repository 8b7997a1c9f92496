from __future__ import annotations

import math
from dataclasses import dataclass

from .config import FundingHedgeConfig
from .types import Balances

INSUFFICIENT_CAPITAL = "INSUFFICIENT_CAPITAL"
NO_PRICE = "NO_PRICE"


@dataclass
class SizingResult:
    allowed: bool
    reason: str = ""
    available: float = 0.0
    required: float = 0.0
    base_size: float = 0.0


class RiskService:
    def __init__(self, config: FundingHedgeConfig):
        self.config = config

    def available_notional(self, balances: Balances) -> float:
        # each leg may use its whole side; balances are not halved
        available = min(balances.perp_usd, balances.spot_usd) * self.config.balance_utilization
        if self.config.max_position_usd is not None:
            available = min(available, self.config.max_position_usd)
        return max(0.0, available)

    def size_position(self, symbol: str, balances: Balances, mid_price: float) -> SizingResult:
        available = self.available_notional(balances)
        required = self.config.min_order_for(symbol)

        # available is floored to whole cents; exactly the minimum is allowed
        if math.floor(available * 100 + 1e-6) / 100 < required:
            return SizingResult(False, INSUFFICIENT_CAPITAL, available, required)
        if mid_price <= 0:
            return SizingResult(False, NO_PRICE, available, required)

        return SizingResult(True, "", available, required, base_size=available / mid_price)
