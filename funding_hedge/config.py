from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class RateLimitConfig:
    # REST weight budget per window (info requests weigh 20, exchange actions 1)
    rest_capacity: int = 1200
    rest_window_sec: float = 60.0
    # outbound websocket messages (subscriptions) per window
    ws_capacity: int = 1000
    ws_window_sec: float = 60.0

    retry_initial_delay_sec: float = 1.0
    retry_max_delay_sec: float = 30.0
    retry_max_attempts: int = 5
    request_timeout_sec: float = 10.0


@dataclass
class FundingHedgeConfig:
    symbols: List[str] = field(default_factory=list)
    min_order_usd: Dict[str, float] = field(default_factory=dict)
    default_min_order_usd: float = 12.0
    venue_min_order_usd: float = 10.0

    balance_utilization: float = 0.9
    max_position_usd: Optional[float] = None

    min_hold_hours: float = 24.0
    improvement_multiple: float = 2.0
    min_funding_annualized_pct: float = 5.0
    max_bid_ask_spread_pct: float = 0.2
    max_cross_spread_pct: float = 0.5
    min_volume_usd: float = 1_000_000
    funding_window_days: int = 7

    check_interval_minutes: float = 60.0
    status_interval_seconds: float = 60.0
    hedge_check_interval_minutes: float = 30.0

    size_mismatch_tolerance_pct: float = 5.0
    order_slippage_pct: float = 1.0
    book_stale_after_sec: float = 15.0

    state_path: str = "data/state.json"
    alert_webhook_url: Optional[str] = None
    testnet: bool = True

    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)

    def min_order_for(self, symbol: str) -> float:
        return self.min_order_usd.get(symbol, self.default_min_order_usd)

    def validate(self) -> None:
        if not self.symbols:
            raise ValueError("symbols must not be empty")
        if not 0 < self.balance_utilization <= 1:
            raise ValueError("balance_utilization must be in (0, 1]")
        if self.improvement_multiple < 1:
            raise ValueError("improvement_multiple must be >= 1")
        if self.min_hold_hours < 0:
            raise ValueError("min_hold_hours must be >= 0")
        if self.max_position_usd is not None and self.max_position_usd <= 0:
            raise ValueError("max_position_usd must be positive")
        if self.rate_limits.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be >= 1")
