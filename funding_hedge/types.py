from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

HOURS_PER_YEAR = 24 * 365
STATE_VERSION = 1


def annualize_hourly_pct(hourly_rate: float) -> float:
    """Hourly funding fraction -> annualized percent."""
    return hourly_rate * HOURS_PER_YEAR * 100


class HedgeKind(str, Enum):
    WEAK_HEDGE = "WeakHedge"
    UNHEDGED_SPOT = "UnhedgedSpot"
    UNHEDGED_DERIVATIVE = "UnhedgedDerivative"


class HedgeQuality(str, Enum):
    PERFECT = "PERFECT"
    GOOD = "GOOD"
    PARTIAL = "PARTIAL"
    WEAK = "WEAK"


class LifecycleAction(str, Enum):
    NOOP = "NOOP"
    OPEN = "OPEN"
    HOLD = "HOLD"
    CLOSE = "CLOSE"
    SWITCH = "SWITCH"


class CycleOutcome(str, Enum):
    OPENED = "OPENED"
    HELD = "HELD"
    CLOSED = "CLOSED"
    SWITCHED = "SWITCHED"
    NO_OPPORTUNITY = "NO_OPPORTUNITY"
    INSUFFICIENT_CAPITAL = "INSUFFICIENT_CAPITAL"
    EXECUTION_FAILED = "EXECUTION_FAILED"
    STATE_DESYNC = "STATE_DESYNC"
    CONNECTOR_ERROR = "CONNECTOR_ERROR"


class OrderStatusKind(str, Enum):
    FILLED = "filled"
    RESTING = "resting"
    ERROR = "error"


@dataclass(frozen=True)
class LegSpec:
    name: str
    sz_decimals: int
    is_spot: bool


@dataclass(frozen=True)
class PairSpec:
    symbol: str
    perp: LegSpec
    spot: LegSpec
    spot_token: str


@dataclass
class BookTop:
    bid: float
    ask: float
    updated_at: float  # time.monotonic() of the update

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2

    @property
    def spread_pct(self) -> float:
        mid = self.mid
        return (self.ask - self.bid) / mid * 100 if mid > 0 else float("inf")


@dataclass
class FundingStats:
    symbol: str
    current_hourly: float
    avg_hourly: float
    samples: int

    @property
    def current_annualized_pct(self) -> float:
        return annualize_hourly_pct(self.current_hourly)

    @property
    def avg_annualized_pct(self) -> float:
        return annualize_hourly_pct(self.avg_hourly)


@dataclass
class MarketSnapshot:
    symbol: str
    perp_book: Optional[BookTop]
    spot_book: Optional[BookTop]
    funding: Optional[FundingStats]
    day_base_volume: float
    mark_price: float


@dataclass
class Opportunity:
    symbol: str
    avg_funding_annualized_pct: float
    current_funding_pct: float
    volume_usd: float
    perp_spread_pct: float
    spot_spread_pct: float
    cross_spread_pct: float
    passes_filters: bool
    reject_reason: Optional[str] = None


@dataclass
class Balances:
    perp_usd: float
    spot_usd: float


@dataclass
class PerpPosition:
    coin: str
    size: float  # signed, negative = short
    entry_price: float


@dataclass
class SpotBalance:
    token: str
    total: float
    hold: float = 0.0
    entry_notional: float = 0.0


@dataclass
class AccountPositions:
    perps: Dict[str, PerpPosition] = field(default_factory=dict)
    spot: Dict[str, SpotBalance] = field(default_factory=dict)


@dataclass
class OrderStatus:
    kind: OrderStatusKind
    symbol: str
    is_buy: bool
    requested_size: float
    filled_size: float = 0.0
    avg_price: Optional[float] = None
    order_id: Optional[int] = None
    error: Optional[str] = None

    @property
    def filled(self) -> bool:
        return self.kind == OrderStatusKind.FILLED and self.filled_size > 0


@dataclass
class Position:
    symbol: str
    derivative_symbol: str
    spot_symbol: str
    derivative_size: float
    spot_size: float
    derivative_entry_price: float
    spot_entry_price: float
    position_value_usd: float
    funding_rate_hourly: float
    funding_rate_annualized: float
    opened_at: datetime
    last_checked_at: datetime

    def is_delta_neutral(self) -> bool:
        return self.derivative_size < 0 < self.spot_size

    def hedge_mismatch_pct(self) -> float:
        short = abs(self.derivative_size)
        larger = max(short, self.spot_size)
        if larger <= 0:
            return 0.0
        return abs(short - self.spot_size) / larger * 100

    def held_hours(self, now: datetime) -> float:
        return (now - self.opened_at).total_seconds() / 3600


@dataclass
class ClosedPosition:
    position: Position
    closed_at: datetime
    close_reason: str


@dataclass
class PersistedState:
    version: int = STATE_VERSION
    position: Optional[Position] = None
    last_checked_at: Optional[datetime] = None
    last_opportunity_check_at: Optional[datetime] = None
    history: List[ClosedPosition] = field(default_factory=list)

    @property
    def is_holding(self) -> bool:
        return self.position is not None

    def archive(self, reason: str, closed_at: datetime) -> Optional[ClosedPosition]:
        if self.position is None:
            return None
        closed = ClosedPosition(position=self.position, closed_at=closed_at, close_reason=reason)
        self.history.append(closed)
        self.position = None
        return closed


@dataclass
class HedgeNeed:
    symbol: str
    kind: HedgeKind
    mismatch_pct: float
    required_correction_size: float
    quality: HedgeQuality = HedgeQuality.WEAK
    derivative_size: float = 0.0
    spot_size: float = 0.0


@dataclass
class ExecutionResult:
    success: bool
    symbol: str
    leg_results: List[OrderStatus] = field(default_factory=list)
    position: Optional[Position] = None
    error: Optional[str] = None
    recovery_action: Optional[str] = None
    size_mismatch_pct: float = 0.0


@dataclass
class RepairResult:
    need: HedgeNeed
    success: bool
    action: str
    orders: List[OrderStatus] = field(default_factory=list)
    skipped_reason: Optional[str] = None


@dataclass
class Decision:
    action: LifecycleAction
    reason: str
    symbol: Optional[str] = None  # held symbol, if any
    target_symbol: Optional[str] = None  # symbol to open (OPEN / SWITCH)


@dataclass
class CycleResult:
    timestamp: datetime
    outcome: CycleOutcome
    decision: Optional[Decision] = None
    detail: str = ""
    reason_codes: List[str] = field(default_factory=list)
