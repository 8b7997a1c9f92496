"""Delta-neutral funding harvest (short perp + long spot) on Hyperliquid."""

from .config import FundingHedgeConfig, RateLimitConfig
from .connector import ExchangeConnector
from .errors import (
    ConnectorError,
    ExchangeRequestError,
    OrderRejected,
    RateLimited,
    TransientNetworkError,
)
from .execution import ExecutionService
from .hedge_monitor import HedgeMonitor, classify_quality
from .lifecycle import decide
from .monitoring import AlertEvent, WebhookNotifier
from .orchestrator import FundingHedgeOrchestrator
from .ranking import RankingResult, rank_opportunities
from .rate_limiter import SlidingWindowRateLimiter
from .risk import RiskService, SizingResult
from .state import StateStore
from .types import (
    CycleOutcome,
    Decision,
    HedgeKind,
    HedgeNeed,
    HedgeQuality,
    LifecycleAction,
    Opportunity,
    PersistedState,
    Position,
)

__all__ = [
    "AlertEvent",
    "ConnectorError",
    "CycleOutcome",
    "Decision",
    "ExchangeConnector",
    "ExchangeRequestError",
    "ExecutionService",
    "FundingHedgeConfig",
    "FundingHedgeOrchestrator",
    "HedgeKind",
    "HedgeMonitor",
    "HedgeNeed",
    "HedgeQuality",
    "LifecycleAction",
    "Opportunity",
    "OrderRejected",
    "PersistedState",
    "Position",
    "RankingResult",
    "RateLimitConfig",
    "RateLimited",
    "RiskService",
    "SizingResult",
    "SlidingWindowRateLimiter",
    "StateStore",
    "TransientNetworkError",
    "WebhookNotifier",
    "classify_quality",
    "decide",
    "rank_opportunities",
]
