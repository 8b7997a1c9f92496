"""Position lifecycle decision.

``decide`` maps (held position, ranking, raw market data, config, now) to one
action. It performs no I/O; the orchestrator executes whatever it returns.

Negative funding is caught at four points: the ranking filter never offers a
negative symbol, a ranked holding whose current funding flips negative is
exited, a filtered-out holding is checked against its raw funding, and an
idle engine with nothing ranked opens nothing.
"""

from __future__ import annotations

from datetime import datetime
from typing import Mapping, Optional

from .config import FundingHedgeConfig
from .ranking import RankingResult
from .types import Decision, FundingStats, LifecycleAction, MarketSnapshot, Position

NO_DATA = "NO_DATA"
NO_OPPORTUNITY = "NO_OPPORTUNITY"
TOP_RANKED = "TOP_RANKED"
MIN_HOLD = "MIN_HOLD"
NO_FUNDING_DATA = "NO_FUNDING_DATA"
NEGATIVE_FUNDING_SWITCH = "NEGATIVE_FUNDING_SWITCH"
NEGATIVE_FUNDING_CLOSE = "NEGATIVE_FUNDING_CLOSE"
BELOW_THRESHOLD_SWITCH = "BELOW_THRESHOLD_SWITCH"
BELOW_THRESHOLD_HOLD = "BELOW_THRESHOLD_HOLD"
FILTERED_FUNDING_OK = "FILTERED_FUNDING_OK"
FUNDING_REVERSED_SWITCH = "FUNDING_REVERSED_SWITCH"
FUNDING_REVERSED_CLOSE = "FUNDING_REVERSED_CLOSE"
BEST_IS_HELD = "BEST_IS_HELD"
IMPROVEMENT_SWITCH = "IMPROVEMENT_SWITCH"
INSUFFICIENT_IMPROVEMENT = "INSUFFICIENT_IMPROVEMENT"


def _raw_funding(symbol: str, snapshots: Mapping[str, MarketSnapshot]) -> Optional[FundingStats]:
    snap = snapshots.get(symbol)
    return snap.funding if snap is not None else None


def _positive_alternative(ranking: RankingResult, held: str):
    alt = ranking.best_alternative(exclude=held)
    if alt is not None and alt.avg_funding_annualized_pct > 0:
        return alt
    return None


def decide(
    position: Optional[Position],
    ranking: RankingResult,
    snapshots: Mapping[str, MarketSnapshot],
    config: FundingHedgeConfig,
    now: datetime,
) -> Decision:
    if position is None:
        top = ranking.top
        if top is None:
            return Decision(LifecycleAction.NOOP, NO_OPPORTUNITY if ranking.has_data else NO_DATA)
        return Decision(LifecycleAction.OPEN, TOP_RANKED, target_symbol=top.symbol)

    held = position.symbol
    if position.held_hours(now) < config.min_hold_hours:
        return Decision(LifecycleAction.HOLD, MIN_HOLD, symbol=held)

    alt = _positive_alternative(ranking, held)

    if not ranking.is_ranked(held):
        funding = _raw_funding(held, snapshots)
        if funding is None:
            return Decision(LifecycleAction.HOLD, NO_FUNDING_DATA, symbol=held)

        if funding.avg_annualized_pct < 0 or funding.current_annualized_pct < 0:
            if alt is not None:
                return Decision(LifecycleAction.SWITCH, NEGATIVE_FUNDING_SWITCH, held, alt.symbol)
            return Decision(LifecycleAction.CLOSE, NEGATIVE_FUNDING_CLOSE, symbol=held)

        if funding.avg_annualized_pct < config.min_funding_annualized_pct:
            if alt is not None:
                return Decision(LifecycleAction.SWITCH, BELOW_THRESHOLD_SWITCH, held, alt.symbol)
            return Decision(LifecycleAction.HOLD, BELOW_THRESHOLD_HOLD, symbol=held)

        # filtered on spread or volume only
        return Decision(LifecycleAction.HOLD, FILTERED_FUNDING_OK, symbol=held)

    held_opp = ranking.get(held)
    if held_opp.current_funding_pct < 0:
        if alt is not None:
            return Decision(LifecycleAction.SWITCH, FUNDING_REVERSED_SWITCH, held, alt.symbol)
        return Decision(LifecycleAction.CLOSE, FUNDING_REVERSED_CLOSE, symbol=held)

    best = ranking.top
    if best.symbol == held:
        return Decision(LifecycleAction.HOLD, BEST_IS_HELD, symbol=held)

    if best.avg_funding_annualized_pct >= held_opp.avg_funding_annualized_pct * config.improvement_multiple:
        return Decision(LifecycleAction.SWITCH, IMPROVEMENT_SWITCH, held, best.symbol)
    return Decision(LifecycleAction.HOLD, INSUFFICIENT_IMPROVEMENT, symbol=held)
