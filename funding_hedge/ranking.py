from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from .config import FundingHedgeConfig
from .types import MarketSnapshot, Opportunity

logger = logging.getLogger(__name__)

MISSING_DATA = "MISSING_DATA"
BID_ASK_SPREAD = "BID_ASK_SPREAD"
CROSS_SPREAD = "CROSS_SPREAD"
LOW_VOLUME = "LOW_VOLUME"
LOW_FUNDING = "LOW_FUNDING"


@dataclass
class RankingResult:
    opportunities: List[Opportunity] = field(default_factory=list)
    evaluated: List[Opportunity] = field(default_factory=list)
    rejected: Dict[str, str] = field(default_factory=dict)
    has_data: bool = False

    @property
    def top(self) -> Optional[Opportunity]:
        return self.opportunities[0] if self.opportunities else None

    @property
    def symbols(self) -> List[str]:
        return [o.symbol for o in self.opportunities]

    def get(self, symbol: str) -> Optional[Opportunity]:
        for opp in self.evaluated:
            if opp.symbol == symbol:
                return opp
        return None

    def is_ranked(self, symbol: str) -> bool:
        return any(o.symbol == symbol for o in self.opportunities)

    def best_alternative(self, exclude: str) -> Optional[Opportunity]:
        for opp in self.opportunities:
            if opp.symbol != exclude:
                return opp
        return None


def cross_spread_pct(perp_mid: float, spot_mid: float) -> float:
    if spot_mid <= 0:
        return float("inf")
    return abs(perp_mid - spot_mid) / spot_mid * 100


def evaluate_snapshot(snapshot: MarketSnapshot, config: FundingHedgeConfig) -> Opportunity:
    """Score one symbol; filters run in a fixed order and the first failure wins."""
    funding = snapshot.funding
    avg_pct = funding.avg_annualized_pct if funding else 0.0
    cur_pct = funding.current_annualized_pct if funding else 0.0
    volume_usd = snapshot.day_base_volume * snapshot.mark_price

    if snapshot.perp_book is None or snapshot.spot_book is None or funding is None:
        return Opportunity(
            symbol=snapshot.symbol,
            avg_funding_annualized_pct=avg_pct,
            current_funding_pct=cur_pct,
            volume_usd=volume_usd,
            perp_spread_pct=float("inf"),
            spot_spread_pct=float("inf"),
            cross_spread_pct=float("inf"),
            passes_filters=False,
            reject_reason=MISSING_DATA,
        )

    perp_spread = snapshot.perp_book.spread_pct
    spot_spread = snapshot.spot_book.spread_pct
    cross = cross_spread_pct(snapshot.perp_book.mid, snapshot.spot_book.mid)

    reason = None
    if max(perp_spread, spot_spread) > config.max_bid_ask_spread_pct:
        reason = BID_ASK_SPREAD
    elif cross > config.max_cross_spread_pct:
        reason = CROSS_SPREAD
    elif volume_usd < config.min_volume_usd:
        reason = LOW_VOLUME
    elif avg_pct < config.min_funding_annualized_pct:
        reason = LOW_FUNDING

    return Opportunity(
        symbol=snapshot.symbol,
        avg_funding_annualized_pct=avg_pct,
        current_funding_pct=cur_pct,
        volume_usd=volume_usd,
        perp_spread_pct=perp_spread,
        spot_spread_pct=spot_spread,
        cross_spread_pct=cross,
        passes_filters=reason is None,
        reject_reason=reason,
    )


def rank_opportunities(
    snapshots: Mapping[str, MarketSnapshot],
    config: FundingHedgeConfig,
) -> RankingResult:
    result = RankingResult(has_data=bool(snapshots))
    for symbol in sorted(snapshots):
        opp = evaluate_snapshot(snapshots[symbol], config)
        result.evaluated.append(opp)
        if opp.passes_filters:
            result.opportunities.append(opp)
        else:
            result.rejected[symbol] = opp.reject_reason or ""
            logger.debug(
                "rejected %s: %s (funding=%.2f%% volume=$%.0f cross=%.3f%%)",
                symbol,
                opp.reject_reason,
                opp.avg_funding_annualized_pct,
                opp.volume_usd,
                opp.cross_spread_pct,
            )

    result.opportunities.sort(key=lambda o: (-o.avg_funding_annualized_pct, o.symbol))
    logger.info(
        "ranking: evaluated=%d passed=%d top=%s",
        len(result.evaluated),
        len(result.opportunities),
        result.top.symbol if result.top else None,
    )
    return result
