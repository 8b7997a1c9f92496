from __future__ import annotations

import logging
from typing import Dict, List, Optional, Set

from .config import FundingHedgeConfig
from .connector import ExchangeConnector
from .errors import ConnectorError
from .execution import ExecutionService, size_mismatch_pct
from .naming import match_spot_token
from .types import (
    AccountPositions,
    HedgeKind,
    HedgeNeed,
    HedgeQuality,
    OrderStatus,
    PairSpec,
    RepairResult,
)

logger = logging.getLogger(__name__)

GOOD_THRESHOLD_PCT = 5.0
PARTIAL_THRESHOLD_PCT = 15.0
WEAK_THRESHOLD_PCT = 30.0


def classify_quality(mismatch_pct: float) -> HedgeQuality:
    if mismatch_pct < GOOD_THRESHOLD_PCT:
        return HedgeQuality.PERFECT
    if mismatch_pct < PARTIAL_THRESHOLD_PCT:
        return HedgeQuality.GOOD
    if mismatch_pct <= WEAK_THRESHOLD_PCT:
        return HedgeQuality.PARTIAL
    return HedgeQuality.WEAK


class HedgeMonitor:
    def __init__(
        self,
        connector: ExchangeConnector,
        execution: ExecutionService,
        config: FundingHedgeConfig,
    ):
        self.connector = connector
        self.execution = execution
        self.config = config

    def candidate_symbols(self, positions: AccountPositions) -> Set[str]:
        symbols: Set[str] = set()
        for coin, perp in positions.perps.items():
            if perp.size > 0:
                logger.warning("long perp %s (%s) is outside the strategy, ignored", coin, perp.size)
                continue
            symbols.add(coin)
        perp_names = self.connector.perp_names()
        for token in positions.spot:
            symbol = match_spot_token(token, perp_names)
            if symbol is not None:
                symbols.add(symbol)
        return symbols

    def detect(self, positions: AccountPositions, mids: Dict[str, float]) -> List[HedgeNeed]:
        needs: List[HedgeNeed] = []
        min_usd = self.config.venue_min_order_usd

        for symbol in sorted(self.candidate_symbols(positions)):
            pair = self.connector.pair_for(symbol)
            if pair is None:
                logger.warning("%s has no spot pair, cannot classify", symbol)
                continue
            mid = mids.get(symbol)
            if not mid:
                logger.warning("no price for %s, hedge check skipped", symbol)
                continue

            perp = positions.perps.get(symbol)
            short = abs(perp.size) if perp is not None and perp.size < 0 else 0.0
            bal = positions.spot.get(pair.spot_token)
            spot = bal.total if bal is not None else 0.0
            if spot * mid < min_usd:
                spot = 0.0

            if short == 0 and spot == 0:
                continue
            if spot == 0:
                kind, correction = HedgeKind.UNHEDGED_DERIVATIVE, short
            elif short == 0:
                kind, correction = HedgeKind.UNHEDGED_SPOT, spot
            else:
                mismatch = size_mismatch_pct(short, spot)
                quality = classify_quality(mismatch)
                if quality != HedgeQuality.WEAK:
                    logger.debug("%s hedge %s (%.2f%%)", symbol, quality.value, mismatch)
                    continue
                kind, correction = HedgeKind.WEAK_HEDGE, abs(spot - short)

            if correction * mid < min_usd:
                logger.info("%s %s correction $%.2f below venue minimum, skipped", symbol, kind.value, correction * mid)
                continue

            mismatch = size_mismatch_pct(short, spot)
            needs.append(
                HedgeNeed(
                    symbol=symbol,
                    kind=kind,
                    mismatch_pct=mismatch,
                    required_correction_size=correction,
                    quality=classify_quality(mismatch),
                    derivative_size=-short,
                    spot_size=spot,
                )
            )
        return needs

    async def audit(self) -> List[HedgeNeed]:
        positions = await self.connector.get_positions()
        mids: Dict[str, float] = {}
        for symbol in self.candidate_symbols(positions):
            pair = self.connector.pair_for(symbol)
            if pair is None:
                continue
            mid = await self.connector.get_mid(pair.perp.name)
            if mid:
                mids[symbol] = mid
        needs = self.detect(positions, mids)
        for need in needs:
            logger.warning(
                "hedge need %s %s: perp=%s spot=%s mismatch=%.1f%% correction=%s",
                need.symbol,
                need.kind.value,
                need.derivative_size,
                need.spot_size,
                need.mismatch_pct,
                need.required_correction_size,
            )
        return needs

    async def _open_short(self, pair: PairSpec, size: float) -> OrderStatus:
        try:
            await self.connector.set_leverage(pair.perp.name, 1, "isolated")
        except ConnectorError as exc:
            logger.error("leverage update failed for %s: %s", pair.symbol, exc)
        return await self.execution.place_leg(pair.perp, False, size)

    async def repair_one(self, need: HedgeNeed) -> RepairResult:
        pair = self.connector.pair_for(need.symbol)
        if pair is None:
            return RepairResult(need, False, "SKIPPED", skipped_reason="NO_PAIR")

        mid = await self.connector.get_mid(pair.perp.name)
        size = need.required_correction_size
        if not mid or size * mid < self.config.venue_min_order_usd:
            return RepairResult(need, False, "SKIPPED", skipped_reason="BELOW_VENUE_MINIMUM")

        orders: List[OrderStatus] = []
        if need.kind == HedgeKind.WEAK_HEDGE:
            short_is_small = abs(need.derivative_size) < need.spot_size
            if short_is_small:
                first = await self._open_short(pair, size)
                primary, fallback_action = "STRENGTHENED_PERP", "TRIMMED_SPOT"
            else:
                first = await self.execution.place_leg(pair.spot, True, size)
                primary, fallback_action = "STRENGTHENED_SPOT", "TRIMMED_PERP"
            orders.append(first)
            if first.filled:
                return RepairResult(need, True, primary, orders)
            if short_is_small:
                fallback = await self.execution.flatten_leg(pair.spot, False, size)
            else:
                fallback = await self.execution.flatten_leg(pair.perp, True, size)

        elif need.kind == HedgeKind.UNHEDGED_SPOT:
            first = await self._open_short(pair, size)
            orders.append(first)
            if first.filled:
                return RepairResult(need, True, "OPENED_PERP_HEDGE", orders)
            fallback_action = "CLOSED_SPOT"
            fallback = await self.execution.flatten_leg(pair.spot, False, size)

        else:
            first = await self.execution.place_leg(pair.spot, True, size)
            orders.append(first)
            if first.filled:
                return RepairResult(need, True, "OPENED_SPOT_HEDGE", orders)
            fallback_action = "CLOSED_PERP"
            fallback = await self.execution.flatten_leg(pair.perp, True, size)

        orders.append(fallback)
        if fallback.filled:
            logger.warning("%s repair failed, fell back to %s", need.symbol, fallback_action)
            return RepairResult(need, True, fallback_action, orders)
        logger.error("%s repair and fallback both failed, exposure remains", need.symbol)
        return RepairResult(need, False, "FAILED", orders)

    async def repair(self, needs: List[HedgeNeed]) -> List[RepairResult]:
        results: List[RepairResult] = []
        for need in needs:
            results.append(await self.repair_one(need))
        return results

    async def run(self) -> List[RepairResult]:
        return await self.repair(await self.audit())

    @staticmethod
    def quality_of(short: float, spot: float) -> Optional[HedgeQuality]:
        if short == 0 and spot == 0:
            return None
        return classify_quality(size_mismatch_pct(short, spot))
