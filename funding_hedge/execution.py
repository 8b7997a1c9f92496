from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from .config import FundingHedgeConfig
from .connector import ExchangeConnector
from .errors import ConnectorError
from .precision import round_size
from .types import (
    ExecutionResult,
    FundingStats,
    LegSpec,
    OrderStatus,
    OrderStatusKind,
    PairSpec,
    Position,
)

logger = logging.getLogger(__name__)

PERP_ROLLED_BACK = "PERP_ROLLED_BACK"
SPOT_ROLLED_BACK = "SPOT_ROLLED_BACK"
ROLLBACK_FAILED = "ROLLBACK_FAILED"
PARTIAL_FILL_MISMATCH = "PARTIAL_FILL_MISMATCH"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def size_mismatch_pct(a: float, b: float) -> float:
    larger = max(abs(a), abs(b))
    if larger <= 0:
        return 0.0
    return abs(abs(a) - abs(b)) / larger * 100


class ExecutionService:
    """Two-leg open/close with rollback of a lone filled leg."""

    def __init__(
        self,
        connector: ExchangeConnector,
        config: FundingHedgeConfig,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.connector = connector
        self.config = config
        self.clock = clock

    async def place_leg(
        self,
        leg: LegSpec,
        is_buy: bool,
        size: float,
        reduce_only: bool = False,
    ) -> OrderStatus:
        """Submit one IOC order; connector failures become an error status."""
        try:
            status = await self.connector.place_order(leg, is_buy, size, reduce_only=reduce_only)
        except ConnectorError as exc:
            status = OrderStatus(
                OrderStatusKind.ERROR,
                leg.name,
                is_buy,
                size,
                error=f"{type(exc).__name__}: {exc}",
            )

        if status.kind == OrderStatusKind.RESTING and status.order_id is not None:
            await self._cancel_remainder(leg, status)

        log = logger.info if status.filled else logger.error
        log(
            "leg %s %s requested=%s filled=%s avg=%s status=%s %s",
            leg.name,
            "BUY" if is_buy else "SELL",
            size,
            status.filled_size,
            status.avg_price,
            status.kind.value,
            status.error or "",
        )
        return status

    async def _cancel_remainder(self, leg: LegSpec, status: OrderStatus) -> None:
        try:
            cancelled = await self.connector.cancel_order(leg, status.order_id)
        except ConnectorError as exc:
            logger.error("cancel of resting %s oid=%s failed: %s", leg.name, status.order_id, exc)
            return
        if cancelled:
            logger.warning("cancelled resting remainder %s oid=%s", leg.name, status.order_id)

    async def flatten_leg(self, leg: LegSpec, is_buy: bool, size: float) -> OrderStatus:
        """Close exposure on one leg. Reduce-only is set on the perp leg only."""
        return await self.place_leg(leg, is_buy, size, reduce_only=not leg.is_spot)

    async def _dispatch(self, *orders: Tuple[LegSpec, bool, float, bool]) -> List[OrderStatus]:
        results = await asyncio.gather(
            *(self.place_leg(leg, is_buy, size, reduce_only) for leg, is_buy, size, reduce_only in orders),
            return_exceptions=True,
        )
        statuses: List[OrderStatus] = []
        for (leg, is_buy, size, _), res in zip(orders, results):
            if isinstance(res, BaseException):
                logger.error("leg %s raised %r", leg.name, res)
                res = OrderStatus(OrderStatusKind.ERROR, leg.name, is_buy, size, error=repr(res))
            statuses.append(res)
        return statuses

    async def open_pair(
        self,
        pair: PairSpec,
        size: float,
        funding: Optional[FundingStats] = None,
    ) -> ExecutionResult:
        perp_size = round_size(size, pair.perp)
        spot_size = round_size(size, pair.spot)
        if perp_size <= 0 or spot_size <= 0:
            return ExecutionResult(False, pair.symbol, error="SIZE_TOO_SMALL")

        try:
            await self.connector.set_leverage(pair.perp.name, 1, "isolated")
        except ConnectorError as exc:
            logger.error("leverage update failed for %s, not opening: %s", pair.symbol, exc)
            return ExecutionResult(False, pair.symbol, error="LEVERAGE_FAILED")

        logger.info("opening %s: short perp %s / long spot %s (%s)", pair.symbol, perp_size, spot_size, pair.spot.name)
        perp, spot = await self._dispatch(
            (pair.perp, False, perp_size, False),
            (pair.spot, True, spot_size, False),
        )

        if perp.filled and spot.filled:
            mismatch = size_mismatch_pct(perp.filled_size, spot.filled_size)
            if mismatch > self.config.size_mismatch_tolerance_pct:
                logger.warning(
                    "%s %s: perp=%s spot=%s (%.2f%%), left to hedge repair",
                    PARTIAL_FILL_MISMATCH,
                    pair.symbol,
                    perp.filled_size,
                    spot.filled_size,
                    mismatch,
                )
            now = self.clock()
            hourly = funding.current_hourly if funding else 0.0
            position = Position(
                symbol=pair.symbol,
                derivative_symbol=pair.perp.name,
                spot_symbol=pair.spot.name,
                derivative_size=-perp.filled_size,
                spot_size=spot.filled_size,
                derivative_entry_price=perp.avg_price or 0.0,
                spot_entry_price=spot.avg_price or 0.0,
                position_value_usd=spot.filled_size * (spot.avg_price or 0.0),
                funding_rate_hourly=hourly,
                funding_rate_annualized=funding.current_annualized_pct if funding else 0.0,
                opened_at=now,
                last_checked_at=now,
            )
            logger.info("opened %s value=$%.2f", pair.symbol, position.position_value_usd)
            return ExecutionResult(True, pair.symbol, [perp, spot], position=position, size_mismatch_pct=mismatch)

        if perp.filled:
            rollback = await self.flatten_leg(pair.perp, True, perp.filled_size)
            recovery = PERP_ROLLED_BACK if rollback.filled else ROLLBACK_FAILED
            logger.warning("%s: spot leg failed, perp rollback -> %s", pair.symbol, recovery)
            return ExecutionResult(False, pair.symbol, [perp, spot, rollback], error="SPOT_LEG_FAILED", recovery_action=recovery)

        if spot.filled:
            rollback = await self.flatten_leg(pair.spot, False, spot.filled_size)
            recovery = SPOT_ROLLED_BACK if rollback.filled else ROLLBACK_FAILED
            logger.warning("%s: perp leg failed, spot rollback -> %s", pair.symbol, recovery)
            return ExecutionResult(False, pair.symbol, [perp, spot, rollback], error="PERP_LEG_FAILED", recovery_action=recovery)

        return ExecutionResult(False, pair.symbol, [perp, spot], error="BOTH_LEGS_FAILED")

    async def close_pair(self, pair: PairSpec, position: Position) -> ExecutionResult:
        logger.info(
            "closing %s: buy perp %s / sell spot %s",
            pair.symbol,
            abs(position.derivative_size),
            position.spot_size,
        )
        orders = [
            (pair.perp, True, abs(position.derivative_size), True),
            (pair.spot, False, position.spot_size, False),
        ]
        statuses = await self._dispatch(*orders)
        all_results = list(statuses)

        for i, (leg, is_buy, size, reduce_only) in enumerate(orders):
            if statuses[i].filled or size <= 0:
                continue
            logger.warning("close leg %s failed, retrying once", leg.name)
            retry = await self.place_leg(leg, is_buy, size, reduce_only)
            all_results.append(retry)
            statuses[i] = retry

        perp, spot = statuses
        closed_perp = perp.filled or position.derivative_size == 0
        closed_spot = spot.filled or position.spot_size <= 0
        if closed_perp and closed_spot:
            logger.info("closed %s", pair.symbol)
            return ExecutionResult(
                True,
                pair.symbol,
                all_results,
                size_mismatch_pct=size_mismatch_pct(perp.filled_size, spot.filled_size),
            )

        failed = "PERP_LEG_FAILED" if not closed_perp else "SPOT_LEG_FAILED"
        if not closed_perp and not closed_spot:
            failed = "BOTH_LEGS_FAILED"
        logger.error("close of %s incomplete (%s), imbalance left to hedge repair", pair.symbol, failed)
        return ExecutionResult(False, pair.symbol, all_results, error=failed)
