from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from .config import FundingHedgeConfig
from .connector import ExchangeConnector
from .errors import ConnectorError
from .execution import ROLLBACK_FAILED, ExecutionService
from .hedge_monitor import HedgeMonitor
from .lifecycle import decide
from .monitoring import CRITICAL, WARNING, AlertEvent, WebhookNotifier
from .ranking import RankingResult, rank_opportunities
from .risk import INSUFFICIENT_CAPITAL, RiskService
from .state import StateStore
from .types import (
    AccountPositions,
    CycleOutcome,
    CycleResult,
    Decision,
    LifecycleAction,
    MarketSnapshot,
    PersistedState,
    Position,
    RepairResult,
)

logger = logging.getLogger(__name__)

STATE_DESYNC = "STATE_DESYNC"
ADOPTED_ON_STARTUP = "ADOPTED_ON_STARTUP"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FundingHedgeOrchestrator:
    def __init__(
        self,
        config: FundingHedgeConfig,
        connector: ExchangeConnector,
        execution: ExecutionService,
        hedge_monitor: HedgeMonitor,
        store: StateStore,
        risk: RiskService,
        notifier: Optional[WebhookNotifier] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config
        self.connector = connector
        self.execution = execution
        self.hedge_monitor = hedge_monitor
        self.store = store
        self.risk = risk
        self.notifier = notifier
        self.clock = clock

        self.state = PersistedState()
        self.last_result: Optional[CycleResult] = None
        self.last_ranking: Optional[RankingResult] = None
        self._cycle_lock = asyncio.Lock()
        self._last_hedge_check: Optional[datetime] = None
        self._ready = False

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _save(self) -> None:
        self.store.save(self.state)

    async def _alert(self, level: str, title: str, message: str, **context: str) -> None:
        if self.notifier is None:
            logger.warning("[alert] %s: %s %s", title, message, context)
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.notifier.send, AlertEvent(level, title, message, context))

    def _tracked_symbols(self) -> List[str]:
        symbols = list(self.config.symbols)
        if self.state.position is not None and self.state.position.symbol not in symbols:
            symbols.append(self.state.position.symbol)
        return symbols

    def _sync_sizes(self, position: Position, venue: AccountPositions) -> None:
        perp = venue.perps.get(position.derivative_symbol)
        if perp is not None:
            position.derivative_size = perp.size
        pair = self.connector.pair_for(position.symbol)
        if pair is not None and pair.spot_token in venue.spot:
            position.spot_size = venue.spot[pair.spot_token].total

    # ------------------------------------------------------------------
    # startup
    # ------------------------------------------------------------------

    async def startup(self) -> CycleResult:
        self.state = self.store.load()
        return await self.run_cycle()

    async def _bootstrap(self) -> None:
        """Venue metadata, stream, hedge repair and position recovery.

        Runs inside the first cycle and again on every cycle until metadata
        has loaded. Caller holds the cycle lock.
        """
        await self.connector.load_metadata()
        await self.connector.start_stream()
        self._ready = True
        await self._run_hedge_check()
        try:
            await self._adopt_orphan()
        except ConnectorError as exc:
            logger.error("startup position recovery failed: %s", exc)

    async def _reconcile(self) -> None:
        """Repair whatever a failed or ambiguous leg left on the venue and
        track a pair the repair completed. Caller holds the cycle lock."""
        logger.warning("reconciling venue positions after a failed order")
        await self._run_hedge_check()
        try:
            await self._adopt_orphan()
        except ConnectorError as exc:
            logger.error("position recovery after failed order failed: %s", exc)

    async def _adopt_orphan(self) -> None:
        """A hedged pair on the venue with no position in the state file is
        taken over instead of being left untracked."""
        if self.state.position is not None:
            return
        venue = await self.connector.get_positions()
        now = self.clock()
        for symbol in self.config.symbols:
            pair = self.connector.pair_for(symbol)
            perp = venue.perps.get(symbol)
            if pair is None or perp is None or perp.size >= 0:
                continue
            spot = venue.spot.get(pair.spot_token)
            if spot is None or spot.total <= 0:
                continue
            spot_entry = spot.entry_notional / spot.total if spot.entry_notional > 0 else perp.entry_price
            self.state.position = Position(
                symbol=symbol,
                derivative_symbol=pair.perp.name,
                spot_symbol=pair.spot.name,
                derivative_size=perp.size,
                spot_size=spot.total,
                derivative_entry_price=perp.entry_price,
                spot_entry_price=spot_entry,
                position_value_usd=spot.total * spot_entry,
                funding_rate_hourly=0.0,
                funding_rate_annualized=0.0,
                opened_at=now,
                last_checked_at=now,
            )
            logger.warning("%s: adopted on-venue pair %s perp=%s spot=%s", ADOPTED_ON_STARTUP, symbol, perp.size, spot.total)
            self._save()
            return

    # ------------------------------------------------------------------
    # decision cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleResult:
        async with self._cycle_lock:
            try:
                result = await self._cycle()
            except ConnectorError as exc:
                logger.error("cycle aborted: %s (%s)", exc, type(exc).__name__)
                result = CycleResult(
                    timestamp=self.clock(),
                    outcome=CycleOutcome.CONNECTOR_ERROR,
                    detail=str(exc),
                    reason_codes=[type(exc).__name__],
                )
        self.last_result = result
        logger.info(
            "cycle result: %s %s %s",
            result.outcome.value,
            result.decision.reason if result.decision else "",
            result.detail,
        )
        return result

    async def _cycle(self) -> CycleResult:
        now = self.clock()
        if not self._ready:
            await self._bootstrap()
        snapshots = await self.connector.collect_market_snapshots(self._tracked_symbols())
        ranking = rank_opportunities(snapshots, self.config)
        self.last_ranking = ranking
        self.state.last_opportunity_check_at = now

        position = self.state.position
        if position is not None:
            venue = await self.connector.get_positions()
            perp = venue.perps.get(position.derivative_symbol)
            if perp is None or perp.size >= 0:
                logger.warning("%s: %s short perp not found on venue, reverting to idle", STATE_DESYNC, position.symbol)
                self.state.position = None
                self.state.last_checked_at = now
                self._save()
                await self._alert(WARNING, "state desync", f"{position.symbol} position missing on venue")
                return CycleResult(now, CycleOutcome.STATE_DESYNC, detail=position.symbol, reason_codes=[STATE_DESYNC])

            self._sync_sizes(position, venue)
            snap = snapshots.get(position.symbol)
            if snap is not None and snap.funding is not None:
                position.funding_rate_hourly = snap.funding.current_hourly
                position.funding_rate_annualized = snap.funding.current_annualized_pct
            position.last_checked_at = now
            self.state.last_checked_at = now

        decision = decide(position, ranking, snapshots, self.config, now)
        logger.info(
            "decision: %s reason=%s held=%s target=%s",
            decision.action.value,
            decision.reason,
            decision.symbol,
            decision.target_symbol,
        )

        if decision.action == LifecycleAction.NOOP:
            self._save()
            return CycleResult(now, CycleOutcome.NO_OPPORTUNITY, decision, reason_codes=[decision.reason])

        if decision.action == LifecycleAction.HOLD:
            self._save()
            return CycleResult(now, CycleOutcome.HELD, decision, reason_codes=[decision.reason])

        if decision.action == LifecycleAction.OPEN:
            return await self._open(decision, snapshots, now)

        closed = await self._close(decision.reason)
        if not closed:
            return CycleResult(now, CycleOutcome.EXECUTION_FAILED, decision, "close failed", [decision.reason])
        if decision.action == LifecycleAction.CLOSE:
            return CycleResult(now, CycleOutcome.CLOSED, decision, reason_codes=[decision.reason])

        opened = await self._open(decision, snapshots, now)
        if opened.outcome == CycleOutcome.OPENED:
            return CycleResult(now, CycleOutcome.SWITCHED, decision, opened.detail, [decision.reason])
        # closed but the new leg pair did not open; stays idle until next cycle
        return CycleResult(
            now,
            CycleOutcome.CLOSED,
            decision,
            f"switch target not opened: {opened.detail}",
            [decision.reason] + opened.reason_codes,
        )

    async def _open(self, decision: Decision, snapshots: Dict[str, MarketSnapshot], now: datetime) -> CycleResult:
        symbol = decision.target_symbol
        pair = self.connector.pair_for(symbol)
        if pair is None:
            return CycleResult(now, CycleOutcome.EXECUTION_FAILED, decision, f"no pair for {symbol}", ["NO_PAIR"])

        # balances are read after any close so freed funds size the new open
        balances = await self.connector.get_balances()
        mid = await self.connector.get_mid(pair.spot.name)
        sizing = self.risk.size_position(symbol, balances, mid or 0.0)
        if not sizing.allowed:
            logger.warning(
                "%s: %s available=$%.2f required=$%.2f (perp=$%.2f spot=$%.2f)",
                symbol,
                sizing.reason,
                sizing.available,
                sizing.required,
                balances.perp_usd,
                balances.spot_usd,
            )
            self._save()
            outcome = (
                CycleOutcome.INSUFFICIENT_CAPITAL
                if sizing.reason == INSUFFICIENT_CAPITAL
                else CycleOutcome.EXECUTION_FAILED
            )
            return CycleResult(
                now,
                outcome,
                decision,
                f"available={sizing.available:.2f} required={sizing.required:.2f}",
                [sizing.reason],
            )

        snap = snapshots.get(symbol)
        result = await self.execution.open_pair(pair, sizing.base_size, snap.funding if snap else None)
        if result.success:
            self.state.position = result.position
            self._save()
            return CycleResult(now, CycleOutcome.OPENED, decision, f"{symbol} ${result.position.position_value_usd:.2f}")

        self._save()
        if result.leg_results:
            await self._reconcile()
        level = CRITICAL if result.recovery_action == ROLLBACK_FAILED else WARNING
        if result.recovery_action is not None:
            await self._alert(
                level,
                "open failed",
                f"{symbol}: {result.error}",
                recovery=result.recovery_action,
            )
        return CycleResult(
            now,
            CycleOutcome.EXECUTION_FAILED,
            decision,
            result.error or "",
            [code for code in (result.error, result.recovery_action) if code],
        )

    async def _close(self, reason: str) -> bool:
        position = self.state.position
        pair = self.connector.pair_for(position.symbol)
        if pair is None:
            logger.error("cannot close %s: pair metadata missing", position.symbol)
            return False
        result = await self.execution.close_pair(pair, position)
        if result.success:
            self.state.archive(reason, self.clock())
            self._save()
            return True
        self._save()
        await self._alert(CRITICAL, "close failed", f"{position.symbol}: {result.error}")
        await self._reconcile()
        return False

    # ------------------------------------------------------------------
    # status / hedge check
    # ------------------------------------------------------------------

    async def _run_hedge_check(self) -> List[RepairResult]:
        """Caller holds the cycle lock."""
        self._last_hedge_check = self.clock()
        try:
            results = await self.hedge_monitor.run()
        except ConnectorError as exc:
            logger.error("hedge check failed: %s", exc)
            return []

        for res in results:
            if not res.success and res.skipped_reason is None:
                await self._alert(CRITICAL, "hedge repair failed", f"{res.need.symbol} {res.need.kind.value}")
        if any(res.orders for res in results) and self.state.position is not None:
            try:
                self._sync_sizes(self.state.position, await self.connector.get_positions())
            except ConnectorError as exc:
                logger.warning("position resync after repair failed: %s", exc)
            self._save()
        return results

    def _hedge_check_due(self, now: datetime) -> bool:
        if self._last_hedge_check is None:
            return True
        return now - self._last_hedge_check >= timedelta(minutes=self.config.hedge_check_interval_minutes)

    async def refresh_status(self) -> None:
        if not self._ready:
            return
        now = self.clock()
        try:
            await self.connector.ensure_stream()
            position = self.state.position
            if position is not None:
                stats = await self.connector.get_funding_rate(
                    position.symbol, timedelta(days=self.config.funding_window_days)
                )
                quality = HedgeMonitor.quality_of(abs(position.derivative_size), position.spot_size)
                logger.info(
                    "holding %s %.1fh funding=%.2f%% (7d avg %.2f%%) hedge=%s",
                    position.symbol,
                    position.held_hours(now),
                    stats.current_annualized_pct,
                    stats.avg_annualized_pct,
                    quality.value if quality else None,
                )
            balances = await self.connector.get_balances()
            logger.info("balances: perp=$%.2f spot=$%.2f", balances.perp_usd, balances.spot_usd)
        except ConnectorError as exc:
            logger.warning("status refresh failed: %s", exc)

        if self._hedge_check_due(now) and not self._cycle_lock.locked():
            async with self._cycle_lock:
                await self._run_hedge_check()

    # ------------------------------------------------------------------
    # run loop
    # ------------------------------------------------------------------

    @staticmethod
    async def _wait(stop_event: asyncio.Event, seconds: float) -> bool:
        """Sleep up to ``seconds``; True if stop was requested."""
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _decision_loop(self, stop_event: asyncio.Event) -> None:
        interval = self.config.check_interval_minutes * 60
        while not await self._wait(stop_event, interval):
            await self.run_cycle()
        logger.info("decision loop stopped")

    async def _status_loop(self, stop_event: asyncio.Event) -> None:
        while not await self._wait(stop_event, self.config.status_interval_seconds):
            await self.refresh_status()
        logger.info("status loop stopped")

    async def run(self, stop_event: asyncio.Event) -> None:
        await self.startup()
        try:
            # neither loop is cancelled; each exits at its next wait
            await asyncio.gather(self._decision_loop(stop_event), self._status_loop(stop_event))
        finally:
            await self.connector.stop_stream()
            self._save()
            logger.info("orchestrator stopped")
