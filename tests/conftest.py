from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set

import pytest

from funding_hedge.config import FundingHedgeConfig
from funding_hedge.connector import ExchangeConnector
from funding_hedge.errors import OrderRejected
from funding_hedge.types import (
    AccountPositions,
    Balances,
    BookTop,
    FundingStats,
    LegSpec,
    MarketSnapshot,
    OrderStatus,
    OrderStatusKind,
    PairSpec,
    PerpPosition,
    SpotBalance,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_pair(symbol: str, spot_index: int = 1, bridged: bool = False) -> PairSpec:
    token = f"U{symbol}" if bridged else symbol
    return PairSpec(
        symbol=symbol,
        perp=LegSpec(name=symbol, sz_decimals=4, is_spot=False),
        spot=LegSpec(name=f"@{spot_index}", sz_decimals=2, is_spot=True),
        spot_token=token,
    )


def hourly_for_annual_pct(annual_pct: float) -> float:
    return annual_pct / 100 / (24 * 365)


class FakeConnector(ExchangeConnector):
    """In-memory venue: orders fill fully at mid unless told otherwise."""

    def __init__(self, symbols: Iterable[str] = ("BTC", "ETH", "SOL")):
        self.pairs: Dict[str, PairSpec] = {
            s: make_pair(s, spot_index=i + 1) for i, s in enumerate(symbols)
        }
        self.mids: Dict[str, float] = {}
        for pair in self.pairs.values():
            self.mids[pair.perp.name] = 100.0
            self.mids[pair.spot.name] = 100.0
        self.funding: Dict[str, FundingStats] = {}
        self.volume_usd: Dict[str, float] = {s: 50_000_000 for s in self.pairs}
        self.positions = AccountPositions()
        self.balances = Balances(perp_usd=1000.0, spot_usd=1000.0)

        self.orders: List[tuple] = []
        self.leverage_calls: List[tuple] = []
        self.fail_legs: Set[str] = set()
        self.fail_counts: Dict[str, int] = {}
        self.raise_on: Dict[str, Exception] = {}
        self.fill_ratio: Dict[str, float] = {}
        self.stream_started = False
        self.stream_stopped = False
        self.metadata_loaded = False

    # test setup helpers
    def set_funding(self, symbol: str, avg_pct: float, current_pct: Optional[float] = None) -> None:
        current = avg_pct if current_pct is None else current_pct
        self.funding[symbol] = FundingStats(
            symbol=symbol,
            current_hourly=hourly_for_annual_pct(current),
            avg_hourly=hourly_for_annual_pct(avg_pct),
            samples=168,
        )

    def hold_pair(self, symbol: str, short: float, spot: float) -> None:
        if short:
            self.positions.perps[symbol] = PerpPosition(coin=symbol, size=-short, entry_price=100.0)
        if spot:
            token = self.pairs[symbol].spot_token
            self.positions.spot[token] = SpotBalance(token=token, total=spot)

    # ExchangeConnector
    def pair_for(self, symbol: str) -> Optional[PairSpec]:
        return self.pairs.get(symbol)

    def perp_names(self) -> List[str]:
        return list(self.pairs)

    async def load_metadata(self) -> None:
        self.metadata_loaded = True

    async def start_stream(self) -> None:
        self.stream_started = True

    async def stop_stream(self) -> None:
        self.stream_stopped = True

    async def get_book(self, name: str) -> Optional[BookTop]:
        mid = self.mids.get(name)
        if mid is None:
            return None
        return BookTop(bid=mid - 0.01, ask=mid + 0.01, updated_at=0.0)

    async def place_order(self, leg: LegSpec, is_buy: bool, size: float, reduce_only: bool = False) -> OrderStatus:
        if reduce_only and leg.is_spot:
            raise OrderRejected("reduce-only is not valid on spot", leg.name, is_buy, size)
        self.orders.append((leg.name, is_buy, size, reduce_only))

        if leg.name in self.raise_on:
            raise self.raise_on[leg.name]
        remaining = self.fail_counts.get(leg.name, 0)
        if leg.name in self.fail_legs or remaining > 0:
            if remaining > 0:
                self.fail_counts[leg.name] = remaining - 1
            return OrderStatus(OrderStatusKind.ERROR, leg.name, is_buy, size, error="Insufficient margin")

        filled = size * self.fill_ratio.get(leg.name, 1.0)
        mid = self.mids[leg.name]
        self._apply_fill(leg, is_buy, filled)
        return OrderStatus(OrderStatusKind.FILLED, leg.name, is_buy, size, filled_size=filled, avg_price=mid, order_id=len(self.orders))

    def _apply_fill(self, leg: LegSpec, is_buy: bool, size: float) -> None:
        signed = size if is_buy else -size
        if not leg.is_spot:
            pos = self.positions.perps.get(leg.name)
            new_size = (pos.size if pos else 0.0) + signed
            if abs(new_size) < 1e-12:
                self.positions.perps.pop(leg.name, None)
            else:
                self.positions.perps[leg.name] = PerpPosition(coin=leg.name, size=new_size, entry_price=100.0)
            return
        pair = next(p for p in self.pairs.values() if p.spot.name == leg.name)
        bal = self.positions.spot.get(pair.spot_token)
        total = (bal.total if bal else 0.0) + signed
        if total < 1e-12:
            self.positions.spot.pop(pair.spot_token, None)
        else:
            self.positions.spot[pair.spot_token] = SpotBalance(token=pair.spot_token, total=total)

    async def cancel_order(self, leg: LegSpec, order_id: int) -> bool:
        return True

    async def get_positions(self) -> AccountPositions:
        return AccountPositions(perps=dict(self.positions.perps), spot=dict(self.positions.spot))

    async def get_balances(self) -> Balances:
        return self.balances

    async def get_funding_rate(self, symbol: str, window: timedelta) -> FundingStats:
        return self.funding[symbol]

    async def get_24h_volume(self, symbol: str) -> float:
        return self.volume_usd[symbol]

    async def set_leverage(self, symbol: str, multiplier: int, mode: str = "isolated") -> None:
        self.leverage_calls.append((symbol, multiplier, mode))

    async def collect_market_snapshots(self, symbols: Iterable[str]) -> Dict[str, MarketSnapshot]:
        out: Dict[str, MarketSnapshot] = {}
        for symbol in symbols:
            pair = self.pairs.get(symbol)
            if pair is None:
                continue
            mid = self.mids[pair.perp.name]
            out[symbol] = MarketSnapshot(
                symbol=symbol,
                perp_book=await self.get_book(pair.perp.name),
                spot_book=await self.get_book(pair.spot.name),
                funding=self.funding.get(symbol),
                day_base_volume=self.volume_usd[symbol] / mid,
                mark_price=mid,
            )
        return out


@pytest.fixture
def config() -> FundingHedgeConfig:
    return FundingHedgeConfig(
        symbols=["BTC", "ETH", "SOL"],
        default_min_order_usd=12.0,
        venue_min_order_usd=10.0,
        balance_utilization=0.9,
        min_hold_hours=24,
        improvement_multiple=2.0,
        min_funding_annualized_pct=5.0,
        min_volume_usd=1_000_000,
    )


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()
