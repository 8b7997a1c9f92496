from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Dict, Iterable, List, Optional

from .types import (
    AccountPositions,
    Balances,
    BookTop,
    FundingStats,
    LegSpec,
    MarketSnapshot,
    OrderStatus,
    PairSpec,
)


class ExchangeConnector(ABC):
    """What the engine needs from the venue. Every call is a suspension point."""

    @abstractmethod
    def pair_for(self, symbol: str) -> Optional[PairSpec]:
        """Resolved perp/spot legs for ``symbol`` (tracked or not)."""
        raise NotImplementedError

    @abstractmethod
    def perp_names(self) -> List[str]:
        raise NotImplementedError

    @abstractmethod
    async def get_book(self, name: str) -> Optional[BookTop]:
        raise NotImplementedError

    async def get_mid(self, name: str) -> Optional[float]:
        top = await self.get_book(name)
        return top.mid if top is not None else None

    @abstractmethod
    async def place_order(
        self,
        leg: LegSpec,
        is_buy: bool,
        size: float,
        reduce_only: bool = False,
    ) -> OrderStatus:
        raise NotImplementedError

    @abstractmethod
    async def cancel_order(self, leg: LegSpec, order_id: int) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def get_positions(self) -> AccountPositions:
        raise NotImplementedError

    @abstractmethod
    async def get_balances(self) -> Balances:
        raise NotImplementedError

    @abstractmethod
    async def get_funding_rate(self, symbol: str, window: timedelta) -> FundingStats:
        raise NotImplementedError

    @abstractmethod
    async def get_24h_volume(self, symbol: str) -> float:
        raise NotImplementedError

    @abstractmethod
    async def set_leverage(self, symbol: str, multiplier: int, mode: str = "isolated") -> None:
        raise NotImplementedError

    @abstractmethod
    async def collect_market_snapshots(self, symbols: Iterable[str]) -> Dict[str, MarketSnapshot]:
        raise NotImplementedError

    async def load_metadata(self) -> None:
        return None

    async def start_stream(self) -> None:
        return None

    async def ensure_stream(self) -> None:
        return None

    async def stop_stream(self) -> None:
        return None
