"""Hyperliquid connector.

Signing is done by the SDK ``Exchange``: every L1 action is hashed with its
nonce (ms timestamp) and vault/account, then signed as EIP-712 typed data
under the venue's own domain, so a payload cannot be replayed for another
account or at another time. The SDK is synchronous; calls run in the default
executor, go through the shared rate limiter and are bounded by a timeout.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import time
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests
from dotenv import load_dotenv
from eth_account import Account
from hyperliquid.exchange import Exchange
from hyperliquid.info import Info
from hyperliquid.utils import constants
from hyperliquid.utils.error import ClientError, ServerError

from .config import FundingHedgeConfig
from .connector import ExchangeConnector
from .errors import (
    ConnectorError,
    ExchangeRequestError,
    OrderRejected,
    RateLimited,
    TransientNetworkError,
)
from .market_data import MarketDataCache, parse_l2_levels
from .naming import QUOTE_TOKEN, resolve_pair, resolve_pairs
from .precision import round_size, slippage_price
from .rate_limiter import REST, WS, SlidingWindowRateLimiter
from .types import (
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

load_dotenv()
logger = logging.getLogger(__name__)

# request weights as charged by the venue
INFO_WEIGHT = 20
BOOK_WEIGHT = 2
EXCHANGE_WEIGHT = 1

ASSET_CTX_TTL_SEC = 30.0
IOC = {"limit": {"tif": "Ioc"}}


def classify_error(exc: BaseException) -> ConnectorError:
    """Map SDK / HTTP failures onto the connector taxonomy."""
    if isinstance(exc, ConnectorError):
        return exc
    if isinstance(exc, ClientError):
        if exc.status_code == 429:
            return RateLimited("rate limited by venue", reason="HTTP 429")
        return ExchangeRequestError(
            f"venue rejected request ({exc.status_code})",
            reason=str(exc.error_message),
        )
    if isinstance(exc, ServerError):
        return TransientNetworkError(f"venue server error ({exc.status_code})", reason=str(exc.message))
    if isinstance(exc, requests.HTTPError):
        status = exc.response.status_code if exc.response is not None else None
        if status == 429:
            return RateLimited("rate limited by venue", reason="HTTP 429")
        if status is not None and status >= 500:
            return TransientNetworkError(f"venue server error ({status})")
        return ExchangeRequestError(f"http error ({status})")
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, requests.Timeout)):
        return TransientNetworkError("request timed out")
    if isinstance(exc, (requests.ConnectionError, ConnectionError)):
        return TransientNetworkError("connection failed")
    return ExchangeRequestError(f"unexpected {type(exc).__name__}", reason=str(exc))


def parse_order_response(raw: Dict[str, Any], symbol: str, is_buy: bool, size: float) -> OrderStatus:
    """An ``ok`` envelope only means the venue accepted the request; the fill
    status lives in ``response.data.statuses``.

    Only single-order requests are sent, so exactly one status is expected.
    Extra statuses are logged and not parsed.
    """
    if not isinstance(raw, dict) or raw.get("status") != "ok":
        error = raw.get("response") if isinstance(raw, dict) else raw
        return OrderStatus(OrderStatusKind.ERROR, symbol, is_buy, size, error=str(error))

    statuses = raw.get("response", {}).get("data", {}).get("statuses", [])
    if not statuses:
        return OrderStatus(OrderStatusKind.ERROR, symbol, is_buy, size, error="NO_STATUS")
    if len(statuses) > 1:
        logger.warning("%s: %d order statuses for a single order, using the first", symbol, len(statuses))

    first = statuses[0]
    if isinstance(first, dict) and "filled" in first:
        filled = first["filled"]
        return OrderStatus(
            OrderStatusKind.FILLED,
            symbol,
            is_buy,
            size,
            filled_size=float(filled.get("totalSz", 0) or 0),
            avg_price=float(filled.get("avgPx", 0) or 0),
            order_id=filled.get("oid"),
        )
    if isinstance(first, dict) and "resting" in first:
        return OrderStatus(
            OrderStatusKind.RESTING,
            symbol,
            is_buy,
            size,
            order_id=first["resting"].get("oid"),
        )
    if isinstance(first, dict) and "error" in first:
        return OrderStatus(OrderStatusKind.ERROR, symbol, is_buy, size, error=str(first["error"]))
    return OrderStatus(OrderStatusKind.ERROR, symbol, is_buy, size, error=f"UNKNOWN_STATUS:{first}")


class HyperliquidConnector(ExchangeConnector):
    """Hyperliquid perp + spot connector (lazy SDK initialization)."""

    def __init__(
        self,
        config: FundingHedgeConfig,
        private_key: Optional[str] = None,
        main_address: Optional[str] = None,
        limiter: Optional[SlidingWindowRateLimiter] = None,
        cache: Optional[MarketDataCache] = None,
        info: Optional[Info] = None,
        exchange: Optional[Exchange] = None,
        session: Optional[requests.Session] = None,
        funding_cache_ttl_sec: float = 300.0,
    ):
        self.config = config
        self.private_key = private_key or os.getenv("HL_PRIVATE_KEY")
        self.main_address = main_address or os.getenv("HL_MAIN_ADDRESS")
        if not self.main_address:
            raise ValueError("HL_MAIN_ADDRESS is required")

        self.base_url = constants.TESTNET_API_URL if config.testnet else constants.MAINNET_API_URL
        self.limiter = limiter or SlidingWindowRateLimiter.from_config(config.rate_limits)
        self.cache = cache or MarketDataCache()

        self._info = info
        self._exchange = exchange
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})

        self._perp_meta: Dict[str, Any] = {}
        self._spot_meta: Dict[str, Any] = {}
        self._pairs: Dict[str, PairSpec] = {}
        self._resolved: Dict[str, Optional[PairSpec]] = {}

        self._asset_ctxs: Dict[str, Dict[str, Any]] = {}
        self._asset_ctxs_at: Optional[float] = None
        self._funding_ttl = funding_cache_ttl_sec
        self._funding_cache: Dict[str, tuple] = {}

        self._stream_info: Optional[Info] = None
        self._stream_started_at: Optional[float] = None

        mode = "TESTNET" if config.testnet else "MAINNET"
        logger.info("HyperliquidConnector initialized [%s] account=%s", mode, self.main_address)

    # ------------------------------------------------------------------
    # SDK objects
    # ------------------------------------------------------------------

    @property
    def info(self) -> Info:
        if self._info is None:
            logger.info("initializing Info")
            self._info = Info(self.base_url, skip_ws=True)
        return self._info

    @property
    def exchange(self) -> Exchange:
        if self._exchange is None:
            if not self.private_key:
                raise ValueError("HL_PRIVATE_KEY is required for trading")
            logger.info("initializing Exchange")
            wallet = Account.from_key(self.private_key)
            self._exchange = Exchange(
                wallet=wallet,
                base_url=self.base_url,
                account_address=self.main_address,
                meta=self._perp_meta or None,
                spot_meta=self._spot_meta or None,
            )
        return self._exchange

    # ------------------------------------------------------------------
    # request dispatch
    # ------------------------------------------------------------------

    async def _call(
        self,
        label: str,
        fn: Callable[..., Any],
        *args: Any,
        weight: int = INFO_WEIGHT,
        retry_network: bool = True,
        **kwargs: Any,
    ) -> Any:
        """Rate-limited, timed, retried dispatch of one blocking call.

        Explicit rate limiting is always retried. Network failures are retried
        only when ``retry_network`` is set; order submission passes False so
        an ambiguous timeout never sends a second order.
        """
        cfg = self.config.rate_limits
        delay = cfg.retry_initial_delay_sec
        loop = asyncio.get_running_loop()
        for attempt in range(1, cfg.retry_max_attempts + 1):
            await self.limiter.acquire(REST, weight)
            try:
                return await asyncio.wait_for(
                    loop.run_in_executor(None, functools.partial(fn, *args, **kwargs)),
                    timeout=cfg.request_timeout_sec,
                )
            except Exception as exc:
                err = classify_error(exc)
                retryable = isinstance(err, RateLimited) or (
                    retry_network and isinstance(err, TransientNetworkError)
                )
                if not retryable or attempt == cfg.retry_max_attempts:
                    logger.warning("%s failed: %s (%s)", label, err, err.reason)
                    raise err from exc
                logger.warning(
                    "%s failed: %s, retry %d/%d in %.1fs",
                    label,
                    err,
                    attempt,
                    cfg.retry_max_attempts,
                    delay,
                )
            await asyncio.sleep(delay)
            delay = min(delay * 2, cfg.retry_max_delay_sec)
        raise ExchangeRequestError(f"{label}: no attempt made")

    def _api_post(self, endpoint: str, data: dict, timeout=(3, 10)) -> Any:
        """Lightweight ``/info`` request that bypasses the SDK."""
        response = self.session.post(f"{self.base_url}{endpoint}", json=data, timeout=timeout)
        response.raise_for_status()
        return response.json()

    # ------------------------------------------------------------------
    # metadata
    # ------------------------------------------------------------------

    async def load_metadata(self) -> None:
        self._perp_meta = await self._call("meta", self._api_post, "/info", {"type": "meta"})
        self._spot_meta = await self._call("spotMeta", self._api_post, "/info", {"type": "spotMeta"})
        self._resolved.clear()
        self._pairs = resolve_pairs(self.config.symbols, self._perp_meta, self._spot_meta)
        missing = sorted(set(self.config.symbols) - set(self._pairs))
        if missing:
            logger.warning("symbols without a hedgeable spot pair dropped: %s", missing)
        logger.info(
            "metadata loaded: %d tracked pairs %s",
            len(self._pairs),
            {s: p.spot.name for s, p in self._pairs.items()},
        )

    @property
    def pairs(self) -> Dict[str, PairSpec]:
        return dict(self._pairs)

    def pair_for(self, symbol: str) -> Optional[PairSpec]:
        if symbol in self._pairs:
            return self._pairs[symbol]
        if symbol not in self._resolved:
            self._resolved[symbol] = resolve_pair(symbol, self._perp_meta, self._spot_meta)
        return self._resolved[symbol]

    def perp_names(self) -> List[str]:
        return [a["name"] for a in self._perp_meta.get("universe", [])]

    # ------------------------------------------------------------------
    # market data
    # ------------------------------------------------------------------

    async def start_stream(self) -> None:
        if self._stream_info is not None:
            return
        loop = asyncio.get_running_loop()
        try:
            self._stream_info = await loop.run_in_executor(
                None,
                functools.partial(
                    Info,
                    self.base_url,
                    skip_ws=False,
                    meta=self._perp_meta or None,
                    spot_meta=self._spot_meta or None,
                ),
            )
        except Exception as exc:
            logger.warning("stream unavailable, falling back to polling: %s", classify_error(exc))
            self._stream_info = None
            return

        self._stream_started_at = time.monotonic()
        subscribed = 0
        for pair in self._pairs.values():
            for leg in (pair.perp, pair.spot):
                if not self.limiter.try_acquire(WS):
                    logger.warning("ws message budget exhausted, %s will be polled", leg.name)
                    continue
                self._stream_info.subscribe({"type": "l2Book", "coin": leg.name}, self.cache.on_l2_message)
                subscribed += 1
        logger.info("order book stream started (%d subscriptions)", subscribed)

    async def stop_stream(self) -> None:
        if self._stream_info is None:
            return
        info, self._stream_info = self._stream_info, None
        self._stream_started_at = None
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, info.disconnect_websocket)
        except Exception as exc:
            logger.warning("stream shutdown error: %s", classify_error(exc))
        logger.info("order book stream stopped")

    async def ensure_stream(self) -> None:
        """Reconnect when the stream has gone silent."""
        stale_after = self.config.book_stale_after_sec * 4
        if self._stream_info is None:
            await self.start_stream()
            return
        age = self.cache.stream_age()
        if age is None:
            started = self._stream_started_at or time.monotonic()
            age = time.monotonic() - started
        if age > stale_after:
            logger.warning("stream silent for %.0fs, reconnecting", age)
            await self.stop_stream()
            await self.start_stream()

    async def get_book(self, name: str) -> Optional[BookTop]:
        cached = self.cache.get_book(name, max_age_sec=self.config.book_stale_after_sec)
        if cached is not None:
            return cached
        raw = await self._call(
            f"l2Book {name}", self._api_post, "/info", {"type": "l2Book", "coin": name}, weight=BOOK_WEIGHT
        )
        parsed = parse_l2_levels((raw or {}).get("levels", []))
        if parsed is None:
            logger.warning("empty order book for %s", name)
            return None
        return self.cache.update_book(name, parsed[0], parsed[1])

    async def _refresh_asset_ctxs(self, force: bool = False) -> Dict[str, Dict[str, Any]]:
        now = time.monotonic()
        if not force and self._asset_ctxs_at is not None and now - self._asset_ctxs_at < ASSET_CTX_TTL_SEC:
            return self._asset_ctxs
        raw = await self._call("metaAndAssetCtxs", self._api_post, "/info", {"type": "metaAndAssetCtxs"})
        meta, ctxs = raw[0], raw[1]
        self._asset_ctxs = {
            asset["name"]: ctx for asset, ctx in zip(meta.get("universe", []), ctxs)
        }
        self._asset_ctxs_at = now
        return self._asset_ctxs

    async def get_funding_rate(self, symbol: str, window: timedelta) -> FundingStats:
        cached = self._funding_cache.get(symbol)
        if cached is not None and time.monotonic() - cached[0] < self._funding_ttl:
            return cached[1]

        ctxs = await self._refresh_asset_ctxs()
        end_ms = int(time.time() * 1000)
        start_ms = end_ms - int(window.total_seconds() * 1000)
        history = await self._call(
            f"fundingHistory {symbol}",
            self._api_post,
            "/info",
            {"type": "fundingHistory", "coin": symbol, "startTime": start_ms, "endTime": end_ms},
        )
        rates = [float(h["fundingRate"]) for h in history or [] if "fundingRate" in h]

        ctx = ctxs.get(symbol, {})
        if "funding" in ctx:
            current = float(ctx["funding"])
        elif rates:
            current = rates[-1]
        else:
            current = 0.0
        avg = sum(rates) / len(rates) if rates else current

        stats = FundingStats(symbol=symbol, current_hourly=current, avg_hourly=avg, samples=len(rates))
        self._funding_cache[symbol] = (time.monotonic(), stats)
        return stats

    async def get_24h_volume(self, symbol: str) -> float:
        ctx = (await self._refresh_asset_ctxs()).get(symbol, {})
        base = float(ctx.get("dayBaseVlm", 0) or 0)
        mark = float(ctx.get("markPx", 0) or 0)
        if base > 0 and mark > 0:
            return base * mark
        return float(ctx.get("dayNtlVlm", 0) or 0)

    async def collect_market_snapshots(self, symbols: Iterable[str]) -> Dict[str, MarketSnapshot]:
        ctxs = await self._refresh_asset_ctxs(force=True)
        window = timedelta(days=self.config.funding_window_days)
        snapshots: Dict[str, MarketSnapshot] = {}
        for symbol in symbols:
            pair = self.pair_for(symbol)
            if pair is None:
                continue
            ctx = ctxs.get(symbol, {})
            try:
                perp_book = await self.get_book(pair.perp.name)
                spot_book = await self.get_book(pair.spot.name)
                funding = await self.get_funding_rate(symbol, window)
            except ConnectorError as exc:
                logger.warning("market data for %s unavailable: %s", symbol, exc)
                perp_book = spot_book = None
                funding = None
            snapshots[symbol] = MarketSnapshot(
                symbol=symbol,
                perp_book=perp_book,
                spot_book=spot_book,
                funding=funding,
                day_base_volume=float(ctx.get("dayBaseVlm", 0) or 0),
                mark_price=float(ctx.get("markPx", 0) or 0),
            )
        return snapshots

    # ------------------------------------------------------------------
    # account
    # ------------------------------------------------------------------

    async def get_positions(self) -> AccountPositions:
        perp_state = await self._call("clearinghouseState", self.info.user_state, self.main_address)
        spot_state = await self._call("spotClearinghouseState", self.info.spot_user_state, self.main_address)

        positions = AccountPositions()
        for ap in perp_state.get("assetPositions", []):
            p = ap.get("position", {})
            size = float(p.get("szi", 0) or 0)
            if size == 0:
                continue
            positions.perps[p["coin"]] = PerpPosition(
                coin=p["coin"],
                size=size,
                entry_price=float(p.get("entryPx", 0) or 0),
            )
        for bal in spot_state.get("balances", []):
            total = float(bal.get("total", 0) or 0)
            if bal.get("coin") == QUOTE_TOKEN or total <= 0:
                continue
            positions.spot[bal["coin"]] = SpotBalance(
                token=bal["coin"],
                total=total,
                hold=float(bal.get("hold", 0) or 0),
                entry_notional=float(bal.get("entryNtl", 0) or 0),
            )
        return positions

    async def get_balances(self) -> Balances:
        perp_state = await self._call("clearinghouseState", self.info.user_state, self.main_address)
        spot_state = await self._call("spotClearinghouseState", self.info.spot_user_state, self.main_address)
        perp_usd = float(perp_state.get("withdrawable", 0) or 0)
        spot_usd = 0.0
        for bal in spot_state.get("balances", []):
            if bal.get("coin") == QUOTE_TOKEN:
                spot_usd = float(bal.get("total", 0) or 0) - float(bal.get("hold", 0) or 0)
        return Balances(perp_usd=perp_usd, spot_usd=spot_usd)

    # ------------------------------------------------------------------
    # trading
    # ------------------------------------------------------------------

    async def set_leverage(self, symbol: str, multiplier: int, mode: str = "isolated") -> None:
        raw = await self._call(
            f"updateLeverage {symbol}",
            self.exchange.update_leverage,
            multiplier,
            symbol,
            is_cross=(mode == "cross"),
            weight=EXCHANGE_WEIGHT,
        )
        if not isinstance(raw, dict) or raw.get("status") != "ok":
            raise ExchangeRequestError(f"leverage update rejected for {symbol}", reason=str(raw))
        logger.info("leverage set: %s %dx %s", symbol, multiplier, mode)

    async def place_order(
        self,
        leg: LegSpec,
        is_buy: bool,
        size: float,
        reduce_only: bool = False,
    ) -> OrderStatus:
        if reduce_only and leg.is_spot:
            raise OrderRejected("reduce-only is not valid on spot", leg.name, is_buy, size)

        sz = round_size(size, leg)
        if sz <= 0:
            return OrderStatus(OrderStatusKind.ERROR, leg.name, is_buy, size, error="SIZE_ROUNDS_TO_ZERO")

        top = await self.get_book(leg.name)
        if top is None:
            raise ExchangeRequestError(f"no price for {leg.name}")
        px = slippage_price(top.mid, is_buy, self.config.order_slippage_pct, leg)

        raw = await self._call(
            f"order {leg.name}",
            self.exchange.order,
            leg.name,
            is_buy,
            sz,
            px,
            IOC,
            reduce_only=reduce_only,
            weight=EXCHANGE_WEIGHT,
            retry_network=False,
        )
        status = parse_order_response(raw, leg.name, is_buy, sz)
        logger.info(
            "order %s %s size=%s px=%s reduce_only=%s -> %s filled=%s avg=%s %s",
            leg.name,
            "BUY" if is_buy else "SELL",
            sz,
            px,
            reduce_only,
            status.kind.value,
            status.filled_size,
            status.avg_price,
            status.error or "",
        )
        return status

    async def cancel_order(self, leg: LegSpec, order_id: int) -> bool:
        raw = await self._call(
            f"cancel {leg.name}",
            self.exchange.cancel,
            leg.name,
            order_id,
            weight=EXCHANGE_WEIGHT,
        )
        statuses = (raw or {}).get("response", {}).get("data", {}).get("statuses", []) if isinstance(raw, dict) else []
        ok = isinstance(raw, dict) and raw.get("status") == "ok" and bool(statuses) and statuses[0] == "success"
        if not ok:
            logger.warning("cancel %s oid=%s failed: %s", leg.name, order_id, raw)
        return ok
