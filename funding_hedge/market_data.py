from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from .types import BookTop

logger = logging.getLogger(__name__)


def parse_l2_levels(levels: List[List[Dict[str, Any]]]) -> Optional[tuple]:
    """``[[bids...], [asks...]]`` -> (best_bid, best_ask), or None if a side is empty."""
    if not levels or len(levels) < 2 or not levels[0] or not levels[1]:
        return None
    try:
        bid = float(levels[0][0]["px"])
        ask = float(levels[1][0]["px"])
    except (KeyError, TypeError, ValueError):
        return None
    if bid <= 0 or ask <= 0 or bid > ask:
        return None
    return bid, ask


class MarketDataCache:
    """Best bid/ask per coin, written by the stream thread and read by the loop."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._books: Dict[str, BookTop] = {}
        self._last_stream_update: Optional[float] = None

    def update_book(self, coin: str, bid: float, ask: float, from_stream: bool = False) -> BookTop:
        now = self._clock()
        top = BookTop(bid=bid, ask=ask, updated_at=now)
        with self._lock:
            self._books[coin] = top
            if from_stream:
                self._last_stream_update = now
        return top

    def on_l2_message(self, msg: Dict[str, Any]) -> None:
        """Websocket ``l2Book`` callback."""
        data = msg.get("data") or {}
        coin = data.get("coin")
        parsed = parse_l2_levels(data.get("levels", []))
        if coin is None or parsed is None:
            logger.debug("ignoring malformed l2Book message: %s", msg.get("channel"))
            return
        self.update_book(coin, parsed[0], parsed[1], from_stream=True)

    def get_book(self, coin: str, max_age_sec: Optional[float] = None) -> Optional[BookTop]:
        with self._lock:
            top = self._books.get(coin)
        if top is None:
            return None
        if max_age_sec is not None and self._clock() - top.updated_at > max_age_sec:
            return None
        return top

    def stream_age(self) -> Optional[float]:
        """Seconds since the last stream update, None if the stream never delivered."""
        with self._lock:
            last = self._last_stream_update
        return None if last is None else self._clock() - last

    def coins(self) -> List[str]:
        with self._lock:
            return list(self._books)
