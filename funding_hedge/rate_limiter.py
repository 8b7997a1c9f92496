"""Sliding-window admission control shared by every connector call.

The websocket callback thread and the asyncio REST callers both go through
the same limiter, so window state is guarded by a ``threading.Lock`` and the
blocking variant sleeps outside of it.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Tuple

from .config import RateLimitConfig

logger = logging.getLogger(__name__)

REST = "rest"
WS = "ws"


@dataclass(frozen=True)
class ChannelLimit:
    capacity: int
    window_sec: float


class SlidingWindowRateLimiter:
    def __init__(
        self,
        limits: Dict[str, ChannelLimit],
        clock: Callable[[], float] = time.monotonic,
    ):
        self._limits = dict(limits)
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, Deque[Tuple[float, int]]] = {
            name: deque() for name in self._limits
        }
        self._used: Dict[str, int] = {name: 0 for name in self._limits}

    @classmethod
    def from_config(cls, config: RateLimitConfig) -> "SlidingWindowRateLimiter":
        return cls(
            {
                REST: ChannelLimit(config.rest_capacity, config.rest_window_sec),
                WS: ChannelLimit(config.ws_capacity, config.ws_window_sec),
            }
        )

    def _limit(self, channel: str, weight: int) -> ChannelLimit:
        try:
            limit = self._limits[channel]
        except KeyError:
            raise ValueError(f"unknown rate limit channel: {channel}") from None
        if weight > limit.capacity:
            raise ValueError(
                f"weight {weight} exceeds capacity {limit.capacity} of channel {channel}"
            )
        return limit

    def _wait_locked(self, channel: str, weight: int, limit: ChannelLimit, now: float) -> float:
        window = self._windows[channel]
        while window and now - window[0][0] >= limit.window_sec:
            _, w = window.popleft()
            self._used[channel] -= w

        excess = self._used[channel] + weight - limit.capacity
        if excess <= 0:
            return 0.0
        # oldest entries leave first; find when enough weight has aged out
        freed = 0
        for ts, w in window:
            freed += w
            if freed >= excess:
                return ts + limit.window_sec - now
        return limit.window_sec

    def _try_locked(self, channel: str, weight: int, limit: ChannelLimit) -> float:
        now = self._clock()
        wait = self._wait_locked(channel, weight, limit, now)
        if wait == 0.0:
            self._windows[channel].append((now, weight))
            self._used[channel] += weight
        return wait

    def try_acquire(self, channel: str, weight: int = 1) -> bool:
        limit = self._limit(channel, weight)
        with self._lock:
            return self._try_locked(channel, weight, limit) == 0.0

    async def acquire(self, channel: str, weight: int = 1) -> None:
        """Wait until the request is admitted."""
        limit = self._limit(channel, weight)
        while True:
            with self._lock:
                wait = self._try_locked(channel, weight, limit)
            if wait == 0.0:
                return
            logger.debug("rate limit %s saturated, waiting %.2fs", channel, wait)
            await asyncio.sleep(wait)

    def wait_time(self, channel: str, weight: int = 1) -> float:
        limit = self._limit(channel, weight)
        with self._lock:
            return self._wait_locked(channel, weight, limit, self._clock())

    def usage(self, channel: str) -> int:
        limit = self._limit(channel, 1)
        with self._lock:
            self._wait_locked(channel, 1, limit, self._clock())
            return self._used[channel]
