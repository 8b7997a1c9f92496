"""Connector error taxonomy.

Everything the venue SDK or the HTTP layer can raise is converted into one of
these before it leaves ``hyperliquid_client``.
"""

from __future__ import annotations

from typing import Optional


class ConnectorError(Exception):
    """Base class for failures at the exchange boundary."""

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason or message


class TransientNetworkError(ConnectorError):
    """Timeout, connection failure or 5xx. Retryable for read-only calls."""


class RateLimited(ConnectorError):
    """The venue answered with an explicit rate-limit signal (HTTP 429)."""


class ExchangeRequestError(ConnectorError):
    """Any other non-retryable request failure."""


class OrderRejected(ConnectorError):
    """Terminal rejection of a single order."""

    def __init__(
        self,
        message: str,
        symbol: str,
        is_buy: bool,
        size: float,
        reason: Optional[str] = None,
    ):
        super().__init__(message, reason)
        self.symbol = symbol
        self.is_buy = is_buy
        self.size = size
