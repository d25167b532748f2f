"""
Execution Engine - Brokerage Client Base.

============================================================
PURPOSE
============================================================
Abstract interface for the brokerage order API.

The engine only needs five calls:
- place a market / limit / stop order
- fetch an order's status and fill figures
- cancel an order

QUANTITY CONVENTION:
    Quantities are signed. Positive buys, negative sells.

DESIGN PRINCIPLES:
- Broker-agnostic interface
- Clean separation from execution logic
- Fully testable with the mock client

============================================================
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional
from dataclasses import dataclass

from ..types import TimeValidity


logger = logging.getLogger(__name__)


# ============================================================
# RATE LIMIT STATUS
# ============================================================

@dataclass
class RateLimitStatus:
    """Status of rate limiting, as reported by the last response."""

    limit: Optional[int] = None
    """Total requests allowed in the window."""

    remaining: Optional[int] = None
    """Remaining requests in window."""

    used: Optional[int] = None
    """Requests used in the window."""

    reset_at: Optional[datetime] = None
    """When the window resets."""

    @property
    def is_limited(self) -> bool:
        return self.remaining is not None and self.remaining <= 0


# ============================================================
# REQUEST / RESPONSE TYPES
# ============================================================

@dataclass
class MarketOrderRequest:
    """Market order."""

    ticker: str
    quantity: float
    """Signed: negative sells."""

    time_validity: TimeValidity = TimeValidity.DAY


@dataclass
class LimitOrderRequest:
    """Limit order."""

    ticker: str
    quantity: float
    limit_price: float
    time_validity: TimeValidity = TimeValidity.GOOD_TILL_CANCEL


@dataclass
class StopOrderRequest:
    """Stop (market-on-trigger) order."""

    ticker: str
    quantity: float
    stop_price: float
    time_validity: TimeValidity = TimeValidity.GOOD_TILL_CANCEL


@dataclass
class PlacedOrder:
    """Brokerage acknowledgement of a new order."""

    id: str
    status: Optional[str] = None


@dataclass
class RemoteOrder:
    """Brokerage view of an order."""

    id: str
    status: str
    """FILLED / CANCELLED / REJECTED / NEW / WORKING (and other working states)."""

    ticker: Optional[str] = None
    quantity: Optional[float] = None
    value: Optional[float] = None
    filled_quantity: Optional[float] = None
    filled_value: Optional[float] = None

    @property
    def fill_price(self) -> Optional[float]:
        """
        Average fill price.

        filled value / filled quantity, falling back to the
        requested value / quantity when fill figures are absent.
        """
        if self.filled_value and self.filled_quantity:
            return abs(self.filled_value) / abs(self.filled_quantity)
        if self.value and self.quantity:
            return abs(self.value) / abs(self.quantity)
        return None


# ============================================================
# BROKERAGE CLIENT INTERFACE
# ============================================================

class BrokerageClient(ABC):
    """
    Abstract base class for brokerage clients.

    Every method may raise BrokerageError (or a subclass).
    """

    @property
    @abstractmethod
    def broker_id(self) -> str:
        """Broker identifier."""
        pass

    @abstractmethod
    async def place_market_order(self, request: MarketOrderRequest) -> PlacedOrder:
        pass

    @abstractmethod
    async def place_limit_order(self, request: LimitOrderRequest) -> PlacedOrder:
        pass

    @abstractmethod
    async def place_stop_order(self, request: StopOrderRequest) -> PlacedOrder:
        pass

    @abstractmethod
    async def get_order(self, order_id: str) -> RemoteOrder:
        pass

    @abstractmethod
    async def cancel_order(self, order_id: str) -> None:
        pass

    def get_rate_limit_status(self) -> RateLimitStatus:
        return RateLimitStatus()

    async def close(self) -> None:
        """Release network resources."""
        pass


__all__ = [
    "RateLimitStatus",
    "MarketOrderRequest",
    "LimitOrderRequest",
    "StopOrderRequest",
    "PlacedOrder",
    "RemoteOrder",
    "BrokerageClient",
]
