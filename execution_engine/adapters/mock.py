"""
Execution Engine - Mock Brokerage Client.

============================================================
PURPOSE
============================================================
In-memory brokerage for tests and paper runs.

FEATURES:
- Per-ticker prices for fill figures
- Scripted status sequences per market order
- Error injection per method (once or always)
- Full call recording

============================================================
"""

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Deque, Tuple, Union, Any
import itertools

from ..errors import BrokerageError, BrokerageApiError
from .base import (
    BrokerageClient,
    MarketOrderRequest,
    LimitOrderRequest,
    StopOrderRequest,
    PlacedOrder,
    RemoteOrder,
)


logger = logging.getLogger(__name__)


StatusStep = Union[str, Tuple[str, float]]
"""A status, or (status, filled_quantity) for a partial fill."""


# ============================================================
# MOCK CONFIGURATION
# ============================================================

@dataclass
class MockConfig:
    """Configuration for the mock client."""

    default_price: float = 100.0
    """Fill price for tickers without an explicit price."""

    prices: Dict[str, float] = field(default_factory=dict)
    """Fill price by ticker."""

    immediate_fill: bool = True
    """Unscripted market orders report FILLED on the first poll."""


@dataclass
class MockOrder:
    """Internal order state."""

    id: str
    kind: str
    ticker: str
    quantity: float
    price: float
    script: Deque[StatusStep] = field(default_factory=deque)
    status: str = "NEW"
    filled_quantity: Optional[float] = None
    cancelled: bool = False

    def advance(self) -> None:
        """Consume the next scripted step; the last step repeats."""
        if not self.script:
            return
        step = self.script.popleft() if len(self.script) > 1 else self.script[0]
        if isinstance(step, tuple):
            self.status, self.filled_quantity = step
        else:
            self.status = step
            if step == "FILLED":
                self.filled_quantity = self.quantity

    def snapshot(self) -> RemoteOrder:
        filled_value = None
        if self.filled_quantity:
            filled_value = self.filled_quantity * self.price
        return RemoteOrder(
            id=self.id,
            status=self.status,
            ticker=self.ticker,
            quantity=self.quantity,
            value=abs(self.quantity) * self.price,
            filled_quantity=self.filled_quantity,
            filled_value=filled_value,
        )


# ============================================================
# MOCK CLIENT
# ============================================================

class MockBrokerageClient(BrokerageClient):
    """
    Scriptable brokerage.

    Usage:
        client = MockBrokerageClient()
        client.set_price("AAPL_US_EQ", 150.0)
        client.script_next_market_order("NEW", "NEW", "FILLED")
        client.fail_next("place_stop_order", BrokerageError("rejected"))
    """

    def __init__(self, config: Optional[MockConfig] = None):
        self._config = config or MockConfig()
        self._ids = itertools.count(1000)
        self._orders: Dict[str, MockOrder] = {}
        self._market_scripts: Deque[List[StatusStep]] = deque()
        self._fail_once: Dict[str, Deque[Exception]] = defaultdict(deque)
        self._fail_always: Dict[str, Exception] = {}
        self.calls: Dict[str, List[Any]] = defaultdict(list)

    @property
    def broker_id(self) -> str:
        return "mock"

    # --------------------------------------------------------
    # TEST CONTROLS
    # --------------------------------------------------------

    def set_price(self, ticker: str, price: float) -> None:
        self._config.prices[ticker] = price

    def script_next_market_order(self, *steps: StatusStep) -> None:
        """Status sequence returned by get_order for the next market order."""
        self._market_scripts.append(list(steps))

    def fail_next(self, method: str, error: Optional[Exception] = None) -> None:
        self._fail_once[method].append(error or BrokerageError(f"{method} failed"))

    def fail_always(self, method: str, error: Optional[Exception] = None) -> None:
        self._fail_always[method] = error or BrokerageError(f"{method} failed")

    def clear_failures(self) -> None:
        self._fail_once.clear()
        self._fail_always.clear()

    def add_remote_order(
        self,
        order_id: str,
        status: str,
        quantity: float,
        price: float,
        filled_quantity: Optional[float] = None,
        ticker: str = "MOCK",
    ) -> None:
        """Register an order that exists only on the brokerage side."""
        self._orders[order_id] = MockOrder(
            id=order_id,
            kind="market",
            ticker=ticker,
            quantity=quantity,
            price=price,
            status=status,
            filled_quantity=filled_quantity,
        )

    def get_mock_order(self, order_id: str) -> Optional[MockOrder]:
        return self._orders.get(order_id)

    def orders_of_kind(self, kind: str) -> List[MockOrder]:
        return [o for o in self._orders.values() if o.kind == kind]

    # --------------------------------------------------------
    # BROKERAGE INTERFACE
    # --------------------------------------------------------

    async def place_market_order(self, request: MarketOrderRequest) -> PlacedOrder:
        self._record("place_market_order", request)
        order = self._new_order("market", request.ticker, request.quantity)
        if self._market_scripts:
            order.script = deque(self._market_scripts.popleft())
        elif self._config.immediate_fill:
            order.script = deque(["FILLED"])
        else:
            order.script = deque(["NEW"])
        return PlacedOrder(id=order.id, status=order.status)

    async def place_limit_order(self, request: LimitOrderRequest) -> PlacedOrder:
        self._record("place_limit_order", request)
        order = self._new_order("limit", request.ticker, request.quantity, request.limit_price)
        return PlacedOrder(id=order.id, status=order.status)

    async def place_stop_order(self, request: StopOrderRequest) -> PlacedOrder:
        self._record("place_stop_order", request)
        order = self._new_order("stop", request.ticker, request.quantity, request.stop_price)
        return PlacedOrder(id=order.id, status=order.status)

    async def get_order(self, order_id: str) -> RemoteOrder:
        self._record("get_order", order_id)
        order = self._orders.get(order_id)
        if order is None:
            raise BrokerageApiError(f"Order {order_id} not found", status_code=404)
        if not order.cancelled:
            order.advance()
        return order.snapshot()

    async def cancel_order(self, order_id: str) -> None:
        self._record("cancel_order", order_id)
        order = self._orders.get(order_id)
        if order is None:
            raise BrokerageApiError(f"Order {order_id} not found", status_code=404)
        if order.status == "FILLED":
            raise BrokerageApiError(f"Order {order_id} already filled", status_code=400)
        order.cancelled = True
        order.status = "CANCELLED"

    # --------------------------------------------------------
    # INTERNALS
    # --------------------------------------------------------

    def _record(self, method: str, payload: Any) -> None:
        self.calls[method].append(payload)
        if method in self._fail_always:
            raise self._fail_always[method]
        if self._fail_once[method]:
            raise self._fail_once[method].popleft()

    def _new_order(
        self,
        kind: str,
        ticker: str,
        quantity: float,
        price: Optional[float] = None,
    ) -> MockOrder:
        order_id = str(next(self._ids))
        fill_price = self._config.prices.get(ticker, self._config.default_price)
        order = MockOrder(
            id=order_id,
            kind=kind,
            ticker=ticker,
            quantity=quantity,
            price=price if price is not None and kind == "limit" else fill_price,
        )
        self._orders[order_id] = order
        logger.debug(f"Mock {kind} order {order_id}: {ticker} x{quantity}")
        return order


__all__ = [
    "MockConfig",
    "MockOrder",
    "MockBrokerageClient",
]
