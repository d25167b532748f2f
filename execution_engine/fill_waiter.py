"""
Execution Engine - Fill Waiter.

============================================================
PURPOSE
============================================================
Await a submitted order's terminal state with a bounded
number of polls, cancelling it remotely on timeout.

PROTOCOL:
1. Poll get_order every poll interval, timeout x 2 times
2. FILLED -> fill price (filled value / filled quantity,
   falling back to value / quantity)
3. CANCELLED / REJECTED -> no fill
4. Anything else -> keep polling (partial fills are reported
   through on_partial_fill, the wait continues)
5. Timeout -> cancel. If the cancel raises, check the order
   once more: it may have filled in the gap

Used identically by buy, close, partial-exit and DCA flows.

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .adapters.base import BrokerageClient, RemoteOrder
from .config import ExecutionConfig
from .errors import BrokerageError
from .types import RemoteOrderStatus


logger = logging.getLogger(__name__)


@dataclass
class FillOutcome:
    """Result of waiting on one order."""

    filled: bool
    fill_price: Optional[float] = None
    filled_quantity: Optional[float] = None

    final_status: Optional[str] = None
    """Last remote status seen."""

    partial_quantity: Optional[float] = None
    """Largest partial fill observed while the order was working."""

    timed_out: bool = False
    cancel_attempted: bool = False
    polls: int = 0

    @property
    def error(self) -> Optional[str]:
        if self.filled:
            return None
        if self.timed_out:
            return "Order fill timeout"
        if self.final_status:
            return f"Order {self.final_status.lower()}"
        return "Order not filled"


class FillWaiter:
    """
    Generic await-terminal-state primitive.

    Args:
        client: Brokerage client to poll
        timeout_seconds: Budget; the number of polls is timeout x 2
        poll_interval_seconds: Delay between polls
        sleep: Awaitable sleep (injectable for tests)
    """

    def __init__(
        self,
        client: BrokerageClient,
        timeout_seconds: float = 10.0,
        poll_interval_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = client
        self._max_polls = max(1, int(timeout_seconds * 2))
        self._poll_interval = poll_interval_seconds
        self._sleep = sleep

    @classmethod
    def from_config(cls, client: BrokerageClient, config: ExecutionConfig) -> "FillWaiter":
        return cls(
            client,
            timeout_seconds=config.order_timeout_seconds,
            poll_interval_seconds=config.fill_poll_interval_seconds,
        )

    @property
    def max_polls(self) -> int:
        return self._max_polls

    async def wait_for_fill(
        self,
        order_id: str,
        on_partial_fill: Optional[Callable[[float], None]] = None,
    ) -> FillOutcome:
        """
        Block until the order fills, dies, or the budget runs out.

        Never raises for brokerage errors: poll failures are logged
        and polling continues.
        """
        outcome = FillOutcome(filled=False)

        for attempt in range(self._max_polls):
            outcome.polls = attempt + 1
            try:
                remote = await self._client.get_order(order_id)
            except BrokerageError as e:
                logger.warning(f"Order {order_id}: status poll {attempt + 1} failed: {e}")
                remote = None

            if remote is not None:
                outcome.final_status = remote.status

                if remote.status == RemoteOrderStatus.FILLED:
                    return self._filled(outcome, remote)

                if remote.status in (RemoteOrderStatus.CANCELLED, RemoteOrderStatus.REJECTED):
                    logger.warning(f"Order {order_id} ended {remote.status} without fill")
                    return outcome

                self._track_partial(order_id, remote, outcome, on_partial_fill)

            if attempt < self._max_polls - 1:
                await self._sleep(self._poll_interval)

        return await self._handle_timeout(order_id, outcome)

    def _filled(self, outcome: FillOutcome, remote: RemoteOrder) -> FillOutcome:
        outcome.filled = True
        outcome.fill_price = remote.fill_price
        outcome.filled_quantity = (
            abs(remote.filled_quantity) if remote.filled_quantity
            else abs(remote.quantity) if remote.quantity else None
        )
        logger.info(
            f"Order {remote.id} filled: {outcome.filled_quantity} @ {outcome.fill_price}"
        )
        return outcome

    def _track_partial(
        self,
        order_id: str,
        remote: RemoteOrder,
        outcome: FillOutcome,
        on_partial_fill: Optional[Callable[[float], None]],
    ) -> None:
        filled = abs(remote.filled_quantity or 0)
        requested = abs(remote.quantity or 0)
        if not 0 < filled < requested:
            return
        if outcome.partial_quantity is not None and filled <= outcome.partial_quantity:
            return

        outcome.partial_quantity = filled
        logger.info(f"Order {order_id} partially filled: {filled}/{requested}")
        if on_partial_fill is not None:
            on_partial_fill(filled)

    async def _handle_timeout(self, order_id: str, outcome: FillOutcome) -> FillOutcome:
        outcome.timed_out = True
        outcome.cancel_attempted = True
        logger.warning(
            f"Order {order_id} not filled after {self._max_polls} polls, cancelling"
        )

        try:
            await self._client.cancel_order(order_id)
            return outcome
        except BrokerageError as e:
            logger.warning(f"Cancel of order {order_id} failed: {e}, re-checking status")

        try:
            remote = await self._client.get_order(order_id)
        except BrokerageError as e:
            logger.error(f"Final status check of order {order_id} failed: {e}")
            return outcome

        outcome.final_status = remote.status
        if remote.status == RemoteOrderStatus.FILLED:
            outcome.timed_out = False
            logger.info(f"Order {order_id} filled during cancel window")
            return self._filled(outcome, remote)

        return outcome


__all__ = [
    "FillOutcome",
    "FillWaiter",
]
