"""
Fill Waiter Tests.

============================================================
PURPOSE
============================================================
Tests for the await-terminal-state primitive.

TEST CATEGORIES:
- Fills after N working polls
- Dead orders (cancelled / rejected)
- Timeout with exactly one cancel
- Cancel failure followed by a late fill
- Partial fill reporting
- Poll errors

============================================================
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from execution_engine import (
    BrokerageApiError,
    FillWaiter,
    MarketOrderRequest,
    MockBrokerageClient,
)
from execution_engine.adapters import MockConfig


async def _submit(client: MockBrokerageClient, quantity: float = 10, *steps) -> str:
    if steps:
        client.script_next_market_order(*steps)
    placed = await client.place_market_order(MarketOrderRequest(ticker="AAPL_US_EQ", quantity=quantity))
    return placed.id


@pytest.fixture
def client():
    c = MockBrokerageClient(MockConfig(immediate_fill=False))
    c.set_price("AAPL_US_EQ", 150.0)
    return c


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def waiter(client, sleep):
    """Two-second budget: four polls."""
    return FillWaiter(client, timeout_seconds=2, poll_interval_seconds=0.5, sleep=sleep)


class TestFillWaiter:
    """Tests for FillWaiter.wait_for_fill."""

    def test_poll_budget_is_timeout_times_two(self, waiter):
        """Test the number of polls derives from the timeout."""
        assert waiter.max_polls == 4

    @pytest.mark.asyncio
    async def test_fill_after_working_polls(self, client, waiter, sleep):
        """Test NEW x2 then FILLED returns filled value / filled quantity."""
        order_id = await _submit(client, 10, "NEW", "NEW", "FILLED")

        outcome = await waiter.wait_for_fill(order_id)

        assert outcome.filled
        assert outcome.fill_price == pytest.approx(150.0)
        assert outcome.filled_quantity == 10
        assert outcome.polls == 3
        assert sleep.await_count == 2
        assert client.calls["cancel_order"] == []

    @pytest.mark.asyncio
    async def test_never_fills_cancels_exactly_once(self, client, waiter, sleep):
        """Test an order stuck in NEW is cancelled once and reports no fill."""
        order_id = await _submit(client, 10, "NEW")

        outcome = await waiter.wait_for_fill(order_id)

        assert not outcome.filled
        assert outcome.timed_out
        assert outcome.cancel_attempted
        assert outcome.error == "Order fill timeout"
        assert len(client.calls["get_order"]) == 4
        assert client.calls["cancel_order"] == [order_id]
        # No sleep after the last poll
        assert sleep.await_count == 3

    @pytest.mark.asyncio
    async def test_cancel_failure_then_filled(self, client, waiter):
        """Test a failed cancel triggers one more status check that may find a fill."""
        order_id = await _submit(client, 10, "NEW", "NEW", "NEW", "NEW", "FILLED")
        client.fail_next("cancel_order", BrokerageApiError("Order already filled", status_code=400))

        outcome = await waiter.wait_for_fill(order_id)

        assert outcome.filled
        assert not outcome.timed_out
        assert outcome.fill_price == pytest.approx(150.0)
        assert len(client.calls["cancel_order"]) == 1
        assert len(client.calls["get_order"]) == 5

    @pytest.mark.asyncio
    async def test_cancel_failure_still_working(self, client, waiter):
        """Test a failed cancel with the order still working reports no fill."""
        order_id = await _submit(client, 10, "NEW")
        client.fail_next("cancel_order")

        outcome = await waiter.wait_for_fill(order_id)

        assert not outcome.filled
        assert outcome.timed_out

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["CANCELLED", "REJECTED"])
    async def test_dead_order_no_fill(self, client, waiter, status):
        """Test cancelled/rejected orders stop the wait without a cancel call."""
        order_id = await _submit(client, 10, "NEW", status)

        outcome = await waiter.wait_for_fill(order_id)

        assert not outcome.filled
        assert not outcome.timed_out
        assert outcome.final_status == status
        assert client.calls["cancel_order"] == []

    @pytest.mark.asyncio
    async def test_partial_fill_reported_and_wait_continues(self, client, waiter):
        """Test partial fills reach the callback once per increase."""
        order_id = await _submit(client, 10, ("WORKING", 4), ("WORKING", 4), ("WORKING", 7), "FILLED")
        partials = MagicMock()

        outcome = await waiter.wait_for_fill(order_id, on_partial_fill=partials)

        assert outcome.filled
        assert outcome.partial_quantity == 7
        assert [c.args[0] for c in partials.call_args_list] == [4, 7]

    @pytest.mark.asyncio
    async def test_poll_errors_do_not_abort(self, client, waiter):
        """Test a failing poll is logged and polling continues."""
        order_id = await _submit(client, 10, "FILLED")
        client.fail_next("get_order")

        outcome = await waiter.wait_for_fill(order_id)

        assert outcome.filled
        assert outcome.polls == 2

    @pytest.mark.asyncio
    async def test_sell_fill_price_positive(self, client, waiter):
        """Test negative (sell) quantities still give a positive price."""
        order_id = await _submit(client, -5, "FILLED")

        outcome = await waiter.wait_for_fill(order_id)

        assert outcome.fill_price == pytest.approx(150.0)
        assert outcome.filled_quantity == 5


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
