"""
Order Manager Tests.

============================================================
PURPOSE
============================================================
Tests for buy / close execution and ledger consistency.

TEST CATEGORIES:
- Dry-run buy and close
- Duplicate rejection (sequential and concurrent)
- Live buy with stop and take-profit
- Stop failure: flatten, then unprotected
- Submission failures and fill timeouts
- Pair lock gate
- Reconciliation during a fill wait
- Ledger failures after an exchange fill
- Protection rules after close

============================================================
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import get_position, make_buy, set_current_price
from database import DatabasePersistenceError, OrderRepository, PositionRepository, TradeRepository
from execution_engine import (
    CloseRequest,
    ExecutionConfig,
    FillWaiter,
    OrderManager,
    OrderSynchronizer,
    OrderSide,
    OrderTag,
    ProtectionStatus,
)
from risk_management import ProtectionConfig, ProtectionManager


def _positions(db) -> int:
    with db.session_scope() as session:
        return PositionRepository(session).count()


def _trades(db, symbol: str = "AAPL"):
    with db.session_scope() as session:
        return TradeRepository(session).list_for_symbol(symbol)


def _orders(db, symbol: str = "AAPL"):
    with db.session_scope() as session:
        return OrderRepository(session).get_orders_for_symbol(symbol)


def _order_by_tag(db, tag: str, symbol: str = "AAPL"):
    return [o for o in _orders(db, symbol) if o.order_tag == tag]


# ============================================================
# DRY-RUN TESTS
# ============================================================

class TestDryRun:
    """Dry-run buys and closes write the ledger without brokerage calls."""

    @pytest.mark.asyncio
    async def test_buy_creates_position_trade_and_filled_order(self, db, client, dry_run_manager):
        """Test a dry-run buy writes all three rows."""
        result = await dry_run_manager.execute_buy(make_buy(shares=10, price=100.0))

        assert result.success
        assert result.fill_price == 100.0
        assert result.external_order_id.startswith("dry_run_BUY_AAPL_")
        assert result.protection_status == ProtectionStatus.NOT_APPLICABLE

        position = get_position(db, "AAPL")
        assert position.shares == 10
        assert position.stop_loss == pytest.approx(95.0)
        assert position.take_profit == pytest.approx(110.0)

        (entry,) = _orders(db)
        assert entry.status == "filled"
        assert entry.order_tag == "entry"
        assert entry.trade_id is not None
        assert len(_trades(db)) == 1
        assert client.calls == {}

    @pytest.mark.asyncio
    async def test_duplicate_buy_rejected(self, db, dry_run_manager):
        """Test a second buy on a held symbol fails and writes nothing."""
        await dry_run_manager.execute_buy(make_buy())

        result = await dry_run_manager.execute_buy(make_buy(shares=5))

        assert not result.success
        assert result.error == "Position already exists for AAPL"
        assert get_position(db, "AAPL").shares == 10
        assert len(_trades(db)) == 1
        assert len(_orders(db)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_buys_open_one_position(self, db, dry_run_manager):
        """Test concurrent buys on one symbol leave exactly one position."""
        results = await asyncio.gather(
            dry_run_manager.execute_buy(make_buy()),
            dry_run_manager.execute_buy(make_buy()),
        )

        assert sum(r.success for r in results) == 1
        assert _positions(db) == 1

    @pytest.mark.asyncio
    async def test_invalid_request_rejected(self, db, dry_run_manager):
        """Test non-positive shares are rejected before any write."""
        result = await dry_run_manager.execute_buy(make_buy(shares=0))

        assert not result.success
        assert _orders(db) == []

    @pytest.mark.asyncio
    async def test_buy_then_close(self, db, dry_run_manager):
        """Test close removes the position and records a matching SELL."""
        await dry_run_manager.execute_buy(make_buy(shares=10, price=100.0))
        set_current_price(db, "AAPL", 110.0)

        result = await dry_run_manager.execute_close(CloseRequest(symbol="AAPL", reason="signal exit"))

        assert result.success
        assert result.side == OrderSide.SELL
        assert result.fill_price == 110.0
        assert result.pnl == pytest.approx(100.0)
        assert result.pnl_pct == pytest.approx(0.10)
        assert _positions(db) == 0

        trades = _trades(db)
        assert sorted(t.side for t in trades) == ["BUY", "SELL"]
        assert {t.shares for t in trades} == {10}
        sell = next(t for t in trades if t.side == "SELL")
        assert sell.exit_reason == "signal exit"

    @pytest.mark.asyncio
    async def test_close_uses_caller_tag(self, db, dry_run_manager):
        """Test an explicit tag wins over the reason text."""
        await dry_run_manager.execute_buy(make_buy())

        await dry_run_manager.execute_close(CloseRequest(
            symbol="AAPL", reason="stop loss hit", tag=OrderTag.EXIT,
        ))

        assert len(_order_by_tag(db, "exit")) == 1
        assert _order_by_tag(db, "stoploss") == []

    @pytest.mark.asyncio
    async def test_close_classifies_reason_without_tag(self, db, dry_run_manager):
        """Test legacy callers get their reason classified."""
        await dry_run_manager.execute_buy(make_buy())

        await dry_run_manager.execute_close(CloseRequest(symbol="AAPL", reason="Take profit reached"))

        assert len(_order_by_tag(db, "take_profit")) == 1

    @pytest.mark.asyncio
    async def test_close_without_position(self, dry_run_manager):
        """Test closing an unknown symbol fails cleanly."""
        result = await dry_run_manager.execute_close(CloseRequest(symbol="MSFT", reason="exit"))

        assert not result.success
        assert result.error == "No position found for MSFT"

    @pytest.mark.asyncio
    async def test_pair_lock_blocks_buy(self, db, dry_run_manager, pair_locks):
        """Test an active lock rejects the entry."""
        pair_locks.lock_pair("AAPL", 30, "cooldown")

        result = await dry_run_manager.execute_buy(make_buy())

        assert not result.success
        assert result.error == "Pair locked: cooldown"
        assert _positions(db) == 0

    @pytest.mark.asyncio
    async def test_short_lock_does_not_block_buy(self, db, dry_run_manager, pair_locks):
        """Test a short-side lock leaves long entries open."""
        pair_locks.lock_pair("AAPL", 30, "short only", side="short")

        result = await dry_run_manager.execute_buy(make_buy())

        assert result.success


# ============================================================
# LIVE TESTS
# ============================================================

class TestLiveBuy:
    """Live buys against the mock brokerage."""

    @pytest.mark.asyncio
    async def test_buy_places_stop_and_take_profit(self, db, client, live_manager):
        """Test a filled buy is protected by a GTC stop and a take-profit."""
        client.set_price("AAPL_US_EQ", 200.0)

        result = await live_manager.execute_buy(make_buy(price=198.0))

        assert result.success
        assert result.protection_status == ProtectionStatus.PROTECTED
        assert result.fill_price == pytest.approx(200.0)
        assert result.slippage == pytest.approx(2.0 / 198.0)

        (stop_request,) = client.calls["place_stop_order"]
        assert stop_request.quantity == -10
        assert stop_request.stop_price == pytest.approx(190.0)
        (tp_request,) = client.calls["place_limit_order"]
        assert tp_request.limit_price == pytest.approx(220.0)

        position = get_position(db, "AAPL")
        assert position.protection_status == "protected"
        assert position.stop_order_id == result.stop_order_id
        assert position.take_profit_order_id == result.take_profit_order_id

        (stop_order,) = _order_by_tag(db, "stoploss")
        assert stop_order.status == "open"
        assert stop_order.external_order_id == result.stop_order_id

        (entry,) = _order_by_tag(db, "entry")
        assert entry.status == "filled"
        assert entry.filled_price == pytest.approx(200.0)

    @pytest.mark.asyncio
    async def test_settlement_delay_before_stop(self, db, client):
        """Test the stop waits for the configured settlement delay."""
        config = ExecutionConfig.for_testing(dry_run=False)
        config.stop_loss_delay_seconds = 3.0
        sleep = AsyncMock()
        manager = OrderManager(db, client, config, sleep=sleep)

        await manager.execute_buy(make_buy())

        sleep.assert_awaited_once_with(3.0)

    @pytest.mark.asyncio
    async def test_take_profit_failure_is_non_fatal(self, db, client, live_manager):
        """Test a refused take-profit leaves the buy protected."""
        client.fail_always("place_limit_order")

        result = await live_manager.execute_buy(make_buy())

        assert result.success
        assert result.take_profit_order_id is None
        assert result.protection_status == ProtectionStatus.PROTECTED

    @pytest.mark.asyncio
    async def test_concurrent_live_buys_open_one_position(self, db, live_manager):
        """Test the in-flight guard rejects a racing second entry."""
        results = await asyncio.gather(
            live_manager.execute_buy(make_buy()),
            live_manager.execute_buy(make_buy()),
        )

        assert sum(r.success for r in results) == 1
        failure = next(r for r in results if not r.success)
        assert failure.error == "Position already exists for AAPL"
        assert _positions(db) == 1

    @pytest.mark.asyncio
    async def test_stop_failure_flattens(self, db, client, live_manager):
        """Test a refused stop closes the position at market."""
        client.fail_always("place_stop_order")

        result = await live_manager.execute_buy(make_buy())

        assert not result.success
        assert result.protection_status == ProtectionStatus.FLATTENED
        assert _positions(db) == 0

        trades = _trades(db)
        assert sorted(t.side for t in trades) == ["BUY", "SELL"]
        assert all(t.shares == 10 for t in trades)

        (flatten,) = _order_by_tag(db, "exit")
        assert flatten.status == "filled"
        assert flatten.trade_id is not None

    @pytest.mark.asyncio
    async def test_stop_and_flatten_failure_leaves_unprotected(self, db, client, pair_locks):
        """Test the position stays open, flagged, and the critical alert fires."""
        on_critical = AsyncMock()
        live_manager = OrderManager(
            db, client, ExecutionConfig.for_testing(dry_run=False),
            pair_locks=pair_locks, on_critical=on_critical,
        )
        client.fail_always("place_stop_order")
        client.script_next_market_order("FILLED")
        client.script_next_market_order("REJECTED")

        result = await live_manager.execute_buy(make_buy())

        assert result.success
        assert result.protection_status == ProtectionStatus.UNPROTECTED
        assert "MANUAL INTERVENTION REQUIRED" in result.error
        on_critical.assert_awaited_once()

        position = get_position(db, "AAPL")
        assert position.protection_status == "unprotected"
        assert position.stop_order_id is None
        assert [t.side for t in _trades(db)] == ["BUY"]

        (flatten,) = _order_by_tag(db, "exit")
        assert flatten.status == "failed"

    @pytest.mark.asyncio
    async def test_submission_failure_marks_order_failed(self, db, client, live_manager):
        """Test a refused market order leaves a failed row and no position."""
        client.fail_next("place_market_order")

        result = await live_manager.execute_buy(make_buy())

        assert not result.success
        assert _positions(db) == 0
        (entry,) = _orders(db)
        assert entry.status == "failed"
        assert entry.external_order_id is None

        # Failed entry no longer counts as in flight
        retry = await live_manager.execute_buy(make_buy())
        assert retry.success

    @pytest.mark.asyncio
    async def test_fill_timeout_cancels_and_fails(self, db, client, live_manager):
        """Test an unfilled order is cancelled once and recorded as failed."""
        client.script_next_market_order("NEW")

        result = await live_manager.execute_buy(make_buy())

        assert not result.success
        assert result.error == "Order fill timeout"
        assert len(client.calls["cancel_order"]) == 1
        assert _positions(db) == 0
        (entry,) = _orders(db)
        assert entry.status == "failed"
        assert entry.external_order_id == result.external_order_id

    @pytest.mark.asyncio
    async def test_rejected_order_reports_exchange_status(self, db, client, live_manager):
        """Test a rejected order is failed with the exchange status."""
        client.script_next_market_order("REJECTED")

        result = await live_manager.execute_buy(make_buy())

        assert not result.success
        assert result.error == "Exchange status: REJECTED"


class TestLiveClose:
    """Live closes against the mock brokerage."""

    @pytest.mark.asyncio
    async def test_close_cancels_protective_orders(self, db, client, live_manager):
        """Test stop and take-profit are cancelled before the market sell."""
        await live_manager.execute_buy(make_buy())
        client.set_price("AAPL_US_EQ", 90.0)

        result = await live_manager.execute_close(CloseRequest(
            symbol="AAPL", reason="stop loss", tag=OrderTag.STOPLOSS,
        ))

        assert result.success
        assert result.pnl == pytest.approx(-100.0)
        assert len(client.calls["cancel_order"]) == 2
        assert _positions(db) == 0

        statuses = {o.order_tag: o.status for o in _orders(db) if o.side == "SELL" and o.order_type != "market"}
        assert statuses == {"stoploss": "cancelled", "take_profit": "cancelled"}

        sell = next(t for t in _trades(db) if t.side == "SELL")
        assert sell.exit_price == pytest.approx(90.0)

    @pytest.mark.asyncio
    async def test_close_proceeds_when_cancel_fails(self, db, client, live_manager):
        """Test a failed protective cancel does not block the close."""
        await live_manager.execute_buy(make_buy())
        client.fail_always("cancel_order")

        result = await live_manager.execute_close(CloseRequest(symbol="AAPL", reason="exit"))

        assert result.success
        assert _positions(db) == 0

    @pytest.mark.asyncio
    async def test_close_fill_failure_keeps_position(self, db, client, live_manager):
        """Test an unfilled sell leaves the position in place."""
        await live_manager.execute_buy(make_buy())
        client.script_next_market_order("CANCELLED")

        result = await live_manager.execute_close(CloseRequest(symbol="AAPL", reason="exit"))

        assert not result.success
        assert _positions(db) == 1


# ============================================================
# RECONCILIATION DURING A FILL WAIT
# ============================================================

class TestSyncDuringFillWait:
    """An order reconciled to filled mid-wait is still booked once."""

    @pytest.mark.asyncio
    async def test_buy_books_position_after_sync_fills_entry(self, db, client, pair_locks):
        synchronizer = OrderSynchronizer(db, client)

        async def sweep(_seconds):
            await synchronizer.sync_open_orders()

        manager = OrderManager(
            db, client, ExecutionConfig.for_testing(dry_run=False),
            pair_locks=pair_locks, fill_waiter=FillWaiter(client, timeout_seconds=5, sleep=sweep),
        )
        client.script_next_market_order("NEW", "FILLED")

        result = await manager.execute_buy(make_buy())

        assert result.success
        assert result.protection_status == ProtectionStatus.PROTECTED
        assert get_position(db, "AAPL").shares == 10
        (entry,) = _order_by_tag(db, "entry")
        assert entry.status == "filled"
        assert entry.position_id is not None
        assert [t.side for t in _trades(db)] == ["BUY"]


# ============================================================
# LEDGER FAILURES AFTER AN EXCHANGE FILL
# ============================================================

def _failing_trade_writes(monkeypatch):
    def add(self, record):
        raise DatabasePersistenceError("Transaction failed: disk I/O error")

    monkeypatch.setattr(TradeRepository, "add", add)


class TestLedgerFailureAfterFill:
    """Failed post-fill writes come back as results, never exceptions."""

    @pytest.mark.asyncio
    async def test_trade_write_failure_after_stop(self, db, client, monkeypatch):
        on_critical = AsyncMock()
        manager = OrderManager(
            db, client, ExecutionConfig.for_testing(dry_run=False), on_critical=on_critical,
        )
        _failing_trade_writes(monkeypatch)

        result = await manager.execute_buy(make_buy())

        assert not result.success
        assert "MANUAL INTERVENTION REQUIRED" in result.error
        assert result.shares == 10
        assert result.stop_order_id is not None
        on_critical.assert_awaited_once()
        assert _positions(db) == 1

    @pytest.mark.asyncio
    async def test_flatten_write_failure(self, db, client, monkeypatch):
        on_critical = AsyncMock()
        manager = OrderManager(
            db, client, ExecutionConfig.for_testing(dry_run=False), on_critical=on_critical,
        )
        client.fail_always("place_stop_order")
        _failing_trade_writes(monkeypatch)

        result = await manager.execute_buy(make_buy())

        assert not result.success
        assert result.protection_status == ProtectionStatus.FLATTENED
        assert "flattened 10" in result.error
        on_critical.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_write_failure_keeps_position_row(self, db, client, monkeypatch):
        on_critical = AsyncMock()
        manager = OrderManager(
            db, client, ExecutionConfig.for_testing(dry_run=False), on_critical=on_critical,
        )
        await manager.execute_buy(make_buy())
        _failing_trade_writes(monkeypatch)

        result = await manager.execute_close(CloseRequest(symbol="AAPL", reason="exit"))

        assert not result.success
        assert result.error.startswith("MANUAL INTERVENTION REQUIRED: AAPL sold 10")
        assert result.fill_price is not None
        on_critical.assert_awaited_once()
        assert _positions(db) == 1


# ============================================================
# PROTECTIONS AFTER CLOSE
# ============================================================

class TestProtectionsAfterClose:
    """Closes run the protection rules when a manager is wired."""

    @staticmethod
    def _cooldown_only(db, pair_locks) -> ProtectionManager:
        config = ProtectionConfig.all_disabled()
        config.cooldown.enabled = True
        config.cooldown.minutes = 30
        return ProtectionManager(db, pair_locks, config)

    @pytest.mark.asyncio
    async def test_dry_run_close_installs_cooldown(self, db, client, pair_locks):
        manager = OrderManager(
            db, client, ExecutionConfig.for_testing(dry_run=True),
            pair_locks=pair_locks, protections=self._cooldown_only(db, pair_locks),
        )
        await manager.execute_buy(make_buy())

        await manager.execute_close(CloseRequest(symbol="AAPL", reason="signal exit"))

        assert pair_locks.is_pair_locked("AAPL").reason == "cooldown"
        retry = await manager.execute_buy(make_buy())
        assert retry.error == "Pair locked: cooldown"

    @pytest.mark.asyncio
    async def test_live_close_installs_cooldown(self, db, client, pair_locks):
        manager = OrderManager(
            db, client, ExecutionConfig.for_testing(dry_run=False),
            pair_locks=pair_locks, protections=self._cooldown_only(db, pair_locks),
        )
        await manager.execute_buy(make_buy())

        result = await manager.execute_close(CloseRequest(symbol="AAPL", reason="exit"))

        assert result.success
        assert pair_locks.is_pair_locked("AAPL").locked

    @pytest.mark.asyncio
    async def test_failing_protections_do_not_undo_close(self, db, client):
        protections = MagicMock()
        protections.evaluate_after_close.side_effect = RuntimeError("rules down")
        manager = OrderManager(
            db, client, ExecutionConfig.for_testing(dry_run=True), protections=protections,
        )
        await manager.execute_buy(make_buy())

        result = await manager.execute_close(CloseRequest(symbol="AAPL", reason="stop loss"))

        assert result.success
        assert _positions(db) == 0
        protections.evaluate_after_close.assert_called_once_with(
            "AAPL", "stop loss", 0.0, tag=OrderTag.STOPLOSS,
        )


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
