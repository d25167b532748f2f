"""
DCA Manager Tests.

============================================================
PURPOSE
============================================================
Tests for cost-averaging evaluation and execution.

TEST CATEGORIES:
- Volume-weighted average arithmetic
- Trigger checks in order
- Dry-run and live rounds
- Lock and missing position rejection

============================================================
"""

import pytest

from conftest import get_position, make_buy
from database import OrderRepository, TradeRepository
from execution_engine import DCAConfig, DCAManager, PartialExitManager, volume_weighted_average


async def _open(manager, shares: float = 10, price: float = 100.0):
    result = await manager.execute_buy(make_buy(shares=shares, price=price))
    assert result.success


# ============================================================
# ARITHMETIC
# ============================================================

class TestVolumeWeightedAverage:
    """Tests for volume_weighted_average."""

    def test_average_over_total_capital(self):
        """Test 10 @ 100 plus 20 @ 110 averages to 320/3."""
        invested, shares, avg = volume_weighted_average(1000.0, 10, 20, 110.0)

        assert invested == pytest.approx(3200.0)
        assert shares == 30
        assert avg == pytest.approx(320 / 3)


# ============================================================
# EVALUATION
# ============================================================

class TestEvaluatePosition:
    """Tests for DCAManager.evaluate_position."""

    @pytest.mark.asyncio
    async def test_triggers_below_first_round_threshold(self, db, dry_run_manager):
        """Test a 6% drop fires round 1 with the original share count."""
        await _open(dry_run_manager)
        dca = DCAManager(dry_run_manager, DCAConfig(min_time_between_minutes=0))

        evaluation = dca.evaluate_position("AAPL", 94.0, get_position(db, "AAPL"), 10_000)

        assert evaluation.should_dca
        assert evaluation.dca_round == 1
        assert evaluation.shares_to_buy == 10
        assert evaluation.new_avg_price == pytest.approx(97.0)

    @pytest.mark.asyncio
    async def test_disabled(self, db, dry_run_manager):
        await _open(dry_run_manager)
        dca = DCAManager(dry_run_manager, DCAConfig(enabled=False))

        evaluation = dca.evaluate_position("AAPL", 50.0, get_position(db, "AAPL"), 10_000)

        assert not evaluation.should_dca
        assert evaluation.reason == "DCA feature disabled"

    @pytest.mark.asyncio
    async def test_price_not_low_enough(self, db, dry_run_manager):
        """Test a 4% drop does not reach the 5% first-round trigger."""
        await _open(dry_run_manager)
        dca = DCAManager(dry_run_manager, DCAConfig(min_time_between_minutes=0))

        evaluation = dca.evaluate_position("AAPL", 96.0, get_position(db, "AAPL"), 10_000)

        assert not evaluation.should_dca
        assert evaluation.reason.startswith("Price not low enough")

    @pytest.mark.asyncio
    async def test_too_soon_since_last_buy(self, db, dry_run_manager):
        """Test the minimum spacing from the last BUY."""
        await _open(dry_run_manager)
        dca = DCAManager(dry_run_manager, DCAConfig(min_time_between_minutes=60))

        evaluation = dca.evaluate_position("AAPL", 90.0, get_position(db, "AAPL"), 10_000)

        assert not evaluation.should_dca
        assert evaluation.reason.startswith("Too soon since last buy")

    @pytest.mark.asyncio
    async def test_insufficient_cash(self, db, dry_run_manager):
        await _open(dry_run_manager)
        dca = DCAManager(dry_run_manager, DCAConfig(min_time_between_minutes=0))

        evaluation = dca.evaluate_position("AAPL", 90.0, get_position(db, "AAPL"), 100.0)

        assert not evaluation.should_dca
        assert evaluation.reason.startswith("Insufficient cash")

    @pytest.mark.asyncio
    async def test_shares_below_one(self, db, dry_run_manager):
        """Test a multiplier that rounds the round size to zero."""
        await _open(dry_run_manager, shares=1)
        await DCAManager(dry_run_manager).execute_dca("AAPL", 1, 90.0)
        dca = DCAManager(dry_run_manager, DCAConfig(min_time_between_minutes=0, size_multiplier=0.5))

        evaluation = dca.evaluate_position("AAPL", 80.0, get_position(db, "AAPL"), 10_000)

        assert not evaluation.should_dca
        assert evaluation.reason.startswith("Calculated DCA shares < 1")

    @pytest.mark.asyncio
    async def test_max_rounds(self, db, dry_run_manager):
        await _open(dry_run_manager)
        dca = DCAManager(dry_run_manager, DCAConfig(max_rounds=1, min_time_between_minutes=0))
        await dca.execute_dca("AAPL", 10, 90.0)

        evaluation = dca.evaluate_position("AAPL", 50.0, get_position(db, "AAPL"), 10_000)

        assert not evaluation.should_dca
        assert evaluation.reason == "Max DCA rounds reached (1)"

    @pytest.mark.asyncio
    async def test_later_rounds_measure_from_original_entry(self, db, dry_run_manager):
        """Test round 2 triggers at 10% below the opening price, not the average."""
        await _open(dry_run_manager)
        dca = DCAManager(dry_run_manager, DCAConfig(min_time_between_minutes=0))
        await dca.execute_dca("AAPL", 10, 90.0)

        position = get_position(db, "AAPL")
        assert position.entry_price == pytest.approx(95.0)

        # 88 < 100 x 0.90 but above 95 x 0.90
        evaluation = dca.evaluate_position("AAPL", 88.0, position, 10_000)

        assert evaluation.should_dca
        assert evaluation.dca_round == 2
        assert evaluation.shares_to_buy == 10


# ============================================================
# EXECUTION
# ============================================================

class TestExecuteDca:
    """Tests for DCAManager.execute_dca."""

    @pytest.mark.asyncio
    async def test_dry_run_updates_average(self, db, dry_run_manager):
        """Test 10 @ 100 plus 20 @ 110 leaves 30 shares at 320/3."""
        await _open(dry_run_manager)

        result = await DCAManager(dry_run_manager).execute_dca("AAPL", 20, 110.0)

        assert result.success
        assert result.total_shares == 30
        assert result.new_avg_price == pytest.approx(320 / 3)

        position = get_position(db, "AAPL")
        assert position.shares == 30
        assert position.entry_price == pytest.approx(320 / 3)
        assert position.dca_count == 1
        assert position.total_invested == pytest.approx(3200.0)

        with db.session_scope() as session:
            trades = TradeRepository(session).list_for_symbol("AAPL")
            assert [t.dca_round for t in trades] == [None, 1]
            assert trades[1].ai_reasoning == "DCA round 1"
            order = OrderRepository(session).get(result.order_id)
            assert order.order_tag == "dca"
            assert order.status == "filled"
            assert order.external_order_id.startswith("dry_run_BUY_DCA_AAPL_")

    @pytest.mark.asyncio
    async def test_round_after_partial_exit(self, db, dry_run_manager):
        """Test shares sold at average cost leave the next average correct."""
        await _open(dry_run_manager)
        dca = DCAManager(dry_run_manager)
        assert (await dca.execute_dca("AAPL", 10, 90.0)).success

        sold = await PartialExitManager(dry_run_manager).execute_partial_exit("AAPL", 5, "scale out")
        assert sold.success
        position = get_position(db, "AAPL")
        assert position.entry_price == pytest.approx(95.0)
        assert position.total_invested == pytest.approx(1425.0)

        result = await dca.execute_dca("AAPL", 10, 85.0)

        assert result.success
        assert result.new_avg_price == pytest.approx(91.0)
        position = get_position(db, "AAPL")
        assert position.shares == 25
        assert position.entry_price == pytest.approx(91.0)
        assert position.total_invested == pytest.approx(2275.0)

    @pytest.mark.asyncio
    async def test_live_round(self, db, client, live_manager):
        """Test a live round fills at the brokerage price without new stops."""
        await _open(live_manager)
        client.set_price("AAPL_US_EQ", 90.0)

        result = await DCAManager(live_manager).execute_dca("AAPL", 10, 91.0)

        assert result.success
        assert result.fill_price == pytest.approx(90.0)
        assert result.new_avg_price == pytest.approx(95.0)
        assert len(client.calls["place_stop_order"]) == 1
        assert get_position(db, "AAPL").shares == 20

    @pytest.mark.asyncio
    async def test_live_fill_failure(self, db, client, live_manager):
        """Test an unfilled round leaves the position unchanged."""
        await _open(live_manager)
        client.script_next_market_order("REJECTED")

        result = await DCAManager(live_manager).execute_dca("AAPL", 10, 90.0)

        assert not result.success
        assert get_position(db, "AAPL").shares == 10
        assert get_position(db, "AAPL").dca_count == 0

    @pytest.mark.asyncio
    async def test_no_position(self, dry_run_manager):
        result = await DCAManager(dry_run_manager).execute_dca("MSFT", 10, 90.0)

        assert not result.success
        assert result.error == "No position found for MSFT"

    @pytest.mark.asyncio
    async def test_pair_lock_blocks_round(self, db, dry_run_manager, pair_locks):
        """Test a lock stops the round before any order is written."""
        await _open(dry_run_manager)
        pair_locks.lock_pair("AAPL", 60, "stoploss_guard")

        result = await DCAManager(dry_run_manager).execute_dca("AAPL", 10, 90.0)

        assert not result.success
        assert result.error == "Pair locked: stoploss_guard"
        assert get_position(db, "AAPL").shares == 10


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
