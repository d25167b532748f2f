"""
Pair Lock Manager Tests.

============================================================
PURPOSE
============================================================
Tests for symbol / global locks and side matching.

============================================================
"""

import pytest

from risk_management import ANY_SIDE, PairLockManager


class TestLocking:
    """Tests for lock installation and removal."""

    def test_lock_and_query(self, pair_locks):
        lock = pair_locks.lock_pair("AAPL", 30, "cooldown")

        check = pair_locks.is_pair_locked("AAPL")

        assert check.locked
        assert check.reason == "cooldown"
        assert check.lock_end == lock.lock_end
        assert not pair_locks.is_pair_locked("MSFT").locked

    def test_invalid_side_rejected(self, pair_locks):
        with pytest.raises(ValueError, match="Invalid lock side"):
            pair_locks.lock_pair("AAPL", 30, "bad", side="sideways")

    def test_unlock_deactivates_all(self, pair_locks):
        pair_locks.lock_pair("AAPL", 30, "cooldown")
        pair_locks.lock_pair("AAPL", 60, "low_profit")

        assert pair_locks.unlock_pair("AAPL") == 2
        assert not pair_locks.is_pair_locked("AAPL").locked

    def test_expired_lock_not_in_effect(self, pair_locks):
        pair_locks.lock_pair("AAPL", -1, "old")

        assert not pair_locks.is_pair_locked("AAPL").locked
        assert pair_locks.cleanup_expired() == 1
        assert pair_locks.cleanup_expired() == 0

    def test_active_locks_listed(self, pair_locks):
        pair_locks.lock_pair("AAPL", 30, "cooldown")
        pair_locks.lock_global(30, "max_drawdown")

        reasons = sorted(lock.reason for lock in pair_locks.get_active_locks())

        assert reasons == ["cooldown", "max_drawdown"]

    def test_lock_for_symbol_excludes_global(self, pair_locks):
        pair_locks.lock_global(30, "max_drawdown")

        assert pair_locks.get_lock_for_symbol("AAPL") is None


class TestSideMatching:
    """A lock matches when either side is '*' or both sides agree."""

    def test_global_lock_blocks_everything(self, pair_locks):
        pair_locks.lock_global(30, "stoploss_guard")

        for side in (ANY_SIDE, "long", "short"):
            check = pair_locks.is_pair_locked("TSLA", side)
            assert check.locked
            assert check.reason == "stoploss_guard"
        assert pair_locks.is_global_locked().locked

    def test_long_lock_does_not_block_short(self, pair_locks):
        pair_locks.lock_pair("AAPL", 30, "long only", side="long")

        assert pair_locks.is_pair_locked("AAPL", "long").locked
        assert not pair_locks.is_pair_locked("AAPL", "short").locked
        assert pair_locks.is_pair_locked("AAPL", ANY_SIDE).locked

    def test_symbol_lock_checked_before_global(self, pair_locks):
        pair_locks.lock_global(30, "max_drawdown")
        pair_locks.lock_pair("AAPL", 30, "cooldown")

        assert pair_locks.is_pair_locked("AAPL").reason == "cooldown"
        assert pair_locks.is_pair_locked("MSFT").reason == "max_drawdown"

    def test_no_global_lock(self, db):
        assert not PairLockManager(db).is_global_locked().locked


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
