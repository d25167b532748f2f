"""
Types and Configuration Tests.

============================================================
PURPOSE
============================================================
Tests for exit reason classification and configuration
loading / validation.

============================================================
"""

import pytest

from execution_engine import (
    AccountType,
    DCAConfig,
    ExecutionConfig,
    OrderTag,
    PartialExitConfig,
    PartialExitTier,
    Trading212Config,
    classify_exit_reason,
)


# ============================================================
# EXIT REASON CLASSIFICATION
# ============================================================

class TestClassifyExitReason:
    """Tests for classify_exit_reason."""

    @pytest.mark.parametrize("reason, tag", [
        ("Take profit reached", OrderTag.TAKE_PROFIT),
        ("take_profit", OrderTag.TAKE_PROFIT),
        ("Stop-loss hit", OrderTag.STOPLOSS),
        ("STOPLOSS", OrderTag.STOPLOSS),
        ("Trailing stop triggered", OrderTag.STOPLOSS),
        ("stop trading signal", OrderTag.EXIT),
        ("Partial exit tier 1", OrderTag.PARTIAL_EXIT),
        ("AI sell signal", OrderTag.EXIT),
        ("", OrderTag.EXIT),
        (None, OrderTag.EXIT),
    ])
    def test_classification(self, reason, tag):
        assert classify_exit_reason(reason) == tag

    def test_take_profit_wins_over_stop(self):
        """Test precedence when both phrases appear."""
        assert classify_exit_reason("take profit before stop loss") == OrderTag.TAKE_PROFIT


# ============================================================
# CONFIGURATION
# ============================================================

class TestExecutionConfig:
    """Tests for ExecutionConfig."""

    def test_defaults_are_safe(self):
        config = ExecutionConfig()

        assert config.dry_run is True
        assert config.max_fill_polls == 20
        assert config.validate() == []

    def test_validate_reports_each_problem(self):
        config = ExecutionConfig(order_timeout_seconds=0, stop_loss_pct=1.5)

        errors = config.validate()

        assert "order_timeout_seconds must be positive" in errors
        assert "stop_loss_pct must be in (0, 1)" in errors

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("DRY_RUN", "false")
        monkeypatch.setenv("ORDER_TIMEOUT_SECONDS", "5")
        monkeypatch.setenv("ACCOUNT_TYPE", "isa")

        config = ExecutionConfig.from_env()

        assert config.dry_run is False
        assert config.order_timeout_seconds == 5.0
        assert config.max_fill_polls == 10
        assert config.account_type == AccountType.ISA

    def test_for_testing_has_no_delays(self):
        config = ExecutionConfig.for_testing(dry_run=False)

        assert config.fill_poll_interval_seconds == 0
        assert config.stop_loss_delay_seconds == 0


class TestFeatureConfigs:
    """Tests for partial exit, DCA and brokerage configs."""

    def test_partial_exit_tiers_must_increase(self):
        config = PartialExitConfig(tiers=[
            PartialExitTier(pct_gain=0.10, sell_pct=0.5),
            PartialExitTier(pct_gain=0.05, sell_pct=0.5),
        ])

        assert "tiers[1].pct_gain must increase" in config.validate()

    def test_partial_exit_tiers_from_env(self, monkeypatch):
        monkeypatch.setenv("PARTIAL_EXIT_TIERS", "0.03:0.2,0.08:0.4")

        config = PartialExitConfig.from_env()

        assert config.tiers == [
            PartialExitTier(pct_gain=0.03, sell_pct=0.2),
            PartialExitTier(pct_gain=0.08, sell_pct=0.4),
        ]

    def test_dca_bounds(self):
        errors = DCAConfig(max_rounds=0, drop_pct_per_round=1.0).validate()

        assert "max_rounds must be in [1, 20]" in errors
        assert "drop_pct_per_round must be in (0, 1)" in errors

    def test_trading212_requires_key(self):
        assert "api_key is required" in Trading212Config().validate()

    def test_trading212_environment_url(self):
        assert Trading212Config(api_key="k", environment="live").base_url == (
            "https://live.trading212.com/api/v0"
        )


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
