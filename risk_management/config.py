"""
Risk Management - Configuration.

============================================================
PURPOSE
============================================================
Thresholds for pre-trade admission (Risk Guard) and the
post-close protection rules (Protection Manager).

All percentages are fractions: 0.05 means 5%.
All durations are minutes.

============================================================
"""

import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv


load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


# ============================================================
# RISK GUARD
# ============================================================

@dataclass
class RiskConfig:
    """Pre-trade limits. Only BUY proposals are checked against them."""

    max_positions: int = 5
    """Maximum concurrently open positions."""

    max_position_size_pct: float = 0.15
    """Maximum position notional as a fraction of portfolio value."""

    max_risk_per_trade_pct: float = 0.02
    """Maximum (notional x stop distance) as a fraction of portfolio value."""

    max_sector_concentration: int = 3
    """Maximum open positions per sector."""

    max_sector_value_pct: float = 0.35
    """Maximum sector exposure as a fraction of portfolio value."""

    daily_loss_limit_pct: float = 0.05
    """Today's loss beyond this fraction signals a pause."""

    max_drawdown_alert_pct: float = 0.10
    """Drawdown from peak value beyond this fraction signals an alert."""

    stop_loss_pct: float = 0.05
    """Stop distance assumed when a proposal carries none."""

    streak_reduction_threshold: int = 3
    """Consecutive losses per sizing reduction step."""

    streak_reduction_factor: float = 0.5
    """Size multiplier applied per reduction step."""

    def validate(self) -> List[str]:
        errors = []
        if self.max_positions < 1:
            errors.append("max_positions must be >= 1")
        for name in (
            "max_position_size_pct",
            "max_risk_per_trade_pct",
            "max_sector_value_pct",
            "daily_loss_limit_pct",
            "max_drawdown_alert_pct",
            "stop_loss_pct",
        ):
            value = getattr(self, name)
            if not 0 < value <= 1:
                errors.append(f"{name} must be in (0, 1]")
        if self.max_sector_concentration < 1:
            errors.append("max_sector_concentration must be >= 1")
        if self.streak_reduction_threshold < 0:
            errors.append("streak_reduction_threshold must be >= 0")
        if not 0 <= self.streak_reduction_factor <= 1:
            errors.append("streak_reduction_factor must be in [0, 1]")
        return errors

    @classmethod
    def from_env(cls) -> "RiskConfig":
        return cls(
            max_positions=_env_int("RISK_MAX_POSITIONS", 5),
            max_position_size_pct=_env_float("RISK_MAX_POSITION_SIZE_PCT", 0.15),
            max_risk_per_trade_pct=_env_float("RISK_MAX_RISK_PER_TRADE_PCT", 0.02),
            max_sector_concentration=_env_int("RISK_MAX_SECTOR_CONCENTRATION", 3),
            max_sector_value_pct=_env_float("RISK_MAX_SECTOR_VALUE_PCT", 0.35),
            daily_loss_limit_pct=_env_float("RISK_DAILY_LOSS_LIMIT_PCT", 0.05),
            max_drawdown_alert_pct=_env_float("RISK_MAX_DRAWDOWN_ALERT_PCT", 0.10),
            stop_loss_pct=_env_float("STOP_LOSS_PCT", 0.05),
            streak_reduction_threshold=_env_int("RISK_STREAK_REDUCTION_THRESHOLD", 3),
            streak_reduction_factor=_env_float("RISK_STREAK_REDUCTION_FACTOR", 0.5),
        )


# ============================================================
# PROTECTION RULES
# ============================================================

@dataclass
class CooldownConfig:
    """Lock a symbol for a while after every close."""

    enabled: bool = True
    minutes: float = 30.0


@dataclass
class StoplossGuardConfig:
    """Lock after too many stop-loss exits in a window."""

    enabled: bool = True
    trade_limit: int = 3
    lookback_minutes: float = 120.0
    lock_minutes: float = 60.0

    only_per_pair: bool = False
    """Count and lock per symbol instead of book-wide."""


@dataclass
class MaxDrawdownConfig:
    """Lock the whole book when realized drawdown in a window is too deep."""

    enabled: bool = True
    max_drawdown_pct: float = 0.10
    lookback_minutes: float = 1440.0
    lock_minutes: float = 120.0


@dataclass
class LowProfitConfig:
    """Lock a symbol whose recent closes sum below a floor."""

    enabled: bool = True
    min_profit: float = -0.05
    trade_limit: int = 3
    lookback_minutes: float = 10080.0
    lock_minutes: float = 1440.0


@dataclass
class ProtectionConfig:
    """All post-close protection rules."""

    cooldown: CooldownConfig = field(default_factory=CooldownConfig)
    stoploss_guard: StoplossGuardConfig = field(default_factory=StoplossGuardConfig)
    max_drawdown: MaxDrawdownConfig = field(default_factory=MaxDrawdownConfig)
    low_profit: LowProfitConfig = field(default_factory=LowProfitConfig)

    def validate(self) -> List[str]:
        errors = []
        if self.cooldown.minutes < 0:
            errors.append("cooldown.minutes must be >= 0")
        if self.stoploss_guard.trade_limit < 1:
            errors.append("stoploss_guard.trade_limit must be >= 1")
        if not 0 < self.max_drawdown.max_drawdown_pct <= 1:
            errors.append("max_drawdown.max_drawdown_pct must be in (0, 1]")
        if self.low_profit.trade_limit < 1:
            errors.append("low_profit.trade_limit must be >= 1")
        for name in ("stoploss_guard", "max_drawdown", "low_profit"):
            rule = getattr(self, name)
            if rule.lookback_minutes <= 0:
                errors.append(f"{name}.lookback_minutes must be positive")
            if rule.lock_minutes <= 0:
                errors.append(f"{name}.lock_minutes must be positive")
        return errors

    @classmethod
    def from_env(cls) -> "ProtectionConfig":
        return cls(
            cooldown=CooldownConfig(
                enabled=_env_bool("PROTECTION_COOLDOWN_ENABLED", True),
                minutes=_env_float("PROTECTION_COOLDOWN_MINUTES", 30.0),
            ),
            stoploss_guard=StoplossGuardConfig(
                enabled=_env_bool("PROTECTION_STOPLOSS_GUARD_ENABLED", True),
                trade_limit=_env_int("PROTECTION_STOPLOSS_GUARD_TRADE_LIMIT", 3),
                lookback_minutes=_env_float("PROTECTION_STOPLOSS_GUARD_LOOKBACK_MINUTES", 120.0),
                lock_minutes=_env_float("PROTECTION_STOPLOSS_GUARD_LOCK_MINUTES", 60.0),
                only_per_pair=_env_bool("PROTECTION_STOPLOSS_GUARD_ONLY_PER_PAIR", False),
            ),
            max_drawdown=MaxDrawdownConfig(
                enabled=_env_bool("PROTECTION_MAX_DRAWDOWN_ENABLED", True),
                max_drawdown_pct=_env_float("PROTECTION_MAX_DRAWDOWN_PCT", 0.10),
                lookback_minutes=_env_float("PROTECTION_MAX_DRAWDOWN_LOOKBACK_MINUTES", 1440.0),
                lock_minutes=_env_float("PROTECTION_MAX_DRAWDOWN_LOCK_MINUTES", 120.0),
            ),
            low_profit=LowProfitConfig(
                enabled=_env_bool("PROTECTION_LOW_PROFIT_ENABLED", True),
                min_profit=_env_float("PROTECTION_LOW_PROFIT_MIN_PROFIT", -0.05),
                trade_limit=_env_int("PROTECTION_LOW_PROFIT_TRADE_LIMIT", 3),
                lookback_minutes=_env_float("PROTECTION_LOW_PROFIT_LOOKBACK_MINUTES", 10080.0),
                lock_minutes=_env_float("PROTECTION_LOW_PROFIT_LOCK_MINUTES", 1440.0),
            ),
        )

    @classmethod
    def all_disabled(cls) -> "ProtectionConfig":
        """Every rule off; tests switch on the one under test."""
        return cls(
            cooldown=CooldownConfig(enabled=False),
            stoploss_guard=StoplossGuardConfig(enabled=False),
            max_drawdown=MaxDrawdownConfig(enabled=False),
            low_profit=LowProfitConfig(enabled=False),
        )


__all__ = [
    "RiskConfig",
    "CooldownConfig",
    "StoplossGuardConfig",
    "MaxDrawdownConfig",
    "LowProfitConfig",
    "ProtectionConfig",
]
