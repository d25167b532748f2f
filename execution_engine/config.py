"""
Execution Engine - Configuration.

============================================================
PURPOSE
============================================================
All configuration for order execution, scale-out, cost
averaging and the brokerage connection.

Every config is read-only to the engine. Values come from
the environment (via python-dotenv) or from code.

CRITICAL CONSTRAINTS:
- Bounded fill-wait (no infinite polling)
- DRY_RUN defaults to true

============================================================
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

from .types import AccountType, PartialExitTier


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
# EXECUTION CONFIGURATION
# ============================================================

@dataclass
class ExecutionConfig:
    """
    Order Manager configuration.

    SAFETY: dry_run is on unless explicitly disabled.
    """

    dry_run: bool = True
    """Simulate fills at the quoted price; no brokerage calls."""

    order_timeout_seconds: float = 10.0
    """Fill-wait budget. Polls = timeout x 2."""

    fill_poll_interval_seconds: float = 0.5
    """Delay between order status polls."""

    stop_loss_delay_seconds: float = 3.0
    """Settlement delay before placing a stop after a fill."""

    stop_loss_pct: float = 0.05
    """Default stop distance below the fill price."""

    take_profit_pct: float = 0.10
    """Default take-profit distance above the fill price (0 disables)."""

    stale_pending_minutes: float = 5.0
    """Pending orders without an external id older than this are failed by sync."""

    account_type: AccountType = AccountType.INVEST
    """Account segment stamped on every ledger row."""

    @property
    def max_fill_polls(self) -> int:
        return max(1, int(self.order_timeout_seconds * 2))

    def validate(self) -> List[str]:
        errors = []
        if self.order_timeout_seconds <= 0:
            errors.append("order_timeout_seconds must be positive")
        if self.fill_poll_interval_seconds < 0:
            errors.append("fill_poll_interval_seconds must be >= 0")
        if self.stop_loss_delay_seconds < 0:
            errors.append("stop_loss_delay_seconds must be >= 0")
        if not 0 < self.stop_loss_pct < 1:
            errors.append("stop_loss_pct must be in (0, 1)")
        if self.take_profit_pct < 0:
            errors.append("take_profit_pct must be >= 0")
        return errors

    @classmethod
    def from_env(cls) -> "ExecutionConfig":
        return cls(
            dry_run=_env_bool("DRY_RUN", True),
            order_timeout_seconds=_env_float("ORDER_TIMEOUT_SECONDS", 10.0),
            fill_poll_interval_seconds=_env_float("FILL_POLL_INTERVAL_SECONDS", 0.5),
            stop_loss_delay_seconds=_env_float("STOP_LOSS_DELAY_SECONDS", 3.0),
            stop_loss_pct=_env_float("STOP_LOSS_PCT", 0.05),
            take_profit_pct=_env_float("TAKE_PROFIT_PCT", 0.10),
            stale_pending_minutes=_env_float("STALE_PENDING_MINUTES", 5.0),
            account_type=AccountType(os.getenv("ACCOUNT_TYPE", "INVEST").upper()),
        )

    @classmethod
    def for_testing(cls, dry_run: bool = True) -> "ExecutionConfig":
        """Fast config: no sleeps, short timeout."""
        return cls(
            dry_run=dry_run,
            order_timeout_seconds=2.0,
            fill_poll_interval_seconds=0.0,
            stop_loss_delay_seconds=0.0,
        )


# ============================================================
# PARTIAL EXIT CONFIGURATION
# ============================================================

def _default_tiers() -> List[PartialExitTier]:
    return [
        PartialExitTier(pct_gain=0.05, sell_pct=0.25),
        PartialExitTier(pct_gain=0.10, sell_pct=0.50),
    ]


@dataclass
class PartialExitConfig:
    """Scale-out configuration."""

    enabled: bool = True

    tiers: List[PartialExitTier] = field(default_factory=_default_tiers)
    """Ordered milestones; tier n fires only after tier n-1."""

    move_stop_to_breakeven: bool = True
    """After the first partial exit, move the stop to the entry price."""

    def validate(self) -> List[str]:
        errors = []
        previous = 0.0
        for i, tier in enumerate(self.tiers):
            if not 0 < tier.pct_gain <= 10:
                errors.append(f"tiers[{i}].pct_gain must be in (0, 10]")
            if not 0.01 <= tier.sell_pct <= 1:
                errors.append(f"tiers[{i}].sell_pct must be in [0.01, 1]")
            if tier.pct_gain <= previous:
                errors.append(f"tiers[{i}].pct_gain must increase")
            previous = tier.pct_gain
        return errors

    @classmethod
    def from_env(cls) -> "PartialExitConfig":
        tiers = _default_tiers()
        raw = os.getenv("PARTIAL_EXIT_TIERS")
        if raw:
            # "0.05:0.25,0.10:0.50"
            tiers = []
            for chunk in raw.split(","):
                gain, sell = chunk.split(":")
                tiers.append(PartialExitTier(pct_gain=float(gain), sell_pct=float(sell)))
        return cls(
            enabled=_env_bool("PARTIAL_EXIT_ENABLED", True),
            tiers=tiers,
            move_stop_to_breakeven=_env_bool("PARTIAL_EXIT_BREAKEVEN", True),
        )


# ============================================================
# DCA CONFIGURATION
# ============================================================

@dataclass
class DCAConfig:
    """Cost-averaging configuration."""

    enabled: bool = True

    max_rounds: int = 3
    """Maximum additional buys per position."""

    drop_pct_per_round: float = 0.05
    """Round n needs price <= entry x (1 - drop_pct_per_round x n)."""

    size_multiplier: float = 1.0
    """Round share count = original shares x multiplier ^ rounds done."""

    min_time_between_minutes: float = 60.0
    """Minimum minutes since the last BUY on the symbol."""

    def validate(self) -> List[str]:
        errors = []
        if not 1 <= self.max_rounds <= 20:
            errors.append("max_rounds must be in [1, 20]")
        if not 0 < self.drop_pct_per_round < 1:
            errors.append("drop_pct_per_round must be in (0, 1)")
        if not 0.1 <= self.size_multiplier <= 5:
            errors.append("size_multiplier must be in [0.1, 5]")
        if self.min_time_between_minutes < 0:
            errors.append("min_time_between_minutes must be >= 0")
        return errors

    @classmethod
    def from_env(cls) -> "DCAConfig":
        return cls(
            enabled=_env_bool("DCA_ENABLED", True),
            max_rounds=_env_int("DCA_MAX_ROUNDS", 3),
            drop_pct_per_round=_env_float("DCA_DROP_PCT_PER_ROUND", 0.05),
            size_multiplier=_env_float("DCA_SIZE_MULTIPLIER", 1.0),
            min_time_between_minutes=_env_float("DCA_MIN_TIME_BETWEEN_MINUTES", 60.0),
        )


# ============================================================
# BROKERAGE CONFIGURATION
# ============================================================

TRADING212_URLS = {
    "demo": "https://demo.trading212.com/api/v0",
    "live": "https://live.trading212.com/api/v0",
}


@dataclass
class Trading212Config:
    """Trading 212 connection settings."""

    api_key: str = ""
    api_secret: str = ""
    environment: str = "demo"
    """'demo' or 'live'."""

    request_timeout_seconds: float = 30.0

    @property
    def base_url(self) -> str:
        return TRADING212_URLS[self.environment]

    def validate(self) -> List[str]:
        errors = []
        if self.environment not in TRADING212_URLS:
            errors.append("environment must be 'demo' or 'live'")
        if not self.api_key:
            errors.append("api_key is required")
        return errors

    @classmethod
    def from_env(cls) -> "Trading212Config":
        return cls(
            api_key=os.getenv("T212_API_KEY", ""),
            api_secret=os.getenv("T212_API_SECRET", ""),
            environment=os.getenv("T212_ENVIRONMENT", "demo").lower(),
            request_timeout_seconds=_env_float("T212_REQUEST_TIMEOUT_SECONDS", 30.0),
        )


__all__ = [
    "ExecutionConfig",
    "PartialExitConfig",
    "DCAConfig",
    "Trading212Config",
    "TRADING212_URLS",
]
