"""
Risk Management Package.

This package implements admission control and circuit breakers.
Controls exist before the trade (risk guard) and after each
close (protections installing pair locks).

Modules:
- config: Risk limits and protection rule thresholds
- risk_guard: Pre-trade admission (can veto BUY proposals)
- pair_locks: Time-bounded symbol / global trading locks
- protections: Post-close rules that install locks
"""

from .config import (
    RiskConfig,
    CooldownConfig,
    StoplossGuardConfig,
    MaxDrawdownConfig,
    LowProfitConfig,
    ProtectionConfig,
)
from .pair_locks import ANY_SIDE, LockCheck, PairLockManager
from .protections import (
    ProtectionManager,
    ProtectionReport,
    TradePermission,
    is_stoploss_reason,
    max_drawdown,
)
from .risk_guard import (
    PortfolioSnapshot,
    RiskCheckResult,
    RiskGuard,
    TradeProposal,
    snapshot_from_ledger,
)


__all__ = [
    # Config
    "RiskConfig",
    "CooldownConfig",
    "StoplossGuardConfig",
    "MaxDrawdownConfig",
    "LowProfitConfig",
    "ProtectionConfig",
    # Pair locks
    "ANY_SIDE",
    "LockCheck",
    "PairLockManager",
    # Protections
    "ProtectionManager",
    "ProtectionReport",
    "TradePermission",
    "is_stoploss_reason",
    "max_drawdown",
    # Risk guard
    "PortfolioSnapshot",
    "RiskCheckResult",
    "RiskGuard",
    "TradeProposal",
    "snapshot_from_ledger",
]
