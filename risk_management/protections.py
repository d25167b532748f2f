"""
Risk Management - Protection Manager.

============================================================
PURPOSE
============================================================
Circuit breakers evaluated after every trade close.

RULES (independent, individually toggleable):
1. Cooldown        - lock the closed symbol for a while
2. Stoploss guard  - on stop-loss exits, count stop exits in
                     the lookback; at the limit lock the symbol
                     (per-pair mode) or the whole book
3. Max drawdown    - cumulative % return over closes in the
                     lookback, ordered by exit time; peak-to-
                     trough drawdown at or over the threshold
                     locks the whole book
4. Low profit      - the symbol's summed % return in the
                     lookback below the floor, with enough
                     trades, locks the symbol

A failing rule is logged and recorded; the others still run.

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Iterable, List, Optional

from database import Database, TradeRepository, utc_now
from execution_engine.types import OrderTag, classify_exit_reason

from .config import ProtectionConfig
from .pair_locks import LockCheck, PairLockManager


logger = logging.getLogger(__name__)


def is_stoploss_reason(reason: Optional[str]) -> bool:
    """Free-text fallback for closes that carry no order tag."""
    return classify_exit_reason(reason) == OrderTag.STOPLOSS


def max_drawdown(returns: Iterable[float]) -> float:
    """
    Largest peak-to-trough fall of the cumulative sum of returns.

    The running peak starts at 0 (flat), so a losing first trade
    is already a drawdown.
    """
    cumulative = 0.0
    peak = 0.0
    worst = 0.0
    for r in returns:
        cumulative += r
        peak = max(peak, cumulative)
        worst = max(worst, peak - cumulative)
    return worst


@dataclass
class ProtectionReport:
    """What one post-close evaluation did."""

    symbol: str
    locks_applied: List[str] = field(default_factory=list)
    """Reasons of the locks installed ('cooldown', 'max_drawdown', ...)."""

    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class TradePermission:
    """Answer of can_trade."""

    allowed: bool
    reason: Optional[str] = None


class ProtectionManager:
    """
    Post-close rule engine.

    Args:
        db: Ledger database (trade history)
        pair_locks: Where locks are installed
        config: Rule configuration
    """

    def __init__(
        self,
        db: Database,
        pair_locks: PairLockManager,
        config: Optional[ProtectionConfig] = None,
    ):
        self._db = db
        self._locks = pair_locks
        self._config = config or ProtectionConfig()

    @property
    def config(self) -> ProtectionConfig:
        return self._config

    def evaluate_after_close(
        self,
        symbol: str,
        exit_reason: str,
        pnl_pct: Optional[float] = None,
        tag: Optional[OrderTag] = None,
    ) -> ProtectionReport:
        """
        Run every enabled rule for a just-closed trade.

        The stoploss guard trusts the close's order tag when one is
        given and falls back to the free-text reason otherwise.
        """
        report = ProtectionReport(symbol=symbol)
        stop_exit = tag == OrderTag.STOPLOSS if tag is not None else is_stoploss_reason(exit_reason)

        rules = (
            ("cooldown", lambda: self._check_cooldown(symbol)),
            ("stoploss_guard", lambda: self._check_stoploss_guard(symbol, stop_exit)),
            ("max_drawdown", self._check_max_drawdown),
            ("low_profit", lambda: self._check_low_profit(symbol)),
        )
        for name, rule in rules:
            try:
                applied = rule()
            except Exception as e:
                logger.exception(f"Protection rule {name} failed for {symbol}")
                report.errors.append(f"{name}: {e}")
                continue
            if applied:
                report.locks_applied.append(name)

        if report.locks_applied:
            logger.info(
                f"Protections after closing {symbol} (pnl_pct={pnl_pct}): "
                f"{', '.join(report.locks_applied)}"
            )
        return report

    def can_trade(self, symbol: str, side: str = "*") -> TradePermission:
        """Single gate to consult before opening exposure."""
        lock: LockCheck = self._locks.is_pair_locked(symbol, side)
        if lock.locked:
            return TradePermission(False, lock.reason)
        return TradePermission(True)

    # ============================================================
    # RULES
    # ============================================================

    def _check_cooldown(self, symbol: str) -> bool:
        cfg = self._config.cooldown
        if not cfg.enabled or cfg.minutes <= 0:
            return False
        self._locks.lock_pair(symbol, cfg.minutes, "cooldown")
        return True

    def _check_stoploss_guard(self, symbol: str, stop_exit: bool) -> bool:
        cfg = self._config.stoploss_guard
        if not cfg.enabled or not stop_exit:
            return False

        cutoff = utc_now() - timedelta(minutes=cfg.lookback_minutes)
        with self._db.session_scope() as session:
            count = TradeRepository(session).count_stoploss_exits_since(
                cutoff, symbol=symbol if cfg.only_per_pair else None,
            )

        if count < cfg.trade_limit:
            return False

        if cfg.only_per_pair:
            self._locks.lock_pair(symbol, cfg.lock_minutes, "stoploss_guard")
            logger.warning(
                f"Stoploss guard: {symbol} locked after {count} stop exits "
                f"(limit {cfg.trade_limit}) for {cfg.lock_minutes}m"
            )
        else:
            self._locks.lock_global(cfg.lock_minutes, "stoploss_guard")
            logger.warning(
                f"Stoploss guard: all trading locked after {count} stop exits "
                f"(limit {cfg.trade_limit}) for {cfg.lock_minutes}m"
            )
        return True

    def _check_max_drawdown(self) -> bool:
        cfg = self._config.max_drawdown
        if not cfg.enabled:
            return False

        cutoff = utc_now() - timedelta(minutes=cfg.lookback_minutes)
        with self._db.session_scope() as session:
            returns = [t.pnl_pct for t in TradeRepository(session).get_closed_trades_since(cutoff)]

        if not returns:
            return False

        drawdown = max_drawdown(returns)
        if drawdown < cfg.max_drawdown_pct:
            return False

        self._locks.lock_global(cfg.lock_minutes, "max_drawdown")
        logger.warning(
            f"Max drawdown lock: drawdown {drawdown * 100:.2f}% >= "
            f"{cfg.max_drawdown_pct * 100:.2f}%, all trading locked for {cfg.lock_minutes}m"
        )
        return True

    def _check_low_profit(self, symbol: str) -> bool:
        cfg = self._config.low_profit
        if not cfg.enabled:
            return False

        cutoff = utc_now() - timedelta(minutes=cfg.lookback_minutes)
        with self._db.session_scope() as session:
            returns = [
                t.pnl_pct
                for t in TradeRepository(session).get_closed_trades_since(cutoff, symbol=symbol)
            ]

        if len(returns) < cfg.trade_limit:
            return False

        total = sum(returns)
        if total >= cfg.min_profit:
            return False

        self._locks.lock_pair(symbol, cfg.lock_minutes, "low_profit")
        logger.warning(
            f"Low profit lock: {symbol} summed {total * 100:.2f}% over {len(returns)} trades "
            f"(< {cfg.min_profit * 100:.2f}%), locked for {cfg.lock_minutes}m"
        )
        return True


__all__ = [
    "ProtectionReport",
    "TradePermission",
    "ProtectionManager",
    "is_stoploss_reason",
    "max_drawdown",
]
