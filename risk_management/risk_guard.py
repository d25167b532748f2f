"""
Risk Management - Risk Guard.

============================================================
RESPONSIBILITY
============================================================
Pre-trade admission control.

- Validates a trade proposal against a portfolio snapshot
- Gates only new exposure: SELL proposals always pass
- Never mutates anything

============================================================
BUY CHECKS (first failure wins)
============================================================
0. Pair lock in effect on the symbol (when a lock manager is wired)
1. Open positions below the maximum
2. Position notional within max % of portfolio value
3. Notional x stop distance within max risk % of portfolio value
4. Sector below max position count and max value %
5. Notional covered by available cash

Daily-loss and drawdown checks return a pause/alert signal;
the caller decides what to do with it.

============================================================
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Sequence, TYPE_CHECKING

from database import Database, PositionRepository

from .config import RiskConfig

if TYPE_CHECKING:
    from .pair_locks import PairLockManager


logger = logging.getLogger(__name__)


# ============================================================
# TYPES
# ============================================================

@dataclass
class TradeProposal:
    """A trade the planner wants to make."""

    symbol: str
    side: str
    """'BUY' or 'SELL'."""

    shares: float
    price: float
    stop_loss_pct: Optional[float] = None
    sector: Optional[str] = None

    @property
    def notional(self) -> float:
        return self.shares * self.price


@dataclass
class PortfolioSnapshot:
    """Point-in-time portfolio figures the guard checks against."""

    cash_available: float
    portfolio_value: float
    open_positions: int = 0
    today_pnl: float = 0.0
    today_pnl_pct: float = 0.0

    sector_exposure: Dict[str, int] = field(default_factory=dict)
    """Open position count per sector."""

    sector_exposure_value: Dict[str, float] = field(default_factory=dict)
    """Exposure per sector as a fraction of portfolio value."""

    peak_value: float = 0.0


@dataclass
class RiskCheckResult:
    allowed: bool
    reason: Optional[str] = None


def snapshot_from_ledger(
    db: Database,
    cash_available: float,
    sectors: Optional[Mapping[str, str]] = None,
    today_pnl: float = 0.0,
    peak_value: float = 0.0,
) -> PortfolioSnapshot:
    """
    Build a snapshot from the open positions in the ledger.

    Positions are valued at their last known price (entry price
    if none). sectors maps symbol -> sector.
    """
    sectors = sectors or {}
    counts: Dict[str, int] = {}
    values: Dict[str, float] = {}
    invested = 0.0

    with db.session_scope() as session:
        positions = PositionRepository(session).list_all()

    for position in positions:
        value = position.shares * (position.current_price or position.entry_price)
        invested += value
        sector = sectors.get(position.symbol)
        if sector:
            counts[sector] = counts.get(sector, 0) + 1
            values[sector] = values.get(sector, 0.0) + value

    portfolio_value = cash_available + invested
    start_value = portfolio_value - today_pnl
    return PortfolioSnapshot(
        cash_available=cash_available,
        portfolio_value=portfolio_value,
        open_positions=len(positions),
        today_pnl=today_pnl,
        today_pnl_pct=today_pnl / start_value if start_value > 0 else 0.0,
        sector_exposure=counts,
        sector_exposure_value={
            s: v / portfolio_value for s, v in values.items()
        } if portfolio_value > 0 else {},
        peak_value=max(peak_value, portfolio_value),
    )


# ============================================================
# RISK GUARD
# ============================================================

class RiskGuard:
    """
    Pre-trade admission.

    Args:
        config: Risk limits
        pair_locks: Optional lock manager consulted before the limits
    """

    def __init__(
        self,
        config: Optional[RiskConfig] = None,
        pair_locks: Optional["PairLockManager"] = None,
    ):
        self._config = config or RiskConfig()
        self._pair_locks = pair_locks

    @property
    def config(self) -> RiskConfig:
        return self._config

    def validate_trade(
        self,
        proposal: TradeProposal,
        portfolio: PortfolioSnapshot,
    ) -> RiskCheckResult:
        """Admit or reject a proposal. SELL always passes."""
        if proposal.side.upper() != "BUY":
            logger.debug(f"{proposal.symbol} {proposal.side} validated (exits are never gated)")
            return RiskCheckResult(True)

        cfg = self._config

        if self._pair_locks is not None:
            lock = self._pair_locks.is_pair_locked(proposal.symbol, "long")
            if lock.locked:
                return self._reject(proposal, f"Pair locked: {lock.reason}")

        if portfolio.open_positions >= cfg.max_positions:
            return self._reject(
                proposal,
                f"Max positions reached: {portfolio.open_positions}/{cfg.max_positions}",
            )

        notional = proposal.notional
        max_allowed = cfg.max_position_size_pct * portfolio.portfolio_value
        if notional > max_allowed:
            return self._reject(
                proposal,
                f"Position size ${notional:.2f} exceeds max ${max_allowed:.2f} "
                f"({cfg.max_position_size_pct * 100:.1f}% of portfolio)",
            )

        stop_pct = proposal.stop_loss_pct if proposal.stop_loss_pct is not None else cfg.stop_loss_pct
        risk = notional * stop_pct
        max_risk = cfg.max_risk_per_trade_pct * portfolio.portfolio_value
        if risk > max_risk:
            return self._reject(
                proposal,
                f"Trade risk ${risk:.2f} exceeds max ${max_risk:.2f} "
                f"({cfg.max_risk_per_trade_pct * 100:.1f}% of portfolio)",
            )

        if proposal.sector:
            count = portfolio.sector_exposure.get(proposal.sector, 0)
            if count >= cfg.max_sector_concentration:
                return self._reject(
                    proposal,
                    f"Sector '{proposal.sector}' already has "
                    f"{count}/{cfg.max_sector_concentration} positions",
                )

            value_pct = portfolio.sector_exposure_value.get(proposal.sector, 0.0)
            if value_pct >= cfg.max_sector_value_pct:
                return self._reject(
                    proposal,
                    f"Sector '{proposal.sector}' value {value_pct * 100:.1f}% "
                    f"exceeds max {cfg.max_sector_value_pct * 100:.1f}%",
                )

        if notional > portfolio.cash_available:
            return self._reject(
                proposal,
                f"Insufficient cash: need ${notional:.2f}, have ${portfolio.cash_available:.2f}",
            )

        logger.debug(f"{proposal.symbol} BUY validated: ${notional:.2f}")
        return RiskCheckResult(True)

    def check_daily_loss(self, portfolio: PortfolioSnapshot) -> bool:
        """True when today's loss is beyond the daily limit (pause new proposals)."""
        limit = self._config.daily_loss_limit_pct
        should_pause = portfolio.today_pnl_pct < -limit
        if should_pause:
            logger.warning(
                f"Daily loss limit breached: {portfolio.today_pnl_pct * 100:.2f}% "
                f"< -{limit * 100:.1f}%, trading should pause"
            )
        return should_pause

    def check_drawdown(self, portfolio: PortfolioSnapshot) -> bool:
        """True when drawdown from peak value is beyond the alert threshold."""
        if portfolio.peak_value <= 0:
            return False

        limit = self._config.max_drawdown_alert_pct
        drawdown = (portfolio.peak_value - portfolio.portfolio_value) / portfolio.peak_value
        should_alert = drawdown > limit
        if should_alert:
            logger.warning(
                f"Drawdown alert: {drawdown * 100:.2f}% > {limit * 100:.1f}% "
                f"(peak {portfolio.peak_value:.2f}, now {portfolio.portfolio_value:.2f})"
            )
        return should_alert

    def get_losing_streak_multiplier(self, recent_pnls: Sequence[float]) -> float:
        """
        Position size multiplier for a losing streak.

        recent_pnls is most recent first. Every full run of
        streak_reduction_threshold consecutive losses multiplies
        the size by streak_reduction_factor:
            threshold 3, factor 0.5 -> 0-2 losses 1.0, 3-5 0.5, 6-8 0.25
        """
        threshold = self._config.streak_reduction_threshold
        factor = self._config.streak_reduction_factor
        if threshold <= 0 or not 0 < factor < 1:
            return 1.0

        losses = 0
        for pnl in recent_pnls:
            if pnl >= 0:
                break
            losses += 1

        if losses < threshold:
            return 1.0

        multiplier = factor ** (losses // threshold)
        logger.warning(
            f"Losing streak of {losses} trades, position size multiplier {multiplier}"
        )
        return multiplier

    @staticmethod
    def _reject(proposal: TradeProposal, reason: str) -> RiskCheckResult:
        logger.warning(f"Trade rejected: {proposal.symbol} {proposal.side}: {reason}")
        return RiskCheckResult(False, reason)


__all__ = [
    "TradeProposal",
    "PortfolioSnapshot",
    "RiskCheckResult",
    "RiskGuard",
    "snapshot_from_ledger",
]
