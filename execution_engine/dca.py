"""
Execution Engine - DCA Manager.

============================================================
PURPOSE
============================================================
Cost-average into losing positions.

TRIGGER (checked in this order):
1. Feature enabled
2. Round cap: dca_count < max_rounds
3. Price drop: round n needs price below
   original_entry x (1 - drop_pct_per_round x n)
4. Minimum time since the last BUY on the symbol
5. Share count: floor(original_shares x multiplier ^ rounds_done) >= 1
6. Cash covers shares x price

EXECUTION:
    One market buy (no protective re-placement). The position's
    entry price becomes the volume-weighted average over total
    invested capital and total shares.

============================================================
"""

import logging
import math
from typing import Optional, Tuple

from database import (
    OrderRepository,
    PositionModel,
    PositionRepository,
    TradeModel,
    TradeRepository,
    utc_now,
)

from .config import DCAConfig
from .errors import PositionNotFoundError
from .order_manager import LEDGER_ERRORS, OrderManager, dry_run_order_id
from .state_machine import OrderStateMachine
from .types import (
    DCAEvaluation,
    DCAResult,
    OrderSide,
    OrderTag,
    OrderType,
)


logger = logging.getLogger(__name__)


def volume_weighted_average(
    invested: float,
    shares: float,
    added_shares: float,
    price: float,
) -> Tuple[float, float, float]:
    """
    Returns (total_invested, total_shares, average_price) after
    buying added_shares at price on top of an existing holding.
    """
    total_invested = invested + added_shares * price
    total_shares = shares + added_shares
    return total_invested, total_shares, total_invested / total_shares


class DCAManager:
    """
    Cost averaging.

    Args:
        order_manager: Provides ledger access and order primitives
        config: DCA configuration
    """

    def __init__(
        self,
        order_manager: OrderManager,
        config: Optional[DCAConfig] = None,
    ):
        self._orders = order_manager
        self._db = order_manager.db
        self._config = config or DCAConfig()

    @property
    def config(self) -> DCAConfig:
        return self._config

    # ============================================================
    # EVALUATION
    # ============================================================

    def evaluate_position(
        self,
        symbol: str,
        current_price: float,
        position: PositionModel,
        portfolio_cash: float,
    ) -> DCAEvaluation:
        """Decide whether another DCA round should be bought now."""
        cfg = self._config
        if not cfg.enabled:
            return DCAEvaluation(False, "DCA feature disabled")

        dca_count = position.dca_count or 0
        if dca_count >= cfg.max_rounds:
            return DCAEvaluation(False, f"Max DCA rounds reached ({cfg.max_rounds})")

        original_entry, original_shares = self._original_entry(symbol, position)

        next_round = dca_count + 1
        required_drop = cfg.drop_pct_per_round * next_round
        trigger_price = original_entry * (1 - required_drop)
        if current_price >= trigger_price:
            current_drop = (original_entry - current_price) / original_entry
            return DCAEvaluation(
                False,
                f"Price not low enough (current drop: {current_drop * 100:.2f}%, "
                f"need: {required_drop * 100:.2f}%)",
            )

        with self._db.session_scope() as session:
            last_buy = TradeRepository(session).get_last_buy_time(symbol)
        if last_buy is not None:
            minutes_since = (utc_now() - last_buy).total_seconds() / 60
            if minutes_since < cfg.min_time_between_minutes:
                return DCAEvaluation(
                    False,
                    f"Too soon since last buy ({minutes_since:.1f}m < "
                    f"{cfg.min_time_between_minutes}m)",
                )

        shares = math.floor(original_shares * cfg.size_multiplier ** dca_count)
        if shares < 1:
            return DCAEvaluation(False, f"Calculated DCA shares < 1 ({shares})")

        investment = shares * current_price
        if portfolio_cash < investment:
            return DCAEvaluation(
                False,
                f"Insufficient cash ({portfolio_cash:.2f} < {investment:.2f})",
            )

        _, _, new_avg = volume_weighted_average(
            self._invested(position), position.shares, shares, current_price,
        )

        logger.info(
            f"DCA trigger met for {symbol}: price {current_price} < {trigger_price:.4f}, "
            f"round {next_round}, {shares} shares, new avg {new_avg:.4f}"
        )
        return DCAEvaluation(
            True,
            f"Price dropped {(1 - current_price / original_entry) * 100:.2f}% "
            f"(trigger at {required_drop * 100:.2f}%)",
            shares_to_buy=shares,
            new_avg_price=new_avg,
            dca_round=next_round,
        )

    # ============================================================
    # EXECUTION
    # ============================================================

    async def execute_dca(self, symbol: str, shares: int, price: float) -> DCAResult:
        """Buy one DCA round and fold it into the position's average."""
        with self._db.session_scope() as session:
            position = PositionRepository(session).get_by_symbol(symbol)

        if position is None:
            return DCAResult(False, symbol, error=str(PositionNotFoundError(symbol)))
        if shares < 1 or price <= 0:
            return DCAResult(False, symbol, error="Invalid shares or price")

        lock_reason = self._orders.pair_lock_reason(symbol)
        if lock_reason is not None:
            logger.info(f"DCA {symbol} blocked by pair lock: {lock_reason}")
            return DCAResult(False, symbol, error=f"Pair locked: {lock_reason}")

        dca_round = (position.dca_count or 0) + 1

        if self._orders.dry_run:
            try:
                with self._db.transaction_scope() as session:
                    order = self._orders.new_order(
                        session,
                        symbol=symbol,
                        side=OrderSide.BUY,
                        order_type=OrderType.MARKET,
                        quantity=shares,
                        tag=OrderTag.DCA,
                        requested_price=price,
                        external_order_id=dry_run_order_id(OrderSide.BUY, f"DCA_{symbol}"),
                        position_id=position.id,
                        account_type=position.account_type,
                    )
                    result = self._apply_round(session, position, shares, price, price, dca_round)
                    OrderStateMachine(order).mark_filled(shares, price, "Dry-run fill")
                    result.order_id = order.id
            except LEDGER_ERRORS as e:
                logger.error(f"[DRY RUN] DCA round {dca_round} for {symbol} not recorded: {e}")
                return DCAResult(False, symbol, error=f"Ledger write failed: {e}")

            logger.info(
                f"[DRY RUN] DCA round {dca_round} {symbol}: {shares} @ {price}, "
                f"avg {position.entry_price} -> {result.new_avg_price:.4f}"
            )
            return result

        try:
            with self._db.transaction_scope() as session:
                order_id = self._orders.new_order(
                    session,
                    symbol=symbol,
                    side=OrderSide.BUY,
                    order_type=OrderType.MARKET,
                    quantity=shares,
                    tag=OrderTag.DCA,
                    requested_price=price,
                    position_id=position.id,
                    account_type=position.account_type,
                ).id
        except LEDGER_ERRORS as e:
            return DCAResult(False, symbol, error=f"Ledger write failed: {e}")

        fill = await self._orders.submit_market_and_wait(order_id, position.broker_ticker, shares)
        if not fill.filled:
            logger.error(f"DCA round {dca_round} for {symbol} failed: {fill.error}")
            return DCAResult(False, symbol, order_id=order_id, error=fill.error)

        fill_price = fill.outcome.fill_price or price
        try:
            with self._db.transaction_scope() as session:
                order = OrderRepository(session).get(order_id)
                OrderStateMachine(order).confirm_fill(shares, fill_price)
                result = self._apply_round(session, position, shares, fill_price, price, dca_round)
                result.order_id = order_id
        except LEDGER_ERRORS as e:
            message = await self._orders.escalate_ledger_failure(
                symbol, f"bought {shares} @ {fill_price} in DCA round {dca_round}", e,
            )
            return DCAResult(
                False, symbol, shares_bought=shares, fill_price=fill_price,
                dca_round=dca_round, order_id=order_id, error=message,
            )

        logger.info(
            f"DCA round {dca_round} {symbol}: {shares} @ {fill_price}, "
            f"avg {position.entry_price} -> {result.new_avg_price:.4f}"
        )
        return result

    # ============================================================
    # HELPERS
    # ============================================================

    @staticmethod
    def _invested(position: PositionModel) -> float:
        if position.total_invested is not None:
            return position.total_invested
        return position.shares * position.entry_price

    def _original_entry(self, symbol: str, position: PositionModel) -> Tuple[float, float]:
        """
        Entry price and share count of the opening buy.

        Falls back to the position's own figures when the opening
        trade is not in the ledger.
        """
        if (position.dca_count or 0) > 0 and position.entry_time is not None:
            with self._db.session_scope() as session:
                entry = TradeRepository(session).get_entry_trade(symbol, position.entry_time)
            if entry is not None:
                return entry.entry_price, entry.shares
        return position.entry_price, self._invested(position) / position.entry_price

    def _apply_round(
        self,
        session,
        position: PositionModel,
        shares: int,
        fill_price: float,
        intended: float,
        dca_round: int,
    ) -> DCAResult:
        """DCA trade row plus VWAP position update, inside the caller's transaction."""
        TradeRepository(session).add(TradeModel(
            symbol=position.symbol,
            broker_ticker=position.broker_ticker,
            side=OrderSide.BUY.value,
            shares=shares,
            entry_price=fill_price,
            entry_time=utc_now(),
            ai_reasoning=f"DCA round {dca_round}",
            conviction_score=0,
            intended_price=intended,
            slippage=(fill_price - intended) / intended,
            account_type=position.account_type,
            dca_round=dca_round,
        ))

        live = PositionRepository(session).get_by_symbol(position.symbol) or position
        total_invested, total_shares, new_avg = volume_weighted_average(
            self._invested(live), live.shares, shares, fill_price,
        )
        live.shares = total_shares
        live.entry_price = new_avg
        live.dca_count = dca_round
        live.total_invested = total_invested
        live.current_price = fill_price
        live.pnl = (fill_price - new_avg) * total_shares
        live.pnl_pct = (fill_price - new_avg) / new_avg

        session.flush()
        return DCAResult(
            success=True,
            symbol=position.symbol,
            shares_bought=shares,
            fill_price=fill_price,
            new_avg_price=new_avg,
            total_shares=total_shares,
            dca_round=dca_round,
        )


__all__ = [
    "DCAManager",
    "volume_weighted_average",
]
