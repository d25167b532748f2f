"""
Execution Engine - Partial Exit Manager.

============================================================
PURPOSE
============================================================
Scale out of winning positions at configured profit tiers.

TIERS:
    Ordered list of {pct_gain, sell_pct}. Tier n is only
    considered after tiers 0..n-1 have fired (the position's
    partial_exit_count is the index of the next tier).

RULES:
- shares to sell = floor(shares x sell_pct)
- never sell 0 shares, never sell the whole position
- the position is reduced, never deleted
- first partial exit may move the stop to breakeven; a failed
  re-placement is logged and does not undo the sale

============================================================
"""

import logging
import math
from typing import List, Optional

from database import (
    OrderRepository,
    PositionModel,
    PositionRepository,
    TradeModel,
    TradeRepository,
    utc_now,
)

from .config import PartialExitConfig
from .order_manager import LEDGER_ERRORS, OrderManager, dry_run_order_id
from .state_machine import OrderStateMachine
from .types import (
    OrderSide,
    OrderTag,
    OrderType,
    PartialExitEvaluation,
    PartialExitResult,
    PartialExitTier,
)


logger = logging.getLogger(__name__)


class PartialExitManager:
    """
    Tiered scale-out.

    Args:
        order_manager: Provides ledger access and order primitives
        config: Tier configuration
    """

    def __init__(
        self,
        order_manager: OrderManager,
        config: Optional[PartialExitConfig] = None,
    ):
        self._orders = order_manager
        self._db = order_manager.db
        self._config = config or PartialExitConfig()

    @property
    def config(self) -> PartialExitConfig:
        return self._config

    # ============================================================
    # EVALUATION
    # ============================================================

    def evaluate_position(self, position: PositionModel) -> PartialExitEvaluation:
        """Decide whether the next tier should fire for this position."""
        if not self._config.enabled:
            return PartialExitEvaluation(False, "Partial exits disabled")

        if position.current_price is None:
            return PartialExitEvaluation(False, "No current price available")

        pnl_pct = (position.current_price - position.entry_price) / position.entry_price
        if pnl_pct <= 0:
            return PartialExitEvaluation(False, "Position not profitable")

        tiers = self._config.tiers
        index = position.partial_exit_count or 0
        if index >= len(tiers):
            return PartialExitEvaluation(False, "All partial exit tiers already executed")

        tier = tiers[index]
        if pnl_pct < tier.pct_gain:
            return PartialExitEvaluation(
                False,
                f"Next tier ({index + 1}) requires {tier.pct_gain * 100:.1f}% gain, "
                f"current: {pnl_pct * 100:.1f}%",
            )

        shares_to_sell = math.floor(position.shares * tier.sell_pct)
        if shares_to_sell < 1:
            return PartialExitEvaluation(
                False,
                f"Tier {index + 1} triggered but shares to sell ({shares_to_sell}) is less than 1",
            )
        if shares_to_sell >= position.shares:
            return PartialExitEvaluation(
                False,
                f"Tier {index + 1} would sell all shares ({shares_to_sell} >= {position.shares})",
            )

        logger.info(
            f"Partial exit tier {index + 1} triggered for {position.symbol}: "
            f"gain {pnl_pct * 100:.2f}% >= {tier.pct_gain * 100:.2f}%, "
            f"selling {shares_to_sell}/{position.shares}"
        )
        return PartialExitEvaluation(
            True,
            f"Tier {index + 1}: {tier.pct_gain * 100:.1f}% gain reached",
            tier=index,
            shares_to_sell=shares_to_sell,
        )

    def get_remaining_tiers(self, position: PositionModel) -> List[PartialExitTier]:
        return list(self._config.tiers[position.partial_exit_count or 0:])

    # ============================================================
    # EXECUTION
    # ============================================================

    async def execute_partial_exit(
        self,
        symbol: str,
        shares_to_sell: int,
        exit_reason: str,
    ) -> PartialExitResult:
        """
        Sell part of a position.

        Dry-run fills at the current price (entry price if none).
        Live runs a market sell through the fill-wait protocol.
        """
        with self._db.session_scope() as session:
            position = PositionRepository(session).get_by_symbol(symbol)

        if position is None:
            logger.warning(f"No position found for partial exit of {symbol}")
            return PartialExitResult(False, symbol, error=f"No position for {symbol}")

        if shares_to_sell < 1 or shares_to_sell >= position.shares:
            logger.warning(
                f"Cannot partially exit {shares_to_sell} of {position.shares} {symbol} shares"
            )
            return PartialExitResult(
                False, symbol,
                error=f"Cannot sell {shares_to_sell} shares (total: {position.shares})",
            )

        intended = position.current_price or position.entry_price
        first_exit = (position.partial_exit_count or 0) == 0
        move_stop = self._config.move_stop_to_breakeven and first_exit
        tier = position.partial_exit_count or 0

        if self._orders.dry_run:
            return self._execute_dry_run(position, shares_to_sell, exit_reason, intended, move_stop, tier)
        return await self._execute_live(position, shares_to_sell, exit_reason, intended, move_stop, tier)

    def _execute_dry_run(
        self,
        position: PositionModel,
        shares_to_sell: int,
        exit_reason: str,
        exit_price: float,
        move_stop: bool,
        tier: int,
    ) -> PartialExitResult:
        symbol = position.symbol
        new_stop = position.entry_price if move_stop else position.stop_loss

        try:
            with self._db.transaction_scope() as session:
                order = self._orders.new_order(
                    session,
                    symbol=symbol,
                    side=OrderSide.SELL,
                    order_type=OrderType.MARKET,
                    quantity=shares_to_sell,
                    tag=OrderTag.PARTIAL_EXIT,
                    requested_price=exit_price,
                    external_order_id=dry_run_order_id(OrderSide.SELL, f"PARTIAL_EXIT_{symbol}"),
                    position_id=position.id,
                    account_type=position.account_type,
                )
                trade = self._record_sale(
                    session, position, shares_to_sell, exit_price, exit_reason,
                    intended=exit_price, new_stop=new_stop,
                )
                order.trade_id = trade.id
                OrderStateMachine(order).mark_filled(shares_to_sell, exit_price, "Dry-run fill")
                order_id = order.id
        except LEDGER_ERRORS as e:
            logger.error(f"[DRY RUN] Partial exit of {symbol} not recorded: {e}")
            return PartialExitResult(False, symbol, error=f"Ledger write failed: {e}")

        logger.info(
            f"[DRY RUN] Partial exit {symbol}: sold {shares_to_sell} @ {exit_price}, "
            f"{position.shares - shares_to_sell} remain, stop={new_stop}"
        )
        return PartialExitResult(
            success=True,
            symbol=symbol,
            shares_sold=shares_to_sell,
            remaining_shares=position.shares - shares_to_sell,
            fill_price=exit_price,
            pnl=trade.pnl,
            tier=tier,
            new_stop_loss=new_stop,
            order_id=order_id,
        )

    async def _execute_live(
        self,
        position: PositionModel,
        shares_to_sell: int,
        exit_reason: str,
        intended: float,
        move_stop: bool,
        tier: int,
    ) -> PartialExitResult:
        symbol = position.symbol

        try:
            with self._db.transaction_scope() as session:
                order_id = self._orders.new_order(
                    session,
                    symbol=symbol,
                    side=OrderSide.SELL,
                    order_type=OrderType.MARKET,
                    quantity=shares_to_sell,
                    tag=OrderTag.PARTIAL_EXIT,
                    requested_price=intended,
                    position_id=position.id,
                    account_type=position.account_type,
                ).id
        except LEDGER_ERRORS as e:
            return PartialExitResult(False, symbol, error=f"Ledger write failed: {e}")

        fill = await self._orders.submit_market_and_wait(
            order_id, position.broker_ticker, -shares_to_sell,
        )
        if not fill.filled:
            logger.error(f"Partial exit of {symbol} failed: {fill.error}")
            return PartialExitResult(False, symbol, order_id=order_id, error=fill.error)

        fill_price = fill.outcome.fill_price or intended
        remaining = position.shares - shares_to_sell

        # Breakeven stop move (only when a stop exists to replace)
        new_stop = position.stop_loss
        new_stop_order_id = None
        if move_stop and position.stop_order_id:
            new_stop = position.entry_price
            await self._orders.cancel_protective_orders(
                position, reason="Stop moved to breakeven", include_take_profit=False,
            )
            await self._orders.wait_settlement()
            new_stop_order_id = await self._orders.place_stop(
                symbol, position.broker_ticker, remaining, new_stop, position_id=position.id,
            )
            if new_stop_order_id is None:
                logger.error(
                    f"Failed to place breakeven stop for {symbol}; "
                    f"{remaining} shares remain without a working stop"
                )

        try:
            with self._db.transaction_scope() as session:
                order = OrderRepository(session).get(order_id)
                OrderStateMachine(order).confirm_fill(shares_to_sell, fill_price)
                trade = self._record_sale(
                    session, position, shares_to_sell, fill_price, exit_reason,
                    intended=intended, new_stop=new_stop, new_stop_order_id=new_stop_order_id,
                )
                order.trade_id = trade.id
        except LEDGER_ERRORS as e:
            message = await self._orders.escalate_ledger_failure(
                symbol, f"sold {shares_to_sell} @ {fill_price} in a partial exit", e,
            )
            return PartialExitResult(
                False, symbol, shares_sold=shares_to_sell, remaining_shares=remaining,
                fill_price=fill_price, tier=tier, order_id=order_id, error=message,
            )

        logger.info(
            f"Partial exit {symbol}: sold {shares_to_sell} @ {fill_price}, "
            f"{remaining} remain, stop={new_stop}"
        )
        return PartialExitResult(
            success=True,
            symbol=symbol,
            shares_sold=shares_to_sell,
            remaining_shares=remaining,
            fill_price=fill_price,
            pnl=trade.pnl,
            tier=tier,
            new_stop_loss=new_stop,
            order_id=order_id,
        )

    def _record_sale(
        self,
        session,
        position: PositionModel,
        shares_sold: int,
        exit_price: float,
        exit_reason: str,
        intended: float,
        new_stop: Optional[float],
        new_stop_order_id: Optional[str] = None,
    ) -> TradeModel:
        """SELL trade row plus position reduction, inside the caller's transaction."""
        trade = TradeRepository(session).add(TradeModel(
            symbol=position.symbol,
            broker_ticker=position.broker_ticker,
            side=OrderSide.SELL.value,
            shares=shares_sold,
            entry_price=position.entry_price,
            exit_price=exit_price,
            pnl=(exit_price - position.entry_price) * shares_sold,
            pnl_pct=(exit_price - position.entry_price) / position.entry_price,
            entry_time=position.entry_time,
            exit_time=utc_now(),
            exit_reason=exit_reason,
            intended_price=intended,
            slippage=(intended - exit_price) / intended,
            account_type=position.account_type,
        ))

        live = PositionRepository(session).get_by_symbol(position.symbol)
        if live is not None:
            # Sold shares leave at average cost so the held average is unchanged
            invested = live.total_invested or live.shares * live.entry_price
            live.total_invested = invested - shares_sold * live.entry_price
            live.shares = live.shares - shares_sold
            live.partial_exit_count = (live.partial_exit_count or 0) + 1
            live.stop_loss = new_stop
            if new_stop_order_id is not None:
                live.stop_order_id = new_stop_order_id
            elif new_stop != position.stop_loss:
                # Old stop cancelled and replacement failed
                live.stop_order_id = None
        return trade


__all__ = ["PartialExitManager"]
