"""
Execution Engine - Order Manager.

============================================================
PURPOSE
============================================================
Executes buys and closes against the brokerage and keeps
the Position / Trade / Order ledger consistent with it.

BUY (live):
1. Duplicate guard + pending entry order (one transaction)
2. Market buy -> order open
3. Fill-wait (timeout -> order failed)
4. Order filled + Position row (one transaction)
5. Settlement delay, then GTC stop-loss
   - stop fails -> emergency flatten
   - flatten fails -> position marked unprotected,
     critical alert, no exception
6. Optional GTC take-profit limit (failure is non-fatal)
7. BUY trade + protective ids on the Position (one transaction)

BUY (dry-run): guard, order, trade and position written in
one transaction at the quoted price.

CLOSE: cancel protective orders (best effort), market sell,
fill-wait, then SELL trade + position delete atomically.
The protection rules run after every completed close.

A ledger write that fails after the exchange acted is
escalated (critical log + on_critical) and returned as a
failed result carrying the fill.

The primitives below (order rows, market submit + wait,
stop placement, protective cancels) are shared with the
partial exit and DCA managers.

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional, Tuple, TYPE_CHECKING

from sqlalchemy.orm import Session

from database import (
    Database,
    DatabasePersistenceError,
    IntegrityViolationError,
    OrderModel,
    OrderRepository,
    PositionModel,
    PositionRepository,
    TradeModel,
    TradeRepository,
    utc_now,
)

from .adapters.base import (
    BrokerageClient,
    MarketOrderRequest,
    StopOrderRequest,
    LimitOrderRequest,
)
from .config import ExecutionConfig
from .errors import (
    DuplicatePositionError,
    ExecutionEngineError,
    InvalidStateTransitionError,
    PositionNotFoundError,
)
from .fill_waiter import FillOutcome, FillWaiter
from .state_machine import OrderStateMachine
from .types import (
    BuyRequest,
    CloseRequest,
    OrderResult,
    OrderSide,
    OrderStatus,
    OrderTag,
    OrderType,
    ProtectionStatus,
    TimeValidity,
    classify_exit_reason,
)

if TYPE_CHECKING:
    from risk_management.pair_locks import PairLockManager
    from risk_management.protections import ProtectionManager


logger = logging.getLogger(__name__)


CriticalCallback = Callable[[str], Awaitable[None]]

LEDGER_ERRORS = (DatabasePersistenceError, ExecutionEngineError)
"""Failures of a post-fill ledger write; the exchange side already happened."""


def dry_run_order_id(side: OrderSide, symbol: str, when: Optional[datetime] = None) -> str:
    """Synthetic external id for simulated fills."""
    when = when or utc_now()
    return f"dry_run_{side.value}_{symbol}_{int(when.timestamp() * 1000)}"


@dataclass
class MarketFill:
    """Outcome of submit_market_and_wait."""

    outcome: Optional[FillOutcome]
    external_order_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def filled(self) -> bool:
        return self.outcome is not None and self.outcome.filled


class OrderManager:
    """
    Buy / close execution.

    Args:
        db: Ledger database
        client: Brokerage client (unused in dry-run)
        config: Execution configuration
        pair_locks: Lock manager consulted before opening exposure
        protections: Rule engine run after every close
        fill_waiter: Override of the fill-wait primitive
        on_critical: Async callback for unprotected positions
        sleep: Awaitable sleep used for the settlement delay
    """

    def __init__(
        self,
        db: Database,
        client: BrokerageClient,
        config: Optional[ExecutionConfig] = None,
        pair_locks: Optional["PairLockManager"] = None,
        protections: Optional["ProtectionManager"] = None,
        fill_waiter: Optional[FillWaiter] = None,
        on_critical: Optional[CriticalCallback] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._db = db
        self._client = client
        self._config = config or ExecutionConfig()
        self._pair_locks = pair_locks
        self._protections = protections
        self._fill_waiter = fill_waiter or FillWaiter.from_config(client, self._config)
        self._on_critical = on_critical
        self._sleep = sleep

    @property
    def config(self) -> ExecutionConfig:
        return self._config

    @property
    def db(self) -> Database:
        return self._db

    @property
    def client(self) -> BrokerageClient:
        return self._client

    @property
    def dry_run(self) -> bool:
        return self._config.dry_run

    # ============================================================
    # BUY
    # ============================================================

    async def execute_buy(self, request: BuyRequest) -> OrderResult:
        """
        Open a position.

        Never raises for duplicate, brokerage or timeout failures;
        those come back as a failed OrderResult.
        """
        symbol = request.symbol

        if request.shares <= 0 or request.price <= 0:
            return OrderResult.failure(symbol, OrderSide.BUY, "Invalid shares or price")

        lock_reason = self.pair_lock_reason(symbol)
        if lock_reason is not None:
            logger.info(f"Buy {symbol} blocked by pair lock: {lock_reason}")
            return OrderResult.failure(symbol, OrderSide.BUY, f"Pair locked: {lock_reason}")

        if self.dry_run:
            return self._execute_buy_dry_run(request)
        return await self._execute_buy_live(request)

    def _execute_buy_dry_run(self, request: BuyRequest) -> OrderResult:
        symbol = request.symbol
        now = utc_now()
        external_id = dry_run_order_id(OrderSide.BUY, symbol, now)
        stop_loss, take_profit = self._protective_prices(request, request.price)
        account = (request.account_type or self._config.account_type).value

        try:
            with self._db.transaction_scope() as session:
                positions = PositionRepository(session)
                if positions.get_by_symbol(symbol) is not None:
                    raise DuplicatePositionError(symbol)

                order = self.new_order(
                    session,
                    symbol=symbol,
                    side=OrderSide.BUY,
                    order_type=OrderType.MARKET,
                    quantity=request.shares,
                    tag=OrderTag.ENTRY,
                    requested_price=request.price,
                    external_order_id=external_id,
                    account_type=account,
                )
                trade = TradeRepository(session).add(self._buy_trade(
                    request, request.price, request.shares, now, stop_loss, take_profit, slippage=0.0,
                ))
                position = positions.add(PositionModel(
                    symbol=symbol,
                    broker_ticker=request.broker_ticker,
                    shares=request.shares,
                    entry_price=request.price,
                    entry_time=now,
                    current_price=request.price,
                    pnl=0.0,
                    pnl_pct=0.0,
                    stop_loss=stop_loss,
                    take_profit=take_profit,
                    conviction_score=request.conviction_score,
                    protection_status=ProtectionStatus.PROTECTED.value,
                    account_type=account,
                ))
                order.trade_id = trade.id
                order.position_id = position.id
                OrderStateMachine(order).mark_filled(request.shares, request.price, "Dry-run fill")
                order_id = order.id

        except DuplicatePositionError as e:
            logger.warning(f"[DRY RUN] Buy {symbol} rejected: {e}")
            return OrderResult.failure(symbol, OrderSide.BUY, str(e))
        except IntegrityViolationError:
            logger.warning(f"[DRY RUN] Buy {symbol} lost duplicate race")
            return OrderResult.failure(symbol, OrderSide.BUY, str(DuplicatePositionError(symbol)))
        except DatabasePersistenceError as e:
            return OrderResult.failure(symbol, OrderSide.BUY, f"Ledger write failed: {e}")

        logger.info(f"[DRY RUN] Bought {request.shares} {symbol} @ {request.price}")
        return OrderResult(
            success=True,
            symbol=symbol,
            side=OrderSide.BUY,
            order_id=order_id,
            external_order_id=external_id,
            fill_price=request.price,
            shares=request.shares,
            slippage=0.0,
            protection_status=ProtectionStatus.NOT_APPLICABLE,
        )

    async def _execute_buy_live(self, request: BuyRequest) -> OrderResult:
        symbol = request.symbol
        account = (request.account_type or self._config.account_type).value

        # Step 1-2: duplicate guard and pending entry order
        try:
            with self._db.transaction_scope() as session:
                if PositionRepository(session).get_by_symbol(symbol) is not None:
                    raise DuplicatePositionError(symbol)
                order_id = self.new_order(
                    session,
                    symbol=symbol,
                    side=OrderSide.BUY,
                    order_type=OrderType.MARKET,
                    quantity=request.shares,
                    tag=OrderTag.ENTRY,
                    requested_price=request.price,
                    account_type=account,
                ).id
        except DuplicatePositionError as e:
            logger.warning(f"Buy {symbol} rejected: {e}")
            return OrderResult.failure(symbol, OrderSide.BUY, str(e))
        except IntegrityViolationError:
            logger.warning(f"Buy {symbol} rejected: entry already in flight")
            return OrderResult.failure(symbol, OrderSide.BUY, str(DuplicatePositionError(symbol)))
        except DatabasePersistenceError as e:
            return OrderResult.failure(symbol, OrderSide.BUY, f"Ledger write failed: {e}")

        # Step 3-4: submit and wait
        fill = await self.submit_market_and_wait(order_id, request.broker_ticker, request.shares)
        if not fill.filled:
            return OrderResult.failure(
                symbol, OrderSide.BUY, fill.error or "Order not filled",
                order_id=order_id, external_order_id=fill.external_order_id,
            )

        fill_price = fill.outcome.fill_price or request.price
        filled_qty = fill.outcome.filled_quantity or request.shares
        stop_loss, take_profit = self._protective_prices(request, fill_price)
        now = utc_now()

        # Step 5: order filled + position
        try:
            with self._db.transaction_scope() as session:
                order = OrderRepository(session).get(order_id)
                OrderStateMachine(order).confirm_fill(filled_qty, fill_price)
                position = PositionRepository(session).add(PositionModel(
                    symbol=symbol,
                    broker_ticker=request.broker_ticker,
                    shares=filled_qty,
                    entry_price=fill_price,
                    entry_time=now,
                    current_price=fill_price,
                    pnl=0.0,
                    pnl_pct=0.0,
                    stop_loss=stop_loss,
                    take_profit=take_profit,
                    conviction_score=request.conviction_score,
                    protection_status=ProtectionStatus.UNPROTECTED.value,
                    account_type=account,
                ))
                order.position_id = position.id
                position_id = position.id
        except LEDGER_ERRORS as e:
            message = await self.escalate_ledger_failure(
                symbol, f"bought {filled_qty} @ {fill_price}", e,
            )
            return OrderResult.failure(
                symbol, OrderSide.BUY, message,
                order_id=order_id, external_order_id=fill.external_order_id,
                fill_price=fill_price, shares=filled_qty,
                protection_status=ProtectionStatus.UNPROTECTED,
            )

        logger.info(f"Bought {filled_qty} {symbol} @ {fill_price} (quoted {request.price})")

        # Step 6: stop-loss after settlement delay
        await self.wait_settlement()
        stop_order_id = await self.place_stop(
            symbol, request.broker_ticker, filled_qty, stop_loss, position_id=position_id,
        )
        if stop_order_id is None:
            return await self._handle_stop_failure(
                request, order_id, fill.external_order_id, position_id,
                fill_price, filled_qty, stop_loss, take_profit,
            )

        # Step 7: take-profit (non-fatal)
        take_profit_order_id = None
        if take_profit is not None:
            take_profit_order_id = await self.place_take_profit(
                symbol, request.broker_ticker, filled_qty, take_profit, position_id=position_id,
            )

        # Step 8: trade + protective ids
        slippage = (fill_price - request.price) / request.price
        try:
            with self._db.transaction_scope() as session:
                trade = TradeRepository(session).add(self._buy_trade(
                    request, fill_price, filled_qty, now, stop_loss, take_profit, slippage=slippage,
                ))
                OrderRepository(session).link_trade(order_id, trade.id)
                position = PositionRepository(session).get_by_symbol(symbol)
                if position is not None:
                    position.stop_order_id = stop_order_id
                    position.take_profit_order_id = take_profit_order_id
                    position.protection_status = ProtectionStatus.PROTECTED.value
        except LEDGER_ERRORS as e:
            message = await self.escalate_ledger_failure(
                symbol, f"bought {filled_qty} @ {fill_price} with stop {stop_order_id}", e,
            )
            return OrderResult.failure(
                symbol, OrderSide.BUY, message,
                order_id=order_id, external_order_id=fill.external_order_id,
                fill_price=fill_price, shares=filled_qty, slippage=slippage,
                stop_order_id=stop_order_id, take_profit_order_id=take_profit_order_id,
                protection_status=ProtectionStatus.PROTECTED,
            )

        return OrderResult(
            success=True,
            symbol=symbol,
            side=OrderSide.BUY,
            order_id=order_id,
            external_order_id=fill.external_order_id,
            fill_price=fill_price,
            shares=filled_qty,
            slippage=slippage,
            stop_order_id=stop_order_id,
            take_profit_order_id=take_profit_order_id,
            protection_status=ProtectionStatus.PROTECTED,
        )

    async def _handle_stop_failure(
        self,
        request: BuyRequest,
        order_id: int,
        external_order_id: Optional[str],
        position_id: int,
        fill_price: float,
        filled_qty: float,
        stop_loss: float,
        take_profit: Optional[float],
    ) -> OrderResult:
        """
        Compensate for a missing stop-loss.

        Flatten at market. If the flatten also fails the position
        stays open, flagged unprotected, and on_critical fires.
        """
        symbol = request.symbol
        now = utc_now()
        slippage = (fill_price - request.price) / request.price
        logger.error(f"Stop-loss placement failed for {symbol}, flattening position")
        held = dict(
            order_id=order_id,
            external_order_id=external_order_id,
            fill_price=fill_price,
            shares=filled_qty,
            slippage=slippage,
        )

        try:
            with self._db.transaction_scope() as session:
                flatten_order_id = self.new_order(
                    session,
                    symbol=symbol,
                    side=OrderSide.SELL,
                    order_type=OrderType.MARKET,
                    quantity=filled_qty,
                    tag=OrderTag.EXIT,
                    position_id=position_id,
                ).id
        except LEDGER_ERRORS as e:
            message = await self.escalate_ledger_failure(
                symbol, f"holds {filled_qty} shares without a stop-loss (flatten not sent)", e,
            )
            return OrderResult.failure(
                symbol, OrderSide.BUY, message,
                protection_status=ProtectionStatus.UNPROTECTED, **held,
            )

        flatten = await self.submit_market_and_wait(
            flatten_order_id, request.broker_ticker, -filled_qty,
        )

        if flatten.filled:
            exit_price = flatten.outcome.fill_price or fill_price
            pnl = (exit_price - fill_price) * filled_qty
            try:
                self._record_flatten(
                    request, order_id, flatten_order_id, fill_price, filled_qty,
                    exit_price, pnl, now, stop_loss, take_profit, slippage,
                )
            except LEDGER_ERRORS as e:
                message = await self.escalate_ledger_failure(
                    symbol, f"flattened {filled_qty} @ {exit_price}", e,
                )
                return OrderResult.failure(
                    symbol, OrderSide.BUY, message,
                    pnl=pnl, protection_status=ProtectionStatus.FLATTENED, **held,
                )

            logger.warning(f"{symbol} flattened @ {exit_price} after stop-loss failure")
            self.evaluate_protections(
                symbol, "Emergency flatten: stop-loss placement failed",
                (exit_price - fill_price) / fill_price, OrderTag.EXIT,
            )
            return OrderResult.failure(
                symbol, OrderSide.BUY,
                "Stop-loss placement failed; position flattened",
                pnl=pnl,
                protection_status=ProtectionStatus.FLATTENED,
                **held,
            )

        message = (
            f"MANUAL INTERVENTION REQUIRED: {symbol} position of {filled_qty} shares "
            f"is open without a stop-loss (stop and emergency flatten both failed)"
        )
        logger.critical(message)

        try:
            with self._db.transaction_scope() as session:
                trade = TradeRepository(session).add(self._buy_trade(
                    request, fill_price, filled_qty, now, stop_loss, take_profit, slippage=slippage,
                ))
                OrderRepository(session).link_trade(order_id, trade.id)
                position = PositionRepository(session).get_by_symbol(symbol)
                if position is not None:
                    position.protection_status = ProtectionStatus.UNPROTECTED.value
        except LEDGER_ERRORS as e:
            logger.critical(f"Ledger write for unprotected {symbol} failed: {e}")
            message = f"{message}; ledger write failed: {e}"

        await self._notify_critical(message)

        return OrderResult(
            success=True,
            symbol=symbol,
            side=OrderSide.BUY,
            protection_status=ProtectionStatus.UNPROTECTED,
            error=message,
            **held,
        )

    def _record_flatten(
        self,
        request: BuyRequest,
        order_id: int,
        flatten_order_id: int,
        fill_price: float,
        filled_qty: float,
        exit_price: float,
        pnl: float,
        now: datetime,
        stop_loss: float,
        take_profit: Optional[float],
        slippage: float,
    ) -> None:
        """BUY and SELL legs of a flattened entry; the position row goes."""
        symbol = request.symbol
        with self._db.transaction_scope() as session:
            trades = TradeRepository(session)
            buy = trades.add(self._buy_trade(
                request, fill_price, filled_qty, now, stop_loss, take_profit, slippage=slippage,
            ))
            sell = trades.add(TradeModel(
                symbol=symbol,
                broker_ticker=request.broker_ticker,
                side=OrderSide.SELL.value,
                shares=filled_qty,
                entry_price=fill_price,
                exit_price=exit_price,
                pnl=pnl,
                pnl_pct=(exit_price - fill_price) / fill_price,
                entry_time=now,
                exit_time=utc_now(),
                exit_reason="Emergency flatten: stop-loss placement failed",
                intended_price=fill_price,
                slippage=(fill_price - exit_price) / fill_price,
                account_type=(request.account_type or self._config.account_type).value,
            ))
            orders = OrderRepository(session)
            orders.link_trade(order_id, buy.id)
            flatten_order = orders.get(flatten_order_id)
            OrderStateMachine(flatten_order).confirm_fill(filled_qty, exit_price)
            flatten_order.trade_id = sell.id
            position = PositionRepository(session).get_by_symbol(symbol)
            if position is not None:
                PositionRepository(session).delete(position)

    # ============================================================
    # CLOSE
    # ============================================================

    async def execute_close(self, request: CloseRequest) -> OrderResult:
        """
        Close the whole position in a symbol.

        The order tag comes from the caller; free-text reasons are
        classified only when no tag is given.
        """
        symbol = request.symbol
        tag = request.tag or classify_exit_reason(request.reason)

        with self._db.session_scope() as session:
            position = PositionRepository(session).get_by_symbol(symbol)

        if position is None:
            return OrderResult.failure(symbol, OrderSide.SELL, str(PositionNotFoundError(symbol)))

        if self.dry_run:
            return self._execute_close_dry_run(request, position, tag)
        return await self._execute_close_live(request, position, tag)

    def _execute_close_dry_run(
        self,
        request: CloseRequest,
        position: PositionModel,
        tag: OrderTag,
    ) -> OrderResult:
        symbol = request.symbol
        exit_price = position.current_price or position.entry_price
        external_id = dry_run_order_id(OrderSide.SELL, symbol)
        pnl, pnl_pct = self._realized(position, exit_price)

        try:
            with self._db.transaction_scope() as session:
                order = self.new_order(
                    session,
                    symbol=symbol,
                    side=OrderSide.SELL,
                    order_type=OrderType.MARKET,
                    quantity=position.shares,
                    tag=tag,
                    requested_price=exit_price,
                    external_order_id=external_id,
                    position_id=position.id,
                    account_type=position.account_type,
                )
                trade = TradeRepository(session).add(self._sell_trade(
                    position, request, exit_price, pnl, pnl_pct, intended=exit_price, slippage=0.0,
                ))
                order.trade_id = trade.id
                OrderStateMachine(order).mark_filled(position.shares, exit_price, "Dry-run fill")
                live_position = PositionRepository(session).get_by_symbol(symbol)
                if live_position is not None:
                    PositionRepository(session).delete(live_position)
                order_id = order.id
        except LEDGER_ERRORS as e:
            return OrderResult.failure(symbol, OrderSide.SELL, f"Ledger write failed: {e}")

        self.evaluate_protections(symbol, request.reason, pnl_pct, tag)
        logger.info(
            f"[DRY RUN] Closed {position.shares} {symbol} @ {exit_price} "
            f"pnl={pnl:.2f} ({pnl_pct * 100:.2f}%) reason={request.reason}"
        )
        return OrderResult(
            success=True,
            symbol=symbol,
            side=OrderSide.SELL,
            order_id=order_id,
            external_order_id=external_id,
            fill_price=exit_price,
            shares=position.shares,
            pnl=pnl,
            pnl_pct=pnl_pct,
            slippage=0.0,
        )

    async def _execute_close_live(
        self,
        request: CloseRequest,
        position: PositionModel,
        tag: OrderTag,
    ) -> OrderResult:
        symbol = request.symbol
        intended = position.current_price or position.entry_price

        try:
            with self._db.transaction_scope() as session:
                order_id = self.new_order(
                    session,
                    symbol=symbol,
                    side=OrderSide.SELL,
                    order_type=OrderType.MARKET,
                    quantity=position.shares,
                    tag=tag,
                    requested_price=intended,
                    position_id=position.id,
                    account_type=position.account_type,
                ).id
        except LEDGER_ERRORS as e:
            return OrderResult.failure(symbol, OrderSide.SELL, f"Ledger write failed: {e}")

        await self.cancel_protective_orders(position, reason=f"Position closing: {request.reason}")

        fill = await self.submit_market_and_wait(order_id, position.broker_ticker, -position.shares)
        if not fill.filled:
            return OrderResult.failure(
                symbol, OrderSide.SELL, fill.error or "Order not filled",
                order_id=order_id, external_order_id=fill.external_order_id,
            )

        exit_price = fill.outcome.fill_price or intended
        pnl, pnl_pct = self._realized(position, exit_price)
        slippage = (intended - exit_price) / intended

        try:
            with self._db.transaction_scope() as session:
                order = OrderRepository(session).get(order_id)
                OrderStateMachine(order).confirm_fill(position.shares, exit_price)
                trade = TradeRepository(session).add(self._sell_trade(
                    position, request, exit_price, pnl, pnl_pct, intended=intended, slippage=slippage,
                ))
                order.trade_id = trade.id
                live_position = PositionRepository(session).get_by_symbol(symbol)
                if live_position is not None:
                    PositionRepository(session).delete(live_position)
        except LEDGER_ERRORS as e:
            message = await self.escalate_ledger_failure(
                symbol, f"sold {position.shares} @ {exit_price}", e,
            )
            return OrderResult.failure(
                symbol, OrderSide.SELL, message,
                order_id=order_id, external_order_id=fill.external_order_id,
                fill_price=exit_price, shares=position.shares, pnl=pnl, pnl_pct=pnl_pct,
            )

        self.evaluate_protections(symbol, request.reason, pnl_pct, tag)
        logger.info(
            f"Closed {position.shares} {symbol} @ {exit_price} "
            f"pnl={pnl:.2f} ({pnl_pct * 100:.2f}%) reason={request.reason}"
        )
        return OrderResult(
            success=True,
            symbol=symbol,
            side=OrderSide.SELL,
            order_id=order_id,
            external_order_id=fill.external_order_id,
            fill_price=exit_price,
            shares=position.shares,
            pnl=pnl,
            pnl_pct=pnl_pct,
            slippage=slippage,
        )

    # ============================================================
    # SHARED PRIMITIVES
    # ============================================================

    def new_order(
        self,
        session: Session,
        *,
        symbol: str,
        side: OrderSide,
        order_type: OrderType,
        quantity: float,
        tag: OrderTag,
        requested_price: Optional[float] = None,
        stop_price: Optional[float] = None,
        external_order_id: Optional[str] = None,
        status: OrderStatus = OrderStatus.PENDING,
        position_id: Optional[int] = None,
        account_type: Optional[str] = None,
    ) -> OrderModel:
        """Insert an Order row inside the caller's transaction."""
        order = OrderRepository(session).add(OrderModel(
            symbol=symbol,
            side=side.value,
            order_type=order_type.value,
            status=status.value,
            requested_quantity=abs(quantity),
            requested_price=requested_price,
            stop_price=stop_price,
            external_order_id=external_order_id,
            order_tag=tag.value,
            position_id=position_id,
            account_type=account_type or self._config.account_type.value,
        ))
        logger.debug(f"Order {order.id} created: {side.value} {symbol} x{quantity} [{tag.value}]")
        return order

    async def submit_market_and_wait(
        self,
        order_id: int,
        ticker: str,
        quantity: float,
    ) -> MarketFill:
        """
        Submit a market order for a pending Order row and wait.

        Marks the row open on acknowledgement and failed on any
        submission error, timeout or dead remote order. Leaves it
        open on success so the caller can mark it filled in the
        same transaction as its ledger writes.
        """
        try:
            placed = await self._client.place_market_order(MarketOrderRequest(
                ticker=ticker,
                quantity=quantity,
                time_validity=TimeValidity.DAY,
            ))
        except Exception as e:
            logger.error(f"Order {order_id}: market order for {ticker} failed: {e}")
            self.fail_order(order_id, str(e))
            return MarketFill(outcome=None, error=str(e))

        self._transition(order_id, lambda sm: sm.mark_open(placed.id))

        outcome = await self._fill_waiter.wait_for_fill(
            placed.id,
            on_partial_fill=lambda qty: self._record_partial_fill(order_id, qty),
        )

        if not outcome.filled:
            reason = outcome.error
            if not outcome.timed_out and outcome.final_status:
                reason = f"Exchange status: {outcome.final_status}"
            self.fail_order(order_id, reason)
            return MarketFill(outcome=outcome, external_order_id=placed.id, error=reason)

        return MarketFill(outcome=outcome, external_order_id=placed.id)

    async def place_stop(
        self,
        symbol: str,
        ticker: str,
        shares: float,
        stop_price: float,
        position_id: Optional[int] = None,
    ) -> Optional[str]:
        """
        Place a GTC stop sell and record it (tag stoploss, open).

        Returns the external id, or None if the brokerage refused.
        """
        try:
            placed = await self._client.place_stop_order(StopOrderRequest(
                ticker=ticker,
                quantity=-abs(shares),
                stop_price=stop_price,
                time_validity=TimeValidity.GOOD_TILL_CANCEL,
            ))
        except Exception as e:
            logger.error(f"Stop-loss order for {symbol} @ {stop_price} failed: {e}")
            return None

        with self._db.transaction_scope() as session:
            self.new_order(
                session,
                symbol=symbol,
                side=OrderSide.SELL,
                order_type=OrderType.STOP,
                quantity=shares,
                tag=OrderTag.STOPLOSS,
                stop_price=stop_price,
                external_order_id=placed.id,
                status=OrderStatus.OPEN,
                position_id=position_id,
            )
        logger.info(f"Stop-loss placed for {symbol}: {shares} @ {stop_price} (id {placed.id})")
        return placed.id

    async def place_take_profit(
        self,
        symbol: str,
        ticker: str,
        shares: float,
        limit_price: float,
        position_id: Optional[int] = None,
    ) -> Optional[str]:
        """GTC limit sell at the take-profit price. Failure only warns."""
        try:
            placed = await self._client.place_limit_order(LimitOrderRequest(
                ticker=ticker,
                quantity=-abs(shares),
                limit_price=limit_price,
                time_validity=TimeValidity.GOOD_TILL_CANCEL,
            ))
        except Exception as e:
            logger.warning(f"Take-profit order for {symbol} @ {limit_price} failed: {e}")
            return None

        with self._db.transaction_scope() as session:
            self.new_order(
                session,
                symbol=symbol,
                side=OrderSide.SELL,
                order_type=OrderType.LIMIT,
                quantity=shares,
                tag=OrderTag.TAKE_PROFIT,
                requested_price=limit_price,
                external_order_id=placed.id,
                status=OrderStatus.OPEN,
                position_id=position_id,
            )
        logger.info(f"Take-profit placed for {symbol}: {shares} @ {limit_price} (id {placed.id})")
        return placed.id

    async def cancel_protective_orders(
        self,
        position: PositionModel,
        reason: str,
        include_take_profit: bool = True,
    ) -> None:
        """Best-effort cancel of the position's stop (and take-profit)."""
        ids = [position.stop_order_id]
        if include_take_profit:
            ids.append(position.take_profit_order_id)

        for external_id in filter(None, ids):
            try:
                await self._client.cancel_order(external_id)
            except Exception as e:
                logger.warning(
                    f"Cancel of protective order {external_id} for {position.symbol} failed "
                    f"(may have already filled): {e}"
                )
                continue
            self._mark_cancelled_by_external_id(external_id, reason)

    def pair_lock_reason(self, symbol: str) -> Optional[str]:
        """Reason a long entry on the symbol is locked, or None."""
        if self._pair_locks is None:
            return None
        lock = self._pair_locks.is_pair_locked(symbol, "long")
        return (lock.reason or "locked") if lock.locked else None

    async def wait_settlement(self) -> None:
        """Give the exchange time to settle a fill before placing a stop."""
        await self._sleep(self._config.stop_loss_delay_seconds)

    def fail_order(self, order_id: int, reason: str) -> None:
        self._transition(order_id, lambda sm: sm.mark_failed(reason))

    async def escalate_ledger_failure(self, symbol: str, detail: str, error: Exception) -> str:
        """
        Report a ledger write lost after the exchange already acted.

        Logs at critical, fires on_critical and returns the message
        for the caller's failed result.
        """
        message = f"MANUAL INTERVENTION REQUIRED: {symbol} {detail} but the ledger write failed: {error}"
        logger.critical(message)
        await self._notify_critical(message)
        return message

    def evaluate_protections(
        self,
        symbol: str,
        reason: str,
        pnl_pct: Optional[float],
        tag: Optional[OrderTag] = None,
    ) -> None:
        """Run the post-close protection rules; a failure never undoes the close."""
        if self._protections is None:
            return
        try:
            self._protections.evaluate_after_close(symbol, reason, pnl_pct, tag=tag)
        except Exception as e:
            logger.error(f"Protection evaluation after closing {symbol} failed: {e}")

    # ============================================================
    # HELPERS
    # ============================================================

    def _transition(self, order_id: int, apply: Callable[[OrderStateMachine], object]) -> None:
        try:
            with self._db.transaction_scope() as session:
                order = OrderRepository(session).get(order_id)
                if order is None:
                    logger.error(f"Order {order_id} vanished from ledger")
                    return
                apply(OrderStateMachine(order))
        except InvalidStateTransitionError as e:
            logger.error(str(e))

    def _record_partial_fill(self, order_id: int, filled_quantity: float) -> None:
        self._transition(order_id, lambda sm: sm.mark_partially_filled(filled_quantity))

    def _mark_cancelled_by_external_id(self, external_id: str, reason: str) -> None:
        with self._db.transaction_scope() as session:
            order = OrderRepository(session).get_by_external_id(external_id)
            if order is None:
                return
            machine = OrderStateMachine(order)
            allowed, _ = machine.can_transition_to(OrderStatus.CANCELLED)
            if allowed:
                machine.mark_cancelled(reason)

    def _protective_prices(
        self,
        request: BuyRequest,
        fill_price: float,
    ) -> Tuple[float, Optional[float]]:
        sl_pct = request.stop_loss_pct if request.stop_loss_pct is not None else self._config.stop_loss_pct
        tp_pct = request.take_profit_pct if request.take_profit_pct is not None else self._config.take_profit_pct
        stop_loss = fill_price * (1 - sl_pct)
        take_profit = fill_price * (1 + tp_pct) if tp_pct > 0 else None
        return stop_loss, take_profit

    @staticmethod
    def _realized(position: PositionModel, exit_price: float) -> Tuple[float, float]:
        pnl = (exit_price - position.entry_price) * position.shares
        pnl_pct = (exit_price - position.entry_price) / position.entry_price
        return pnl, pnl_pct

    def _buy_trade(
        self,
        request: BuyRequest,
        fill_price: float,
        shares: float,
        when: datetime,
        stop_loss: float,
        take_profit: Optional[float],
        slippage: float,
    ) -> TradeModel:
        return TradeModel(
            symbol=request.symbol,
            broker_ticker=request.broker_ticker,
            side=OrderSide.BUY.value,
            shares=shares,
            entry_price=fill_price,
            entry_time=when,
            stop_loss=stop_loss,
            take_profit=take_profit,
            ai_reasoning=request.ai_reasoning,
            conviction_score=request.conviction_score,
            ai_model=request.ai_model,
            intended_price=request.price,
            slippage=slippage,
            account_type=(request.account_type or self._config.account_type).value,
        )

    @staticmethod
    def _sell_trade(
        position: PositionModel,
        request: CloseRequest,
        exit_price: float,
        pnl: float,
        pnl_pct: float,
        intended: float,
        slippage: float,
    ) -> TradeModel:
        return TradeModel(
            symbol=position.symbol,
            broker_ticker=position.broker_ticker,
            side=OrderSide.SELL.value,
            shares=position.shares,
            entry_price=position.entry_price,
            exit_price=exit_price,
            pnl=pnl,
            pnl_pct=pnl_pct,
            entry_time=position.entry_time,
            exit_time=utc_now(),
            stop_loss=position.stop_loss,
            take_profit=position.take_profit,
            exit_reason=request.reason,
            ai_reasoning=request.ai_reasoning,
            ai_model=request.ai_model,
            conviction_score=position.conviction_score,
            intended_price=intended,
            slippage=slippage,
            account_type=position.account_type,
        )

    async def _notify_critical(self, message: str) -> None:
        if self._on_critical is None:
            return
        try:
            await self._on_critical(message)
        except Exception as e:
            logger.error(f"Critical alert callback failed: {e}")


__all__ = [
    "OrderManager",
    "MarketFill",
    "dry_run_order_id",
]
