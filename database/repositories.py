"""
Ledger Repositories.

============================================================
PURPOSE
============================================================
Query helpers over the ledger tables.

Every repository is bound to a caller-owned Session so that
several repositories can share one unit of work:

    with db.transaction_scope() as session:
        position = PositionRepository(session).get_by_symbol("AAPL")
        OrderRepository(session).add(order)

Repositories never commit; the transaction scope does.

============================================================
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update, desc, func, or_
from sqlalchemy.orm import Session

from .models import (
    GLOBAL_LOCK_SYMBOL,
    OrderModel,
    PairLockModel,
    PositionModel,
    TradeModel,
)


logger = logging.getLogger(__name__)


OPEN_ORDER_STATUSES = ("pending", "open", "partially_filled")

STOPLOSS_REASON_KEYWORDS = (
    "stoploss",
    "stop-loss",
    "stop loss",
    "stop_loss",
    "trailing stop",
    "stopped out",
)
"""Lower-case phrases marking a free-text exit reason as a stop-loss exit."""


class _SessionRepository:
    """Common base: holds the injected session."""

    def __init__(self, session: Session):
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    def add(self, record):
        """Add a record and flush so generated ids are available."""
        self._session.add(record)
        self._session.flush()
        return record


# =============================================================
# ORDERS
# =============================================================

class OrderRepository(_SessionRepository):
    """Order ledger queries."""

    def get(self, order_id: int) -> Optional[OrderModel]:
        return self._session.get(OrderModel, order_id)

    def get_by_external_id(self, external_order_id: str) -> Optional[OrderModel]:
        stmt = select(OrderModel).where(OrderModel.external_order_id == external_order_id)
        return self._session.execute(stmt).scalars().first()

    def get_open_orders(self) -> List[OrderModel]:
        """Orders not yet in a terminal state, oldest first."""
        stmt = (
            select(OrderModel)
            .where(OrderModel.status.in_(OPEN_ORDER_STATUSES))
            .order_by(OrderModel.created_at, OrderModel.id)
        )
        return list(self._session.execute(stmt).scalars().all())

    def get_orders_for_symbol(self, symbol: str, limit: int = 50) -> List[OrderModel]:
        stmt = (
            select(OrderModel)
            .where(OrderModel.symbol == symbol)
            .order_by(desc(OrderModel.created_at), desc(OrderModel.id))
            .limit(limit)
        )
        return list(self._session.execute(stmt).scalars().all())

    def link_trade(self, order_id: int, trade_id: int) -> None:
        self._session.execute(
            update(OrderModel).where(OrderModel.id == order_id).values(trade_id=trade_id)
        )


# =============================================================
# POSITIONS
# =============================================================

class PositionRepository(_SessionRepository):
    """Open position queries."""

    def get_by_symbol(self, symbol: str) -> Optional[PositionModel]:
        stmt = select(PositionModel).where(PositionModel.symbol == symbol)
        return self._session.execute(stmt).scalars().first()

    def list_all(self) -> List[PositionModel]:
        stmt = select(PositionModel).order_by(PositionModel.symbol)
        return list(self._session.execute(stmt).scalars().all())

    def count(self) -> int:
        return self._session.execute(select(func.count(PositionModel.id))).scalar_one()

    def delete(self, position: PositionModel) -> None:
        self._session.delete(position)
        self._session.flush()


# =============================================================
# TRADES
# =============================================================

class TradeRepository(_SessionRepository):
    """Trade history queries."""

    def list_for_symbol(self, symbol: str) -> List[TradeModel]:
        stmt = select(TradeModel).where(TradeModel.symbol == symbol).order_by(TradeModel.id)
        return list(self._session.execute(stmt).scalars().all())

    def get_last_buy_time(self, symbol: str) -> Optional[datetime]:
        """Entry time of the most recent BUY leg on the symbol."""
        stmt = (
            select(TradeModel.entry_time)
            .where(TradeModel.symbol == symbol, TradeModel.side == "BUY")
            .order_by(desc(TradeModel.entry_time), desc(TradeModel.id))
            .limit(1)
        )
        return self._session.execute(stmt).scalar_one_or_none()

    def get_entry_trade(self, symbol: str, since: datetime) -> Optional[TradeModel]:
        """The opening BUY leg (not a DCA round) of the position opened at `since`."""
        stmt = (
            select(TradeModel)
            .where(
                TradeModel.symbol == symbol,
                TradeModel.side == "BUY",
                TradeModel.dca_round.is_(None),
                TradeModel.entry_time >= since,
            )
            .order_by(TradeModel.entry_time, TradeModel.id)
            .limit(1)
        )
        return self._session.execute(stmt).scalars().first()

    def get_closed_trades_since(
        self,
        since: datetime,
        symbol: Optional[str] = None,
    ) -> List[TradeModel]:
        """
        Closed legs (exit_time and pnl_pct set) since a cutoff,
        ordered by exit time.
        """
        stmt = select(TradeModel).where(
            TradeModel.exit_time.is_not(None),
            TradeModel.exit_time >= since,
            TradeModel.pnl_pct.is_not(None),
        )
        if symbol is not None:
            stmt = stmt.where(TradeModel.symbol == symbol)
        stmt = stmt.order_by(TradeModel.exit_time, TradeModel.id)
        return list(self._session.execute(stmt).scalars().all())

    def count_stoploss_exits_since(
        self,
        since: datetime,
        symbol: Optional[str] = None,
    ) -> int:
        """
        Stop-loss exits since a cutoff: legs whose order was tagged
        stoploss, or whose free-text reason names a stop-loss.
        """
        reason = func.lower(TradeModel.exit_reason)
        tagged = (
            select(OrderModel.id)
            .where(OrderModel.trade_id == TradeModel.id, OrderModel.order_tag == "stoploss")
            .exists()
        )
        stmt = select(func.count(TradeModel.id)).where(
            TradeModel.exit_time.is_not(None),
            TradeModel.exit_time >= since,
            or_(tagged, *[reason.like(f"%{k}%") for k in STOPLOSS_REASON_KEYWORDS]),
        )
        if symbol is not None:
            stmt = stmt.where(TradeModel.symbol == symbol)
        return self._session.execute(stmt).scalar_one()


# =============================================================
# PAIR LOCKS
# =============================================================

class PairLockRepository(_SessionRepository):
    """Pair lock queries. Locks are deactivated, never deleted."""

    def get_active_for_symbol(self, symbol: str, now: datetime) -> List[PairLockModel]:
        """Locks in effect for one symbol (pass '*' for global locks)."""
        stmt = (
            select(PairLockModel)
            .where(
                PairLockModel.symbol == symbol,
                PairLockModel.active.is_(True),
                PairLockModel.lock_end >= now,
            )
            .order_by(desc(PairLockModel.lock_end))
        )
        return list(self._session.execute(stmt).scalars().all())

    def get_all_active(self, now: datetime) -> List[PairLockModel]:
        stmt = (
            select(PairLockModel)
            .where(PairLockModel.active.is_(True), PairLockModel.lock_end >= now)
            .order_by(PairLockModel.lock_end)
        )
        return list(self._session.execute(stmt).scalars().all())

    def deactivate_for_symbol(self, symbol: str) -> int:
        result = self._session.execute(
            update(PairLockModel)
            .where(PairLockModel.symbol == symbol, PairLockModel.active.is_(True))
            .values(active=False)
        )
        return result.rowcount or 0

    def deactivate_expired(self, now: datetime) -> int:
        result = self._session.execute(
            update(PairLockModel)
            .where(PairLockModel.active.is_(True), PairLockModel.lock_end <= now)
            .values(active=False)
        )
        return result.rowcount or 0


__all__ = [
    "OPEN_ORDER_STATUSES",
    "GLOBAL_LOCK_SYMBOL",
    "OrderRepository",
    "PositionRepository",
    "TradeRepository",
    "PairLockRepository",
]
