"""
Database ORM Models - Trading Ledger.

============================================================
LEDGER SCHEMA
============================================================

Four tables:
- positions:  one row per currently-held symbol
- trades:     append-only fill history (one row per executed leg)
- orders:     one row per request sent (or about to be sent)
              to the brokerage, with its own lifecycle
- pair_locks: time-bounded trading restrictions (never deleted)

Uniqueness enforced by the storage layer:
- positions.symbol is unique
- at most one in-flight entry order per symbol

Timestamps are naive UTC.

============================================================
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# =============================================================
# HELPER FUNCTIONS
# =============================================================

def utc_now() -> datetime:
    """Get current UTC timestamp (naive)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


GLOBAL_LOCK_SYMBOL = "*"
"""Pair lock symbol meaning 'every symbol'."""

IN_FLIGHT_ENTRY_CLAUSE = (
    "order_tag = 'entry' AND status IN ('pending', 'open', 'partially_filled')"
)


class Base(DeclarativeBase):
    """Declarative base for all ledger models."""

    type_annotation_map = {
        datetime: DateTime(),
    }


# =============================================================
# POSITIONS
# =============================================================

class PositionModel(Base):
    """
    Current open holding in a symbol.

    Created on the first fill of a BUY, reduced by partial exits,
    grown by DCA rounds and removed when shares reach zero.
    """
    __tablename__ = "positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    broker_ticker: Mapped[str] = mapped_column(String(64), nullable=False)

    shares: Mapped[float] = mapped_column(Float, nullable=False)
    entry_price: Mapped[float] = mapped_column(Float, nullable=False)
    entry_time: Mapped[datetime] = mapped_column(nullable=False, default=utc_now)

    current_price: Mapped[Optional[float]] = mapped_column(Float)
    pnl: Mapped[Optional[float]] = mapped_column(Float)
    pnl_pct: Mapped[Optional[float]] = mapped_column(Float)

    stop_loss: Mapped[Optional[float]] = mapped_column(Float)
    trailing_stop: Mapped[Optional[float]] = mapped_column(Float)
    take_profit: Mapped[Optional[float]] = mapped_column(Float)
    conviction_score: Mapped[Optional[float]] = mapped_column(Float)

    # Protective orders on the exchange
    stop_order_id: Mapped[Optional[str]] = mapped_column(String(64))
    take_profit_order_id: Mapped[Optional[str]] = mapped_column(String(64))
    protection_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="protected"
    )

    account_type: Mapped[str] = mapped_column(String(10), nullable=False, default="INVEST")

    # Cost averaging / scale-out counters
    dca_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_invested: Mapped[Optional[float]] = mapped_column(Float)
    partial_exit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        return f"<Position {self.symbol} shares={self.shares} entry={self.entry_price}>"


# =============================================================
# TRADES
# =============================================================

class TradeModel(Base):
    """
    Immutable record of one executed leg.

    BUY rows carry entry data; SELL rows carry exit price, realized
    P&L and exit reason. DCA rounds and partial exits each get their
    own row.
    """
    __tablename__ = "trades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    broker_ticker: Mapped[str] = mapped_column(String(64), nullable=False)
    side: Mapped[str] = mapped_column(String(4), nullable=False)

    shares: Mapped[float] = mapped_column(Float, nullable=False)
    entry_price: Mapped[float] = mapped_column(Float, nullable=False)
    exit_price: Mapped[Optional[float]] = mapped_column(Float)
    pnl: Mapped[Optional[float]] = mapped_column(Float)
    pnl_pct: Mapped[Optional[float]] = mapped_column(Float)

    entry_time: Mapped[datetime] = mapped_column(nullable=False, default=utc_now)
    exit_time: Mapped[Optional[datetime]] = mapped_column(index=True)

    stop_loss: Mapped[Optional[float]] = mapped_column(Float)
    take_profit: Mapped[Optional[float]] = mapped_column(Float)
    exit_reason: Mapped[Optional[str]] = mapped_column(Text)

    # AI attribution
    ai_reasoning: Mapped[Optional[str]] = mapped_column(Text)
    conviction_score: Mapped[Optional[float]] = mapped_column(Float)
    ai_model: Mapped[Optional[str]] = mapped_column(String(64))

    # Slippage tracking
    intended_price: Mapped[Optional[float]] = mapped_column(Float)
    slippage: Mapped[Optional[float]] = mapped_column(Float)

    account_type: Mapped[str] = mapped_column(String(10), nullable=False, default="INVEST")
    dca_round: Mapped[Optional[int]] = mapped_column(Integer)

    def __repr__(self) -> str:
        return f"<Trade {self.side} {self.symbol} x{self.shares}>"


# =============================================================
# ORDERS
# =============================================================

class OrderModel(Base):
    """
    Ledger entry mirroring one brokerage request.

    Lifecycle: pending -> open -> {filled | partially_filled -> filled
    | cancelled | failed}. Status writes go through OrderStateMachine.
    """
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trade_id: Mapped[Optional[int]] = mapped_column(ForeignKey("trades.id"))
    position_id: Mapped[Optional[int]] = mapped_column(Integer)

    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    side: Mapped[str] = mapped_column(String(4), nullable=False)
    order_type: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    requested_quantity: Mapped[float] = mapped_column(Float, nullable=False)
    filled_quantity: Mapped[Optional[float]] = mapped_column(Float)
    requested_price: Mapped[Optional[float]] = mapped_column(Float)
    filled_price: Mapped[Optional[float]] = mapped_column(Float)
    stop_price: Mapped[Optional[float]] = mapped_column(Float)

    external_order_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text)
    order_tag: Mapped[Optional[str]] = mapped_column(String(20))
    replaced_by_order_id: Mapped[Optional[int]] = mapped_column(Integer)

    account_type: Mapped[str] = mapped_column(String(10), nullable=False, default="INVEST")

    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False, default=utc_now, onupdate=utc_now
    )
    filled_at: Mapped[Optional[datetime]] = mapped_column()

    __table_args__ = (
        Index("ix_orders_symbol", "symbol"),
        Index("ix_orders_status", "status"),
        Index(
            "uq_orders_in_flight_entry",
            "symbol",
            unique=True,
            sqlite_where=text(IN_FLIGHT_ENTRY_CLAUSE),
            postgresql_where=text(IN_FLIGHT_ENTRY_CLAUSE),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Order {self.id} {self.side} {self.symbol} "
            f"{self.order_tag} status={self.status}>"
        )


# =============================================================
# PAIR LOCKS
# =============================================================

class PairLockModel(Base):
    """
    Time-bounded trading restriction.

    symbol '*' locks the whole book. side is '*', 'long' or 'short'.
    In effect iff active and lock_end is in the future. Rows are
    deactivated, never deleted.
    """
    __tablename__ = "pair_locks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    lock_end: Mapped[datetime] = mapped_column(nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    side: Mapped[str] = mapped_column(String(5), nullable=False, default="*")
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_pair_locks_symbol_active", "symbol", "active"),
    )

    def __repr__(self) -> str:
        return f"<PairLock {self.symbol} side={self.side} until={self.lock_end}>"


__all__ = [
    "Base",
    "utc_now",
    "GLOBAL_LOCK_SYMBOL",
    "PositionModel",
    "TradeModel",
    "OrderModel",
    "PairLockModel",
]
