"""
Execution Engine - Types.

============================================================
PURPOSE
============================================================
Enums, requests and result objects shared by the order
manager, partial exit manager, DCA manager and order
synchronizer.

Every public execution operation returns one of the result
dataclasses below. Failures are reported through `success`
and `error`, not by raising.

============================================================
"""

from datetime import datetime
from typing import Optional
from dataclasses import dataclass, field
from enum import Enum

from database.models import utc_now
from database.repositories import STOPLOSS_REASON_KEYWORDS


# ============================================================
# ORDER TYPES
# ============================================================

class OrderSide(Enum):
    """Order side."""

    BUY = "BUY"
    SELL = "SELL"


class OrderType(Enum):
    """Order type."""

    MARKET = "market"
    """Execute at current market price."""

    LIMIT = "limit"
    """Execute at specified price or better."""

    STOP = "stop"
    """Market order triggered at stop price."""


class TimeValidity(Enum):
    """Brokerage time-in-force values."""

    DAY = "DAY"
    """Expires at the end of the trading day."""

    GOOD_TILL_CANCEL = "GOOD_TILL_CANCEL"
    """Stays working until filled or cancelled."""


class AccountType(Enum):
    """Account segment."""

    INVEST = "INVEST"
    """Taxable account."""

    ISA = "ISA"
    """Tax-advantaged account."""


# ============================================================
# ORDER LIFECYCLE
# ============================================================

class OrderStatus(Enum):
    """
    Local order lifecycle status.

    State Machine:

        PENDING ──► OPEN ──► FILLED
           │         │
           │         ├──► PARTIALLY_FILLED ──► FILLED
           │         │
           └─────────┴──► CANCELLED / FAILED

    PENDING is the only state without an external order id.
    """

    PENDING = "pending"
    """Recorded locally, not yet acknowledged by the brokerage."""

    OPEN = "open"
    """Acknowledged by the brokerage, working."""

    PARTIALLY_FILLED = "partially_filled"
    """Some quantity executed, remainder working."""

    FILLED = "filled"
    """Fully executed."""

    CANCELLED = "cancelled"
    """Cancelled locally or by the brokerage."""

    FAILED = "failed"
    """Rejected, timed out, or never reached the brokerage."""

    def is_terminal(self) -> bool:
        """Check if this is a terminal state."""
        return self in {
            OrderStatus.FILLED,
            OrderStatus.CANCELLED,
            OrderStatus.FAILED,
        }

    def is_open(self) -> bool:
        """Check if the order is still in flight."""
        return not self.is_terminal()


class OrderTag(Enum):
    """Intent of an order."""

    ENTRY = "entry"
    STOPLOSS = "stoploss"
    TAKE_PROFIT = "take_profit"
    PARTIAL_EXIT = "partial_exit"
    DCA = "dca"
    EXIT = "exit"


class RemoteOrderStatus:
    """Brokerage-side order statuses consumed by the engine."""

    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"
    NEW = "NEW"
    WORKING = "WORKING"

    WORKING_STATUSES = frozenset({"NEW", "WORKING", "PARTIALLY_FILLED", "CONFIRMED", "LOCAL"})


class ProtectionStatus(Enum):
    """Exchange-side protection state of a position after an entry."""

    PROTECTED = "protected"
    """Stop-loss order working on the exchange."""

    UNPROTECTED = "unprotected"
    """Stop placement and emergency flatten both failed. Manual action required."""

    FLATTENED = "flattened"
    """Stop placement failed and the position was closed at market."""

    NOT_APPLICABLE = "not_applicable"
    """No entry happened (or dry-run)."""


class LockSide(Enum):
    """Side scope of a pair lock."""

    ANY = "*"
    LONG = "long"
    SHORT = "short"


# ============================================================
# EXIT REASON CLASSIFICATION
# ============================================================

_TAKE_PROFIT_KEYWORDS = ("take profit", "take-profit", "take_profit", "tp ")
_STOPLOSS_KEYWORDS = STOPLOSS_REASON_KEYWORDS
_PARTIAL_KEYWORDS = ("partial",)


def classify_exit_reason(reason: Optional[str]) -> OrderTag:
    """
    Map a free-text exit reason onto an order tag.

    Only for legacy callers that do not pass an explicit tag.
    Take-profit wins over stop-loss, which wins over partial.
    """
    text = (reason or "").lower()
    if any(k in text for k in _TAKE_PROFIT_KEYWORDS):
        return OrderTag.TAKE_PROFIT
    if any(k in text for k in _STOPLOSS_KEYWORDS):
        return OrderTag.STOPLOSS
    if any(k in text for k in _PARTIAL_KEYWORDS):
        return OrderTag.PARTIAL_EXIT
    return OrderTag.EXIT


# ============================================================
# REQUESTS
# ============================================================

@dataclass
class BuyRequest:
    """Parameters for opening a position."""

    symbol: str
    """Internal symbol (e.g. AAPL)."""

    broker_ticker: str
    """Brokerage instrument id (e.g. AAPL_US_EQ)."""

    shares: float
    """Quantity to buy."""

    price: float
    """Quoted price at decision time."""

    stop_loss_pct: Optional[float] = None
    """Override of configured stop-loss distance."""

    take_profit_pct: Optional[float] = None
    """Override of configured take-profit distance (0 disables)."""

    conviction_score: Optional[float] = None
    ai_reasoning: Optional[str] = None
    ai_model: Optional[str] = None

    account_type: Optional[AccountType] = None
    """Defaults to the configured account."""


@dataclass
class CloseRequest:
    """Parameters for closing a position."""

    symbol: str
    reason: str
    """Human readable exit reason, stored on the SELL trade."""

    tag: Optional[OrderTag] = None
    """Intent decided by the caller. Falls back to classify_exit_reason."""

    ai_reasoning: Optional[str] = None
    ai_model: Optional[str] = None


# ============================================================
# RESULTS
# ============================================================

@dataclass
class OrderResult:
    """Result of a buy or close."""

    success: bool
    symbol: str
    side: OrderSide

    order_id: Optional[int] = None
    """Local order row id."""

    external_order_id: Optional[str] = None
    fill_price: Optional[float] = None
    shares: Optional[float] = None

    pnl: Optional[float] = None
    pnl_pct: Optional[float] = None
    slippage: Optional[float] = None

    stop_order_id: Optional[str] = None
    take_profit_order_id: Optional[str] = None
    protection_status: ProtectionStatus = ProtectionStatus.NOT_APPLICABLE

    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)

    @classmethod
    def failure(cls, symbol: str, side: OrderSide, error: str, **kwargs) -> "OrderResult":
        return cls(success=False, symbol=symbol, side=side, error=error, **kwargs)


@dataclass
class PartialExitTier:
    """One scale-out milestone."""

    pct_gain: float
    """Unrealized gain (fraction) that triggers the tier."""

    sell_pct: float
    """Fraction of current shares to sell."""


@dataclass
class PartialExitEvaluation:
    should_exit: bool
    reason: str
    tier: Optional[int] = None
    """Zero-based tier index."""
    shares_to_sell: Optional[int] = None


@dataclass
class PartialExitResult:
    success: bool
    symbol: str
    shares_sold: int = 0
    remaining_shares: float = 0
    fill_price: Optional[float] = None
    pnl: Optional[float] = None
    tier: Optional[int] = None
    new_stop_loss: Optional[float] = None
    order_id: Optional[int] = None
    error: Optional[str] = None


@dataclass
class DCAEvaluation:
    should_dca: bool
    reason: str
    shares_to_buy: Optional[int] = None
    new_avg_price: Optional[float] = None
    dca_round: Optional[int] = None
    """One-based round the buy would become."""


@dataclass
class DCAResult:
    success: bool
    symbol: str
    shares_bought: int = 0
    fill_price: Optional[float] = None
    new_avg_price: Optional[float] = None
    total_shares: float = 0
    dca_round: Optional[int] = None
    order_id: Optional[int] = None
    error: Optional[str] = None


@dataclass
class SyncResult:
    """Counters from one reconciliation sweep."""

    synced: int = 0
    filled: int = 0
    cancelled: int = 0
    failed: int = 0
    errors: int = 0

    @property
    def success(self) -> bool:
        return self.errors == 0


__all__ = [
    "OrderSide",
    "OrderType",
    "TimeValidity",
    "AccountType",
    "OrderStatus",
    "OrderTag",
    "RemoteOrderStatus",
    "ProtectionStatus",
    "LockSide",
    "classify_exit_reason",
    "BuyRequest",
    "CloseRequest",
    "OrderResult",
    "PartialExitTier",
    "PartialExitEvaluation",
    "PartialExitResult",
    "DCAEvaluation",
    "DCAResult",
    "SyncResult",
]
