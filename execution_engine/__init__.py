"""
Execution Engine Package.

============================================================
PURPOSE
============================================================
Turns admitted trade proposals into brokerage orders and keeps
the ledger consistent with the brokerage.

CRITICAL PRINCIPLE:
    "Execution Engine is REACTIVE, not decision-making."
    "It executes only after Risk Guard admits the proposal
     and no pair lock is in effect."

AUTHORITY BOUNDARIES:
    CAN:
        - Submit, poll and cancel orders
        - Place protective stop / take-profit orders
        - Flatten a position it cannot protect
        - Reconcile ledger orders with the brokerage

    MUST NOT:
        - Open a second position on a held symbol
        - Resize trades
        - Generate trade ideas
        - Ignore pair locks

============================================================
MODULES
============================================================
- types: Enums, requests and result dataclasses
- config: Execution, partial exit, DCA and brokerage configuration
- errors: Error taxonomy
- state_machine: Order lifecycle management
- fill_waiter: Await-terminal-state primitive
- order_manager: Buy / close execution and shared primitives
- partial_exit: Tiered scale-out
- dca: Cost averaging
- order_sync: Ledger-to-brokerage reconciliation
- roi_table: Time-decaying profit exits
- adapters: Brokerage clients (Trading 212, Mock)

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    # Enums
    OrderSide,
    OrderType,
    TimeValidity,
    AccountType,
    OrderStatus,
    OrderTag,
    RemoteOrderStatus,
    ProtectionStatus,
    LockSide,
    classify_exit_reason,
    # Requests / results
    BuyRequest,
    CloseRequest,
    OrderResult,
    PartialExitTier,
    PartialExitEvaluation,
    PartialExitResult,
    DCAEvaluation,
    DCAResult,
    SyncResult,
)

# ============================================================
# CONFIGURATION
# ============================================================
from .config import (
    ExecutionConfig,
    PartialExitConfig,
    DCAConfig,
    Trading212Config,
    TRADING212_URLS,
)

# ============================================================
# ERRORS
# ============================================================
from .errors import (
    ErrorCategory,
    ExecutionEngineError,
    DuplicatePositionError,
    PositionNotFoundError,
    InvalidStateTransitionError,
    BrokerageError,
    BrokerageRateLimitError,
    BrokerageAuthError,
    BrokerageApiError,
)

# ============================================================
# STATE MACHINE
# ============================================================
from .state_machine import (
    VALID_TRANSITIONS,
    REQUIRES_EXTERNAL_ID,
    StateTransitionEvent,
    TransitionGuard,
    OrderStateMachine,
)

# ============================================================
# ADAPTERS
# ============================================================
from .adapters import (
    BrokerageClient,
    MarketOrderRequest,
    LimitOrderRequest,
    StopOrderRequest,
    PlacedOrder,
    RemoteOrder,
    MockBrokerageClient,
    Trading212Client,
    create_client,
)

# ============================================================
# CORE COMPONENTS
# ============================================================
from .fill_waiter import FillOutcome, FillWaiter
from .order_manager import OrderManager, MarketFill, dry_run_order_id
from .partial_exit import PartialExitManager
from .dca import DCAManager, volume_weighted_average
from .order_sync import OrderSynchronizer
from .roi_table import (
    RoiDecision,
    parse_roi_table,
    get_roi_threshold,
    should_exit_by_roi,
)


# ============================================================
# VERSION
# ============================================================
__version__ = "0.1.0"


# ============================================================
# ALL EXPORTS
# ============================================================
__all__ = [
    # Types
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
    # Config
    "ExecutionConfig",
    "PartialExitConfig",
    "DCAConfig",
    "Trading212Config",
    "TRADING212_URLS",
    # Errors
    "ErrorCategory",
    "ExecutionEngineError",
    "DuplicatePositionError",
    "PositionNotFoundError",
    "InvalidStateTransitionError",
    "BrokerageError",
    "BrokerageRateLimitError",
    "BrokerageAuthError",
    "BrokerageApiError",
    # State machine
    "VALID_TRANSITIONS",
    "REQUIRES_EXTERNAL_ID",
    "StateTransitionEvent",
    "TransitionGuard",
    "OrderStateMachine",
    # Adapters
    "BrokerageClient",
    "MarketOrderRequest",
    "LimitOrderRequest",
    "StopOrderRequest",
    "PlacedOrder",
    "RemoteOrder",
    "MockBrokerageClient",
    "Trading212Client",
    "create_client",
    # Core
    "FillOutcome",
    "FillWaiter",
    "OrderManager",
    "MarketFill",
    "dry_run_order_id",
    "PartialExitManager",
    "DCAManager",
    "volume_weighted_average",
    "OrderSynchronizer",
    "RoiDecision",
    "parse_roi_table",
    "get_roi_threshold",
    "should_exit_by_roi",
]
