"""
Execution Engine - Error Taxonomy.

============================================================
PURPOSE
============================================================
Error classification for execution failures.

ERROR CATEGORIES:
1. Admission - Risk Guard rejected the proposal
2. Duplicate state - position already open for the symbol
3. Exchange call - a brokerage call raised
4. Timeout - fill-wait exceeded its budget
5. Unprotected position - stop placement and flatten failed
6. Best effort - non-fatal protective-order failures
7. Reconciliation - remote status fetch failed during a sweep

None of these escape a public operation: managers convert
them into result objects. Only programming errors propagate.

============================================================
"""

from enum import Enum
from typing import Optional


# ============================================================
# ERROR CATEGORIES
# ============================================================

class ErrorCategory(Enum):
    """Error category classification."""

    ADMISSION = "ADMISSION"
    """Pre-trade risk check rejected the proposal."""

    DUPLICATE_STATE = "DUPLICATE_STATE"
    """Buy into an already-open position."""

    EXCHANGE_CALL = "EXCHANGE_CALL"
    """Brokerage client call raised."""

    TIMEOUT = "TIMEOUT"
    """Order did not fill inside the wait budget."""

    UNPROTECTED_POSITION = "UNPROTECTED_POSITION"
    """Position open on the exchange without a stop-loss."""

    BEST_EFFORT = "BEST_EFFORT"
    """Non-fatal failure of an auxiliary step."""

    RECONCILIATION = "RECONCILIATION"
    """Remote status fetch failed during order sync."""


# ============================================================
# EXCEPTIONS
# ============================================================

class ExecutionEngineError(Exception):
    """Base exception for execution engine."""

    category: Optional[ErrorCategory] = None


class DuplicatePositionError(ExecutionEngineError):
    """A position (or in-flight entry order) already exists for the symbol."""

    category = ErrorCategory.DUPLICATE_STATE

    def __init__(self, symbol: str):
        super().__init__(f"Position already exists for {symbol}")
        self.symbol = symbol


class PositionNotFoundError(ExecutionEngineError):
    """No open position for the symbol."""

    def __init__(self, symbol: str):
        super().__init__(f"No position found for {symbol}")
        self.symbol = symbol


class InvalidStateTransitionError(ExecutionEngineError):
    """Order status write rejected by the state machine."""

    def __init__(self, order_id: Optional[int], from_status: str, to_status: str, reason: str):
        super().__init__(
            f"Order {order_id}: invalid transition {from_status} -> {to_status}: {reason}"
        )
        self.order_id = order_id
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason


class BrokerageError(ExecutionEngineError):
    """Brokerage communication error."""

    category = ErrorCategory.EXCHANGE_CALL

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        is_retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.is_retryable = is_retryable


class BrokerageRateLimitError(BrokerageError):
    """HTTP 429 from the brokerage."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[float] = None):
        super().__init__(message, code="RATE_LIMIT", is_retryable=True)
        self.retry_after = retry_after


class BrokerageAuthError(BrokerageError):
    """HTTP 401 from the brokerage."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message, code="AUTH", is_retryable=False)


class BrokerageApiError(BrokerageError):
    """Any other non-success brokerage response."""

    def __init__(self, message: str, status_code: int, body: Optional[str] = None):
        super().__init__(message, code=str(status_code), is_retryable=status_code >= 500)
        self.status_code = status_code
        self.body = body


__all__ = [
    "ErrorCategory",
    "ExecutionEngineError",
    "DuplicatePositionError",
    "PositionNotFoundError",
    "InvalidStateTransitionError",
    "BrokerageError",
    "BrokerageRateLimitError",
    "BrokerageAuthError",
    "BrokerageApiError",
]
