"""
Execution Engine - Order State Machine.

============================================================
PURPOSE
============================================================
Guards every status write on an Order ledger row.

STATE MACHINE:

       PENDING ──────────────────────► FAILED / CANCELLED
           │                                 ▲
           ▼                                 │
         OPEN ───────────────────────────────┤
           │                                 │
           ├──► PARTIALLY_FILLED ────────────┤
           │         │                       │
           │         ▼                       │
           └──────► FILLED                   │

INVARIANTS:
- Terminal states (filled, cancelled, failed) are final
- OPEN, PARTIALLY_FILLED and FILLED require an external order id
- All transitions are logged

============================================================
"""

import logging
from datetime import datetime
from typing import Optional, Set, Dict, List, Any
from dataclasses import dataclass, field

from database.models import OrderModel, utc_now

from .errors import InvalidStateTransitionError
from .types import OrderStatus


logger = logging.getLogger(__name__)


# ============================================================
# STATE TRANSITION RULES
# ============================================================

VALID_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {
        OrderStatus.OPEN,
        OrderStatus.FILLED,
        OrderStatus.CANCELLED,
        OrderStatus.FAILED,
    },
    OrderStatus.OPEN: {
        OrderStatus.PARTIALLY_FILLED,
        OrderStatus.FILLED,
        OrderStatus.CANCELLED,
        OrderStatus.FAILED,
    },
    OrderStatus.PARTIALLY_FILLED: {
        OrderStatus.FILLED,
        OrderStatus.CANCELLED,
        OrderStatus.FAILED,
    },
    # Terminal states - no transitions out
    OrderStatus.FILLED: set(),
    OrderStatus.CANCELLED: set(),
    OrderStatus.FAILED: set(),
}

REQUIRES_EXTERNAL_ID = {
    OrderStatus.OPEN,
    OrderStatus.PARTIALLY_FILLED,
    OrderStatus.FILLED,
}


# ============================================================
# STATE TRANSITION EVENT
# ============================================================

@dataclass
class StateTransitionEvent:
    """Event representing a status change."""

    order_id: Optional[int]
    from_status: OrderStatus
    to_status: OrderStatus
    timestamp: datetime = field(default_factory=utc_now)
    reason: str = ""
    details: Dict[str, Any] = field(default_factory=dict)


# ============================================================
# STATE TRANSITION GUARD
# ============================================================

class TransitionGuard:
    """Checks transitions and the data each target state needs."""

    @staticmethod
    def can_transition(
        from_status: OrderStatus,
        to_status: OrderStatus,
    ) -> tuple[bool, str]:
        """
        Check if transition is allowed.

        Returns:
            Tuple of (allowed, reason)
        """
        if from_status == to_status and not from_status.is_terminal():
            return True, "Same state"

        if to_status in VALID_TRANSITIONS.get(from_status, set()):
            return True, "Valid transition"

        if from_status.is_terminal():
            return False, f"Cannot transition from terminal state {from_status.value}"

        return False, f"Invalid transition: {from_status.value} -> {to_status.value}"

    @staticmethod
    def validate_order_for_status(
        order: OrderModel,
        target: OrderStatus,
    ) -> tuple[bool, str]:
        """
        Validate order data for the target status.

        Returns:
            Tuple of (valid, reason)
        """
        if target in REQUIRES_EXTERNAL_ID and not order.external_order_id:
            return False, f"Missing external_order_id for {target.value}"

        if target == OrderStatus.PARTIALLY_FILLED:
            filled = order.filled_quantity or 0
            if filled <= 0:
                return False, "filled_quantity must be positive for partially_filled"
            if filled >= order.requested_quantity:
                return False, "filled_quantity must be below requested for partially_filled"

        return True, "Order valid for state"


# ============================================================
# ORDER STATE MACHINE
# ============================================================

class OrderStateMachine:
    """
    State machine over one OrderModel row.

    Mutates the row in place; persisting it is the caller's
    transaction scope's job.
    """

    def __init__(self, order: OrderModel):
        self._order = order
        self._history: List[StateTransitionEvent] = []

    @property
    def current_status(self) -> OrderStatus:
        return OrderStatus(self._order.status)

    @property
    def order(self) -> OrderModel:
        return self._order

    @property
    def history(self) -> List[StateTransitionEvent]:
        return list(self._history)

    def can_transition_to(self, target: OrderStatus) -> tuple[bool, str]:
        allowed, reason = TransitionGuard.can_transition(self.current_status, target)
        if not allowed:
            return False, reason
        return TransitionGuard.validate_order_for_status(self._order, target)

    def transition_to(
        self,
        target: OrderStatus,
        reason: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> StateTransitionEvent:
        """
        Move the order to a new status.

        Raises:
            InvalidStateTransitionError: If transition is not allowed
        """
        allowed, validation_reason = self.can_transition_to(target)
        if not allowed:
            raise InvalidStateTransitionError(
                self._order.id,
                self._order.status,
                target.value,
                validation_reason,
            )

        event = StateTransitionEvent(
            order_id=self._order.id,
            from_status=self.current_status,
            to_status=target,
            reason=reason,
            details=details or {},
        )

        if event.from_status == target:
            return event

        self._order.status = target.value
        self._order.updated_at = event.timestamp
        if target == OrderStatus.FILLED:
            self._order.filled_at = event.timestamp

        self._history.append(event)

        logger.info(
            f"Order {self._order.id} [{self._order.symbol} {self._order.order_tag}]: "
            f"{event.from_status.value} -> {target.value}"
            + (f" ({reason})" if reason else "")
        )

        return event

    # --------------------------------------------------------
    # CONVENIENCE METHODS
    # --------------------------------------------------------

    def mark_open(self, external_order_id: str) -> StateTransitionEvent:
        """Record the brokerage acknowledgement."""
        self._order.external_order_id = external_order_id
        return self.transition_to(OrderStatus.OPEN, "Order submitted")

    def mark_partially_filled(self, filled_quantity: float) -> StateTransitionEvent:
        self._order.filled_quantity = filled_quantity
        return self.transition_to(
            OrderStatus.PARTIALLY_FILLED,
            "Partial fill",
            details={"filled_quantity": filled_quantity},
        )

    def mark_filled(
        self,
        filled_quantity: float,
        filled_price: Optional[float],
        reason: str = "Order filled",
    ) -> StateTransitionEvent:
        self._order.filled_quantity = filled_quantity
        if filled_price is not None:
            self._order.filled_price = filled_price
        return self.transition_to(
            OrderStatus.FILLED,
            reason,
            details={"filled_quantity": filled_quantity, "filled_price": filled_price},
        )

    def confirm_fill(
        self,
        filled_quantity: float,
        filled_price: Optional[float],
        reason: str = "Order filled",
    ) -> Optional[StateTransitionEvent]:
        """
        Mark filled, tolerating a row another writer already filled.

        An order reconciled to FILLED while its fill-wait was still
        running keeps its status; only missing fill figures are
        completed. Returns None in that case.
        """
        if self.current_status != OrderStatus.FILLED:
            return self.mark_filled(filled_quantity, filled_price, reason)

        if not self._order.filled_quantity:
            self._order.filled_quantity = filled_quantity
        if self._order.filled_price is None and filled_price is not None:
            self._order.filled_price = filled_price
        logger.info(f"Order {self._order.id} already filled, fill confirmed")
        return None

    def mark_cancelled(self, reason: str) -> StateTransitionEvent:
        self._order.cancel_reason = reason
        return self.transition_to(OrderStatus.CANCELLED, reason)

    def mark_failed(self, reason: str) -> StateTransitionEvent:
        self._order.cancel_reason = reason
        return self.transition_to(OrderStatus.FAILED, reason)


__all__ = [
    "VALID_TRANSITIONS",
    "REQUIRES_EXTERNAL_ID",
    "StateTransitionEvent",
    "TransitionGuard",
    "OrderStateMachine",
]
