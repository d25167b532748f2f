"""
Execution Engine - Order Synchronizer.

============================================================
PURPOSE
============================================================
Reconciles non-terminal ledger orders with the brokerage.

CRITICAL INVARIANT:
    "Exchange state is authoritative for order status."

SWEEP (per open order, oldest first):
- No exchange id and pending past the stale window -> failed
- Synthetic dry-run ids are skipped
- Status fetch error -> counted, order left untouched
- FILLED -> filled (remote quantity and price)
- CANCELLED -> cancelled, REJECTED -> failed
- Working with 0 < filled < requested -> partially_filled
- Working otherwise -> open (if still pending)

============================================================
"""

import logging
from datetime import timedelta
from typing import Optional

from database import Database, OrderModel, OrderRepository, utc_now

from .adapters.base import BrokerageClient, RemoteOrder
from .config import ExecutionConfig
from .errors import BrokerageError, InvalidStateTransitionError
from .state_machine import OrderStateMachine
from .types import OrderStatus, RemoteOrderStatus, SyncResult


logger = logging.getLogger(__name__)


DRY_RUN_PREFIX = "dry_run_"


class OrderSynchronizer:
    """
    Ledger-to-brokerage order reconciliation.

    Args:
        db: Ledger database
        client: Brokerage client
        config: Execution configuration (stale window)
    """

    def __init__(
        self,
        db: Database,
        client: BrokerageClient,
        config: Optional[ExecutionConfig] = None,
    ):
        self._db = db
        self._client = client
        self._config = config or ExecutionConfig()

    async def sync_open_orders(self) -> SyncResult:
        """Run one reconciliation sweep. Never raises for brokerage errors."""
        result = SyncResult()

        with self._db.session_scope() as session:
            orders = [
                (o.id, o.external_order_id, o.status, o.created_at)
                for o in OrderRepository(session).get_open_orders()
            ]

        if not orders:
            logger.debug("No open orders to sync")
            return result

        stale_cutoff = utc_now() - timedelta(minutes=self._config.stale_pending_minutes)

        for order_id, external_id, status, created_at in orders:
            if not external_id:
                if status == OrderStatus.PENDING.value and created_at < stale_cutoff:
                    reason = (
                        f"Stale pending order: no exchange ID after "
                        f"{self._config.stale_pending_minutes} minutes"
                    )
                    if self._apply(order_id, lambda sm: sm.mark_failed(reason), result):
                        result.failed += 1
                        result.synced += 1
                        logger.warning(f"Order {order_id}: {reason}")
                continue

            if external_id.startswith(DRY_RUN_PREFIX):
                continue

            try:
                remote = await self._client.get_order(external_id)
            except BrokerageError as e:
                logger.warning(f"Order {order_id} ({external_id}): status fetch failed: {e}")
                result.errors += 1
                continue

            self._reconcile(order_id, remote, result)

        logger.info(
            f"Order sync: synced={result.synced} filled={result.filled} "
            f"cancelled={result.cancelled} failed={result.failed} errors={result.errors}"
        )
        return result

    # ============================================================
    # RECONCILIATION
    # ============================================================

    def _reconcile(self, order_id: int, remote: RemoteOrder, result: SyncResult) -> None:
        status = remote.status

        if status == RemoteOrderStatus.FILLED:
            def apply(sm: OrderStateMachine) -> None:
                order = sm.order
                quantity = abs(remote.filled_quantity) if remote.filled_quantity else order.requested_quantity
                sm.mark_filled(quantity, remote.fill_price, "Filled on exchange")

            if self._apply(order_id, apply, result):
                result.filled += 1
                result.synced += 1
            return

        if status == RemoteOrderStatus.CANCELLED:
            if self._apply(order_id, lambda sm: sm.mark_cancelled(f"Exchange status: {status}"), result):
                result.cancelled += 1
                result.synced += 1
            return

        if status == RemoteOrderStatus.REJECTED:
            if self._apply(order_id, lambda sm: sm.mark_failed(f"Exchange status: {status}"), result):
                result.failed += 1
                result.synced += 1
            return

        if status in RemoteOrderStatus.WORKING_STATUSES:
            if self._apply(order_id, lambda sm: self._sync_working(sm, remote), result):
                result.synced += 1
            return

        logger.warning(f"Order {order_id}: unhandled exchange status {status}")

    @staticmethod
    def _sync_working(sm: OrderStateMachine, remote: RemoteOrder) -> bool:
        """Returns False when the ledger already matches."""
        order: OrderModel = sm.order
        filled = abs(remote.filled_quantity or 0)
        changed = False

        if sm.current_status == OrderStatus.PENDING:
            sm.mark_open(order.external_order_id)
            changed = True

        if 0 < filled < order.requested_quantity:
            if sm.current_status != OrderStatus.PARTIALLY_FILLED:
                sm.mark_partially_filled(filled)
                changed = True
            elif order.filled_quantity != filled:
                order.filled_quantity = filled
                changed = True
        return changed

    def _apply(self, order_id: int, apply, result: SyncResult) -> bool:
        """
        Run one state change in its own transaction.

        Returns True if the ledger row changed.
        """
        try:
            with self._db.transaction_scope() as session:
                order = OrderRepository(session).get(order_id)
                if order is None:
                    return False
                changed = apply(OrderStateMachine(order))
            return changed is not False
        except InvalidStateTransitionError as e:
            logger.error(f"Order {order_id}: {e}")
            result.errors += 1
            return False


__all__ = [
    "OrderSynchronizer",
    "DRY_RUN_PREFIX",
]
