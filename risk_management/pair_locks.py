"""
Risk Management - Pair Lock Manager.

============================================================
PURPOSE
============================================================
Read/write interface over the pair lock table.

A lock restricts new exposure on one symbol, or on the whole
book when its symbol is '*'. Locks carry a side scope
('*', 'long', 'short') and an end time.

MATCHING:
    A lock in effect matches a query when
        lock.side == '*' or lock.side == side or side == '*'
    Symbol locks are checked before global locks.

Locks are advisory: nothing blocks automatically. Every path
that opens exposure must ask is_pair_locked first.

============================================================
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from database import (
    GLOBAL_LOCK_SYMBOL,
    Database,
    PairLockModel,
    PairLockRepository,
    utc_now,
)


logger = logging.getLogger(__name__)


ANY_SIDE = "*"
VALID_SIDES = ("*", "long", "short")


@dataclass
class LockCheck:
    """Answer to 'is this symbol locked?'."""

    locked: bool
    reason: Optional[str] = None
    lock_end: Optional[datetime] = None

    @classmethod
    def unlocked(cls) -> "LockCheck":
        return cls(locked=False)


def _side_matches(lock_side: str, side: str) -> bool:
    return lock_side == ANY_SIDE or lock_side == side or side == ANY_SIDE


class PairLockManager:
    """
    Pair lock store access.

    Args:
        db: Ledger database holding the pair_locks table
    """

    def __init__(self, db: Database):
        self._db = db

    # ============================================================
    # LOCKING
    # ============================================================

    def lock_pair(
        self,
        symbol: str,
        minutes: float,
        reason: str,
        side: str = ANY_SIDE,
    ) -> PairLockModel:
        """Lock a symbol for the given number of minutes."""
        if side not in VALID_SIDES:
            raise ValueError(f"Invalid lock side: {side}")

        lock_end = utc_now() + timedelta(minutes=minutes)
        with self._db.transaction_scope() as session:
            lock = PairLockRepository(session).add(PairLockModel(
                symbol=symbol,
                lock_end=lock_end,
                reason=reason,
                side=side,
                active=True,
            ))

        logger.info(f"Pair locked: {symbol} side={side} for {minutes}m until {lock_end} ({reason})")
        return lock

    def lock_global(self, minutes: float, reason: str) -> PairLockModel:
        """Lock every symbol, every side."""
        lock = self.lock_pair(GLOBAL_LOCK_SYMBOL, minutes, reason, ANY_SIDE)
        logger.warning(f"Global trading lock activated for {minutes}m ({reason})")
        return lock

    def unlock_pair(self, symbol: str) -> int:
        """Deactivate every active lock on the symbol. Returns the count."""
        with self._db.transaction_scope() as session:
            count = PairLockRepository(session).deactivate_for_symbol(symbol)
        logger.info(f"Pair unlocked: {symbol} ({count} locks deactivated)")
        return count

    def cleanup_expired(self) -> int:
        """Deactivate locks whose end time has passed. Returns the count."""
        with self._db.transaction_scope() as session:
            count = PairLockRepository(session).deactivate_expired(utc_now())
        if count:
            logger.info(f"Expired pair locks cleaned up: {count}")
        return count

    # ============================================================
    # QUERIES
    # ============================================================

    def is_pair_locked(self, symbol: str, side: str = ANY_SIDE) -> LockCheck:
        """Check symbol locks, then global locks, for a side."""
        now = utc_now()
        with self._db.session_scope() as session:
            repo = PairLockRepository(session)

            for lock in repo.get_active_for_symbol(symbol, now):
                if _side_matches(lock.side, side):
                    return LockCheck(True, lock.reason or "Pair locked", lock.lock_end)

            if symbol != GLOBAL_LOCK_SYMBOL:
                for lock in repo.get_active_for_symbol(GLOBAL_LOCK_SYMBOL, now):
                    if _side_matches(lock.side, side):
                        return LockCheck(True, lock.reason or "Global lock active", lock.lock_end)

        return LockCheck.unlocked()

    def is_global_locked(self) -> LockCheck:
        with self._db.session_scope() as session:
            locks = PairLockRepository(session).get_active_for_symbol(GLOBAL_LOCK_SYMBOL, utc_now())
        if not locks:
            return LockCheck.unlocked()
        return LockCheck(True, locks[0].reason or "Global lock active", locks[0].lock_end)

    def get_lock_for_symbol(self, symbol: str) -> Optional[PairLockModel]:
        """Longest-running lock in effect on the symbol itself (globals excluded)."""
        with self._db.session_scope() as session:
            locks = PairLockRepository(session).get_active_for_symbol(symbol, utc_now())
        return locks[0] if locks else None

    def get_active_locks(self) -> List[PairLockModel]:
        with self._db.session_scope() as session:
            return PairLockRepository(session).get_all_active(utc_now())


__all__ = [
    "ANY_SIDE",
    "LockCheck",
    "PairLockManager",
]
