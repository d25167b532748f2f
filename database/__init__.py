"""
Database Package Initialization.

============================================================
TRADING LEDGER PERSISTENCE
============================================================

Durable state for the execution engine:
- positions (open exposure)
- trades (closed history)
- orders (per-request lifecycle)
- pair_locks (trading restrictions)

REQUIRED:
- All transactions are explicit with commit/rollback
- Unique constraints back the one-position-per-symbol rule
- Every failure raises hard exceptions

============================================================
"""

from .engine import (
    Database,
    get_database_url,
    DEFAULT_DATABASE_URL,
    DatabasePersistenceError,
    DatabaseConnectionError,
    DatabaseInitializationError,
    IntegrityViolationError,
)

from .models import (
    Base,
    utc_now,
    GLOBAL_LOCK_SYMBOL,
    PositionModel,
    TradeModel,
    OrderModel,
    PairLockModel,
)

from .repositories import (
    OPEN_ORDER_STATUSES,
    STOPLOSS_REASON_KEYWORDS,
    OrderRepository,
    PositionRepository,
    TradeRepository,
    PairLockRepository,
)


__all__ = [
    # Engine
    "Database",
    "get_database_url",
    "DEFAULT_DATABASE_URL",
    # Exceptions
    "DatabasePersistenceError",
    "DatabaseConnectionError",
    "DatabaseInitializationError",
    "IntegrityViolationError",
    # Models
    "Base",
    "utc_now",
    "GLOBAL_LOCK_SYMBOL",
    "PositionModel",
    "TradeModel",
    "OrderModel",
    "PairLockModel",
    # Repositories
    "OPEN_ORDER_STATUSES",
    "STOPLOSS_REASON_KEYWORDS",
    "OrderRepository",
    "PositionRepository",
    "TradeRepository",
    "PairLockRepository",
]
