"""
Shared test fixtures.

============================================================
PURPOSE
============================================================
In-memory ledger, scripted brokerage and wired managers.

Every test gets a fresh SQLite in-memory database and a fresh
MockBrokerageClient; nothing touches the network or disk.

============================================================
"""

import pytest

from database import Database, PositionModel, PositionRepository
from execution_engine import (
    BuyRequest,
    ExecutionConfig,
    MockBrokerageClient,
    OrderManager,
)
from risk_management import PairLockManager


@pytest.fixture
def db():
    """Fresh in-memory ledger."""
    database = Database.in_memory()
    yield database
    database.dispose()


@pytest.fixture
def client():
    """Scripted brokerage client."""
    return MockBrokerageClient()


@pytest.fixture
def pair_locks(db):
    return PairLockManager(db)


@pytest.fixture
def dry_run_manager(db, client, pair_locks):
    """Order manager in dry-run mode."""
    return OrderManager(db, client, ExecutionConfig.for_testing(dry_run=True), pair_locks=pair_locks)


@pytest.fixture
def live_manager(db, client, pair_locks):
    """Order manager in live mode against the mock brokerage, no sleeps."""
    return OrderManager(db, client, ExecutionConfig.for_testing(dry_run=False), pair_locks=pair_locks)


def make_buy(symbol: str = "AAPL", shares: float = 10, price: float = 100.0, **kwargs) -> BuyRequest:
    """Buy request with a broker ticker derived from the symbol."""
    return BuyRequest(
        symbol=symbol,
        broker_ticker=f"{symbol}_US_EQ",
        shares=shares,
        price=price,
        **kwargs,
    )


def get_position(db: Database, symbol: str) -> PositionModel:
    with db.session_scope() as session:
        return PositionRepository(session).get_by_symbol(symbol)


def set_current_price(db: Database, symbol: str, price: float) -> None:
    with db.transaction_scope() as session:
        position = PositionRepository(session).get_by_symbol(symbol)
        position.current_price = price
