"""
Execution Engine - Brokerage Adapters.

============================================================
PURPOSE
============================================================
Brokerage clients behind one abstract contract.

CLIENTS:
- Trading212Client: live REST client (aiohttp)
- MockBrokerageClient: scripted in-memory client

============================================================
"""

from typing import Optional

from ..config import Trading212Config
from .base import (
    BrokerageClient,
    RateLimitStatus,
    MarketOrderRequest,
    LimitOrderRequest,
    StopOrderRequest,
    PlacedOrder,
    RemoteOrder,
)
from .mock import (
    MockConfig,
    MockOrder,
    MockBrokerageClient,
)
from .trading212 import Trading212Client


def create_client(
    dry_run: bool,
    config: Optional[Trading212Config] = None,
) -> BrokerageClient:
    """
    Build the brokerage client for the run mode.

    Dry-run gets the mock client; live gets Trading 212 with
    credentials from the environment unless a config is given.
    """
    if dry_run:
        return MockBrokerageClient()

    config = config or Trading212Config.from_env()
    errors = config.validate()
    if errors:
        raise ValueError(f"Invalid Trading 212 config: {', '.join(errors)}")
    return Trading212Client(config)


__all__ = [
    "BrokerageClient",
    "RateLimitStatus",
    "MarketOrderRequest",
    "LimitOrderRequest",
    "StopOrderRequest",
    "PlacedOrder",
    "RemoteOrder",
    "MockConfig",
    "MockOrder",
    "MockBrokerageClient",
    "Trading212Client",
    "create_client",
]
