"""
Execution Engine - Trading 212 Client.

============================================================
PURPOSE
============================================================
Live brokerage client for the Trading 212 equity API.

ENDPOINTS USED:
- POST   /equity/orders/market
- POST   /equity/orders/limit
- POST   /equity/orders/stop
- GET    /equity/orders/{id}
- DELETE /equity/orders/{id}

AUTH:
    HTTP Basic with "api_key:api_secret".

ERRORS:
- 429 -> BrokerageRateLimitError
- 401 -> BrokerageAuthError
- other non-2xx -> BrokerageApiError
- network / timeout -> BrokerageError (retryable)

============================================================
"""

import asyncio
import base64
import json
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Mapping

import aiohttp

from ..config import Trading212Config
from ..errors import (
    BrokerageError,
    BrokerageRateLimitError,
    BrokerageAuthError,
    BrokerageApiError,
)
from .base import (
    BrokerageClient,
    RateLimitStatus,
    MarketOrderRequest,
    LimitOrderRequest,
    StopOrderRequest,
    PlacedOrder,
    RemoteOrder,
)


logger = logging.getLogger(__name__)


def _int_header(headers: Mapping[str, str], name: str) -> Optional[int]:
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class Trading212Client(BrokerageClient):
    """
    Trading 212 REST client.

    The aiohttp session is opened lazily on first request and
    must be released with close().
    """

    def __init__(
        self,
        config: Trading212Config,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._config = config
        self._base_url = config.base_url
        self._session = session
        self._owns_session = session is None
        self._rate_limits: Dict[str, RateLimitStatus] = {}
        self._last_rate_limit = RateLimitStatus()

        logger.info(f"Trading212 client initialized ({config.environment})")

    @property
    def broker_id(self) -> str:
        return "trading212"

    # --------------------------------------------------------
    # ORDERS
    # --------------------------------------------------------

    async def place_market_order(self, request: MarketOrderRequest) -> PlacedOrder:
        data = await self._request(
            "POST",
            "/equity/orders/market",
            payload={
                "ticker": request.ticker,
                "quantity": request.quantity,
                "timeValidity": request.time_validity.value,
            },
        )
        return self._to_placed(data)

    async def place_limit_order(self, request: LimitOrderRequest) -> PlacedOrder:
        data = await self._request(
            "POST",
            "/equity/orders/limit",
            payload={
                "ticker": request.ticker,
                "quantity": request.quantity,
                "limitPrice": round(request.limit_price, 2),
                "timeValidity": request.time_validity.value,
            },
        )
        return self._to_placed(data)

    async def place_stop_order(self, request: StopOrderRequest) -> PlacedOrder:
        data = await self._request(
            "POST",
            "/equity/orders/stop",
            payload={
                "ticker": request.ticker,
                "quantity": request.quantity,
                "stopPrice": round(request.stop_price, 2),
                "timeValidity": request.time_validity.value,
            },
        )
        return self._to_placed(data)

    async def get_order(self, order_id: str) -> RemoteOrder:
        data = await self._request("GET", f"/equity/orders/{order_id}")
        return RemoteOrder(
            id=str(data.get("id", order_id)),
            status=str(data.get("status", "")),
            ticker=data.get("ticker"),
            quantity=data.get("quantity"),
            value=data.get("value"),
            filled_quantity=data.get("filledQuantity"),
            filled_value=data.get("filledValue"),
        )

    async def cancel_order(self, order_id: str) -> None:
        await self._request("DELETE", f"/equity/orders/{order_id}")

    # --------------------------------------------------------
    # RATE LIMITS
    # --------------------------------------------------------

    def get_rate_limit_status(self, endpoint: Optional[str] = None) -> RateLimitStatus:
        if endpoint is not None:
            return self._rate_limits.get(endpoint, RateLimitStatus())
        return self._last_rate_limit

    def _update_rate_limits(self, endpoint: str, headers: Mapping[str, str]) -> None:
        """Record x-ratelimit-* headers for the endpoint."""
        limit = _int_header(headers, "x-ratelimit-limit")
        remaining = _int_header(headers, "x-ratelimit-remaining")
        if limit is None or remaining is None:
            return

        reset = _int_header(headers, "x-ratelimit-reset")
        status = RateLimitStatus(
            limit=limit,
            remaining=remaining,
            used=_int_header(headers, "x-ratelimit-used"),
            reset_at=(
                datetime.fromtimestamp(reset, tz=timezone.utc).replace(tzinfo=None)
                if reset is not None else None
            ),
        )
        self._rate_limits[endpoint] = status
        self._last_rate_limit = status

        if remaining <= 2:
            logger.warning(f"Rate limit nearly exhausted on {endpoint}: {remaining} left")

    # --------------------------------------------------------
    # HTTP
    # --------------------------------------------------------

    def _auth_header(self) -> str:
        raw = f"{self._config.api_key}:{self._config.api_secret}"
        if ":" in self._config.api_key:
            raw = self._config.api_key
        return "Basic " + base64.b64encode(raw.encode()).decode()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._config.request_timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Make API request."""
        session = self._get_session()
        url = f"{self._base_url}{path}"
        headers = {
            "Authorization": self._auth_header(),
            "Content-Type": "application/json",
        }

        logger.debug(f"API request {method} {path}")

        try:
            async with session.request(method, url, json=payload, headers=headers) as response:
                self._update_rate_limits(path, response.headers)

                if response.status == 429:
                    reset = _int_header(response.headers, "x-ratelimit-reset")
                    retry_after = None
                    if reset is not None:
                        retry_after = max(0.0, reset - datetime.now(timezone.utc).timestamp())
                    logger.warning(f"Rate limited on {path}")
                    raise BrokerageRateLimitError(retry_after=retry_after)

                if response.status >= 400:
                    body = await response.text()
                    message = self._extract_message(body)
                    if response.status == 401:
                        raise BrokerageAuthError(f"Trading 212 API Error (401): {message}")
                    raise BrokerageApiError(
                        f"Trading 212 API Error ({response.status}): {message}",
                        status_code=response.status,
                        body=body,
                    )

                text = await response.text()
                if not text:
                    return {}
                return json.loads(text)

        except aiohttp.ClientError as e:
            raise BrokerageError(
                f"Network error: {e}",
                code="NET_CONNECTION_FAILED",
                is_retryable=True,
            ) from e
        except asyncio.TimeoutError as e:
            raise BrokerageError(
                "Request timeout",
                code="TMO_READ",
                is_retryable=True,
            ) from e

    @staticmethod
    def _extract_message(body: str) -> str:
        try:
            parsed = json.loads(body)
        except ValueError:
            return body
        if isinstance(parsed, dict):
            return parsed.get("message") or parsed.get("errorMessage") or body
        return body

    @staticmethod
    def _to_placed(data: Dict[str, Any]) -> PlacedOrder:
        if "id" not in data:
            raise BrokerageError("Order response missing id", code="BAD_RESPONSE")
        return PlacedOrder(id=str(data["id"]), status=data.get("status"))

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None


__all__ = ["Trading212Client"]
