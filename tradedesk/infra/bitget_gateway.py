"""Exchange gateway client for the Bitget RPC façade.

The façade is a single HTTP function that takes ``{action, params}``
and answers ``{success, data}`` or ``{success: false, error}``. This
client provides async access with retry logic, rate-limit backoff and
error mapping, and returns tagged results (GatewayOk / GatewayFailure)
parsed into typed snapshots.

Usage:
    gateway = BitgetGateway()  # reads TRADEDESK_GATEWAY_URL / _KEY
    ticker = await gateway.get_ticker("BTCUSDT")
    if ticker.ok:
        print(ticker.data.last_price)
"""

import asyncio
import os
from typing import Any, Callable

import httpx
import structlog

from tradedesk.exceptions import GatewayUnavailable
from tradedesk.schemas.enums import GatewayCall
from tradedesk.schemas.exchange import (
    AccountSnapshot,
    ExchangePositionSnapshot,
    GatewayFailure,
    GatewayOk,
    GatewayResult,
    RawOrder,
    TickerSnapshot,
)

logger = structlog.get_logger()


class BitgetGateway:
    """Async HTTP client for the exchange RPC façade.

    Handles authentication, rate limiting, retries, and error mapping.
    Never raises from the public ``get_*`` / order methods: failures come
    back as GatewayFailure carrying a GatewayUnavailable.
    """

    FUNCTION_PATH = "/functions/v1/bitget-api"
    DEFAULT_TIMEOUT = 15.0
    MAX_RETRIES = 3
    RETRY_BACKOFF_BASE = 1.0  # seconds

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        retry_backoff_base: float = RETRY_BACKOFF_BASE,
    ) -> None:
        """Initialize the gateway client.

        Args:
            base_url: Façade host. Falls back to TRADEDESK_GATEWAY_URL env var.
            api_key: Bearer key for the façade. Falls back to TRADEDESK_GATEWAY_KEY.
            timeout: Request timeout in seconds.
            retry_backoff_base: First retry delay; doubles on each attempt.
        """
        self._base_url = (base_url or os.environ.get("TRADEDESK_GATEWAY_URL", "")).rstrip("/")
        self._api_key = api_key or os.environ.get("TRADEDESK_GATEWAY_KEY", "")

        if not self._base_url or not self._api_key:
            raise ValueError(
                "Gateway credentials required. Pass base_url/api_key or set TRADEDESK_GATEWAY_URL/TRADEDESK_GATEWAY_KEY env vars."
            )

        self._timeout = timeout
        self._retry_backoff_base = retry_backoff_base
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {
                "Authorization": f"Bearer {self._api_key}",
                "apikey": self._api_key,
                "Content-Type": "application/json",
            }
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers=headers,
            )
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        action: str,
        params: dict[str, Any] | None = None,
        *,
        call: GatewayCall,
        symbol: str | None = None,
    ) -> Any:
        """Invoke one façade action with retry logic and error handling.

        Args:
            action: Façade action name (get_ticker, place_order, ...).
            params: Action parameters.
            call: Which gateway call this is, for error reporting.
            symbol: Symbol the call is about, for error reporting.

        Returns:
            The ``data`` member of a successful response.

        Raises:
            GatewayUnavailable: On HTTP errors, ``success: false`` payloads,
                or after exhausting retries.
        """
        client = await self._get_client()
        body = {"action": action, "params": params or {}}
        last_error: GatewayUnavailable | None = None

        for attempt in range(self.MAX_RETRIES):
            try:
                logger.debug(
                    "gateway_request",
                    action=action,
                    symbol=symbol,
                    attempt=attempt + 1,
                )

                response = await client.post(self.FUNCTION_PATH, json=body)

                # Handle rate limiting
                if response.status_code == 429:
                    wait = self._retry_backoff_base * (2 ** attempt)
                    logger.debug(
                        "gateway_rate_limited",
                        action=action,
                        wait_seconds=wait,
                        attempt=attempt + 1,
                    )
                    last_error = GatewayUnavailable(
                        message=f"Gateway rate limited on {action}",
                        symbol=symbol,
                        call=call.value,
                        status_code=429,
                    )
                    await asyncio.sleep(wait)
                    continue

                try:
                    payload = response.json()
                except ValueError:
                    raise GatewayUnavailable(
                        message=f"Gateway returned non-JSON body ({response.status_code}): {response.text[:200]}",
                        symbol=symbol,
                        call=call.value,
                        status_code=response.status_code,
                    )

                # The façade reports business errors as {success: false, error}
                if not isinstance(payload, dict) or not payload.get("success"):
                    error_text = payload.get("error") if isinstance(payload, dict) else None
                    raise GatewayUnavailable(
                        message=f"Gateway {action} failed: {error_text or 'non-success response'}",
                        symbol=symbol,
                        call=call.value,
                        status_code=response.status_code,
                    )

                logger.debug("gateway_success", action=action, symbol=symbol)
                return payload.get("data")

            except httpx.TimeoutException as e:
                last_error = GatewayUnavailable(
                    message=f"Gateway timeout on {action}, attempt {attempt + 1}: {e}",
                    symbol=symbol,
                    call=call.value,
                )
                logger.debug("gateway_timeout", action=action, attempt=attempt + 1, error=str(e))
                if attempt < self.MAX_RETRIES - 1:
                    await asyncio.sleep(self._retry_backoff_base * (2 ** attempt))
                    continue

            except httpx.HTTPError as e:
                last_error = GatewayUnavailable(
                    message=f"Gateway HTTP error on {action}: {e}",
                    symbol=symbol,
                    call=call.value,
                )
                logger.debug("gateway_http_error", action=action, attempt=attempt + 1, error=str(e))
                if attempt < self.MAX_RETRIES - 1:
                    await asyncio.sleep(self._retry_backoff_base * (2 ** attempt))
                    continue

        raise last_error or GatewayUnavailable(
            message=f"Gateway {action} failed after all retries",
            symbol=symbol,
            call=call.value,
        )

    async def _call(
        self,
        call: GatewayCall,
        action: str,
        params: dict[str, Any] | None,
        parse: Callable[[Any], Any],
        symbol: str | None = None,
    ) -> GatewayResult:
        """Run ``_request`` and wrap the outcome in a tagged result."""
        try:
            data = await self._request(action, params, call=call, symbol=symbol)
        except GatewayUnavailable as e:
            return GatewayFailure(error=e)

        try:
            return GatewayOk(data=parse(data))
        except (ValueError, TypeError) as e:
            return GatewayFailure(
                error=GatewayUnavailable(
                    message=f"Malformed {action} payload: {e}",
                    symbol=symbol,
                    call=call.value,
                )
            )

    # Market data
    async def get_ticker(self, symbol: str) -> GatewayResult[TickerSnapshot]:
        """Latest / mark price and funding rate for a symbol."""
        return await self._call(
            GatewayCall.TICKER, "get_ticker", {"symbol": symbol},
            TickerSnapshot.from_payload, symbol,
        )

    # Orders
    async def get_plan_orders(self, symbol: str) -> GatewayResult[list[RawOrder]]:
        """Pending trigger (SL/TP) orders for a symbol."""
        return await self._call(
            GatewayCall.PLAN_ORDERS, "get_plan_orders", {"symbol": symbol},
            RawOrder.list_from_payload, symbol,
        )

    async def place_order(
        self,
        symbol: str,
        size: float,
        side: str,
        order_type: str = "market",
    ) -> GatewayResult[dict[str, Any]]:
        """Place a market order.

        Args:
            symbol: Contract symbol, e.g. "BTCUSDT".
            size: Order size in base units.
            side: open_long, open_short, close_long or close_short.
            order_type: "market" or "limit".
        """
        params = {
            "symbol": symbol,
            "size": str(size),
            "side": side,
            "orderType": order_type,
        }
        return await self._call(
            GatewayCall.PLACE_ORDER, "place_order", params,
            lambda data: data if isinstance(data, dict) else {"result": data}, symbol,
        )

    async def flash_close_position(self, symbol: str, hold_side: str) -> GatewayResult[dict[str, Any]]:
        """Close the whole position through the exchange's flash-close endpoint.

        A response whose ``wasExecuted`` flag is false counts as a failure.
        """
        result = await self._call(
            GatewayCall.FLASH_CLOSE, "flash_close_position",
            {"symbol": symbol, "holdSide": hold_side},
            lambda data: data if isinstance(data, dict) else {"result": data}, symbol,
        )
        if result.ok and not result.data.get("wasExecuted"):
            return GatewayFailure(
                error=GatewayUnavailable(
                    message="Flash close was not executed",
                    symbol=symbol,
                    call=GatewayCall.FLASH_CLOSE.value,
                )
            )
        return result

    async def cancel_plan_order(self, symbol: str, order_id: str) -> GatewayResult[dict[str, Any]]:
        """Cancel one pending trigger order."""
        return await self._call(
            GatewayCall.CANCEL_PLAN_ORDER, "cancel_plan_order",
            {"symbol": symbol, "orderId": order_id},
            lambda data: data if isinstance(data, dict) else {"result": data}, symbol,
        )

    # Positions
    async def get_position(self, symbol: str) -> GatewayResult[ExchangePositionSnapshot | None]:
        """The exchange's position for a symbol; data is None when flat."""
        return await self._call(
            GatewayCall.POSITION, "get_position", {"symbol": symbol},
            ExchangePositionSnapshot.from_payload, symbol,
        )

    # Account
    async def get_account(self) -> GatewayResult[AccountSnapshot]:
        """Futures account equity and available balance."""
        return await self._call(
            GatewayCall.ACCOUNT, "get_account", None,
            AccountSnapshot.from_payload,
        )
