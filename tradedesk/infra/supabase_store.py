"""PostgREST-backed PositionStore.

Reads and writes the ``positions`` table through the Supabase REST API
and calls the statistics RPCs. Every failure surfaces as
PositionStoreError.

Usage:
    store = SupabasePositionStore()  # reads SUPABASE_URL / SUPABASE_SERVICE_KEY
    open_positions = await store.list_positions(status=PositionStatus.OPEN)
"""

import asyncio
import os
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from tradedesk.exceptions import PositionStoreError
from tradedesk.schemas.enums import PositionStatus
from tradedesk.schemas.position import Position

logger = structlog.get_logger()


class SupabasePositionStore:
    """Async PostgREST client for the positions table.

    Rows that fail validation are logged and skipped on reads so one bad
    row cannot hide the rest of the book.
    """

    REST_PATH = "/rest/v1"
    TABLE = "positions"
    DEFAULT_TIMEOUT = 10.0
    MAX_RETRIES = 3
    RETRY_BACKOFF_BASE = 1.0  # seconds

    def __init__(
        self,
        url: str | None = None,
        service_key: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        retry_backoff_base: float = RETRY_BACKOFF_BASE,
    ) -> None:
        """Initialize the store client.

        Args:
            url: Project URL. Falls back to SUPABASE_URL env var.
            service_key: Service-role key. Falls back to SUPABASE_SERVICE_KEY env var.
            timeout: Request timeout in seconds.
            retry_backoff_base: First retry delay; doubles on each attempt.
        """
        self._url = (url or os.environ.get("SUPABASE_URL", "")).rstrip("/")
        self._service_key = service_key or os.environ.get("SUPABASE_SERVICE_KEY", "")

        if not self._url or not self._service_key:
            raise ValueError(
                "Supabase credentials required. Pass url/service_key or set SUPABASE_URL/SUPABASE_SERVICE_KEY env vars."
            )

        self._timeout = timeout
        self._retry_backoff_base = retry_backoff_base
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {
                "apikey": self._service_key,
                "Authorization": f"Bearer {self._service_key}",
                "Content-Type": "application/json",
            }
            self._client = httpx.AsyncClient(
                base_url=self._url + self.REST_PATH,
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
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
        position_id: str | None = None,
    ) -> Any:
        """Make a REST request with retry logic and error handling.

        Returns:
            Parsed JSON response, or None for an empty body.

        Raises:
            PositionStoreError: On non-2xx responses or after exhausting retries.
        """
        client = await self._get_client()
        last_error: PositionStoreError | None = None

        for attempt in range(self.MAX_RETRIES):
            try:
                logger.debug(
                    "store_request",
                    method=method,
                    path=path,
                    attempt=attempt + 1,
                )

                response = await client.request(
                    method, path, params=params, json=json, headers=headers,
                )

                if response.status_code == 429 or response.status_code >= 500:
                    wait = self._retry_backoff_base * (2 ** attempt)
                    logger.debug(
                        "store_retryable_status",
                        path=path,
                        status_code=response.status_code,
                        wait_seconds=wait,
                    )
                    last_error = PositionStoreError(
                        f"Store returned {response.status_code} for {method} {path}",
                        position_id=position_id,
                        status_code=response.status_code,
                    )
                    await asyncio.sleep(wait)
                    continue

                if response.status_code >= 400:
                    raise PositionStoreError(
                        f"Store error ({response.status_code}): {response.text[:200]}",
                        position_id=position_id,
                        status_code=response.status_code,
                    )

                if not response.content:
                    return None
                return response.json()

            except (httpx.TimeoutException, httpx.HTTPError) as e:
                last_error = PositionStoreError(
                    f"Store transport error on {method} {path}, attempt {attempt + 1}: {e}",
                    position_id=position_id,
                )
                logger.debug("store_transport_error", path=path, attempt=attempt + 1, error=str(e))
                if attempt < self.MAX_RETRIES - 1:
                    await asyncio.sleep(self._retry_backoff_base * (2 ** attempt))
                    continue

        raise last_error or PositionStoreError(
            f"Store request {method} {path} failed after all retries",
            position_id=position_id,
        )

    @staticmethod
    def _parse_rows(rows: Any) -> list[Position]:
        positions = []
        for row in rows or []:
            try:
                positions.append(Position.model_validate(row))
            except ValidationError as e:
                logger.error(
                    "invalid_position_row",
                    position_id=row.get("id") if isinstance(row, dict) else None,
                    error=str(e),
                )
        return positions

    # Positions
    async def list_positions(self, status: PositionStatus | None = None) -> list[Position]:
        """Rows with the given status (all when None), newest first."""
        params = {"select": "*", "order": "created_at.desc"}
        if status is not None:
            params["status"] = f"eq.{status.value}"
        rows = await self._request("GET", f"/{self.TABLE}", params=params)
        return self._parse_rows(rows)

    async def get_position(self, position_id: str) -> Position | None:
        rows = await self._request(
            "GET",
            f"/{self.TABLE}",
            params={"select": "*", "id": f"eq.{position_id}"},
            position_id=position_id,
        )
        if not rows:
            return None
        try:
            return Position.model_validate(rows[0])
        except ValidationError as e:
            raise PositionStoreError(
                f"Invalid position row {position_id}: {e}",
                position_id=position_id,
            ) from e

    async def update_position(self, position_id: str, fields: dict[str, Any]) -> Position:
        """Single-row partial update of a row that is not closed.

        The PATCH filters on ``status=neq.closed`` so a closed row is never
        rewritten, even by a write racing the close.

        Raises:
            PositionStoreError: If the request fails, the row is closed
                (409) or does not exist (404).
        """
        rows = await self._request(
            "PATCH",
            f"/{self.TABLE}",
            params={"id": f"eq.{position_id}", "status": f"neq.{PositionStatus.CLOSED.value}"},
            json=fields,
            headers={"Prefer": "return=representation"},
            position_id=position_id,
        )
        if not rows:
            existing = await self.get_position(position_id)
            if existing is not None and existing.status == PositionStatus.CLOSED:
                raise PositionStoreError(
                    f"Position {position_id} is closed",
                    position_id=position_id,
                    symbol=existing.symbol,
                    status_code=409,
                )
            raise PositionStoreError(
                f"Position {position_id} not found",
                position_id=position_id,
                status_code=404,
            )
        logger.debug("position_updated", position_id=position_id, fields=sorted(fields))
        try:
            return Position.model_validate(rows[0])
        except ValidationError as e:
            raise PositionStoreError(
                f"Invalid position row {position_id} after update: {e}",
                position_id=position_id,
            ) from e

    # RPC
    async def rpc(self, name: str, params: dict[str, Any] | None = None) -> Any:
        """Call a stored procedure, e.g. ``get_margin_bucket_stats``."""
        return await self._request("POST", f"/rpc/{name}", json=params or {})
