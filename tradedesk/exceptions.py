"""tradedesk exception hierarchy.

All custom exceptions inherit from TradeDeskError, allowing callers
to catch broad or specific error categories as needed. The four
position-workflow errors (GatewayUnavailable, ExchangeCloseFailed,
InconsistentCloseState, InvalidStateError) have different recovery
paths and must stay distinguishable.
"""

from typing import Any


class TradeDeskError(Exception):
    """Base exception for all tradedesk errors."""

    def __init__(
        self,
        message: str = "",
        position_id: str | None = None,
        symbol: str | None = None,
    ) -> None:
        self.position_id = position_id
        self.symbol = symbol
        super().__init__(message)


class SchemaValidationError(TradeDeskError):
    """Raised when a store row or config file fails validation."""


class PositionStoreError(TradeDeskError):
    """Raised when a PositionStore read or write fails.

    Examples: REST endpoint unreachable, non-2xx response, row not found
    on a point update.
    """

    def __init__(
        self,
        message: str = "",
        position_id: str | None = None,
        symbol: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(message, position_id, symbol)


class GatewayUnavailable(TradeDeskError):
    """A single ExchangeGateway call failed.

    Examples: HTTP timeout, rate limiting, ``success: false`` payload,
    malformed response. Recovered locally by the reconciliation engine:
    the affected symbol falls back to stored values for that cycle.
    """

    def __init__(
        self,
        message: str = "",
        position_id: str | None = None,
        symbol: str | None = None,
        call: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.call = call
        self.status_code = status_code
        super().__init__(message, position_id, symbol)


class InvalidStateError(TradeDeskError):
    """Operation attempted on a position not in the expected state.

    Rejected before any side effect, e.g. closing a position that is
    already closed or whose close is already running.
    """

    def __init__(
        self,
        message: str = "",
        position_id: str | None = None,
        symbol: str | None = None,
        status: str | None = None,
    ) -> None:
        self.status = status
        super().__init__(message, position_id, symbol)


class ExchangeCloseFailed(TradeDeskError):
    """The exchange rejected or failed the close order.

    No store mutation happened; the close is safe to retry.
    """

    def __init__(
        self,
        message: str = "",
        position_id: str | None = None,
        symbol: str | None = None,
        causes: list[str] | None = None,
    ) -> None:
        self.causes = causes or []
        super().__init__(message, position_id, symbol)


class InconsistentCloseState(TradeDeskError):
    """The exchange close succeeded but the store write failed.

    The row is still ``open`` in storage while the exchange position is
    gone. Carries the pending update so an operator can re-apply it;
    it is never retried automatically since a blind retry of the whole
    close could double-close.
    """

    def __init__(
        self,
        message: str = "",
        position_id: str | None = None,
        symbol: str | None = None,
        pending_update: dict[str, Any] | None = None,
        exchange_response: Any = None,
    ) -> None:
        self.pending_update = pending_update or {}
        self.exchange_response = exchange_response
        super().__init__(message, position_id, symbol)
