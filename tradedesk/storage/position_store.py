"""InMemoryPositionStore: local PositionStore for tests and offline runs.

Same async surface as the PostgREST store. Rows live in a lock-protected
dict; every write can be appended to a JSON-lines log and replayed on
start-up (last row per id wins). Statistics RPCs are computed locally
from closed rows.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Optional

import structlog
from pydantic import ValidationError

from tradedesk.analytics.stats import STATS_RPCS, group_closed_positions, group_rows
from tradedesk.exceptions import PositionStoreError
from tradedesk.schemas.enums import ChangeEventType, PositionStatus
from tradedesk.schemas.position import Position

logger = structlog.get_logger()

ChangeListener = Callable[[dict[str, Any]], Awaitable[None]]


class InMemoryPositionStore:
    """Mutable position table keyed by id.

    Thread-safe. Writes notify subscribed change listeners with a
    ``{eventType, new, old}`` payload, mirroring a realtime feed.
    """

    def __init__(
        self,
        positions: Optional[list[Position]] = None,
        persist_path: Path | None = None,
        tiers: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._lock = threading.RLock()
        self._rows: dict[str, Position] = {}
        self._tiers = dict(tiers or {})
        self._listeners: list[ChangeListener] = []

        self._persist_path = persist_path
        if persist_path and persist_path.exists():
            self._load_from_disk()

        for position in positions or []:
            self.add(position)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def add(self, position: Position) -> bool:
        """Insert a row. Returns True if new, False if the id already exists."""
        with self._lock:
            if position.id in self._rows:
                return False
            self._rows[position.id] = position
            if self._persist_path:
                self._persist_one(position)

        logger.debug("Position stored", position_id=position.id, symbol=position.symbol)
        return True

    async def insert_position(self, position: Position) -> Position:
        """Insert a row and notify listeners."""
        if not self.add(position):
            raise PositionStoreError(
                f"Position {position.id} already exists",
                position_id=position.id,
                symbol=position.symbol,
                status_code=409,
            )
        await self._notify(ChangeEventType.INSERT, position, None)
        return position

    async def update_position(self, position_id: str, fields: dict[str, Any]) -> Position:
        """Apply a partial update to one row.

        Closed rows are final: any update to one is refused.

        Raises:
            PositionStoreError: If the row does not exist (404), is closed
                (409), or the update would produce an invalid row (400).
        """
        with self._lock:
            old = self._rows.get(position_id)
            if old is None:
                raise PositionStoreError(
                    f"Position {position_id} not found",
                    position_id=position_id,
                    status_code=404,
                )
            if old.status == PositionStatus.CLOSED:
                raise PositionStoreError(
                    f"Position {position_id} is closed",
                    position_id=position_id,
                    symbol=old.symbol,
                    status_code=409,
                )

            merged = old.model_dump()
            merged.update(fields)
            try:
                new = Position.model_validate(merged)
            except ValidationError as exc:
                raise PositionStoreError(
                    f"Invalid update for position {position_id}: {exc}",
                    position_id=position_id,
                    symbol=old.symbol,
                    status_code=400,
                ) from exc

            self._rows[position_id] = new
            if self._persist_path:
                self._persist_one(new)

        logger.debug(
            "Position updated",
            position_id=position_id,
            fields=sorted(fields),
        )
        await self._notify(ChangeEventType.UPDATE, new, old)
        return new

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_position(self, position_id: str) -> Position | None:
        with self._lock:
            return self._rows.get(position_id)

    async def list_positions(self, status: PositionStatus | None = None) -> list[Position]:
        """Rows with the given status (all when None), newest first."""
        with self._lock:
            rows = [
                row for row in self._rows.values()
                if status is None or row.status == status
            ]
        with_ts = [row for row in rows if row.created_at is not None]
        without_ts = [row for row in rows if row.created_at is None]
        with_ts.sort(key=lambda row: row.created_at, reverse=True)
        return with_ts + without_ts

    async def rpc(self, name: str, params: Optional[dict[str, Any]] = None) -> Any:
        """Serve the statistics RPCs from local closed rows."""
        if name not in STATS_RPCS:
            raise PositionStoreError(f"Unknown RPC: {name}", status_code=404)

        key_field = STATS_RPCS[name]
        with self._lock:
            rows = list(self._rows.values())
        groups = group_closed_positions(rows, key_field, tiers=self._tiers)
        return group_rows(groups, key_field)

    def count(self, status: PositionStatus | None = None) -> int:
        with self._lock:
            if status is None:
                return len(self._rows)
            return sum(1 for row in self._rows.values() if row.status == status)

    # ------------------------------------------------------------------
    # Change feed
    # ------------------------------------------------------------------

    def subscribe(self, listener: ChangeListener) -> None:
        """Register an async listener for row changes."""
        self._listeners.append(listener)

    async def _notify(
        self,
        event_type: ChangeEventType,
        new: Position | None,
        old: Position | None,
    ) -> None:
        payload = {
            "eventType": event_type.value,
            "new": new.model_dump(mode="json") if new else {},
            "old": old.model_dump(mode="json") if old else {},
        }
        for listener in list(self._listeners):
            try:
                await listener(payload)
            except Exception as exc:
                logger.error(
                    "Change listener failed",
                    event_type=event_type.value,
                    error=str(exc),
                )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist_one(self, position: Position) -> None:
        """Append the current row to the JSON-lines file."""
        try:
            self._persist_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._persist_path, "a") as f:
                f.write(position.model_dump_json() + "\n")
        except OSError as exc:
            logger.error(
                "Failed to persist position",
                position_id=position.id,
                error=str(exc),
            )

    def _load_from_disk(self) -> None:
        """Replay the JSON-lines file; the last line per id wins."""
        count = 0
        try:
            with open(self._persist_path) as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        position = Position.model_validate_json(line)
                    except ValidationError as exc:
                        logger.error("Skipping invalid position line", error=str(exc))
                        continue
                    self._rows[position.id] = position
                    count += 1
        except OSError as exc:
            logger.error(
                "Failed to load positions from disk",
                path=str(self._persist_path),
                error=str(exc),
            )
        logger.info("Positions loaded from disk", lines=count, rows=len(self._rows))
