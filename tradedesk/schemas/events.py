"""Change notifications from the realtime bridge on the positions table."""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tradedesk.schemas.enums import ChangeEventType, PositionStatus


class ChangeEvent(BaseModel):
    """One row change: ``{eventType, new, old}``.

    ``new`` is empty for DELETE; ``old`` may only carry the primary key
    depending on the table's replica identity.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    event_type: ChangeEventType = Field(..., alias="eventType")
    new: dict[str, Any] = Field(default_factory=dict)
    old: dict[str, Any] = Field(default_factory=dict)

    @field_validator("event_type", mode="before")
    @classmethod
    def _upper(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("new", "old", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> dict[str, Any]:
        return v or {}

    @property
    def position_id(self) -> Optional[str]:
        row_id = self.new.get("id") or self.old.get("id")
        return None if row_id is None else str(row_id)

    @property
    def symbol(self) -> Optional[str]:
        return self.new.get("symbol") or self.old.get("symbol")

    @property
    def is_close(self) -> bool:
        """UPDATE that moved the row into the closed state."""
        return (
            self.event_type == ChangeEventType.UPDATE
            and self.new.get("status") == PositionStatus.CLOSED.value
        )

    @property
    def is_open_row(self) -> bool:
        return self.new.get("status", PositionStatus.OPEN.value) == PositionStatus.OPEN.value
