"""
Change-feed event model.

The realtime transport delivers row-level notifications as loosely typed
payloads ('INSERT'/'insert', full or partial rows). 'ChangeEvent' is the
validated boundary type: anything that reaches the reconciler or the
conversation list aggregator has a known 'event_type' and mapping-shaped rows.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class ChangeEventType(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    """
    A single row-level change.

    Attributes:
        event_type: The kind of change.
        table: Source table, e.g. 'messages' or 'conversations'.
        row: The new row, complete or partial. Empty for deletes.
        old_row: The previous row. For deletes it may carry only the primary key.
    """

    event_type: ChangeEventType
    table: str
    row: dict[str, Any] = Field(default_factory=dict)
    old_row: dict[str, Any] = Field(default_factory=dict)

    @field_validator("event_type", mode="before")
    @classmethod
    def _normalise_event_type(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    @field_validator("row", "old_row", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return value or {}

    @property
    def record_id(self) -> str | None:
        record_id = self.row.get("id", self.old_row.get("id"))
        return None if record_id is None else str(record_id)

    def value(self, column: str) -> Any:
        """Column value from the new row, falling back to the old row."""
        if column in self.row:
            return self.row[column]
        return self.old_row.get(column)
