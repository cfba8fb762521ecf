"""
Row events and event sinks.

A row event is the column -> string mapping for one changed row, in result
column order. Sinks receive row events one at a time on the poll thread.
"""

import json
import threading
from datetime import date, datetime, time, timezone
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, Sequence, TextIO, runtime_checkable

from pydantic import BaseModel, Field, field_serializer

RowEvent = Dict[str, Optional[str]]


def coerce_value(value: Any) -> Optional[str]:
    """Render one column value as a string; SQL NULL stays None."""
    if value is None:
        return None
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def to_row_event(keys: Iterable[str], row: Sequence[Any]) -> RowEvent:
    """Build a row event from result column names and one row."""
    return {key: coerce_value(value) for key, value in zip(keys, row)}


@runtime_checkable
class EventSink(Protocol):
    """Consumer of row events. Exceptions raised here stop the session."""

    def on_event(self, fields: RowEvent) -> None:
        ...


class CallbackEventSink:
    """Adapts a plain callable to the EventSink protocol."""

    def __init__(self, callback: Callable[[RowEvent], None]):
        self._callback = callback

    def on_event(self, fields: RowEvent) -> None:
        self._callback(fields)


class ChangeEvent(BaseModel):
    """Envelope written for each row event by the JSON-lines sink.

    Attributes:
        session: Polling session name
        table: Source table
        polling_column: Column the offset tracks
        offset: Polling column value of this row
        fields: Column -> string value for the row
        observed_at: When the event was delivered (UTC)

    Example:
        >>> event = ChangeEvent(
        ...     session="orders",
        ...     table="orders",
        ...     polling_column="id",
        ...     offset="3",
        ...     fields={"id": "3", "payload": "c"},
        ... )
    """

    session: str = Field(..., description="Polling session name", min_length=1)
    table: str = Field(..., description="Source table", min_length=1)
    polling_column: str = Field(..., description="Column the offset tracks")
    offset: Optional[str] = Field(
        default=None, description="Polling column value of this row"
    )
    fields: Dict[str, Optional[str]] = Field(
        ..., description="Column -> string value, in result column order"
    )
    observed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Delivery timestamp (UTC)",
    )

    @field_serializer("observed_at")
    def serialize_observed_at(self, observed_at: datetime) -> str:
        """Serialize datetime to ISO 8601 format."""
        return observed_at.isoformat()


class JsonLinesEventSink:
    """
    Writes each row event as one JSON line to a text stream.

    Safe to share between sessions; writes are serialized on a lock.

    Usage:
        sink = JsonLinesEventSink(sys.stdout, session)
    """

    def __init__(self, stream: TextIO, session, lock: Optional[threading.Lock] = None):
        """
        Args:
            stream: Text stream to write to
            session: SessionConfig the events belong to
            lock: Lock shared by sinks writing to the same stream
        """
        self._stream = stream
        self._session = session
        self._lock = lock or threading.Lock()

    def on_event(self, fields: RowEvent) -> None:
        event = ChangeEvent(
            session=self._session.name,
            table=self._session.table_name,
            polling_column=self._session.polling_column,
            offset=lookup_column(fields, self._session.polling_column),
            fields=fields,
        )
        line = json.dumps(event.model_dump(mode="json"))
        with self._lock:
            self._stream.write(line + "\n")
            self._stream.flush()


def lookup_column(fields: RowEvent, polling_column: str) -> Optional[str]:
    """Value of the polling column in a row event."""
    if polling_column in fields:
        return fields[polling_column]
    # Drivers may report column names in a different case
    lowered = polling_column.lower()
    for key, value in fields.items():
        if key.lower() == lowered:
            return value
    return None
