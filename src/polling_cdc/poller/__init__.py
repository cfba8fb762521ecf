"""
Poll loop and its collaborators.

Components:
- PollingWorker: per-session poll loop and control surface
- OffsetCursor / OffsetCheckpoint: offset tracking and persistence
- PauseGate: holds delivery while a session is paused
- Row events and event sinks
"""

from polling_cdc.poller.events import (
    CallbackEventSink,
    ChangeEvent,
    EventSink,
    JsonLinesEventSink,
    RowEvent,
    to_row_event,
)
from polling_cdc.poller.gate import PauseGate
from polling_cdc.poller.offset import EMPTY_TABLE_OFFSET, OffsetCheckpoint, OffsetCursor
from polling_cdc.poller.worker import CompletionReporter, PollingWorker, WorkerState

__all__ = [
    "CallbackEventSink",
    "ChangeEvent",
    "CompletionReporter",
    "EMPTY_TABLE_OFFSET",
    "EventSink",
    "JsonLinesEventSink",
    "OffsetCheckpoint",
    "OffsetCursor",
    "PauseGate",
    "PollingWorker",
    "RowEvent",
    "WorkerState",
    "to_row_event",
]
