"""
Offset tracking for a polling session.

The offset is the last polling-column value a session has seen, kept as an
opaque string. It is seeded once from the table, advanced per delivered row,
and optionally checkpointed to disk so a restarted session resumes in place.
"""

import json
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from core.logging.setup import get_logger

logger = get_logger(__name__)

# Offset for a table that was empty when the session was seeded
EMPTY_TABLE_OFFSET = "-1"


class OffsetCursor:
    """
    Last polling-column value seen by a session.

    Not thread-safe: only the poll thread advances it. Readers from other
    threads see a plain attribute read of an immutable string.

    advance() assigns unconditionally, so the offset only stays
    non-decreasing when the polling column grows in insertion order and the
    select returns rows in that order. The bundled templates carry no
    ORDER BY; a batch returned out of order moves the offset back and the
    later rows are selected again on the next poll.
    """

    def __init__(self, initial: Optional[str] = None):
        self._value = initial

    @property
    def value(self) -> Optional[str]:
        return self._value

    @property
    def is_initialized(self) -> bool:
        return self._value is not None

    def advance(self, value: Optional[str]) -> None:
        self._value = value

    def seed(self, values: Iterable[Optional[str]]) -> str:
        """
        Initialize from scanned polling-column values, keeping the last one.

        An empty scan, or a scan whose last value is NULL, seeds the empty
        table sentinel.

        Returns:
            The seeded offset
        """
        last: Optional[str] = None
        for value in values:
            last = value
        self._value = last if last is not None else EMPTY_TABLE_OFFSET
        return self._value


@dataclass
class OffsetCheckpoint:
    """
    Checkpoint state for resuming a session after restart.

    Stores the offset reached once a batch has been fully delivered. The
    table and polling column are kept so a checkpoint written for a
    different source is never applied.
    """

    table: str
    polling_column: str
    last_offset: str
    updated_at: str = ""  # When checkpoint was written (for debugging)

    def matches(self, table: str, polling_column: str) -> bool:
        return self.table == table and self.polling_column == polling_column

    @classmethod
    def from_file(cls, path: Path) -> Optional["OffsetCheckpoint"]:
        """
        Load checkpoint from JSON file.

        Args:
            path: Path to checkpoint file

        Returns:
            OffsetCheckpoint if file exists and is valid, None otherwise
        """
        if not path.exists():
            logger.info("No checkpoint file found", extra={"path": str(path)})
            return None

        try:
            with open(path, "r") as f:
                data = json.load(f)

            checkpoint = cls(
                table=data["table"],
                polling_column=data["polling_column"],
                last_offset=str(data["last_offset"]),
                updated_at=data.get("updated_at", ""),
            )
            logger.info(
                "Loaded checkpoint",
                extra={
                    "path": str(path),
                    "table": checkpoint.table,
                    "offset": checkpoint.last_offset,
                },
            )
            return checkpoint

        except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(
                "Failed to load checkpoint, starting fresh",
                extra={"path": str(path), "error_message": str(e)},
            )
            return None

    def save(self, path: Path) -> bool:
        """
        Save checkpoint to JSON file.

        Creates parent directories if they don't exist.

        Args:
            path: Path to checkpoint file

        Returns:
            True if save succeeded, False otherwise
        """
        try:
            path.parent.mkdir(parents=True, exist_ok=True)

            self.updated_at = datetime.now(timezone.utc).isoformat()

            # Write to temp, then replace
            temp_path = path.with_suffix(".tmp")
            with open(temp_path, "w") as f:
                json.dump(asdict(self), f, indent=2)

            os.replace(temp_path, path)

            logger.debug(
                "Saved checkpoint",
                extra={"path": str(path), "offset": self.last_offset},
            )
            return True

        except OSError as e:
            logger.error(
                "Failed to save checkpoint",
                extra={"path": str(path), "error_message": str(e)},
            )
            return False
