"""Log formatters for JSON and console output."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from core.logging.context import get_log_context
from core.security.sanitize import sanitize_url


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter with context injection.

    Produces one JSON object per line for easy parsing with jq/grep.
    Connection URLs are masked before logging.
    """

    # Fields to extract from LogRecord extras
    EXTRA_FIELDS = [
        # Session tracking
        "session",
        "table",
        "polling_column",
        "offset",
        "offset_before",
        "offset_after",
        "seed_strategy",
        "poll_interval",
        "database_name",
        "override_key",
        # Batch tracking
        "rows_fetched",
        "events_delivered",
        "duration_ms",
        "total_polls",
        # Errors
        "error_category",
        "error_message",
        "restartable",
        # Resources
        "datasource",
        "url",
        "path",
        "state",
    ]

    # Fields that contain URLs and should be masked
    URL_FIELDS = ["url"]

    def _sanitize_value(self, key: str, value: Any) -> Any:
        """Mask credentials if it's a URL field."""
        if key in self.URL_FIELDS and isinstance(value, str):
            return sanitize_url(value)
        return value

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON with masked URLs."""
        log_entry: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]
            + "Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        # Inject context variables
        ctx = get_log_context()
        if ctx["session"]:
            log_entry["session"] = ctx["session"]
        if ctx["table"]:
            log_entry["table"] = ctx["table"]
        if ctx["worker_id"]:
            log_entry["worker_id"] = ctx["worker_id"]

        # Add source location for DEBUG/ERROR
        if record.levelno in (logging.DEBUG, logging.ERROR, logging.CRITICAL):
            log_entry["file"] = f"{record.filename}:{record.lineno}"

        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = self._sanitize_value(field, value)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable console formatter.

    Includes session context when available.
    """

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()

        parts = [
            datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            record.levelname,
        ]

        if ctx["session"]:
            parts.append(f"[{ctx['session']}]")

        prefix = " - ".join(parts)

        offset = getattr(record, "offset", None)
        if offset is not None:
            message = f"{prefix} - {record.getMessage()} (offset={offset})"
        else:
            message = f"{prefix} - {record.getMessage()}"

        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message
