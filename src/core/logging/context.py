"""Context variables injected into every log record.

Values are stored in contextvars so each polling thread carries its own
session/table identity without passing it through every call.
"""

from contextvars import ContextVar
from typing import Dict, Optional

_session_var: ContextVar[Optional[str]] = ContextVar("session", default=None)
_table_var: ContextVar[Optional[str]] = ContextVar("table", default=None)
_worker_id_var: ContextVar[Optional[str]] = ContextVar("worker_id", default=None)


def set_log_context(
    session: Optional[str] = None,
    table: Optional[str] = None,
    worker_id: Optional[str] = None,
) -> None:
    """
    Set logging context variables.

    Only non-None arguments are applied; existing values are kept otherwise.

    Args:
        session: Polling session name
        table: Source table being polled
        worker_id: Worker/thread identifier
    """
    if session is not None:
        _session_var.set(session)
    if table is not None:
        _table_var.set(table)
    if worker_id is not None:
        _worker_id_var.set(worker_id)


def get_log_context() -> Dict[str, Optional[str]]:
    """Get current logging context as a dict."""
    return {
        "session": _session_var.get(),
        "table": _table_var.get(),
        "worker_id": _worker_id_var.get(),
    }


def clear_log_context() -> None:
    """Reset all context variables."""
    _session_var.set(None)
    _table_var.set(None)
    _worker_id_var.set(None)
