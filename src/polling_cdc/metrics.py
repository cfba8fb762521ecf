"""
Prometheus metrics for polling session monitoring.

Provides instrumentation for:
- Poll iterations and their duration
- Rows fetched and events delivered
- Fatal session failures by category
- Pause state
"""

from prometheus_client import Counter, Gauge, Histogram

polls_total = Counter(
    "polling_cdc_polls_total",
    "Total number of completed poll iterations",
    ["session", "table"],
)

rows_fetched_total = Counter(
    "polling_cdc_rows_fetched_total",
    "Total number of changed rows fetched from the source table",
    ["session", "table"],
)

events_delivered_total = Counter(
    "polling_cdc_events_delivered_total",
    "Total number of row events delivered to the event sink",
    ["session", "table"],
)

session_failures_total = Counter(
    "polling_cdc_session_failures_total",
    "Total number of fatal session failures",
    ["session", "table", "error_category"],
)

poll_duration_seconds = Histogram(
    "polling_cdc_poll_duration_seconds",
    "Time spent fetching and delivering one poll batch",
    ["session", "table"],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0, 120.0),
)

session_paused = Gauge(
    "polling_cdc_session_paused",
    "Whether the session's event delivery is paused (1=paused, 0=running)",
    ["session", "table"],
)

session_running = Gauge(
    "polling_cdc_session_running",
    "Whether the session's poll loop is alive (1=running, 0=stopped)",
    ["session", "table"],
)


def record_poll(
    session: str, table: str, rows_fetched: int, events_delivered: int, duration: float
) -> None:
    """Record one completed poll iteration."""
    polls_total.labels(session=session, table=table).inc()
    if rows_fetched:
        rows_fetched_total.labels(session=session, table=table).inc(rows_fetched)
    if events_delivered:
        events_delivered_total.labels(session=session, table=table).inc(events_delivered)
    poll_duration_seconds.labels(session=session, table=table).observe(duration)


def record_failure(session: str, table: str, error_category: str) -> None:
    """Record a fatal session failure."""
    session_failures_total.labels(
        session=session, table=table, error_category=error_category
    ).inc()


def set_paused(session: str, table: str, paused: bool) -> None:
    session_paused.labels(session=session, table=table).set(1 if paused else 0)


def set_running(session: str, table: str, running: bool) -> None:
    session_running.labels(session=session, table=table).set(1 if running else 0)
